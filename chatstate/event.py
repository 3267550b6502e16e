"""Normalized inbound event extracted from a Telegram update."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from telegram import Update, User

from chatstate.callback import CallbackData, parse_callback_data
from chatstate.errors import ValidationError
from chatstate.record import Identity

START_COMMAND = "start"


class EventKind(str, Enum):
    COMMAND = "command"
    TEXT = "text"
    CALLBACK = "callback"
    MEMBER = "member"
    OTHER = "other"


class MemberStatus(str, Enum):
    KICKED = "kicked"
    MEMBER = "member"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    identity: Identity | None
    chat_id: int = 0
    message_id: int = 0
    text: str = ""
    command: str = ""
    callback: CallbackData | None = None
    callback_raw: str = ""
    callback_query_id: str = ""
    member_status: str = ""
    update_id: int = 0
    raw: Any = None

    @property
    def sender_id(self) -> int:
        return 0 if self.identity is None else self.identity.id

    @property
    def is_start(self) -> bool:
        return self.kind == EventKind.COMMAND and self.command == START_COMMAND

    @property
    def command_args(self) -> str:
        if self.kind != EventKind.COMMAND:
            return ""
        parts = self.text.split(maxsplit=1)
        return parts[1].strip() if len(parts) > 1 else ""


def identity_from_user(user: User) -> Identity:
    return Identity(
        id=user.id,
        is_bot=bool(user.is_bot),
        language_code=user.language_code or "",
        first_name=user.first_name or "",
        last_name=user.last_name or "",
        username=user.username or "",
        is_premium=bool(user.is_premium),
    )


def _command_name(text: str) -> str:
    head = text.split(maxsplit=1)[0]
    # "/start@my_bot" -> "start"
    return head[1:].split("@", 1)[0].lower()


def event_from_update(update: Update) -> Event:
    user = update.effective_user
    identity = identity_from_user(user) if user is not None else None
    chat = update.effective_chat
    chat_id = chat.id if chat is not None else (user.id if user is not None else 0)

    if update.my_chat_member is not None:
        return Event(
            kind=EventKind.MEMBER,
            identity=identity,
            chat_id=chat_id,
            member_status=str(update.my_chat_member.new_chat_member.status),
            update_id=update.update_id,
            raw=update,
        )

    query = update.callback_query
    if query is not None:
        try:
            callback = parse_callback_data(query.data)
        except ValidationError:
            callback = None
        return Event(
            kind=EventKind.CALLBACK,
            identity=identity,
            chat_id=chat_id,
            message_id=query.message.message_id if query.message is not None else 0,
            callback=callback,
            callback_raw=query.data or "",
            callback_query_id=query.id,
            update_id=update.update_id,
            raw=update,
        )

    message = update.effective_message
    if message is None:
        return Event(kind=EventKind.OTHER, identity=identity, chat_id=chat_id, update_id=update.update_id, raw=update)

    text = message.text or message.caption or ""
    if message.text and message.text.startswith("/"):
        kind = EventKind.COMMAND
        command = _command_name(message.text)
    elif message.text:
        kind = EventKind.TEXT
        command = ""
    else:
        kind = EventKind.OTHER
        command = ""
    return Event(
        kind=kind,
        identity=identity,
        chat_id=chat_id,
        message_id=message.message_id,
        text=text,
        command=command,
        update_id=update.update_id,
        raw=update,
    )
