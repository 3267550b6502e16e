"""Telegram transport adapter: send/edit/delete with error classification."""

from __future__ import annotations

from typing import Any, Awaitable

import structlog
from telegram import Bot, LinkPreviewOptions
from telegram.error import BadRequest, Forbidden, TelegramError

from chatstate.errors import (
    BlockedByCorrespondent,
    MessageNotFound,
    NotModified,
    TransportError,
    ValidationError,
)
from chatstate.metrics import ERROR_BOT_BLOCKED, ERROR_TELEGRAM_API, SEVERITY_LOW, BotMetrics

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0

_NOT_MODIFIED_MARKERS = ("message is not modified",)
_NOT_FOUND_MARKERS = (
    "message to edit not found",
    "message to delete not found",
    "message_id_invalid",
)


def classify_error(exc: TelegramError) -> TransportError:
    text = exc.message.lower()
    if isinstance(exc, Forbidden):
        return BlockedByCorrespondent(str(exc))
    if isinstance(exc, BadRequest):
        if any(marker in text for marker in _NOT_MODIFIED_MARKERS):
            return NotModified(str(exc))
        if any(marker in text for marker in _NOT_FOUND_MARKERS):
            return MessageNotFound(str(exc))
    return TransportError(str(exc))


def _check_ids(chat_id: int, *msg_ids: int) -> None:
    if not chat_id:
        raise ValidationError("chat id must be non-zero")
    for msg_id in msg_ids:
        if msg_id <= 0:
            raise ValidationError(f"invalid message id: {msg_id!r}")


class Transport:
    def __init__(
        self,
        bot: Bot,
        *,
        parse_mode: str | None = "HTML",
        no_preview: bool = False,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        metrics: BotMetrics | None = None,
    ) -> None:
        self._bot = bot
        self._parse_mode = parse_mode
        self._no_preview = no_preview
        self._timeout = timeout_seconds
        self._metrics = metrics or BotMetrics()

    @property
    def bot(self) -> Bot:
        return self._bot

    def _options(self, parse_mode: str | None, reply_markup: Any) -> dict[str, Any]:
        options: dict[str, Any] = {
            "parse_mode": parse_mode if parse_mode is not None else self._parse_mode,
            "reply_markup": reply_markup,
            "read_timeout": self._timeout,
            "write_timeout": self._timeout,
        }
        if self._no_preview:
            options["link_preview_options"] = LinkPreviewOptions(is_disabled=True)
        return options

    async def _call(self, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except TelegramError as exc:
            err = classify_error(exc)
            if isinstance(err, BlockedByCorrespondent):
                self._metrics.inc_error(ERROR_BOT_BLOCKED, SEVERITY_LOW)
            elif not isinstance(err, (NotModified, MessageNotFound)):
                self._metrics.inc_error(ERROR_TELEGRAM_API, SEVERITY_LOW)
            raise err from exc

    async def send(
        self,
        chat_id: int,
        text: str,
        *,
        reply_markup: Any = None,
        parse_mode: str | None = None,
    ) -> int:
        """Send a message and return its id."""
        _check_ids(chat_id)
        message = await self._call(
            self._bot.send_message(chat_id=chat_id, text=text, **self._options(parse_mode, reply_markup))
        )
        self._metrics.inc_sent()
        return int(message.message_id)

    async def edit(
        self,
        chat_id: int,
        msg_id: int,
        text: str,
        *,
        reply_markup: Any = None,
        parse_mode: str | None = None,
    ) -> None:
        _check_ids(chat_id, msg_id)
        try:
            await self._call(
                self._bot.edit_message_text(
                    text=text,
                    chat_id=chat_id,
                    message_id=msg_id,
                    **self._options(parse_mode, reply_markup),
                )
            )
            self._metrics.inc_edited()
        except NotModified:
            logger.debug("message not modified", chat_id=chat_id, msg_id=msg_id)

    async def delete_messages(self, chat_id: int, *msg_ids: int) -> None:
        """Delete every id; raise the first failure once all deletes were attempted."""
        _check_ids(chat_id, *msg_ids)
        first_error: TransportError | None = None
        for msg_id in msg_ids:
            try:
                await self._call(
                    self._bot.delete_message(
                        chat_id=chat_id,
                        message_id=msg_id,
                        read_timeout=self._timeout,
                        write_timeout=self._timeout,
                    )
                )
                self._metrics.inc_deleted()
            except MessageNotFound:
                logger.debug("message to delete not found", chat_id=chat_id, msg_id=msg_id)
            except TransportError as exc:
                logger.debug("message delete failed", chat_id=chat_id, msg_id=msg_id, error=str(exc))
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error

    async def answer_callback(self, query_id: str, text: str = "") -> None:
        await self._call(
            self._bot.answer_callback_query(
                callback_query_id=query_id,
                text=text or None,
                read_timeout=self._timeout,
                write_timeout=self._timeout,
            )
        )
