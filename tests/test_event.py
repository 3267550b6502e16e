from __future__ import annotations

import unittest
from datetime import datetime, timezone

from telegram import (
    CallbackQuery,
    Chat,
    ChatMemberBanned,
    ChatMemberMember,
    ChatMemberUpdated,
    Message,
    Update,
    User,
)

from chatstate.event import EventKind, MemberStatus, event_from_update

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)
USER = User(id=7, first_name="Ada", is_bot=False, username="ada", language_code="en")
BOT_USER = User(id=1, first_name="Demo", is_bot=True)
CHAT = Chat(id=7, type="private")


def _message(message_id: int = 5, **fields: object) -> Message:
    return Message(message_id=message_id, date=NOW, chat=CHAT, from_user=USER, **fields)


class EventFromUpdateTests(unittest.TestCase):
    def test_command_with_bot_suffix_and_args(self) -> None:
        event = event_from_update(Update(update_id=1, message=_message(text="/Start@demo_bot ref42")))
        self.assertEqual(event.kind, EventKind.COMMAND)
        self.assertEqual(event.command, "start")
        self.assertTrue(event.is_start)
        self.assertEqual(event.command_args, "ref42")
        self.assertEqual(event.identity.username, "ada")
        self.assertEqual((event.chat_id, event.message_id, event.update_id), (7, 5, 1))

    def test_plain_text(self) -> None:
        event = event_from_update(Update(update_id=2, message=_message(text="hello")))
        self.assertEqual(event.kind, EventKind.TEXT)
        self.assertEqual(event.text, "hello")
        self.assertEqual(event.command_args, "")

    def test_media_message_is_other(self) -> None:
        event = event_from_update(Update(update_id=3, message=_message(caption="holiday")))
        self.assertEqual(event.kind, EventKind.OTHER)
        self.assertEqual(event.text, "holiday")

    def test_callback_query(self) -> None:
        query = CallbackQuery(id="q1", from_user=USER, chat_instance="ci", data="pick|3", message=_message(9))
        event = event_from_update(Update(update_id=4, callback_query=query))
        self.assertEqual(event.kind, EventKind.CALLBACK)
        self.assertEqual(event.callback.action, "pick")
        self.assertEqual(event.callback.args, ["3"])
        self.assertEqual(event.callback_query_id, "q1")
        self.assertEqual(event.message_id, 9)

    def test_malformed_callback_keeps_raw_data(self) -> None:
        query = CallbackQuery(id="q2", from_user=USER, chat_instance="ci", data="bad data", message=_message(9))
        event = event_from_update(Update(update_id=5, callback_query=query))
        self.assertIsNone(event.callback)
        self.assertEqual(event.callback_raw, "bad data")

    def test_bot_kicked_membership_change(self) -> None:
        change = ChatMemberUpdated(
            chat=CHAT,
            from_user=USER,
            date=NOW,
            old_chat_member=ChatMemberMember(user=BOT_USER),
            new_chat_member=ChatMemberBanned(user=BOT_USER, until_date=NOW),
        )
        event = event_from_update(Update(update_id=6, my_chat_member=change))
        self.assertEqual(event.kind, EventKind.MEMBER)
        self.assertEqual(event.member_status, MemberStatus.KICKED.value)
        self.assertEqual(event.sender_id, 7)


if __name__ == "__main__":
    unittest.main()
