from __future__ import annotations

import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock

from telegram.error import BadRequest, Forbidden, NetworkError

from chatstate.errors import BlockedByCorrespondent, MessageNotFound, NotModified, TransportError, ValidationError
from chatstate.transport import Transport, classify_error


class ClassifyErrorTests(unittest.TestCase):
    def test_known_platform_errors(self) -> None:
        self.assertIsInstance(classify_error(Forbidden("Forbidden: bot was blocked by the user")), BlockedByCorrespondent)
        self.assertIsInstance(
            classify_error(BadRequest("Message is not modified: specified new message content is the same")),
            NotModified,
        )
        self.assertIsInstance(classify_error(BadRequest("Bad Request: message to edit not found")), MessageNotFound)
        self.assertIsInstance(classify_error(BadRequest("Message to delete not found")), MessageNotFound)

    def test_other_errors_stay_generic(self) -> None:
        for exc in (BadRequest("Chat not found"), NetworkError("connection reset")):
            with self.subTest(exc=exc):
                err = classify_error(exc)
                self.assertIs(type(err), TransportError)


class TransportTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.bot = AsyncMock()
        self.bot.send_message.return_value = SimpleNamespace(message_id=42)
        self.transport = Transport(self.bot, parse_mode="HTML", no_preview=True, timeout_seconds=5)

    async def test_send_returns_message_id_with_defaults(self) -> None:
        msg_id = await self.transport.send(7, "<b>hi</b>")
        self.assertEqual(msg_id, 42)
        kwargs = self.bot.send_message.await_args.kwargs
        self.assertEqual(kwargs["chat_id"], 7)
        self.assertEqual(kwargs["parse_mode"], "HTML")
        self.assertTrue(kwargs["link_preview_options"].is_disabled)
        self.assertEqual(kwargs["read_timeout"], 5)

    async def test_send_translates_block(self) -> None:
        self.bot.send_message.side_effect = Forbidden("Forbidden: bot was blocked by the user")
        with self.assertRaises(BlockedByCorrespondent):
            await self.transport.send(7, "hi")

    async def test_send_rejects_zero_chat(self) -> None:
        with self.assertRaises(ValidationError):
            await self.transport.send(0, "hi")
        self.bot.send_message.assert_not_awaited()

    async def test_edit_ignores_not_modified(self) -> None:
        self.bot.edit_message_text.side_effect = BadRequest("Message is not modified")
        await self.transport.edit(7, 10, "same")
        self.bot.edit_message_text.assert_awaited_once()

    async def test_edit_raises_message_not_found(self) -> None:
        self.bot.edit_message_text.side_effect = BadRequest("Message to edit not found")
        with self.assertRaises(MessageNotFound):
            await self.transport.edit(7, 10, "text")

    async def test_delete_attempts_every_id_then_raises_first_failure(self) -> None:
        self.bot.delete_message.side_effect = [
            BadRequest("Message to delete not found"),
            True,
            Forbidden("Forbidden: bot was blocked by the user"),
            BadRequest("Chat not found"),
        ]
        with self.assertRaises(BlockedByCorrespondent):
            await self.transport.delete_messages(7, 1, 2, 3, 4)
        self.assertEqual(self.bot.delete_message.await_count, 4)

    async def test_delete_ignores_missing_messages(self) -> None:
        self.bot.delete_message.side_effect = BadRequest("Message to delete not found")
        await self.transport.delete_messages(7, 1)

    async def test_answer_callback(self) -> None:
        await self.transport.answer_callback("q1")
        kwargs = self.bot.answer_callback_query.await_args.kwargs
        self.assertEqual(kwargs["callback_query_id"], "q1")
        self.assertIsNone(kwargs["text"])


if __name__ == "__main__":
    unittest.main()
