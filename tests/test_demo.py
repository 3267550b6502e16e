from __future__ import annotations

import unittest

from chatstate import demo
from chatstate.callback import CallbackData
from chatstate.dispatch import Dispatcher
from chatstate.event import Event, EventKind
from chatstate.manager import SessionManager
from chatstate.memory.record_store import InMemoryRecordStore
from chatstate.record import Identity
from chatstate.writebehind import WriteBehindQueue

USER_ID = 7


class RecordingTransport:
    def __init__(self) -> None:
        self.next_id = 100
        self.edited: list[tuple[int, str]] = []
        self.deleted: list[int] = []
        self.answered: list[str] = []

    async def send(self, chat_id: int, text: str, *, reply_markup: object = None, parse_mode: str | None = None) -> int:
        self.next_id += 1
        return self.next_id

    async def edit(self, chat_id: int, msg_id: int, text: str, *, reply_markup: object = None, parse_mode: str | None = None) -> None:
        self.edited.append((msg_id, text))

    async def delete_messages(self, chat_id: int, *msg_ids: int) -> None:
        self.deleted.extend(msg_ids)

    async def answer_callback(self, query_id: str, text: str = "") -> None:
        self.answered.append(query_id)


def _event(kind: EventKind, message_id: int, **fields: object) -> Event:
    return Event(kind=kind, identity=Identity(id=USER_ID, first_name="Ada"), chat_id=USER_ID, message_id=message_id, **fields)


class DemoConversationTests(unittest.IsolatedAsyncioTestCase):
    async def test_name_conversation(self) -> None:
        store = InMemoryRecordStore()
        manager = SessionManager(store, WriteBehindQueue(store))
        transport = RecordingTransport()
        dispatcher = Dispatcher(manager, transport, log_updates=False)  # type: ignore[arg-type]
        demo.register(dispatcher)

        await dispatcher.dispatch(_event(EventKind.COMMAND, 50, text="/start", command="start"))
        await dispatcher.dispatch(
            _event(EventKind.CALLBACK, 101, callback=CallbackData(demo.ASK_NAME_ACTION), callback_query_id="q1")
        )
        session = await manager.lookup(USER_ID)
        self.assertEqual(await session.last_awaiting_text(), (101, True))

        await dispatcher.dispatch(_event(EventKind.TEXT, 60, text="Ada <3"))
        self.assertEqual(await session.get_value("name"), "Ada <3")
        self.assertEqual(transport.edited[-1], (101, "Hello, <b>Ada &lt;3</b>!"))
        self.assertEqual(await session.state_of(0), (demo.MENU, True))
        self.assertEqual(await session.last_awaiting_text(), (0, False))

        await dispatcher.dispatch(_event(EventKind.COMMAND, 61, text="/start", command="start"))
        messages = await session.messages()
        self.assertEqual(messages.main_id, 102)
        self.assertEqual(messages.history, [])
        self.assertIn(101, transport.deleted)
        self.assertEqual(transport.answered, ["q1"])


if __name__ == "__main__":
    unittest.main()
