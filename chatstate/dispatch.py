"""Update dispatch pipeline.

identify -> obtain session (bounded) -> middleware chain -> message init -> handler ->
fault containment -> error translation -> callback acknowledgement.
"""

from __future__ import annotations

import asyncio
import time
import traceback
from dataclasses import dataclass, replace
from typing import Awaitable, Callable

import structlog
from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from chatstate.callback import CallbackData
from chatstate.config import PrivacyMode
from chatstate.errors import (
    BlockedByCorrespondent,
    ChatStateError,
    HandlerFault,
    MessageNotFound,
    NotFoundError,
    NotModified,
    TransportError,
    ValidationError,
)
from chatstate.event import Event, EventKind, MemberStatus
from chatstate.manager import SessionHandle, SessionManager
from chatstate.memory.event_journal import EventJournal
from chatstate.messages import MessageProvider
from chatstate.metrics import (
    ERROR_BAD_USAGE,
    ERROR_BOT_BLOCKED,
    ERROR_HANDLER,
    ERROR_INTERNAL,
    ERROR_INVALID_USER_STATE,
    SEVERITY_HIGH,
    SEVERITY_LOW,
    BotMetrics,
)
from chatstate.record import Identity
from chatstate.state import FIRST_REQUEST, NO_CHANGE, State
from chatstate.transport import Transport

logger = structlog.get_logger(__name__)
update_logger = structlog.get_logger("chatstate.updates")

Handler = Callable[["Context"], Awaitable[None]]
Middleware = Callable[[Event, "Context"], Awaitable[bool]]

CLOSE_ERROR_ACTION = "chatstate-close-error"
INIT_ACTION = "chatstate-init"
DEFAULT_OBTAIN_TIMEOUT_SECONDS = 10.0
MAX_TEXT_LEN_IN_LOGS = 64
REDACTED = "[REDACTED]"


def _truncate(text: str, limit: int = MAX_TEXT_LEN_IN_LOGS) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


async def _delete_quietly(transport: Transport, chat_id: int, msg_id: int) -> None:
    """Best-effort delete; only a block is worth surfacing."""
    try:
        await transport.delete_messages(chat_id, msg_id)
    except BlockedByCorrespondent:
        raise
    except TransportError as exc:
        logger.debug("cannot delete message", chat_id=chat_id, msg_id=msg_id, error=str(exc))


@dataclass(frozen=True)
class InitBundle:
    """Redraws a message of a given state after the process lost its in-memory view of it.

    The handler runs with a callback event whose action is ``INIT_ACTION`` and whose
    payload is ``data``; ``text`` stands in for the event text.
    """

    handler: Handler
    data: str = ""
    text: str = ""


class Context:
    """Per-event handler context bound to one correspondent session."""

    def __init__(
        self,
        event: Event,
        session: SessionHandle,
        transport: Transport,
        *,
        language: str,
        text_message_id: int = 0,
    ) -> None:
        self.event = event
        self.session = session
        self.transport = transport
        self.language = language
        self.text_message_id = text_message_id
        self.responded = False

    @property
    def chat_id(self) -> int:
        return self.event.chat_id or self.event.sender_id

    async def state(self) -> State:
        state, _ = await self.session.state_of(self.event.message_id)
        return state

    async def send_main(
        self,
        state: State,
        text: str,
        *,
        head_text: str | None = None,
        reply_markup: object = None,
    ) -> int:
        """Send a new main message (and optional head) and commit the role transition."""
        previous = await self.session.messages()
        head_id = 0
        if head_text is not None:
            head_id = await self.transport.send(self.chat_id, head_text)
        main_id = await self.transport.send(self.chat_id, text, reply_markup=reply_markup)
        await self.session.commit_send(state, main_id, head_id)
        if previous.head_id and previous.head_id != head_id:
            await _delete_quietly(self.transport, self.chat_id, previous.head_id)
        return main_id

    async def edit(
        self,
        msg_id: int,
        text: str,
        *,
        state: State = NO_CHANGE,
        reply_markup: object = None,
    ) -> None:
        await self.transport.edit(self.chat_id, msg_id, text, reply_markup=reply_markup)
        await self.session.set_state(msg_id, state)

    async def edit_main(self, text: str, *, state: State = NO_CHANGE, reply_markup: object = None) -> None:
        messages = await self.session.messages()
        if not messages.main_id:
            raise ValidationError("there is no main message to edit")
        await self.edit(messages.main_id, text, state=state, reply_markup=reply_markup)

    async def send_notification(self, text: str, *, reply_markup: object = None) -> int:
        messages = await self.session.messages()
        if messages.notification_id:
            await _delete_quietly(self.transport, self.chat_id, messages.notification_id)
        msg_id = await self.transport.send(self.chat_id, text, reply_markup=reply_markup)
        await self.session.set_notification_message(msg_id)
        return msg_id

    async def delete_notification(self) -> None:
        messages = await self.session.messages()
        if not messages.notification_id:
            return
        await _delete_quietly(self.transport, self.chat_id, messages.notification_id)
        await self.session.set_notification_message(0)

    async def delete_history(self) -> None:
        messages = await self.session.messages()
        if not messages.history:
            return
        try:
            await self.transport.delete_messages(self.chat_id, *messages.history)
        finally:
            await self.session.forget_history_message(*messages.history)

    async def respond(self, text: str = "") -> None:
        """Answer the pressed button; later calls and non-callback events are no-ops."""
        if self.event.kind != EventKind.CALLBACK or self.responded:
            return
        await self.transport.answer_callback(self.event.callback_query_id, text)
        self.responded = True


class Dispatcher:
    def __init__(
        self,
        manager: SessionManager,
        transport: Transport,
        *,
        messages: MessageProvider | None = None,
        default_language: str = "en",
        obtain_timeout: float = DEFAULT_OBTAIN_TIMEOUT_SECONDS,
        delete_messages: bool = True,
        log_updates: bool = True,
        privacy: PrivacyMode = PrivacyMode.NO,
        journal: EventJournal | None = None,
        metrics: BotMetrics | None = None,
    ) -> None:
        self._manager = manager
        self._transport = transport
        self._messages = messages or MessageProvider(default_language=default_language)
        self._default_language = default_language
        self._obtain_timeout = obtain_timeout
        self._delete_messages = delete_messages
        self._privacy = privacy
        self._journal = journal
        self._metrics = metrics or BotMetrics()
        self._commands: dict[str, Handler] = {}
        self._callbacks: dict[str, Handler] = {CLOSE_ERROR_ACTION: self._close_error}
        self._text_handler: Handler | None = None
        self._start_handler: Handler | None = None
        self._init_bundles: dict[str, InitBundle] = {}
        self._middlewares: list[Middleware] = [self.cleanup_middleware]
        if log_updates:
            self._middlewares.append(self.audit_middleware)
        self._middlewares.append(self.start_middleware)

    def on_command(self, name: str, handler: Handler) -> None:
        self._commands[name.lstrip("/").lower()] = handler

    def on_callback(self, action: str, handler: Handler) -> None:
        if action == CLOSE_ERROR_ACTION:
            self._metrics.inc_error(ERROR_BAD_USAGE, SEVERITY_HIGH)
            raise ValidationError(f"callback action is reserved: {action}")
        self._callbacks[action] = handler

    def on_text(self, handler: Handler) -> None:
        self._text_handler = handler

    def on_start(self, handler: Handler) -> None:
        """Handler for /start, also run before the first event of a new correspondent."""
        self._start_handler = handler
        self._commands["start"] = handler

    def on_init(self, state: State, handler: Handler, *, data: str = "", text: str = "") -> None:
        """Register how to redraw messages in ``state`` that this process has not rendered yet."""
        if not state.name or state.is_reserved:
            self._metrics.inc_error(ERROR_BAD_USAGE, SEVERITY_HIGH)
            raise ValidationError(f"cannot register init handler for state {state.name!r}")
        self._init_bundles[state.name] = InitBundle(handler, data=data, text=text)

    def add_middleware(self, *middlewares: Middleware) -> None:
        self._middlewares.extend(middlewares)

    async def dispatch(self, event: Event) -> None:
        self._metrics.inc_update()
        if event.identity is None:
            logger.warning("cannot identify sender", update_id=event.update_id, kind=event.kind.value)
            return
        with structlog.contextvars.bound_contextvars(update_id=event.update_id):
            if event.kind == EventKind.MEMBER:
                await self._handle_member(event)
                return
            started = time.monotonic()
            await self._dispatch_session(event, event.identity)
            logger.debug(
                "update handled",
                kind=event.kind.value,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )

    async def _dispatch_session(self, event: Event, identity: Identity) -> None:
        try:
            session = await asyncio.wait_for(self._manager.obtain(identity), self._obtain_timeout)
        except asyncio.TimeoutError:
            logger.error("cannot obtain session", **self._user_fields(identity), error="timeout")
            self._metrics.inc_error(ERROR_INTERNAL, SEVERITY_HIGH)
            await self._send_raw_error(event)
            return
        except ChatStateError as exc:
            logger.error("cannot obtain session", **self._user_fields(identity), error=str(exc))
            self._metrics.inc_error(ERROR_INTERNAL, SEVERITY_HIGH)
            await self._send_raw_error(event)
            return

        ctx = Context(
            event,
            session,
            self._transport,
            language=await session.language(self._default_language),
        )
        if event.kind == EventKind.TEXT:
            msg_id, ok = await session.last_awaiting_text()
            ctx.text_message_id = msg_id if ok else 0

        self._metrics.add_active_user(identity.id)
        state, has_state = await session.state_of(event.message_id)
        if has_state:
            self._metrics.inc_state_request(state.name)

        self._metrics.handler_started()
        started = time.monotonic()
        try:
            err = await self._protected(self._process, ctx)
        finally:
            self._metrics.handler_finished(time.monotonic() - started, state.name)
        reachable = True
        if err is not None:
            reachable = await self._handle_error(ctx, err)
        if reachable and event.kind == EventKind.CALLBACK:
            await self._acknowledge(ctx)

    async def _process(self, ctx: Context) -> None:
        for middleware in self._middlewares:
            if not await middleware(ctx.event, ctx):
                logger.debug("middleware stopped chain", middleware=getattr(middleware, "__name__", repr(middleware)))
                return
        await self._init_message(ctx)
        await self._route(ctx)

    async def _route(self, ctx: Context) -> None:
        event = ctx.event
        handler: Handler | None = None
        route = ""
        if event.kind == EventKind.COMMAND:
            route = event.command
            handler = self._commands.get(event.command)
        elif event.kind == EventKind.TEXT:
            route = "text"
            handler = self._text_handler
        elif event.kind == EventKind.CALLBACK and event.callback is not None:
            route = event.callback.action
            handler = self._callbacks.get(event.callback.action)
        if handler is None:
            logger.debug("no handler for event", kind=event.kind.value, route=route or event.callback_raw)
            return
        await handler(ctx)

    async def _init_message(self, ctx: Context) -> None:
        """Redraw the touched message once per process so its keyboard matches the live handlers."""
        msg_id = ctx.event.message_id
        if not self._init_bundles or not await ctx.session.needs_init(msg_id):
            return
        messages = await ctx.session.messages()
        try:
            if not messages.main_id or msg_id in (messages.notification_id, messages.error_id):
                return
            main_state, _ = await ctx.session.state_of(0)
            if main_state.name == FIRST_REQUEST.name:
                return
            await self._redraw(ctx, messages.main_id if msg_id == messages.head_id else msg_id)
        finally:
            marked = [msg_id]
            if msg_id == messages.head_id:
                marked.append(messages.main_id)
            elif msg_id == messages.main_id:
                marked.append(messages.head_id)
            await ctx.session.mark_initialized(*marked)

    async def _redraw(self, ctx: Context, msg_id: int) -> None:
        fields = {**self._user_fields(ctx.event.identity), "msg_id": msg_id}
        state, ok = await ctx.session.state_of(msg_id)
        if not ok:
            logger.warning("forget history message without state", **fields)
            await ctx.session.forget_history_message(msg_id)
            self._metrics.inc_error(ERROR_INVALID_USER_STATE, SEVERITY_LOW)
            return
        bundle = self._init_bundles.get(state.name)
        if bundle is None:
            logger.warning("init handler not found", **fields, state=str(state))
            self._metrics.inc_error(ERROR_INVALID_USER_STATE, SEVERITY_LOW)
        else:
            err = await self._run_init(ctx, bundle, msg_id)
            if err is None:
                return
            logger.warning("init handler failed, falling back to start", **fields, state=str(state), error=str(err))
        if self._start_handler is None:
            return
        err = await self._run_init(ctx, InitBundle(self._start_handler), msg_id)
        if err is not None:
            raise err

    async def _run_init(self, ctx: Context, bundle: InitBundle, msg_id: int) -> ChatStateError | None:
        before = await ctx.session.messages()
        event = replace(
            ctx.event,
            kind=EventKind.CALLBACK,
            message_id=msg_id,
            text=bundle.text,
            callback=CallbackData(INIT_ACTION, bundle.data),
            callback_raw=bundle.data,
            callback_query_id="",
        )
        init_ctx = Context(event, ctx.session, self._transport, language=ctx.language)
        # Nothing to acknowledge for a replayed event.
        init_ctx.responded = True
        err = await self._protected(bundle.handler, init_ctx)
        if isinstance(err, NotModified):
            err = None
        if err is not None:
            return err
        after = await ctx.session.messages()
        if before.main_id and after.main_id != before.main_id:
            await _delete_quietly(self._transport, ctx.chat_id, before.main_id)
            await ctx.session.forget_history_message(before.main_id)
        return None

    async def _protected(self, fn: Handler, ctx: Context) -> ChatStateError | None:
        """Run ``fn``; transport errors come back as-is, anything else as HandlerFault."""
        try:
            await fn(ctx)
        except (TransportError, HandlerFault) as exc:
            return exc
        except Exception as exc:
            return HandlerFault(exc, traceback.format_exc())
        return None

    async def _handle_error(self, ctx: Context, err: ChatStateError) -> bool:
        """Translate a handler error; returns False when the correspondent is unreachable."""
        event = ctx.event
        identity = event.identity
        if isinstance(err, BlockedByCorrespondent):
            logger.info("bot is blocked", **self._user_fields(identity))
            await self._disable(event.sender_id, reason="blocked")
            return False
        if isinstance(err, MessageNotFound):
            logger.warning("message not found", **self._user_fields(identity), msg_id=event.message_id, error=str(err))
            return True

        state, _ = await ctx.session.state_of(event.message_id)
        fields = {**self._user_fields(identity), "state": str(state), "kind": event.kind.value}
        if isinstance(err, HandlerFault):
            logger.error("handler fault", **fields, error=str(err.cause), exc_info=err.cause)
            self._metrics.inc_error(ERROR_HANDLER, SEVERITY_HIGH)
            if self._journal is not None:
                await self._journal.record(
                    "handler_fault",
                    {"state": str(state), "error": str(err.cause), "traceback": err.traceback_text},
                    record_id=event.sender_id,
                    decision="deny",
                )
        else:
            logger.error("handler failed", **fields, error=str(err))
        return await self._send_error(ctx)

    async def _send_error(self, ctx: Context) -> bool:
        texts = self._messages.messages(ctx.language)
        markup = None
        if texts.close_button:
            markup = InlineKeyboardMarkup(
                [[InlineKeyboardButton(texts.close_button, callback_data=CLOSE_ERROR_ACTION)]]
            )
        try:
            previous = await ctx.session.messages()
            if previous.error_id:
                await _delete_quietly(self._transport, ctx.chat_id, previous.error_id)
            msg_id = await self._transport.send(ctx.chat_id, texts.general_error, reply_markup=markup)
        except BlockedByCorrespondent:
            logger.info("bot is blocked", **self._user_fields(ctx.event.identity))
            await self._disable(ctx.event.sender_id, reason="blocked")
            return False
        except TransportError as exc:
            logger.error("cannot send error message", **self._user_fields(ctx.event.identity), error=str(exc))
            return True
        await ctx.session.set_error_message(msg_id)
        return True

    async def _send_raw_error(self, event: Event) -> None:
        text = self._messages.general_error(self._default_language)
        try:
            await self._transport.send(event.chat_id or event.sender_id, text)
        except TransportError as exc:
            logger.error("cannot send error message", **self._user_fields(event.identity), error=str(exc))

    async def _acknowledge(self, ctx: Context) -> None:
        try:
            await ctx.respond()
        except TransportError as exc:
            logger.debug("cannot answer callback", **self._user_fields(ctx.event.identity), error=str(exc))

    async def _handle_member(self, event: Event) -> None:
        if event.member_status == MemberStatus.KICKED.value:
            logger.info("bot is blocked", **self._user_fields(event.identity))
            self._metrics.inc_error(ERROR_BOT_BLOCKED, SEVERITY_LOW)
            await self._disable(event.sender_id, reason="kicked")
            return
        logger.info("bot membership changed", **self._user_fields(event.identity), status=event.member_status)

    async def _disable(self, record_id: int, *, reason: str) -> None:
        try:
            await self._manager.disable(record_id)
        except NotFoundError:
            logger.warning("cannot disable unknown record", record_id=record_id)
            return
        if self._journal is not None:
            await self._journal.record("correspondent_disabled", {"reason": reason}, record_id=record_id, decision="deny")

    async def _close_error(self, ctx: Context) -> None:
        messages = await ctx.session.messages()
        if not messages.error_id:
            return
        await _delete_quietly(self._transport, ctx.chat_id, messages.error_id)
        await ctx.session.set_error_message(0)

    def _user_fields(self, identity: Identity | None) -> dict[str, object]:
        if identity is None:
            return {}
        if self._privacy == PrivacyMode.STRICT:
            return {"user_id": REDACTED}
        fields: dict[str, object] = {"user_id": identity.id}
        if self._privacy == PrivacyMode.NO and identity.username:
            fields["username"] = identity.username
        return fields

    async def cleanup_middleware(self, event: Event, ctx: Context) -> bool:
        messages = await ctx.session.messages()
        if messages.error_id:
            await _delete_quietly(self._transport, ctx.chat_id, messages.error_id)
            await ctx.session.set_error_message(0)
        if (
            self._delete_messages
            and event.message_id
            and event.kind in (EventKind.COMMAND, EventKind.TEXT, EventKind.OTHER)
            and not event.is_start
        ):
            await _delete_quietly(self._transport, ctx.chat_id, event.message_id)
        return True

    async def audit_middleware(self, event: Event, ctx: Context) -> bool:
        try:
            state, _ = await ctx.session.state_of(event.message_id)
            fields: dict[str, object] = {
                **self._user_fields(event.identity),
                "kind": event.kind.value,
                "state": str(state),
                "msg_id": event.message_id,
            }
            if event.kind == EventKind.TEXT and ctx.text_message_id:
                text_state, _ = await ctx.session.state_of(ctx.text_message_id)
                fields["text_state"] = str(text_state)
                fields["text_state_msg_id"] = ctx.text_message_id
            if event.kind == EventKind.CALLBACK:
                fields["action"] = event.callback.action if event.callback else ""
                if self._privacy == PrivacyMode.NO and event.callback:
                    fields["payload"] = event.callback.payload
            elif self._privacy == PrivacyMode.NO and event.text:
                fields["text"] = _truncate(event.text)
            update_logger.info("update", **fields)
        except Exception:
            logger.exception("cannot log update", update_id=event.update_id)
        return True

    async def start_middleware(self, event: Event, ctx: Context) -> bool:
        if self._start_handler is None or event.is_start:
            return True
        state, _ = await ctx.session.state_of(0)
        if state.name != FIRST_REQUEST.name:
            return True
        err = await self._protected(self._start_handler, ctx)
        if err is not None:
            logger.error("start handler failed", **self._user_fields(event.identity), error=str(err))
            self._metrics.inc_error(ERROR_HANDLER, SEVERITY_HIGH)
        return True
