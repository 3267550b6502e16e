"""Telegram bot runtime: feeds python-telegram-bot updates into the dispatch pipeline."""

from __future__ import annotations

from typing import Any

import structlog
from telegram import Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    ChatMemberHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from chatstate.config import Settings
from chatstate.dispatch import Dispatcher
from chatstate.event import event_from_update
from chatstate.manager import SessionManager
from chatstate.memory.event_journal import EventJournal
from chatstate.messages import MessageProvider
from chatstate.metrics import BotMetrics
from chatstate.transport import Transport

logger = structlog.get_logger(__name__)

SHUTDOWN_FLUSH_TIMEOUT_SECONDS = 10.0


class TelegramBot:
    def __init__(
        self,
        settings: Settings,
        manager: SessionManager,
        *,
        journal: EventJournal | None = None,
        messages: MessageProvider | None = None,
        metrics: BotMetrics | None = None,
    ) -> None:
        if not settings.bot.token:
            raise ValueError("bot token is not configured")
        self._settings = settings
        self._manager = manager
        self._journal = journal
        self._app: Application = (
            Application.builder()
            .token(settings.bot.token)
            .concurrent_updates(True)
            .post_init(self._post_init)
            .post_shutdown(self._post_shutdown)
            .build()
        )
        self.transport = Transport(
            self._app.bot,
            parse_mode=settings.bot.parse_mode,
            no_preview=settings.bot.no_preview,
            timeout_seconds=settings.bot.transport_timeout,
            metrics=metrics,
        )
        self.dispatcher = Dispatcher(
            manager,
            self.transport,
            messages=messages,
            default_language=settings.bot.default_language,
            obtain_timeout=settings.bot.obtain_timeout,
            delete_messages=settings.bot.delete_messages,
            log_updates=settings.log.log_updates,
            privacy=settings.bot.privacy_mode,
            journal=journal,
            metrics=metrics,
        )
        self._setup_handlers()

    @property
    def application(self) -> Application:
        return self._app

    async def _record(self, event_type: str, payload: dict[str, Any], decision: str = "allow") -> None:
        if self._journal is not None:
            await self._journal.record(event_type, payload, decision=decision)

    def _setup_handlers(self) -> None:
        self._app.add_handler(ChatMemberHandler(self._handle_update, ChatMemberHandler.MY_CHAT_MEMBER))
        self._app.add_handler(CallbackQueryHandler(self._handle_update))
        self._app.add_handler(MessageHandler(filters.ChatType.PRIVATE, self._handle_update))
        self._app.add_error_handler(self._handle_error)

    async def _handle_update(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self.dispatcher.dispatch(event_from_update(update))

    async def _handle_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        logger.error("unhandled update error", error=str(context.error), exc_info=context.error)

    async def _post_init(self, app: Application) -> None:
        me = await app.bot.get_me()
        logger.info("bot started", username=me.username, bot_id=me.id)
        await self._record(
            "bot_started",
            {
                "username": me.username,
                "cache_capacity": self._settings.cache.capacity,
                "delete_messages": self._settings.bot.delete_messages,
            },
        )

    async def _post_shutdown(self, app: Application) -> None:
        await self._manager.close(timeout=SHUTDOWN_FLUSH_TIMEOUT_SECONDS)
        writes = self._manager.writes
        logger.info("bot stopped", written=writes.written, dropped=writes.dropped)
        await self._record("bot_stopped", {"written": writes.written, "dropped": writes.dropped})

    def run(self) -> None:
        """Block in long polling until interrupted (SIGINT/SIGTERM)."""
        self._app.run_polling(allowed_updates=Update.ALL_TYPES, drop_pending_updates=False)
