"""Prometheus metrics for updates, handlers, messages, users and errors.

A ``BotMetrics`` built without a registry is disabled and every method is a
no-op, so components can take one unconditionally.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

ERROR_BOT_BLOCKED = "bot_blocked"
ERROR_HANDLER = "handler"
ERROR_INTERNAL = "internal"
ERROR_TELEGRAM_API = "telegram_api"
ERROR_INVALID_USER_STATE = "invalid_user_state"
ERROR_BAD_USAGE = "bad_usage"
ERROR_STORAGE = "storage"

SEVERITY_LOW = "low"
SEVERITY_HIGH = "high"

WINDOW_1H = "1h"
WINDOW_24H = "24h"

DEFAULT_SUBSYSTEM = "chatstate"
SESSION_LENGTH_SECONDS = 15 * 60
ACTIVE_USERS_REFRESH_SECONDS = 60
LONG_HANDLER_SECONDS = 1.0

HANDLER_BUCKETS = (0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10)
LONG_HANDLER_BUCKETS = (0.5, 1, 2, 4, 6, 8, 10)
SESSION_LENGTH_BUCKETS = (10, 30, 60, 120, 300, 600, 900, 1800, 3600)


@dataclass
class _ActiveUser:
    total_actions: int = 0
    last_seen: float = 0.0
    session_start: float = 0.0


@dataclass
class BotMetrics:
    registry: CollectorRegistry | None = None
    namespace: str = ""
    subsystem: str = DEFAULT_SUBSYSTEM
    clock: Callable[[], float] = time.monotonic
    _users: dict[int, _ActiveUser] = field(default_factory=dict, init=False, repr=False)
    _last_refresh: float | None = field(default=None, init=False, repr=False)
    _active_handlers: int = field(default=0, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.registry is None:
            return
        opts = {"namespace": self.namespace, "subsystem": self.subsystem, "registry": self.registry}
        self.updates = Counter("updates", "Total number of updates received", **opts)
        self.handlers_active = Gauge("handlers_active", "Number of handlers currently running", **opts)
        self.state_requests = Counter(
            "state_requests", "Total number of updates per message state", ["state"], **opts
        )
        self.handler_duration = Histogram(
            "handler_duration_seconds", "Handler execution time", buckets=HANDLER_BUCKETS, **opts
        )
        self.long_handler_duration = Histogram(
            "long_handler_duration_seconds",
            "Execution time of handlers slower than one second",
            ["state"],
            buckets=LONG_HANDLER_BUCKETS,
            **opts,
        )
        self.messages_sent = Counter("messages_send", "Total number of messages sent", **opts)
        self.messages_edited = Counter("messages_edit", "Total number of messages edited", **opts)
        self.messages_deleted = Counter("messages_delete", "Total number of messages deleted", **opts)
        self.errors = Counter("errors", "Total number of errors", ["type", "severity"], **opts)
        self.users_total = Gauge("users_total_active", "Total number of created users", **opts)
        self.users_current = Gauge("users_current_active", "Users active within a window", ["window"], **opts)
        self.users_actions = Gauge(
            "users_average_actions_count", "Average actions per active user within a window", ["window"], **opts
        )
        self.session_length = Histogram(
            "users_session_length_seconds", "Length of user sessions", buckets=SESSION_LENGTH_BUCKETS, **opts
        )
        self.cache_size = Gauge("users_cache_size", "Number of cached sessions", **opts)
        self.records_written = Counter("records_written", "Diffs persisted by the write-behind queue", **opts)
        self.records_dropped = Counter("records_dropped", "Diffs dropped after exhausting retries", **opts)

    @property
    def enabled(self) -> bool:
        return self.registry is not None

    def inc_update(self) -> None:
        if self.enabled:
            self.updates.inc()

    def inc_state_request(self, state: str) -> None:
        if self.enabled:
            self.state_requests.labels(state=state).inc()

    def handler_started(self) -> None:
        if not self.enabled:
            return
        self._active_handlers += 1
        self.handlers_active.set(self._active_handlers)

    def handler_finished(self, duration: float, state: str = "") -> None:
        if not self.enabled:
            return
        self._active_handlers = max(0, self._active_handlers - 1)
        self.handlers_active.set(self._active_handlers)
        self.handler_duration.observe(duration)
        if duration >= LONG_HANDLER_SECONDS:
            self.long_handler_duration.labels(state=state or "unknown").observe(duration)

    def inc_sent(self) -> None:
        if self.enabled:
            self.messages_sent.inc()

    def inc_edited(self) -> None:
        if self.enabled:
            self.messages_edited.inc()

    def inc_deleted(self, count: int = 1) -> None:
        if self.enabled and count > 0:
            self.messages_deleted.inc(count)

    def inc_error(self, error_type: str, severity: str) -> None:
        if self.enabled:
            self.errors.labels(type=error_type, severity=severity).inc()

    def inc_new_user(self) -> None:
        if self.enabled:
            self.users_total.inc()

    def set_cache_size(self, size: int) -> None:
        if self.enabled:
            self.cache_size.set(size)

    def inc_written(self) -> None:
        if self.enabled:
            self.records_written.inc()

    def inc_dropped(self) -> None:
        if self.enabled:
            self.records_dropped.inc()

    def add_active_user(self, user_id: int) -> None:
        if not self.enabled:
            return
        now = self.clock()
        stat = self._users.setdefault(user_id, _ActiveUser())
        if not stat.last_seen or now - stat.last_seen > SESSION_LENGTH_SECONDS:
            stat.session_start = now
        stat.total_actions += 1
        stat.last_seen = now
        if self._last_refresh is None or now - self._last_refresh > ACTIVE_USERS_REFRESH_SECONDS:
            self.refresh_active_users()

    def refresh_active_users(self) -> None:
        """Recompute the windowed gauges and forget users idle for more than a day."""
        if not self.enabled:
            return
        now = self.clock()
        self._last_refresh = now
        users_1h = users_24h = actions_1h = actions_24h = 0
        for user_id, stat in list(self._users.items()):
            idle = now - stat.last_seen
            if idle > 24 * 3600:
                del self._users[user_id]
                continue
            self.session_length.observe(now - stat.session_start)
            users_24h += 1
            actions_24h += stat.total_actions
            if idle <= 3600:
                users_1h += 1
                actions_1h += stat.total_actions
        self.users_current.labels(window=WINDOW_1H).set(users_1h)
        self.users_current.labels(window=WINDOW_24H).set(users_24h)
        if users_1h:
            self.users_actions.labels(window=WINDOW_1H).set(actions_1h // users_1h)
        if users_24h:
            self.users_actions.labels(window=WINDOW_24H).set(actions_24h // users_24h)
