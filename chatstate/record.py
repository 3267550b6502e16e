"""Correspondent record model with state-tracker and message-role transitions.

A Record is mutated only while its owner holds the per-record lock (see
``chatstate.manager.SessionHandle``). Every mutating method marks the field
groups it touched; ``take_diff`` turns those marks into a sparse ``RecordDiff``
for write-behind persistence.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Iterable

from chatstate.errors import ValidationError
from chatstate.state import CLEAR, DISABLED, FIRST_REQUEST, NO_CHANGE, State

GROUP_IDENTITY = "identity"
GROUP_STATE = "state"
GROUP_MESSAGES = "messages"
GROUP_STATS = "stats"
GROUP_DISABLED = "disabled"
GROUP_VALUES = "values"
GROUPS = (GROUP_IDENTITY, GROUP_STATE, GROUP_MESSAGES, GROUP_STATS, GROUP_DISABLED, GROUP_VALUES)

_SCALAR_TYPES = (str, int, float, bool, type(None))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt_to_str(value: datetime | None) -> str | None:
    return None if value is None else value.isoformat()


def _dt_from_str(raw: Any) -> datetime | None:
    if not raw:
        return None
    return datetime.fromisoformat(str(raw))


def _check_msg_id(msg_id: int) -> None:
    if not isinstance(msg_id, int) or msg_id < 0:
        raise ValidationError(f"invalid message id: {msg_id!r}")


@dataclass
class Identity:
    id: int
    is_bot: bool = False
    language_code: str = ""
    first_name: str = ""
    last_name: str = ""
    username: str = ""
    is_premium: bool = False
    forced_language: str = ""

    DISPLAY_FIELDS: ClassVar[tuple[str, ...]] = (
        "is_bot",
        "language_code",
        "first_name",
        "last_name",
        "username",
        "is_premium",
    )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Identity:
        return cls(
            id=int(raw["id"]),
            is_bot=bool(raw.get("is_bot", False)),
            language_code=str(raw.get("language_code") or ""),
            first_name=str(raw.get("first_name") or ""),
            last_name=str(raw.get("last_name") or ""),
            username=str(raw.get("username") or ""),
            is_premium=bool(raw.get("is_premium", False)),
            forced_language=str(raw.get("forced_language") or ""),
        )


@dataclass
class ConversationState:
    main: State = FIRST_REQUEST
    per_message: dict[int, State] = field(default_factory=dict)
    awaiting_text: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "main": self.main.to_dict(),
            "per_message": {str(k): v.to_dict() for k, v in self.per_message.items()},
            "awaiting_text": list(self.awaiting_text),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ConversationState:
        return cls(
            main=State.from_dict(raw.get("main")),
            per_message={int(k): State.from_dict(v) for k, v in (raw.get("per_message") or {}).items()},
            awaiting_text=[int(v) for v in raw.get("awaiting_text") or []],
        )


@dataclass
class MessageSlots:
    main_id: int = 0
    head_id: int = 0
    notification_id: int = 0
    error_id: int = 0
    history: list[int] = field(default_factory=list)
    last_actions: dict[int, datetime] = field(default_factory=dict)

    def has(self, msg_id: int) -> bool:
        if msg_id == 0:
            return False
        return msg_id in (self.main_id, self.head_id, self.notification_id, self.error_id) or msg_id in self.history

    def to_dict(self) -> dict[str, Any]:
        return {
            "main_id": self.main_id,
            "head_id": self.head_id,
            "notification_id": self.notification_id,
            "error_id": self.error_id,
            "history": list(self.history),
            "last_actions": {str(k): _dt_to_str(v) for k, v in self.last_actions.items()},
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> MessageSlots:
        return cls(
            main_id=int(raw.get("main_id", 0)),
            head_id=int(raw.get("head_id", 0)),
            notification_id=int(raw.get("notification_id", 0)),
            error_id=int(raw.get("error_id", 0)),
            history=[int(v) for v in raw.get("history") or []],
            last_actions={
                int(k): _dt_from_str(v) for k, v in (raw.get("last_actions") or {}).items() if v
            },
        )


@dataclass
class Stats:
    created_at: datetime = field(default_factory=utcnow)
    last_seen_at: datetime = field(default_factory=utcnow)
    disabled_at: datetime | None = None
    state_changes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_at": _dt_to_str(self.created_at),
            "last_seen_at": _dt_to_str(self.last_seen_at),
            "disabled_at": _dt_to_str(self.disabled_at),
            "state_changes": self.state_changes,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Stats:
        now = utcnow()
        return cls(
            created_at=_dt_from_str(raw.get("created_at")) or now,
            last_seen_at=_dt_from_str(raw.get("last_seen_at")) or now,
            disabled_at=_dt_from_str(raw.get("disabled_at")),
            state_changes=int(raw.get("state_changes", 0)),
        )


@dataclass
class RecordDiff:
    """Sparse set of field groups, each a detached JSON-compatible snapshot."""

    groups: dict[str, Any] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return bool(self.groups)

    def merge(self, other: RecordDiff) -> RecordDiff:
        return RecordDiff({**self.groups, **other.groups})


@dataclass
class Record:
    identity: Identity
    state: ConversationState = field(default_factory=ConversationState)
    messages: MessageSlots = field(default_factory=MessageSlots)
    stats: Stats = field(default_factory=Stats)
    disabled: bool = False
    values: dict[str, Any] = field(default_factory=dict)
    _dirty: set[str] = field(default_factory=set, repr=False, compare=False)

    @classmethod
    def new(cls, identity: Identity, *, now: datetime | None = None) -> Record:
        if identity.id == 0:
            raise ValidationError("record id must be non-zero")
        now = now or utcnow()
        return cls(identity=identity, stats=Stats(created_at=now, last_seen_at=now))

    @property
    def id(self) -> int:
        return self.identity.id

    def language(self, default: str = "en") -> str:
        return self.identity.forced_language or self.identity.language_code or default

    def set_state(self, msg_id: int, state: State, *, now: datetime | None = None) -> None:
        """Set the main state (msg_id 0) or a per-message override."""
        _check_msg_id(msg_id)
        if state.name == NO_CHANGE.name:
            return
        if state.is_reserved and state.name != CLEAR.name:
            raise ValidationError(f"state name is reserved: {state.name!r}")
        now = now or utcnow()
        if msg_id == 0:
            if state.name == CLEAR.name:
                raise ValidationError("main state cannot be cleared")
            self.state.main = state
        elif state.name == CLEAR.name:
            self.state.per_message.pop(msg_id, None)
            self._drop_awaiting(msg_id)
        else:
            self.state.per_message[msg_id] = state
            # The main message carries the conversation's default state.
            if msg_id == self.messages.main_id:
                self.state.main = state
            if state.is_text:
                self._push_awaiting(msg_id)
            else:
                self._drop_awaiting(msg_id)
        if msg_id:
            self.messages.last_actions[msg_id] = now
        self.stats.last_seen_at = now
        self.stats.state_changes += 1
        self._mark(GROUP_STATE, GROUP_MESSAGES, GROUP_STATS)

    def state_of(self, msg_id: int) -> tuple[State, bool]:
        _check_msg_id(msg_id)
        if msg_id == 0:
            return self.state.main, True
        override = self.state.per_message.get(msg_id)
        if override is None:
            return self.state.main, False
        return override, True

    def last_awaiting_text(self) -> tuple[int, bool]:
        if not self.state.awaiting_text:
            return 0, False
        return self.state.awaiting_text[-1], True

    def _push_awaiting(self, msg_id: int) -> None:
        queue = self.state.awaiting_text
        if queue and queue[-1] == msg_id:
            return
        if msg_id in queue:
            queue.remove(msg_id)
        queue.append(msg_id)

    def _drop_awaiting(self, msg_id: int) -> None:
        if msg_id in self.state.awaiting_text:
            self.state.awaiting_text.remove(msg_id)

    def commit_send(
        self,
        state: State,
        main_id: int,
        head_id: int = 0,
        *,
        now: datetime | None = None,
    ) -> None:
        """Record a new main/head pair, archiving the old main and applying state."""
        _check_msg_id(main_id)
        _check_msg_id(head_id)
        now = now or utcnow()
        slots = self.messages
        if main_id and slots.main_id and slots.main_id != main_id:
            slots.history.append(slots.main_id)
        if main_id:
            slots.main_id = main_id
            slots.last_actions[main_id] = now
        slots.head_id = head_id
        self._mark(GROUP_MESSAGES)
        if state.name != NO_CHANGE.name:
            self.set_state(main_id, state, now=now)

    def set_error_message(self, msg_id: int) -> None:
        _check_msg_id(msg_id)
        self.messages.error_id = msg_id
        self._mark(GROUP_MESSAGES)

    def set_notification_message(self, msg_id: int) -> None:
        _check_msg_id(msg_id)
        self.messages.notification_id = msg_id
        self._mark(GROUP_MESSAGES)

    def forget_history_message(self, *msg_ids: int) -> None:
        for msg_id in msg_ids:
            _check_msg_id(msg_id)
        drop = set(msg_ids)
        slots = self.messages
        slots.history = [v for v in slots.history if v not in drop]
        for msg_id in drop:
            slots.last_actions.pop(msg_id, None)
            self.state.per_message.pop(msg_id, None)
            self._drop_awaiting(msg_id)
        self._mark(GROUP_STATE, GROUP_MESSAGES)

    def refresh_identity(self, snapshot: Identity) -> bool:
        """Overwrite display fields from a fresher snapshot; True if anything changed."""
        if snapshot.id != self.identity.id:
            raise ValidationError(f"identity mismatch: {snapshot.id} != {self.identity.id}")
        changed = False
        for name in Identity.DISPLAY_FIELDS:
            value = getattr(snapshot, name)
            if getattr(self.identity, name) != value:
                setattr(self.identity, name, value)
                changed = True
        if changed:
            self._mark(GROUP_IDENTITY)
        return changed

    def force_language(self, code: str) -> None:
        self.identity.forced_language = code.strip().lower()
        self._mark(GROUP_IDENTITY)

    def disable(self, *, now: datetime | None = None) -> None:
        self.disabled = True
        self.stats.disabled_at = now or utcnow()
        self.state.main = DISABLED
        self._mark(GROUP_DISABLED, GROUP_STATS, GROUP_STATE)

    def enable(self) -> None:
        self.disabled = False
        self.stats.disabled_at = None
        self.state.main = FIRST_REQUEST
        self._mark(GROUP_DISABLED, GROUP_STATS, GROUP_STATE)

    def get_value(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def set_value(self, key: str, value: Any) -> None:
        if not key or not isinstance(key, str):
            raise ValidationError("value key must be a non-empty string")
        if not isinstance(value, _SCALAR_TYPES):
            raise ValidationError(f"unsupported value type for {key!r}: {type(value).__name__}")
        self.values[key] = value
        self._mark(GROUP_VALUES)

    def delete_value(self, key: str) -> bool:
        if key not in self.values:
            return False
        del self.values[key]
        self._mark(GROUP_VALUES)
        return True

    def clear_values(self) -> None:
        self.values.clear()
        self._mark(GROUP_VALUES)

    def _mark(self, *groups: str) -> None:
        self._dirty.update(groups)

    def take_diff(self) -> RecordDiff:
        diff = RecordDiff(self.to_groups(self._dirty))
        self._dirty.clear()
        return diff

    def to_groups(self, names: Iterable[str] | None = None) -> dict[str, Any]:
        wanted = GROUPS if names is None else tuple(n for n in GROUPS if n in set(names))
        encoders = {
            GROUP_IDENTITY: self.identity.to_dict,
            GROUP_STATE: self.state.to_dict,
            GROUP_MESSAGES: self.messages.to_dict,
            GROUP_STATS: self.stats.to_dict,
            GROUP_DISABLED: lambda: self.disabled,
            GROUP_VALUES: lambda: dict(self.values),
        }
        return {name: encoders[name]() for name in wanted}

    @classmethod
    def from_groups(cls, groups: dict[str, Any]) -> Record:
        if GROUP_IDENTITY not in groups:
            raise ValidationError("record groups are missing identity")
        return cls(
            identity=Identity.from_dict(groups[GROUP_IDENTITY]),
            state=ConversationState.from_dict(groups.get(GROUP_STATE) or {}),
            messages=MessageSlots.from_dict(groups.get(GROUP_MESSAGES) or {}),
            stats=Stats.from_dict(groups.get(GROUP_STATS) or {}),
            disabled=bool(groups.get(GROUP_DISABLED, False)),
            values=dict(groups.get(GROUP_VALUES) or {}),
        )

    def snapshot(self) -> Record:
        """Detached copy for readers outside the lock."""
        return Record.from_groups(self.to_groups())
