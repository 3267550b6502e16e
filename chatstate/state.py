"""Conversational state values and reserved sentinels."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

RESERVED_PREFIX = "__"


@dataclass(frozen=True)
class State:
    name: str
    is_text: bool = False

    def __str__(self) -> str:
        return self.name

    @property
    def is_reserved(self) -> bool:
        return self.name.startswith(RESERVED_PREFIX)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "is_text": self.is_text}

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> State:
        if not raw:
            return UNKNOWN
        return cls(name=str(raw.get("name", "")), is_text=bool(raw.get("is_text", False)))


# Sentinel: leave the current state untouched.
NO_CHANGE = State("")
# Sentinel: drop the per-message override so the message falls back to the main state.
CLEAR = State(RESERVED_PREFIX + "clear")

FIRST_REQUEST = State("first_request")
UNKNOWN = State("unknown")
DISABLED = State("disabled")


def text_state(name: str) -> State:
    """Shorthand for a state that expects a free-text reply."""
    return State(name, is_text=True)
