"""Callback payload parsing: ``<action>[|<payload>]``."""

from __future__ import annotations

from dataclasses import dataclass

from chatstate.errors import ValidationError

SEPARATOR = "|"
# Telegram limits callback_data to 64 bytes.
MAX_CALLBACK_DATA_BYTES = 64


@dataclass(frozen=True)
class CallbackData:
    action: str
    payload: str = ""

    @property
    def args(self) -> list[str]:
        if not self.payload:
            return []
        return self.payload.split(SEPARATOR)


def _is_action_char(ch: str) -> bool:
    return ch.isalnum() or ch in "-_"


def parse_callback_data(data: str | None) -> CallbackData:
    """Split on the first separator; the action must be word characters or '-'."""
    raw = (data or "").strip()
    action, _, payload = raw.partition(SEPARATOR)
    if not action or not all(_is_action_char(ch) for ch in action):
        raise ValidationError(f"malformed callback data: {data!r}")
    return CallbackData(action=action, payload=payload)


def build_callback_data(action: str, *args: object) -> str:
    if not action or not all(_is_action_char(ch) for ch in action):
        raise ValidationError(f"invalid callback action: {action!r}")
    data = SEPARATOR.join([action, *(str(a) for a in args)])
    if len(data.encode("utf-8")) > MAX_CALLBACK_DATA_BYTES:
        raise ValidationError(f"callback data exceeds {MAX_CALLBACK_DATA_BYTES} bytes: {data!r}")
    return data
