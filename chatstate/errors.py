"""Error taxonomy shared by the session engine, stores and transport."""

from __future__ import annotations


class ChatStateError(Exception):
    """Base class for all engine errors."""


class ValidationError(ChatStateError, ValueError):
    """Raised for zero/invalid identifiers and malformed arguments."""


class NotFoundError(ChatStateError, LookupError):
    """Raised when a non-creating lookup misses the store."""


class StorageError(ChatStateError):
    """Raised when the persistent store cannot complete an operation."""


class DuplicateRecordError(StorageError):
    """Raised when inserting a record whose id already exists."""


class StorageWriteError(StorageError):
    """A write-behind diff that could not be applied after all retries."""

    def __init__(self, record_id: int, attempts: int, cause: BaseException) -> None:
        super().__init__(f"write for record {record_id} failed after {attempts} attempts: {cause}")
        self.record_id = record_id
        self.attempts = attempts
        self.cause = cause


class TransportError(ChatStateError):
    """Raised when the chat platform rejects a request."""


class NotModified(TransportError):
    """Edit was a no-op because content and markup are unchanged."""


class MessageNotFound(TransportError):
    """Target message no longer exists on the platform."""


class BlockedByCorrespondent(TransportError):
    """Correspondent blocked the bot; they can no longer be reached."""


class HandlerFault(ChatStateError):
    """Uncontrolled failure raised by a handler, contained at the dispatch boundary."""

    def __init__(self, cause: BaseException, traceback_text: str = "") -> None:
        super().__init__(f"handler fault: {type(cause).__name__}: {cause}")
        self.cause = cause
        self.traceback_text = traceback_text
