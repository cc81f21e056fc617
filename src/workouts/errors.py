"""Error taxonomy for the sync core.

    transient         : network / remote store unreachable; retried at the next trigger
    conflict          : resolved by the merge rule, never raised
    permanent_local   : disk full, permission denied, store unusable
    protocol_violation: malformed inbound message; dropped and logged
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    CONFLICT = "conflict"
    PERMANENT_LOCAL = "permanent_local"
    PROTOCOL_VIOLATION = "protocol_violation"


class SyncError(Exception):
    """Base class for every error raised by the sync core."""

    kind: ErrorKind = ErrorKind.TRANSIENT


class TransientError(SyncError):
    """The remote store, file namespace or peer could not be reached."""

    kind = ErrorKind.TRANSIENT


class PermanentLocalError(SyncError):
    kind = ErrorKind.PERMANENT_LOCAL


class LocalStoreError(PermanentLocalError):
    """A write to the local store failed; the record is not committed."""


class StoreUnavailableError(PermanentLocalError):
    """The local store cannot be opened at all. Fatal at startup."""


class ProtocolViolation(SyncError):
    """An inbound message could not be parsed into a record."""

    kind = ErrorKind.PROTOCOL_VIOLATION


class ArchiveFailure(str, Enum):
    NAMESPACE_UNAVAILABLE = "namespace_unavailable"
    COPY_FAILED = "copy_failed"
    VERIFY_FAILED = "verify_failed"


class ArchiveError(SyncError):
    """Archival did not complete. The local scratch file is always kept."""

    def __init__(
        self, reason: ArchiveFailure, message: str = "", *, local: bool = False
    ) -> None:
        self.reason = reason
        self.local = local
        super().__init__(message or reason.value)

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        # Unreadable scratch files will not fix themselves on retry.
        return ErrorKind.PERMANENT_LOCAL if self.local else ErrorKind.TRANSIENT


class NameTakenError(SyncError):
    """Raised by a namespace when an exclusive write finds the name in use."""
