"""Error taxonomy shared by the record store, sync, recovery and share layers."""

from enum import StrEnum


class RecordError(Exception):
    """Base class for record store failures."""


class RecordValidationError(RecordError):
    """Malformed, oversized or structurally invalid record input.

    Always surfaced to the caller; the input is never partially applied.
    """


class SyncErrorReason(StrEnum):
    NETWORK = "network"
    AUTH_REQUIRED = "auth_required"
    QUOTA = "quota"
    VALIDATION = "validation"
    CONFLICT = "conflict"


class SyncError(RecordError):
    """A remote query or create call failed.

    The affected record stays unsynced and is retried on the next opportunity.
    """

    def __init__(self, reason: SyncErrorReason, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)


class RecoveryError(RecordError):
    """Reading or writing a recovery snapshot failed."""


class StorageExhaustedError(RecordError):
    """The persistent store refused a write for lack of capacity.

    Retrying will not help; callers should prompt the user to free space.
    """
