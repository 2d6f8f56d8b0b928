"""Exception hierarchy for the sync engine.

The orchestrator treats ``TransientSyncError`` as a per-kind failure: the
affected entity kind keeps its pre-cycle state and the other kinds carry
on.  Everything else that escapes a store adapter is considered fatal and
propagates to the caller.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all expense-sync errors."""


class TransientSyncError(SyncError):
    """Retryable I/O failure; calling sync again is safe."""


class RemoteStoreError(TransientSyncError):
    """A read or write against the remote document store failed."""


class RemoteTimeoutError(RemoteStoreError):
    """A remote call did not complete within the configured timeout."""


class LocalStoreError(TransientSyncError):
    """Reading or writing the local snapshot failed."""


class RecordSchemaError(SyncError):
    """A document is missing envelope fields or carries invalid values.

    Attributes:
        kind: Entity kind the document was parsed as.
        record_id: The document's ``id`` if one could be read.
    """

    def __init__(
        self, message: str, kind: str, record_id: str | None = None
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.record_id = record_id


class CategoryInUseError(SyncError):
    """A category was deleted while active expenses still reference it."""

    def __init__(self, category_id: str, expense_count: int) -> None:
        super().__init__(
            f"Category '{category_id}' is used by {expense_count} "
            f"expense(s) and cannot be deleted"
        )
        self.category_id = category_id
        self.expense_count = expense_count


class ConfigError(SyncError, ValueError):
    """Configuration is missing or invalid."""
