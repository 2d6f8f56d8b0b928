"""Store contracts consumed by the sync engine.

The engine never talks to a database or network directly.  It drives two
collaborators through the protocols below; ``sync.state.LocalStateStore``
and ``core.client.RemoteStoreClient`` are the bundled implementations.

Both protocols are synchronous.  The engine runs every call in a worker
thread, so adapters are free to block.  Adapters report I/O failures as
``LocalStoreError`` / ``RemoteStoreError``; anything else is treated as
fatal.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

Document = dict[str, Any]


class LocalStore(Protocol):
    """Device-local persistence for the three entity kinds."""

    def load_collection(self, kind: str) -> list[Document]:
        """Return every stored document of *kind*."""
        ...  # pragma: no cover

    def save_collection(self, kind: str, items: list[Document]) -> None:
        """Replace the stored collection of *kind* with *items*."""
        ...  # pragma: no cover

    def load_singleton(self, kind: str, key: str) -> Document | None:
        """Return the singleton of *kind* stored under *key*, if any."""
        ...  # pragma: no cover

    def save_singleton(self, kind: str, item: Document) -> None:
        """Store a singleton document of *kind*."""
        ...  # pragma: no cover

    def load_status(self) -> Document | None:
        """Return the last persisted sync status, if any."""
        ...  # pragma: no cover

    def save_status(self, status: Document) -> None:
        """Persist the sync status."""
        ...  # pragma: no cover


class RemoteStore(Protocol):
    """Shared remote document store, partitioned by user."""

    def query(self, kind: str, user_id: str) -> list[Document]:
        """Return the user's documents of *kind*, newest first."""
        ...  # pragma: no cover

    def batch_upsert(
        self, kind: str, user_id: str, documents: list[Document]
    ) -> None:
        """Create or replace *documents*; atomic-or-nothing."""
        ...  # pragma: no cover

    def batch_delete(
        self, kind: str, user_id: str, ids: list[str]
    ) -> None:
        """Delete the documents with *ids*; atomic-or-nothing."""
        ...  # pragma: no cover

    def get_singleton(self, kind: str, user_id: str) -> Document | None:
        """Return the user's singleton document of *kind*, if any."""
        ...  # pragma: no cover

    def set_singleton(
        self, kind: str, user_id: str, document: Document
    ) -> None:
        """Create or replace the user's singleton document of *kind*."""
        ...  # pragma: no cover


@runtime_checkable
class BatchWriter(Protocol):
    """Optional capability: upserts and deletes in one atomic batch."""

    def batch_write(
        self,
        kind: str,
        user_id: str,
        documents: list[Document],
        ids: list[str],
    ) -> None:
        """Apply *documents* upserts and *ids* deletes atomically."""
        ...  # pragma: no cover
