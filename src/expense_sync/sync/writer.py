"""Remote writer: pushes one kind's pending records as a batch.

The writer turns a merge plan's push set into remote writes:

* Non-tombstoned records become upserts, stamped with the push time.
* Tombstoned expenses become deletes.
* Everything for one kind goes out as a single ``batch_write`` when the
  store offers it; otherwise deletes and upserts go through
  ``batch_delete`` / ``batch_upsert``, each atomic on its own.

Success is all-or-nothing per kind: if any remote call fails the writer
raises, and the engine keeps the kind's pre-cycle state.  On success,
``apply_push`` stamps ``last_synced_at`` on the pushed records in the
merged snapshot.

Remote calls run in worker threads under the shared semaphore and a
per-call timeout; a timeout surfaces as ``RemoteTimeoutError``.

A timed-out batch may still commit on the server.  The kind is reported
failed and keeps its pending records.  A record never synced before is
simply pushed again next cycle.  One synced before is found with the
same ``updated_at`` on both sides, settled as a tie in favour of the
remote copy (which holds the same write), and shows up as a conflict
event.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Sequence, TypeVar

from expense_sync.core.async_utils import run_sync_timeout
from expense_sync.core.clock import Clock
from expense_sync.errors import RemoteTimeoutError
from expense_sync.sync.mapper import to_document
from expense_sync.sync.models import EntityKind, SyncEnvelope, UserSettings
from expense_sync.sync.stores import BatchWriter, RemoteStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R", bound=SyncEnvelope)


@dataclass(frozen=True)
class PushResult:
    """What a successful push wrote.

    Attributes:
        kind: Entity kind pushed.
        pushed_at: Clock reading used to stamp the pushed records, or
            ``None`` when nothing needed pushing.
        upserted: Ids written as upserts.
        deleted: Ids sent as deletes.
    """

    kind: EntityKind
    pushed_at: int | None = None
    upserted: tuple[str, ...] = ()
    deleted: tuple[str, ...] = ()

    @property
    def pushed_ids(self) -> set[str]:
        return set(self.upserted) | set(self.deleted)


def _chunks(items: list[T], size: int) -> list[list[T]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class RemoteWriter:
    """Submit pending records to a remote store.

    Args:
        remote: The remote document store.
        clock: Source of the push timestamp.
        timeout: Seconds allowed per remote call (``None`` = no limit).
        max_batch_size: Maximum operations per remote batch.
    """

    def __init__(
        self,
        remote: RemoteStore,
        clock: Clock,
        timeout: float | None = 30.0,
        max_batch_size: int = 500,
    ) -> None:
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        self.remote = remote
        self.clock = clock
        self.timeout = timeout
        self.max_batch_size = max_batch_size

    # ------------------------------------------------------------------
    # Remote call wrapper
    # ------------------------------------------------------------------

    async def call(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking remote call with the configured timeout."""
        try:
            return await run_sync_timeout(self.timeout, func, *args)
        except asyncio.TimeoutError:
            name = getattr(func, "__name__", repr(func))
            raise RemoteTimeoutError(
                f"Remote call {name} timed out after {self.timeout}s"
            ) from None

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    async def push(
        self,
        kind: EntityKind,
        user_id: str,
        pending: Sequence[SyncEnvelope],
    ) -> PushResult:
        """Write *pending* to the remote collection for *kind*.

        Returns:
            A ``PushResult``; empty (``pushed_at=None``) if *pending* is
            empty, in which case no remote call is made.

        Raises:
            RemoteStoreError: If any batch fails.  Nothing should then be
                marked as synced.
        """
        if not pending:
            return PushResult(kind=kind)

        pushed_at = self.clock()
        upserts: list[dict[str, Any]] = []
        upsert_ids: list[str] = []
        delete_ids: list[str] = []
        for item in pending:
            if item.is_deleted and kind.supports_tombstones:
                delete_ids.append(item.id)
            else:
                upserts.append(to_document(item.mark_synced(pushed_at)))
                upsert_ids.append(item.id)

        if isinstance(self.remote, BatchWriter):
            await self._write_combined(kind, user_id, upserts, delete_ids)
        else:
            await self._write_separately(kind, user_id, upserts, delete_ids)

        logger.info(
            "Pushed %s for %s: %d upserted, %d deleted",
            kind.value,
            user_id,
            len(upsert_ids),
            len(delete_ids),
            extra={"kind": kind.value},
        )
        return PushResult(
            kind=kind,
            pushed_at=pushed_at,
            upserted=tuple(upsert_ids),
            deleted=tuple(delete_ids),
        )

    async def _write_combined(
        self,
        kind: EntityKind,
        user_id: str,
        upserts: list[dict[str, Any]],
        delete_ids: list[str],
    ) -> None:
        operations: list[tuple[str, Any]] = [("delete", i) for i in delete_ids]
        operations += [("upsert", doc) for doc in upserts]
        for chunk in _chunks(operations, self.max_batch_size):
            docs = [op for tag, op in chunk if tag == "upsert"]
            ids = [op for tag, op in chunk if tag == "delete"]
            await self.call(
                self.remote.batch_write, kind.value, user_id, docs, ids
            )

    async def _write_separately(
        self,
        kind: EntityKind,
        user_id: str,
        upserts: list[dict[str, Any]],
        delete_ids: list[str],
    ) -> None:
        for ids in _chunks(delete_ids, self.max_batch_size):
            await self.call(
                self.remote.batch_delete, kind.value, user_id, ids
            )
        for docs in _chunks(upserts, self.max_batch_size):
            await self.call(
                self.remote.batch_upsert, kind.value, user_id, docs
            )

    @staticmethod
    def apply_push(
        merged: Sequence[R],
        result: PushResult,
        purge_tombstones: bool = False,
    ) -> list[R]:
        """Stamp pushed records in *merged* as synced at the push time.

        Args:
            merged: The merged snapshot the push was planned from.
            result: The successful push.
            purge_tombstones: Drop tombstones whose remote delete was
                confirmed instead of keeping them.

        Returns:
            The new snapshot.
        """
        if result.pushed_at is None:
            return list(merged)
        deleted = set(result.deleted)
        pushed = result.pushed_ids
        out: list[R] = []
        for item in merged:
            if item.id in deleted and purge_tombstones:
                continue
            if item.id in pushed:
                item = item.mark_synced(result.pushed_at)
            out.append(item)
        return out

    # ------------------------------------------------------------------
    # Settings singleton
    # ------------------------------------------------------------------

    async def push_settings(
        self,
        user_id: str,
        settings: UserSettings,
        initial: bool = False,
    ) -> UserSettings:
        """Write the settings singleton and return it stamped as synced.

        The caller decides whether a write is due: always when the remote
        has no settings yet (*initial*), otherwise only when the merge put
        the settings in its push set.

        Args:
            user_id: Owner of the settings.
            settings: Merged settings.
            initial: The remote has no settings yet; used for logging.

        Returns:
            *settings* with ``last_synced_at`` stamped at the push time.
        """
        stamped = settings.mark_synced(self.clock())
        await self.call(
            self.remote.set_singleton,
            EntityKind.SETTINGS.value,
            user_id,
            to_document(stamped),
        )
        logger.info(
            "Pushed settings for %s%s",
            user_id,
            " (initial)" if initial else "",
            extra={"kind": EntityKind.SETTINGS.value},
        )
        return stamped
