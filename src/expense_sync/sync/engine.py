"""Core sync engine that orchestrates a full offline-first sync cycle.

The ``SyncEngine`` ties together mapper, merger, resolver and writer into a
complete sync run for one user.  For each entity kind it:

1. Reads the remote snapshot (schema-invalid documents are skipped).
2. Plans the merge against the local snapshot.
3. Pushes the pending records as one batch.
4. Stamps the pushed records as synced.

The three kinds run concurrently and fail independently: a transient
error in one kind leaves that kind's records exactly as they were and
does not touch the others.  ``sync_all`` works on in-memory snapshots;
``run`` adds loading from and committing to a ``LocalStore``.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, Sequence, TypeVar

from expense_sync.core.async_utils import gather_limited, run_sync
from expense_sync.core.clock import Clock, system_clock
from expense_sync.errors import LocalStoreError, TransientSyncError
from expense_sync.sync.mapper import (
    parse_record,
    parse_records,
    to_document,
    to_documents,
)
from expense_sync.sync.merger import plan_merge
from expense_sync.sync.models import (
    Category,
    ConflictEvent,
    EntityKind,
    Expense,
    KindSyncResult,
    MergeDecision,
    SyncEnvelope,
    SyncReport,
    SyncStatus,
    UserSettings,
)
from expense_sync.sync.resolver import ConflictResolver, create_resolver
from expense_sync.sync.stores import LocalStore, RemoteStore
from expense_sync.sync.writer import RemoteWriter

if TYPE_CHECKING:
    from expense_sync.config import Config

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=SyncEnvelope)


@dataclass(frozen=True)
class KindOutcome(Generic[R]):
    """Records and result of one entity kind's cycle."""

    items: list[R]
    result: KindSyncResult
    conflicts: list[ConflictEvent] = field(default_factory=list)


@dataclass(frozen=True)
class SyncOutcome:
    """Everything ``sync_all`` hands back to the caller.

    Attributes:
        expenses: Merged expenses, tombstones included.
        categories: Merged categories.
        settings: Merged settings, or ``None`` if neither side has any.
        status: Consolidated status after the cycle.
        report: Per-kind results and conflict events.
    """

    expenses: list[Expense]
    categories: list[Category]
    settings: UserSettings | None
    status: SyncStatus
    report: SyncReport

    @property
    def active_expenses(self) -> list[Expense]:
        """Expenses without tombstones, for display."""
        return [e for e in self.expenses if not e.is_deleted]


def count_pending(items: Sequence[SyncEnvelope]) -> int:
    """Number of records with changes not yet confirmed remotely."""
    return sum(1 for item in items if item.is_pending)


def build_status(
    collections: Sequence[Sequence[SyncEnvelope]],
    now: int,
    previous: SyncStatus | None = None,
    failed_kinds: Sequence[EntityKind] = (),
) -> SyncStatus:
    """Aggregate a ``SyncStatus`` over the post-cycle collections.

    ``last_synced_at`` advances to *now* only when nothing is left
    pending and no kind failed; otherwise the previous value is carried
    over.  A failed kind keeps the status pending even when its local
    records were already in sync, since the remote side was never read.
    """
    pending = sum(count_pending(items) for items in collections)
    is_pending = pending > 0 or bool(failed_kinds)
    if is_pending:
        last_synced_at = previous.last_synced_at if previous else 0
    else:
        last_synced_at = now
    return SyncStatus(
        last_synced_at=last_synced_at,
        is_pending=is_pending,
        has_conflicts=False,
        pending_sync_items=pending,
    )


class SyncEngine:
    """Orchestrate sync cycles between a device and the remote store.

    Args:
        remote: Remote document store.
        local_store: Local persistence, required only for ``run``.
        clock: Timestamp source for every stamp the engine writes.
        resolver: Conflict resolver.  Built from *strategy* if omitted.
        strategy: Conflict strategy name used when *resolver* is omitted.
        timeout: Seconds allowed per remote call.
        max_batch_size: Maximum operations per remote batch.
        purge_confirmed_tombstones: Drop expense tombstones from the local
            snapshot once their remote delete succeeds.
    """

    def __init__(
        self,
        remote: RemoteStore,
        local_store: LocalStore | None = None,
        *,
        clock: Clock = system_clock,
        resolver: ConflictResolver | None = None,
        strategy: str = "last-writer-wins",
        timeout: float | None = 30.0,
        max_batch_size: int = 500,
        purge_confirmed_tombstones: bool = False,
    ) -> None:
        self.remote = remote
        self.local_store = local_store
        self.clock = clock
        self.resolver = resolver or create_resolver(strategy)
        self.purge_confirmed_tombstones = purge_confirmed_tombstones
        self.writer = RemoteWriter(
            remote,
            clock,
            timeout=timeout,
            max_batch_size=max_batch_size,
        )

    @classmethod
    def from_config(
        cls,
        config: Config,
        remote: RemoteStore,
        local_store: LocalStore | None = None,
        clock: Clock = system_clock,
    ) -> SyncEngine:
        """Build an engine with the sync settings from *config*."""
        return cls(
            remote,
            local_store,
            clock=clock,
            strategy=config.conflict_strategy,
            timeout=config.timeout,
            max_batch_size=config.max_batch_size,
            purge_confirmed_tombstones=config.purge_confirmed_tombstones,
        )

    # ------------------------------------------------------------------
    # Main entry points
    # ------------------------------------------------------------------

    async def sync_all(
        self,
        user_id: str,
        local_expenses: Sequence[Expense],
        local_categories: Sequence[Category],
        local_settings: UserSettings | None,
        previous_status: SyncStatus | None = None,
    ) -> SyncOutcome:
        """Run one sync cycle for every entity kind concurrently.

        Args:
            user_id: The user whose data is synced.
            local_expenses: Device snapshot of expenses, tombstones
                included.
            local_categories: Device snapshot of categories.
            local_settings: Device settings, or ``None`` if absent.
            previous_status: Status from the last cycle, used to carry
                ``last_synced_at`` forward when items remain pending.

        Returns:
            A ``SyncOutcome``.  Kinds that failed come back unchanged.
        """
        started_at = self.clock()
        logger.info(
            "Starting sync for user %s", user_id, extra={"user_id": user_id}
        )

        expenses, categories, settings = await gather_limited(
            [
                self._sync_collection(
                    EntityKind.EXPENSES, user_id, local_expenses
                ),
                self._sync_collection(
                    EntityKind.CATEGORIES, user_id, local_categories
                ),
                self._sync_settings(user_id, local_settings),
            ]
        )

        completed_at = self.clock()
        settings_items = [settings.items[0]] if settings.items else []
        report = SyncReport(
            user_id=user_id,
            started_at=started_at,
            completed_at=completed_at,
            results=[expenses.result, categories.result, settings.result],
            conflicts=(
                expenses.conflicts + categories.conflicts + settings.conflicts
            ),
        )
        status = build_status(
            [expenses.items, categories.items, settings_items],
            completed_at,
            previous_status,
            failed_kinds=[r.kind for r in report.errors],
        )
        logger.info(
            "Sync for user %s finished: %d pending, %d conflicts, %d failed kinds",
            user_id,
            status.pending_sync_items,
            len(report.conflicts),
            len(report.errors),
        )
        return SyncOutcome(
            expenses=expenses.items,
            categories=categories.items,
            settings=settings_items[0] if settings_items else None,
            status=status,
            report=report,
        )

    async def run(self, user_id: str) -> SyncOutcome:
        """Load local snapshots, sync, and commit the results.

        Kinds that fail (remotely, or while committing locally) keep their
        stored snapshot untouched.

        Raises:
            LocalStoreError: If the local snapshots cannot be loaded.
            RecordSchemaError: If a stored local document is invalid.
            ValueError: If the engine was built without a local store.
        """
        store = self._require_local_store()

        expense_docs = await run_sync(
            store.load_collection, EntityKind.EXPENSES.value
        )
        category_docs = await run_sync(
            store.load_collection, EntityKind.CATEGORIES.value
        )
        settings_doc = await run_sync(
            store.load_singleton, EntityKind.SETTINGS.value, user_id
        )
        status_doc = await run_sync(store.load_status)

        local_expenses, _ = parse_records(EntityKind.EXPENSES, expense_docs)
        local_categories, _ = parse_records(
            EntityKind.CATEGORIES, category_docs
        )
        local_settings = (
            parse_record(EntityKind.SETTINGS, settings_doc)
            if settings_doc is not None
            else None
        )
        previous = (
            SyncStatus.model_validate(status_doc)
            if status_doc is not None
            else None
        )

        outcome = await self.sync_all(
            user_id,
            local_expenses,
            local_categories,
            local_settings,
            previous,
        )
        return await self._commit(
            store,
            outcome,
            local_expenses,
            local_categories,
            local_settings,
            previous,
        )

    # ------------------------------------------------------------------
    # Per-kind cycles
    # ------------------------------------------------------------------

    async def _sync_collection(
        self,
        kind: EntityKind,
        user_id: str,
        local_items: Sequence[R],
    ) -> KindOutcome[R]:
        """Merge and push one collection; never raises transient errors."""
        try:
            documents = await self.writer.call(
                self.remote.query, kind.value, user_id
            )
            remote_items, skipped = parse_records(
                kind, documents, strict=False
            )
            plan = plan_merge(
                local_items, remote_items, self.resolver, self.clock, kind
            )
            pushed = await self.writer.push(kind, user_id, plan.pending_push)
        except TransientSyncError as exc:
            return self._failed(kind, local_items, exc)

        items = RemoteWriter.apply_push(
            plan.merged, pushed, self.purge_confirmed_tombstones
        )
        result = KindSyncResult(
            kind=kind,
            success=True,
            decisions=plan.decision_counts(),
            upserted=len(pushed.upserted),
            deleted=len(pushed.deleted),
            skipped_records=skipped,
        )
        return KindOutcome(items=items, result=result, conflicts=plan.conflicts)

    async def _sync_settings(
        self,
        user_id: str,
        local: UserSettings | None,
    ) -> KindOutcome[UserSettings]:
        """Merge and push the settings singleton.

        A remote settings document that fails validation is treated as
        absent, so the local copy overwrites it.
        """
        kind = EntityKind.SETTINGS
        local_items = [local] if local is not None else []
        skipped = 0
        try:
            document = await self.writer.call(
                self.remote.get_singleton, kind.value, user_id
            )
            remote: UserSettings | None = None
            if document is not None:
                parsed, skipped = parse_records(
                    kind, [document], strict=False
                )
                remote = parsed[0] if parsed else None

            plan = plan_merge(
                local_items,
                [remote] if remote is not None else [],
                self.resolver,
                self.clock,
                kind,
            )
            decisions = dict(plan.decisions)
            items = list(plan.merged)
            upserted = 0
            initial = remote is None
            if items and (initial or plan.pending_push):
                items = [
                    await self.writer.push_settings(
                        user_id, items[0], initial=initial
                    )
                ]
                upserted = 1
                if initial:
                    decisions[items[0].id] = MergeDecision.CREATE_REMOTE
        except TransientSyncError as exc:
            return self._failed(kind, local_items, exc)

        counts = dict(Counter(d.value for d in decisions.values()))
        result = KindSyncResult(
            kind=kind,
            success=True,
            decisions=counts,
            upserted=upserted,
            skipped_records=skipped,
        )
        return KindOutcome(items=items, result=result, conflicts=plan.conflicts)

    def _failed(
        self,
        kind: EntityKind,
        local_items: Sequence[R],
        exc: Exception,
    ) -> KindOutcome[R]:
        logger.error(
            "Sync of %s failed, keeping local state: %s",
            kind.value,
            exc,
            extra={"kind": kind.value},
        )
        return KindOutcome(
            items=list(local_items),
            result=KindSyncResult(kind=kind, success=False, error=str(exc)),
        )

    # ------------------------------------------------------------------
    # Local commit
    # ------------------------------------------------------------------

    def _require_local_store(self) -> LocalStore:
        if self.local_store is None:
            raise ValueError("SyncEngine.run() requires a local store")
        return self.local_store

    async def _commit(
        self,
        store: LocalStore,
        outcome: SyncOutcome,
        local_expenses: list[Expense],
        local_categories: list[Category],
        local_settings: UserSettings | None,
        previous: SyncStatus | None,
    ) -> SyncOutcome:
        """Persist every successful kind, then the status.

        A kind whose save fails is reported as failed and counted with its
        pre-cycle records in the saved status.
        """
        report = outcome.report
        expenses, categories = outcome.expenses, outcome.categories
        settings = outcome.settings
        failed: dict[EntityKind, str] = {}

        for result in report.results:
            if not result.success:
                continue
            try:
                if result.kind is EntityKind.SETTINGS:
                    if settings is not None:
                        await run_sync(
                            store.save_singleton,
                            result.kind.value,
                            to_document(settings),
                        )
                else:
                    items = (
                        expenses
                        if result.kind is EntityKind.EXPENSES
                        else categories
                    )
                    await run_sync(
                        store.save_collection,
                        result.kind.value,
                        to_documents(items),
                    )
            except LocalStoreError as exc:
                logger.error(
                    "Could not save %s locally: %s",
                    result.kind.value,
                    exc,
                    extra={"kind": result.kind.value},
                )
                failed[result.kind] = f"Local commit failed: {exc}"

        if failed:
            if EntityKind.EXPENSES in failed:
                expenses = local_expenses
            if EntityKind.CATEGORIES in failed:
                categories = local_categories
            if EntityKind.SETTINGS in failed:
                settings = local_settings
            report = report.model_copy(
                update={
                    "results": [
                        r.model_copy(
                            update={"success": False, "error": failed[r.kind]}
                        )
                        if r.kind in failed
                        else r
                        for r in report.results
                    ]
                }
            )

        status = build_status(
            [expenses, categories, [settings] if settings else []],
            report.completed_at or self.clock(),
            previous,
            failed_kinds=[r.kind for r in report.errors],
        )
        await run_sync(store.save_status, status.model_dump(by_alias=True))
        return SyncOutcome(
            expenses=expenses,
            categories=categories,
            settings=settings,
            status=status,
            report=report,
        )

