"""Merge planning for one entity kind.

``plan_merge`` reconciles a local snapshot against a remote snapshot of
the same collection and returns a ``MergePlan``: the merged collection the
device should adopt, and the records that must be written back so the
remote store converges.

Key design choices:

* Records are joined by ``id``.  Change detection compares each side
  against the local record's ``last_synced_at``; content is never diffed.
* Only records that changed on *both* sides since the last sync point go
  through the resolver.  When one side changed, it wins outright.
* The planner does no I/O.  ``now`` comes from the injected clock, read
  once per plan so every stamp in a cycle agrees.
* Expense tombstones stay in ``merged`` until the remote delete is
  confirmed; ``MergePlan.active_items`` hides them from display.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Generic, Sequence, TypeVar

from expense_sync.core.clock import Clock
from expense_sync.sync.models import (
    ConflictEvent,
    EntityKind,
    MergeDecision,
    SyncEnvelope,
)
from expense_sync.sync.resolver import ConflictResolver, detect_conflict

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=SyncEnvelope)


@dataclass(frozen=True)
class MergePlan(Generic[R]):
    """Result of one merge cycle.

    Attributes:
        kind: Entity kind that was merged.
        merged: Every record the device should keep, local order first
            followed by remote-only additions.
        pending_push: Records that must be written to the remote store.
            Tombstoned expenses in this list become remote deletes.
        decisions: Planner decision per record id.
        conflicts: One event per conflict that was resolved.
        now: Clock reading used for every stamp in this plan.
    """

    kind: EntityKind | None
    merged: list[R]
    pending_push: list[R]
    decisions: dict[str, MergeDecision] = field(default_factory=dict)
    conflicts: list[ConflictEvent] = field(default_factory=list)
    now: int = 0

    @property
    def active_items(self) -> list[R]:
        """Merged records excluding tombstones."""
        return [item for item in self.merged if not item.is_deleted]

    def decision_counts(self) -> dict[str, int]:
        """Count records per decision value."""
        return dict(Counter(d.value for d in self.decisions.values()))


def _index_by_id(items: Sequence[R], side: str) -> dict[str, R]:
    """Build an id lookup; a repeated id keeps its last occurrence."""
    index: dict[str, R] = {}
    for item in items:
        if item.id in index:
            logger.warning(
                "Duplicate id %s in %s snapshot; keeping the last copy",
                item.id,
                side,
            )
        index[item.id] = item
    return index


def _push_decision(
    item: SyncEnvelope,
    kind: EntityKind | None,
    fallback: MergeDecision,
) -> MergeDecision:
    if item.is_deleted and (kind is None or kind.supports_tombstones):
        return MergeDecision.DELETE_REMOTE
    return fallback


def plan_merge(
    local_items: Sequence[R],
    remote_items: Sequence[R],
    resolver: ConflictResolver,
    clock: Clock,
    kind: EntityKind | None = None,
) -> MergePlan[R]:
    """Merge *local_items* with *remote_items* for one entity kind.

    Args:
        local_items: The device's snapshot.  Not modified.
        remote_items: The remote store's snapshot.  Not modified.
        resolver: Strategy used when both sides changed a record.
        clock: Source of the ``last_synced_at`` stamp.
        kind: Entity kind, used for tombstone handling and reporting.

    Returns:
        A ``MergePlan`` with the merged collection and the push set.
    """
    now = clock()
    local_index = _index_by_id(local_items, "local")
    remote_index = _index_by_id(remote_items, "remote")

    merged: list[R] = []
    pending: list[R] = []
    decisions: dict[str, MergeDecision] = {}
    conflicts: list[ConflictEvent] = []

    for local in local_index.values():
        remote = remote_index.pop(local.id, None)

        if remote is None:
            # Pure local addition, or a synced record the remote no longer
            # has.  Only the former needs pushing.
            outcome = local
            push = local.is_pending
            decision = (
                _push_decision(local, kind, MergeDecision.CREATE_REMOTE)
                if push
                else MergeDecision.SKIP
            )
        elif detect_conflict(local, remote):
            winner = resolver.choose(local, remote)
            outcome = resolver.resolve(local, remote, now)
            push = True
            decision = MergeDecision.CONFLICT
            event = ConflictEvent(
                kind=kind,
                record_id=local.id,
                local_updated_at=local.updated_at,
                remote_updated_at=remote.updated_at,
                last_synced_at=local.last_synced_at,
                winner=winner,
                strategy=resolver.name,
                resolved_at=now,
            )
            conflicts.append(event)
            logger.info(
                "Conflict on %s %s resolved in favour of %s",
                kind.value if kind else "record",
                local.id,
                winner,
                extra={
                    "kind": kind.value if kind else None,
                    "record_id": local.id,
                    "winner": winner,
                },
            )
        elif (
            local.last_synced_at is not None
            and remote.updated_at > local.last_synced_at
        ):
            outcome = remote.mark_synced(now)
            push = False
            decision = MergeDecision.PULL
        elif local.is_pending:
            outcome = local
            push = True
            decision = _push_decision(local, kind, MergeDecision.PUSH)
        else:
            outcome = local
            push = False
            decision = MergeDecision.SKIP

        merged.append(outcome)
        decisions[local.id] = decision
        # Judged on the local envelope as it was before any stamping.
        if push and local.is_pending:
            pending.append(outcome)

    for remote in remote_index.values():
        merged.append(remote.mark_synced(now))
        decisions[remote.id] = MergeDecision.CREATE_LOCAL

    logger.debug(
        "Merged %s: %d local, %d remote -> %d merged, %d to push, "
        "%d conflicts",
        kind.value if kind else "records",
        len(local_items),
        len(remote_items),
        len(merged),
        len(pending),
        len(conflicts),
    )

    return MergePlan(
        kind=kind,
        merged=merged,
        pending_push=pending,
        decisions=decisions,
        conflicts=conflicts,
        now=now,
    )
