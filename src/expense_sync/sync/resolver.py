"""Conflict detection and resolution strategies for the sync engine.

Detection and resolution are separate steps.  ``detect_conflict`` decides
whether both replicas changed a record since its last confirmed sync
point; only then does the planner ask a resolver to pick a winner.

Strategies:

- ``LastWriterWinsResolver``: the version with the larger ``updated_at``
  wins; ties go to the remote version.  This is the default.
- ``LocalWinsResolver``: always picks the local version.
- ``RemoteWinsResolver``: always picks the remote version.

All resolvers are pure: the same pair always yields the same winner, and
the winner is returned as a new record whose ``last_synced_at`` is stamped
with the resolution time.  No field-level merge is attempted; the losing
edit is discarded.

The ``create_resolver()`` factory maps config strategy strings to resolver
instances.
"""

from __future__ import annotations

import logging
from typing import Literal, Protocol, TypeVar

from expense_sync.sync.models import SyncEnvelope

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=SyncEnvelope)
Side = Literal["local", "remote"]


def detect_conflict(local: SyncEnvelope, remote: SyncEnvelope) -> bool:
    """Return ``True`` if both sides changed since the last sync point.

    A record that was never synced cannot conflict: without a shared sync
    point there is nothing to have diverged from.
    """
    synced = local.last_synced_at
    if synced is None:
        return False
    return remote.updated_at > synced and local.updated_at > synced


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ConflictResolver(Protocol):
    """Protocol that all conflict resolvers must satisfy."""

    name: str

    def choose(self, local: SyncEnvelope, remote: SyncEnvelope) -> Side:
        """Return which side wins: ``"local"`` or ``"remote"``."""
        ...  # pragma: no cover

    def resolve(self, local: R, remote: R, now: int) -> R:
        """Return the winning record stamped as synced at *now*."""
        ...  # pragma: no cover


class _BaseResolver:
    name = ""

    def choose(self, local: SyncEnvelope, remote: SyncEnvelope) -> Side:
        raise NotImplementedError

    def resolve(self, local: R, remote: R, now: int) -> R:
        if local.id != remote.id:
            raise ValueError(
                f"Cannot resolve records with different ids: "
                f"'{local.id}' vs '{remote.id}'"
            )
        side = self.choose(local, remote)
        winner = local if side == "local" else remote
        logger.debug(
            "Resolved %s in favour of %s (%s)", local.id, side, self.name
        )
        return winner.mark_synced(now)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class LastWriterWinsResolver(_BaseResolver):
    """Pick the version with the larger ``updated_at``; ties favour remote."""

    name = "last-writer-wins"

    def choose(self, local: SyncEnvelope, remote: SyncEnvelope) -> Side:
        if local.updated_at > remote.updated_at:
            return "local"
        return "remote"


class LocalWinsResolver(_BaseResolver):
    """Always resolve conflicts in favour of the local version."""

    name = "local-wins"

    def choose(self, local: SyncEnvelope, remote: SyncEnvelope) -> Side:
        return "local"


class RemoteWinsResolver(_BaseResolver):
    """Always resolve conflicts in favour of the remote version."""

    name = "remote-wins"

    def choose(self, local: SyncEnvelope, remote: SyncEnvelope) -> Side:
        return "remote"


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_STRATEGY_MAP: dict[str, type[_BaseResolver]] = {
    "last-writer-wins": LastWriterWinsResolver,
    "local-wins": LocalWinsResolver,
    "remote-wins": RemoteWinsResolver,
}

STRATEGIES = tuple(sorted(_STRATEGY_MAP))


def create_resolver(strategy: str) -> ConflictResolver:
    """Create a conflict resolver for the given strategy string.

    Args:
        strategy: One of ``"last-writer-wins"``, ``"local-wins"``,
            ``"remote-wins"``.

    Returns:
        A ``ConflictResolver`` implementation instance.

    Raises:
        ValueError: If the strategy string is not recognised.
    """
    cls = _STRATEGY_MAP.get(strategy)
    if cls is None:
        raise ValueError(
            f"Unknown conflict strategy: '{strategy}'. Valid strategies: {list(STRATEGIES)}"
        )
    return cls()
