"""Pydantic models for the sync engine.

Defines the data contracts shared by every sync module:

- ``SyncEnvelope``: ``id`` / ``updated_at`` / ``last_synced_at`` /
  ``is_deleted`` fields common to all synchronised records.
- ``Expense``, ``Category``, ``UserSettings``: the three entity kinds.
- ``SyncStatus``: consolidated status returned by a full sync.
- ``MergeDecision``: what the planner decided for one record.
- ``ConflictEvent``: audit record for a resolved conflict.
- ``KindSyncResult``, ``SyncReport``: per-kind and per-run outcomes.

Records are frozen (immutable) so a snapshot handed to the engine cannot
change under it.  Field names are snake_case in Python and camelCase on
the wire (``updatedAt``, ``lastSyncedAt`` ...); both spellings are
accepted on input.  Unknown fields are kept and written back verbatim.
"""

from __future__ import annotations

from collections import Counter
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator
from pydantic.alias_generators import to_camel

_RECORD_CONFIG = {
    "frozen": True,
    "alias_generator": to_camel,
    "populate_by_name": True,
    "extra": "allow",
}

_WIRE_CONFIG = {
    "frozen": True,
    "alias_generator": to_camel,
    "populate_by_name": True,
}


class EntityKind(str, Enum):
    """Synchronised collections.  The value is the remote collection name."""

    EXPENSES = "expenses"
    CATEGORIES = "categories"
    SETTINGS = "settings"

    @property
    def supports_tombstones(self) -> bool:
        """Only expenses propagate deletions through sync."""
        return self is EntityKind.EXPENSES


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class SyncEnvelope(BaseModel):
    """Fields shared by every synchronised record.

    Attributes:
        id: Opaque identifier, stable across replicas.
        updated_at: Logical write timestamp (epoch ms), bumped on every
            local mutation.
        last_synced_at: Timestamp of the last successful reconciliation,
            or ``None`` if the record was never synced.
        is_deleted: Tombstone flag (meaningful for expenses only).
    """

    id: str = Field(min_length=1)
    updated_at: int
    last_synced_at: int | None = None
    is_deleted: bool = False

    model_config = _RECORD_CONFIG

    @property
    def is_pending(self) -> bool:
        """True if the record has changes not yet confirmed remotely."""
        return (
            self.last_synced_at is None
            or self.updated_at > self.last_synced_at
        )

    def mark_synced(self, synced_at: int):
        """Return a copy with ``last_synced_at`` stamped.

        The stamp never falls below ``updated_at``: a record written by a
        device whose clock runs ahead must not stay pending forever.
        """
        return self.model_copy(
            update={"last_synced_at": max(synced_at, self.updated_at)}
        )


class Expense(SyncEnvelope):
    """A single expense entry.

    ``original_amount`` and ``original_currency`` are set together when the
    expense was entered in a foreign currency and converted.
    """

    user_id: str | None = None
    amount: float
    original_amount: float | None = None
    original_currency: str | None = None
    exchange_rate: float | None = None
    currency: str = Field(min_length=1)
    description: str = ""
    category_id: str
    date: int
    created_at: int | None = None

    @model_validator(mode="after")
    def _check_original_pair(self) -> Expense:
        if (self.original_amount is None) != (
            self.original_currency is None
        ):
            raise ValueError(
                "originalAmount and originalCurrency must be set together"
            )
        return self


class Category(SyncEnvelope):
    """An expense category."""

    user_id: str | None = None
    name: str
    color: str
    icon: str
    is_default: bool = False
    created_at: int | None = None


class UserSettings(SyncEnvelope):
    """The per-user settings singleton.  ``id`` defaults to ``user_id``."""

    user_id: str
    default_currency: str = "USD"
    first_day_of_month: int = Field(default=1, ge=1, le=31)
    first_day_of_week: int = Field(default=0, ge=0, le=6)
    theme: Literal["light", "dark", "system"] = "light"
    notifications_enabled: bool = True
    auto_sync: bool = True
    created_at: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _default_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id"):
            user_id = data.get("userId", data.get("user_id"))
            if user_id:
                data = {**data, "id": user_id}
        return data


MODEL_BY_KIND: dict[EntityKind, type[SyncEnvelope]] = {
    EntityKind.EXPENSES: Expense,
    EntityKind.CATEGORIES: Category,
    EntityKind.SETTINGS: UserSettings,
}


# ---------------------------------------------------------------------------
# Status and reporting
# ---------------------------------------------------------------------------


class SyncStatus(BaseModel):
    """Consolidated sync status.

    Attributes:
        last_synced_at: Time of the last cycle that left nothing pending
            (0 if there has been none).
        is_pending: True if any record still has unsynced changes.
        has_conflicts: Always False after a cycle; conflicts are resolved
            during the merge and reported as ``ConflictEvent`` entries.
        pending_sync_items: Number of records still pending.
    """

    last_synced_at: int = 0
    is_pending: bool = False
    has_conflicts: bool = False
    pending_sync_items: int = 0

    model_config = _WIRE_CONFIG


class MergeDecision(str, Enum):
    """Planner outcome for a single record."""

    SKIP = "skip"
    PUSH = "push"
    PULL = "pull"
    CONFLICT = "conflict"
    CREATE_REMOTE = "create_remote"
    CREATE_LOCAL = "create_local"
    DELETE_REMOTE = "delete_remote"


class ConflictEvent(BaseModel):
    """Audit record emitted whenever both sides changed the same record.

    Attributes:
        kind: Entity kind of the record.
        record_id: The conflicting record's id.
        local_updated_at: ``updated_at`` of the local version.
        remote_updated_at: ``updated_at`` of the remote version.
        last_synced_at: The shared sync point both sides diverged from.
        winner: ``"local"`` or ``"remote"``.
        strategy: Name of the resolver strategy that decided.
        resolved_at: Clock reading at resolution time.
    """

    kind: EntityKind | None = None
    record_id: str
    local_updated_at: int
    remote_updated_at: int
    last_synced_at: int | None = None
    winner: Literal["local", "remote"]
    strategy: str
    resolved_at: int

    model_config = _WIRE_CONFIG


class KindSyncResult(BaseModel):
    """Outcome of one entity kind's merge + push cycle.

    Attributes:
        kind: The entity kind.
        success: False if a transient failure aborted the cycle.
        error: Error message when ``success`` is False.
        decisions: Count of records per ``MergeDecision`` value.
        upserted: Number of records written to the remote store.
        deleted: Number of tombstones propagated as remote deletes.
        skipped_records: Remote documents skipped for schema errors.
    """

    kind: EntityKind
    success: bool
    error: str | None = None
    decisions: dict[str, int] = {}
    upserted: int = 0
    deleted: int = 0
    skipped_records: int = 0

    model_config = {"frozen": True}


class SyncReport(BaseModel):
    """Aggregate report for a full sync run.

    Attributes:
        user_id: The user whose data was synced.
        started_at: Clock reading when the run started.
        completed_at: Clock reading when the run finished.
        results: One entry per entity kind.
        conflicts: Conflict events from kinds that completed.
    """

    user_id: str
    started_at: int
    completed_at: int | None = None
    results: list[KindSyncResult] = []
    conflicts: list[ConflictEvent] = []

    model_config = {"frozen": True}

    @property
    def errors(self) -> list[KindSyncResult]:
        """Kinds whose cycle failed."""
        return [r for r in self.results if not r.success]

    @property
    def succeeded(self) -> bool:
        """True when every kind completed."""
        return not self.errors

    def decision_totals(self) -> Counter:
        """Sum decision counts across kinds."""
        totals: Counter = Counter()
        for r in self.results:
            totals.update(r.decisions)
        return totals

    def result_for(self, kind: EntityKind) -> KindSyncResult | None:
        """Return the result for *kind*, or ``None`` if it did not run."""
        for r in self.results:
            if r.kind == kind:
                return r
        return None


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CATEGORIES: list[dict[str, Any]] = [
    {"name": "Food & Dining", "color": "#FF9800", "icon": "food"},
    {"name": "Transportation", "color": "#2196F3", "icon": "car"},
    {"name": "Entertainment", "color": "#9C27B0", "icon": "movie"},
    {"name": "Shopping", "color": "#F44336", "icon": "cart"},
    {"name": "Healthcare", "color": "#00BCD4", "icon": "hospital"},
    {"name": "Housing", "color": "#795548", "icon": "home"},
    {"name": "Education", "color": "#FFEB3B", "icon": "school"},
    {"name": "Utilities", "color": "#607D8B", "icon": "flashlight"},
    {"name": "Other", "color": "#9E9E9E", "icon": "help-circle"},
]


def default_categories(now: int) -> list[Category]:
    """Build the stock categories a fresh install starts with."""
    return [
        Category(
            id=f"default-{index}",
            is_default=True,
            created_at=now,
            updated_at=now,
            **fields,
        )
        for index, fields in enumerate(DEFAULT_CATEGORIES)
    ]


def default_settings(user_id: str, now: int) -> UserSettings:
    """Build first-run settings for *user_id*."""
    return UserSettings(
        user_id=user_id,
        created_at=now,
        updated_at=now,
    )
