"""Offline-first sync engine.

Public API for reconciling a device's expenses, categories and settings
with a shared remote document store.

Architecture
------------
Every synchronised record carries a small **sync envelope**:
``updated_at`` (bumped on each local write), ``last_synced_at`` (stamped
when the record was last reconciled) and an ``is_deleted`` tombstone
flag.  A record is *pending* when it changed after its last sync.  Two
replicas *conflict* only when both changed since the shared sync point;
the resolver then picks a whole-record winner (last writer wins by
default).

Modules:

- ``engine``    -- ``SyncEngine``: orchestrates a full sync cycle.
- ``merger``    -- ``plan_merge``: per-kind merge planning.
- ``resolver``  -- Conflict detection and resolution strategies.
- ``writer``    -- ``RemoteWriter``: batched, all-or-nothing pushes.
- ``mapper``    -- Document <-> record validation and serialisation.
- ``models``    -- ``Expense``, ``Category``, ``UserSettings``,
  ``SyncStatus``, ``SyncReport`` and friends.
- ``stores``    -- ``LocalStore`` / ``RemoteStore`` protocols.
- ``state``     -- ``LocalStateStore``: JSON-file local store.
- ``reporter``  -- Human-readable and JSON report formatting.

Public exports
--------------
``SyncEngine``, ``SyncOutcome``, ``plan_merge``, ``MergePlan``,
``create_resolver``, ``detect_conflict``, ``RemoteWriter``,
``LocalStateStore``, the model classes, ``format_sync_report``,
``report_to_json``.

Usage example
-------------
::

    from expense_sync.core.client import RemoteStoreClient
    from expense_sync.sync import LocalStateStore, SyncEngine, format_sync_report

    engine = SyncEngine(
        RemoteStoreClient(config),
        LocalStateStore(config.data_dir),
        strategy="last-writer-wins",
    )

    outcome = await engine.run("user-123")
    print(format_sync_report(outcome.report))
"""

from .engine import SyncEngine, SyncOutcome
from .merger import MergePlan, plan_merge
from .models import (
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
from .reporter import format_status, format_sync_report, report_to_json
from .resolver import create_resolver, detect_conflict
from .state import LocalStateStore
from .stores import LocalStore, RemoteStore
from .writer import PushResult, RemoteWriter

__all__ = [
    "Category",
    "ConflictEvent",
    "EntityKind",
    "Expense",
    "KindSyncResult",
    "LocalStateStore",
    "LocalStore",
    "MergeDecision",
    "MergePlan",
    "PushResult",
    "RemoteStore",
    "RemoteWriter",
    "SyncEngine",
    "SyncEnvelope",
    "SyncOutcome",
    "SyncReport",
    "SyncStatus",
    "UserSettings",
    "create_resolver",
    "detect_conflict",
    "format_status",
    "format_sync_report",
    "plan_merge",
    "report_to_json",
]
