"""Tests for the sync orchestrator."""

from __future__ import annotations

import asyncio
import json
import threading
import time

import pytest

from expense_sync.config import Config
from expense_sync.errors import LocalStoreError, RemoteStoreError
from expense_sync.sync.engine import SyncEngine, build_status
from expense_sync.sync.models import EntityKind, SyncStatus
from expense_sync.sync.state import LocalStateStore

EXPENSES = EntityKind.EXPENSES
CATEGORIES = EntityKind.CATEGORIES
SETTINGS = EntityKind.SETTINGS


def _all_synced(outcome) -> bool:
    records = list(outcome.expenses) + list(outcome.categories)
    if outcome.settings is not None:
        records.append(outcome.settings)
    return all(
        r.last_synced_at is not None and r.last_synced_at >= r.updated_at
        for r in records
    )


# ---------------------------------------------------------------------------
# sync_all
# ---------------------------------------------------------------------------


class TestFirstSync:
    async def test_pushes_everything_to_empty_remote(
        self, remote, clock, make_expense, make_category, make_settings
    ):
        engine = SyncEngine(remote, clock=clock)

        outcome = await engine.sync_all(
            "u1",
            [make_expense(id="e1")],
            [make_category(id="c1")],
            make_settings(),
        )

        assert set(remote.documents("expenses", "u1")) == {"e1"}
        assert set(remote.documents("categories", "u1")) == {"c1"}
        assert remote.singletons[("settings", "u1")]["id"] == "u1"
        assert _all_synced(outcome)
        assert outcome.status == SyncStatus(
            last_synced_at=clock.now,
            is_pending=False,
            has_conflicts=False,
            pending_sync_items=0,
        )
        assert outcome.report.succeeded
        settings_result = outcome.report.result_for(SETTINGS)
        assert settings_result.decisions == {"create_remote": 1}
        assert settings_result.upserted == 1

    async def test_pulls_remote_records(self, remote, clock, make_expense):
        remote.seed(
            "expenses",
            "u1",
            {
                "id": "r1",
                "updatedAt": 500,
                "amount": 3,
                "currency": "EUR",
                "categoryId": "default-1",
                "date": 500,
            },
        )
        engine = SyncEngine(remote, clock=clock)

        outcome = await engine.sync_all("u1", [], [], None)

        assert [e.id for e in outcome.expenses] == ["r1"]
        assert outcome.expenses[0].last_synced_at == clock.now
        assert not remote.calls_named("batch_upsert")
        assert outcome.report.result_for(EXPENSES).decisions == {
            "create_local": 1
        }

    async def test_uses_combined_batch_when_available(
        self, batch_remote, clock, make_expense
    ):
        engine = SyncEngine(batch_remote, clock=clock)

        await engine.sync_all("u1", [make_expense(id="e1")], [], None)

        assert batch_remote.calls_named("batch_write") == [
            ("batch_write", "expenses", "u1", ["e1"], [])
        ]


class TestConflictsAndTombstones:
    async def test_conflict_resolved_and_pushed(
        self, remote, clock, make_expense
    ):
        remote.seed(
            "expenses",
            "u1",
            {
                "id": "e1",
                "updatedAt": 120,
                "amount": 25,
                "currency": "USD",
                "categoryId": "default-0",
                "date": 100,
            },
        )
        local = make_expense(
            id="e1", updated_at=100, last_synced_at=50, amount=20.0
        )
        engine = SyncEngine(remote, clock=clock)

        outcome = await engine.sync_all("u1", [local], [], None)

        merged = outcome.expenses[0]
        assert merged.amount == 25.0
        assert merged.updated_at == 120
        assert merged.last_synced_at == clock.now
        stored = remote.documents("expenses", "u1")["e1"]
        assert stored["amount"] == 25.0
        assert stored["lastSyncedAt"] == clock.now
        assert len(outcome.report.conflicts) == 1
        assert outcome.report.conflicts[0].winner == "remote"
        assert outcome.status.has_conflicts is False
        assert not outcome.status.is_pending

    async def test_tombstone_propagates_as_delete(
        self, remote, clock, make_expense
    ):
        remote.seed(
            "expenses",
            "u1",
            {
                "id": "e5",
                "updatedAt": 100,
                "amount": 1,
                "currency": "USD",
                "categoryId": "default-0",
                "date": 100,
            },
        )
        local = make_expense(
            id="e5", updated_at=300, last_synced_at=100, is_deleted=True
        )
        engine = SyncEngine(remote, clock=clock)

        outcome = await engine.sync_all("u1", [local], [], None)

        assert remote.calls_named("batch_delete") == [
            ("batch_delete", "expenses", "u1", ["e5"])
        ]
        assert "e5" not in remote.documents("expenses", "u1")
        assert [e.id for e in outcome.expenses] == ["e5"]
        assert outcome.expenses[0].is_deleted
        assert not outcome.expenses[0].is_pending
        assert outcome.active_expenses == []
        assert outcome.report.result_for(EXPENSES).deleted == 1

    async def test_confirmed_tombstone_purged_when_enabled(
        self, remote, clock, make_expense
    ):
        local = make_expense(id="e5", updated_at=300, is_deleted=True)
        engine = SyncEngine(
            remote, clock=clock, purge_confirmed_tombstones=True
        )

        outcome = await engine.sync_all("u1", [local], [], None)

        assert outcome.expenses == []
        assert not outcome.status.is_pending


class TestPartialFailure:
    async def test_failed_kind_keeps_local_state(
        self, remote, clock, make_expense, make_category, make_settings
    ):
        remote.failures["expenses.batch_upsert"] = RemoteStoreError("boom")
        local_expenses = [make_expense(id="e1")]
        engine = SyncEngine(remote, clock=clock)

        outcome = await engine.sync_all(
            "u1",
            local_expenses,
            [make_category(id="c1")],
            make_settings(),
            previous_status=SyncStatus(last_synced_at=42),
        )

        assert outcome.expenses == local_expenses
        assert outcome.categories[0].last_synced_at == clock.now
        assert outcome.settings.last_synced_at == clock.now
        assert outcome.status.is_pending
        assert outcome.status.pending_sync_items == 1
        assert outcome.status.last_synced_at == 42

        failed = outcome.report.result_for(EXPENSES)
        assert not failed.success
        assert "boom" in failed.error
        assert outcome.report.result_for(CATEGORIES).success
        assert outcome.report.result_for(SETTINGS).success

    async def test_query_failure_is_per_kind(
        self, remote, clock, make_expense, make_category
    ):
        remote.failures["categories.query"] = RemoteStoreError("offline")
        local_categories = [make_category(id="c1")]
        engine = SyncEngine(remote, clock=clock)

        outcome = await engine.sync_all(
            "u1", [make_expense(id="e1")], local_categories, None
        )

        assert outcome.categories == local_categories
        assert outcome.expenses[0].last_synced_at == clock.now
        assert [r.kind for r in outcome.report.errors] == [CATEGORIES]

    async def test_status_defaults_to_zero_without_previous(
        self, remote, clock, make_expense
    ):
        remote.failures["expenses"] = RemoteStoreError("down")
        engine = SyncEngine(remote, clock=clock)

        outcome = await engine.sync_all("u1", [make_expense()], [], None)

        assert outcome.status.last_synced_at == 0
        assert outcome.status.is_pending

    async def test_unexpected_errors_propagate(
        self, remote, clock, make_expense
    ):
        remote.failures["expenses"] = RuntimeError("bug")
        engine = SyncEngine(remote, clock=clock)

        with pytest.raises(RuntimeError, match="bug"):
            await engine.sync_all("u1", [make_expense()], [], None)


class TestSchemaSkip:
    async def test_malformed_remote_document_is_skipped(
        self, remote, clock
    ):
        remote.seed(
            "expenses",
            "u1",
            {
                "id": "ok",
                "updatedAt": 10,
                "amount": 1,
                "currency": "USD",
                "categoryId": "default-0",
                "date": 10,
            },
            {"id": "bad", "amount": "n/a"},
        )
        engine = SyncEngine(remote, clock=clock)

        outcome = await engine.sync_all("u1", [], [], None)

        assert [e.id for e in outcome.expenses] == ["ok"]
        result = outcome.report.result_for(EXPENSES)
        assert result.success
        assert result.skipped_records == 1


class TestSettings:
    async def test_unchanged_settings_not_rewritten(
        self, remote, clock, make_settings
    ):
        remote.singletons[("settings", "u1")] = {
            "id": "u1",
            "userId": "u1",
            "updatedAt": 10,
            "lastSyncedAt": 10,
        }
        engine = SyncEngine(remote, clock=clock)

        outcome = await engine.sync_all(
            "u1", [], [], make_settings(updated_at=10, last_synced_at=10)
        )

        assert not remote.calls_named("set_singleton")
        assert outcome.report.result_for(SETTINGS).decisions == {"skip": 1}

    async def test_local_change_pushed(self, remote, clock, make_settings):
        remote.singletons[("settings", "u1")] = {
            "userId": "u1",
            "updatedAt": 10,
        }
        engine = SyncEngine(remote, clock=clock)

        outcome = await engine.sync_all(
            "u1",
            [],
            [],
            make_settings(updated_at=50, last_synced_at=10, theme="dark"),
        )

        assert remote.singletons[("settings", "u1")]["theme"] == "dark"
        assert outcome.settings.last_synced_at == clock.now

    async def test_conflict_pushes_winner(self, remote, clock, make_settings):
        remote.singletons[("settings", "u1")] = {
            "userId": "u1",
            "updatedAt": 120,
            "theme": "system",
        }
        engine = SyncEngine(remote, clock=clock)

        outcome = await engine.sync_all(
            "u1",
            [],
            [],
            make_settings(updated_at=100, last_synced_at=50, theme="dark"),
        )

        assert outcome.settings.theme == "system"
        assert remote.calls_named("set_singleton")
        assert len(outcome.report.conflicts) == 1

    async def test_remote_settings_adopted_when_local_missing(
        self, remote, clock
    ):
        remote.singletons[("settings", "u1")] = {
            "userId": "u1",
            "updatedAt": 10,
            "defaultCurrency": "EUR",
        }
        engine = SyncEngine(remote, clock=clock)

        outcome = await engine.sync_all("u1", [], [], None)

        assert outcome.settings.default_currency == "EUR"
        assert outcome.settings.last_synced_at == clock.now
        assert not remote.calls_named("set_singleton")

    async def test_malformed_remote_settings_overwritten(
        self, remote, clock, make_settings
    ):
        remote.singletons[("settings", "u1")] = {
            "userId": "u1",
            "updatedAt": 10,
            "theme": "neon",
        }
        engine = SyncEngine(remote, clock=clock)

        outcome = await engine.sync_all(
            "u1", [], [], make_settings(updated_at=5, last_synced_at=5)
        )

        assert remote.singletons[("settings", "u1")]["theme"] == "light"
        assert outcome.report.result_for(SETTINGS).skipped_records == 1

    async def test_no_settings_anywhere(self, remote, clock):
        engine = SyncEngine(remote, clock=clock)

        outcome = await engine.sync_all("u1", [], [], None)

        assert outcome.settings is None
        assert outcome.report.result_for(SETTINGS).success


class TestConvergence:
    async def test_second_sync_is_a_no_op(
        self, remote, clock, make_expense, make_category, make_settings
    ):
        engine = SyncEngine(remote, clock=clock)
        first = await engine.sync_all(
            "u1",
            [make_expense(id="e1"), make_expense(id="e2")],
            [make_category(id="c1")],
            make_settings(),
        )
        writes_before = len(
            remote.calls_named("batch_upsert")
            + remote.calls_named("set_singleton")
        )

        second = await engine.sync_all(
            "u1",
            first.expenses,
            first.categories,
            first.settings,
            first.status,
        )

        writes_after = len(
            remote.calls_named("batch_upsert")
            + remote.calls_named("set_singleton")
        )
        assert writes_after == writes_before
        assert second.expenses == first.expenses
        assert second.categories == first.categories
        assert second.settings == first.settings
        assert second.report.conflicts == []
        assert set(second.report.decision_totals()) == {"skip"}

    async def test_two_devices_converge(
        self, remote, clock, make_expense
    ):
        engine = SyncEngine(remote, clock=clock)
        device_a = await engine.sync_all(
            "u1", [make_expense(id="a1", updated_at=100)], [], None
        )
        clock.advance(100)
        device_b = await engine.sync_all(
            "u1", [make_expense(id="b1", updated_at=1_050)], [], None
        )
        clock.advance(100)
        device_a = await engine.sync_all(
            "u1", device_a.expenses, [], None, device_a.status
        )

        assert {e.id for e in device_a.expenses} == {"a1", "b1"}
        assert {e.id for e in device_b.expenses} == {"a1", "b1"}
        assert _all_synced(device_a)


class TestBuildStatus:
    def test_counts_pending_across_kinds(self, make_expense, make_category):
        status = build_status(
            [
                [make_expense(id="a"), make_expense(id="b", last_synced_at=100)],
                [make_category(updated_at=20, last_synced_at=10)],
            ],
            now=900,
            previous=SyncStatus(last_synced_at=7),
        )
        assert status.pending_sync_items == 2
        assert status.is_pending
        assert status.last_synced_at == 7
        assert status.has_conflicts is False

    def test_nothing_pending_advances_timestamp(self):
        status = build_status([[], []], now=900)
        assert status == SyncStatus(last_synced_at=900)

    def test_failed_kind_keeps_status_pending(self, make_expense):
        status = build_status(
            [[make_expense(last_synced_at=500)], []],
            now=900,
            previous=SyncStatus(last_synced_at=7),
            failed_kinds=[EXPENSES],
        )
        assert status.is_pending
        assert status.pending_sync_items == 0
        assert status.last_synced_at == 7


class TestFromConfig:
    def test_uses_sync_settings(self, remote, tmp_path):
        config = Config(
            remote_url="https://store.example.com",
            data_dir=tmp_path,
            conflict_strategy="remote-wins",
            max_batch_size=50,
            timeout=7.0,
        )

        engine = SyncEngine.from_config(config, remote)

        assert engine.resolver.name == "remote-wins"
        assert engine.writer.max_batch_size == 50
        assert engine.writer.timeout == 7.0
        assert engine.local_store is None


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


class TestRun:
    async def test_fresh_install_round_trip(self, remote, clock, tmp_path):
        store = LocalStateStore(tmp_path, clock=clock)
        engine = SyncEngine(remote, store, clock=clock)

        outcome = await engine.run("u1")

        assert len(remote.documents("categories", "u1")) == 9
        assert ("settings", "u1") in remote.singletons
        assert outcome.status.last_synced_at == clock.now
        saved = store.load_collection("categories")
        assert all(d["lastSyncedAt"] == clock.now for d in saved)
        status = json.loads((tmp_path / "sync_status.json").read_text())
        assert status == {
            "lastSyncedAt": clock.now,
            "isPending": False,
            "hasConflicts": False,
            "pendingSyncItems": 0,
        }

    async def test_failed_kind_not_committed(
        self, remote, clock, tmp_path, make_expense
    ):
        store = LocalStateStore(tmp_path, clock=clock)
        store.save_collection(
            "expenses",
            [make_expense(id="e1").model_dump(by_alias=True, exclude_none=True)],
        )
        remote.failures["expenses"] = RemoteStoreError("down")
        engine = SyncEngine(remote, store, clock=clock)

        outcome = await engine.run("u1")

        saved = store.load_collection("expenses")
        assert "lastSyncedAt" not in saved[0]
        assert outcome.status.is_pending
        assert outcome.status.pending_sync_items == 1
        assert store.load_status()["isPending"] is True

    async def test_local_commit_failure_reported(
        self, remote, clock, tmp_path, make_expense
    ):
        class BrokenExpenseStore(LocalStateStore):
            def save_collection(self, kind, items):
                if kind == "expenses":
                    raise LocalStoreError("disk full")
                super().save_collection(kind, items)

        store = BrokenExpenseStore(tmp_path, clock=clock)
        engine = SyncEngine(remote, store, clock=clock)

        outcome = await engine.run("u1")

        result = outcome.report.result_for(EXPENSES)
        assert not result.success
        assert "disk full" in result.error
        assert outcome.report.result_for(CATEGORIES).success

    async def test_previous_status_carried_forward(
        self, remote, clock, tmp_path, make_expense
    ):
        store = LocalStateStore(tmp_path, clock=clock)
        store.save_status({"lastSyncedAt": 77})
        store.save_collection(
            "expenses",
            [make_expense(id="e1").model_dump(by_alias=True, exclude_none=True)],
        )
        remote.failures["expenses"] = RemoteStoreError("down")
        engine = SyncEngine(remote, store, clock=clock)

        outcome = await engine.run("u1")

        assert outcome.status.last_synced_at == 77

    async def test_corrupt_local_store_is_fatal(
        self, remote, clock, tmp_path
    ):
        (tmp_path / "expenses.json").write_text("{not json")
        engine = SyncEngine(
            remote, LocalStateStore(tmp_path, clock=clock), clock=clock
        )

        with pytest.raises(LocalStoreError):
            await engine.run("u1")

    async def test_requires_local_store(self, remote, clock):
        engine = SyncEngine(remote, clock=clock)

        with pytest.raises(ValueError, match="local store"):
            await engine.run("u1")


class TestFailedKindStatus:
    async def test_synced_records_of_failed_kind_stay_pending(
        self, remote, clock, make_expense
    ):
        remote.failures["expenses.query"] = RemoteStoreError("offline")
        engine = SyncEngine(remote, clock=clock)

        outcome = await engine.sync_all(
            "u1",
            [make_expense(id="e1", updated_at=100, last_synced_at=500)],
            [],
            None,
            previous_status=SyncStatus(last_synced_at=42),
        )

        assert outcome.status.is_pending
        assert outcome.status.pending_sync_items == 0
        assert outcome.status.last_synced_at == 42

    async def test_run_saves_pending_status_for_failed_kind(
        self, remote, clock, tmp_path, make_expense
    ):
        store = LocalStateStore(tmp_path, clock=clock)
        store.save_status({"lastSyncedAt": 42})
        store.save_collection(
            "expenses",
            [
                make_expense(
                    id="e1", updated_at=100, last_synced_at=500
                ).model_dump(by_alias=True, exclude_none=True)
            ],
        )
        remote.failures["expenses.query"] = RemoteStoreError("offline")
        engine = SyncEngine(remote, store, clock=clock)

        outcome = await engine.run("u1")

        assert outcome.status.is_pending
        saved = store.load_status()
        assert saved["isPending"] is True
        assert saved["lastSyncedAt"] == 42


class TestConcurrency:
    async def test_kinds_run_concurrently(self, remote, clock):
        # Every kind must reach its first remote call before any proceeds.
        barrier = threading.Barrier(3, timeout=2)
        query, get_singleton = remote.query, remote.get_singleton

        def waiting_query(kind, user_id):
            barrier.wait()
            return query(kind, user_id)

        def waiting_get_singleton(kind, user_id):
            barrier.wait()
            return get_singleton(kind, user_id)

        remote.query = waiting_query
        remote.get_singleton = waiting_get_singleton
        engine = SyncEngine(remote, clock=clock)

        outcome = await engine.sync_all("u1", [], [], None)

        assert outcome.report.succeeded
        assert not barrier.broken

    async def test_fatal_error_stops_other_kinds(
        self, remote, clock, make_expense, make_category
    ):
        remote.failures["expenses.query"] = RuntimeError("bug")
        query = remote.query

        def slow_query(kind, user_id):
            if kind == "categories":
                time.sleep(0.2)
            return query(kind, user_id)

        remote.query = slow_query
        engine = SyncEngine(remote, clock=clock)

        with pytest.raises(RuntimeError, match="bug"):
            await engine.sync_all(
                "u1", [make_expense()], [make_category()], None
            )

        await asyncio.sleep(0.5)
        assert remote.calls_named("batch_upsert") == []
        assert remote.calls_named("batch_delete") == []
