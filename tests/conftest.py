"""Shared pytest fixtures for expense-sync tests."""

from __future__ import annotations

import copy
from typing import Any

import pytest
from dotenv import load_dotenv

from expense_sync.config import Config
from expense_sync.core import async_utils
from expense_sync.sync.models import Category, Expense, UserSettings

load_dotenv()


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced clock returning epoch milliseconds."""

    def __init__(self, now: int = 1_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 1) -> int:
        self.now += ms
        return self.now


class FakeRemoteStore:
    """In-memory ``RemoteStore`` that records every call.

    ``failures`` maps ``"<kind>"`` or ``"<kind>.<method>"`` to an exception
    raised when that call is made.
    """

    def __init__(self) -> None:
        self.collections: dict[tuple[str, str], dict[str, dict]] = {}
        self.singletons: dict[tuple[str, str], dict] = {}
        self.calls: list[tuple] = []
        self.failures: dict[str, Exception] = {}

    # -- helpers -----------------------------------------------------------

    def seed(self, kind: str, user_id: str, *documents: dict) -> None:
        coll = self.collections.setdefault((kind, user_id), {})
        for doc in documents:
            coll[doc["id"]] = copy.deepcopy(doc)

    def documents(self, kind: str, user_id: str) -> dict[str, dict]:
        return self.collections.get((kind, user_id), {})

    def calls_named(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]

    def _maybe_fail(self, method: str, kind: str) -> None:
        exc = self.failures.get(f"{kind}.{method}") or self.failures.get(kind)
        if exc is not None:
            raise exc

    # -- RemoteStore protocol ----------------------------------------------

    def query(self, kind: str, user_id: str) -> list[dict]:
        self.calls.append(("query", kind, user_id))
        self._maybe_fail("query", kind)
        docs = copy.deepcopy(list(self.documents(kind, user_id).values()))
        return sorted(docs, key=lambda d: d.get("updatedAt", 0), reverse=True)

    def batch_upsert(
        self, kind: str, user_id: str, documents: list[dict]
    ) -> None:
        self.calls.append(
            ("batch_upsert", kind, user_id, [d["id"] for d in documents])
        )
        self._maybe_fail("batch_upsert", kind)
        self.seed(kind, user_id, *documents)

    def batch_delete(self, kind: str, user_id: str, ids: list[str]) -> None:
        self.calls.append(("batch_delete", kind, user_id, list(ids)))
        self._maybe_fail("batch_delete", kind)
        coll = self.collections.setdefault((kind, user_id), {})
        for record_id in ids:
            coll.pop(record_id, None)

    def get_singleton(self, kind: str, user_id: str) -> dict | None:
        self.calls.append(("get_singleton", kind, user_id))
        self._maybe_fail("get_singleton", kind)
        doc = self.singletons.get((kind, user_id))
        return copy.deepcopy(doc) if doc is not None else None

    def set_singleton(self, kind: str, user_id: str, document: dict) -> None:
        self.calls.append(("set_singleton", kind, user_id, document["id"]))
        self._maybe_fail("set_singleton", kind)
        self.singletons[(kind, user_id)] = copy.deepcopy(document)


class FakeBatchRemoteStore(FakeRemoteStore):
    """Fake remote store that also offers the combined ``batch_write``."""

    def batch_write(
        self,
        kind: str,
        user_id: str,
        documents: list[dict],
        ids: list[str],
    ) -> None:
        self.calls.append(
            (
                "batch_write",
                kind,
                user_id,
                [d["id"] for d in documents],
                list(ids),
            )
        )
        self._maybe_fail("batch_write", kind)
        coll = self.collections.setdefault((kind, user_id), {})
        for record_id in ids:
            coll.pop(record_id, None)
        self.seed(kind, user_id, *documents)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _expense(**overrides: Any) -> Expense:
    data: dict[str, Any] = {
        "id": "e1",
        "updated_at": 100,
        "amount": 20.0,
        "currency": "USD",
        "category_id": "default-0",
        "date": 100,
    }
    data.update(overrides)
    return Expense(**data)


def _category(**overrides: Any) -> Category:
    data: dict[str, Any] = {
        "id": "c1",
        "updated_at": 10,
        "name": "Groceries",
        "color": "#4CAF50",
        "icon": "cart",
    }
    data.update(overrides)
    return Category(**data)


def _settings(**overrides: Any) -> UserSettings:
    data: dict[str, Any] = {"user_id": "u1", "updated_at": 10}
    data.update(overrides)
    return UserSettings(**data)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    """A fake clock starting at t=1000 ms."""
    return FakeClock()


@pytest.fixture
def remote():
    """An empty in-memory remote store without ``batch_write``."""
    return FakeRemoteStore()


@pytest.fixture
def batch_remote():
    """An empty in-memory remote store with ``batch_write``."""
    return FakeBatchRemoteStore()


@pytest.fixture
def make_expense():
    """Factory fixture for ``Expense`` records."""
    return _expense


@pytest.fixture
def make_category():
    """Factory fixture for ``Category`` records."""
    return _category


@pytest.fixture
def make_settings():
    """Factory fixture for ``UserSettings`` records."""
    return _settings


@pytest.fixture
def mock_config(tmp_path):
    """A valid Config pointing at a fake document store."""
    return Config(
        remote_url="https://store.example.com/api",
        token="secret-token",
        insecure=False,
        timeout=5.0,
        data_dir=tmp_path / "data",
    )


@pytest.fixture(autouse=True)
def _reset_semaphore():
    """Never leak the module-level semaphore between tests."""
    yield
    async_utils.reset_semaphore()
