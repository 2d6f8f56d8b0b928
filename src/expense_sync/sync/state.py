"""Local snapshot persistence.

``LocalStateStore`` keeps the device's copy of every entity kind as JSON
files in a data directory:

* ``expenses.json`` / ``categories.json`` -- list of documents.
* ``settings.json`` -- mapping of user id to the settings document.
* ``sync_status.json`` -- the last ``SyncStatus``.

Key design choices:

* **Atomic writes** -- ``_write_json()`` writes to a temp file then calls
  ``os.replace()`` so readers never see partial data.
* **Verbatim documents** -- the store never reshapes what it is given;
  envelope fields round-trip exactly.
* **First-run defaults** -- a missing categories file is seeded with the
  stock categories, and missing settings with default settings, mirroring
  what a fresh install shows the user.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from expense_sync.core.clock import Clock, system_clock
from expense_sync.errors import LocalStoreError
from expense_sync.sync.mapper import to_document, to_documents
from expense_sync.sync.models import (
    EntityKind,
    default_categories,
    default_settings,
)

logger = logging.getLogger(__name__)

_STATUS_FILE = "sync_status.json"


class LocalStateStore:
    """JSON-file implementation of the ``LocalStore`` protocol.

    Args:
        data_dir: Directory holding the snapshot files.  Created on first
            write.
        clock: Timestamp source for seeded defaults.
        seed_defaults: Seed categories/settings when absent.
    """

    def __init__(
        self,
        data_dir: Path,
        clock: Clock = system_clock,
        seed_defaults: bool = True,
    ) -> None:
        self._data_dir = Path(data_dir)
        self._clock = clock
        self._seed_defaults = seed_defaults

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    def load_collection(self, kind: str) -> list[dict[str, Any]]:
        """Load the stored documents of *kind*.

        Returns an empty list when nothing is stored yet, except for
        categories, which are seeded with the defaults.

        Raises:
            LocalStoreError: If the file exists but cannot be read or is
                not a JSON list.
        """
        kind = EntityKind(kind)
        data = self._read_json(self._path(kind))
        if data is None:
            if kind is EntityKind.CATEGORIES and self._seed_defaults:
                seeded = to_documents(default_categories(self._clock()))
                logger.info("Seeding %d default categories", len(seeded))
                self.save_collection(kind, seeded)
                return seeded
            return []
        if not isinstance(data, list):
            raise LocalStoreError(
                f"{self._path(kind)} does not contain a list of documents"
            )
        return data

    def save_collection(
        self, kind: str, items: list[dict[str, Any]]
    ) -> None:
        """Replace the stored collection of *kind* atomically."""
        kind = EntityKind(kind)
        self._write_json(self._path(kind), list(items))

    # ------------------------------------------------------------------
    # Singletons
    # ------------------------------------------------------------------

    def load_singleton(
        self, kind: str, key: str
    ) -> dict[str, Any] | None:
        """Return the singleton of *kind* stored under *key*.

        Missing settings are seeded with defaults for *key* (the user id)
        when seeding is enabled.
        """
        kind = EntityKind(kind)
        data = self._read_json(self._path(kind)) or {}
        if not isinstance(data, dict):
            raise LocalStoreError(
                f"{self._path(kind)} does not contain a mapping"
            )
        item = data.get(key)
        if item is None and kind is EntityKind.SETTINGS and self._seed_defaults:
            item = to_document(default_settings(key, self._clock()))
            logger.info("Seeding default settings for user %s", key)
            self.save_singleton(kind, item)
        return item

    def save_singleton(self, kind: str, item: dict[str, Any]) -> None:
        """Store *item* under its ``userId`` (or ``id``)."""
        kind = EntityKind(kind)
        key = item.get("userId") or item.get("id")
        if not key:
            raise LocalStoreError(
                f"Cannot store {kind.value} singleton without userId or id"
            )
        path = self._path(kind)
        data = self._read_json(path) or {}
        if not isinstance(data, dict):
            raise LocalStoreError(f"{path} does not contain a mapping")
        data[key] = item
        self._write_json(path, data)

    # ------------------------------------------------------------------
    # Sync status
    # ------------------------------------------------------------------

    def load_status(self) -> dict[str, Any] | None:
        """Return the last saved sync status, or ``None``."""
        return self._read_json(self._data_dir / _STATUS_FILE)

    def save_status(self, status: dict[str, Any]) -> None:
        """Persist the sync status atomically."""
        self._write_json(self._data_dir / _STATUS_FILE, status)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _path(self, kind: EntityKind) -> Path:
        return self._data_dir / f"{kind.value}.json"

    def _read_json(self, path: Path) -> Any:
        """Read *path*; ``None`` if it does not exist."""
        try:
            with open(path, encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            raise LocalStoreError(f"Cannot read {path}: {exc}") from exc

    def _write_json(self, path: Path, data: Any) -> None:
        """Write *data* to *path* via a temp file and ``os.replace()``."""
        try:
            self._data_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self._data_dir), suffix=".tmp"
            )
        except OSError as exc:
            raise LocalStoreError(
                f"Cannot prepare {self._data_dir}: {exc}"
            ) from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
            os.replace(tmp_path, path)
        except BaseException as exc:
            # Clean up temp file on any failure.
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            if isinstance(exc, OSError):
                raise LocalStoreError(f"Cannot write {path}: {exc}") from exc
            raise
