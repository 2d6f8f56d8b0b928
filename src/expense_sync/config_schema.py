"""Unified configuration schema for expense_sync.

Defines Pydantic models for the YAML config structure with dedicated
sections for the remote store, local storage, sync behaviour and logging.
``to_fallbacks`` flattens a validated config into the keyword fallbacks
consumed by ``config.load_config``.

Usage:
    from expense_sync.config_schema import build_config, to_fallbacks

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config = load_config(yaml_fallbacks=to_fallbacks(unified))
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class RemoteConfig(BaseModel):
    """Remote document store connection settings.

    All fields are optional so env vars and explicit arguments can supply
    them at runtime instead.
    """

    url: str | None = Field(
        default=None, description="Base URL of the document store API"
    )
    token: str | None = Field(
        default=None, description="Bearer token for the document store"
    )
    insecure: bool = Field(
        default=False,
        description="Disable TLS verification (development only)",
    )
    timeout: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Per-call timeout in seconds",
    )

    model_config = {"frozen": True}


class StorageConfig(BaseModel):
    """Local snapshot storage."""

    data_dir: str = Field(
        default="~/.expense_sync/data",
        description="Directory holding the local JSON snapshot",
    )

    model_config = {"frozen": True}


class SyncSettingsConfig(BaseModel):
    """Sync engine behaviour."""

    conflict_strategy: Literal[
        "last-writer-wins", "local-wins", "remote-wins"
    ] = Field(
        default="last-writer-wins",
        description="How to settle records changed on both sides",
    )
    max_parallel_requests: int = Field(
        default=3,
        ge=1,
        le=16,
        description="Maximum concurrent remote calls (1-16)",
    )
    max_batch_size: int = Field(
        default=500,
        ge=1,
        le=500,
        description="Maximum writes per remote batch (1-500)",
    )
    purge_confirmed_tombstones: bool = Field(
        default=False,
        description="Drop deleted expenses locally once the remote delete is confirmed",
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
        format: ``text`` or ``json``.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")
    format: Literal["text", "json"] = Field(
        default="text", description="Log line format"
    )

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level configuration.

    Every section has defaults, so ``UnifiedConfig()`` (zero-config) is
    always valid.
    """

    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    sync: SyncSettingsConfig = Field(default_factory=SyncSettingsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory functions
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Missing sections get defaults.  Unknown top-level sections are ignored
    with a warning.
    """
    if not raw_data:
        return UnifiedConfig()

    known = set(UnifiedConfig.model_fields)
    unknown = sorted(set(raw_data) - known)
    if unknown:
        logger.warning("Ignoring unknown config sections: %s", unknown)

    return UnifiedConfig(
        **{k: v for k, v in raw_data.items() if k in known}
    )


def to_fallbacks(unified: UnifiedConfig) -> dict[str, Any]:
    """Flatten *unified* into ``load_config`` keyword fallbacks.

    ``None`` values are dropped so they never mask env vars.
    """
    flat = {
        "remote_url": unified.remote.url,
        "token": unified.remote.token,
        "insecure": unified.remote.insecure,
        "timeout": unified.remote.timeout,
        "data_dir": unified.storage.data_dir,
        "conflict_strategy": unified.sync.conflict_strategy,
        "max_parallel_requests": unified.sync.max_parallel_requests,
        "max_batch_size": unified.sync.max_batch_size,
        "purge_confirmed_tombstones": unified.sync.purge_confirmed_tombstones,
    }
    return {k: v for k, v in flat.items() if v is not None}
