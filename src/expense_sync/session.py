"""Session management: build a ready ``SyncEngine`` and tear it down."""

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv

from .config import load_config
from .config_loader import (
    discover_config_files,
    load_hierarchical_config,
)
from .config_schema import UnifiedConfig, build_config, to_fallbacks
from .core.async_utils import init_semaphore, reset_semaphore
from .core.clock import Clock, MonotonicClock
from .core.client import RemoteStoreClient
from .errors import ConfigError
from .logger import setup_logging
from .sync.engine import SyncEngine
from .sync.state import LocalStateStore

logger = logging.getLogger(__name__)


def _apply_logging_config(unified: UnifiedConfig, mode: str) -> None:
    """Configure logging from the YAML ``logging`` section."""
    level = unified.logging.level.upper()
    setup_logging(
        mode=mode,
        debug=level == "DEBUG",
        log_file=unified.logging.file,
        debug_format=unified.logging.format,
    )
    # An explicit EXPENSE_SYNC_LOG_LEVEL beats the config file.
    if "EXPENSE_SYNC_LOG_LEVEL" not in os.environ:
        logging.getLogger().setLevel(getattr(logging, level, logging.INFO))


@asynccontextmanager
async def sync_session(
    config_overrides: dict[str, Any] | None = None,
    *,
    logging_mode: str | None = None,
    clock: Clock | None = None,
) -> AsyncIterator[SyncEngine]:
    """
    Set up everything a sync needs and yield the engine.

    On startup:
    - Load .env file (so values are available for env var lookups and YAML interpolation)
    - Load YAML config file if present (as fallback values)
    - Merge all sources via load_config(): overrides > env vars > .env > YAML > defaults
    - Optionally configure logging from the YAML ``logging`` section
    - Initialise the remote-request semaphore
    - Create the local store, the HTTP client and the engine

    On shutdown:
    - Close the HTTP client's sessions
    - Drop the semaphore

    Args:
        config_overrides: Optional dict with ``remote_url``, ``token``,
            ``data_dir`` and ``insecure`` values that beat every other
            source.
        logging_mode: ``"cli"`` or ``"service"`` to configure logging;
            ``None`` leaves logging alone.
        clock: Timestamp source.  Defaults to a ``MonotonicClock`` over
            the wall clock.

    Yields:
        A ``SyncEngine`` with a local store attached, ready for ``run()``.

    Raises:
        ConfigError: If configuration is missing or invalid.
    """
    # 1. Load .env early (before YAML, so ${VAR} interpolation can use .env values)
    load_dotenv()

    # 2. Load YAML config if present
    unified = UnifiedConfig()
    yaml_fallbacks: dict[str, Any] | None = None
    config_files = discover_config_files()
    sources = []
    if config_files:
        raw = load_hierarchical_config()
        try:
            unified = build_config(raw)
        except ValueError as e:
            # pydantic.ValidationError is a ValueError
            raise ConfigError(f"Invalid config file: {e}") from e
        yaml_fallbacks = to_fallbacks(unified)
        sources.append(f"config file: {config_files[0]}")

    if logging_mode is not None:
        _apply_logging_config(unified, logging_mode)

    # 3. Single call to load_config with all sources merged
    overrides = config_overrides or {}
    try:
        config = load_config(
            remote_url=overrides.get("remote_url"),
            token=overrides.get("token"),
            data_dir=overrides.get("data_dir"),
            insecure=overrides.get("insecure", False),
            yaml_fallbacks=yaml_fallbacks,
        )
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise

    if overrides:
        sources.append("overrides")
    sources.append("environment variables")
    logger.info("Configuration loaded from: %s", ", ".join(sources))
    logger.info("Remote store: %s", config.remote_url)
    logger.info("Local data: %s", config.data_dir)

    init_semaphore(config.max_parallel_requests)
    clock = clock or MonotonicClock()
    client = RemoteStoreClient(config)
    engine = SyncEngine.from_config(
        config,
        client,
        LocalStateStore(config.data_dir, clock=clock),
        clock=clock,
    )
    try:
        yield engine
    finally:
        logger.info("Closing sync session")
        client.close()
        reset_semaphore()
