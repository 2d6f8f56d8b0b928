"""Runtime configuration for the sync engine and its adapters.

Reads settings from explicit arguments, environment variables, .env files
and YAML config fallbacks.

Precedence (highest to lowest):
    Arguments > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    EXPENSE_SYNC_REMOTE_URL: Document store base URL (required for HTTP sync)
    EXPENSE_SYNC_TOKEN: Bearer token for the document store (optional)
    EXPENSE_SYNC_DATA_DIR: Local snapshot directory (optional)
    EXPENSE_SYNC_INSECURE: Skip TLS verification (optional, default: false)
    EXPENSE_SYNC_TIMEOUT: Remote call timeout in seconds (optional, default: 30)
    EXPENSE_SYNC_MAX_PARALLEL_REQUESTS: Concurrent remote calls (optional, default: 3)
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = "~/.expense_sync/data"


@dataclass
class Config:
    remote_url: str
    token: str | None = None
    insecure: bool = False
    timeout: float = 30.0
    data_dir: Path = Path(DEFAULT_DATA_DIR).expanduser()
    conflict_strategy: str = "last-writer-wins"
    max_parallel_requests: int = 3
    max_batch_size: int = 500
    purge_confirmed_tombstones: bool = False


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ConfigError if invalid.

    Raises:
        ConfigError: If the URL is malformed or a numeric value is out of
            range.
    """
    config.remote_url = config.remote_url.strip()

    if not config.remote_url.startswith(("http://", "https://")):
        raise ConfigError(
            f"Invalid remote URL '{config.remote_url}': must start with http:// or https://"
        )

    parsed = urlparse(config.remote_url)
    if not parsed.hostname:
        raise ConfigError(
            f"Invalid remote URL '{config.remote_url}': URL must include a hostname"
        )

    config.remote_url = config.remote_url.removesuffix("/")

    if config.timeout <= 0:
        raise ConfigError(
            f"Invalid timeout {config.timeout}: must be greater than 0"
        )

    if not (1 <= config.max_parallel_requests <= 16):
        raise ConfigError(
            f"Invalid max_parallel_requests {config.max_parallel_requests}: must be between 1 and 16"
        )

    if not (1 <= config.max_batch_size <= 500):
        raise ConfigError(
            f"Invalid max_batch_size {config.max_batch_size}: must be between 1 and 500"
        )

    # Import here to avoid circular imports (sync package imports core)
    from .sync.resolver import STRATEGIES

    if config.conflict_strategy not in STRATEGIES:
        raise ConfigError(
            f"Invalid conflict_strategy '{config.conflict_strategy}': expected one of {list(STRATEGIES)}"
        )

    if config.insecure:
        logger.warning(
            "WARNING: TLS verification disabled (insecure=True). Use only for development."
        )


def _bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _number_env(key: str, cast: type) -> float | int | None:
    raw = os.getenv(key)
    if raw is None:
        return None
    try:
        return cast(raw)
    except ValueError:
        raise ConfigError(f"Invalid {key} '{raw}': must be a number") from None


def load_config(
    remote_url: str | None = None,
    token: str | None = None,
    data_dir: str | Path | None = None,
    insecure: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        argument > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` first so .env
    values are visible through ``os.getenv()``.

    Args:
        remote_url: Override the document store URL.
        token: Override the bearer token.
        data_dir: Override the local snapshot directory.
        insecure: Skip TLS verification.
        yaml_fallbacks: Flattened YAML values from
            ``config_schema.to_fallbacks``.

    Returns:
        Validated Config instance.

    Raises:
        ConfigError: If the remote URL is missing after checking all
            sources, or any value is invalid.
    """
    fb = yaml_fallbacks or {}

    final_url = (
        remote_url
        or os.getenv("EXPENSE_SYNC_REMOTE_URL")
        or fb.get("remote_url")
    )
    if not final_url:
        raise ConfigError(
            "Remote URL not found. Set EXPENSE_SYNC_REMOTE_URL, pass "
            "remote_url, or add 'remote.url' to config.yml."
        )

    final_token = (
        token or os.getenv("EXPENSE_SYNC_TOKEN") or fb.get("token")
    )

    final_dir = (
        data_dir
        or os.getenv("EXPENSE_SYNC_DATA_DIR")
        or fb.get("data_dir")
        or DEFAULT_DATA_DIR
    )

    if insecure:
        final_insecure = True
    else:
        env_insecure = _bool_env("EXPENSE_SYNC_INSECURE")
        if env_insecure is not None:
            final_insecure = env_insecure
        else:
            final_insecure = bool(fb.get("insecure", False))

    env_timeout = _number_env("EXPENSE_SYNC_TIMEOUT", float)
    final_timeout = (
        env_timeout if env_timeout is not None else fb.get("timeout", 30.0)
    )

    env_parallel = _number_env("EXPENSE_SYNC_MAX_PARALLEL_REQUESTS", int)
    final_parallel = (
        env_parallel
        if env_parallel is not None
        else fb.get("max_parallel_requests", 3)
    )

    config = Config(
        remote_url=final_url,
        token=final_token,
        insecure=final_insecure,
        timeout=float(final_timeout),
        data_dir=Path(final_dir).expanduser(),
        conflict_strategy=fb.get("conflict_strategy", "last-writer-wins"),
        max_parallel_requests=int(final_parallel),
        max_batch_size=int(fb.get("max_batch_size", 500)),
        purge_confirmed_tombstones=bool(
            fb.get("purge_confirmed_tombstones", False)
        ),
    )

    validate_config(config)

    return config
