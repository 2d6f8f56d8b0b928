import json
import logging
import os
import sys

# Structured fields the sync modules attach through ``extra=``.
EXTRA_FIELDS = ("kind", "record_id", "winner", "user_id")

DEFAULT_SERVICE_LOG_FILE = "/tmp/expense-sync.log"


class JsonFormatter(logging.Formatter):
    """Single-line JSON formatter for structured output.

    Produces one JSON object per log record with fields: ts, level, logger,
    msg, plus any of ``EXTRA_FIELDS`` set on the record.  Exception info is
    included as an "exc" field when present.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for name in EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _make_formatter(fmt: str, text_format: str) -> logging.Formatter:
    if fmt == "json":
        return JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S")
    return logging.Formatter(text_format, datefmt="%Y-%m-%d %H:%M:%S")


def setup_logging(
    mode: str = "cli",
    debug: bool = False,
    log_file: str | None = None,
    debug_format: str = "text",
) -> None:
    """
    Configure logging based on execution mode.

    Args:
        mode: "service" for file logging (background sync), "cli" for
              stderr logging.
        debug: If True, overrides EXPENSE_SYNC_LOG_LEVEL to DEBUG.
        log_file: Custom log file path (overrides EXPENSE_SYNC_LOG_FILE).
        debug_format: "text" (default) or "json" for structured output.

    Environment variables:
        EXPENSE_SYNC_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR).
                   Default: WARNING for service mode, INFO for CLI mode.
        EXPENSE_SYNC_LOG_FILE: Log file path for service mode.
                  Default: /tmp/expense-sync.log
    """
    default_level = "WARNING" if mode == "service" else "INFO"
    env_level = os.getenv("EXPENSE_SYNC_LOG_LEVEL", default_level).upper()

    # debug parameter overrides environment
    if debug:
        log_level = logging.DEBUG
    else:
        log_level = getattr(logging, env_level, logging.INFO)

    handlers: list[logging.Handler] = []
    if mode == "service":
        # Priority: log_file param > EXPENSE_SYNC_LOG_FILE env var > default
        final_log_file = log_file or os.getenv(
            "EXPENSE_SYNC_LOG_FILE", DEFAULT_SERVICE_LOG_FILE
        )
        file_handler = logging.FileHandler(final_log_file, mode="a")
        file_handler.setFormatter(
            _make_formatter(
                debug_format,
                "[%(asctime)s] [%(levelname)s] %(name)s %(message)s",
            )
        )
        handlers.append(file_handler)
    else:
        # CLI mode: stderr, plus a file when one is given
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            _make_formatter(
                debug_format, "[%(asctime)s] [%(levelname)s] %(message)s"
            )
        )
        handlers.append(stderr_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file, mode="a")
            file_handler.setFormatter(
                _make_formatter(
                    debug_format,
                    "[%(asctime)s] [%(levelname)s] %(name)s %(message)s",
                )
            )
            handlers.append(file_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True,
    )

    # Silence third-party libs unless DEBUG
    if log_level != logging.DEBUG:
        logging.getLogger("urllib3").setLevel(logging.WARNING)
