"""FastMCP server entry point for the Admin Review Hub."""

from __future__ import annotations

import contextvars
import json
import logging
import os
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastmcp import FastMCP

from admin_review_hub.db import _default_user_config_dir, hub_lifespan

HUB_LOG_DIR_ENV_VAR = "REVIEW_HUB_LOG_DIR"
HUB_LOG_MAX_BYTES_ENV_VAR = "REVIEW_HUB_LOG_MAX_BYTES"
HUB_LOG_BACKUPS_ENV_VAR = "REVIEW_HUB_LOG_BACKUPS"
DEFAULT_HUB_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_HUB_LOG_BACKUPS = 5
DEFAULT_HUB_PORT = 8331

mcp = FastMCP(
    "admin-review-hub",
    instructions=(
        "Collaboration hub for the admin review console. "
        "Moves applications and stories through review, tracks who is online, "
        "and delivers audit, alert and notification side effects."
    ),
    lifespan=hub_lifespan,
)

# ContextVar holding the acting admin for log lines.
# Default "hub" is used for internal/system actions.
caller_tag: contextvars.ContextVar[str] = contextvars.ContextVar("caller_tag", default="hub")

# Import tools and routes to register them with the server.
# This import MUST come AFTER mcp is created to avoid circular imports.
from admin_review_hub import tools  # noqa: F401, E402
from admin_review_hub.routes import register_routes  # noqa: E402

register_routes(mcp)


class _CallerFormatter(logging.Formatter):
    """Log formatter that injects the caller_tag ContextVar into each record."""

    def format(self, record: logging.LogRecord) -> str:
        record.caller_tag = caller_tag.get("hub")  # type: ignore[attr-defined]
        return super().format(record)


class _JsonFormatter(logging.Formatter):
    """Structured JSON formatter for hub logfile events."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "caller_tag": getattr(record, "caller_tag", caller_tag.get("hub")),
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"))


def _resolve_hub_log_dir() -> Path:
    override = os.environ.get(HUB_LOG_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return _default_user_config_dir() / "hub-logs"


def _read_positive_int_env(name: str, default: int, minimum: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value < minimum:
        return default
    return value


def _configure_logging() -> None:
    """Configure concise hub logs with stream and structured rotating logfile handlers."""
    logger = logging.getLogger("admin_review_hub")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    has_stream_handler = any(
        getattr(handler, "_review_hub_stream_handler", False)
        for handler in logger.handlers
    )
    if not has_stream_handler:
        handler = logging.StreamHandler()
        handler._review_hub_stream_handler = True  # type: ignore[attr-defined]
        handler.setLevel(logging.INFO)
        handler.setFormatter(
            _CallerFormatter(
                "%(asctime)s [%(caller_tag)s] %(message)s",
                "%H:%M:%S",
            )
        )
        logger.addHandler(handler)

    if not any(getattr(handler, "_review_hub_file_handler", False) for handler in logger.handlers):
        log_dir = _resolve_hub_log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / "hub.jsonl",
            maxBytes=_read_positive_int_env(
                HUB_LOG_MAX_BYTES_ENV_VAR, DEFAULT_HUB_LOG_MAX_BYTES, 1024
            ),
            backupCount=_read_positive_int_env(
                HUB_LOG_BACKUPS_ENV_VAR, DEFAULT_HUB_LOG_BACKUPS, 1
            ),
            encoding="utf-8",
        )
        file_handler._review_hub_file_handler = True  # type: ignore[attr-defined]
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(_JsonFormatter())
        logger.addHandler(file_handler)


# Ensure the hub logger is configured even when the server is launched without main().
_configure_logging()


def main() -> None:
    """Run the hub server.

    REVIEW_HUB_HOST overrides the bind host (default 0.0.0.0) and
    REVIEW_HUB_PORT the port (default 8331).

    Storage:
    - Default DB path is the user-scoped config dir:
      Linux: ~/.config/admin-review-hub/admin_review_hub.sqlite3
      macOS: ~/Library/Application Support/admin-review-hub/admin_review_hub.sqlite3
      Windows: %APPDATA%/admin-review-hub/admin_review_hub.sqlite3
    - Set REVIEW_HUB_DB_PATH to override with an explicit SQLite file path.
    """
    _configure_logging()
    host = os.environ.get("REVIEW_HUB_HOST", "0.0.0.0")
    port = _read_positive_int_env("REVIEW_HUB_PORT", DEFAULT_HUB_PORT, 1)
    uvicorn_log_level = os.environ.get("REVIEW_HUB_UVICORN_LOG_LEVEL", "warning")
    mcp.run(
        transport="streamable-http",
        host=host,
        port=port,
        log_level=uvicorn_log_level,
        stateless_http=True,
    )


if __name__ == "__main__":
    main()
