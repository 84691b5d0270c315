"""Database connection, schema management, and lifespan for the Admin Review Hub."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from pathlib import Path

import aiosqlite
from fastmcp import FastMCP

from admin_review_hub.alerts import AlertChannel, CriticalAlertDispatcher, LoggingAlertChannel
from admin_review_hub.audit import AuditLog
from admin_review_hub.config_schema import HubConfig, load_hub_config
from admin_review_hub.jobs import BackgroundJobs, LoggingSender, OutboundSender
from admin_review_hub.models import ApplicationStatus, StoryStatus
from admin_review_hub.notifications import NotificationFanout
from admin_review_hub.permissions import PermissionGuard
from admin_review_hub.presence import PresenceRegistry
from admin_review_hub.pubsub import PubSubHub
from admin_review_hub.review import ReviewService
from admin_review_hub.viewers import ViewerTracker

DB_FILENAME = "admin_review_hub.sqlite3"
DB_CONFIG_DIRNAME = "admin-review-hub"
DB_PATH_ENV_VAR = "REVIEW_HUB_DB_PATH"
CONFIG_PATH_ENV_VAR = "REVIEW_HUB_CONFIG_PATH"
CONFIG_FILENAME = "review_hub.json"
logger = logging.getLogger("admin_review_hub")


def _status_check(values: list[str]) -> str:
    return ",".join(f"'{value}'" for value in values)


SCHEMA_SQL = f"""\
CREATE TABLE IF NOT EXISTS admin_users (
    id              TEXT PRIMARY KEY,
    email           TEXT NOT NULL UNIQUE,
    role            TEXT NOT NULL DEFAULT 'viewer'
                    CHECK(role IN ('viewer', 'reviewer', 'admin')),
    display_name    TEXT,
    avatar_url      TEXT,
    created_at      TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS applications (
    id                  TEXT PRIMARY KEY,
    status              TEXT NOT NULL DEFAULT 'pending'
                        CHECK(status IN ({_status_check(list(ApplicationStatus))})),
    full_name           TEXT NOT NULL,
    student_email       TEXT,
    reference_number    TEXT,
    school_name         TEXT,
    grade               TEXT,
    province            TEXT,
    created_at          TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at          TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_applications_status ON applications(status);

CREATE TABLE IF NOT EXISTS blog_posts (
    id              TEXT PRIMARY KEY,
    status          TEXT NOT NULL DEFAULT 'pending'
                    CHECK(status IN ({_status_check(list(StoryStatus))})),
    title           TEXT NOT NULL,
    author_name     TEXT,
    author_email    TEXT,
    approved_at     TEXT,
    created_at      TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at      TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_blog_posts_status ON blog_posts(status);

CREATE TABLE IF NOT EXISTS admin_audit_log (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    admin_user_id   TEXT NOT NULL,
    action          TEXT NOT NULL,
    table_name      TEXT NOT NULL,
    record_id       TEXT,
    old_values      TEXT,
    new_values      TEXT,
    created_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
CREATE INDEX IF NOT EXISTS idx_audit_record ON admin_audit_log(record_id);
CREATE INDEX IF NOT EXISTS idx_audit_action ON admin_audit_log(action);

CREATE TABLE IF NOT EXISTS admin_notifications (
    id              TEXT PRIMARY KEY,
    admin_user_id   TEXT NOT NULL,
    type            TEXT NOT NULL,
    title           TEXT NOT NULL,
    message         TEXT NOT NULL,
    link            TEXT,
    is_read         INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
CREATE INDEX IF NOT EXISTS idx_notifications_owner
    ON admin_notifications(admin_user_id, created_at);

CREATE TABLE IF NOT EXISTS module_permissions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    module_key      TEXT NOT NULL UNIQUE,
    module_name     TEXT NOT NULL,
    allowed_roles   TEXT NOT NULL DEFAULT '[]',
    created_at      TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at      TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

SCHEMA_MIGRATIONS: list[str] = [
    # Phone numbers for SMS/WhatsApp outbound notices
    "ALTER TABLE applications ADD COLUMN parent_phone TEXT",
    "ALTER TABLE blog_posts ADD COLUMN author_phone TEXT",
]


@dataclass
class AppContext:
    """Application context: the store connection and every hub service bound to it."""

    db: aiosqlite.Connection
    write_lock: asyncio.Lock
    config: HubConfig
    hub: PubSubHub
    jobs: BackgroundJobs
    presence: PresenceRegistry
    audit: AuditLog
    guard: PermissionGuard
    reviews: ReviewService
    fanout: NotificationFanout
    sender: OutboundSender
    alert_channel: AlertChannel
    viewers: dict[str, ViewerTracker] = field(default_factory=dict)


async def ensure_schema(db: aiosqlite.Connection) -> None:
    """Create tables and indexes if they don't exist, then apply migrations."""
    await db.executescript(SCHEMA_SQL)
    for migration in SCHEMA_MIGRATIONS:
        try:
            await db.execute(migration)
        except aiosqlite.OperationalError as exc:
            # Idempotent migration: ignore only duplicate-column errors.
            if "duplicate column name" not in str(exc).lower():
                raise


def build_app_context(
    db: aiosqlite.Connection,
    config: HubConfig | None = None,
    *,
    sender: OutboundSender | None = None,
    alert_channel: AlertChannel | None = None,
    hub: PubSubHub | None = None,
) -> AppContext:
    """Wire the hub services around one connection. Used by the lifespan and tests."""
    config = config or HubConfig()
    sender = sender or LoggingSender()
    alert_channel = alert_channel or LoggingAlertChannel()
    hub = hub or PubSubHub()
    write_lock = asyncio.Lock()
    jobs = BackgroundJobs()
    guard = PermissionGuard(db)
    audit = AuditLog(db, write_lock, CriticalAlertDispatcher(alert_channel, jobs))
    reviews = ReviewService(
        db,
        write_lock,
        audit=audit,
        guard=guard,
        jobs=jobs,
        hub=hub,
        sender=sender,
        channels=config.outbound_channels,
    )
    return AppContext(
        db=db,
        write_lock=write_lock,
        config=config,
        hub=hub,
        jobs=jobs,
        presence=PresenceRegistry(
            hub,
            grace_seconds=config.presence_grace_seconds,
            heartbeat_timeout_seconds=config.heartbeat_timeout_seconds,
        ),
        audit=audit,
        guard=guard,
        reviews=reviews,
        fanout=NotificationFanout(db, write_lock, hub, jobs),
        sender=sender,
        alert_channel=alert_channel,
    )


def _default_user_config_dir() -> Path:
    """Resolve a cross-platform user config directory for hub state."""
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        return Path(xdg_config_home).expanduser() / DB_CONFIG_DIRNAME

    if os.name == "nt":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata).expanduser() / DB_CONFIG_DIRNAME
        return Path.home() / "AppData" / "Roaming" / DB_CONFIG_DIRNAME

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / DB_CONFIG_DIRNAME

    return Path.home() / ".config" / DB_CONFIG_DIRNAME


def resolve_db_path() -> Path:
    """Resolve the database path.

    Priority:
    1) Explicit REVIEW_HUB_DB_PATH environment variable
    2) Standard user config directory (~/.config, APPDATA, or Application Support)
    """
    configured_path = os.environ.get(DB_PATH_ENV_VAR)
    if configured_path:
        return Path(configured_path).expanduser()

    return _default_user_config_dir() / DB_FILENAME


def _config_path() -> Path:
    configured_path = os.environ.get(CONFIG_PATH_ENV_VAR)
    if configured_path:
        return Path(configured_path).expanduser()
    return Path.cwd() / CONFIG_FILENAME


def _load_config(config_path: Path) -> HubConfig:
    try:
        config = load_hub_config(config_path)
    except FileNotFoundError:
        logger.info("No config file, using defaults (%s)", config_path)
        return HubConfig()
    except Exception as exc:
        logger.warning("Failed to load review_hub config; using defaults: %s", exc)
        return HubConfig()
    if config is None:
        logger.info("No review_hub config section, using defaults")
        return HubConfig()
    return config


@asynccontextmanager
async def hub_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize SQLite with WAL mode at server startup, clean up on shutdown."""
    del server
    db_path = resolve_db_path()
    config_path = _config_path()
    if os.environ.get(CONFIG_PATH_ENV_VAR):
        logger.info("Using config path override from %s: %s", CONFIG_PATH_ENV_VAR, config_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(
        str(db_path),
        isolation_level=None,  # CRITICAL: enables manual BEGIN IMMEDIATE
    )
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA busy_timeout=5000")
    await db.execute("PRAGMA synchronous=NORMAL")
    await ensure_schema(db)

    from admin_review_hub.routes import set_app_context  # local import avoids cycle

    ctx = build_app_context(db, _load_config(config_path))
    ctx.fanout.start()
    set_app_context(ctx)
    reaper_task = asyncio.create_task(
        ctx.presence.run_reaper(ctx.config.reaper_interval_seconds)
    )

    logger.info(
        "Hub ready - db=%s, outbound=%s",
        db_path,
        ",".join(str(channel) for channel in ctx.config.outbound_channels),
    )
    try:
        yield ctx
    finally:
        set_app_context(None)
        reaper_task.cancel()
        with suppress(asyncio.CancelledError):
            await reaper_task
        for tracker in list(ctx.viewers.values()):
            await tracker.close()
        await ctx.presence.close()
        ctx.fanout.stop()
        await ctx.jobs.drain(timeout=10.0)
        await ctx.jobs.cancel_all()
        await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        await db.close()
