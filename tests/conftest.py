"""Shared test fixtures for the Admin Review Hub."""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import aiosqlite
import pytest

from admin_review_hub.db import AppContext, build_app_context, ensure_schema
from admin_review_hub.models import (
    AdminIdentity,
    CriticalAlertEvent,
    NotificationJob,
    RecordKind,
    ReviewableRecord,
    record_from_row,
)


@dataclass
class RecordingSender:
    """Outbound sender that keeps every job; raises when ``fail`` is set."""

    jobs: list[NotificationJob] = field(default_factory=list)
    fail: bool = False

    async def send(self, job: NotificationJob) -> None:
        self.jobs.append(job)
        if self.fail:
            raise RuntimeError("mail provider unavailable")


@dataclass
class RecordingAlertChannel:
    events: list[CriticalAlertEvent] = field(default_factory=list)
    fail: bool = False

    async def deliver(self, event: CriticalAlertEvent) -> None:
        self.events.append(event)
        if self.fail:
            raise RuntimeError("alert relay unavailable")


@dataclass
class _MockFastMCP:
    """Stands in for the FastMCP instance so ctx.fastmcp._lifespan_result works."""

    _lifespan_result: AppContext


@dataclass
class MockContext:
    """Minimal mock for fastmcp.Context that provides fastmcp._lifespan_result."""

    fastmcp: _MockFastMCP

    @property
    def lifespan_context(self) -> AppContext:
        return self.fastmcp._lifespan_result


class Seeder:
    """Inserts admins, records and notifications straight into the store."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self.db = db

    async def admin(
        self,
        role: str = "reviewer",
        *,
        admin_id: str | None = None,
        email: str | None = None,
        display_name: str | None = None,
    ) -> AdminIdentity:
        admin_id = admin_id or f"admin-{uuid.uuid4().hex[:8]}"
        email = email or f"{admin_id}@example.org"
        await self.db.execute(
            "INSERT INTO admin_users (id, email, role, display_name) VALUES (?, ?, ?, ?)",
            (admin_id, email, role, display_name),
        )
        return AdminIdentity(id=admin_id, email=email, role=role, display_name=display_name)

    async def application(self, status: str = "pending", **fields) -> ReviewableRecord:
        record_id = fields.pop("id", str(uuid.uuid4()))
        values = {
            "full_name": "Thandi Mokoena",
            "student_email": "thandi@example.org",
            "reference_number": "APP-2026-0001",
            "school_name": "Soweto High",
            "grade": "11",
            "province": "Gauteng",
            **fields,
        }
        columns = ", ".join(["id", "status", *values])
        placeholders = ", ".join("?" for _ in range(len(values) + 2))
        await self.db.execute(
            f"INSERT INTO applications ({columns}) VALUES ({placeholders})",
            (record_id, status, *values.values()),
        )
        return await self._load(RecordKind.APPLICATION, "applications", record_id)

    async def story(self, status: str = "pending", **fields) -> ReviewableRecord:
        record_id = fields.pop("id", str(uuid.uuid4()))
        values = {
            "title": "My first robotics club",
            "author_name": "Sipho Dlamini",
            "author_email": "sipho@example.org",
            **fields,
        }
        columns = ", ".join(["id", "status", *values])
        placeholders = ", ".join("?" for _ in range(len(values) + 2))
        await self.db.execute(
            f"INSERT INTO blog_posts ({columns}) VALUES ({placeholders})",
            (record_id, status, *values.values()),
        )
        return await self._load(RecordKind.STORY, "blog_posts", record_id)

    async def notification(
        self,
        admin_id: str,
        title: str = "Application approved",
        *,
        is_read: bool = False,
        created_at: str = "2026-01-01T00:00:00.000Z",
    ) -> str:
        notification_id = str(uuid.uuid4())
        await self.db.execute(
            """INSERT INTO admin_notifications
               (id, admin_user_id, type, title, message, link, is_read, created_at)
               VALUES (?, ?, 'application_status', ?, 'msg', NULL, ?, ?)""",
            (notification_id, admin_id, title, int(is_read), created_at),
        )
        return notification_id

    async def module_permission(self, module_key: str, roles: list[str] | str) -> None:
        allowed = roles if isinstance(roles, str) else json.dumps(roles)
        await self.db.execute(
            """INSERT INTO module_permissions (module_key, module_name, allowed_roles)
               VALUES (?, ?, ?)""",
            (module_key, module_key.title(), allowed),
        )

    async def _load(self, kind: RecordKind, table: str, record_id: str) -> ReviewableRecord:
        cursor = await self.db.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,))
        return record_from_row(kind, await cursor.fetchone())


@pytest.fixture
async def db() -> AsyncIterator[aiosqlite.Connection]:
    """In-memory SQLite database for tests."""
    conn = await aiosqlite.connect(":memory:", isolation_level=None)
    conn.row_factory = aiosqlite.Row
    await ensure_schema(conn)
    yield conn
    await conn.close()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def alert_channel() -> RecordingAlertChannel:
    return RecordingAlertChannel()


@pytest.fixture
async def app(
    db: aiosqlite.Connection,
    sender: RecordingSender,
    alert_channel: RecordingAlertChannel,
) -> AsyncIterator[AppContext]:
    """AppContext wired the same way the lifespan wires it."""
    ctx = build_app_context(db, sender=sender, alert_channel=alert_channel)
    yield ctx
    for tracker in list(ctx.viewers.values()):
        await tracker.close()
    await ctx.presence.close()
    ctx.fanout.stop()
    await ctx.jobs.cancel_all()


@pytest.fixture
def ctx(app: AppContext) -> MockContext:
    return MockContext(fastmcp=_MockFastMCP(_lifespan_result=app))


@pytest.fixture
def seed(db: aiosqlite.Connection) -> Seeder:
    return Seeder(db)
