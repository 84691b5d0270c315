"""Tests for module edit permissions."""

from __future__ import annotations

from typing import TYPE_CHECKING

import aiosqlite
import pytest

from admin_review_hub.errors import Forbidden
from admin_review_hub.models import RecordKind
from admin_review_hub.permissions import PermissionGuard, load_allowed_roles

if TYPE_CHECKING:
    from conftest import Seeder


async def test_no_row_returns_none(db: aiosqlite.Connection) -> None:
    assert await load_allowed_roles(db, "applications") is None


async def test_malformed_roles_mean_nobody(db: aiosqlite.Connection, seed: Seeder) -> None:
    await seed.module_permission("applications", "not json")
    await seed.module_permission("blog", '{"admin": true}')
    assert await load_allowed_roles(db, "applications") == set()
    assert await load_allowed_roles(db, "blog") == set()


class TestPermissionGuard:
    async def test_viewer_is_read_only(self, db: aiosqlite.Connection, seed: Seeder) -> None:
        viewer = await seed.admin("viewer")
        guard = PermissionGuard(db)
        assert await guard.can_edit(viewer, "applications") is False
        with pytest.raises(Forbidden):
            await guard.check_edit(viewer, RecordKind.APPLICATION)

    async def test_editors_allowed_without_row(self, db: aiosqlite.Connection, seed: Seeder) -> None:
        guard = PermissionGuard(db)
        for role in ("reviewer", "admin"):
            actor = await seed.admin(role)
            await guard.check_edit(actor, RecordKind.APPLICATION)
            await guard.check_edit(actor, RecordKind.STORY)

    async def test_row_restricts_roles(self, db: aiosqlite.Connection, seed: Seeder) -> None:
        await seed.module_permission("blog", ["admin"])
        reviewer = await seed.admin("reviewer")
        admin = await seed.admin("admin")
        guard = PermissionGuard(db)

        with pytest.raises(Forbidden, match="blog"):
            await guard.check_edit(reviewer, RecordKind.STORY)
        await guard.check_edit(admin, RecordKind.STORY)
        await guard.check_edit(reviewer, RecordKind.APPLICATION)

    async def test_row_cannot_grant_viewer(self, db: aiosqlite.Connection, seed: Seeder) -> None:
        await seed.module_permission("applications", ["viewer", "reviewer", "admin"])
        viewer = await seed.admin("viewer")
        assert await PermissionGuard(db).can_edit(viewer, "applications") is False
