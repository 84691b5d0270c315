"""Tests for notification fanout and the per-admin inbox."""

from __future__ import annotations

from typing import TYPE_CHECKING

from admin_review_hub.db import AppContext
from admin_review_hub.errors import Err, NotFound, Ok, PersistenceFailure
from admin_review_hub.models import AdminIdentity, ChangeEvent
from admin_review_hub.notifications import NOTIFICATION_LIMIT, NotificationInbox
from admin_review_hub.pubsub import PubSubHub

if TYPE_CHECKING:
    from conftest import Seeder


def _inbox(app: AppContext, admin: AdminIdentity, hub: PubSubHub | None = None) -> NotificationInbox:
    return NotificationInbox(app.db, app.write_lock, hub or app.hub, app.jobs, admin)


async def _count(app: AppContext, admin_id: str, unread_only: bool = False) -> int:
    sql = "SELECT COUNT(*) AS n FROM admin_notifications WHERE admin_user_id = ?"
    if unread_only:
        sql += " AND is_read = 0"
    cursor = await app.db.execute(sql, (admin_id,))
    row = await cursor.fetchone()
    return row["n"]


class TestFanout:
    async def test_status_change_notifies_other_editors(
        self, app: AppContext, seed: Seeder
    ) -> None:
        actor = await seed.admin("reviewer", display_name="Lerato")
        colleague = await seed.admin("reviewer")
        boss = await seed.admin("admin")
        viewer = await seed.admin("viewer")
        record = await seed.application()
        assert app.fanout.start() is True

        await app.reviews.transition(record, "approved", actor)
        await app.jobs.drain()

        assert await _count(app, actor.id) == 0
        assert await _count(app, viewer.id) == 0
        assert await _count(app, colleague.id) == 1
        assert await _count(app, boss.id) == 1

        [notification] = await _inbox(app, colleague).refresh()
        assert notification.type == "application_status"
        assert notification.title == "Application approved"
        assert notification.message == "Lerato moved Thandi Mokoena from pending to approved."
        assert notification.link == f"/admin/applications?id={record.id}"
        assert notification.is_read is False

    async def test_story_change_links_to_blog(self, app: AppContext, seed: Seeder) -> None:
        actor = await seed.admin("admin")
        colleague = await seed.admin("reviewer")
        story = await seed.story()
        app.fanout.start()

        await app.reviews.transition(story, "rejected", actor)
        await app.jobs.drain()

        [notification] = await _inbox(app, colleague).refresh()
        assert notification.title == "Story rejected"
        assert notification.link == f"/admin/blog?id={story.id}"

    async def test_non_status_updates_are_ignored(self, app: AppContext, seed: Seeder) -> None:
        await seed.admin("reviewer")
        app.fanout.start()

        app.hub.publish_change(
            ChangeEvent(
                table="applications",
                op="update",
                row={"id": "x", "status": "pending"},
                old={"status": "pending"},
            )
        )
        app.hub.publish_change(
            ChangeEvent(table="applications", op="insert", row={"id": "y", "status": "pending"})
        )
        await app.jobs.drain()

        cursor = await app.db.execute("SELECT COUNT(*) AS n FROM admin_notifications")
        assert (await cursor.fetchone())["n"] == 0

    async def test_start_fails_open_without_transport(self, app: AppContext) -> None:
        app.hub.available = False
        assert app.fanout.start() is False

    async def test_stop_detaches(self, app: AppContext, seed: Seeder) -> None:
        actor = await seed.admin("reviewer")
        colleague = await seed.admin("reviewer")
        record = await seed.application()
        app.fanout.start()
        app.fanout.stop()

        await app.reviews.transition(record, "approved", actor)
        await app.jobs.drain()

        assert await _count(app, colleague.id) == 0


class TestInbox:
    async def test_refresh_returns_newest_thirty(self, app: AppContext, seed: Seeder) -> None:
        admin = await seed.admin("reviewer")
        for i in range(35):
            await seed.notification(admin.id, f"n{i}", created_at=f"2026-01-01T00:00:{i:02d}.000Z")

        notifications = await _inbox(app, admin).open()

        assert len(notifications) == NOTIFICATION_LIMIT
        assert notifications[0].title == "n34"
        assert notifications[-1].title == "n5"

    async def test_mark_all_read(self, app: AppContext, seed: Seeder) -> None:
        admin = await seed.admin("reviewer")
        other = await seed.admin("reviewer")
        for _ in range(5):
            await seed.notification(admin.id)
        await seed.notification(other.id)
        inbox = _inbox(app, admin)
        await inbox.refresh()
        assert inbox.unread_count == 5

        result = await inbox.mark_all_read()

        assert result == Ok(5)
        assert inbox.unread_count == 0
        assert await _count(app, admin.id, unread_only=True) == 0
        assert await _count(app, other.id, unread_only=True) == 1

    async def test_mark_read_single(self, app: AppContext, seed: Seeder) -> None:
        admin = await seed.admin("reviewer")
        target = await seed.notification(admin.id)
        await seed.notification(admin.id)
        inbox = _inbox(app, admin)
        await inbox.refresh()

        result = await inbox.mark_read(target)

        assert result == Ok(1)
        assert inbox.unread_count == 1
        assert await _count(app, admin.id, unread_only=True) == 1

    async def test_cannot_touch_another_admins_notification(
        self, app: AppContext, seed: Seeder
    ) -> None:
        admin = await seed.admin("reviewer")
        other = await seed.admin("reviewer")
        foreign = await seed.notification(other.id)
        inbox = _inbox(app, admin)

        read = await inbox.mark_read(foreign)
        deleted = await inbox.delete(foreign)

        assert isinstance(read, Err)
        assert isinstance(read.error, NotFound)
        assert isinstance(deleted, Err)
        assert await _count(app, other.id, unread_only=True) == 1

    async def test_delete(self, app: AppContext, seed: Seeder) -> None:
        admin = await seed.admin("reviewer")
        target = await seed.notification(admin.id)
        inbox = _inbox(app, admin)
        await inbox.refresh()

        result = await inbox.delete(target)

        assert result == Ok(1)
        assert inbox.notifications == []
        assert await _count(app, admin.id) == 0

    async def test_failed_write_restores_local_state(
        self, app: AppContext, seed: Seeder
    ) -> None:
        admin = await seed.admin("reviewer")
        target = await seed.notification(admin.id)
        inbox = _inbox(app, admin)
        await inbox.refresh()
        await app.db.execute(
            """CREATE TRIGGER block_reads BEFORE UPDATE ON admin_notifications
               BEGIN SELECT RAISE(ABORT, 'store offline'); END"""
        )

        result = await inbox.mark_read(target)

        assert isinstance(result, Err)
        assert isinstance(result.error, PersistenceFailure)
        assert inbox.unread_count == 1
        assert inbox.notifications[0].is_read is False

    async def test_open_inbox_refreshes_on_fanout(self, app: AppContext, seed: Seeder) -> None:
        actor = await seed.admin("reviewer")
        colleague = await seed.admin("reviewer")
        record = await seed.application()
        app.fanout.start()
        inbox = _inbox(app, colleague)
        assert await inbox.open() == []

        await app.reviews.transition(record, "approved", actor)
        await app.jobs.drain()

        assert [n.title for n in inbox.notifications] == ["Application approved"]
        inbox.close()

    async def test_open_fails_open_without_transport(self, app: AppContext, seed: Seeder) -> None:
        admin = await seed.admin("reviewer")
        await seed.notification(admin.id)
        inbox = _inbox(app, admin, hub=PubSubHub(available=False))

        notifications = await inbox.open()

        assert len(notifications) == 1
