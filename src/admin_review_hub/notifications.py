"""In-app admin notifications: fanout from record changes, and per-admin inbox.

Every inbox query and mutation carries the owner filter
(``admin_user_id = ?``); an inbox can never touch another admin's rows.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import suppress
from typing import Any

import aiosqlite

from admin_review_hub.errors import (
    Err,
    NotFound,
    Ok,
    PersistenceFailure,
    Result,
    TransportUnavailable,
)
from admin_review_hub.jobs import BackgroundJobs
from admin_review_hub.models import (
    KIND_SPECS,
    AdminIdentity,
    ChangeEvent,
    Notification,
    RecordKind,
)
from admin_review_hub.pubsub import Channel, PubSubHub

logger = logging.getLogger("admin_review_hub")

NOTIFICATIONS_TABLE = "admin_notifications"
NOTIFICATION_LIMIT = 30
FANOUT_CHANNEL = "admin-notifications-fanout"

WATCHED_TABLES: dict[str, RecordKind] = {spec.table: kind for kind, spec in KIND_SPECS.items()}

_COLUMNS = "id, admin_user_id, type, title, message, link, is_read, created_at"


async def _rollback_quietly(db: aiosqlite.Connection) -> None:
    with suppress(Exception):
        await db.execute("ROLLBACK")


def _notification_from_row(row: aiosqlite.Row) -> Notification:
    return Notification(
        id=row["id"],
        admin_user_id=row["admin_user_id"],
        type=row["type"],
        title=row["title"],
        message=row["message"],
        link=row["link"],
        is_read=bool(row["is_read"]),
        created_at=row["created_at"],
    )


class NotificationFanout:
    """Creates a notification for every other editor when a record changes status."""

    def __init__(
        self,
        db: aiosqlite.Connection,
        write_lock: asyncio.Lock,
        hub: PubSubHub,
        jobs: BackgroundJobs,
    ) -> None:
        self.db = db
        self.write_lock = write_lock
        self.hub = hub
        self.jobs = jobs
        self._channel: Channel | None = None

    def start(self) -> bool:
        channel = self.hub.channel(FANOUT_CHANNEL)
        for table in WATCHED_TABLES:
            channel.on("change", self._on_record_change, table=table)
        try:
            channel.subscribe()
        except TransportUnavailable as exc:
            logger.warning("notification fanout not subscribed: %s", exc)
            return False
        self._channel = channel
        return True

    def stop(self) -> None:
        if self._channel is not None:
            self.hub.remove_channel(self._channel)
            self._channel = None

    def _on_record_change(self, event: ChangeEvent) -> None:
        old_status = (event.old or {}).get("status")
        if event.op != "update" or event.row.get("status") == old_status:
            return
        self.jobs.spawn(
            f"fanout[{event.table}:{str(event.row.get('id'))[:8]}]",
            self.fan_out(event),
            failure=PersistenceFailure,
        )

    async def fan_out(self, event: ChangeEvent) -> list[Notification]:
        spec = KIND_SPECS[WATCHED_TABLES[event.table]]
        record_id = event.row.get("id")
        new_status = event.row.get("status")
        old_status = (event.old or {}).get("status")
        subject = event.row.get("full_name") or event.row.get("title") or str(record_id)[:8]
        actor_label = await self._actor_label(event.actor_id)

        cursor = await self.db.execute(
            """SELECT id FROM admin_users
               WHERE role IN ('reviewer', 'admin') AND id != ?""",
            (event.actor_id or "",),
        )
        recipients = [row["id"] for row in await cursor.fetchall()]
        if not recipients:
            return []

        values: dict[str, Any] = {
            "type": f"{spec.action_prefix}_status",
            "title": f"{spec.label} {new_status}",
            "message": f"{actor_label} moved {subject} from {old_status} to {new_status}.",
            "link": f"{spec.link_path}?id={record_id}",
        }
        created: list[Notification] = []
        async with self.write_lock:
            try:
                await self.db.execute("BEGIN IMMEDIATE")
                for admin_id in recipients:
                    notification_id = str(uuid.uuid4())
                    await self.db.execute(
                        """INSERT INTO admin_notifications
                           (id, admin_user_id, type, title, message, link, is_read, created_at)
                           VALUES (?, ?, ?, ?, ?, ?, 0,
                                   strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))""",
                        (
                            notification_id,
                            admin_id,
                            values["type"],
                            values["title"],
                            values["message"],
                            values["link"],
                        ),
                    )
                    cursor = await self.db.execute(
                        f"SELECT {_COLUMNS} FROM admin_notifications WHERE id = ?",
                        (notification_id,),
                    )
                    created.append(_notification_from_row(await cursor.fetchone()))
                await self.db.execute("COMMIT")
            except Exception:
                await _rollback_quietly(self.db)
                raise

        for notification in created:
            self.hub.publish_change(
                ChangeEvent(
                    table=NOTIFICATIONS_TABLE,
                    op="insert",
                    row=notification.model_dump(),
                    actor_id=event.actor_id,
                )
            )
        logger.info("fanout -> %s notifications for %s", len(created), str(record_id)[:8])
        return created

    async def _actor_label(self, actor_id: str | None) -> str:
        if actor_id is None:
            return "Someone"
        cursor = await self.db.execute(
            "SELECT email, display_name FROM admin_users WHERE id = ?", (actor_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return "Someone"
        return row["display_name"] or row["email"]


class NotificationInbox:
    """The notification bell of one admin."""

    def __init__(
        self,
        db: aiosqlite.Connection,
        write_lock: asyncio.Lock,
        hub: PubSubHub,
        jobs: BackgroundJobs,
        admin: AdminIdentity,
        limit: int = NOTIFICATION_LIMIT,
    ) -> None:
        self.db = db
        self.write_lock = write_lock
        self.hub = hub
        self.jobs = jobs
        self.admin = admin
        self.limit = max(1, min(limit, NOTIFICATION_LIMIT))
        self.notifications: list[Notification] = []
        self._channel: Channel | None = None

    @property
    def unread_count(self) -> int:
        return sum(1 for notification in self.notifications if not notification.is_read)

    async def open(self) -> list[Notification]:
        """Subscribe to this admin's notification changes and fetch the latest."""
        channel = self.hub.channel(f"admin-notifications-{self.admin.id}")
        channel.on("change", self._on_change, table=NOTIFICATIONS_TABLE)
        try:
            channel.subscribe()
            self._channel = channel
        except TransportUnavailable as exc:
            logger.warning("inbox for %s falls back to polling: %s", self.admin.id, exc)
        return await self.refresh()

    def close(self) -> None:
        if self._channel is not None:
            self.hub.remove_channel(self._channel)
            self._channel = None

    async def refresh(self) -> list[Notification]:
        cursor = await self.db.execute(
            f"""SELECT {_COLUMNS} FROM admin_notifications
                WHERE admin_user_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?""",
            (self.admin.id, self.limit),
        )
        self.notifications = [_notification_from_row(row) for row in await cursor.fetchall()]
        return self.notifications

    async def mark_read(self, notification_id: str) -> Result[int]:
        previous = self.notifications
        self.notifications = [
            n.model_copy(update={"is_read": True}) if n.id == notification_id else n
            for n in previous
        ]
        return await self._mutate(
            previous,
            "update",
            """UPDATE admin_notifications SET is_read = 1
               WHERE id = ? AND admin_user_id = ?""",
            (notification_id, self.admin.id),
            notification_id=notification_id,
        )

    async def mark_all_read(self) -> Result[int]:
        previous = self.notifications
        self.notifications = [n.model_copy(update={"is_read": True}) for n in previous]
        return await self._mutate(
            previous,
            "update",
            """UPDATE admin_notifications SET is_read = 1
               WHERE admin_user_id = ? AND is_read = 0""",
            (self.admin.id,),
        )

    async def delete(self, notification_id: str) -> Result[int]:
        previous = self.notifications
        self.notifications = [n for n in previous if n.id != notification_id]
        return await self._mutate(
            previous,
            "delete",
            "DELETE FROM admin_notifications WHERE id = ? AND admin_user_id = ?",
            (notification_id, self.admin.id),
            notification_id=notification_id,
        )

    async def _mutate(
        self,
        previous: list[Notification],
        op: str,
        sql: str,
        params: tuple,
        notification_id: str | None = None,
    ) -> Result[int]:
        async with self.write_lock:
            try:
                await self.db.execute("BEGIN IMMEDIATE")
                cursor = await self.db.execute(sql, params)
                changed = cursor.rowcount
                await self.db.execute("COMMIT")
            except Exception as exc:
                await _rollback_quietly(self.db)
                self.notifications = previous
                logger.warning("inbox %s -> %s failed: %s", self.admin.id, op, exc)
                return Err(PersistenceFailure(f"Notification {op} failed: {exc}"))

        if notification_id is not None and changed == 0:
            self.notifications = previous
            return Err(NotFound(f"Notification not found: {notification_id}"))

        if changed:
            self.hub.publish_change(
                ChangeEvent(
                    table=NOTIFICATIONS_TABLE,
                    op=op,
                    row={"id": notification_id, "admin_user_id": self.admin.id},
                    actor_id=self.admin.id,
                )
            )
        return Ok(changed)

    def _on_change(self, event: ChangeEvent) -> None:
        if event.row.get("admin_user_id") != self.admin.id:
            return
        self.jobs.spawn(
            f"inbox_refresh[{self.admin.id}]",
            self.refresh(),
            failure=PersistenceFailure,
        )
