"""Review transitions for applications and stories.

A transition runs: permission guard -> status coercion -> no-op guard ->
edge policy -> persisted write -> audit append (same write-lock hold, so
audit order follows persistence order) -> change broadcast -> outbound job.
Concurrent transitions on one record are last-write-wins; each one that
reaches the store gets its own audit entry.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from contextlib import suppress
from typing import Any

import aiosqlite

from admin_review_hub.audit import AuditLog
from admin_review_hub.errors import (
    Err,
    Forbidden,
    InvalidTransition,
    NotFound,
    Ok,
    OutboundDeliveryFailure,
    PersistenceFailure,
    Result,
)
from admin_review_hub.jobs import BackgroundJobs, OutboundSender
from admin_review_hub.models import (
    KIND_SPECS,
    AdminIdentity,
    ChangeEvent,
    NotificationJob,
    OutboundChannel,
    RecordKind,
    ReviewableRecord,
    record_from_row,
)
from admin_review_hub.permissions import PermissionGuard
from admin_review_hub.pubsub import PubSubHub
from admin_review_hub.state_machine import coerce_status, validate_transition

logger = logging.getLogger("admin_review_hub")

# Record fields copied into audit new_values and change rows when present.
SUMMARY_FIELDS = ("full_name", "reference_number", "title")

RECIPIENT_FIELDS: dict[RecordKind, dict[OutboundChannel, str]] = {
    RecordKind.APPLICATION: {
        OutboundChannel.EMAIL: "student_email",
        OutboundChannel.SMS: "parent_phone",
        OutboundChannel.WHATSAPP: "parent_phone",
    },
    RecordKind.STORY: {
        OutboundChannel.EMAIL: "author_email",
        OutboundChannel.SMS: "author_phone",
        OutboundChannel.WHATSAPP: "author_phone",
    },
}

# Statuses whose outcome is communicated to the applicant or author.
OUTWARD_STATUSES = {"approved", "rejected"}


def _short(record_id: str | None) -> str:
    if not record_id:
        return "unknown"
    return record_id[:8]


def summary_of(record: ReviewableRecord) -> dict[str, Any]:
    return {
        key: record.fields[key]
        for key in SUMMARY_FIELDS
        if record.fields.get(key) is not None
    }


def outbound_job_for(
    record: ReviewableRecord,
    previous: str,
    channel: OutboundChannel = OutboundChannel.EMAIL,
) -> NotificationJob | None:
    """Build the learner/author-facing job for a decision, if one applies."""
    status = str(record.status)
    if status not in OUTWARD_STATUSES:
        return None
    recipient = record.fields.get(RECIPIENT_FIELDS[record.kind][channel])
    if not recipient:
        return None
    if record.kind == RecordKind.APPLICATION:
        reference = record.fields.get("reference_number") or record.id[:8].upper()
        return NotificationJob(
            channel=channel,
            template="applicant_status_change",
            recipient=recipient,
            payload={
                "applicant_name": record.fields.get("full_name"),
                "reference_number": reference,
                "new_status": status,
                "old_status": previous,
            },
        )
    return NotificationJob(
        channel=channel,
        template="author_approval" if status == "approved" else "author_rejection",
        recipient=recipient,
        payload={
            "author_name": record.fields.get("author_name"),
            "title": record.fields.get("title"),
        },
    )


def _update_sql(kind: RecordKind, target: str) -> str:
    table = KIND_SPECS[kind].table
    if kind == RecordKind.STORY and target == "approved":
        return (
            f"UPDATE {table} SET status = ?, "
            "approved_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now'), "
            "updated_at = datetime('now') WHERE id = ?"
        )
    return f"UPDATE {table} SET status = ?, updated_at = datetime('now') WHERE id = ?"


class ReviewService:
    def __init__(
        self,
        db: aiosqlite.Connection,
        write_lock: asyncio.Lock,
        *,
        audit: AuditLog,
        guard: PermissionGuard,
        jobs: BackgroundJobs,
        hub: PubSubHub,
        sender: OutboundSender,
        channels: Iterable[OutboundChannel] = (OutboundChannel.EMAIL,),
    ) -> None:
        self.db = db
        self.write_lock = write_lock
        self.audit = audit
        self.guard = guard
        self.jobs = jobs
        self.hub = hub
        self.sender = sender
        self.channels = tuple(channels)

    async def get_record(self, kind: RecordKind, record_id: str) -> ReviewableRecord | None:
        table = KIND_SPECS[kind].table
        cursor = await self.db.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,))
        row = await cursor.fetchone()
        return None if row is None else record_from_row(kind, row)

    async def list_records(
        self, kind: RecordKind, status: str | None = None
    ) -> list[ReviewableRecord]:
        table = KIND_SPECS[kind].table
        if status is None:
            cursor = await self.db.execute(f"SELECT * FROM {table} ORDER BY created_at DESC")
        else:
            cursor = await self.db.execute(
                f"SELECT * FROM {table} WHERE status = ? ORDER BY created_at DESC",
                (status,),
            )
        rows = await cursor.fetchall()
        return [record_from_row(kind, row) for row in rows]

    async def transition(
        self,
        record: ReviewableRecord,
        new_status: str,
        actor: AdminIdentity,
    ) -> Result[ReviewableRecord]:
        """Move ``record`` to ``new_status`` on behalf of ``actor``.

        Re-submitting the current status succeeds without any write, audit
        entry or notification.
        """
        try:
            await self.guard.check_edit(actor, record.kind)
        except Forbidden as exc:
            logger.info(
                "transition -> %s forbidden for %s (%s)", _short(record.id), actor.id, actor.role
            )
            return Err(exc)

        try:
            target = coerce_status(record.kind, new_status)
            if target == record.status:
                return Ok(record)
            validate_transition(record.kind, record.status, target)
        except ValueError as exc:
            return Err(InvalidTransition(str(exc)))

        spec = record.spec
        async with self.write_lock:
            try:
                await self.db.execute("BEGIN IMMEDIATE")
                cursor = await self.db.execute(
                    f"SELECT status FROM {spec.table} WHERE id = ?", (record.id,)
                )
                row = await cursor.fetchone()
                if row is None:
                    await self.db.execute("ROLLBACK")
                    return Err(NotFound(f"{spec.label} not found: {record.id}"))
                previous = row["status"]
                if previous == target:
                    # Stored row already moved there (stale caller copy).
                    await self.db.execute("ROLLBACK")
                    return Ok(record.model_copy(update={"status": target}))
                await self.db.execute(_update_sql(record.kind, target), (target, record.id))
                await self.db.execute("COMMIT")
            except Exception as exc:
                with suppress(Exception):
                    await self.db.execute("ROLLBACK")
                logger.exception("transition -> %s persistence failure", _short(record.id))
                return Err(PersistenceFailure(f"Failed to update {spec.label.lower()}: {exc}"))

            await self.audit.append_in_lock(
                actor,
                f"{spec.action_prefix}_{target}",
                spec.table,
                record_id=record.id,
                old_values={"status": previous},
                new_values={"status": str(target), **summary_of(record)},
            )

        updated = record.model_copy(update={"status": target})
        self.hub.publish_change(
            ChangeEvent(
                table=spec.table,
                op="update",
                row={"id": record.id, "status": str(target), **summary_of(record)},
                old={"status": previous},
                actor_id=actor.id,
            )
        )
        self._enqueue_outbound(updated, previous)
        logger.info(
            "transition -> %s %s %s -> %s by %s",
            spec.label.lower(),
            _short(record.id),
            previous,
            target,
            actor.id,
        )
        return Ok(updated)

    async def transition_by_id(
        self,
        kind: RecordKind,
        record_id: str,
        new_status: str,
        actor: AdminIdentity,
    ) -> Result[ReviewableRecord]:
        record = await self.get_record(kind, record_id)
        if record is None:
            return Err(NotFound(f"{KIND_SPECS[kind].label} not found: {record_id}"))
        return await self.transition(record, new_status, actor)

    async def bulk_transition(
        self,
        records: Iterable[ReviewableRecord],
        new_status: str,
        actor: AdminIdentity,
    ) -> list[Result[ReviewableRecord]]:
        """Transition each record independently; results follow input order."""
        return [await self.transition(record, new_status, actor) for record in records]

    def _enqueue_outbound(self, record: ReviewableRecord, previous: str) -> None:
        if str(record.status) not in OUTWARD_STATUSES:
            return
        for channel in self.channels:
            job = outbound_job_for(record, previous, channel)
            if job is None:
                logger.warning(
                    "no %s recipient for %s %s, outbound notice skipped",
                    channel,
                    record.kind,
                    _short(record.id),
                )
                continue
            self.jobs.spawn(
                f"outbound[{channel}:{job.template}:{_short(record.id)}]",
                self.sender.send(job),
                failure=OutboundDeliveryFailure,
            )
