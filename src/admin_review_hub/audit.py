"""Append-only audit log for privileged admin actions."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Any

import aiosqlite

from admin_review_hub.alerts import CriticalAlertDispatcher
from admin_review_hub.errors import AuditAppendFailure, Ok, Result, report_failure
from admin_review_hub.models import AdminIdentity, AuditAction, AuditEntry

logger = logging.getLogger("admin_review_hub")

_ENTRY_COLUMNS = (
    "id, admin_user_id, action, table_name, record_id, old_values, new_values, created_at"
)


async def record_event(
    db: aiosqlite.Connection,
    actor_id: str,
    action: str,
    table_name: str,
    record_id: str | None = None,
    old_values: dict | None = None,
    new_values: dict | None = None,
) -> int:
    """Insert one audit row within the current transaction and return its id.

    Must be called INSIDE an existing BEGIN IMMEDIATE...COMMIT block.
    The caller is responsible for transaction management.
    """
    cursor = await db.execute(
        """INSERT INTO admin_audit_log
           (admin_user_id, action, table_name, record_id, old_values, new_values, created_at)
           VALUES (?, ?, ?, ?, ?, ?, strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))""",
        (
            actor_id,
            action,
            table_name,
            record_id,
            json.dumps(old_values) if old_values is not None else None,
            json.dumps(new_values) if new_values is not None else None,
        ),
    )
    return cursor.lastrowid


def _parse_values(raw: str | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {"raw": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def entry_from_row(row: aiosqlite.Row) -> AuditEntry:
    return AuditEntry(
        id=row["id"],
        actor_id=row["admin_user_id"],
        action=row["action"],
        table_name=row["table_name"],
        record_id=row["record_id"],
        old_values=_parse_values(row["old_values"]),
        new_values=_parse_values(row["new_values"]),
        created_at=row["created_at"],
    )


class AuditLog:
    """Appends audit entries and hands critical ones to the alert dispatcher.

    ``append`` never raises: any failure becomes an ``Err(AuditAppendFailure)``
    that has already been logged. Entries are never updated or deleted and
    identical payloads appended twice produce two entries.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        write_lock: asyncio.Lock,
        dispatcher: CriticalAlertDispatcher | None = None,
    ) -> None:
        self.db = db
        self.write_lock = write_lock
        self.dispatcher = dispatcher

    async def append(
        self,
        actor: AdminIdentity,
        action: str,
        table_name: str,
        record_id: str | None = None,
        old_values: dict | None = None,
        new_values: dict | None = None,
    ) -> Result[AuditEntry]:
        async with self.write_lock:
            return await self.append_in_lock(
                actor, action, table_name, record_id, old_values, new_values
            )

    async def append_in_lock(
        self,
        actor: AdminIdentity,
        action: str,
        table_name: str,
        record_id: str | None = None,
        old_values: dict | None = None,
        new_values: dict | None = None,
    ) -> Result[AuditEntry]:
        """Same as ``append`` for callers already holding ``write_lock``."""
        label = f"audit_append[{action}]"
        try:
            audit_action = AuditAction(action)
        except ValueError:
            return report_failure(label, AuditAppendFailure(f"Unknown audit action: {action}"))

        try:
            await self.db.execute("BEGIN IMMEDIATE")
            entry_id = await record_event(
                self.db,
                actor.id,
                audit_action,
                table_name,
                record_id=record_id,
                old_values=old_values,
                new_values=new_values,
            )
            await self.db.execute("COMMIT")
            cursor = await self.db.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM admin_audit_log WHERE id = ?",
                (entry_id,),
            )
            entry = entry_from_row(await cursor.fetchone())
        except Exception as exc:
            with suppress(Exception):
                await self.db.execute("ROLLBACK")
            return report_failure(label, AuditAppendFailure(str(exc)))

        if self.dispatcher is not None:
            try:
                self.dispatcher.on_audit_entry(entry, actor)
            except Exception:
                logger.exception("alert dispatch failed for audit entry %s", entry.id)
        return Ok(entry)

    async def entries(
        self,
        *,
        record_id: str | None = None,
        action: str | None = None,
        table_name: str | None = None,
        actor_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditEntry]:
        """List entries newest first, optionally filtered."""
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("record_id", record_id),
            ("action", action),
            ("table_name", table_name),
            ("admin_user_id", actor_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await self.db.execute(
            f"""SELECT {_ENTRY_COLUMNS} FROM admin_audit_log {where}
                ORDER BY id DESC LIMIT ? OFFSET ?""",
            (*params, max(1, limit), max(0, offset)),
        )
        rows = await cursor.fetchall()
        return [entry_from_row(row) for row in rows]
