"""Edit-capability checks for review transitions.

Rules:
- ``viewer`` is read-only everywhere.
- ``reviewer`` and ``admin`` may edit a module unless its module_permissions
  row exists and leaves their role out of ``allowed_roles``.
"""

from __future__ import annotations

import json
import logging

import aiosqlite

from admin_review_hub.errors import Forbidden
from admin_review_hub.models import KIND_SPECS, AdminIdentity, AdminRole, RecordKind

logger = logging.getLogger("admin_review_hub")

EDIT_ROLES: frozenset[AdminRole] = frozenset({AdminRole.REVIEWER, AdminRole.ADMIN})


async def load_allowed_roles(db: aiosqlite.Connection, module_key: str) -> set[str] | None:
    """Return the allowed roles for a module, or None when no row exists."""
    cursor = await db.execute(
        "SELECT allowed_roles FROM module_permissions WHERE module_key = ?",
        (module_key,),
    )
    row = await cursor.fetchone()
    if row is None:
        return None
    try:
        roles = json.loads(row["allowed_roles"])
    except (json.JSONDecodeError, TypeError):
        logger.warning("module_permissions.%s has malformed allowed_roles", module_key)
        return set()
    if not isinstance(roles, list):
        logger.warning("module_permissions.%s allowed_roles is not a list", module_key)
        return set()
    return {str(role) for role in roles}


class PermissionGuard:
    def __init__(self, db: aiosqlite.Connection) -> None:
        self.db = db

    async def can_edit(self, actor: AdminIdentity, module_key: str) -> bool:
        if actor.role not in EDIT_ROLES:
            return False
        allowed = await load_allowed_roles(self.db, module_key)
        if allowed is None:
            return True
        return str(actor.role) in allowed

    async def check_edit(self, actor: AdminIdentity, kind: RecordKind) -> None:
        """Raise Forbidden unless ``actor`` may change records of ``kind``."""
        module_key = KIND_SPECS[kind].module_key
        if not await self.can_edit(actor, module_key):
            raise Forbidden(
                f"Role {actor.role} may not change {module_key} records"
            )
