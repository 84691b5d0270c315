"""Critical alert dispatch for privileged audit actions.

``on_audit_entry`` runs synchronously inside the audit append path, but only
to decide and to schedule: delivery is a background job, so a failing alert
channel never fails the append. Delivery is at-most/at-least once, never
exactly once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from admin_review_hub.errors import AlertDeliveryFailure
from admin_review_hub.jobs import BackgroundJobs
from admin_review_hub.models import (
    AdminIdentity,
    AlertSeverity,
    AuditAction,
    AuditEntry,
    CriticalAlertEvent,
)

logger = logging.getLogger("admin_review_hub")


@dataclass(frozen=True)
class AlertConfig:
    title: str
    description: str
    severity: AlertSeverity


CRITICAL_ALERTS: dict[AuditAction, AlertConfig] = {
    AuditAction.ADMIN_USER_DELETED: AlertConfig(
        "Admin User Deleted",
        "An admin user account has been permanently deleted from the system.",
        AlertSeverity.CRITICAL,
    ),
    AuditAction.PASSWORD_CHANGED: AlertConfig(
        "Password Changed",
        "An admin account password has been changed.",
        AlertSeverity.HIGH,
    ),
    AuditAction.MFA_DISABLED: AlertConfig(
        "Two-Factor Authentication Disabled",
        "Two-factor authentication has been disabled for an admin account.",
        AlertSeverity.HIGH,
    ),
    AuditAction.ADMIN_ROLE_CHANGED: AlertConfig(
        "Admin Role Changed",
        "An admin user's role/permissions have been modified.",
        AlertSeverity.HIGH,
    ),
    AuditAction.BULK_APPLICATIONS_DELETED: AlertConfig(
        "Bulk Applications Deleted",
        "Multiple applications have been deleted from the system.",
        AlertSeverity.CRITICAL,
    ),
    AuditAction.BULK_BLOGS_DELETED: AlertConfig(
        "Bulk Blog Posts Deleted",
        "Multiple blog posts have been deleted from the system.",
        AlertSeverity.CRITICAL,
    ),
}

CRITICAL_ACTIONS: frozenset[AuditAction] = frozenset(CRITICAL_ALERTS)


def is_critical(action: str) -> bool:
    return action in CRITICAL_ACTIONS


def alert_subject(event: CriticalAlertEvent) -> str:
    prefix = "CRITICAL:" if event.severity == AlertSeverity.CRITICAL else "Alert:"
    return f"{prefix} {event.title} - Admin"


class AlertChannel(Protocol):
    """Out-of-band alert delivery (email to subscribed admins, pager, ...)."""

    async def deliver(self, event: CriticalAlertEvent) -> None: ...


class LoggingAlertChannel:
    async def deliver(self, event: CriticalAlertEvent) -> None:
        logger.warning(
            "%s by %s target=%s",
            alert_subject(event),
            event.actor.email,
            event.target_email or "-",
        )


def build_alert(entry: AuditEntry, actor: AdminIdentity) -> CriticalAlertEvent | None:
    """Derive the alert for an entry, or None when the action is not critical."""
    config = CRITICAL_ALERTS.get(entry.action)
    if config is None:
        return None
    values = entry.new_values or entry.old_values or {}
    target_name = values.get("full_name") or values.get("display_name")
    return CriticalAlertEvent(
        action=entry.action,
        severity=config.severity,
        title=config.title,
        description=config.description,
        actor=actor,
        target_email=values.get("email"),
        target_name=target_name,
        details=dict(entry.new_values or {}),
        audit_entry_id=entry.id,
    )


class CriticalAlertDispatcher:
    def __init__(self, channel: AlertChannel, jobs: BackgroundJobs) -> None:
        self.channel = channel
        self.jobs = jobs

    def on_audit_entry(
        self, entry: AuditEntry, actor: AdminIdentity
    ) -> CriticalAlertEvent | None:
        event = build_alert(entry, actor)
        if event is None:
            return None
        logger.info("critical action %s by %s, dispatching alert", entry.action, actor.id)
        self.jobs.spawn(
            f"critical_alert[{entry.action}]",
            self.channel.deliver(event),
            failure=AlertDeliveryFailure,
        )
        return event
