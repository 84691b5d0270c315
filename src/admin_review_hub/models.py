"""Pydantic models and enums for the Admin Review Hub."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# Bump when AuditAction members are added or renamed so downstream
# consumers (alerting, reports) can detect the change.
AUDIT_ACTIONS_VERSION = 2


class AdminRole(StrEnum):
    """Admin roles as issued by the identity store."""

    VIEWER = "viewer"
    REVIEWER = "reviewer"
    ADMIN = "admin"


class RecordKind(StrEnum):
    """Kinds of records that go through review."""

    APPLICATION = "application"
    STORY = "story"


class ApplicationStatus(StrEnum):
    """Application lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class StoryStatus(StrEnum):
    """Blog story lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AuditAction(StrEnum):
    """Closed set of actions accepted by the admin_audit_log table."""

    APPLICATION_PENDING = "application_pending"
    APPLICATION_APPROVED = "application_approved"
    APPLICATION_REJECTED = "application_rejected"
    APPLICATION_CANCELLED = "application_cancelled"
    APPLICATION_DELETED = "application_deleted"
    BLOG_PENDING = "blog_pending"
    BLOG_APPROVED = "blog_approved"
    BLOG_REJECTED = "blog_rejected"
    BLOG_DELETED = "blog_deleted"
    BLOG_FEATURED = "blog_featured"
    ADMIN_USER_ADDED = "admin_user_added"
    ADMIN_USER_UPDATED = "admin_user_updated"
    ADMIN_USER_DELETED = "admin_user_deleted"
    ADMIN_ROLE_CHANGED = "admin_role_changed"
    PROFILE_UPDATED = "profile_updated"
    PASSWORD_CHANGED = "password_changed"
    MFA_ENABLED = "mfa_enabled"
    MFA_DISABLED = "mfa_disabled"
    BULK_APPLICATIONS_DELETED = "bulk_applications_deleted"
    BULK_BLOGS_DELETED = "bulk_blogs_deleted"


class AlertSeverity(StrEnum):
    HIGH = "high"
    CRITICAL = "critical"


class OutboundChannel(StrEnum):
    """External delivery channels for learner/parent-facing notifications."""

    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"


@dataclass(frozen=True)
class KindSpec:
    """Storage and naming conventions for one RecordKind."""

    table: str
    action_prefix: str
    module_key: str
    status_type: type[StrEnum]
    link_path: str
    label: str


KIND_SPECS: dict[RecordKind, KindSpec] = {
    RecordKind.APPLICATION: KindSpec(
        table="applications",
        action_prefix="application",
        module_key="applications",
        status_type=ApplicationStatus,
        link_path="/admin/applications",
        label="Application",
    ),
    RecordKind.STORY: KindSpec(
        table="blog_posts",
        action_prefix="blog",
        module_key="blog",
        status_type=StoryStatus,
        link_path="/admin/blog",
        label="Story",
    ),
}


class AdminIdentity(BaseModel):
    """Identity of an admin, immutable for the duration of a session."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    role: AdminRole
    display_name: str | None = None
    avatar_url: str | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.email


class PresenceRecord(BaseModel):
    """One admin's presence on one channel."""

    admin: AdminIdentity
    channel_key: str
    last_seen: float


class ReviewableRecord(BaseModel):
    """A record whose status field moves through review."""

    id: str
    kind: RecordKind
    status: str
    created_at: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)

    @property
    def spec(self) -> KindSpec:
        return KIND_SPECS[self.kind]


class Application(ReviewableRecord):
    kind: Literal[RecordKind.APPLICATION] = RecordKind.APPLICATION
    status: ApplicationStatus = ApplicationStatus.PENDING


class Story(ReviewableRecord):
    kind: Literal[RecordKind.STORY] = RecordKind.STORY
    status: StoryStatus = StoryStatus.PENDING


_RECORD_TYPES: dict[RecordKind, type[ReviewableRecord]] = {
    RecordKind.APPLICATION: Application,
    RecordKind.STORY: Story,
}

# Columns that are modelled explicitly and never copied into `fields`.
_CORE_COLUMNS = {"id", "status", "created_at", "updated_at"}


def record_from_row(kind: RecordKind, row: Mapping[str, Any]) -> ReviewableRecord:
    """Build the typed record variant from a store row."""
    data = dict(row)
    fields = {key: value for key, value in data.items() if key not in _CORE_COLUMNS}
    return _RECORD_TYPES[kind](
        id=data["id"],
        status=data["status"],
        created_at=data.get("created_at"),
        fields=fields,
    )


class AuditEntry(BaseModel):
    """One row of the append-only admin_audit_log table."""

    id: int
    actor_id: str
    action: AuditAction
    table_name: str
    record_id: str | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    created_at: str


class CriticalAlertEvent(BaseModel):
    """Alert synthesized from a critical audit entry. Never stored."""

    action: AuditAction
    severity: AlertSeverity
    title: str
    description: str
    actor: AdminIdentity
    target_email: str | None = None
    target_name: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    audit_entry_id: int


class Notification(BaseModel):
    """In-app notification owned by a single admin."""

    id: str
    admin_user_id: str
    type: str
    title: str
    message: str
    link: str | None = None
    is_read: bool = False
    created_at: str


class NotificationJob(BaseModel):
    """Outbound message handed to an external sender."""

    channel: OutboundChannel = OutboundChannel.EMAIL
    template: str
    recipient: str
    payload: dict[str, Any] = Field(default_factory=dict)


# ---- Channel events ----


class SyncEvent(BaseModel):
    """Full presence snapshot: presence key -> tracked payloads, newest last."""

    kind: Literal["sync"] = "sync"
    channel: str
    state: dict[str, list[dict[str, Any]]]


class JoinEvent(BaseModel):
    kind: Literal["join"] = "join"
    channel: str
    key: str
    payload: dict[str, Any]


class LeaveEvent(BaseModel):
    kind: Literal["leave"] = "leave"
    channel: str
    key: str
    payload: dict[str, Any]


class ChangeEvent(BaseModel):
    """Row-level change on a store table."""

    kind: Literal["change"] = "change"
    table: str
    op: Literal["insert", "update", "delete"]
    row: dict[str, Any]
    old: dict[str, Any] | None = None
    actor_id: str | None = None


ChannelEvent = Annotated[
    SyncEvent | JoinEvent | LeaveEvent | ChangeEvent,
    Field(discriminator="kind"),
]
