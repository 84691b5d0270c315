"""MCP tool definitions for the Admin Review Hub."""

from __future__ import annotations

import logging

from fastmcp import Context

from admin_review_hub.alerts import is_critical
from admin_review_hub.db import AppContext
from admin_review_hub.errors import Err, Forbidden, NotFound, ReviewHubError
from admin_review_hub.models import AdminIdentity, RecordKind, ReviewableRecord
from admin_review_hub.notifications import NOTIFICATIONS_TABLE, NotificationInbox
from admin_review_hub.presence import GLOBAL_PRESENCE_CHANNEL
from admin_review_hub.pubsub import changes_topic
from admin_review_hub.server import caller_tag, mcp
from admin_review_hub.state_machine import needs_confirmation
from admin_review_hub.viewers import ViewerSnapshot, ViewerTracker

logger = logging.getLogger("admin_review_hub")

MAX_WAIT_SECONDS = 25.0


def mcp_tool(*args, **kwargs):
    """FastMCP tool decorator with legacy `.fn` compatibility for tests/internal calls."""
    raw_tool = mcp.tool

    # Bare decorator usage: @mcp_tool
    if args and callable(args[0]) and len(args) == 1 and not kwargs:
        fn = args[0]
        registered = raw_tool(fn)
        if not hasattr(registered, "fn"):
            registered.fn = registered
        return registered

    decorator = raw_tool(*args, **kwargs)

    def _decorate(fn):
        registered = decorator(fn)
        if not hasattr(registered, "fn"):
            registered.fn = registered
        return registered

    return _decorate


def _app_ctx(ctx: Context) -> AppContext:
    """Resolve the hub AppContext from a FastMCP Context, across versions."""
    if ctx is None:
        raise RuntimeError("Missing MCP context")
    if hasattr(ctx, "lifespan_context"):
        return ctx.lifespan_context
    rc = getattr(ctx, "request_context", None)
    if rc is not None and hasattr(rc, "lifespan_context"):
        return rc.lifespan_context
    fm = getattr(ctx, "fastmcp", None)
    if fm is not None and hasattr(fm, "_lifespan_result"):
        return fm._lifespan_result
    raise RuntimeError("Unable to resolve hub lifespan context")


def _error(error: ReviewHubError) -> dict:
    return {"error": str(error), "code": error.code}


def _short(record_id: str | None) -> str:
    """Render compact record IDs in logs."""
    if not record_id:
        return "unknown"
    return record_id[:8]


async def _identity(app: AppContext, admin_id: str) -> AdminIdentity | None:
    cursor = await app.db.execute(
        "SELECT id, email, role, display_name, avatar_url FROM admin_users WHERE id = ?",
        (admin_id,),
    )
    row = await cursor.fetchone()
    if row is None:
        return None
    return AdminIdentity(
        id=row["id"],
        email=row["email"],
        role=row["role"],
        display_name=row["display_name"],
        avatar_url=row["avatar_url"],
    )


def _unknown_admin(tool_name: str, admin_id: str) -> dict:
    logger.info("%s -> unknown admin %s", tool_name, admin_id)
    return _error(NotFound(f"Admin not found: {admin_id}"))


def _parse_kind(kind: str) -> RecordKind | None:
    try:
        return RecordKind(kind)
    except ValueError:
        return None


def _record_dict(record: ReviewableRecord) -> dict:
    return {
        "id": record.id,
        "kind": str(record.kind),
        "status": str(record.status),
        **{key: record.fields.get(key) for key in ("full_name", "reference_number", "title")
           if record.fields.get(key) is not None},
    }


def _viewers_dict(snapshot: ViewerSnapshot) -> dict:
    return {
        "viewers": [admin.model_dump(mode="json") for admin in snapshot.viewers],
        "others_only": [admin.model_dump(mode="json") for admin in snapshot.others_only],
    }


# ---- review transitions ----


@mcp_tool
async def transition_status(
    kind: str,
    record_id: str,
    new_status: str,
    admin_id: str,
    confirmed: bool = False,
    ctx: Context = None,
) -> dict:
    """Move an application or story to a new review status.

    kind is "application" or "story". Moving an application out of
    "approved" requires confirmed=True; without it the tool answers with
    needs_confirmation and changes nothing.
    """
    caller_tag.set(admin_id)
    app: AppContext = _app_ctx(ctx)
    record_kind = _parse_kind(kind)
    if record_kind is None:
        return {"error": f"Unknown record kind: {kind}", "code": "invalid_kind"}
    actor = await _identity(app, admin_id)
    if actor is None:
        return _unknown_admin("transition_status", admin_id)

    record = await app.reviews.get_record(record_kind, record_id)
    if record is None:
        logger.info("transition_status -> %s not found", _short(record_id))
        return _error(NotFound(f"{record_kind.capitalize()} not found: {record_id}"))
    try:
        await app.guard.check_edit(actor, record_kind)
    except Forbidden as exc:
        logger.info("transition_status -> %s forbidden for %s", _short(record_id), actor.role)
        return _error(exc)
    if needs_confirmation(record.status, new_status) and not confirmed:
        logger.info(
            "transition_status -> %s %s -> %s awaiting confirmation",
            _short(record_id),
            record.status,
            new_status,
        )
        return {
            "needs_confirmation": True,
            "id": record.id,
            "current_status": str(record.status),
            "new_status": new_status,
        }

    result = await app.reviews.transition(record, new_status, actor)
    if isinstance(result, Err):
        logger.info("transition_status -> %s %s", _short(record_id), result.error.code)
        return _error(result.error)
    return {"record": _record_dict(result.value), "previous_status": str(record.status)}


@mcp_tool
async def bulk_transition_status(
    kind: str,
    record_ids: list[str],
    new_status: str,
    admin_id: str,
    ctx: Context = None,
) -> dict:
    """Move several records to one status. Each record succeeds or fails on its own."""
    caller_tag.set(admin_id)
    app: AppContext = _app_ctx(ctx)
    record_kind = _parse_kind(kind)
    if record_kind is None:
        return {"error": f"Unknown record kind: {kind}", "code": "invalid_kind"}
    actor = await _identity(app, admin_id)
    if actor is None:
        return _unknown_admin("bulk_transition_status", admin_id)

    results: list[dict] = []
    for record_id in record_ids:
        result = await app.reviews.transition_by_id(record_kind, record_id, new_status, actor)
        if isinstance(result, Err):
            results.append({"id": record_id, **_error(result.error)})
        else:
            results.append({"id": record_id, "status": str(result.value.status)})
    succeeded = sum(1 for item in results if "error" not in item)
    logger.info(
        "bulk_transition_status -> %s/%s %s to %s",
        succeeded,
        len(results),
        record_kind,
        new_status,
    )
    return {"results": results, "succeeded": succeeded, "failed": len(results) - succeeded}


# ---- presence ----


@mcp_tool
async def join_presence(
    admin_id: str,
    channel_key: str = GLOBAL_PRESENCE_CHANNEL,
    ctx: Context = None,
) -> dict:
    """Announce an admin on a presence channel. Keep it alive with presence_heartbeat."""
    caller_tag.set(admin_id)
    app: AppContext = _app_ctx(ctx)
    identity = await _identity(app, admin_id)
    if identity is None:
        return _unknown_admin("join_presence", admin_id)
    subscription = await app.presence.join(channel_key, identity)
    logger.info(
        "join_presence -> %s on %s (connected=%s)",
        admin_id,
        channel_key,
        subscription.connected,
    )
    return {
        "subscription_id": subscription.id,
        "channel_key": channel_key,
        "connected": subscription.connected,
        "members": [member.model_dump(mode="json") for member in subscription.members],
    }


@mcp_tool
async def presence_heartbeat(subscription_id: str, ctx: Context = None) -> dict:
    app: AppContext = _app_ctx(ctx)
    subscription = app.presence.get(subscription_id)
    if subscription is None or not await app.presence.heartbeat(subscription):
        return _error(NotFound(f"Presence subscription not found: {subscription_id}"))
    caller_tag.set(subscription.identity.id)
    return {"subscription_id": subscription_id, "ok": True}


@mcp_tool
async def leave_presence(subscription_id: str, ctx: Context = None) -> dict:
    app: AppContext = _app_ctx(ctx)
    subscription = app.presence.get(subscription_id)
    if subscription is None:
        return {"subscription_id": subscription_id, "left": False}
    caller_tag.set(subscription.identity.id)
    await app.presence.leave(subscription)
    logger.info("leave_presence -> %s left %s", subscription.identity.id, subscription.channel_key)
    return {"subscription_id": subscription_id, "left": True}


@mcp_tool
async def list_online_admins(
    channel_key: str = GLOBAL_PRESENCE_CHANNEL,
    ctx: Context = None,
) -> dict:
    """List admins currently present on a channel, one entry per admin."""
    app: AppContext = _app_ctx(ctx)
    members = app.presence.snapshot(channel_key)
    last_seen = {record.admin.id: record.last_seen for record in app.presence.records(channel_key)}
    return {
        "channel_key": channel_key,
        "admins": [
            {**member.model_dump(mode="json"), "last_seen": last_seen.get(member.id)}
            for member in members
        ],
        "count": len(members),
    }


@mcp_tool
async def watch_application(
    admin_id: str,
    application_id: str | None = None,
    ctx: Context = None,
) -> dict:
    """Start watching an application (or stop, with application_id omitted).

    Returns everyone viewing it and the subset that excludes the caller.
    """
    caller_tag.set(admin_id)
    app: AppContext = _app_ctx(ctx)
    tracker = app.viewers.get(admin_id)
    if tracker is None:
        identity = await _identity(app, admin_id)
        if identity is None:
            return _unknown_admin("watch_application", admin_id)
        tracker = ViewerTracker(app.presence, identity)
        app.viewers[admin_id] = tracker

    snapshot = await tracker.watch(application_id)
    if not application_id:
        app.viewers.pop(admin_id, None)
    logger.info(
        "watch_application -> %s on %s (%s others)",
        admin_id,
        _short(application_id) if application_id else "none",
        len(snapshot.others_only),
    )
    return {"application_id": application_id, **_viewers_dict(snapshot)}


# ---- notifications ----


def _inbox(app: AppContext, admin: AdminIdentity) -> NotificationInbox:
    return NotificationInbox(
        app.db, app.write_lock, app.hub, app.jobs, admin, limit=app.config.notification_limit
    )


async def _inbox_payload(app: AppContext, inbox: NotificationInbox) -> dict:
    notifications = await inbox.refresh()
    return {
        "notifications": [notification.model_dump() for notification in notifications],
        "unread_count": inbox.unread_count,
        "version": app.hub.current_version(changes_topic(NOTIFICATIONS_TABLE)),
    }


@mcp_tool
async def list_notifications(admin_id: str, ctx: Context = None) -> dict:
    """Newest notifications of one admin, newest first."""
    caller_tag.set(admin_id)
    app: AppContext = _app_ctx(ctx)
    admin = await _identity(app, admin_id)
    if admin is None:
        return _unknown_admin("list_notifications", admin_id)
    return await _inbox_payload(app, _inbox(app, admin))


@mcp_tool
async def wait_for_notifications(
    admin_id: str,
    since_version: int | None = None,
    timeout: float = MAX_WAIT_SECONDS,
    ctx: Context = None,
) -> dict:
    """Long-poll for notification changes.

    Pass the ``version`` from the previous response as since_version and
    call again immediately after each response. Blocks up to 25 seconds.
    """
    caller_tag.set(admin_id)
    app: AppContext = _app_ctx(ctx)
    admin = await _identity(app, admin_id)
    if admin is None:
        return _unknown_admin("wait_for_notifications", admin_id)
    changed = await app.hub.wait_for_change(
        changes_topic(NOTIFICATIONS_TABLE),
        timeout=max(0.0, min(timeout, MAX_WAIT_SECONDS)),
        since_version=since_version,
    )
    payload = await _inbox_payload(app, _inbox(app, admin))
    payload["changed"] = changed
    return payload


async def _inbox_mutation(tool_name: str, admin_id: str, ctx: Context, mutate) -> dict:
    caller_tag.set(admin_id)
    app: AppContext = _app_ctx(ctx)
    admin = await _identity(app, admin_id)
    if admin is None:
        return _unknown_admin(tool_name, admin_id)
    inbox = _inbox(app, admin)
    await inbox.refresh()
    result = await mutate(inbox)
    if isinstance(result, Err):
        logger.info("%s -> %s", tool_name, result.error.code)
        return _error(result.error)
    logger.info("%s -> %s rows", tool_name, result.value)
    return {"changed": result.value, "unread_count": inbox.unread_count}


@mcp_tool
async def mark_notification_read(
    admin_id: str, notification_id: str, ctx: Context = None
) -> dict:
    return await _inbox_mutation(
        "mark_notification_read", admin_id, ctx, lambda inbox: inbox.mark_read(notification_id)
    )


@mcp_tool
async def mark_all_notifications_read(admin_id: str, ctx: Context = None) -> dict:
    return await _inbox_mutation(
        "mark_all_notifications_read", admin_id, ctx, lambda inbox: inbox.mark_all_read()
    )


@mcp_tool
async def delete_notification(admin_id: str, notification_id: str, ctx: Context = None) -> dict:
    return await _inbox_mutation(
        "delete_notification", admin_id, ctx, lambda inbox: inbox.delete(notification_id)
    )


# ---- audit ----


@mcp_tool
async def record_admin_action(
    admin_id: str,
    action: str,
    table_name: str,
    record_id: str | None = None,
    old_values: dict | None = None,
    new_values: dict | None = None,
    ctx: Context = None,
) -> dict:
    """Append a privileged action to the audit log.

    Critical actions (admin deletion, password or role change, MFA disabled,
    bulk deletes) also raise an out-of-band alert.
    """
    caller_tag.set(admin_id)
    app: AppContext = _app_ctx(ctx)
    actor = await _identity(app, admin_id)
    if actor is None:
        return _unknown_admin("record_admin_action", admin_id)
    result = await app.audit.append(
        actor, action, table_name, record_id, old_values, new_values
    )
    if isinstance(result, Err):
        return _error(result.error)
    entry = result.value
    logger.info("record_admin_action -> %s #%s", action, entry.id)
    return {"entry": entry.model_dump(mode="json"), "critical": is_critical(entry.action)}


@mcp_tool
async def get_audit_log(
    record_id: str | None = None,
    action: str | None = None,
    table_name: str | None = None,
    actor_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
    ctx: Context = None,
) -> dict:
    """Audit entries newest first, optionally filtered by record, action, table or actor."""
    app: AppContext = _app_ctx(ctx)
    entries = await app.audit.entries(
        record_id=record_id,
        action=action,
        table_name=table_name,
        actor_id=actor_id,
        limit=limit,
        offset=offset,
    )
    logger.info(
        "get_audit_log -> %s entries (record=%s)",
        len(entries),
        _short(record_id) if record_id is not None else "all",
    )
    return {"entries": [entry.model_dump(mode="json") for entry in entries], "count": len(entries)}
