"""HTTP routes served next to the MCP endpoint: health and presence SSE."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator

from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse

from admin_review_hub import __version__
from admin_review_hub.db import AppContext
from admin_review_hub.pubsub import presence_topic

logger = logging.getLogger("admin_review_hub")

SSE_HEARTBEAT_INTERVAL: float = 15.0

# Module-level AppContext, set by hub_lifespan via set_app_context().
_app_ctx: AppContext | None = None

# Server start time for uptime calculation.
_start_time: float = time.monotonic()


def set_app_context(ctx: AppContext | None) -> None:
    """Store the AppContext for route handlers to access."""
    global _app_ctx
    _app_ctx = ctx


def _health_payload(ctx: AppContext | None) -> dict:
    payload: dict = {
        "version": __version__,
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
    }
    if ctx is None:
        payload["status"] = "starting"
        return payload
    payload.update(
        {
            "status": "ok" if ctx.hub.available else "degraded",
            "transport_available": ctx.hub.available,
            "pending_jobs": ctx.jobs.pending,
            "viewer_trackers": len(ctx.viewers),
        }
    )
    return payload


def _presence_frame(ctx: AppContext, channel_key: str) -> str:
    members = ctx.presence.snapshot(channel_key)
    payload = {
        "type": "presence_sync",
        "channel": channel_key,
        "members": [member.model_dump(mode="json") for member in members],
        "count": len(members),
    }
    return f"data: {json.dumps(payload)}\n\n"


def register_routes(mcp: object) -> None:
    """Register the hub HTTP routes on the FastMCP server instance."""

    @mcp.custom_route("/hub/health", methods=["GET"])  # type: ignore[union-attr]
    async def hub_health(request: Request) -> Response:
        payload = _health_payload(_app_ctx)
        status_code = 503 if payload["status"] == "starting" else 200
        return JSONResponse(payload, status_code=status_code)

    @mcp.custom_route("/hub/presence/{channel_key}/events", methods=["GET"])  # type: ignore[union-attr]
    async def presence_events(request: Request) -> Response:
        """SSE stream of presence snapshots for one channel.

        A full member list is pushed on connect and after every join or
        leave; a heartbeat event is sent when nothing changed for
        SSE_HEARTBEAT_INTERVAL seconds.

        With ?subscription_id=<id> (from join_presence) the open stream keeps
        that subscription alive, and dropping the stream starts its
        disconnect grace period.
        """
        ctx = _app_ctx
        if ctx is None:
            return JSONResponse({"error": "Hub is starting"}, status_code=503)
        channel_key = request.path_params["channel_key"]
        topic = presence_topic(channel_key)
        subscription_id = request.query_params.get("subscription_id")
        subscription = ctx.presence.get(subscription_id) if subscription_id else None
        if subscription_id and subscription is None:
            return JSONResponse(
                {"error": f"Presence subscription not found: {subscription_id}"},
                status_code=404,
            )

        async def event_stream() -> AsyncIterator[str]:
            logger.info("presence SSE client connected (%s)", channel_key)
            try:
                if subscription is not None:
                    await ctx.presence.heartbeat(subscription)
                yield 'event: connected\ndata: {"status": "connected"}\n\n'
                version = ctx.hub.current_version(topic)
                yield _presence_frame(ctx, channel_key)
                while True:
                    changed = await ctx.hub.wait_for_change(
                        topic, timeout=SSE_HEARTBEAT_INTERVAL, since_version=version
                    )
                    if subscription is not None:
                        await ctx.presence.heartbeat(subscription)
                    if changed:
                        version = ctx.hub.current_version(topic)
                        yield _presence_frame(ctx, channel_key)
                    else:
                        yield "event: heartbeat\ndata: {}\n\n"
            except asyncio.CancelledError:
                logger.info("presence SSE client disconnected (%s)", channel_key)
                return
            finally:
                if subscription is not None:
                    ctx.presence.mark_disconnected(subscription)

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )
