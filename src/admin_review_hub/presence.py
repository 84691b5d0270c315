"""Presence registry: which admins are connected, globally and per channel.

Membership is keyed by admin id. Every sync replaces a subscriber's member
list wholesale; nothing is merged incrementally. Two tabs of the same admin
show up once, carrying the payload of the most recent join.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from admin_review_hub.errors import TransportUnavailable
from admin_review_hub.models import AdminIdentity, PresenceRecord, SyncEvent
from admin_review_hub.pubsub import Channel, PubSubHub

logger = logging.getLogger("admin_review_hub")

GLOBAL_PRESENCE_CHANNEL = "admin-presence"

SyncCallback = Callable[[list[AdminIdentity]], None]


def members_from_state(state: dict[str, list[dict[str, Any]]]) -> list[AdminIdentity]:
    """Collapse a presence state map into one identity per admin."""
    admins: list[AdminIdentity] = []
    for key, payloads in state.items():
        if not payloads:
            continue
        try:
            admins.append(AdminIdentity.model_validate(payloads[-1]))
        except ValidationError:
            logger.warning("presence payload for key %s is not an admin identity", key)
    return admins


@dataclass(eq=False)
class PresenceSubscription:
    """One join on one channel. Detached (channel is None) after leave or fail-open."""

    id: str
    channel_key: str
    identity: AdminIdentity
    channel: Channel | None = None
    members: list[AdminIdentity] = field(default_factory=list)
    joined_at: float = 0.0
    last_seen: float = 0.0
    disconnected_at: float | None = None
    on_sync: SyncCallback | None = field(default=None, repr=False)

    @property
    def connected(self) -> bool:
        return self.channel is not None and self.channel.subscribed

    @property
    def others(self) -> list[AdminIdentity]:
        return [admin for admin in self.members if admin.id != self.identity.id]


class PresenceRegistry:
    """Tracks live presence subscriptions on a PubSubHub.

    Abnormal disconnects are not treated as immediate leaves: a subscription
    marked disconnected stays visible until ``grace_seconds`` pass without a
    heartbeat, and one that stops heartbeating entirely is dropped after
    ``heartbeat_timeout_seconds``. ``reap()`` applies both rules.
    """

    def __init__(
        self,
        hub: PubSubHub,
        *,
        grace_seconds: float = 30.0,
        heartbeat_timeout_seconds: float = 90.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.hub = hub
        self.grace_seconds = grace_seconds
        self.heartbeat_timeout_seconds = heartbeat_timeout_seconds
        self._clock = clock
        self._subscriptions: dict[str, PresenceSubscription] = {}

    async def join(
        self,
        channel_key: str,
        identity: AdminIdentity,
        on_sync: SyncCallback | None = None,
    ) -> PresenceSubscription:
        """Track ``identity`` on ``channel_key``. Fails open when the transport is down."""
        now = self._clock()
        channel = self.hub.channel(channel_key, presence_key=identity.id)
        subscription = PresenceSubscription(
            id=channel.ref,
            channel_key=channel_key,
            identity=identity,
            joined_at=now,
            last_seen=now,
            on_sync=on_sync,
        )
        channel.on("sync", lambda event: self._apply_sync(subscription, event))
        try:
            channel.subscribe()
            channel.track(identity.model_dump(mode="json"))
        except TransportUnavailable as exc:
            self.hub.remove_channel(channel)
            logger.warning(
                "presence join %s for %s failed open: %s", channel_key, identity.id, exc
            )
            return subscription
        subscription.channel = channel
        self._subscriptions[subscription.id] = subscription
        return subscription

    async def leave(self, subscription: PresenceSubscription) -> None:
        """Untrack and unsubscribe. Leaving twice is a no-op."""
        self._subscriptions.pop(subscription.id, None)
        channel = subscription.channel
        if channel is None:
            return
        subscription.channel = None
        self.hub.remove_channel(channel)
        subscription.members = []

    async def heartbeat(self, subscription: PresenceSubscription) -> bool:
        if subscription.id not in self._subscriptions:
            return False
        subscription.last_seen = self._clock()
        subscription.disconnected_at = None
        return True

    def mark_disconnected(self, subscription: PresenceSubscription) -> None:
        """Start the grace period for a connection that dropped without leaving."""
        if subscription.disconnected_at is None:
            subscription.disconnected_at = self._clock()

    async def reap(self) -> int:
        """Leave every subscription past its grace period or heartbeat timeout."""
        now = self._clock()
        stale = [
            sub
            for sub in self._subscriptions.values()
            if (
                sub.disconnected_at is not None
                and now - sub.disconnected_at >= self.grace_seconds
            )
            or now - sub.last_seen >= self.heartbeat_timeout_seconds
        ]
        for sub in stale:
            await self.leave(sub)
            logger.info("presence reaped %s on %s", sub.identity.id, sub.channel_key)
        return len(stale)

    async def run_reaper(self, interval: float) -> None:
        """Background loop; cancelled by the lifespan on shutdown."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reap()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("presence reaper pass failed")

    def get(self, subscription_id: str) -> PresenceSubscription | None:
        return self._subscriptions.get(subscription_id)

    def snapshot(self, channel_key: str) -> list[AdminIdentity]:
        return members_from_state(self.hub.presence_state(channel_key))

    def records(self, channel_key: str) -> list[PresenceRecord]:
        latest: dict[str, PresenceSubscription] = {}
        for sub in self._subscriptions.values():
            if sub.channel_key != channel_key:
                continue
            current = latest.get(sub.identity.id)
            if current is None or sub.joined_at >= current.joined_at:
                latest[sub.identity.id] = sub
        return [
            PresenceRecord(admin=sub.identity, channel_key=channel_key, last_seen=sub.last_seen)
            for sub in latest.values()
        ]

    async def close(self) -> None:
        for sub in list(self._subscriptions.values()):
            await self.leave(sub)

    def _apply_sync(self, subscription: PresenceSubscription, event: SyncEvent) -> None:
        subscription.members = members_from_state(event.state)
        if subscription.on_sync is not None:
            subscription.on_sync(list(subscription.members))
