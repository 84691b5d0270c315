"""In-process publish/subscribe hub for presence and row-change broadcast.

Channels are named topics. A channel handle can track a presence payload
under a presence key; every membership change is broadcast to all subscribed
handles of the same channel as a JoinEvent/LeaveEvent followed by a full
SyncEvent snapshot. Row changes on store tables are broadcast as ChangeEvents
to handles that registered a ``change`` handler for that table.

Topic versions and asyncio events allow long-poll and SSE waiters to be
woken without polling the database:

    hub = PubSubHub()
    changed = await hub.wait_for_change("presence:admin-presence", timeout=25.0)
    hub.notify("presence:admin-presence")
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from admin_review_hub.errors import TransportUnavailable
from admin_review_hub.models import ChangeEvent, ChannelEvent, JoinEvent, LeaveEvent, SyncEvent

logger = logging.getLogger("admin_review_hub")

Handler = Callable[[ChannelEvent], None]


def presence_topic(channel_name: str) -> str:
    return f"presence:{channel_name}"


def changes_topic(table: str) -> str:
    return f"changes:{table}"


@dataclass(eq=False)
class Channel:
    """One subscriber's handle on a named channel."""

    name: str
    hub: PubSubHub = field(repr=False)
    presence_key: str | None = None
    ref: str = field(default_factory=lambda: uuid.uuid4().hex)
    subscribed: bool = False
    _handlers: list[tuple[str, str | None, Handler]] = field(default_factory=list)

    def on(self, kind: str, handler: Handler, table: str | None = None) -> Channel:
        """Register a handler for an event kind (sync/join/leave/change)."""
        self._handlers.append((kind, table, handler))
        return self

    def subscribe(self) -> Channel:
        self.hub._attach(self)
        return self

    def track(self, payload: dict[str, Any]) -> None:
        if self.presence_key is None:
            raise ValueError(f"Channel {self.name} has no presence key")
        self.hub._track(self, dict(payload))

    def untrack(self) -> None:
        self.hub._untrack(self)

    def presence_state(self) -> dict[str, list[dict[str, Any]]]:
        return self.hub.presence_state(self.name)

    def _dispatch(self, kind: str, event: ChannelEvent, table: str | None = None) -> int:
        invoked = 0
        for handler_kind, handler_table, handler in list(self._handlers):
            if handler_kind != kind:
                continue
            if handler_table is not None and handler_table != table:
                continue
            invoked += 1
            try:
                handler(event)
            except Exception:
                logger.exception("channel %s handler failed on %s", self.name, kind)
        return invoked


@dataclass
class PubSubHub:
    """Owner of all channels, presence state and topic versions."""

    available: bool = True
    _channels: dict[str, list[Channel]] = field(default_factory=dict)
    # channel name -> presence key -> [(handle ref, payload)], newest last
    _presence: dict[str, dict[str, list[tuple[str, dict[str, Any]]]]] = field(
        default_factory=dict
    )
    _events: dict[str, asyncio.Event] = field(default_factory=dict)
    _versions: dict[str, int] = field(default_factory=dict)

    def channel(self, name: str, presence_key: str | None = None) -> Channel:
        return Channel(name=name, hub=self, presence_key=presence_key)

    def remove_channel(self, channel: Channel) -> None:
        """Untrack and detach a channel handle. Safe to call twice."""
        self._untrack(channel)
        handles = self._channels.get(channel.name)
        if handles is not None:
            self._channels[channel.name] = [h for h in handles if h.ref != channel.ref]
            if not self._channels[channel.name]:
                del self._channels[channel.name]
        channel.subscribed = False

    def subscriber_count(self, name: str) -> int:
        return len(self._channels.get(name, []))

    def presence_state(self, name: str) -> dict[str, list[dict[str, Any]]]:
        state = self._presence.get(name, {})
        return {key: [dict(payload) for _, payload in entries] for key, entries in state.items()}

    def publish_change(self, event: ChangeEvent) -> int:
        """Deliver a row change to every handle listening on its table."""
        delivered = 0
        for handles in list(self._channels.values()):
            for handle in list(handles):
                delivered += handle._dispatch("change", event, table=event.table)
        self.notify(changes_topic(event.table))
        return delivered

    # ---- internal presence plumbing ----

    def _attach(self, channel: Channel) -> None:
        if not self.available:
            raise TransportUnavailable(f"Cannot subscribe to {channel.name}: transport offline")
        handles = self._channels.setdefault(channel.name, [])
        if all(h.ref != channel.ref for h in handles):
            handles.append(channel)
        channel.subscribed = True

    def _track(self, channel: Channel, payload: dict[str, Any]) -> None:
        if not channel.subscribed:
            raise TransportUnavailable(f"Channel {channel.name} is not subscribed")
        state = self._presence.setdefault(channel.name, {})
        key = channel.presence_key
        entries = [entry for entry in state.get(key, []) if entry[0] != channel.ref]
        entries.append((channel.ref, payload))
        state[key] = entries
        self._broadcast_membership(
            channel.name, JoinEvent(channel=channel.name, key=key, payload=payload)
        )

    def _untrack(self, channel: Channel) -> None:
        state = self._presence.get(channel.name)
        if not state or channel.presence_key not in state:
            return
        key = channel.presence_key
        entries = state[key]
        removed = [payload for ref, payload in entries if ref == channel.ref]
        if not removed:
            return
        remaining = [entry for entry in entries if entry[0] != channel.ref]
        if remaining:
            state[key] = remaining
        else:
            del state[key]
        if not state:
            del self._presence[channel.name]
        self._broadcast_membership(
            channel.name, LeaveEvent(channel=channel.name, key=key, payload=removed[-1])
        )

    def _broadcast_membership(self, name: str, event: JoinEvent | LeaveEvent) -> None:
        sync = SyncEvent(channel=name, state=self.presence_state(name))
        for handle in list(self._channels.get(name, [])):
            handle._dispatch(event.kind, event)
            handle._dispatch("sync", sync)
        self.notify(presence_topic(name))

    # ---- topic versions for waiters ----

    def _get_event(self, topic: str) -> asyncio.Event:
        """Get or create the event for a topic."""
        if topic not in self._events:
            self._events[topic] = asyncio.Event()
        return self._events[topic]

    def current_version(self, topic: str) -> int:
        """Return the current change version for a topic."""
        return self._versions.get(topic, 0)

    def notify(self, topic: str) -> None:
        """Signal that a topic has changed so waiters can wake."""
        self._versions[topic] = self.current_version(topic) + 1
        self._get_event(topic).set()

    async def wait_for_change(
        self,
        topic: str,
        timeout: float = 25.0,
        since_version: int | None = None,
    ) -> bool:
        """Wait for a change on a topic.

        Returns True if the topic version moved within timeout, False on timeout.
        Without since_version, waits for the next change from now.
        """
        event = self._get_event(topic)
        baseline = self.current_version(topic) if since_version is None else since_version
        deadline = time.monotonic() + timeout

        while True:
            if self.current_version(topic) != baseline:
                return True

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False

            try:
                await asyncio.wait_for(event.wait(), timeout=remaining)
            except TimeoutError:
                return False

            event.clear()

    def cleanup(self, topic: str) -> None:
        """Drop the waiter state for a topic."""
        self._events.pop(topic, None)
        self._versions.pop(topic, None)
