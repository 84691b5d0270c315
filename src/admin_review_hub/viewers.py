"""Per-application viewer awareness on top of the presence registry."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from admin_review_hub.models import AdminIdentity
from admin_review_hub.presence import PresenceRegistry, PresenceSubscription

VIEWER_CHANNEL_PREFIX = "record-viewers-"


def viewer_channel_key(application_id: str) -> str:
    return f"{VIEWER_CHANNEL_PREFIX}{application_id}"


@dataclass(frozen=True)
class ViewerSnapshot:
    viewers: list[AdminIdentity] = field(default_factory=list)
    others_only: list[AdminIdentity] = field(default_factory=list)


class ViewerTracker:
    """Answers "who else is looking at this application" for one admin.

    Holds at most one viewer channel at a time. Watching a different
    application leaves the old channel before joining the new one.
    """

    def __init__(
        self,
        registry: PresenceRegistry,
        identity: AdminIdentity,
        on_change: Callable[[ViewerSnapshot], None] | None = None,
    ) -> None:
        self.registry = registry
        self.identity = identity
        self.on_change = on_change
        self._application_id: str | None = None
        self._subscription: PresenceSubscription | None = None

    @property
    def application_id(self) -> str | None:
        return self._application_id

    @property
    def subscription(self) -> PresenceSubscription | None:
        return self._subscription

    def snapshot(self) -> ViewerSnapshot:
        if self._subscription is None:
            return ViewerSnapshot()
        return self._snapshot_of(self._subscription.members)

    def _snapshot_of(self, members: list[AdminIdentity]) -> ViewerSnapshot:
        viewers = list(members)
        return ViewerSnapshot(
            viewers=viewers,
            others_only=[admin for admin in viewers if admin.id != self.identity.id],
        )

    async def watch(self, application_id: str | None) -> ViewerSnapshot:
        if application_id == self._application_id and self._subscription is not None:
            return self.snapshot()
        await self._teardown()
        if not application_id:
            return self.snapshot()
        self._application_id = application_id
        self._subscription = await self.registry.join(
            viewer_channel_key(application_id),
            self.identity,
            on_sync=self._handle_sync,
        )
        return self.snapshot()

    async def close(self) -> None:
        await self._teardown()

    async def _teardown(self) -> None:
        subscription, self._subscription = self._subscription, None
        self._application_id = None
        if subscription is not None:
            await self.registry.leave(subscription)

    def _handle_sync(self, members: list[AdminIdentity]) -> None:
        if self.on_change is not None:
            self.on_change(self._snapshot_of(members))
