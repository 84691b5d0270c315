"""Tests for per-application viewer tracking."""

from __future__ import annotations

from admin_review_hub.models import AdminIdentity
from admin_review_hub.presence import PresenceRegistry
from admin_review_hub.pubsub import PubSubHub
from admin_review_hub.viewers import ViewerSnapshot, ViewerTracker, viewer_channel_key


def _admin(admin_id: str) -> AdminIdentity:
    return AdminIdentity(id=admin_id, email=f"{admin_id}@example.org", role="reviewer")


def _ids(admins: list[AdminIdentity]) -> list[str]:
    return sorted(admin.id for admin in admins)


async def test_channel_key_format() -> None:
    assert viewer_channel_key("abc") == "record-viewers-abc"


async def test_two_viewers_see_each_other() -> None:
    registry = PresenceRegistry(PubSubHub())
    alice = ViewerTracker(registry, _admin("alice"))
    bob = ViewerTracker(registry, _admin("bob"))

    first = await alice.watch("app-1")
    assert _ids(first.viewers) == ["alice"]
    assert first.others_only == []

    second = await bob.watch("app-1")
    assert _ids(second.viewers) == ["alice", "bob"]
    assert _ids(second.others_only) == ["alice"]
    assert _ids(alice.snapshot().others_only) == ["bob"]


async def test_on_change_fires_with_others_only() -> None:
    registry = PresenceRegistry(PubSubHub())
    snapshots: list[ViewerSnapshot] = []
    alice = ViewerTracker(registry, _admin("alice"), on_change=snapshots.append)
    bob = ViewerTracker(registry, _admin("bob"))

    await alice.watch("app-1")
    await bob.watch("app-1")
    await bob.close()

    assert [_ids(s.others_only) for s in snapshots] == [[], ["bob"], []]


async def test_switching_application_leaves_previous_channel() -> None:
    registry = PresenceRegistry(PubSubHub())
    alice = ViewerTracker(registry, _admin("alice"))
    bob = ViewerTracker(registry, _admin("bob"))
    await bob.watch("app-1")
    await alice.watch("app-1")

    await alice.watch("app-2")

    assert _ids(bob.snapshot().viewers) == ["bob"]
    assert alice.application_id == "app-2"
    assert registry.snapshot(viewer_channel_key("app-1")) != []
    assert _ids(registry.snapshot(viewer_channel_key("app-2"))) == ["alice"]


async def test_watching_same_application_is_noop() -> None:
    registry = PresenceRegistry(PubSubHub())
    alice = ViewerTracker(registry, _admin("alice"))
    await alice.watch("app-1")
    subscription = alice.subscription

    await alice.watch("app-1")

    assert alice.subscription is subscription


async def test_watch_none_clears_viewers() -> None:
    registry = PresenceRegistry(PubSubHub())
    alice = ViewerTracker(registry, _admin("alice"))
    await alice.watch("app-1")

    snapshot = await alice.watch(None)

    assert snapshot == ViewerSnapshot()
    assert alice.application_id is None
    assert registry.snapshot(viewer_channel_key("app-1")) == []


async def test_transport_down_yields_empty_viewers() -> None:
    registry = PresenceRegistry(PubSubHub(available=False))
    alice = ViewerTracker(registry, _admin("alice"))

    snapshot = await alice.watch("app-1")

    assert snapshot.viewers == []
    assert snapshot.others_only == []
