"""Tests for the drag-and-drop review board."""

from __future__ import annotations

from typing import TYPE_CHECKING

from admin_review_hub.board import DropOutcome, ReviewBoard
from admin_review_hub.db import AppContext
from admin_review_hub.errors import Forbidden, NotFound, PersistenceFailure
from admin_review_hub.models import RecordKind

if TYPE_CHECKING:
    from conftest import Seeder


async def _board(app: AppContext, seed: Seeder, role: str = "reviewer", **kwargs) -> ReviewBoard:
    actor = await seed.admin(role)
    records = await app.reviews.list_records(RecordKind.APPLICATION)
    return ReviewBoard(app.reviews, actor, RecordKind.APPLICATION, records, **kwargs)


async def test_columns_follow_status_order(app: AppContext, seed: Seeder) -> None:
    pending = await seed.application()
    approved = await seed.application(status="approved")
    board = await _board(app, seed)

    columns = board.columns()

    assert list(columns) == ["pending", "approved", "rejected", "cancelled"]
    assert [r.id for r in columns["pending"]] == [pending.id]
    assert [r.id for r in columns["approved"]] == [approved.id]
    assert columns["cancelled"] == []


async def test_drop_applies_and_notifies_before_store_write(
    app: AppContext, seed: Seeder
) -> None:
    record = await seed.application()
    moves: list[tuple[str, str, str]] = []
    board = await _board(app, seed, on_status_change=lambda *move: moves.append(move))

    result = await board.drop(record.id, "approved")

    assert result.outcome == DropOutcome.APPLIED
    assert moves == [(record.id, "pending", "approved")]
    assert board.get(record.id).status == "approved"
    [entry] = await app.audit.entries(record_id=record.id)
    assert entry.action == "application_approved"


async def test_same_column_drop_is_ignored(app: AppContext, seed: Seeder) -> None:
    record = await seed.application()
    board = await _board(app, seed)

    result = await board.drop(record.id, "pending")

    assert result.outcome == DropOutcome.IGNORED
    assert await app.audit.entries() == []


async def test_viewer_drop_is_refused_without_moving(app: AppContext, seed: Seeder) -> None:
    record = await seed.application()
    moves: list[tuple[str, str, str]] = []
    board = await _board(app, seed, "viewer", on_status_change=lambda *m: moves.append(m))

    result = await board.drop(record.id, "approved")

    assert board.can_edit is False
    assert result.outcome == DropOutcome.REFUSED
    assert moves == []
    assert board.get(record.id).status == "pending"


async def test_leaving_approved_asks_for_confirmation(app: AppContext, seed: Seeder) -> None:
    record = await seed.application(status="approved")
    board = await _board(app, seed)

    first = await board.drop(record.id, "rejected")
    assert first.outcome == DropOutcome.NEEDS_CONFIRMATION
    assert board.get(record.id).status == "approved"

    second = await board.drop(record.id, "rejected", confirmed=True)
    assert second.outcome == DropOutcome.APPLIED
    assert board.get(record.id).status == "rejected"


async def test_failed_write_rolls_card_back(app: AppContext, seed: Seeder) -> None:
    record = await seed.application()
    moves: list[tuple[str, str, str]] = []
    board = await _board(app, seed, on_status_change=lambda *m: moves.append(m))
    await app.db.execute(
        """CREATE TRIGGER block_updates BEFORE UPDATE ON applications
           BEGIN SELECT RAISE(ABORT, 'store offline'); END"""
    )

    result = await board.drop(record.id, "approved")

    assert result.outcome == DropOutcome.ROLLED_BACK
    assert isinstance(result.error, PersistenceFailure)
    assert moves == [(record.id, "pending", "approved")]
    assert board.get(record.id).status == "pending"


async def test_module_restriction_rolls_back(app: AppContext, seed: Seeder) -> None:
    await seed.module_permission("applications", ["admin"])
    record = await seed.application()
    board = await _board(app, seed, "reviewer")

    result = await board.drop(record.id, "approved")

    assert result.outcome == DropOutcome.ROLLED_BACK
    assert isinstance(result.error, Forbidden)
    assert board.get(record.id).status == "pending"


async def test_unknown_card_is_refused(app: AppContext, seed: Seeder) -> None:
    board = await _board(app, seed)
    result = await board.drop("missing", "approved")
    assert result.outcome == DropOutcome.REFUSED
    assert isinstance(result.error, NotFound)
