"""Kanban board binding for drag-and-drop status changes."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum

from admin_review_hub.errors import Err, NotFound, ReviewHubError
from admin_review_hub.models import KIND_SPECS, AdminIdentity, RecordKind, ReviewableRecord
from admin_review_hub.permissions import EDIT_ROLES
from admin_review_hub.review import ReviewService
from admin_review_hub.state_machine import needs_confirmation

logger = logging.getLogger("admin_review_hub")

StatusChangeCallback = Callable[[str, str, str], None]


class DropOutcome(StrEnum):
    APPLIED = "applied"
    IGNORED = "ignored"
    NEEDS_CONFIRMATION = "needs_confirmation"
    REFUSED = "refused"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class DropResult:
    outcome: DropOutcome
    record: ReviewableRecord | None = None
    error: ReviewHubError | None = None


class ReviewBoard:
    """One admin's board of records grouped into status columns.

    A drop moves the card immediately and tells ``on_status_change`` before
    the store write resolves; the card goes back only if the transition
    returns an error.
    """

    def __init__(
        self,
        service: ReviewService,
        actor: AdminIdentity,
        kind: RecordKind,
        records: Iterable[ReviewableRecord],
        on_status_change: StatusChangeCallback | None = None,
    ) -> None:
        self.service = service
        self.actor = actor
        self.kind = kind
        self.on_status_change = on_status_change
        self._records: dict[str, ReviewableRecord] = {record.id: record for record in records}

    @property
    def can_edit(self) -> bool:
        return self.actor.role in EDIT_ROLES

    @property
    def statuses(self) -> list[str]:
        return [str(member) for member in KIND_SPECS[self.kind].status_type]

    def column(self, status: str) -> list[ReviewableRecord]:
        return [record for record in self._records.values() if record.status == status]

    def columns(self) -> dict[str, list[ReviewableRecord]]:
        return {status: self.column(status) for status in self.statuses}

    def get(self, record_id: str) -> ReviewableRecord | None:
        return self._records.get(record_id)

    async def drop(
        self,
        record_id: str,
        target_status: str,
        *,
        confirmed: bool = False,
    ) -> DropResult:
        record = self._records.get(record_id)
        if record is None:
            return DropResult(DropOutcome.REFUSED, error=NotFound(f"Not on board: {record_id}"))
        if record.status == target_status:
            return DropResult(DropOutcome.IGNORED, record=record)
        if not self.can_edit:
            return DropResult(DropOutcome.REFUSED, record=record)
        if needs_confirmation(record.status, target_status) and not confirmed:
            return DropResult(DropOutcome.NEEDS_CONFIRMATION, record=record)

        from_status = str(record.status)
        self._records[record_id] = record.model_copy(update={"status": target_status})
        if self.on_status_change is not None:
            self.on_status_change(record_id, from_status, target_status)

        result = await self.service.transition(record, target_status, self.actor)
        if isinstance(result, Err):
            self._records[record_id] = record
            logger.info(
                "board drop %s -> %s rolled back: %s", record_id[:8], target_status, result.error
            )
            return DropResult(DropOutcome.ROLLED_BACK, record=record, error=result.error)
        self._records[record_id] = result.value
        return DropResult(DropOutcome.APPLIED, record=result.value)
