"""Status transition policy for reviewable records.

The policy is deliberately permissive: an editor may move a record from any
status of its kind to any other, including back to pending. Every caller goes
through ``validate_transition`` so the table below is the single place to
tighten it.
"""

from __future__ import annotations

from enum import StrEnum

from admin_review_hub.models import KIND_SPECS, ApplicationStatus, RecordKind, StoryStatus


def _all_edges(status_type: type[StrEnum]) -> dict[str, set[str]]:
    statuses = {str(member) for member in status_type}
    return {status: statuses - {status} for status in statuses}


VALID_TRANSITIONS: dict[RecordKind, dict[str, set[str]]] = {
    RecordKind.APPLICATION: _all_edges(ApplicationStatus),
    RecordKind.STORY: _all_edges(StoryStatus),
}

# Leaving these statuses reverses a decision already communicated outward.
CONFIRM_WHEN_LEAVING: set[str] = {ApplicationStatus.APPROVED}


def coerce_status(kind: RecordKind, status: str) -> StrEnum:
    """Return the status enum member for ``kind``. Raises ValueError if unknown."""
    status_type = KIND_SPECS[kind].status_type
    try:
        return status_type(status)
    except ValueError:
        allowed = ", ".join(str(member) for member in status_type)
        raise ValueError(f"Unknown {kind} status: {status!r}. Valid: {allowed}") from None


def can_transition(kind: RecordKind, current: str, target: str) -> bool:
    return target in VALID_TRANSITIONS[kind].get(current, set())


def validate_transition(kind: RecordKind, current: str, target: str) -> None:
    """Validate a status change. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS[kind].get(current)
    if allowed is None:
        raise ValueError(f"Unknown state: {current}")
    if target not in allowed:
        raise ValueError(
            f"Invalid transition: {current} -> {target}. "
            f"Valid targets from {current}: {sorted(allowed)}"
        )


def needs_confirmation(current: str, target: str) -> bool:
    return current in CONFIRM_WHEN_LEAVING and target != current
