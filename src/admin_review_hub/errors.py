"""Error taxonomy and result types for the Admin Review Hub.

Business-path failures (Forbidden, NotFound, InvalidTransition,
PersistenceFailure) are returned to callers inside ``Err``. Side-channel
failures (audit, alert delivery, outbound jobs) are reported to the
operational log by ``report_failure`` and go no further.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger("admin_review_hub")

T = TypeVar("T")


class ReviewHubError(Exception):
    """Base class for all hub errors. ``code`` is stable across releases."""

    code = "error"


class Forbidden(ReviewHubError):
    code = "forbidden"


class NotFound(ReviewHubError):
    code = "not_found"


class InvalidTransition(ReviewHubError):
    code = "invalid_transition"


class TransportUnavailable(ReviewHubError):
    code = "transport_unavailable"


class PersistenceFailure(ReviewHubError):
    code = "persistence_failure"


class AuditAppendFailure(ReviewHubError):
    code = "audit_append_failure"


class AlertDeliveryFailure(ReviewHubError):
    code = "alert_delivery_failure"


class OutboundDeliveryFailure(ReviewHubError):
    code = "outbound_delivery_failure"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: ReviewHubError

    @property
    def ok(self) -> bool:
        return False


Result = Ok[T] | Err


def report_failure(label: str, error: ReviewHubError) -> Err:
    """Log a best-effort failure and return it as an Err for the caller to drop."""
    logger.warning("%s -> %s: %s", label, error.code, error)
    return Err(error)
