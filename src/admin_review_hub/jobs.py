"""Fire-and-forget background jobs and outbound notification senders."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from contextlib import suppress
from typing import Protocol

from admin_review_hub.errors import Err, Ok, Result, ReviewHubError, report_failure
from admin_review_hub.models import NotificationJob

logger = logging.getLogger("admin_review_hub")


class OutboundSender(Protocol):
    """External email/SMS/WhatsApp sender. Delivery mechanics live elsewhere."""

    async def send(self, job: NotificationJob) -> None: ...


class LoggingSender:
    """Default sender: records the job in the operational log only."""

    async def send(self, job: NotificationJob) -> None:
        logger.info(
            "outbound %s -> %s template=%s", job.channel, job.recipient, job.template
        )


class BackgroundJobs:
    """Owns detached tasks so they are not garbage collected mid-flight.

    A job never raises into the code that spawned it: failures are wrapped in
    ``failure`` (a ReviewHubError subclass), reported, and kept as the task's
    Err result.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(
        self,
        label: str,
        job: Awaitable[object],
        failure: type[ReviewHubError] = ReviewHubError,
    ) -> asyncio.Task:
        task = asyncio.create_task(self._run(label, job, failure))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self,
        label: str,
        job: Awaitable[object],
        failure: type[ReviewHubError],
    ) -> Result[object]:
        try:
            value = await job
        except asyncio.CancelledError:
            raise
        except ReviewHubError as exc:
            return report_failure(label, exc)
        except Exception as exc:
            return report_failure(label, failure(str(exc) or exc.__class__.__name__))
        return Ok(value)

    async def drain(self, timeout: float | None = None) -> list[Result[object]]:
        """Wait for every job spawned so far, including jobs they spawn."""
        results: list[Result[object]] = []
        while self._tasks:
            batch = list(self._tasks)
            done, pending = await asyncio.wait(batch, timeout=timeout)
            self._tasks.difference_update(done)
            for task in done:
                if task.cancelled():
                    continue
                results.append(task.result())
            if pending:
                logger.warning("drain timed out with %s jobs pending", len(pending))
                break
        return results

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            with suppress(asyncio.CancelledError):
                await task


def failed(results: list[Result[object]]) -> list[Err]:
    return [result for result in results if isinstance(result, Err)]
