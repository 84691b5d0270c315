"""Tests for detached background jobs."""

from __future__ import annotations

import asyncio

from admin_review_hub.errors import AlertDeliveryFailure, Err, NotFound, Ok
from admin_review_hub.jobs import BackgroundJobs, LoggingSender, failed
from admin_review_hub.models import NotificationJob


async def _value(value: object) -> object:
    return value


async def _boom() -> None:
    raise RuntimeError("relay down")


async def test_successful_job_yields_ok() -> None:
    jobs = BackgroundJobs()
    jobs.spawn("ok", _value(3))
    assert await jobs.drain() == [Ok(3)]
    assert jobs.pending == 0


async def test_failure_is_wrapped_in_given_error_type() -> None:
    jobs = BackgroundJobs()
    jobs.spawn("alert", _boom(), failure=AlertDeliveryFailure)

    [result] = await jobs.drain()

    assert isinstance(result, Err)
    assert isinstance(result.error, AlertDeliveryFailure)
    assert str(result.error) == "relay down"


async def test_hub_errors_pass_through_unwrapped() -> None:
    async def missing() -> None:
        raise NotFound("gone")

    jobs = BackgroundJobs()
    jobs.spawn("lookup", missing(), failure=AlertDeliveryFailure)

    [result] = failed(await jobs.drain())
    assert isinstance(result.error, NotFound)


async def test_drain_waits_for_jobs_spawned_by_jobs() -> None:
    jobs = BackgroundJobs()

    async def parent() -> str:
        jobs.spawn("child", _value("child"))
        return "parent"

    jobs.spawn("parent", parent())
    results = await jobs.drain()

    assert sorted(result.value for result in results) == ["child", "parent"]


async def test_cancel_all() -> None:
    jobs = BackgroundJobs()
    jobs.spawn("sleepy", asyncio.sleep(60))
    await asyncio.sleep(0)

    await jobs.cancel_all()

    assert jobs.pending == 0


async def test_logging_sender_accepts_any_job() -> None:
    await LoggingSender().send(
        NotificationJob(template="applicant_status_change", recipient="a@example.org")
    )
