"""Bounded polling of a vendor job until its artifacts show up."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

from genagent.errors import InvalidTransition, SessionUnavailable, VendorError, VendorRejected
from genagent.jobs import Artifact, JobStatus, JobTracker

log = logging.getLogger(__name__)

CheckFn = Callable[[], Awaitable[Iterable[Artifact]]]


@dataclass(frozen=True)
class PollOutcome:
    attempts: int
    found: int
    status: JobStatus


class PollLoop:
    """Runs a check action repeatedly against one job.

    Each attempt touches the job, calls check(), and merges whatever it
    returned. Transient failures are logged and counted as a spent
    attempt; VendorRejected fails the job on the spot. The loop stops once
    `expected` results are in or the attempt budget runs out. A job that
    found nothing by then is marked TIMEOUT, a job with partial results
    stays COMPLETED. The job is sealed when the loop ends, however it ends.
    """

    def __init__(
        self,
        tracker: JobTracker,
        interval: float = 15.0,
        max_attempts: int = 24,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._tracker = tracker
        self._interval = interval
        self._max_attempts = max_attempts
        self._sleep = sleep

    async def run(
        self,
        job_id: str,
        check: CheckFn,
        expected: int = 1,
        interval: float | None = None,
        max_attempts: int | None = None,
    ) -> PollOutcome:
        interval = self._interval if interval is None else interval
        budget = self._max_attempts if max_attempts is None else max_attempts
        expected = max(1, expected)
        attempts = 0
        errors = 0

        try:
            while attempts < budget:
                attempts += 1
                try:
                    await self._tracker.touch(job_id)
                except InvalidTransition:
                    log.info("Job %s sealed elsewhere; stopping poll", job_id)
                    break

                try:
                    found = await check()
                except VendorRejected as exc:
                    log.warning("Job %s rejected by vendor: %s", job_id, exc)
                    job = self._tracker.peek(job_id)
                    if job is not None and job.status is JobStatus.PROCESSING:
                        await self._tracker.mark_failed(job_id, str(exc))
                    break
                except (VendorError, SessionUnavailable) as exc:
                    errors += 1
                    log.warning(
                        "Job %s poll attempt %d/%d failed: %s",
                        job_id, attempts, budget, exc,
                    )
                    found = None
                except Exception:
                    errors += 1
                    log.exception("Job %s poll attempt %d/%d crashed", job_id, attempts, budget)
                    found = None

                if found:
                    await self._tracker.append_results(job_id, found)

                job = self._tracker.peek(job_id)
                if job is None or len(job.results) >= expected:
                    break
                if attempts < budget:
                    await self._sleep(interval)

            job = self._tracker.peek(job_id)
            if job is not None and job.status is JobStatus.PROCESSING:
                await self._tracker.mark_timeout(job_id)
            elif job is not None and job.status is JobStatus.COMPLETED and len(job.results) < expected:
                log.info(
                    "Job %s finished with %d/%d result(s) after %d attempt(s)",
                    job_id, len(job.results), expected, attempts,
                )
        finally:
            self._tracker.seal(job_id)

        job = self._tracker.peek(job_id)
        if errors:
            log.info("Job %s poll loop saw %d failed attempt(s)", job_id, errors)
        return PollOutcome(
            attempts=attempts,
            found=len(job.results) if job else 0,
            status=job.status if job else JobStatus.FAILED,
        )
