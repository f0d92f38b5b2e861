"""
Request orchestration: from an accepted generation request to a terminal job.

submit() records a PENDING job and returns its id at once. The work runs in
a background task under the concurrency limiter: mark PROCESSING, run each
vendor step against the shared browser session, then either poll for the
artifacts or take them straight from the last step.

A step that loses the browser session gets one more try on a fresh session.
Anything else that goes wrong becomes a FAILED job, never an exception that
escapes the task.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

from genagent.actions import VendorAction
from genagent.errors import GenAgentError, SessionUnavailable, ValidationError, VendorError
from genagent.jobs import JobStatus, JobTracker, new_job_id
from genagent.limiter import ConcurrencyLimiter
from genagent.poller import PollLoop
from genagent.session import SessionManager

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollSpec:
    """How to poll for a submitted vendor job's artifacts.

    `expected` is a count or a function of the job context (for vendors
    that report the batch size in their submit response). Before every
    attempt context["accepted"] holds the artifact keys the tracker has
    already merged, so a check skips those and retries everything else.
    """

    check: VendorAction
    expected: Union[int, Callable[[dict], int]] = 1
    interval: float | None = None
    max_attempts: int | None = None


@dataclass
class GenerationPlan:
    """Ordered vendor steps for one request, plus the optional poll phase."""

    steps: list[VendorAction]
    poll: PollSpec | None = None
    context: dict = field(default_factory=dict)
    # Runs after the job settles, e.g. to close a page kept open across steps.
    cleanup: Callable[[dict], Awaitable[None]] | None = None


class RequestOrchestrator:
    """Turns generation plans into tracked background jobs."""

    def __init__(
        self,
        integration: str,
        sessions: SessionManager,
        limiter: ConcurrencyLimiter,
        tracker: JobTracker,
        poller: PollLoop,
    ) -> None:
        self._integration = integration
        self._sessions = sessions
        self._limiter = limiter
        self._tracker = tracker
        self._poller = poller
        self._tasks: set[asyncio.Task] = set()
        # Jobs whose task has not yet been given a limiter slot.
        self._queued: dict[str, asyncio.Task] = {}
        self._submitted = 0

    @property
    def tracker(self) -> JobTracker:
        return self._tracker

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(self, plan: GenerationPlan, meta: dict | None = None, job_prefix: str | None = None) -> str:
        """Create the job and start its work in the background. Returns the job id."""
        if not plan.steps:
            raise ValidationError("Generation plan has no steps")

        job_id = new_job_id(job_prefix or self._integration)
        await self._tracker.create(job_id, meta)
        self._submitted += 1

        task = asyncio.create_task(self._guarded(job_id, plan), name=f"job-{job_id}")
        self._queued[job_id] = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(lambda _t: self._queued.pop(job_id, None))
        log.info(
            "Job %s accepted (%d active, %d waiting)",
            job_id, self._limiter.active_count, self._limiter.waiting,
        )
        return job_id

    async def cancel(self, job_id: str) -> bool:
        """Cancel a job still waiting for a slot. Running jobs are left alone."""
        task = self._queued.get(job_id)
        job = self._tracker.peek(job_id)
        if task is None or job is None or job.status is not JobStatus.PENDING:
            return False
        self._queued.pop(job_id, None)
        task.cancel()
        await self._tracker.mark_failed(job_id, "Cancelled before start")
        log.info("Job %s cancelled before start", job_id)
        return True

    def stats(self) -> dict:
        jobs = self._tracker.list_jobs()
        return {
            "submitted": self._submitted,
            "completed": sum(1 for j in jobs if j.status is JobStatus.COMPLETED),
            "failed": sum(1 for j in jobs if j.status in (JobStatus.FAILED, JobStatus.TIMEOUT)),
            "active": self._limiter.active_count,
            "queued": self._limiter.waiting,
        }

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Wait for in-flight jobs, cancel what is left, fail unfinished jobs."""
        tasks = [t for t in self._tasks if not t.done()]
        if tasks:
            log.info("Waiting for %d job task(s) to finish...", len(tasks))
            _done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                log.warning("Task %s did not finish in %.0fs, cancelling", task.get_name(), timeout)
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for job in self._tracker.list_jobs():
            await self._fail(job.job_id, "Service shutting down")

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    async def _guarded(self, job_id: str, plan: GenerationPlan) -> None:
        try:
            await self._limiter.schedule(self._run, job_id, plan)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("Job %s: error escaped the job task", job_id)
            await self._fail(job_id, "Internal error")

    async def _run(self, job_id: str, plan: GenerationPlan) -> None:
        self._queued.pop(job_id, None)
        context = dict(plan.context)
        context["job_id"] = job_id

        try:
            await self._tracker.mark_processing(job_id)
            last: Any = None
            for step in plan.steps:
                log.info("Job %s: step %s", job_id, step.name)
                last = await self._perform(job_id, step, context)
                context[step.name] = last

            if plan.poll is None:
                await self._finish_direct(job_id, last)
                return

            poll = plan.poll
            expected = poll.expected(context) if callable(poll.expected) else poll.expected
            outcome = await self._poller.run(
                job_id,
                lambda: self._check(poll.check, context),
                expected=expected,
                interval=poll.interval,
                max_attempts=poll.max_attempts,
            )
            log.info(
                "Job %s: poll finished with %s after %d attempt(s), %d result(s)",
                job_id, outcome.status.value, outcome.attempts, outcome.found,
            )
        except SessionUnavailable as exc:
            await self._fail(job_id, f"Browser session unavailable: {exc}")
        except (VendorError, ValidationError) as exc:
            await self._fail(job_id, str(exc))
        except Exception as exc:
            log.exception("Job %s: unexpected error", job_id)
            await self._fail(job_id, f"Unexpected error: {exc}")
        finally:
            if plan.cleanup is not None:
                try:
                    await plan.cleanup(context)
                except Exception:
                    log.exception("Job %s: cleanup failed", job_id)

    async def _finish_direct(self, job_id: str, result: Any) -> None:
        artifacts = list(result or [])
        if not artifacts:
            await self._fail(job_id, "Vendor returned no artifacts")
            return
        await self._tracker.append_results(job_id, artifacts)
        job = self._tracker.peek(job_id)
        if job is not None and job.status is JobStatus.PROCESSING:
            await self._fail(job_id, "Could not store any artifacts")
            return
        self._tracker.seal(job_id)

    async def _perform(self, job_id: str, action: VendorAction, context: dict) -> Any:
        """Run one step, retrying once on a fresh session if the session dies."""
        for attempt in (1, 2):
            session = None
            try:
                session = await self._sessions.acquire()
                return await action.perform(session, context)
            except SessionUnavailable as exc:
                if session is not None:
                    self._sessions.invalidate(session)
                if attempt == 2:
                    raise
                log.warning(
                    "Job %s: session lost during %s (%s); retrying on a fresh session",
                    job_id, action.name, exc,
                )

    async def _check(self, check: VendorAction, context: dict) -> Any:
        context["accepted"] = self._tracker.seen(context["job_id"])
        session = await self._sessions.acquire()
        try:
            return await check.perform(session, context)
        except SessionUnavailable:
            self._sessions.invalidate(session)
            raise

    async def _fail(self, job_id: str, message: str) -> None:
        job = self._tracker.peek(job_id)
        if job is None or job.sealed or job.status.terminal:
            return
        try:
            await self._tracker.mark_failed(job_id, message)
        except GenAgentError as exc:
            log.warning("Job %s: could not mark failed: %s", job_id, exc)
