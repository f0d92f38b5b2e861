"""
Job records and their state machine.

PENDING -> PROCESSING -> COMPLETED | FAILED | TIMEOUT, with PENDING -> FAILED
for jobs that never start. Results are append-only and deduplicated in
discovery order. A COMPLETED job keeps accepting new results until its poll
loop seals it; FAILED and TIMEOUT jobs are sealed immediately.

Every mutation is mirrored to the optional ledger. The ledger is a record,
not the source of truth: its failures are logged and swallowed.
"""

from __future__ import annotations

import asyncio
import logging
import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Union

from genagent.actions import RawArtifact
from genagent.errors import GenAgentError, InvalidTransition, JobNotFound

if TYPE_CHECKING:
    from genagent.ledger import JobLedger
    from genagent.storage import ArtifactStore

log = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Job timeout after maximum attempts"

Artifact = Union[str, RawArtifact]


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMEOUT)


_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMEOUT}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.TIMEOUT: frozenset(),
}


def new_job_id(prefix: str) -> str:
    """<prefix>-<epoch ms>-<9 random base36 chars>."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def iso_utc(ts: float) -> str:
    return (
        datetime.fromtimestamp(ts, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


@dataclass
class Job:
    job_id: str
    integration: str
    status: JobStatus = JobStatus.PENDING
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    results: list[str] = field(default_factory=list)
    error_message: str | None = None
    meta: dict = field(default_factory=dict)
    sealed: bool = False

    def to_dict(self) -> dict:
        data = {
            "jobId": self.job_id,
            "integration": self.integration,
            "status": self.status.value,
            "createdAt": iso_utc(self.created_at),
            "updatedAt": iso_utc(self.updated_at),
            "results": list(self.results),
            "meta": dict(self.meta),
        }
        if self.error_message:
            data["errorMessage"] = self.error_message
        return data


class JobTracker:
    """In-memory job registry with ledger mirroring."""

    def __init__(
        self,
        integration: str,
        store: ArtifactStore | None = None,
        ledger: JobLedger | None = None,
    ) -> None:
        self._integration = integration
        self._store = store
        self._ledger = ledger
        self._jobs: dict[str, Job] = {}
        # Dedupe identities (references and raw keys) seen per job.
        self._seen: dict[str, set[str]] = {}
        self._append_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    async def create(self, job_id: str, meta: dict | None = None) -> Job:
        """Register a new PENDING job. Job ids are never reused."""
        if job_id in self._jobs:
            raise InvalidTransition(f"Job {job_id} already exists")
        job = Job(job_id=job_id, integration=self._integration, meta=dict(meta or {}))
        self._jobs[job_id] = job
        self._seen[job_id] = set()
        log.info("Job %s created", job_id)
        await self._mirror(job)
        return job

    def peek(self, job_id: str) -> Job | None:
        """In-memory record only, no ledger lookup."""
        return self._jobs.get(job_id)

    async def get(self, job_id: str) -> Job:
        """In-memory record, else the ledger's copy. Raises JobNotFound."""
        job = self._jobs.get(job_id)
        if job is not None:
            return job
        if self._ledger is not None:
            try:
                stored = await self._ledger.get(job_id)
            except Exception as exc:
                log.warning("Ledger lookup for %s failed: %s", job_id, exc)
                stored = None
            if stored is not None:
                return stored
        raise JobNotFound(f"Job {job_id} not found")

    def list_jobs(self) -> list[Job]:
        """All in-memory jobs, newest first."""
        return sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)

    def seen(self, job_id: str) -> frozenset[str]:
        """Artifact keys and references already merged into the job."""
        return frozenset(self._seen.get(job_id, ()))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def mark_processing(self, job_id: str) -> Job:
        job = self._require(job_id)
        self._transition(job, JobStatus.PROCESSING)
        await self._mirror(job)
        return job

    async def mark_failed(self, job_id: str, message: str) -> Job:
        job = self._require(job_id)
        self._transition(job, JobStatus.FAILED)
        job.error_message = message
        job.sealed = True
        log.warning("Job %s failed: %s", job_id, message)
        await self._mirror(job)
        return job

    async def mark_timeout(self, job_id: str) -> Job:
        job = self._require(job_id)
        self._transition(job, JobStatus.TIMEOUT)
        job.error_message = TIMEOUT_MESSAGE
        job.sealed = True
        log.warning("Job %s timed out", job_id)
        await self._mirror(job)
        return job

    async def append_results(self, job_id: str, artifacts: Iterable[Artifact]) -> list[str]:
        """Merge newly found artifacts into the job's result list.

        Duplicates (by reference, or by key for raw blobs) are skipped. Raw
        blobs are persisted through the artifact store first. The first
        non-empty merge completes a PROCESSING job. Returns the references
        that were actually added.
        """
        job = self._require(job_id)
        self._check_open(job)
        if job.status not in (JobStatus.PROCESSING, JobStatus.COMPLETED):
            raise InvalidTransition(
                f"Job {job_id} cannot accept results while {job.status.value}"
            )

        added: list[str] = []
        async with self._append_lock:
            seen = self._seen.setdefault(job_id, set(job.results))
            for artifact in artifacts:
                key = artifact.key if isinstance(artifact, RawArtifact) else artifact
                if not key or key in seen:
                    continue
                if isinstance(artifact, RawArtifact):
                    try:
                        ref = await self._persist(job, artifact)
                    except Exception as exc:
                        # Left out of `seen` so the next poll attempt retries it.
                        log.error("Job %s: could not persist %s: %s", job_id, key, exc)
                        continue
                else:
                    ref = artifact
                seen.add(key)
                if ref in seen and ref != key:
                    continue
                seen.add(ref)
                job.results.append(ref)
                added.append(ref)

        if added:
            if job.status is JobStatus.PROCESSING:
                self._transition(job, JobStatus.COMPLETED)
                log.info("Job %s completed", job_id)
            else:
                job.updated_at = time.time()
            log.info("Job %s: %d new result(s), %d total", job_id, len(added), len(job.results))
            await self._mirror(job)
        return added

    async def touch(self, job_id: str) -> Job:
        """Refresh updated_at to show the job is still being worked on."""
        job = self._require(job_id)
        self._check_open(job)
        job.updated_at = time.time()
        await self._mirror(job)
        return job

    def seal(self, job_id: str) -> None:
        """Close a job to further mutation (called when its poll loop ends)."""
        job = self._jobs.get(job_id)
        if job is not None:
            job.sealed = True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    @staticmethod
    def _check_open(job: Job) -> None:
        if job.sealed:
            raise InvalidTransition(f"Job {job.job_id} is sealed ({job.status.value})")

    def _transition(self, job: Job, target: JobStatus) -> None:
        self._check_open(job)
        if target not in _TRANSITIONS[job.status]:
            raise InvalidTransition(
                f"Job {job.job_id}: {job.status.value} -> {target.value} not allowed"
            )
        job.status = target
        job.updated_at = time.time()

    async def _persist(self, job: Job, artifact: RawArtifact) -> str:
        if self._store is None:
            raise GenAgentError("No artifact store configured for raw artifacts")
        return await self._store.persist(
            artifact.data,
            {
                "job_id": job.job_id,
                "integration": job.integration,
                "filename": artifact.filename,
                "content_type": artifact.content_type,
                "source": artifact.key,
            },
        )

    async def _mirror(self, job: Job) -> None:
        if self._ledger is None:
            return
        try:
            await self._ledger.upsert(job)
        except Exception as exc:
            log.warning("Ledger write for job %s failed: %s", job.job_id, exc)
