"""
Durable mirrors of job state.

The in-memory JobTracker is authoritative while the process runs. Ledgers
keep a copy so job status survives a restart (SqliteLedger) and so the
caller's own design row sees progress (SupabaseLedger).
"""

from __future__ import annotations

import json
import logging
import time
from typing import Protocol

import aiosqlite
import httpx

from genagent.jobs import Job, JobStatus, iso_utc

log = logging.getLogger(__name__)

RESTART_MESSAGE = "Service restarted before the job finished"


class JobLedger(Protocol):
    async def upsert(self, job: Job) -> None: ...

    async def get(self, job_id: str) -> Job | None: ...


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    job_id          TEXT PRIMARY KEY,
    integration     TEXT NOT NULL,
    status          TEXT NOT NULL,
    results         TEXT NOT NULL DEFAULT '[]',
    error_message   TEXT,
    meta            TEXT NOT NULL DEFAULT '{}',
    created_at      REAL NOT NULL,
    updated_at      REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_updated ON jobs(updated_at);
"""


class SqliteLedger:
    """Async SQLite job table (one row per job)."""

    def __init__(self, db_path: str = "genagent.db") -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Open connection, enable WAL mode, create tables."""
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        """Close the connection."""
        if self._db:
            await self._db.close()
            self._db = None

    async def fail_unfinished(self, integration: str, message: str = RESTART_MESSAGE) -> int:
        """Mark the integration's rows left pending or processing by an
        earlier process as failed. Returns how many rows changed.
        """
        cursor = await self._db.execute(
            """UPDATE jobs SET status = :failed, error_message = :message,
                   updated_at = :now
               WHERE integration = :integration
                 AND status IN (:pending, :processing)""",
            {
                "integration": integration,
                "failed": JobStatus.FAILED.value,
                "message": message,
                "now": time.time(),
                "pending": JobStatus.PENDING.value,
                "processing": JobStatus.PROCESSING.value,
            },
        )
        await self._db.commit()
        if cursor.rowcount:
            log.warning("Marked %d unfinished job(s) from a previous run as failed", cursor.rowcount)
        return cursor.rowcount

    async def upsert(self, job: Job) -> None:
        """INSERT OR REPLACE the job's current state."""
        await self._db.execute(
            """INSERT OR REPLACE INTO jobs
               (job_id, integration, status, results, error_message,
                meta, created_at, updated_at)
               VALUES (:job_id, :integration, :status, :results,
                       :error_message, :meta, :created_at, :updated_at)""",
            {
                "job_id": job.job_id,
                "integration": job.integration,
                "status": job.status.value,
                "results": json.dumps(job.results),
                "error_message": job.error_message,
                "meta": json.dumps(job.meta, default=str),
                "created_at": job.created_at,
                "updated_at": job.updated_at,
            },
        )
        await self._db.commit()

    async def get(self, job_id: str) -> Job | None:
        """Fetch a single job by id. Rows read back are always sealed."""
        async with self._db.execute(
            "SELECT * FROM jobs WHERE job_id = ?", (job_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_job(row)

    async def list_recent(self, limit: int = 50) -> list[Job]:
        """Most recently updated jobs first."""
        async with self._db.execute(
            "SELECT * FROM jobs ORDER BY updated_at DESC LIMIT ?", (limit,)
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_job(r) for r in rows]


def _row_to_job(row: aiosqlite.Row) -> Job:
    return Job(
        job_id=row["job_id"],
        integration=row["integration"],
        status=JobStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        results=json.loads(row["results"] or "[]"),
        error_message=row["error_message"],
        meta=json.loads(row["meta"] or "{}"),
        sealed=True,
    )


# ---------------------------------------------------------------------------
# Supabase design rows
# ---------------------------------------------------------------------------

class SupabaseLedger:
    """Write-only mirror onto the caller's design row via PostgREST.

    Jobs carry the row id in meta["design_id"]; jobs without one are
    skipped. The row gets job_id, job_status, job_updated_at,
    error_message and the integration's results column.
    """

    def __init__(
        self,
        url: str,
        service_role_key: str,
        table: str = "product_design",
        results_column: str = "generated_designs_url",
    ) -> None:
        self._base_url = url.rstrip("/")
        self._key = service_role_key
        self._table = table
        self._results_column = results_column
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Create the persistent httpx.AsyncClient."""
        self._client = httpx.AsyncClient(timeout=15.0)

    async def close(self) -> None:
        """Close the httpx client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self._key,
            "Authorization": f"Bearer {self._key}",
            "Content-Type": "application/json",
            "Prefer": "return=minimal",
        }

    async def upsert(self, job: Job) -> None:
        design_id = job.meta.get("design_id")
        if not design_id:
            return
        if self._client is None:
            raise RuntimeError("SupabaseLedger not started. Call await ledger.start() first.")

        row = {
            "job_id": job.job_id,
            "job_status": job.status.value,
            "job_updated_at": iso_utc(job.updated_at),
            "error_message": job.error_message,
        }
        if job.results:
            row[self._results_column] = json.dumps(job.results)

        resp = await self._client.patch(
            f"{self._base_url}/rest/v1/{self._table}",
            params={"id": f"eq.{design_id}"},
            headers=self._headers(),
            json=row,
        )
        resp.raise_for_status()

    async def get(self, job_id: str) -> Job | None:
        return None


class MultiLedger:
    """Fans writes out to every ledger; reads return the first hit."""

    def __init__(self, *ledgers: JobLedger) -> None:
        self._ledgers = list(ledgers)

    async def upsert(self, job: Job) -> None:
        errors: list[str] = []
        for ledger in self._ledgers:
            try:
                await ledger.upsert(job)
            except Exception as exc:
                errors.append(f"{type(ledger).__name__}: {exc}")
        if errors:
            raise RuntimeError("; ".join(errors))

    async def get(self, job_id: str) -> Job | None:
        for ledger in self._ledgers:
            job = await ledger.get(job_id)
            if job is not None:
                return job
        return None
