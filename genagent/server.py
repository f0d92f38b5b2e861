"""genagent: one generation service per integration.

Wraps a vendor web app (ChatGPT, Midjourney, Veo, Ideogram) driven through a
shared headless browser and exposes it as a small job API.

Endpoints:
  POST /generate             - accept a generation request, returns a job id
  GET  /job/{job_id}         - job status and results
  POST /job/{job_id}/cancel  - cancel a job still waiting for a slot
  GET  /jobs                 - every job this process knows about
  GET  /health               - counters, session state, version
  GET  /artifacts/...        - files written by the local artifact store
  GET  /                     - endpoint index

Run: GENAGENT_INTEGRATION=midjourney python -m genagent.server
"""

from __future__ import annotations

import asyncio
import logging
import signal
import subprocess
import sys
import time
from typing import Any, Awaitable, Callable

from aiohttp import web

from genagent.browser import PlaywrightLauncher
from genagent.config import Config
from genagent.errors import JobNotFound, ValidationError
from genagent.jobs import JobTracker, iso_utc
from genagent.ledger import JobLedger, MultiLedger, SqliteLedger, SupabaseLedger
from genagent.limiter import ConcurrencyLimiter
from genagent.orchestrator import RequestOrchestrator
from genagent.poller import PollLoop
from genagent.session import SessionManager
from genagent.storage import ArtifactStore, LocalArtifactStore, SupabaseArtifactStore
from genagent.vendors import GenerationRequest, Integration, get_integration

log = logging.getLogger(__name__)

try:
    GIT_HASH = subprocess.run(
        ["git", "rev-parse", "--short", "HEAD"],
        capture_output=True,
        text=True,
        timeout=5,
    ).stdout.strip() or "unknown"
except Exception:
    GIT_HASH = "unknown"

Closer = Callable[[], Awaitable[Any]]


class Service:
    """HTTP front end for one integration's RequestOrchestrator."""

    def __init__(
        self,
        config: Config,
        integration: Integration,
        sessions: SessionManager,
        orchestrator: RequestOrchestrator,
        store: ArtifactStore | None = None,
        closers: list[Closer] | None = None,
    ) -> None:
        self._config = config
        self._integration = integration
        self._sessions = sessions
        self._orchestrator = orchestrator
        self._store = store
        self._closers = list(closers or [])

        self._runner: web.AppRunner | None = None
        self._warmup_task: asyncio.Task | None = None
        self._started_at = time.time()

        # Counters for /health. Jobs that finished are counted from the
        # tracker; requests rejected before a job existed are counted here.
        self._total_requests = 0
        self._rejected_requests = 0
        self._last_request_at: float | None = None
        self._last_error: str | None = None

        self._app = web.Application()
        self._app.router.add_get("/", self._handle_index)
        self._app.router.add_post("/generate", self._handle_generate)
        self._app.router.add_get("/job/{job_id}", self._handle_job)
        self._app.router.add_post("/job/{job_id}/cancel", self._handle_cancel)
        self._app.router.add_get("/jobs", self._handle_jobs)
        self._app.router.add_get("/health", self._handle_health)
        if isinstance(store, LocalArtifactStore):
            store.root.mkdir(parents=True, exist_ok=True)
            self._app.router.add_static("/artifacts", store.root)

    @property
    def app(self) -> web.Application:
        return self._app

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, warmup: bool = True) -> None:
        """Start listening; warm the browser session in the background."""
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await site.start()
        log.info(
            "%s service listening on %s:%d (max_jobs=%d)",
            self._integration.title or self._integration.name,
            self._config.host, self._config.port, self._config.max_concurrent_jobs,
        )
        if warmup:
            self._warmup_task = asyncio.create_task(self._warmup(), name="session-warmup")

    async def stop(self) -> None:
        """Graceful shutdown: jobs first, then the browser, then the ledgers."""
        if self._warmup_task is not None and not self._warmup_task.done():
            self._warmup_task.cancel()
            await asyncio.gather(self._warmup_task, return_exceptions=True)

        await self._orchestrator.shutdown(timeout=30.0)
        await self._sessions.close()

        for close in self._closers:
            try:
                await close()
            except Exception as exc:
                log.warning("Shutdown step failed: %s", exc)

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        log.info("Service stopped")

    async def _warmup(self) -> None:
        try:
            session = await self._sessions.acquire()
            await self._integration.warmup(session)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._last_error = f"Warm-up failed: {exc}"
            log.warning("Browser warm-up failed (will retry on first job): %s", exc)

    # ------------------------------------------------------------------
    # HTTP handlers
    # ------------------------------------------------------------------

    async def _handle_index(self, request: web.Request) -> web.Response:
        """GET /"""
        return web.json_response({
            "service": f"genagent-{self._integration.name}",
            "integration": self._integration.name,
            "version": GIT_HASH,
            "endpoints": {
                "generate": "POST /generate",
                "job": "GET /job/{jobId}",
                "cancel": "POST /job/{jobId}/cancel",
                "jobs": "GET /jobs",
                "health": "GET /health",
            },
        })

    async def _handle_generate(self, request: web.Request) -> web.Response:
        """POST /generate

        Body: {"prompt": "...", "imageUrl": "...", "options": {...}, "designId": "..."}
        Returns 202 with the job id; the work continues in the background.
        """
        self._total_requests += 1
        self._last_request_at = time.time()

        try:
            data = await request.json()
        except Exception:
            self._reject("Invalid JSON")
            return web.json_response({"ok": False, "error": "Invalid JSON"}, status=400)

        try:
            gen = GenerationRequest.from_payload(data)
            plan = self._integration.build_plan(gen)
            job_id = await self._orchestrator.submit(
                plan, meta=gen.meta(), job_prefix=self._integration.job_prefix,
            )
        except ValidationError as exc:
            self._reject(str(exc))
            return web.json_response({"ok": False, "error": str(exc)}, status=400)

        return web.json_response(
            {"ok": True, "jobId": job_id, "status": "pending"}, status=202,
        )

    async def _handle_job(self, request: web.Request) -> web.Response:
        """GET /job/{job_id}"""
        job_id = request.match_info["job_id"]
        try:
            job = await self._orchestrator.tracker.get(job_id)
        except JobNotFound:
            return web.json_response({"ok": False, "error": "Job not found"}, status=404)
        return web.json_response({"ok": True, **job.to_dict()})

    async def _handle_cancel(self, request: web.Request) -> web.Response:
        """POST /job/{job_id}/cancel"""
        job_id = request.match_info["job_id"]
        try:
            job = await self._orchestrator.tracker.get(job_id)
        except JobNotFound:
            return web.json_response({"ok": False, "error": "Job not found"}, status=404)

        if not await self._orchestrator.cancel(job_id):
            return web.json_response(
                {"ok": False, "error": f"Job is {job.status.value}, only queued jobs can be cancelled"},
                status=409,
            )
        return web.json_response({"ok": True, "jobId": job_id, "status": "failed"})

    async def _handle_jobs(self, request: web.Request) -> web.Response:
        """GET /jobs"""
        jobs = [job.to_dict() for job in self._orchestrator.tracker.list_jobs()]
        return web.json_response({"ok": True, "count": len(jobs), "jobs": jobs})

    async def _handle_health(self, request: web.Request) -> web.Response:
        """GET /health"""
        stats = self._orchestrator.stats()
        successful = stats["completed"]
        failed = stats["failed"] + self._rejected_requests
        total = self._total_requests
        rate = round(successful / total * 100, 1) if total else 0.0

        return web.json_response({
            "status": "ok",
            "integration": self._integration.name,
            "uptime": round(time.time() - self._started_at, 1),
            "totalRequests": total,
            "successfulRequests": successful,
            "failedRequests": failed,
            "successRate": rate,
            "activeJobs": stats["active"],
            "queuedJobs": stats["queued"],
            "maxConcurrentJobs": self._config.max_concurrent_jobs,
            "session": self._sessions.describe(),
            "lastRequest": iso_utc(self._last_request_at) if self._last_request_at else None,
            "lastError": self._last_error or self._sessions.last_error,
            "version": GIT_HASH,
        })

    def _reject(self, message: str) -> None:
        self._rejected_requests += 1
        self._last_error = message
        log.info("Rejected generate request: %s", message)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

async def build_service(config: Config) -> Service:
    """Assemble the components for config.integration.

    Connects the ledgers and starts the storage clients; their close
    methods are handed to the Service for shutdown.
    """
    integration = get_integration(config.integration, config)
    closers: list[Closer] = []

    launcher = PlaywrightLauncher(
        headless=config.headless,
        executable=config.browser_executable,
        profile_dir=config.profile_dir,
        navigation_timeout=config.navigation_timeout_seconds,
    )
    sessions = SessionManager(launcher)

    store: ArtifactStore
    if config.supabase_enabled:
        supabase_store = SupabaseArtifactStore(
            config.supabase_url, config.supabase_service_role_key, config.supabase_bucket,
        )
        await supabase_store.start()
        closers.append(supabase_store.close)
        store = supabase_store
    else:
        store = LocalArtifactStore(config.artifact_dir, config.public_base_url)

    ledgers: list[JobLedger] = []
    if config.db_path:
        sqlite_ledger = SqliteLedger(config.db_path)
        await sqlite_ledger.connect()
        await sqlite_ledger.fail_unfinished(config.integration)
        closers.append(sqlite_ledger.close)
        ledgers.append(sqlite_ledger)
    if config.supabase_enabled:
        design_ledger = SupabaseLedger(
            config.supabase_url,
            config.supabase_service_role_key,
            table=config.supabase_table,
            results_column=integration.results_column,
        )
        await design_ledger.start()
        closers.append(design_ledger.close)
        ledgers.append(design_ledger)

    ledger: JobLedger | None = None
    if len(ledgers) == 1:
        ledger = ledgers[0]
    elif ledgers:
        ledger = MultiLedger(*ledgers)

    tracker = JobTracker(config.integration, store=store, ledger=ledger)
    poller = PollLoop(
        tracker,
        interval=config.poll_interval_seconds,
        max_attempts=config.poll_max_attempts,
    )
    limiter = ConcurrencyLimiter(config.max_concurrent_jobs)
    orchestrator = RequestOrchestrator(config.integration, sessions, limiter, tracker, poller)

    return Service(config, integration, sessions, orchestrator, store=store, closers=closers)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def _loop_exception_handler(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    exc = context.get("exception")
    if exc is not None:
        log.error("Unhandled error in event loop: %s", context.get("message", ""), exc_info=exc)
    else:
        log.error("Unhandled event loop error: %s", context.get("message", context))


async def run(config: Config) -> None:
    """Start the service and run until SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(_loop_exception_handler)

    service = await build_service(config)
    await service.start()

    shutdown = asyncio.Event()

    def _signal_handler() -> None:
        log.info("Shutdown signal received")
        shutdown.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    log.info(
        "genagent %s running (integration=%s, port=%d, headless=%s)",
        GIT_HASH, config.integration, config.port, config.headless,
    )

    await shutdown.wait()
    log.info("Shutting down...")
    await service.stop()
    log.info("Shutdown complete")


def main() -> None:
    """Entry point: load env, configure logging, run the service."""
    integration = sys.argv[1] if len(sys.argv) > 1 else None
    config = Config.load(integration)

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
