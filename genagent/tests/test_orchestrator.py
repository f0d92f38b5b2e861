"""Tests for RequestOrchestrator: end-to-end job runs with stubbed vendors."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from genagent.actions import RawArtifact, Step
from genagent.browser import Session
from genagent.config import Config
from genagent.errors import SessionUnavailable, ValidationError, VendorError
from genagent.jobs import JobStatus, JobTracker
from genagent.limiter import ConcurrencyLimiter
from genagent.orchestrator import GenerationPlan, PollSpec, RequestOrchestrator
from genagent.poller import PollLoop
from genagent.session import SessionManager
from genagent.vendors.base import GenerationRequest
from genagent.vendors.chatgpt import ChatGPTIntegration
from genagent.vendors.ideogram import IdeogramIntegration
from genagent.vendors.midjourney import MidjourneyIntegration


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _make_page() -> MagicMock:
    page = MagicMock()
    page.is_closed.return_value = False
    page.close = AsyncMock()
    page.evaluate = AsyncMock(return_value="channel-1")
    return page


def _make_session() -> Session:
    context = AsyncMock()
    context.new_page.side_effect = lambda: _make_page()
    return Session(context=context)


class CountingLauncher:
    def __init__(self) -> None:
        self.launched: list[Session] = []

    async def __call__(self) -> Session:
        session = _make_session()
        self.launched.append(session)
        return session


class MemoryStore:
    async def persist(self, data: bytes, metadata: dict) -> str:
        return f"https://files.test/{metadata['job_id']}/{metadata['filename']}"


class FlakyStore(MemoryStore):
    """Refuses the first `failures` writes."""

    def __init__(self, failures: int) -> None:
        self.failures = failures

    async def persist(self, data: bytes, metadata: dict) -> str:
        if self.failures:
            self.failures -= 1
            raise OSError("storage down")
        return await super().persist(data, metadata)


async def _no_sleep(_delay: float) -> None:
    return None


def _make_orchestrator(limit: int = 2, max_attempts: int = 3, store=None):
    launcher = CountingLauncher()
    sessions = SessionManager(launcher)
    tracker = JobTracker("test", store=store or MemoryStore())
    poller = PollLoop(tracker, interval=0, max_attempts=max_attempts, sleep=_no_sleep)
    orchestrator = RequestOrchestrator(
        "test", sessions, ConcurrencyLimiter(limit), tracker, poller,
    )
    return orchestrator, tracker, launcher


async def _drain(orchestrator: RequestOrchestrator) -> None:
    await asyncio.gather(*list(orchestrator._tasks), return_exceptions=True)


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


# ------------------------------------------------------------------
# Generic plans
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_submit_returns_pending_job_immediately() -> None:
    orchestrator, tracker, _ = _make_orchestrator()
    gate = asyncio.Event()

    async def generate(session, ctx):
        await gate.wait()
        return "req-1"

    plan = GenerationPlan(
        steps=[Step("generate", generate)],
        poll=PollSpec(check=Step("check", AsyncMock(return_value=["u1"]))),
    )
    job_id = await orchestrator.submit(plan, meta={"prompt": "x"})

    assert job_id.startswith("test-")
    assert tracker.peek(job_id).status is JobStatus.PENDING

    gate.set()
    await _drain(orchestrator)
    assert tracker.peek(job_id).status is JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_prompt_only_generation_completes() -> None:
    """Generate then one poll cycle: PENDING -> PROCESSING -> COMPLETED."""
    orchestrator, tracker, _ = _make_orchestrator()
    seen_status = []

    async def generate(session, ctx):
        seen_status.append(tracker.peek(ctx["job_id"]).status)
        assert ctx["prompt"] == "x"
        return "req-1"

    async def check(session, ctx):
        assert ctx["generate"] == "req-1"
        return ["https://vendor.test/img.png"]

    plan = GenerationPlan(
        steps=[Step("generate", generate)],
        poll=PollSpec(check=Step("check", check)),
        context={"prompt": "x"},
    )
    job_id = await orchestrator.submit(plan)
    await _drain(orchestrator)

    job = tracker.peek(job_id)
    assert seen_status == [JobStatus.PROCESSING]
    assert job.status is JobStatus.COMPLETED
    assert job.results == ["https://vendor.test/img.png"]
    assert job.sealed


@pytest.mark.asyncio
async def test_empty_plan_is_rejected_without_a_job() -> None:
    orchestrator, tracker, _ = _make_orchestrator()
    with pytest.raises(ValidationError):
        await orchestrator.submit(GenerationPlan(steps=[]))
    assert tracker.list_jobs() == []


@pytest.mark.asyncio
async def test_vendor_error_fails_job_without_polling() -> None:
    orchestrator, tracker, _ = _make_orchestrator()
    check = AsyncMock(return_value=["u1"])

    async def generate(session, ctx):
        raise VendorError("No request ID received")

    plan = GenerationPlan(steps=[Step("generate", generate)], poll=PollSpec(check=Step("check", check)))
    job_id = await orchestrator.submit(plan)
    await _drain(orchestrator)

    job = tracker.peek(job_id)
    assert job.status is JobStatus.FAILED
    assert job.error_message == "No request ID received"
    check.assert_not_awaited()


@pytest.mark.asyncio
async def test_unexpected_error_fails_job() -> None:
    orchestrator, tracker, _ = _make_orchestrator()

    async def generate(session, ctx):
        raise KeyError("request_id")

    job_id = await orchestrator.submit(GenerationPlan(steps=[Step("generate", generate)]))
    await _drain(orchestrator)

    job = tracker.peek(job_id)
    assert job.status is JobStatus.FAILED
    assert job.error_message.startswith("Unexpected error")


@pytest.mark.asyncio
async def test_session_loss_retries_step_once_on_fresh_session() -> None:
    orchestrator, tracker, launcher = _make_orchestrator()
    used: list[Session] = []

    async def generate(session, ctx):
        used.append(session)
        if len(used) == 1:
            raise SessionUnavailable("browser went away")
        return [RawArtifact(key="k", data=b"png")]

    job_id = await orchestrator.submit(GenerationPlan(steps=[Step("generate", generate)]))
    await _drain(orchestrator)

    job = tracker.peek(job_id)
    assert job.status is JobStatus.COMPLETED
    assert len(launcher.launched) == 2
    assert used[0] is not used[1]
    assert used[0].connected is False


@pytest.mark.asyncio
async def test_session_loss_twice_fails_job() -> None:
    orchestrator, tracker, launcher = _make_orchestrator()
    step = AsyncMock(side_effect=SessionUnavailable("browser went away"))

    job_id = await orchestrator.submit(GenerationPlan(steps=[Step("generate", step)]))
    await _drain(orchestrator)

    job = tracker.peek(job_id)
    assert step.await_count == 2
    assert job.status is JobStatus.FAILED
    assert job.error_message.startswith("Browser session unavailable")


@pytest.mark.asyncio
async def test_direct_results_without_poll() -> None:
    orchestrator, tracker, _ = _make_orchestrator()
    artifacts = [RawArtifact(key="a", data=b"1", filename="a.png"), "https://vendor.test/b.png"]

    job_id = await orchestrator.submit(
        GenerationPlan(steps=[Step("render", AsyncMock(return_value=artifacts))])
    )
    await _drain(orchestrator)

    job = tracker.peek(job_id)
    assert job.status is JobStatus.COMPLETED
    assert len(job.results) == 2
    assert job.sealed


@pytest.mark.asyncio
async def test_direct_empty_result_fails() -> None:
    orchestrator, tracker, _ = _make_orchestrator()
    job_id = await orchestrator.submit(
        GenerationPlan(steps=[Step("render", AsyncMock(return_value=[]))])
    )
    await _drain(orchestrator)

    job = tracker.peek(job_id)
    assert job.status is JobStatus.FAILED
    assert job.error_message == "Vendor returned no artifacts"


@pytest.mark.asyncio
async def test_poll_timeout() -> None:
    orchestrator, tracker, _ = _make_orchestrator(max_attempts=3)
    check = AsyncMock(return_value=[])

    plan = GenerationPlan(
        steps=[Step("generate", AsyncMock(return_value="req"))],
        poll=PollSpec(check=Step("check", check)),
    )
    job_id = await orchestrator.submit(plan)
    await _drain(orchestrator)

    assert check.await_count == 3
    assert tracker.peek(job_id).status is JobStatus.TIMEOUT


@pytest.mark.asyncio
async def test_expected_count_from_context() -> None:
    orchestrator, tracker, _ = _make_orchestrator(max_attempts=5)
    batches = iter([["u1"], ["u2"], ["u3"]])

    async def check(session, ctx):
        return next(batches)

    plan = GenerationPlan(
        steps=[Step("submit", AsyncMock(return_value={"batch_size": 2}))],
        poll=PollSpec(check=Step("check", check), expected=lambda ctx: ctx["submit"]["batch_size"]),
    )
    job_id = await orchestrator.submit(plan)
    await _drain(orchestrator)

    assert tracker.peek(job_id).results == ["u1", "u2"]


@pytest.mark.asyncio
async def test_cleanup_runs_after_failure() -> None:
    orchestrator, tracker, _ = _make_orchestrator()
    cleanup = AsyncMock()

    plan = GenerationPlan(
        steps=[Step("open", AsyncMock(side_effect=VendorError("no tool")))],
        context={"prompt": "x"},
        cleanup=cleanup,
    )
    job_id = await orchestrator.submit(plan)
    await _drain(orchestrator)

    cleanup.assert_awaited_once()
    assert cleanup.await_args.args[0]["job_id"] == job_id


# ------------------------------------------------------------------
# Queueing, cancel, shutdown
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_queued_job() -> None:
    orchestrator, tracker, _ = _make_orchestrator(limit=1)
    gate = asyncio.Event()
    second_step = AsyncMock(return_value=["u"])

    async def blocking(session, ctx):
        await gate.wait()
        return ["done"]

    running = await orchestrator.submit(GenerationPlan(steps=[Step("work", blocking)]))
    queued = await orchestrator.submit(GenerationPlan(steps=[Step("work", second_step)]))
    await _settle()

    assert orchestrator.stats()["active"] == 1
    assert orchestrator.stats()["queued"] == 1

    assert await orchestrator.cancel(running) is False
    assert await orchestrator.cancel("unknown") is False
    assert await orchestrator.cancel(queued) is True
    assert await orchestrator.cancel(queued) is False

    gate.set()
    await _drain(orchestrator)

    assert tracker.peek(running).status is JobStatus.COMPLETED
    job = tracker.peek(queued)
    assert job.status is JobStatus.FAILED
    assert job.error_message == "Cancelled before start"
    second_step.assert_not_awaited()


@pytest.mark.asyncio
async def test_stats() -> None:
    orchestrator, _, _ = _make_orchestrator()
    await orchestrator.submit(GenerationPlan(steps=[Step("ok", AsyncMock(return_value=["u"]))]))
    await orchestrator.submit(GenerationPlan(steps=[Step("bad", AsyncMock(return_value=[]))]))
    await _drain(orchestrator)

    stats = orchestrator.stats()
    assert stats["submitted"] == 2
    assert stats["completed"] == 1
    assert stats["failed"] == 1
    assert stats["active"] == 0


@pytest.mark.asyncio
async def test_shutdown_fails_unfinished_jobs() -> None:
    orchestrator, tracker, _ = _make_orchestrator(limit=1)
    never = asyncio.Event()

    async def hang(session, ctx):
        await never.wait()

    running = await orchestrator.submit(GenerationPlan(steps=[Step("hang", hang)]))
    queued = await orchestrator.submit(GenerationPlan(steps=[Step("hang", hang)]))
    await _settle()

    await orchestrator.shutdown(timeout=0.01)

    for job_id in (running, queued):
        job = tracker.peek(job_id)
        assert job.status is JobStatus.FAILED
        assert job.error_message == "Service shutting down"


# ------------------------------------------------------------------
# Midjourney flow with stubbed vendor calls
# ------------------------------------------------------------------


@pytest.fixture()
def midjourney(clean_env: Path, monkeypatch: pytest.MonkeyPatch) -> MidjourneyIntegration:
    monkeypatch.setattr("genagent.vendors.midjourney.goto", AsyncMock())
    return MidjourneyIntegration(Config.load("midjourney"), sleep=_no_sleep)


@pytest.mark.asyncio
async def test_midjourney_submit_retries_then_polls_full_batch(
    midjourney: MidjourneyIntegration, monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Two HTTP 500s, then success: the job completes with the advertised batch."""
    submit = AsyncMock(side_effect=[
        VendorError("HTTP 500", status=500),
        VendorError("HTTP 500", status=500),
        {"success": [{"job_id": "mj-abc", "meta": {"batch_size": 4}}]},
    ])
    monkeypatch.setattr("genagent.vendors.midjourney.fetch_json", submit)
    monkeypatch.setattr(
        "genagent.vendors.midjourney.fetch_bytes",
        AsyncMock(return_value=(b"png", "image/png")),
    )
    orchestrator, tracker, _ = _make_orchestrator()

    plan = midjourney.build_plan(GenerationRequest(prompt="a red fox"))
    job_id = await orchestrator.submit(plan)
    await _drain(orchestrator)

    job = tracker.peek(job_id)
    assert submit.await_count == 3
    assert job.status is JobStatus.COMPLETED
    assert len(job.results) == 4


@pytest.mark.asyncio
async def test_midjourney_missing_job_id_fails_before_polling(
    midjourney: MidjourneyIntegration, monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "genagent.vendors.midjourney.fetch_json", AsyncMock(return_value={"success": []}),
    )
    fetch_bytes = AsyncMock(return_value=(b"png", "image/png"))
    monkeypatch.setattr("genagent.vendors.midjourney.fetch_bytes", fetch_bytes)
    orchestrator, tracker, _ = _make_orchestrator()

    job_id = await orchestrator.submit(midjourney.build_plan(GenerationRequest(prompt="a red fox")))
    await _drain(orchestrator)

    job = tracker.peek(job_id)
    assert job.status is JobStatus.FAILED
    assert "no job id" in job.error_message
    fetch_bytes.assert_not_awaited()


@pytest.mark.asyncio
async def test_midjourney_image_refetched_after_storage_failure(
    midjourney: MidjourneyIntegration, monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A rendered image the store refused once is downloaded again next attempt."""
    monkeypatch.setattr(
        "genagent.vendors.midjourney.fetch_json",
        AsyncMock(return_value={"success": [{"job_id": "abc", "meta": {"batch_size": 1}}]}),
    )
    fetch_bytes = AsyncMock(return_value=(b"png", "image/png"))
    monkeypatch.setattr("genagent.vendors.midjourney.fetch_bytes", fetch_bytes)
    orchestrator, tracker, _ = _make_orchestrator(max_attempts=3, store=FlakyStore(failures=1))

    job_id = await orchestrator.submit(midjourney.build_plan(GenerationRequest(prompt="a red fox")))
    await _drain(orchestrator)

    job = tracker.peek(job_id)
    assert job.status is JobStatus.COMPLETED
    assert job.results == [f"https://files.test/{job_id}/generated_0.png"]
    assert fetch_bytes.await_count == 2


# ------------------------------------------------------------------
# Ideogram poll check with stubbed vendor calls
# ------------------------------------------------------------------


@pytest.fixture()
def ideogram(clean_env: Path, monkeypatch: pytest.MonkeyPatch) -> IdeogramIntegration:
    monkeypatch.setattr("genagent.vendors.ideogram.goto", AsyncMock())
    monkeypatch.setattr(
        "genagent.vendors.ideogram.fetch_json",
        AsyncMock(return_value={"responses": [{"response_id": "r1"}, {"response_id": "r2"}]}),
    )
    return IdeogramIntegration(Config.load("ideogram"), sleep=_no_sleep)


def _ideogram_poll_plan(ideogram: IdeogramIntegration) -> GenerationPlan:
    return GenerationPlan(
        steps=[Step("generate", AsyncMock(return_value="req-1"))],
        poll=PollSpec(check=Step("check", ideogram._check), expected=2),
    )


@pytest.mark.asyncio
async def test_ideogram_batch_survives_one_failed_download(
    ideogram: IdeogramIntegration, monkeypatch: pytest.MonkeyPatch,
) -> None:
    """r2 fails with HTTP 502 once; both images still end up on the job."""
    fetched: list[str] = []

    async def fetch_bytes(page, url, headers=None):
        fetched.append(url)
        if "/r2/" in url and fetched.count(url) == 1:
            raise VendorError("HTTP 502", status=502)
        return b"png", "image/png"

    monkeypatch.setattr("genagent.vendors.ideogram.fetch_bytes", fetch_bytes)
    orchestrator, tracker, _ = _make_orchestrator(max_attempts=3)

    job_id = await orchestrator.submit(_ideogram_poll_plan(ideogram))
    await _drain(orchestrator)

    job = tracker.peek(job_id)
    assert job.status is JobStatus.COMPLETED
    assert job.results == [
        f"https://files.test/{job_id}/ideogram-remix-r1.png",
        f"https://files.test/{job_id}/ideogram-remix-r2.png",
    ]
    assert sum("/r1/" in url for url in fetched) == 2


@pytest.mark.asyncio
async def test_ideogram_check_skips_stored_responses(
    ideogram: IdeogramIntegration, monkeypatch: pytest.MonkeyPatch,
) -> None:
    fetch_bytes = AsyncMock(return_value=(b"png", "image/png"))
    monkeypatch.setattr("genagent.vendors.ideogram.fetch_bytes", fetch_bytes)

    artifacts = await ideogram._check(
        _make_session(), {"generate": "req-1", "accepted": frozenset({"r1"})},
    )

    assert [a.key for a in artifacts] == ["r2"]
    fetch_bytes.assert_awaited_once()


@pytest.mark.asyncio
async def test_ideogram_generate_sends_caller_user_id(
    ideogram: IdeogramIntegration, monkeypatch: pytest.MonkeyPatch,
) -> None:
    sample = AsyncMock(return_value={"request_id": "req-9"})
    monkeypatch.setattr("genagent.vendors.ideogram.fetch_json", sample)
    plan = ideogram.build_plan(GenerationRequest(
        prompt="keep it",
        image_url="https://img.test/a.png",
        options={"promptSource": "MANUAL"},
        user_id="u-7",
    ))
    ctx = {**plan.context, "upload": "img-1"}

    assert await ideogram._generate(_make_session(), ctx) == "req-9"
    assert sample.await_args.kwargs["body"]["user_id"] == "u-7"


@pytest.mark.asyncio
async def test_ideogram_upscale_polls_its_own_request(
    ideogram: IdeogramIntegration, monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls: list[str] = []

    async def fetch_json(page, url, method="GET", headers=None, body=None):
        calls.append(url)
        if url.endswith("/api/images/sample"):
            assert body["parent"] == {
                "request_id": "req-1", "response_id": "r1", "weight": 100, "type": "SUPER_RES",
            }
            return {"request_id": "up-1"}
        return {"responses": [{"response_id": "u1"}]}

    monkeypatch.setattr("genagent.vendors.ideogram.fetch_json", fetch_json)
    monkeypatch.setattr(
        "genagent.vendors.ideogram.fetch_bytes", AsyncMock(return_value=(b"png", "image/png")),
    )
    orchestrator, tracker, _ = _make_orchestrator()

    job_id = await orchestrator.submit(ideogram.build_plan(GenerationRequest(
        prompt="sharper", options={"task": "upscale", "request_id": "req-1", "response_id": "r1"},
    )))
    await _drain(orchestrator)

    job = tracker.peek(job_id)
    assert job.status is JobStatus.COMPLETED
    assert job.results == [f"https://files.test/{job_id}/ideogram-upscale-u1.png"]
    assert calls[-1].endswith("/retrieve_metadata_request_id/up-1")


@pytest.mark.asyncio
async def test_ideogram_remove_background_completes_without_polling(
    ideogram: IdeogramIntegration, monkeypatch: pytest.MonkeyPatch,
) -> None:
    cutout = AsyncMock(return_value={"data": {"response_id": "cut-1"}})
    monkeypatch.setattr("genagent.vendors.ideogram.fetch_json", cutout)
    fetch_bytes = AsyncMock(return_value=(b"png", "image/png"))
    monkeypatch.setattr("genagent.vendors.ideogram.fetch_bytes", fetch_bytes)
    orchestrator, tracker, _ = _make_orchestrator()

    job_id = await orchestrator.submit(ideogram.build_plan(GenerationRequest(
        options={"task": "removebackground", "asset_id": "r9"},
    )))
    await _drain(orchestrator)

    job = tracker.peek(job_id)
    assert job.status is JobStatus.COMPLETED
    assert job.results == [f"https://files.test/{job_id}/ideogram-cutout-r9.png"]
    assert cutout.await_args.kwargs["body"] == {"asset_type": "RESPONSE", "asset_id": "r9"}
    assert "/api/download/response/cut-1/" in fetch_bytes.await_args.args[1]


# ------------------------------------------------------------------
# Midjourney video
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_midjourney_video_polls_for_clips(
    midjourney: MidjourneyIntegration, monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "genagent.vendors.midjourney.download_url", AsyncMock(return_value=(b"img", "image/png")),
    )
    monkeypatch.setattr(
        "genagent.vendors.midjourney.upload_form",
        AsyncMock(return_value={"shortUrl": "https://s.mj.run/abc"}),
    )
    submit = AsyncMock(return_value={"success": [{"job_id": "vid-1", "meta": {"batch_size": 2}}]})
    monkeypatch.setattr("genagent.vendors.midjourney.fetch_json", submit)
    fetch_bytes = AsyncMock(return_value=(b"mp4", "video/mp4"))
    monkeypatch.setattr("genagent.vendors.midjourney.fetch_bytes", fetch_bytes)
    orchestrator, tracker, _ = _make_orchestrator()

    job_id = await orchestrator.submit(midjourney.build_plan(GenerationRequest(
        prompt="slow pan", image_url="https://img.test/a.png", options={"task": "video"},
    )))
    await _drain(orchestrator)

    job = tracker.peek(job_id)
    assert job.status is JobStatus.COMPLETED
    assert job.results == [
        f"https://files.test/{job_id}/video_0.mp4",
        f"https://files.test/{job_id}/video_1.mp4",
    ]
    body = submit.await_args.kwargs["body"]
    assert body["t"] == "video"
    assert body["newPrompt"].startswith("slow pan https://s.mj.run/abc ")
    assert fetch_bytes.await_args_list[0].args[1].startswith("https://cdn.midjourney.com/video/vid-1/0.mp4?")


@pytest.mark.asyncio
async def test_midjourney_video_fails_when_upload_fails(
    midjourney: MidjourneyIntegration, monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "genagent.vendors.midjourney.download_url", AsyncMock(return_value=(b"img", "image/png")),
    )
    monkeypatch.setattr(
        "genagent.vendors.midjourney.upload_form", AsyncMock(side_effect=VendorError("HTTP 413")),
    )
    submit = AsyncMock()
    monkeypatch.setattr("genagent.vendors.midjourney.fetch_json", submit)
    orchestrator, tracker, _ = _make_orchestrator()

    job_id = await orchestrator.submit(midjourney.build_plan(GenerationRequest(
        image_url="https://img.test/a.png", options={"task": "video"},
    )))
    await _drain(orchestrator)

    job = tracker.peek(job_id)
    assert job.status is JobStatus.FAILED
    assert "upload" in job.error_message
    submit.assert_not_awaited()


# ------------------------------------------------------------------
# ChatGPT poll check
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_chatgpt_check_retries_assets_not_yet_stored(
    clean_env: Path, monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failed download is not remembered; only stored pointers are skipped."""
    async def fetch_json(page, url, method="GET", headers=None, body=None):
        if url.endswith("/async-status"):
            return {"status": "OK"}
        if "/files/download/" in url:
            return {"download_url": f"https://files.oai.test/{url.split('/files/download/')[1].split('?')[0]}"}
        return {}

    download = AsyncMock(side_effect=[VendorError("HTTP 502", status=502), (b"png", "image/png")])
    monkeypatch.setattr("genagent.vendors.chatgpt.goto", AsyncMock())
    monkeypatch.setattr("genagent.vendors.chatgpt.fetch_json", fetch_json)
    monkeypatch.setattr("genagent.vendors.chatgpt.download_url", download)
    gpt = ChatGPTIntegration(Config.load("chatgpt"), sleep=_no_sleep)
    ctx = {
        "converse": {
            "conversation_id": "c1",
            "asset_pointers": ["file-service://f1", "file-service://f2"],
        },
        "accepted": frozenset({"file-service://f1"}),
    }

    with pytest.raises(VendorError):
        await gpt._check(_make_session(), ctx)
    artifacts = await gpt._check(_make_session(), ctx)

    assert [a.key for a in artifacts] == ["file-service://f2"]
    assert [c.args[0] for c in download.await_args_list] == ["https://files.oai.test/f2"] * 2
