"""
Midjourney: prompt-to-image and image-to-video through the logged-in web app.

Image flow (options task "image", the default): optional reference-image
upload (short URL prefixed to the prompt), submit through /api/submit-jobs,
then poll the CDN for each image of the batch. Image i of job J lives at
cdn.midjourney.com/J/0_i.png once rendered.

Video flow (task "video"): upload the source image, submit a video job
that animates it, then poll the CDN for cdn.midjourney.com/video/J/i.mp4.
"""

from __future__ import annotations

import logging
import random
import re
import string
import time
from pathlib import PurePosixPath
from urllib.parse import urlparse

from genagent.actions import RawArtifact, Step
from genagent.browser import (
    Session,
    download_url,
    fetch_bytes,
    fetch_json,
    goto,
    playwright_errors,
    upload_form,
)
from genagent.errors import ValidationError, VendorError, VendorRejected
from genagent.orchestrator import GenerationPlan, PollSpec
from genagent.vendors.base import GenerationRequest, Integration

log = logging.getLogger(__name__)

MIDJOURNEY_URL = "https://www.midjourney.com"
CDN_URL = "https://cdn.midjourney.com"
MAX_BATCH = 4

_QUOTES = re.compile(r"[“”‘’\"'`\\]")
_SPACES = re.compile(r"\s+")

_CHANNEL_JS = """
() => localStorage.getItem('channelId')
  || sessionStorage.getItem('channelId')
  || window.channelId
  || document.querySelector('[data-channel-id]')?.getAttribute('data-channel-id')
  || window.__MIDJOURNEY_CHANNEL_ID__
  || null
"""

IMAGE_ACCEPT = "image/avif,image/webp,image/apng,image/*,*/*;q=0.8"
VIDEO_ACCEPT = "video/mp4,video/*,*/*;q=0.8"

TASKS = ("image", "video")
VIDEO_TYPE = "vid_1.1_i2v_480"
DEFAULT_VIDEO_PROMPT = "cinematic video, smooth motion"


def sanitize_prompt(text: str) -> str:
    """Drop every quote kind, backticks and backslashes; collapse whitespace.

    Midjourney's parameter parser treats text after a quote as flags.
    """
    if not text:
        return ""
    return _SPACES.sub(" ", _QUOTES.sub("", text)).strip()


def build_full_prompt(prompt: str, options: dict | None = None) -> str:
    """Append the --flag suffix Midjourney expects."""
    opts = options or {}
    parts = [
        prompt,
        f"--chaos {opts.get('chaos', 5)}",
        f"--ar {opts.get('ar', '4:3')}",
        f"--stylize {opts.get('stylize', 150)}",
        f"--weird {opts.get('weird', 200)}",
        f"--v {opts.get('version', 7)}",
    ]
    quality = opts.get("quality", "normal")
    if quality != "normal":
        parts.append(f"--q {quality}")
    if opts.get("stop"):
        parts.append(f"--stop {opts['stop']}")
    if opts.get("tile"):
        parts.append("--tile")
    if opts.get("niji"):
        parts.append("--niji")
    return " ".join(p for p in parts if p)


def build_video_prompt(text: str, short_url: str, options: dict | None = None) -> str:
    """Text, the uploaded image's short URL, then the video flags."""
    opts = options or {}
    return (
        f"{text or DEFAULT_VIDEO_PROMPT} {short_url}"
        f" --chaos {opts.get('chaos', 5)} --ar {opts.get('ar', '4:3')}"
        f" --motion {opts.get('motion', 'high')} --video 1"
    )


def cdn_url(job_id: str, idx: int, video: bool = False) -> str:
    if video:
        return f"{CDN_URL}/video/{job_id}/{idx}.mp4"
    return f"{CDN_URL}/{job_id}/0_{idx}.png"


def extract_job(data: object) -> tuple[str | None, int]:
    """(vendor job id, batch size) from a submit-jobs response.

    The id shows up under several keys depending on the API revision; the
    batch size comes from success[0].meta.batch_size, default 4, capped at 4.
    A response with failures and no successes is a rejection.
    """
    if not isinstance(data, dict):
        return None, MAX_BATCH

    success = data.get("success") if isinstance(data.get("success"), list) else []
    failure = data.get("failure") if isinstance(data.get("failure"), list) else []
    if failure and not success:
        first = failure[0] if isinstance(failure[0], dict) else {}
        raise VendorRejected(f"Midjourney refused the job: {first.get('message') or first or 'no reason given'}")

    job_id = None
    for key in ("id", "jobId", "job_id", "taskId", "task_id"):
        if data.get(key):
            job_id = str(data[key])
            break
    batch = MAX_BATCH
    if success and isinstance(success[0], dict):
        job_id = job_id or success[0].get("job_id")
        meta = success[0].get("meta") or {}
        try:
            batch = int(meta.get("batch_size") or MAX_BATCH)
        except (TypeError, ValueError):
            batch = MAX_BATCH
    return job_id, max(1, min(batch, MAX_BATCH))


def _cache_buster() -> str:
    return f"{int(time.time() * 1000)}_{''.join(random.choices(string.ascii_lowercase + string.digits, k=8))}"

class MidjourneyIntegration(Integration):
    name = "midjourney"
    job_prefix = "midjourney"
    title = "Midjourney"
    home_url = f"{MIDJOURNEY_URL}/imagine"
    results_column = "generated_designs_url"

    def build_plan(self, request: GenerationRequest) -> GenerationPlan:
        task = str(request.options.get("task") or "image").lower()
        if task not in TASKS:
            raise ValidationError(f"task must be one of {', '.join(TASKS)}")

        if task == "video":
            if not request.image_url:
                raise ValidationError("imageUrl is required for video")
            steps = [Step("upload", self._upload_required), Step("submit", self._submit_video)]
        else:
            if not request.prompt:
                raise ValidationError("prompt is required")
            steps = []
            if request.image_url:
                steps.append(Step("upload", self._upload))
            steps.append(Step("submit", self._submit))

        return GenerationPlan(
            steps=steps,
            poll=PollSpec(
                check=Step("check", self._check),
                expected=lambda ctx: ctx["submit"]["batch_size"],
            ),
            context=request.context(),
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _upload(self, session: Session, ctx: dict) -> str | None:
        """Upload the reference image. Failure keeps the bare prompt (returns None)."""
        image_url = ctx["image_url"]
        try:
            data, content_type = await download_url(image_url)
        except VendorError as exc:
            log.warning("Reference image download failed, continuing without it: %s", exc)
            return None

        ext = PurePosixPath(urlparse(image_url).path).suffix.lower() or ".png"
        mime = "image/jpeg" if ext in (".jpg", ".jpeg") else (
            content_type if content_type.startswith("image/") else "image/png"
        )
        async with session.page() as page:
            await goto(page, self.home_url)
            try:
                result = await upload_form(
                    page,
                    f"{MIDJOURNEY_URL}/api/storage-upload-file",
                    data,
                    f"upload_{int(time.time() * 1000)}{ext}",
                    mime,
                    headers={"x-csrf-protection": "1", "accept": "application/json"},
                )
            except VendorError as exc:
                log.warning("Reference image upload failed, continuing without it: %s", exc)
                return None

        short_url = result.get("shortUrl") if isinstance(result, dict) else None
        if not short_url:
            log.warning("Upload response carried no shortUrl; continuing without the image")
            return None
        log.info("Reference image uploaded: %s", short_url)
        return short_url

    async def _upload_required(self, session: Session, ctx: dict) -> str:
        """Video jobs animate the uploaded image, so a failed upload fails the job."""
        short_url = await self._upload(session, ctx)
        if not short_url:
            raise VendorError("Could not upload the source image for the video")
        return short_url

    async def _submit(self, session: Session, ctx: dict) -> dict:
        options = ctx.get("options") or {}
        prompt = sanitize_prompt(ctx["prompt"])
        if ctx.get("upload"):
            prompt = f"{ctx['upload']} {prompt}"
        full_prompt = build_full_prompt(prompt, options)
        body = {
            "f": {
                "mode": options.get("mode", "relaxed"),
                "private": bool(options.get("private", False)),
            },
            "roomId": None,
            "metadata": {
                "isMobile": None,
                "imagePrompts": 1 if ctx.get("upload") else 0,
                "imageReferences": 0,
                "characterReferences": 0,
                "depthReferences": 0,
                "lightboxOpen": None,
            },
            "t": "imagine",
            "prompt": full_prompt,
        }
        submitted = await self._submit_job(session, body, "Midjourney submit")
        submitted["prompt"] = full_prompt
        return submitted

    async def _submit_video(self, session: Session, ctx: dict) -> dict:
        options = ctx.get("options") or {}
        text = sanitize_prompt(ctx.get("prompt") or "")
        video_prompt = build_video_prompt(text, ctx["upload"], options)
        body = {
            "f": {
                "mode": options.get("mode", "fast"),
                "private": bool(options.get("private", False)),
            },
            "roomId": None,
            "metadata": {
                "isMobile": None,
                "imagePrompts": None,
                "imageReferences": None,
                "characterReferences": None,
                "depthReferences": None,
                "lightboxOpen": None,
            },
            "t": "video",
            "videoType": options.get("videoType", VIDEO_TYPE),
            "newPrompt": video_prompt,
            "parentJob": None,
            "animateMode": "manual",
        }
        submitted = await self._submit_job(session, body, "Midjourney video submit")
        submitted["prompt"] = video_prompt
        submitted["video"] = True
        return submitted

    async def _submit_job(self, session: Session, body: dict, label: str) -> dict:
        """POST body (plus the page's channel id) to submit-jobs.

        Returns {"job_id", "batch_size"}.
        """
        async with session.page() as page:
            await goto(page, self.home_url)
            with playwright_errors("Reading the Midjourney channel id"):
                channel_id = await page.evaluate(_CHANNEL_JS)
            payload = {**body, "channelId": channel_id}
            data = await self.submit_with_retries(
                lambda: fetch_json(
                    page,
                    f"{MIDJOURNEY_URL}/api/submit-jobs",
                    method="POST",
                    headers={
                        "Accept": "application/json, text/plain, */*",
                        "Content-Type": "application/json",
                        "x-csrf-protection": "1",
                    },
                    body=payload,
                ),
                label=label,
            )

        vendor_job_id, batch_size = extract_job(data)
        if not vendor_job_id:
            raise VendorError("Vendor response carried no job id")
        log.info("%s: job %s (batch of %d)", label, vendor_job_id, batch_size)
        return {"job_id": vendor_job_id, "batch_size": batch_size}

    async def _check(self, session: Session, ctx: dict) -> list[RawArtifact]:
        """Try every file of the batch the job has not stored yet. Misses mean not rendered yet."""
        submit = ctx["submit"]
        video = submit.get("video", False)
        accepted = ctx.get("accepted", frozenset())
        artifacts: list[RawArtifact] = []

        async with session.page() as page:
            await goto(page, MIDJOURNEY_URL)
            for idx in range(submit["batch_size"]):
                url = cdn_url(submit["job_id"], idx, video)
                if url in accepted:
                    continue
                try:
                    data, content_type = await fetch_bytes(
                        page,
                        f"{url}?cb={_cache_buster()}",
                        headers={"Accept": VIDEO_ACCEPT if video else IMAGE_ACCEPT},
                    )
                except VendorError as exc:
                    log.debug("File %d of %s not ready: %s", idx, submit["job_id"], exc)
                    continue
                if not data:
                    continue
                artifacts.append(RawArtifact(
                    key=url,
                    data=data,
                    content_type=content_type or ("video/mp4" if video else "image/png"),
                    filename=f"video_{idx}.mp4" if video else f"generated_{idx}.png",
                ))
        return artifacts
