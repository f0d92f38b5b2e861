"""
Veo: prompt-to-video through the Gemini app.

Unlike the other integrations the whole job runs on one page: the open
step signs in if needed and selects the video tool, submit_prompt sends the
prompt, and each poll attempt looks at that same page for a rendered
<video>. The page is closed by the plan's cleanup hook.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from genagent.actions import RawArtifact, Step
from genagent.browser import Session, close_page, fetch_bytes, goto, playwright_errors
from genagent.errors import ValidationError, VendorError, VendorRejected
from genagent.orchestrator import GenerationPlan, PollSpec
from genagent.vendors.base import GenerationRequest, Integration

log = logging.getLogger(__name__)

INPUT_SELECTOR = '[role="textbox"], textarea, input[type="text"]'
DOWNLOAD_SELECTOR = (
    'button[aria-label*="Download" i], button[aria-label*="Tải video xuống"], button.download-button'
)

TOOLS_LABEL = re.compile(r"Tools|Công cụ", re.IGNORECASE)
VIDEO_LABEL = re.compile(r"Veo|Video", re.IGNORECASE)

POLL_INTERVAL = 10.0
POLL_ATTEMPTS = 60

_VIDEO_SRC_JS = """
() => {
  const video = document.querySelector('video');
  return video ? (video.currentSrc || video.src || '') : null;
}
"""


class VeoIntegration(Integration):
    name = "veo"
    job_prefix = "veo3"
    title = "Veo"
    results_column = "generated_videos_url"

    @property
    def home_url(self) -> str:
        return self.config.gemini_url

    def build_plan(self, request: GenerationRequest) -> GenerationPlan:
        if not request.prompt:
            raise ValidationError("prompt is required")
        return GenerationPlan(
            steps=[Step("open", self._open), Step("submit_prompt", self._submit_prompt)],
            poll=PollSpec(
                check=Step("check", self._check),
                expected=1,
                interval=POLL_INTERVAL,
                max_attempts=POLL_ATTEMPTS,
            ),
            context=request.context(),
            cleanup=self._cleanup,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _open(self, session: Session, ctx: dict) -> str:
        # A retry on a fresh session starts over on a new page.
        if ctx.get("page") is not None:
            await close_page(ctx.pop("page"))
        page = await session.open_page()
        ctx["page"] = page

        await goto(page, self.config.gemini_url)
        if "accounts.google.com" in page.url:
            await self._sign_in(page)
            await goto(page, self.config.gemini_url)

        with playwright_errors("Selecting the Veo tool"):
            try:
                await page.get_by_role("button", name=TOOLS_LABEL).first.click(timeout=30_000)
                await page.get_by_role("button", name=VIDEO_LABEL).first.click(timeout=30_000)
                await page.wait_for_selector(INPUT_SELECTOR, state="visible", timeout=60_000)
            except PlaywrightTimeoutError:
                raise VendorError("Veo video tool not found on the Gemini page") from None
        log.info("Gemini ready with the Veo tool selected")
        return page.url

    async def _sign_in(self, page) -> None:
        if not (self.config.google_email and self.config.google_password):
            raise VendorRejected("Gemini requires sign-in but GOOGLE_EMAIL/GOOGLE_PASSWORD are not set")
        log.info("Signing in to Google as %s", self.config.google_email)
        with playwright_errors("Google sign-in"):
            try:
                await page.fill('input[type="email"]', self.config.google_email, timeout=60_000)
                await page.keyboard.press("Enter")
                await page.wait_for_selector('input[type="password"]', state="visible", timeout=60_000)
                await page.fill('input[type="password"]', self.config.google_password)
                await page.keyboard.press("Enter")
                await page.wait_for_url(re.compile(r"^https://gemini\.google\.com/"), timeout=60_000)
            except PlaywrightTimeoutError:
                raise VendorError("Google sign-in did not complete") from None

    async def _submit_prompt(self, session: Session, ctx: dict) -> str:
        page = ctx.get("page")
        if page is None or page.is_closed():
            raise VendorError("Gemini page is not open")
        with playwright_errors("Submitting the Veo prompt"):
            box = page.locator(INPUT_SELECTOR).first
            await box.click()
            await page.keyboard.press("ControlOrMeta+A")
            await page.keyboard.press("Backspace")
            await box.press_sequentially(ctx["prompt"], delay=40)
            await page.keyboard.press("Enter")
        log.info("Veo prompt submitted")
        return ctx["prompt"]

    async def _check(self, session: Session, ctx: dict) -> list[RawArtifact]:
        page = ctx.get("page")
        if page is None or page.is_closed():
            raise VendorRejected("Gemini page closed before the video rendered")

        with playwright_errors("Looking for the Veo video"):
            src = await page.evaluate(_VIDEO_SRC_JS)
        if src is None:
            return []

        if src and not src.startswith("blob:"):
            try:
                data, content_type = await fetch_bytes(page, src)
                return [RawArtifact(key=src, data=data, content_type=content_type, filename="veo.mp4")]
            except VendorError as exc:
                log.info("Direct video fetch failed (%s); using the download button", exc)

        data = await self._download_via_button(page)
        return [RawArtifact(key=src or f"{ctx['job_id']}-video", data=data, content_type="video/mp4", filename="veo.mp4")]

    async def _download_via_button(self, page) -> bytes:
        with playwright_errors("Downloading the Veo video"):
            try:
                async with page.expect_download(timeout=120_000) as info:
                    await page.locator(DOWNLOAD_SELECTOR).first.click(timeout=30_000)
                download = await info.value
                path = await download.path()
            except PlaywrightTimeoutError:
                raise VendorError("Video download did not start") from None
        return Path(path).read_bytes()

    async def _cleanup(self, ctx: dict) -> None:
        page = ctx.pop("page", None)
        if page is not None:
            await close_page(page)
