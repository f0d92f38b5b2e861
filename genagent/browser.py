"""
Browser lifecycle and in-page network helpers.

Launch Chromium through Playwright, wrap it in a Session that knows when
the browser has gone away, and run vendor API calls from inside a page so
the site's own cookies and auth apply.

Every task works on its own page (Session.page()), never on a page shared
with another task.
"""

from __future__ import annotations

import base64
import json
import logging
import time
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterator

import httpx
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from genagent.errors import SessionUnavailable, VendorError

log = logging.getLogger(__name__)

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-blink-features=AutomationControlled",
    "--disable-gpu",
]

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/138.0.0.0 Safari/537.36"
)

VIEWPORT = {"width": 1280, "height": 900}


@dataclass(eq=False)
class Session:
    """One live browser connection. Never reused once disconnected."""

    context: Any  # playwright BrowserContext
    browser: Any = None  # None for persistent contexts
    playwright: Any = None
    created_at: float = field(default_factory=time.time)
    connected: bool = True
    _observers: list[Callable[["Session"], None]] = field(default_factory=list, repr=False)

    def on_disconnect(self, callback: Callable[["Session"], None]) -> None:
        """Register a callback fired once when the session disconnects."""
        self._observers.append(callback)

    def mark_disconnected(self) -> None:
        """Flip the connectivity flag and notify observers (idempotent)."""
        if not self.connected:
            return
        self.connected = False
        log.warning("Browser session disconnected (created %.0fs ago)", time.time() - self.created_at)
        for callback in list(self._observers):
            try:
                callback(self)
            except Exception:
                log.exception("Disconnect observer failed")

    async def open_page(self) -> Any:
        """Open a page the caller owns and must close (see page() for the scoped form)."""
        if not self.connected:
            raise SessionUnavailable("Browser session is disconnected")
        try:
            return await self.context.new_page()
        except PlaywrightError as exc:
            self.mark_disconnected()
            raise SessionUnavailable(f"Could not open a page: {exc}") from exc

    @asynccontextmanager
    async def page(self) -> AsyncIterator[Any]:
        """Open a fresh page for one task and always close it afterwards."""
        page = await self.open_page()
        try:
            yield page
        finally:
            await close_page(page)

    async def close(self) -> None:
        """Close context, browser and the Playwright driver."""
        self.mark_disconnected()
        closers = [self.context.close]
        if self.browser is not None:
            closers.append(self.browser.close)
        if self.playwright is not None:
            closers.append(self.playwright.stop)
        for closer in closers:
            try:
                await closer()
            except Exception as exc:
                log.warning("Browser teardown step failed: %s", exc)


class PlaywrightLauncher:
    """Creates a new Session each time it is awaited.

    With a profile_dir the browser keeps its cookies between launches
    (logged-in vendor accounts); without one every launch is a clean
    ephemeral context.
    """

    def __init__(
        self,
        headless: bool = True,
        executable: str = "",
        profile_dir: str = "",
        navigation_timeout: float = 60.0,
    ) -> None:
        self._headless = headless
        self._executable = executable
        self._profile_dir = profile_dir
        self._navigation_timeout = navigation_timeout

    async def __call__(self) -> Session:
        pw = await async_playwright().start()
        launch_kwargs: dict = {"headless": self._headless, "args": CHROMIUM_ARGS}
        if self._executable:
            launch_kwargs["executable_path"] = self._executable

        try:
            if self._profile_dir:
                Path(self._profile_dir).mkdir(parents=True, exist_ok=True)
                context = await pw.chromium.launch_persistent_context(
                    self._profile_dir,
                    user_agent=USER_AGENT,
                    viewport=VIEWPORT,
                    accept_downloads=True,
                    **launch_kwargs,
                )
                browser = None
            else:
                browser = await pw.chromium.launch(**launch_kwargs)
                context = await browser.new_context(
                    user_agent=USER_AGENT,
                    viewport=VIEWPORT,
                    accept_downloads=True,
                )
        except Exception:
            await pw.stop()
            raise

        context.set_default_navigation_timeout(self._navigation_timeout * 1000)
        session = Session(context=context, browser=browser, playwright=pw)
        context.on("close", lambda _ctx: session.mark_disconnected())
        if browser is not None:
            browser.on("disconnected", lambda _b: session.mark_disconnected())

        log.info(
            "Launched Chromium (headless=%s, profile=%s)",
            self._headless, self._profile_dir or "(ephemeral)",
        )
        return session


# ---------------------------------------------------------------------------
# Page helpers
# ---------------------------------------------------------------------------

_CLOSED_MARKERS = ("has been closed", "Target closed", "Browser closed", "Connection closed")


async def close_page(page: Any) -> None:
    try:
        if not page.is_closed():
            await page.close()
    except PlaywrightError as exc:
        log.debug("Page close failed: %s", exc)


@contextmanager
def playwright_errors(what: str) -> Iterator[None]:
    """Translate Playwright failures into the job error taxonomy.

    A closed page/browser becomes SessionUnavailable (the orchestrator
    retries on a fresh session); anything else is a VendorError.
    """
    try:
        yield
    except PlaywrightError as exc:
        message = str(exc)
        if any(marker in message for marker in _CLOSED_MARKERS):
            raise SessionUnavailable(f"{what}: browser went away") from exc
        raise VendorError(f"{what} failed: {message.splitlines()[0] if message else exc!r}") from exc


async def goto(page: Any, url: str, wait_until: str = "domcontentloaded") -> None:
    with playwright_errors(f"Opening {url}"):
        await page.goto(url, wait_until=wait_until)


# ---------------------------------------------------------------------------
# In-page fetch helpers
# ---------------------------------------------------------------------------

_FETCH_TEXT_JS = """
async ({url, method, headers, body}) => {
  const resp = await fetch(url, {
    method,
    headers,
    body: body === null ? undefined : body,
    credentials: 'include',
  });
  const text = await resp.text();
  return {ok: resp.ok, status: resp.status, text};
}
"""

_FETCH_BYTES_JS = """
async ({url, headers}) => {
  const resp = await fetch(url, {headers, credentials: 'include'});
  if (!resp.ok) return {ok: false, status: resp.status};
  const bytes = new Uint8Array(await resp.arrayBuffer());
  let binary = '';
  for (let i = 0; i < bytes.length; i += 0x8000) {
    binary += String.fromCharCode.apply(null, bytes.subarray(i, i + 0x8000));
  }
  return {
    ok: true,
    status: resp.status,
    contentType: resp.headers.get('content-type') || 'application/octet-stream',
    data: btoa(binary),
  };
}
"""

_UPLOAD_JS = """
async ({url, data, filename, mime, headers}) => {
  const raw = atob(data);
  const bytes = new Uint8Array(raw.length);
  for (let i = 0; i < raw.length; i++) bytes[i] = raw.charCodeAt(i);
  const form = new FormData();
  form.append('file', new Blob([bytes], {type: mime}), filename);
  const resp = await fetch(url, {method: 'POST', headers, body: form, credentials: 'include'});
  const text = await resp.text();
  return {ok: resp.ok, status: resp.status, text};
}
"""


def _parse_json(result: dict, url: str) -> Any:
    if not result.get("ok"):
        status = result.get("status")
        raise VendorError(f"HTTP {status} from {url}", status=status)
    try:
        return json.loads(result.get("text") or "null")
    except ValueError as exc:
        raise VendorError(f"Malformed JSON from {url}: {exc}", status=result.get("status")) from exc


async def fetch_json(
    page: Any,
    url: str,
    method: str = "GET",
    headers: dict | None = None,
    body: Any = None,
) -> Any:
    """Run fetch() inside the page and return the parsed JSON body.

    dict/list bodies are JSON-encoded. Non-2xx raises VendorError.
    """
    if body is not None and not isinstance(body, str):
        body = json.dumps(body)
    with playwright_errors(f"In-page fetch of {url}"):
        result = await page.evaluate(
            _FETCH_TEXT_JS,
            {"url": url, "method": method, "headers": headers or {}, "body": body},
        )
    return _parse_json(result, url)


async def fetch_bytes(page: Any, url: str, headers: dict | None = None) -> tuple[bytes, str]:
    """Download a resource through the page. Returns (data, content_type)."""
    with playwright_errors(f"In-page download of {url}"):
        result = await page.evaluate(_FETCH_BYTES_JS, {"url": url, "headers": headers or {}})
    if not result.get("ok"):
        status = result.get("status")
        raise VendorError(f"HTTP {status} downloading {url}", status=status)
    return base64.b64decode(result["data"]), result.get("contentType") or "application/octet-stream"


async def upload_form(
    page: Any,
    url: str,
    data: bytes,
    filename: str,
    mime: str,
    headers: dict | None = None,
) -> Any:
    """POST a multipart "file" field from inside the page. Returns parsed JSON."""
    payload = {
        "url": url,
        "data": base64.b64encode(data).decode("ascii"),
        "filename": filename,
        "mime": mime,
        "headers": headers or {},
    }
    with playwright_errors(f"In-page upload to {url}"):
        result = await page.evaluate(_UPLOAD_JS, payload)
    return _parse_json(result, url)


async def download_url(url: str, timeout: float = 60.0) -> tuple[bytes, str]:
    """Fetch a caller-supplied URL outside the browser. Returns (data, content_type)."""
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        try:
            resp = await client.get(url)
        except httpx.HTTPError as exc:
            raise VendorError(f"Could not download {url}: {exc}") from exc
    if resp.status_code != 200:
        raise VendorError(f"HTTP {resp.status_code} downloading {url}", status=resp.status_code)
    return resp.content, resp.headers.get("content-type", "image/png").split(";")[0]
