"""
ChatGPT: image generation through a custom GPT in the logged-in web app.

The converse step drives the chat UI like a user: paste the reference
image, type the prompt, press Enter. A script injected before page load
wraps window.fetch and reads the conversation stream for the
conversation id and image asset pointers. The poll check then asks the
backend whether the conversation finished and downloads each asset.
"""

from __future__ import annotations

import base64
import json
import logging
import re
from urllib.parse import quote

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from genagent.actions import RawArtifact, Step
from genagent.browser import Session, download_url, fetch_json, goto, playwright_errors
from genagent.errors import ValidationError, VendorError
from genagent.orchestrator import GenerationPlan, PollSpec
from genagent.vendors.base import GenerationRequest, Integration

log = logging.getLogger(__name__)

CHATGPT_URL = "https://chatgpt.com"
PROMPT_SELECTOR = '#prompt-textarea[contenteditable="true"]'
SIGNUP_SELECTOR = "button.btn-primary.btn-giant"

CONVERSATION_TIMEOUT_MS = 120_000
ASSET_TIMEOUT_MS = 180_000
PASTE_SETTLE_SECONDS = 12.0

_ASSET_POINTER = re.compile(r'"asset_pointer"\s*:\s*"([^"]+)"')

_STREAM_HOOK_JS = r"""
(() => {
  const origFetch = window.fetch.bind(window);
  window.__conversationId = null;
  window.__assetPointers = [];
  const remember = (pointer) => {
    if (!window.__assetPointers.includes(pointer)) window.__assetPointers.push(pointer);
  };
  window.fetch = async (...args) => {
    const response = await origFetch(...args);
    const url = typeof args[0] === 'string' ? args[0] : (args[0] && args[0].url) || '';
    if (url.includes('/backend-api/conversation')) {
      (async () => {
        try {
          const reader = response.clone().body.getReader();
          const decoder = new TextDecoder('utf-8');
          let buffer = '';
          for (;;) {
            const {value, done} = await reader.read();
            if (value) {
              buffer += decoder.decode(value, {stream: true});
              if (!window.__conversationId) {
                const m = /"conversation_id"\s*:\s*"([^"]+)"/.exec(buffer);
                if (m) window.__conversationId = m[1];
              }
              for (const m of buffer.matchAll(/"asset_pointer"\s*:\s*"([^"]+)"/g)) remember(m[1]);
              const patch = /"p"\s*:\s*"[^"]*\/asset_pointer"\s*,\s*"o"\s*:\s*"[^"]+"\s*,\s*"v"\s*:\s*"([^"]+)"/g;
              for (const m of buffer.matchAll(patch)) remember(m[1]);
            }
            if (done) break;
          }
        } catch (e) {
          console.error('stream hook', e);
        }
      })();
    }
    return response;
  };
})();
"""

_PASTE_JS = """
({data, mime}) => {
  const raw = atob(data);
  const bytes = new Uint8Array(raw.length);
  for (let i = 0; i < raw.length; i++) bytes[i] = raw.charCodeAt(i);
  const file = new File([new Blob([bytes], {type: mime})], 'pasted-image.png', {type: mime});
  const transfer = new DataTransfer();
  transfer.items.add(file);
  const editable = document.querySelector('#prompt-textarea[contenteditable="true"]');
  editable.dispatchEvent(new ClipboardEvent('paste', {
    clipboardData: transfer, bubbles: true, cancelable: true,
  }));
}
"""


def asset_pointers(payload: object) -> list[str]:
    """Every asset_pointer in a conversation payload, in order, without repeats."""
    text = payload if isinstance(payload, str) else json.dumps(payload)
    seen: list[str] = []
    for pointer in _ASSET_POINTER.findall(text):
        if pointer not in seen:
            seen.append(pointer)
    return seen


def file_id(pointer: str) -> str:
    """file-service://file-abc -> file-abc (sediment:// pointers likewise)."""
    return pointer.split("://", 1)[-1]


class ChatGPTIntegration(Integration):
    name = "chatgpt"
    job_prefix = "chatgpt"
    title = "ChatGPT"
    home_url = CHATGPT_URL
    results_column = "generated_designs_url"

    def build_plan(self, request: GenerationRequest) -> GenerationPlan:
        if not request.prompt and not request.image_url:
            raise ValidationError("prompt or imageUrl is required")
        target = request.options.get("url") or self.config.chatgpt_url
        if not str(target).startswith(CHATGPT_URL):
            raise ValidationError(f"url must point at {CHATGPT_URL}")
        context = request.context()
        context["target_url"] = target
        return GenerationPlan(
            steps=[Step("converse", self._converse)],
            poll=PollSpec(
                check=Step("check", self._check),
                expected=lambda ctx: max(1, len(ctx["converse"]["asset_pointers"])),
                interval=5.0,
                max_attempts=60,
            ),
            context=context,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _converse(self, session: Session, ctx: dict) -> dict:
        image = None
        if ctx.get("image_url"):
            data, mime = await download_url(ctx["image_url"])
            image = {"data": base64.b64encode(data).decode("ascii"), "mime": mime}

        captured: dict[str, str] = {}

        def on_request(request) -> None:
            if "authorization" not in captured and "/backend-api/" in request.url:
                token = request.headers.get("authorization")
                if token:
                    captured["authorization"] = token

        async with session.page() as page:
            page.on("request", on_request)
            with playwright_errors("ChatGPT conversation"):
                await page.add_init_script(_STREAM_HOOK_JS)
                await goto(page, ctx["target_url"])

                await page.wait_for_selector(
                    f"{PROMPT_SELECTOR}, {SIGNUP_SELECTOR}", state="visible", timeout=60_000,
                )
                if await page.locator(SIGNUP_SELECTOR).is_visible():
                    await page.click(SIGNUP_SELECTOR)
                    await page.wait_for_selector(PROMPT_SELECTOR, state="visible", timeout=60_000)
                prompt_box = page.locator(PROMPT_SELECTOR)
                await prompt_box.focus()

                if image is not None:
                    await page.evaluate(_PASTE_JS, image)
                    await self._sleep(PASTE_SETTLE_SECONDS)
                if ctx.get("prompt"):
                    await prompt_box.press_sequentially(ctx["prompt"], delay=5)
                    await self._sleep(3.0)
                await page.keyboard.press("Enter")

                try:
                    handle = await page.wait_for_function(
                        "() => window.__conversationId", timeout=CONVERSATION_TIMEOUT_MS,
                    )
                except PlaywrightTimeoutError:
                    raise VendorError("Vendor response carried no conversation id") from None
                conversation_id = await handle.json_value()

                pointers: list[str] = []
                if image is not None:
                    try:
                        handle = await page.wait_for_function(
                            "() => window.__assetPointers.length > 0 && window.__assetPointers",
                            timeout=ASSET_TIMEOUT_MS,
                        )
                        pointers = list(await handle.json_value())
                    except PlaywrightTimeoutError:
                        log.info("No asset pointers streamed yet for %s; the poll will look", conversation_id)

        log.info("ChatGPT conversation %s started (%d asset(s) seen)", conversation_id, len(pointers))
        return {
            "conversation_id": conversation_id,
            "asset_pointers": pointers,
            "authorization": captured.get("authorization"),
        }

    async def _check(self, session: Session, ctx: dict) -> list[RawArtifact]:
        convo = ctx["converse"]
        conversation_id = convo["conversation_id"]
        accepted = ctx.get("accepted", frozenset())
        headers = {"Accept": "*/*", "Content-Type": "application/json"}
        if convo.get("authorization"):
            headers["Authorization"] = convo["authorization"]

        artifacts: list[RawArtifact] = []
        async with session.page() as page:
            await goto(page, CHATGPT_URL)

            status = await fetch_json(
                page,
                f"{CHATGPT_URL}/backend-api/conversation/{conversation_id}/async-status",
                method="POST",
                headers=headers,
                body={},
            )
            if not isinstance(status, dict) or status.get("status") != "OK":
                return []

            pointers = list(convo["asset_pointers"])
            conversation = await fetch_json(
                page, f"{CHATGPT_URL}/backend-api/conversation/{conversation_id}", headers=headers,
            )
            for pointer in asset_pointers(conversation):
                if pointer not in pointers:
                    pointers.append(pointer)

            for pointer in pointers:
                if pointer in accepted:
                    continue
                info = await fetch_json(
                    page,
                    f"{CHATGPT_URL}/backend-api/files/download/{quote(file_id(pointer), safe='')}"
                    f"?conversation_id={quote(conversation_id, safe='')}&inline=false",
                    headers=headers,
                )
                url = info.get("download_url") if isinstance(info, dict) else None
                if not url:
                    log.debug("Asset %s has no download URL yet", pointer)
                    continue
                data, content_type = await download_url(url)
                artifacts.append(RawArtifact(
                    key=pointer,
                    data=data,
                    content_type=content_type,
                    filename=f"{file_id(pointer)}.png",
                ))
        return artifacts
