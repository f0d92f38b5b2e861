"""
Ideogram: image remix (variations of a reference image), upscale and
background removal.

options["task"] picks the flow:

  remix (default)   upload the reference image, caption it with Ideogram's
                    describer (unless the caller supplies the prompt and
                    asks for MANUAL prompting), then request variations.
  upscale           super-resolution of an earlier result, addressed by
                    options request_id and response_id.
  removebackground  cut-out of an existing asset (options asset_id); the
                    vendor answers synchronously, so there is no poll phase.

Remix and upscale both end in a sample request; the poll check reads that
request's metadata and downloads every response image it lists.

Calls carry a bearer token fetched from IDEOGRAM_TOKEN_URL (a page that
renders {"access_token", "expires_in"}), cached until shortly before it
expires. Without a token URL the browser's own cookies are used.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from urllib.parse import quote

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

IDEOGRAM_URL = "https://ideogram.ai"
EXPLORE_URL = f"{IDEOGRAM_URL}/t/explore"

# Seconds shaved off the advertised token lifetime.
TOKEN_MARGIN = 5.0

# Ideogram renders slower than the service-wide default budget allows.
POLL_ATTEMPTS = 40

TASKS = ("remix", "upscale", "removebackground")

DEFAULTS = {
    "imageWeight": 70,
    "magicPrompt": "AUTO",
    "style": "AUTO",
    "promptSource": "AUTO",
    "resolution": {"width": 800, "height": 1280},
    "num_images": 1,
}

UPSCALE_DEFAULTS = {
    "model_version": "V_0_3",
    "use_autoprompt_option": "OFF",
    "sampling_speed": -2,
    "parent_weight": 100,
    "upscale_details_weight": None,
    "resolution": {"width": 896, "height": 1024},
    "num_images": 1,
    "private": True,
}


def _merge(defaults: dict, options: dict | None) -> dict:
    return {**defaults, **{k: v for k, v in (options or {}).items() if v is not None}}


def remix_options(options: dict) -> dict:
    """Caller options over DEFAULTS, with numbers coerced."""
    merged = _merge(DEFAULTS, options)
    try:
        merged["imageWeight"] = int(merged["imageWeight"])
        merged["num_images"] = max(1, int(merged["num_images"]))
    except (TypeError, ValueError):
        raise ValidationError("imageWeight and num_images must be integers") from None
    merged["promptSource"] = str(merged["promptSource"]).upper()
    if merged["promptSource"] not in ("AUTO", "MANUAL"):
        raise ValidationError("promptSource must be AUTO or MANUAL")
    return merged


def upscale_options(options: dict) -> dict:
    """Caller options over UPSCALE_DEFAULTS. request_id and response_id are required."""
    merged = _merge(UPSCALE_DEFAULTS, options)
    for key in ("request_id", "response_id"):
        if not merged.get(key):
            raise ValidationError(f"options.{key} is required for upscale")
        merged[key] = str(merged[key])
    try:
        merged["parent_weight"] = int(merged["parent_weight"])
        merged["num_images"] = max(1, int(merged["num_images"]))
    except (TypeError, ValueError):
        raise ValidationError("parent_weight and num_images must be integers") from None
    details = merged["upscale_details_weight"]
    if details is not None and (isinstance(details, bool) or not isinstance(details, (int, float))):
        raise ValidationError("upscale_details_weight must be a number")
    return merged


def response_ids(metadata: object) -> list[str]:
    """response_id of every finished image in a retrieve_metadata payload."""
    if not isinstance(metadata, dict):
        return []
    ids = []
    for item in metadata.get("responses") or []:
        if isinstance(item, dict) and item.get("response_id"):
            ids.append(str(item["response_id"]))
    return ids


def cutout_source(result: object) -> tuple[str, str] | None:
    """Where a removeImageBackground answer puts the new image.

    ("url", <http url>) when it links the image, ("response", <id>) when
    it names a downloadable response, None when it has neither. The
    payload is looked at top level first, then under "data".
    """
    if not isinstance(result, dict):
        return None
    candidates = [result]
    if isinstance(result.get("data"), dict):
        candidates.append(result["data"])
    for candidate in candidates:
        for key in ("url", "image_url", "download_url"):
            value = candidate.get(key)
            if isinstance(value, str) and value.startswith(("http://", "https://")):
                return "url", value
        for key in ("response_id", "asset_id"):
            if candidate.get(key):
                return "response", str(candidate[key])
    return None


def _download_url(response_id: str) -> str:
    return f"{IDEOGRAM_URL}/api/download/response/{quote(response_id, safe='')}/image?quality=PNG"


class IdeogramIntegration(Integration):
    name = "ideogram"
    job_prefix = "ideogram"
    title = "Ideogram"
    home_url = EXPLORE_URL
    results_column = "remixed_designs_url"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._token: str | None = None
        self._token_expiry = 0.0
        self._token_lock = asyncio.Lock()

    def build_plan(self, request: GenerationRequest) -> GenerationPlan:
        task = str(request.options.get("task") or "remix").lower()
        if task not in TASKS:
            raise ValidationError(f"task must be one of {', '.join(TASKS)}")
        if task == "upscale":
            return self._upscale_plan(request)
        if task == "removebackground":
            return self._cutout_plan(request)

        if not request.image_url:
            raise ValidationError("imageUrl is required")
        options = remix_options(request.options)
        if options["promptSource"] == "MANUAL" and not request.prompt:
            raise ValidationError("prompt is required when promptSource is MANUAL")

        steps = [Step("upload", self._upload)]
        if options["promptSource"] == "AUTO":
            steps.append(Step("caption", self._caption))
        steps.append(Step("generate", self._generate))

        context = request.context()
        context["options"] = options
        return GenerationPlan(steps=steps, poll=self._poll(options["num_images"]), context=context)

    def _upscale_plan(self, request: GenerationRequest) -> GenerationPlan:
        if not request.prompt:
            raise ValidationError("prompt is required for upscale")
        options = upscale_options(request.options)
        context = request.context()
        context["options"] = options
        return GenerationPlan(
            steps=[Step("upscale", self._upscale)],
            poll=self._poll(options["num_images"]),
            context=context,
        )

    def _cutout_plan(self, request: GenerationRequest) -> GenerationPlan:
        options = dict(request.options)
        asset_id = options.get("asset_id") or options.get("response_id")
        if not asset_id:
            raise ValidationError("options.asset_id is required for removebackground")
        options["asset_id"] = str(asset_id)
        options["asset_type"] = str(options.get("asset_type") or "RESPONSE").upper()
        context = request.context()
        context["options"] = options
        return GenerationPlan(steps=[Step("removebackground", self._remove_background)], context=context)

    def _poll(self, expected: int) -> PollSpec:
        return PollSpec(
            check=Step("check", self._check),
            expected=expected,
            interval=self.config.poll_interval_seconds,
            max_attempts=POLL_ATTEMPTS,
        )

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    async def _auth_headers(self, session: Session) -> dict[str, str]:
        token = await self._access_token(session)
        return {"authorization": f"Bearer {token}"} if token else {}

    async def _access_token(self, session: Session) -> str | None:
        if not self.config.ideogram_token_url:
            return None
        async with self._token_lock:
            if self._token and time.time() < self._token_expiry:
                return self._token
            async with session.page() as page:
                await goto(page, self.config.ideogram_token_url)
                with playwright_errors("Reading the Ideogram token page"):
                    raw = await page.evaluate(
                        "() => (document.querySelector('pre') || document.body).innerText"
                    )
            try:
                data = json.loads(raw)
                token = data["access_token"]
            except (ValueError, KeyError, TypeError) as exc:
                raise VendorError(f"Token endpoint returned no access_token: {exc}") from exc
            ttl = float(data.get("expires_in") or 300)
            self._token = token
            self._token_expiry = time.time() + ttl - TOKEN_MARGIN
            log.info("Fetched Ideogram access token (valid %.0fs)", ttl)
            return token

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _upload(self, session: Session, ctx: dict) -> str:
        data, _content_type = await download_url(ctx["image_url"])
        headers = await self._auth_headers(session)
        async with session.page() as page:
            await goto(page, EXPLORE_URL)
            result = await upload_form(
                page, f"{IDEOGRAM_URL}/api/uploads/upload", data, "upload.png", "image/png", headers,
            )
        if not isinstance(result, dict) or not result.get("success") or not result.get("id"):
            raise VendorError("Upload failed")
        log.info("Reference image uploaded as %s", result["id"])
        return str(result["id"])

    async def _caption(self, session: Session, ctx: dict) -> str:
        headers = await self._auth_headers(session)
        headers["content-type"] = "application/json"
        await self._sleep(1.5)
        async with session.page() as page:
            await goto(page, EXPLORE_URL)
            result = await fetch_json(
                page,
                f"{IDEOGRAM_URL}/api/describe",
                method="POST",
                headers=headers,
                body={"image_id": ctx["upload"], "captioner_model_version": "V_3_0"},
            )
        try:
            caption = result["data"][0]["caption"]
        except (KeyError, IndexError, TypeError):
            caption = ""
        if not caption:
            log.warning("No caption returned; falling back to the caller's prompt")
        return caption

    async def _generate(self, session: Session, ctx: dict) -> str:
        options = ctx["options"]
        prompt = ctx.get("caption") or ctx.get("prompt") or ""
        if not prompt:
            raise VendorError("No prompt available for generation (empty caption)")

        body = {
            "prompt": prompt,
            "private": True,
            "model_version": "V_3_0",
            "use_autoprompt_option": options["magicPrompt"],
            "sampling_speed": -2,
            "parent": {
                "image_id": ctx["upload"],
                "weight": options["imageWeight"],
                "type": "VARIATION",
            },
            "style_reference_parents": [],
            "style_expert": options["style"],
            "resolution": options["resolution"],
            "use_random_style_codes": False,
            "num_images": options["num_images"],
        }
        if ctx.get("user_id"):
            body["user_id"] = ctx["user_id"]
        return await self._sample(session, body, "Ideogram generate")

    async def _upscale(self, session: Session, ctx: dict) -> str:
        options = ctx["options"]
        body = {
            "prompt": ctx["prompt"],
            "private": bool(options["private"]),
            "model_version": options["model_version"],
            "use_autoprompt_option": options["use_autoprompt_option"],
            "sampling_speed": options["sampling_speed"],
            "parent": {
                "request_id": options["request_id"],
                "response_id": options["response_id"],
                "weight": options["parent_weight"],
                "type": "SUPER_RES",
            },
            "style_reference_parents": [],
            "character_reference_parents": [],
            "resolution": options["resolution"],
            "use_random_style_codes": False,
            "num_images": options["num_images"],
        }
        if options["upscale_details_weight"] is not None:
            body["upscale_details_weight"] = options["upscale_details_weight"]
        if ctx.get("user_id"):
            body["user_id"] = ctx["user_id"]
        return await self._sample(session, body, "Ideogram upscale")

    async def _sample(self, session: Session, body: dict, label: str) -> str:
        """POST /api/images/sample and return the request id to poll."""
        headers = await self._auth_headers(session)
        headers["content-type"] = "application/json"
        async with session.page() as page:
            await goto(page, EXPLORE_URL)
            result = await self.submit_with_retries(
                lambda: fetch_json(
                    page, f"{IDEOGRAM_URL}/api/images/sample", method="POST", headers=headers, body=body,
                ),
                label=label,
            )

        if isinstance(result, dict) and result.get("error") and not result.get("request_id"):
            raise VendorRejected(f"Ideogram refused the request: {result['error']}")
        request_id = result.get("request_id") if isinstance(result, dict) else None
        if not request_id:
            raise VendorError("No request ID received")
        log.info("%s: request %s accepted", label, request_id)
        return str(request_id)

    async def _remove_background(self, session: Session, ctx: dict) -> list[RawArtifact]:
        options = ctx["options"]
        asset_id = options["asset_id"]
        headers = await self._auth_headers(session)
        async with session.page() as page:
            await goto(page, EXPLORE_URL)
            result = await self.submit_with_retries(
                lambda: fetch_json(
                    page,
                    f"{IDEOGRAM_URL}/api/images/masks/removeImageBackground",
                    method="POST",
                    headers={**headers, "content-type": "application/json"},
                    body={"asset_type": options["asset_type"], "asset_id": asset_id},
                ),
                label="Ideogram remove background",
            )
            if isinstance(result, dict) and result.get("error"):
                raise VendorRejected(f"Ideogram refused the cut-out: {result['error']}")
            source = cutout_source(result)
            if source is None:
                raise VendorError("Remove-background response carried no image")
            kind, ref = source
            if kind == "url":
                data, content_type = await download_url(ref)
            else:
                data, content_type = await fetch_bytes(page, _download_url(ref), headers=headers)

        log.info("Background removed from %s", asset_id)
        return [RawArtifact(
            key=f"cutout:{ref}",
            data=data,
            content_type=content_type or "image/png",
            filename=f"ideogram-cutout-{asset_id}.png",
        )]

    async def _check(self, session: Session, ctx: dict) -> list[RawArtifact]:
        request_id = ctx["upscale"] if "upscale" in ctx else ctx["generate"]
        accepted = ctx.get("accepted", frozenset())
        headers = await self._auth_headers(session)
        artifacts: list[RawArtifact] = []
        async with session.page() as page:
            await goto(page, EXPLORE_URL)
            metadata = await fetch_json(
                page,
                f"{IDEOGRAM_URL}/api/images/retrieve_metadata_request_id/{quote(request_id, safe='')}",
                headers={**headers, "accept": "*/*"},
            )
            for response_id in response_ids(metadata):
                if response_id in accepted:
                    continue
                data, content_type = await fetch_bytes(page, _download_url(response_id), headers=headers)
                artifacts.append(RawArtifact(
                    key=response_id,
                    data=data,
                    content_type=content_type or "image/png",
                    filename=f"ideogram-{'upscale' if 'upscale' in ctx else 'remix'}-{response_id}.png",
                ))
        return artifacts
