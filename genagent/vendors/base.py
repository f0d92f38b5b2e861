"""Common ground for the vendor integrations."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from genagent.actions import with_retries
from genagent.browser import Session, goto
from genagent.config import Config
from genagent.errors import ValidationError
from genagent.orchestrator import GenerationPlan

log = logging.getLogger(__name__)


def _text(data: dict, *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            raise ValidationError(f"{key} must be a string")
        if value.strip():
            return value.strip()
    return ""


@dataclass(frozen=True)
class GenerationRequest:
    """Caller input for POST /generate, normalized across integrations.

    The older per-service field names (description, url_image, idea_id)
    are accepted as aliases.
    """

    prompt: str = ""
    image_url: str = ""
    options: dict = field(default_factory=dict)
    design_id: str = ""
    user_id: str = ""

    @classmethod
    def from_payload(cls, data: Any) -> GenerationRequest:
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        options = data.get("options") or {}
        if not isinstance(options, dict):
            raise ValidationError("options must be an object")
        image_url = _text(data, "imageUrl", "image_url", "url_image")
        if image_url and not image_url.startswith(("http://", "https://")):
            raise ValidationError("imageUrl must be an http(s) URL")
        design_id = data.get("designId", data.get("design_id", data.get("idea_id")))
        user_id = data.get("userId", data.get("user_id"))
        return cls(
            prompt=_text(data, "prompt", "description"),
            image_url=image_url,
            options=dict(options),
            design_id=str(design_id) if design_id else "",
            user_id=str(user_id) if user_id else "",
        )

    def context(self) -> dict:
        """Seed for the per-job context handed to every vendor step."""
        return {
            "prompt": self.prompt,
            "image_url": self.image_url,
            "options": dict(self.options),
            "user_id": self.user_id,
        }

    def meta(self) -> dict:
        """What gets recorded on the job (and mirrored to ledgers)."""
        meta: dict = {"prompt": self.prompt}
        if self.image_url:
            meta["image_url"] = self.image_url
        if self.design_id:
            meta["design_id"] = self.design_id
        if self.user_id:
            meta["user_id"] = self.user_id
        if self.options:
            meta["options"] = dict(self.options)
        return meta


class Integration:
    """One vendor: turns a GenerationRequest into a GenerationPlan.

    Subclasses set the class attributes and implement build_plan(). Steps
    are plain coroutine methods wrapped in actions.Step.
    """

    name: str = ""
    job_prefix: str = ""
    title: str = ""
    home_url: str = ""
    # Column on the caller's design row that receives result URLs.
    results_column: str = "generated_designs_url"

    def __init__(
        self,
        config: Config,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self._sleep = sleep

    def build_plan(self, request: GenerationRequest) -> GenerationPlan:
        raise NotImplementedError

    async def warmup(self, session: Session) -> None:
        """Open the vendor's home page once so cookies and caches are primed."""
        if not self.home_url:
            return
        async with session.page() as page:
            await goto(page, self.home_url)
        log.info("%s warm-up done", self.title or self.name)

    async def submit_with_retries(self, fn: Callable[[], Awaitable[Any]], label: str) -> Any:
        return await with_retries(
            fn,
            attempts=self.config.submit_max_retries,
            backoff_seconds=self.config.submit_backoff_seconds,
            sleep=self._sleep,
            label=label,
        )
