"""Vendor action contract and the submit-retry helper."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from genagent.browser import Session
from genagent.errors import VendorError, VendorRejected

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawArtifact:
    """Downloaded bytes that still need a durable home.

    `key` is the dedupe identity (e.g. the vendor URL the bytes came from).
    """

    key: str
    data: bytes
    content_type: str = "image/png"
    filename: str = "image.png"


class VendorAction(Protocol):
    """One opaque step against a vendor site.

    `context` is the per-job dict holding the request fields and the result
    of every earlier step under that step's name.
    """

    name: str

    async def perform(self, session: Session, context: dict) -> Any: ...


@dataclass
class Step:
    """Adapter turning a plain coroutine function into a VendorAction."""

    name: str
    fn: Callable[[Session, dict], Awaitable[Any]]

    async def perform(self, session: Session, context: dict) -> Any:
        return await self.fn(session, context)


async def with_retries(
    fn: Callable[[], Awaitable[Any]],
    attempts: int = 3,
    backoff_seconds: float = 2.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "vendor call",
) -> Any:
    """Call fn until it succeeds, retrying VendorError with linear backoff.

    Waits attempt * backoff_seconds after each failure. The last error is
    re-raised once attempts run out. VendorRejected is never retried.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except VendorRejected:
            raise
        except VendorError as exc:
            if attempt >= attempts:
                log.error("%s failed after %d attempt(s): %s", label, attempt, exc)
                raise
            delay = attempt * backoff_seconds
            log.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                label, attempt, attempts, exc, delay,
            )
            await sleep(delay)
