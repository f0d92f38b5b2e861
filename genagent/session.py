"""Shared browser session ownership.

One SessionManager per integration holds at most one live Session. Callers
ask for a working session with acquire(); a session that reports itself
disconnected is dropped and a fresh one is launched on the next call.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from genagent.browser import Session
from genagent.errors import SessionUnavailable

log = logging.getLogger(__name__)

Launcher = Callable[[], Awaitable[Session]]


class SessionManager:
    """Lazily (re)creates the integration's single browser session."""

    def __init__(self, launcher: Launcher) -> None:
        self._launcher = launcher
        self._current: Session | None = None
        # Single-flight: concurrent callers that all see "no session"
        # wait for one launch instead of starting a browser each.
        self._create_lock = asyncio.Lock()
        self._launch_count = 0
        self._last_error: str | None = None

    @property
    def current(self) -> Session | None:
        return self._current

    @property
    def last_error(self) -> str | None:
        return self._last_error

    async def acquire(self) -> Session:
        """Return a connected Session, launching one if needed.

        Raises SessionUnavailable if the launcher fails. The cache stays
        empty so the next call starts from scratch.
        """
        session = self._current
        if session is not None and session.connected:
            return session

        async with self._create_lock:
            session = self._current
            if session is not None and session.connected:
                return session
            self._current = None

            log.info("Launching browser session (launch #%d)", self._launch_count + 1)
            try:
                session = await self._launcher()
            except Exception as exc:
                self._last_error = str(exc)
                log.error("Browser session launch failed: %s", exc)
                raise SessionUnavailable(f"Browser session launch failed: {exc}") from exc

            self._launch_count += 1
            self._last_error = None
            session.on_disconnect(self._on_disconnect)
            self._current = session
            return session

    def invalidate(self, session: Session | None = None) -> None:
        """Drop a session the caller found unusable.

        With a session argument only that exact session is dropped, so a
        stale caller cannot discard a newer replacement.
        """
        current = self._current
        if current is None:
            return
        if session is not None and session is not current:
            return
        log.warning("Invalidating browser session")
        self._current = None
        current.mark_disconnected()

    def _on_disconnect(self, session: Session) -> None:
        if self._current is session:
            self._current = None
            log.info("Cleared disconnected browser session")

    async def close(self) -> None:
        """Close the live session, if any. Used at shutdown."""
        session = self._current
        self._current = None
        if session is not None:
            await session.close()

    def describe(self) -> dict:
        """Summary for the health endpoint."""
        session = self._current
        return {
            "connected": bool(session and session.connected),
            "age_seconds": round(time.time() - session.created_at, 1) if session else None,
            "launches": self._launch_count,
            "last_error": self._last_error,
        }
