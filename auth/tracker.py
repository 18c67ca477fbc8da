"""
auth/tracker.py -- Periodic session activity refresh for an authenticated client.

ActivityTracker owns one asyncio task per authenticated context. The task
touches the session immediately, then every interval_seconds (default 300)
until stop() cancels it. stop() is idempotent, so logout and teardown can
both call it without coordination.

The touch callable is synchronous (it talks to the database) and runs in a
worker thread via asyncio.to_thread so the event loop never blocks on it.
Failures are logged and the loop carries on: a missed touch only makes
last_activity slightly stale. A touch that returns False means the session
was revoked or has expired; the loop then ends and on_session_gone, if
given, is called once.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Callable, Optional

logger = logging.getLogger("retailauth.tracker")

TouchFn = Callable[[str, Optional[str]], Optional[bool]]


class ActivityTracker:
    def __init__(
        self,
        touch: TouchFn,
        session_id: str,
        interval_seconds: float = 300,
        current_page: str | None = None,
        on_session_gone: Callable[[], None] | None = None,
    ) -> None:
        self._touch = touch
        self.session_id = session_id
        self.interval = interval_seconds
        self.current_page = current_page
        self._on_session_gone = on_session_gone
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the refresh loop on the running event loop. No-op if already running."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"activity-{self.session_id}")
        logger.debug("Activity tracking started for session %s every %ss", self.session_id, self.interval)

    async def touch_now(self) -> Optional[bool]:
        """Refresh activity once, off the event loop. Never raises (except cancellation).

        Returns what the touch callable returned, or None if it raised.
        """
        try:
            return await asyncio.to_thread(self._touch, self.session_id, self.current_page)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("Activity touch failed for session %s", self.session_id, exc_info=True)
            return None

    async def _run(self) -> None:
        while True:
            if await self.touch_now() is False:
                logger.info("Session %s is no longer active; activity tracking ended", self.session_id)
                if self._on_session_gone is not None:
                    self._on_session_gone()
                return
            await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish. Safe to call more than once."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.debug("Activity tracking stopped for session %s", self.session_id)
