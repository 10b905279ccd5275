"""Request/response polling used while the live channel is down."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from typing import Optional

from ..config import POLL_INTERVAL_SECONDS, SESSION_POLL_INTERVAL_SECONDS
from ..models.session import ConnectionState
from .client import BackendClient, BackendError
from .connection import ConnectionManager
from .reconciler import SOURCE_POLL, EventReconciler
from .tracker import SessionTracker

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class FallbackPoller:
    """Keeps interventions and sessions fresh without the live channel.

    Interventions are fetched every ``poll_interval`` while the connection
    is anything but open; once it opens the live feed is authoritative and
    intervention polling pauses. Sessions never travel over the live feed,
    so they are re-fetched every ``session_poll_interval`` regardless.
    A failed poll is recorded in ``error`` and the loop carries on.
    """

    def __init__(
        self,
        client: BackendClient,
        reconciler: EventReconciler,
        connection: ConnectionManager,
        tracker: Optional[SessionTracker] = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        session_poll_interval: float = SESSION_POLL_INTERVAL_SECONDS,
    ):
        self._client = client
        self._reconciler = reconciler
        self._connection = connection
        self._tracker = tracker
        self.poll_interval = poll_interval
        self.session_poll_interval = session_poll_interval

        self.error: Optional[str] = None
        self.revision = 0

        self._task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()
        self._unsubscribe = None
        self._last_session_poll: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_polling_interventions(self) -> bool:
        return self.is_running and self._connection.state is not ConnectionState.OPEN

    def start(self) -> None:
        if self.is_running:
            return
        self._unsubscribe = self._connection.add_state_listener(self._on_connection_state)
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="applydesk-fallback-poller"
        )

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _on_connection_state(self, state: ConnectionState):
        if state in (ConnectionState.CLOSED_ERROR, ConnectionState.CLOSED_CLEAN):
            # poll right away instead of waiting out the interval
            self._wakeup.set()

    async def _run(self):
        while True:
            # a drop during this cycle must still cut the next wait short
            self._wakeup.clear()
            await self.poll_once()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)

    async def poll_once(self, include_sessions: Optional[bool] = None) -> None:
        """Run one poll cycle.

        ``include_sessions=None`` lets the session interval decide.
        """
        if self._connection.state is not ConnectionState.OPEN:
            await self._poll_interventions()

        if include_sessions is None:
            include_sessions = self._session_poll_due()
        if include_sessions and self._tracker is not None:
            self._last_session_poll = asyncio.get_running_loop().time()
            await self._tracker.refresh()
            if self._tracker.error:
                self.error = self._tracker.error

    def _session_poll_due(self) -> bool:
        if self._last_session_poll is None:
            return True
        elapsed = asyncio.get_running_loop().time() - self._last_session_poll
        return elapsed >= self.session_poll_interval

    async def _poll_interventions(self):
        try:
            interventions = await self._client.list_interventions()
        except BackendError as e:
            logger.warning(f"Intervention poll failed: {e.message}")
            self.error = e.message
            return

        # the channel may have opened while the request was in flight
        if self._connection.state is ConnectionState.OPEN:
            return

        self.error = None
        self.revision += 1
        self._reconciler.replace(interventions, source=SOURCE_POLL)
        logger.debug(f"Polled {len(interventions)} pending interventions")
