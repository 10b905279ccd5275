"""Lifecycle-scoped owner of the live channel, poller, reconciler and session tracker.

One ``InterventionDashboard`` corresponds to one mounted dashboard view:
construct it (or enter it with ``async with``) when the view appears and
close it when the view goes away. Closing shuts the live channel down
cleanly and cancels every timer, so nothing touches state afterwards.
"""

from __future__ import annotations

import logging
import sys
from typing import Callable, Optional

from ..config import (
    HEARTBEAT_INTERVAL_SECONDS,
    POLL_INTERVAL_SECONDS,
    RECONNECT_INTERVAL_SECONDS,
    RESUME_RECONCILE_DELAY_SECONDS,
    SESSION_POLL_INTERVAL_SECONDS,
    WS_URL,
)
from ..constants import CMD_REFRESH, INTERVENTIONS_WS_PATH
from ..models.intervention import (
    EventEnvelope,
    EventType,
    Intervention,
    ResolveAction,
    ResolveResult,
)
from ..models.session import ApplicationResponse, ResumeOptions, SessionDetail, SessionSummary
from .client import BackendClient, BackendError
from .connection import ConnectionManager
from .poller import FallbackPoller
from .reconciler import EventReconciler
from .session_channel import SessionChannel
from .tracker import SessionTracker
from .view_model import DashboardView, ViewModelAdapter

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class InterventionDashboard:
    """Wires the sync components together and routes commands through them."""

    def __init__(
        self,
        client: Optional[BackendClient] = None,
        ws_url: str = WS_URL,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        session_poll_interval: float = SESSION_POLL_INTERVAL_SECONDS,
        reconcile_delay: float = RESUME_RECONCILE_DELAY_SECONDS,
        reconnect_interval: float = RECONNECT_INTERVAL_SECONDS,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        auto_reconnect: bool = True,
    ):
        self.client = client or BackendClient()
        self._owns_client = client is None
        self._ws_url = ws_url.rstrip("/")
        self._heartbeat_interval = heartbeat_interval

        self.reconciler = EventReconciler()
        self.connection = ConnectionManager(
            self._ws_url + INTERVENTIONS_WS_PATH,
            on_message=self.reconciler.apply,
            auto_reconnect=auto_reconnect,
            reconnect_interval=reconnect_interval,
            heartbeat_interval=heartbeat_interval,
            name="interventions",
        )
        self.tracker = SessionTracker(self.client, reconcile_delay=reconcile_delay)
        self.poller = FallbackPoller(
            self.client,
            self.reconciler,
            self.connection,
            tracker=self.tracker,
            poll_interval=poll_interval,
            session_poll_interval=session_poll_interval,
        )
        self.view = ViewModelAdapter(self.connection, self.reconciler, self.poller, self.tracker)

        self.command_errors: dict[str, str] = {}
        self._session_channels: dict[str, SessionChannel] = {}
        self._started = False
        self._closed = False

        self.reconciler.add_event_listener(self._on_event)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *args):
        await self.close()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Connect and start polling. A closed dashboard stays closed."""
        if self._closed:
            logger.warning("Dashboard was closed; create a new one instead of restarting it")
            return
        if self._started:
            return
        self._started = True
        logger.info("Starting intervention dashboard")
        self.connection.connect()
        self.poller.start()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._started = False
        for session_id in list(self._session_channels):
            await self.close_session_channel(session_id)
        await self.poller.stop()
        await self.tracker.close()
        self.view.close()
        await self.connection.close()
        if self._owns_client:
            await self.client.aclose()
        logger.info("Intervention dashboard stopped")

    # ── Observers ────────────────────────────────────────────────────────────

    def on_intervention(self, callback: Callable[[Intervention], None]) -> Callable[[], None]:
        return self.reconciler.add_intervention_listener(callback)

    def on_resolved(self, callback: Callable[[str, str], None]) -> Callable[[], None]:
        return self.reconciler.add_resolved_listener(callback)

    def _on_event(self, event: EventEnvelope):
        if event.type == EventType.SESSION_RESUMED:
            session_id = event.payload.get("session_id")
            if session_id:
                self.tracker.apply_status(str(session_id), event.payload)

    # ── Reads ────────────────────────────────────────────────────────────────

    def snapshot(self) -> DashboardView:
        return self.view.snapshot(self.command_errors)

    def pending_for_session(self, session_id: str) -> Optional[Intervention]:
        for intervention in self.view.display_interventions():
            if intervention.session_id == session_id:
                return intervention
        return None

    async def refresh(self) -> None:
        """Re-sync interventions (live when possible) and re-fetch sessions."""
        await self.refresh_interventions()
        await self.tracker.refresh()

    async def refresh_interventions(self) -> None:
        if self.connection.is_connected and await self.connection.send(CMD_REFRESH):
            return
        await self.poller.poll_once(include_sessions=False)

    # ── Intervention commands ────────────────────────────────────────────────

    async def resolve_intervention(
        self,
        intervention_id: str,
        action: ResolveAction | str,
        notes: Optional[str] = None,
        close_browser: Optional[bool] = None,
    ) -> Optional[ResolveResult]:
        try:
            action = ResolveAction(action)
        except ValueError:
            self.command_errors[intervention_id] = f"Unknown action: {action}"
            return None

        self.command_errors.pop(intervention_id, None)
        try:
            result = await self.client.resolve_intervention(
                intervention_id, action, notes=notes, close_browser=close_browser
            )
        except BackendError as e:
            logger.warning(f"Resolve {intervention_id} ({action.value}) failed: {e.message}")
            self.command_errors[intervention_id] = e.message
            await self.refresh_interventions()
            return None

        self.reconciler.remove(intervention_id, result.action)
        return result

    # ── Session commands ─────────────────────────────────────────────────────

    async def list_sessions(self, resumable_only: bool = False) -> list[SessionSummary]:
        return await self.tracker.list_sessions(resumable_only=resumable_only)

    async def get_session_detail(self, session_id: str) -> Optional[SessionDetail]:
        return await self.tracker.get_session_detail(session_id)

    async def resume(
        self, session_id: str, options: Optional[ResumeOptions] = None
    ) -> Optional[ApplicationResponse]:
        return await self.tracker.resume(session_id, options)

    async def pause(self, session_id: str) -> bool:
        return await self.tracker.pause(session_id)

    async def submit(self, session_id: str) -> bool:
        return await self.tracker.submit(session_id)

    async def mark_applied(self, session_id: str) -> bool:
        return await self.tracker.mark_applied(session_id)

    async def delete_session(self, session_id: str) -> bool:
        deleted = await self.tracker.delete_session(session_id)
        if deleted:
            await self.close_session_channel(session_id)
        return deleted

    async def cancel(self, session_id: str) -> bool:
        """Cancel a blocked session through its pending intervention."""
        intervention = self.pending_for_session(session_id)
        if intervention is None:
            self.tracker.command_errors[session_id] = "No pending intervention for this session"
            return False
        cancelled = await self.tracker.cancel(session_id, intervention.id)
        if cancelled:
            self.reconciler.remove(intervention.id, ResolveAction.CANCEL.value)
        return cancelled

    # ── Session channels ─────────────────────────────────────────────────────

    def open_session_channel(self, session_id: str) -> SessionChannel:
        channel = self._session_channels.get(session_id)
        if channel is None:
            channel = SessionChannel(
                session_id,
                ws_url=self._ws_url,
                heartbeat_interval=self._heartbeat_interval,
            )
            channel.add_status_listener(self.tracker.apply_status)
            self._session_channels[session_id] = channel
        channel.connect()
        return channel

    def session_channel(self, session_id: str) -> Optional[SessionChannel]:
        return self._session_channels.get(session_id)

    async def close_session_channel(self, session_id: str) -> None:
        channel = self._session_channels.pop(session_id, None)
        if channel is not None:
            await channel.close()
