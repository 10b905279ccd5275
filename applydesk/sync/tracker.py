"""Tracks application sessions and runs the commands that move them between states."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any, Callable, Optional

from ..config import RESUME_RECONCILE_DELAY_SECONDS
from ..constants import ERROR_SESSION_NOT_FOUND
from ..models.intervention import ResolveAction
from ..models.session import (
    ApplicationResponse,
    ResumeOptions,
    SessionDetail,
    SessionStatus,
    SessionSummary,
)
from .client import BackendClient, BackendError, NotFoundError
from .listeners import Listeners

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class SessionTracker:
    """Local view of the backend's sessions.

    The backend is the source of truth. Commands update the local copy when
    they succeed; when they fail the tracker re-fetches instead of guessing,
    and keeps the failure as an inline error scoped to that session in
    ``command_errors``. Nothing here raises into the presentation layer.
    """

    def __init__(
        self,
        client: BackendClient,
        reconcile_delay: float = RESUME_RECONCILE_DELAY_SECONDS,
    ):
        self._client = client
        self.reconcile_delay = reconcile_delay

        self._sessions: dict[str, SessionSummary] = {}
        self.error: Optional[str] = None
        self.command_errors: dict[str, str] = {}
        self.not_found: set[str] = set()

        self._pending: set[asyncio.Task] = set()
        self._closed = False
        self._change_listeners = Listeners("sessions")

    # ── State ────────────────────────────────────────────────────────────────

    @property
    def sessions(self) -> list[SessionSummary]:
        return list(self._sessions.values())

    def get(self, session_id: str) -> Optional[SessionSummary]:
        return self._sessions.get(session_id)

    def add_change_listener(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self._change_listeners.add(callback)

    def replace(self, sessions: list[SessionSummary]) -> None:
        """Overwrite the tracked set with an authoritative list."""
        self._sessions = {s.session_id: s for s in sessions}
        self._change_listeners.notify()

    def _update(self, session_id: str, **changes: Any) -> Optional[SessionSummary]:
        current = self._sessions.get(session_id)
        if current is None:
            return None
        updated = current.model_copy(update=changes)
        self._sessions[session_id] = updated
        self._change_listeners.notify()
        return updated

    def _drop(self, session_id: str):
        if self._sessions.pop(session_id, None) is not None:
            self._change_listeners.notify()

    def _fail(self, session_id: str, message: str):
        logger.warning(f"Command on session {session_id} failed: {message}")
        self.command_errors[session_id] = message

    def _check_transition(self, session_id: str, target: SessionStatus) -> bool:
        current = self._sessions.get(session_id)
        if current is None or current.status.can_transition(target):
            return True
        self._fail(
            session_id,
            f"Cannot move session from {current.status.value} to {target.value}",
        )
        return False

    # ── Reads ────────────────────────────────────────────────────────────────

    async def list_sessions(self, resumable_only: bool = False) -> list[SessionSummary]:
        """Fetch sessions. Only the unfiltered list replaces the tracked set."""
        try:
            sessions = await self._client.list_sessions(resumable_only=resumable_only)
        except BackendError as e:
            logger.warning(f"Failed to load sessions: {e.message}")
            self.error = e.message
            return self.sessions if not resumable_only else [
                s for s in self.sessions if s.can_resume
            ]

        self.error = None
        if not resumable_only:
            self.replace(sessions)
        return sessions

    async def refresh(self) -> list[SessionSummary]:
        return await self.list_sessions()

    async def get_session_detail(self, session_id: str) -> Optional[SessionDetail]:
        try:
            detail = await self._client.get_session(session_id)
        except NotFoundError:
            self.not_found.add(session_id)
            self.error = ERROR_SESSION_NOT_FOUND
            return None
        except BackendError as e:
            logger.warning(f"Failed to load session {session_id}: {e.message}")
            self.error = e.message
            return None

        self.not_found.discard(session_id)
        self.error = None
        if session_id in self._sessions:
            self._sessions[session_id] = detail.to_summary()
            self._change_listeners.notify()
        return detail

    # ── Commands ─────────────────────────────────────────────────────────────

    async def resume(
        self, session_id: str, options: Optional[ResumeOptions] = None
    ) -> Optional[ApplicationResponse]:
        """Ask the backend to resume, optimistically mark it running, re-check later.

        Resume runs asynchronously on the backend, so the optimistic
        ``in_progress`` is only a guess: the delayed re-fetch overwrites it
        with whatever the backend says, match or not.
        """
        current = self._sessions.get(session_id)
        if current is not None and not current.status.is_resumable:
            self._fail(session_id, f"Cannot resume a session that is {current.status.value}")
            return None

        self.command_errors.pop(session_id, None)
        try:
            response = await self._client.resume_session(session_id, options)
        except BackendError as e:
            self._fail(session_id, e.message)
            await self.refresh()
            return None

        self._update(
            session_id,
            status=SessionStatus.IN_PROGRESS,
            can_resume=False,
            confirmed=False,
        )
        self._schedule_reconcile()
        logger.info(f"Resumed session {session_id}, reconciling in {self.reconcile_delay}s")
        return response

    async def pause(self, session_id: str) -> bool:
        if not self._check_transition(session_id, SessionStatus.PAUSED):
            return False

        self.command_errors.pop(session_id, None)
        try:
            response = await self._client.pause_session(session_id)
        except BackendError as e:
            self._fail(session_id, e.message)
            await self.refresh()
            return False

        status = _status_or(response.status, SessionStatus.PAUSED)
        self._update(session_id, status=status, can_resume=status.is_resumable)
        return True

    async def submit(self, session_id: str) -> bool:
        if not self._check_transition(session_id, SessionStatus.SUBMITTED):
            return False

        self.command_errors.pop(session_id, None)
        try:
            response = await self._client.submit_session(session_id)
        except BackendError as e:
            self._fail(session_id, e.message)
            await self.refresh()
            return False

        status = _status_or(response.status, SessionStatus.SUBMITTED)
        self._update(session_id, status=status, can_resume=False)
        return True

    async def cancel(self, session_id: str, intervention_id: str) -> bool:
        """Cancel a blocked session by resolving its intervention with ``cancel``."""
        self.command_errors.pop(session_id, None)
        try:
            await self._client.resolve_intervention(intervention_id, ResolveAction.CANCEL)
        except BackendError as e:
            self._fail(session_id, e.message)
            await self.refresh()
            return False

        self._drop(session_id)
        return True

    async def mark_applied(self, session_id: str) -> bool:
        """Record that a human finished this application outside the automation."""
        if not self._check_transition(session_id, SessionStatus.SUBMITTED):
            return False

        self.command_errors.pop(session_id, None)
        try:
            await self._client.mark_applied(session_id)
        except BackendError as e:
            self._fail(session_id, e.message)
            await self.refresh()
            return False

        self._update(session_id, status=SessionStatus.SUBMITTED, can_resume=False)
        return True

    async def delete_session(self, session_id: str) -> bool:
        self.command_errors.pop(session_id, None)
        try:
            await self._client.delete_session(session_id)
        except NotFoundError:
            # already gone on the backend; forget it locally as well
            self._drop(session_id)
            return True
        except BackendError as e:
            self._fail(session_id, e.message)
            await self.refresh()
            return False

        self._drop(session_id)
        self.not_found.discard(session_id)
        return True

    # ── Live status events ───────────────────────────────────────────────────

    def apply_status(self, session_id: str, payload: dict[str, Any]) -> None:
        """Fold a ``status``/``connected``/``session_resumed`` event into the tracked row."""
        if session_id not in self._sessions:
            return
        changes: dict[str, Any] = {}
        raw_status = payload.get("status")
        if raw_status:
            try:
                status = SessionStatus(raw_status)
            except ValueError:
                logger.debug(f"Ignoring unknown session status {raw_status!r}")
            else:
                changes["status"] = status
                if not status.is_resumable:
                    changes["can_resume"] = False
        if isinstance(payload.get("current_step"), int):
            changes["current_step"] = payload["current_step"]
        if isinstance(payload.get("fields_filled"), int):
            changes["fields_filled"] = payload["fields_filled"]
        if changes:
            self._update(session_id, **changes)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def _schedule_reconcile(self):
        if self._closed:
            return
        task = asyncio.get_running_loop().create_task(self._reconcile_later())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _reconcile_later(self):
        await asyncio.sleep(self.reconcile_delay)
        if not self._closed:
            await self.refresh()

    async def close(self) -> None:
        """Cancel pending re-fetches so nothing mutates state after teardown."""
        self._closed = True
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        self._pending.clear()


def _status_or(raw: str, default: SessionStatus) -> SessionStatus:
    try:
        return SessionStatus(raw)
    except ValueError:
        return default
