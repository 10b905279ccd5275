"""Merges live and polled data into the one shape the presentation layer reads."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from ..constants import LABEL_LIVE, LABEL_OFFLINE
from ..models.intervention import Intervention
from ..models.session import ConnectionState, SessionSummary
from .connection import ConnectionManager
from .poller import FallbackPoller
from .reconciler import SOURCE_LIVE, SOURCE_POLL, EventReconciler
from .tracker import SessionTracker


class DashboardView(BaseModel):
    """Everything a dashboard screen renders, in one snapshot."""

    status_label: str
    connection_state: ConnectionState
    pending_count: int
    interventions: list[Intervention] = Field(default_factory=list)
    sessions: list[SessionSummary] = Field(default_factory=list)
    connection_error: Optional[str] = None
    poll_error: Optional[str] = None
    sessions_error: Optional[str] = None
    command_errors: dict[str, str] = Field(default_factory=dict)


class ViewModelAdapter:
    """Source-priority merge for the intervention list.

    The live list wins while the channel is open, the polled list wins
    otherwise. Right after the winner changes, the previously displayed list
    is kept until the new winner delivers its first snapshot, so a switch
    never flashes an empty list.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        reconciler: EventReconciler,
        poller: FallbackPoller,
        tracker: SessionTracker,
    ):
        self._connection = connection
        self._reconciler = reconciler
        self._poller = poller
        self._tracker = tracker

        self._source = self._winning_source()
        self._baseline = 0
        self._last_known: list[Intervention] = []
        self._last_count = 0
        self._unsubscribe = connection.add_state_listener(self._on_connection_state)

    def close(self) -> None:
        self._unsubscribe()

    # ── Source selection ─────────────────────────────────────────────────────

    def _winning_source(self) -> str:
        return SOURCE_LIVE if self._connection.state is ConnectionState.OPEN else SOURCE_POLL

    def _revision(self, source: str) -> int:
        if source == SOURCE_LIVE:
            return self._reconciler.revision(SOURCE_LIVE)
        return self._poller.revision

    def _on_connection_state(self, state: ConnectionState):
        source = self._winning_source()
        if source != self._source:
            # capture the losing source's list before the new one takes over
            self.display_interventions()
            self._source = source
            self._baseline = self._revision(source)

    def _winner_delivered(self) -> bool:
        return self._revision(self._source) > self._baseline

    # ── Reads ────────────────────────────────────────────────────────────────

    def display_interventions(self) -> list[Intervention]:
        # both sources feed the reconciler; the revision check decides whether
        # what it holds already comes from the winning source
        if not self._winner_delivered():
            return list(self._last_known)

        self._last_known = self._reconciler.interventions
        self._last_count = self._reconciler.pending_count
        return list(self._last_known)

    @property
    def pending_count(self) -> int:
        self.display_interventions()
        return self._last_count

    def display_sessions(self) -> list[SessionSummary]:
        return self._tracker.sessions

    def resumable_sessions(self) -> list[SessionSummary]:
        return [s for s in self._tracker.sessions if s.can_resume]

    def completed_sessions(self) -> list[SessionSummary]:
        return [s for s in self._tracker.sessions if not s.can_resume]

    @property
    def is_live(self) -> bool:
        return self._connection.is_connected

    @property
    def status_label(self) -> str:
        return LABEL_LIVE if self.is_live else LABEL_OFFLINE

    def snapshot(self, command_errors: Optional[dict[str, str]] = None) -> DashboardView:
        interventions = self.display_interventions()
        errors = dict(self._tracker.command_errors)
        errors.update(command_errors or {})
        return DashboardView(
            status_label=self.status_label,
            connection_state=self._connection.state,
            pending_count=self._last_count,
            interventions=interventions,
            sessions=self.display_sessions(),
            connection_error=self._connection.error,
            poll_error=self._poller.error,
            sessions_error=self._tracker.error,
            command_errors=errors,
        )
