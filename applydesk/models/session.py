"""Pydantic models for application sessions and channel state."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class SessionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    NEEDS_INTERVENTION = "needs_intervention"
    SUBMITTED = "submitted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.SUBMITTED, SessionStatus.FAILED)

    @property
    def is_resumable(self) -> bool:
        return self in (SessionStatus.PAUSED, SessionStatus.NEEDS_INTERVENTION)

    def can_transition(self, target: SessionStatus) -> bool:
        """Whether a locally requested move from this status to ``target`` is legal."""
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING: frozenset(
        {SessionStatus.IN_PROGRESS, SessionStatus.SUBMITTED, SessionStatus.FAILED}
    ),
    SessionStatus.IN_PROGRESS: frozenset(
        {
            SessionStatus.PAUSED,
            SessionStatus.NEEDS_INTERVENTION,
            SessionStatus.SUBMITTED,
            SessionStatus.FAILED,
        }
    ),
    SessionStatus.PAUSED: frozenset(
        {SessionStatus.IN_PROGRESS, SessionStatus.SUBMITTED, SessionStatus.FAILED}
    ),
    SessionStatus.NEEDS_INTERVENTION: frozenset(
        {SessionStatus.IN_PROGRESS, SessionStatus.SUBMITTED, SessionStatus.FAILED}
    ),
    SessionStatus.SUBMITTED: frozenset(),
    SessionStatus.FAILED: frozenset(),
}


class ConnectionState(str, Enum):
    """Live channel state. Not persisted; one per channel instance."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED_CLEAN = "closed_clean"
    CLOSED_ERROR = "closed_error"


class _SessionBase(BaseModel):
    session_id: str
    job_url: str = ""
    status: SessionStatus = SessionStatus.PENDING
    current_step: int = 0
    created_at: Optional[str] = None
    paused_at: Optional[str] = None
    can_resume: bool = False


class SessionSummary(_SessionBase):
    """One row of ``GET sessions``."""

    fields_filled: int = 0

    # False while the row carries an optimistic, not yet re-fetched, status
    confirmed: bool = Field(default=True, exclude=True)

    @field_validator("fields_filled", mode="before")
    @classmethod
    def _count_fields(cls, value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return len(value)
        return 0 if value is None else value


class SessionDetail(_SessionBase):
    """Full state of one session, ``GET sessions/{id}``."""

    mode: Optional[str] = None
    total_steps: int = 0
    steps_completed: list[str] = Field(default_factory=list)
    fields_filled: dict[str, Any] = Field(default_factory=dict)
    fields_remaining: list[str] = Field(default_factory=list)
    blocker_type: Optional[str] = None
    blocker_message: Optional[str] = None
    intervention_id: Optional[str] = None
    current_url: Optional[str] = None
    error: Optional[str] = None
    retry_count: int = 0
    updated_at: Optional[str] = None

    @field_validator("fields_filled", "steps_completed", "fields_remaining", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any, info) -> Any:
        if value is None:
            return {} if info.field_name == "fields_filled" else []
        return value

    def to_summary(self) -> SessionSummary:
        return SessionSummary(
            session_id=self.session_id,
            job_url=self.job_url,
            status=self.status,
            current_step=self.current_step,
            fields_filled=len(self.fields_filled),
            created_at=self.created_at,
            paused_at=self.paused_at,
            can_resume=self.can_resume,
        )


class ResumeOptions(BaseModel):
    restore_browser: bool = True
    auto_solve_captcha: bool = True


class ApplicationResponse(BaseModel):
    """Result of starting or resuming an automated application."""

    session_id: str
    status: str
    success: bool = False
    agent_used: str = ""
    steps_completed: list[str] = Field(default_factory=list)
    fields_filled: int = 0
    intervention_id: Optional[str] = None
    intervention_type: Optional[str] = None
    intervention_title: Optional[str] = None
    captcha_solved: bool = False
    captcha_cost: float = 0.0
    error: Optional[str] = None
    final_url: Optional[str] = None


class StatusResponse(BaseModel):
    """Result of the v1 pause/submit endpoints."""

    session_id: str
    status: str
    mode: Optional[str] = None
    job_url: str = ""
    error_message: Optional[str] = None


class SessionProgress(BaseModel):
    """What a session-scoped live channel knows about its session."""

    status: Optional[str] = None
    step: int = 0
    fields_filled: int = 0
    total_steps: Optional[int] = None
    blocker_type: Optional[str] = None
    error: Optional[str] = None
