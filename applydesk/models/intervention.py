"""Pydantic models for interventions and live-channel envelopes."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class InterventionType(str, Enum):
    """What kind of human help the automation is waiting for."""

    CAPTCHA = "captcha"
    LOGIN_REQUIRED = "login_required"
    FILE_UPLOAD = "file_upload"
    CUSTOM_QUESTION = "custom_question"
    MULTI_STEP_FORM = "multi_step_form"
    REVIEW_BEFORE_SUBMIT = "review_before_submit"
    ERROR = "error"
    OTHER = "other"


class InterventionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (
            InterventionStatus.RESOLVED,
            InterventionStatus.CANCELLED,
            InterventionStatus.TIMED_OUT,
        )


class ResolveAction(str, Enum):
    CONTINUE = "continue"
    SUBMIT = "submit"
    CANCEL = "cancel"
    RETRY = "retry"


class EventType(str, Enum):
    """Envelope ``type`` values the client understands."""

    INITIAL_STATE = "initial_state"
    REFRESH = "refresh"
    INTERVENTION = "intervention"
    INTERVENTION_RESOLVED = "intervention_resolved"
    PONG = "pong"
    # session-scoped channel
    CONNECTED = "connected"
    STATUS = "status"
    PROGRESS = "progress"
    # global feed, session state hint
    SESSION_RESUMED = "session_resumed"


class Intervention(BaseModel):
    """A request for human attention blocking one automated step."""

    # Identity
    id: str
    session_id: str = ""

    # Classification
    intervention_type: InterventionType = InterventionType.OTHER
    status: InterventionStatus = InterventionStatus.PENDING

    # Content
    title: str = ""
    description: str = ""
    instructions: Optional[str] = None
    current_url: Optional[str] = None
    captcha_type: Optional[str] = None
    captcha_solve_attempted: Optional[bool] = None
    captcha_solve_error: Optional[str] = None
    fields_filled: dict[str, str] = Field(default_factory=dict)
    fields_remaining: list[str] = Field(default_factory=list)
    screenshot_path: Optional[str] = None

    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @field_validator("intervention_type", mode="before")
    @classmethod
    def _coerce_type(cls, value: Any) -> Any:
        if isinstance(value, InterventionType):
            return value
        try:
            return InterventionType(value)
        except ValueError:
            return InterventionType.OTHER

    @field_validator("created_at", mode="before")
    @classmethod
    def _coerce_created_at(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        if value is None:
            return datetime.now(timezone.utc).isoformat()
        return value

    @field_validator("fields_filled", mode="before")
    @classmethod
    def _coerce_fields_filled(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value

    @field_validator("fields_remaining", mode="before")
    @classmethod
    def _coerce_fields_remaining(cls, value: Any) -> Any:
        return [] if value is None else value

    @classmethod
    def from_event(cls, payload: dict[str, Any]) -> Intervention:
        """Build a pending intervention from an ``intervention`` event payload.

        The live event carries ``intervention_id`` rather than ``id`` and
        never a creation time, so the arrival time is used.
        """
        return cls(
            id=payload["intervention_id"],
            session_id=payload.get("session_id", ""),
            intervention_type=payload.get("intervention_type", InterventionType.OTHER),
            status=InterventionStatus.PENDING,
            title=payload.get("title", ""),
            description=payload.get("description", ""),
            instructions=payload.get("instructions"),
            current_url=payload.get("current_url"),
            captcha_type=payload.get("captcha_type"),
        )

    @property
    def filled_count(self) -> int:
        return len(self.fields_filled)

    @property
    def remaining_count(self) -> int:
        return len(self.fields_remaining)


class ResolveRequest(BaseModel):
    """Body of ``POST interventions/{id}/resolve``."""

    action: ResolveAction
    notes: Optional[str] = None
    close_browser: Optional[bool] = None


class ResolveResult(BaseModel):
    status: str = "resolved"
    intervention_id: str
    action: str
    browser_closed: bool = False


class EventEnvelope(BaseModel):
    """Inbound live-channel frame: ``{type, payload, timestamp}``."""

    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[str] = None

    @field_validator("payload", mode="before")
    @classmethod
    def _default_payload(cls, value: Any) -> Any:
        return {} if value is None else value
