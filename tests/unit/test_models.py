from __future__ import annotations

import pytest

from applydesk.models.intervention import EventEnvelope, Intervention, InterventionStatus
from applydesk.models.session import SessionDetail, SessionStatus, SessionSummary
from applydesk.sync.listeners import Listeners


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        (SessionStatus.PAUSED, SessionStatus.IN_PROGRESS, True),
        (SessionStatus.NEEDS_INTERVENTION, SessionStatus.SUBMITTED, True),
        (SessionStatus.IN_PROGRESS, SessionStatus.PAUSED, True),
        (SessionStatus.PENDING, SessionStatus.PAUSED, False),
        (SessionStatus.SUBMITTED, SessionStatus.IN_PROGRESS, False),
        (SessionStatus.FAILED, SessionStatus.SUBMITTED, False),
    ],
)
def test_session_transitions(current, target, allowed) -> None:
    assert current.can_transition(target) is allowed


def test_terminal_and_resumable_statuses() -> None:
    assert {s for s in SessionStatus if s.is_terminal} == {SessionStatus.SUBMITTED, SessionStatus.FAILED}
    assert {s for s in SessionStatus if s.is_resumable} == {
        SessionStatus.PAUSED,
        SessionStatus.NEEDS_INTERVENTION,
    }
    assert InterventionStatus.TIMED_OUT.is_terminal
    assert not InterventionStatus.PENDING.is_terminal


def test_intervention_coerces_loose_backend_values() -> None:
    i = Intervention.model_validate(
        {
            "id": "a",
            "fields_filled": {"age": 31, "note": None},
            "fields_remaining": None,
            "created_at": None,
        }
    )
    assert i.fields_filled == {"age": "31", "note": ""}
    assert i.remaining_count == 0
    assert i.filled_count == 2
    assert i.created_at


def test_session_detail_summary() -> None:
    detail = SessionDetail.model_validate(
        {"session_id": "s-1", "status": "paused", "fields_filled": {"a": 1, "b": 2}, "can_resume": True}
    )
    summary = detail.to_summary()
    assert isinstance(summary, SessionSummary)
    assert summary.fields_filled == 2
    assert summary.can_resume is True
    assert "confirmed" not in summary.model_dump()


def test_envelope_payload_defaults_to_empty() -> None:
    assert EventEnvelope.model_validate({"type": "pong", "payload": None}).payload == {}


def test_listeners_isolate_failures_and_unsubscribe() -> None:
    listeners = Listeners("test")
    seen = []

    def broken(value):
        raise ValueError(value)

    listeners.add(broken)
    unsubscribe = listeners.add(seen.append)
    listeners.notify(1)
    unsubscribe()
    listeners.notify(2)

    assert seen == [1]


def test_intervention_default_timestamp_is_utc() -> None:
    assert Intervention(id="a").created_at.endswith("+00:00")
