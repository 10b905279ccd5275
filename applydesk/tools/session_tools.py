"""MCP tools for listing and driving application sessions."""

from __future__ import annotations

import json

from ..models.session import ResumeOptions, SessionSummary
from ..sync.dashboard import InterventionDashboard


def _format_session(session: SessionSummary) -> str:
    line = (
        f"[{session.session_id}] {session.status.value} - step {session.current_step}, "
        f"{session.fields_filled} field(s) filled"
    )
    if session.job_url:
        line += f"\n  {session.job_url}"
    if session.paused_at:
        line += f"\n  Paused at {session.paused_at}"
    if not session.confirmed:
        line += "\n  (waiting for the backend to confirm)"
    return line


def _command_error(dashboard: InterventionDashboard, session_id: str, fallback: str) -> str:
    return f"Error: {dashboard.tracker.command_errors.get(session_id, fallback)}"


async def list_sessions(dashboard: InterventionDashboard, resumable_only: bool = False) -> str:
    sessions = await dashboard.list_sessions(resumable_only=resumable_only)
    if dashboard.tracker.error and not sessions:
        return f"Error: {dashboard.tracker.error}"
    if not sessions:
        return "No resumable sessions." if resumable_only else "No sessions."

    resumable = [s for s in sessions if s.can_resume]
    others = [s for s in sessions if not s.can_resume]
    parts = []
    if resumable:
        parts.append("Resumable:\n" + "\n".join(_format_session(s) for s in resumable))
    if others:
        parts.append("Other sessions:\n" + "\n".join(_format_session(s) for s in others))
    return "\n\n".join(parts)


async def session_detail(dashboard: InterventionDashboard, session_id: str) -> str:
    """Full session state, as JSON."""
    detail = await dashboard.get_session_detail(session_id)
    if detail is None:
        return f"Error: {dashboard.tracker.error or 'Session unavailable'}"
    return json.dumps(detail.model_dump(mode="json"), indent=2)


async def resume_session(
    dashboard: InterventionDashboard,
    session_id: str,
    restore_browser: bool = True,
    auto_solve_captcha: bool = True,
) -> str:
    options = ResumeOptions(restore_browser=restore_browser, auto_solve_captcha=auto_solve_captcha)
    response = await dashboard.resume(session_id, options)
    if response is None:
        return _command_error(dashboard, session_id, "Resume failed")

    if response.intervention_id:
        return (
            f"Session {session_id} resumed but is blocked again: "
            f"{response.intervention_title or response.intervention_type} "
            f"(intervention {response.intervention_id})."
        )
    if response.error:
        return f"Session {session_id} resumed with error: {response.error}"
    return f"Session {session_id} resumed ({response.status})."


async def pause_session(dashboard: InterventionDashboard, session_id: str) -> str:
    if not await dashboard.pause(session_id):
        return _command_error(dashboard, session_id, "Pause failed")
    return f"Session {session_id} paused."


async def submit_session(dashboard: InterventionDashboard, session_id: str) -> str:
    if not await dashboard.submit(session_id):
        return _command_error(dashboard, session_id, "Submit failed")
    return f"Session {session_id} submitted."


async def cancel_session(dashboard: InterventionDashboard, session_id: str) -> str:
    if not await dashboard.cancel(session_id):
        return _command_error(dashboard, session_id, "Cancel failed")
    return f"Session {session_id} cancelled."


async def mark_applied(dashboard: InterventionDashboard, session_id: str) -> str:
    if not await dashboard.mark_applied(session_id):
        return _command_error(dashboard, session_id, "Mark applied failed")
    return f"Session {session_id} marked as applied."


async def delete_session(dashboard: InterventionDashboard, session_id: str) -> str:
    if not await dashboard.delete_session(session_id):
        return _command_error(dashboard, session_id, "Delete failed")
    return f"Session {session_id} deleted."


async def watch_session(dashboard: InterventionDashboard, session_id: str) -> str:
    """Open (or reuse) the live progress channel for one session."""
    channel = dashboard.open_session_channel(session_id)
    return f"Watching session {session_id} ({channel.state.value})."


async def session_progress(dashboard: InterventionDashboard, session_id: str) -> str:
    channel = dashboard.session_channel(session_id)
    if channel is None:
        return f"Error: Session {session_id} is not being watched. Call watch_session first."

    result = {
        "session_id": session_id,
        "connection_state": channel.state.value,
        "error": channel.error,
        "progress": channel.progress.model_dump() if channel.progress else None,
    }
    return json.dumps(result, indent=2)


async def stop_watching(dashboard: InterventionDashboard, session_id: str) -> str:
    await dashboard.close_session_channel(session_id)
    return f"Stopped watching session {session_id}."
