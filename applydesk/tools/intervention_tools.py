"""MCP tools for watching and resolving pending interventions."""

from __future__ import annotations

import json

from ..models.intervention import Intervention, ResolveAction
from ..sync.client import BackendError
from ..sync.dashboard import InterventionDashboard


def _format_intervention(intervention: Intervention) -> str:
    lines = [
        f"[{intervention.id}] {intervention.title or intervention.intervention_type.value}",
        f"  Type: {intervention.intervention_type.value}  Session: {intervention.session_id}",
    ]
    if intervention.description:
        lines.append(f"  {intervention.description}")
    if intervention.instructions:
        lines.append(f"  Instructions: {intervention.instructions}")
    if intervention.current_url:
        lines.append(f"  Page: {intervention.current_url}")
    if intervention.captcha_type:
        lines.append(f"  CAPTCHA: {intervention.captcha_type}")
    if intervention.fields_filled or intervention.fields_remaining:
        lines.append(
            f"  Fields: {intervention.filled_count} filled, "
            f"{intervention.remaining_count} remaining"
        )
    lines.append(f"  Created: {intervention.created_at}")
    return "\n".join(lines)


async def dashboard_status(dashboard: InterventionDashboard) -> str:
    """Connection state, counts and any errors, as JSON."""
    view = dashboard.snapshot()
    return json.dumps(
        {
            "status": view.status_label,
            "connection_state": view.connection_state.value,
            "pending_count": view.pending_count,
            "sessions": len(view.sessions),
            "connection_error": view.connection_error,
            "poll_error": view.poll_error,
            "sessions_error": view.sessions_error,
            "command_errors": view.command_errors,
        },
        indent=2,
    )


async def list_interventions(dashboard: InterventionDashboard) -> str:
    view = dashboard.snapshot()
    header = f"{view.status_label} - {view.pending_count} pending intervention(s)"
    if view.poll_error and not view.interventions:
        return f"{header}\nError: {view.poll_error}"
    if not view.interventions:
        return f"{header}\nNothing needs your attention."
    return header + "\n\n" + "\n\n".join(_format_intervention(i) for i in view.interventions)


async def get_intervention(dashboard: InterventionDashboard, intervention_id: str) -> str:
    intervention = dashboard.reconciler.get(intervention_id)
    if intervention is None:
        # not pending any more; the backend still knows resolved ones
        try:
            intervention = await dashboard.client.get_intervention(intervention_id)
        except BackendError as e:
            return f"Error: {e.message}"
    return json.dumps(intervention.model_dump(mode="json"), indent=2)


async def resolve_intervention(
    dashboard: InterventionDashboard,
    intervention_id: str,
    action: str = "continue",
    notes: str = "",
    close_browser: bool | None = None,
) -> str:
    """Resolve an intervention and report the outcome.

    Args:
        action: "continue", "submit", "cancel" or "retry".
    """
    valid = ", ".join(a.value for a in ResolveAction)
    if action not in {a.value for a in ResolveAction}:
        return f"Error: Unknown action '{action}'. Use one of: {valid}"

    result = await dashboard.resolve_intervention(
        intervention_id, action, notes=notes or None, close_browser=close_browser
    )
    if result is None:
        error = dashboard.command_errors.get(intervention_id, "Resolve failed")
        return f"Error: {error}"

    message = f"Intervention {result.intervention_id} resolved with '{result.action}'."
    if result.browser_closed:
        message += " The browser was closed."
    return message


async def refresh(dashboard: InterventionDashboard) -> str:
    await dashboard.refresh()
    view = dashboard.snapshot()
    return f"{view.status_label}: {view.pending_count} pending, {len(view.sessions)} session(s)."
