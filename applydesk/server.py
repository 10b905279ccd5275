"""MCP Server entry point for the ApplyDesk intervention dashboard.

Exposes the synchronized dashboard to Claude Code via the Model Context Protocol:
- Interventions: dashboard_status, list_interventions, get_intervention,
  resolve_intervention, refresh
- Sessions: list_sessions, session_detail, resume_session, pause_session,
  submit_session, cancel_session, mark_applied, delete_session
- Live progress: watch_session, session_progress, stop_watching

The dashboard (live channel, fallback poller, session tracker) starts with
the MCP server lifespan and is torn down with it.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager

from mcp.server.fastmcp import Context, FastMCP

from .config import API_URL, WS_URL
from .sync.dashboard import InterventionDashboard
from .tools import intervention_tools, session_tools

# Configure logging to stderr (stdout is reserved for MCP JSON-RPC)
logging.basicConfig(
    stream=sys.stderr,
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("applydesk")


# ── Lifespan: one dashboard per server run ───────────────────────────────────


@asynccontextmanager
async def lifespan(server: FastMCP):
    """Mount the dashboard alongside the MCP server."""
    dashboard = InterventionDashboard(ws_url=WS_URL)
    await dashboard.start()
    logger.info("Dashboard started against %s (live channel %s)", API_URL, WS_URL)
    try:
        yield {"dashboard": dashboard}
    finally:
        await dashboard.close()
        logger.info("Dashboard stopped.")


def _dashboard(ctx: Context) -> InterventionDashboard:
    return ctx.request_context.lifespan_context["dashboard"]


# ── MCP Server ───────────────────────────────────────────────────────────────

mcp = FastMCP(
    "applydesk",
    lifespan=lifespan,
    instructions=(
        "ApplyDesk - Watch automated job applications and help them when they get stuck. "
        "Call list_interventions to see what needs human attention, then "
        "resolve_intervention once you have helped (continue, submit, cancel or retry). "
        "Use list_sessions and session_detail to inspect applications, and "
        "resume_session, pause_session, mark_applied or delete_session to drive them. "
        "watch_session follows one session live; read it with session_progress."
    ),
)


# ── Intervention Tools ───────────────────────────────────────────────────────


@mcp.tool()
async def tool_dashboard_status(ctx: Context) -> str:
    """Check whether the dashboard is Live or Offline.

    Returns: connection state, pending count, and any outstanding errors.
    """
    return await intervention_tools.dashboard_status(_dashboard(ctx))


@mcp.tool()
async def tool_list_interventions(ctx: Context) -> str:
    """List pending interventions, newest first."""
    return await intervention_tools.list_interventions(_dashboard(ctx))


@mcp.tool()
async def tool_get_intervention(intervention_id: str, ctx: Context) -> str:
    """Get all details of one pending intervention.

    Args:
        intervention_id: Intervention ID from list_interventions.
    """
    return await intervention_tools.get_intervention(_dashboard(ctx), intervention_id)


@mcp.tool()
async def tool_resolve_intervention(
    intervention_id: str,
    ctx: Context,
    action: str = "continue",
    notes: str = "",
    close_browser: bool | None = None,
) -> str:
    """Resolve a pending intervention.

    Call this after the user has solved the CAPTCHA, logged in, or answered
    the question in the browser.

    Args:
        intervention_id: Intervention ID from list_interventions.
        action: "continue", "submit", "cancel", or "retry".
        notes: Optional notes passed to the automation.
        close_browser: Close the browser afterwards (default: backend decides).
    """
    return await intervention_tools.resolve_intervention(
        _dashboard(ctx), intervention_id, action, notes, close_browser
    )


@mcp.tool()
async def tool_refresh(ctx: Context) -> str:
    """Re-sync interventions and sessions with the backend."""
    return await intervention_tools.refresh(_dashboard(ctx))


# ── Session Tools ────────────────────────────────────────────────────────────


@mcp.tool()
async def tool_list_sessions(ctx: Context, resumable_only: bool = False) -> str:
    """List application sessions, resumable ones first.

    Args:
        resumable_only: Only sessions that are paused or need intervention.
    """
    return await session_tools.list_sessions(_dashboard(ctx), resumable_only)


@mcp.tool()
async def tool_session_detail(session_id: str, ctx: Context) -> str:
    """Get the full state of one session: steps, fields, blocker, errors.

    Args:
        session_id: Session ID from list_sessions.
    """
    return await session_tools.session_detail(_dashboard(ctx), session_id)


@mcp.tool()
async def tool_resume_session(
    session_id: str,
    ctx: Context,
    restore_browser: bool = True,
    auto_solve_captcha: bool = True,
) -> str:
    """Resume a paused or blocked session.

    Args:
        session_id: Session ID from list_sessions.
        restore_browser: Restore the saved browser state.
        auto_solve_captcha: Let the automation try CAPTCHA solving first.
    """
    return await session_tools.resume_session(
        _dashboard(ctx), session_id, restore_browser, auto_solve_captcha
    )


@mcp.tool()
async def tool_pause_session(session_id: str, ctx: Context) -> str:
    """Pause a running session so it can be resumed later."""
    return await session_tools.pause_session(_dashboard(ctx), session_id)


@mcp.tool()
async def tool_submit_session(session_id: str, ctx: Context) -> str:
    """Submit the application of a session that was waiting for review."""
    return await session_tools.submit_session(_dashboard(ctx), session_id)


@mcp.tool()
async def tool_cancel_session(session_id: str, ctx: Context) -> str:
    """Cancel a blocked session by cancelling its pending intervention."""
    return await session_tools.cancel_session(_dashboard(ctx), session_id)


@mcp.tool()
async def tool_mark_applied(session_id: str, ctx: Context) -> str:
    """Mark a session as applied after finishing it by hand."""
    return await session_tools.mark_applied(_dashboard(ctx), session_id)


@mcp.tool()
async def tool_delete_session(session_id: str, ctx: Context) -> str:
    """Delete a session from the backend."""
    return await session_tools.delete_session(_dashboard(ctx), session_id)


# ── Live Progress Tools ──────────────────────────────────────────────────────


@mcp.tool()
async def tool_watch_session(session_id: str, ctx: Context) -> str:
    """Start following one session's live progress."""
    return await session_tools.watch_session(_dashboard(ctx), session_id)


@mcp.tool()
async def tool_session_progress(session_id: str, ctx: Context) -> str:
    """Read the latest live progress of a watched session."""
    return await session_tools.session_progress(_dashboard(ctx), session_id)


@mcp.tool()
async def tool_stop_watching(session_id: str, ctx: Context) -> str:
    """Stop following a session's live progress."""
    return await session_tools.stop_watching(_dashboard(ctx), session_id)


# ── Entry Point ──────────────────────────────────────────────────────────────


def main():
    """Run the MCP server on STDIO transport."""
    logger.info("Starting ApplyDesk MCP server...")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
