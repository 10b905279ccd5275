"""Backend paths, close codes, control frames and event type names."""

# ── REST paths ───────────────────────────────────────────────────────────────

API_PREFIX = "/api/applications"
API_V2_PREFIX = f"{API_PREFIX}/v2"

INTERVENTIONS_PATH = f"{API_V2_PREFIX}/interventions"
INTERVENTION_PATH = f"{INTERVENTIONS_PATH}/{{intervention_id}}"
RESOLVE_INTERVENTION_PATH = f"{INTERVENTION_PATH}/resolve"

SESSIONS_PATH = f"{API_V2_PREFIX}/sessions"
SESSION_PATH = f"{SESSIONS_PATH}/{{session_id}}"
RESUME_SESSION_PATH = f"{SESSION_PATH}/resume"
MARK_APPLIED_PATH = f"{SESSION_PATH}/mark-applied"

# v1 application endpoints
PAUSE_APPLICATION_PATH = f"{API_PREFIX}/{{session_id}}/pause"
SUBMIT_APPLICATION_PATH = f"{API_PREFIX}/{{session_id}}/submit"

# ── Live channel paths ───────────────────────────────────────────────────────

INTERVENTIONS_WS_PATH = f"{API_V2_PREFIX}/ws/interventions"
SESSION_WS_PATH = f"{API_V2_PREFIX}/ws/{{session_id}}"

# ── Close codes ──────────────────────────────────────────────────────────────

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_ABNORMAL = 1006
CLOSE_NOT_FOUND = 4004  # application-defined, server deleted the resource

# ── Outbound control frames (plain strings, not JSON) ────────────────────────

CMD_PING = "ping"
CMD_REFRESH = "refresh"
CMD_STATUS = "status"

# ── Error strings surfaced to the presentation layer ─────────────────────────

ERROR_CONNECTION_LOST = "Connection lost"
ERROR_CONNECTION_FAILED = "Connection failed"
ERROR_FAILED_TO_CONNECT = "Failed to connect"
ERROR_SESSION_NOT_FOUND = "Session not found"
ERROR_NOT_FOUND = "Not found"

# ── Status labels ────────────────────────────────────────────────────────────

LABEL_LIVE = "Live"
LABEL_OFFLINE = "Offline"
