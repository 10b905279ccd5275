"""Application configuration loaded from environment variables."""

import os

from dotenv import load_dotenv

load_dotenv()

# Backend
API_URL = os.getenv("APPLYDESK_API_URL", "http://localhost:8000").rstrip("/")
WS_URL = os.getenv("APPLYDESK_WS_URL", "ws://localhost:8000").rstrip("/")
HTTP_TIMEOUT = float(os.getenv("APPLYDESK_HTTP_TIMEOUT", "30"))

# Live channel
AUTO_RECONNECT = os.getenv("APPLYDESK_AUTO_RECONNECT", "true").lower() == "true"
RECONNECT_INTERVAL_SECONDS = float(os.getenv("APPLYDESK_RECONNECT_INTERVAL", "5"))
RECONNECT_JITTER = 0.1  # fraction of the interval
HEARTBEAT_INTERVAL_SECONDS = float(os.getenv("APPLYDESK_HEARTBEAT_INTERVAL", "30"))

# Session-scoped channels
SESSION_CHANNEL_MAX_RETRIES = int(os.getenv("APPLYDESK_SESSION_CHANNEL_MAX_RETRIES", "3"))
SESSION_CHANNEL_RETRY_DELAY_SECONDS = float(os.getenv("APPLYDESK_SESSION_CHANNEL_RETRY_DELAY", "2"))

# Polling
POLL_INTERVAL_SECONDS = float(os.getenv("APPLYDESK_POLL_INTERVAL", "10"))
SESSION_POLL_INTERVAL_SECONDS = float(os.getenv("APPLYDESK_SESSION_POLL_INTERVAL", "30"))
RESUME_RECONCILE_DELAY_SECONDS = float(os.getenv("APPLYDESK_RESUME_RECONCILE_DELAY", "2"))
