"""Live progress channel for a single application session."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Callable, Optional

import aiohttp
from pydantic import ValidationError

from ..config import (
    HEARTBEAT_INTERVAL_SECONDS,
    SESSION_CHANNEL_MAX_RETRIES,
    SESSION_CHANNEL_RETRY_DELAY_SECONDS,
    WS_URL,
)
from ..constants import CMD_STATUS, ERROR_SESSION_NOT_FOUND, SESSION_WS_PATH
from ..models.intervention import EventEnvelope, EventType
from ..models.session import ConnectionState, SessionProgress
from .connection import ConnectionManager
from .listeners import Listeners

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class SessionChannel:
    """Follows one session's status and progress over its own WebSocket.

    Unlike the global intervention feed this channel has a bounded retry
    budget, and a 4004 close ("Session not found") ends it for good.
    Instances for different sessions share nothing.
    """

    def __init__(
        self,
        session_id: str,
        ws_url: str = WS_URL,
        max_retries: int = SESSION_CHANNEL_MAX_RETRIES,
        retry_delay: float = SESSION_CHANNEL_RETRY_DELAY_SECONDS,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.session_id = session_id
        self.progress: Optional[SessionProgress] = None
        self._status_listeners = Listeners(f"session {session_id} status")

        url = ws_url.rstrip("/") + SESSION_WS_PATH.format(session_id=session_id)
        self.connection = ConnectionManager(
            url,
            on_message=self._on_message,
            auto_reconnect=True,
            reconnect_interval=retry_delay,
            jitter=0.0,
            linear_backoff=True,
            max_retries=max_retries,
            heartbeat_interval=heartbeat_interval,
            not_found_message=ERROR_SESSION_NOT_FOUND,
            session=session,
            name=f"session-{session_id}",
        )

    # ── Observation ──────────────────────────────────────────────────────────

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    @property
    def error(self) -> Optional[str]:
        return self.connection.error

    @property
    def status(self) -> Optional[str]:
        return self.progress.status if self.progress else None

    def add_status_listener(
        self, callback: Callable[[str, dict[str, Any]], None]
    ) -> Callable[[], None]:
        """``callback(session_id, payload)`` for every ``connected``/``status`` event."""
        return self._status_listeners.add(callback)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def connect(self) -> None:
        self.connection.connect()

    async def close(self) -> None:
        await self.connection.close()
        self._status_listeners.clear()

    async def request_status(self) -> bool:
        return await self.connection.send(CMD_STATUS)

    # ── Events ───────────────────────────────────────────────────────────────

    def _on_message(self, raw: str):
        try:
            event = EventEnvelope.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.debug(f"Dropping malformed session payload: {e}")
            return

        payload = event.payload
        previous = self.progress or SessionProgress()

        if event.type in (EventType.CONNECTED, EventType.STATUS):
            try:
                self.progress = SessionProgress(
                    status=payload.get("status", previous.status),
                    step=_as_int(payload.get("current_step"), previous.step),
                    fields_filled=_as_int(payload.get("fields_filled"), previous.fields_filled),
                    total_steps=payload.get("total_steps", previous.total_steps),
                    blocker_type=payload.get("blocker_type"),
                    error=payload.get("error"),
                )
            except ValidationError as e:
                logger.debug(f"Dropping malformed status event: {e}")
                return
            self._status_listeners.notify(self.session_id, payload)

        elif event.type == EventType.PROGRESS:
            details = payload.get("details")
            if not isinstance(details, dict):
                details = {}
            self.progress = previous.model_copy(
                update={
                    "step": _as_int(payload.get("progress_percent"), previous.step),
                    "fields_filled": _as_int(details.get("fields_filled"), 0),
                }
            )


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
