from __future__ import annotations

import asyncio
import json

from applydesk.models.session import ConnectionState
from applydesk.sync.session_channel import SessionChannel

from helpers import eventually, make_session


async def test_deleted_session_ends_channel_without_retry(backend) -> None:
    channel = SessionChannel("gone", ws_url=backend.ws_url, retry_delay=0.01, heartbeat_interval=0)
    channel.connect()

    await eventually(lambda: channel.state is ConnectionState.CLOSED_ERROR)
    await asyncio.sleep(0.05)

    assert channel.error == "Session not found"
    assert not channel.connection.reconnect_pending
    assert channel.state is ConnectionState.CLOSED_ERROR
    await channel.close()


async def test_status_events_update_progress_and_listeners(backend) -> None:
    backend.sessions["s-1"] = make_session("s-1", status="in_progress", current_step=3)
    channel = SessionChannel("s-1", ws_url=backend.ws_url, heartbeat_interval=0)
    updates = []
    channel.add_status_listener(lambda sid, payload: updates.append((sid, payload["status"])))

    channel.connect()
    await eventually(lambda: channel.progress is not None)

    assert channel.is_connected
    assert channel.status == "in_progress"
    assert channel.progress.step == 3
    assert channel.progress.fields_filled == 1
    assert channel.progress.total_steps == 5

    backend.sessions["s-1"]["status"] = "paused"
    assert await channel.request_status() is True
    await eventually(lambda: channel.status == "paused")

    assert updates == [("s-1", "in_progress"), ("s-1", "paused")]
    await channel.close()
    assert channel.state is ConnectionState.CLOSED_CLEAN


async def test_progress_event_updates_step_and_fields() -> None:
    channel = SessionChannel("s-1", ws_url="ws://backend.test")
    channel._on_message(json.dumps({"type": "connected", "payload": {"status": "in_progress"}}))
    channel._on_message(
        json.dumps(
            {"type": "progress", "payload": {"progress_percent": 60, "details": {"fields_filled": 4}}}
        )
    )

    assert channel.progress.step == 60
    assert channel.progress.fields_filled == 4
    assert channel.status == "in_progress"


async def test_malformed_session_frames_are_ignored() -> None:
    channel = SessionChannel("s-1", ws_url="ws://backend.test")
    channel._on_message("nope")
    channel._on_message(json.dumps({"payload": {}}))
    assert channel.progress is None


async def test_channels_for_different_sessions_are_independent(backend) -> None:
    backend.sessions["s-1"] = make_session("s-1")
    ok = SessionChannel("s-1", ws_url=backend.ws_url, heartbeat_interval=0)
    gone = SessionChannel("s-2", ws_url=backend.ws_url, heartbeat_interval=0)
    ok.connect()
    gone.connect()

    await eventually(lambda: ok.is_connected and gone.error is not None)

    assert ok.error is None
    assert gone.error == "Session not found"
    await ok.close()
    await gone.close()
