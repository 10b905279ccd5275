from __future__ import annotations

import asyncio
import json

from aiohttp.test_utils import unused_port

from applydesk.models.session import ConnectionState
from applydesk.sync.connection import ConnectionManager

from helpers import V2, eventually, make_intervention, make_session


def _feed(backend, **kwargs) -> tuple[ConnectionManager, list[dict]]:
    messages: list[dict] = []
    kwargs.setdefault("reconnect_interval", 0.05)
    kwargs.setdefault("jitter", 0.0)
    kwargs.setdefault("heartbeat_interval", 0)
    conn = ConnectionManager(
        backend.ws_url + f"{V2}/ws/interventions",
        on_message=lambda raw: messages.append(json.loads(raw)),
        name="test-feed",
        **kwargs,
    )
    return conn, messages


async def test_connect_receives_initial_state_and_closes_cleanly(backend) -> None:
    backend.interventions = [make_intervention("a")]
    conn, messages = _feed(backend)
    states = []
    conn.add_state_listener(states.append)

    conn.connect()
    await eventually(lambda: messages)

    assert conn.state is ConnectionState.OPEN
    assert conn.is_connected
    assert messages[0]["type"] == "initial_state"
    assert messages[0]["payload"]["pending_count"] == 1

    await conn.close()

    assert conn.state is ConnectionState.CLOSED_CLEAN
    assert conn.error is None
    assert not conn.reconnect_pending
    assert states == [ConnectionState.CONNECTING, ConnectionState.OPEN, ConnectionState.CLOSED_CLEAN]


async def test_connect_is_a_no_op_while_open(backend) -> None:
    conn, _ = _feed(backend)
    conn.connect()
    await eventually(lambda: conn.is_connected)

    conn.connect()
    await asyncio.sleep(0.05)

    assert len(backend.feed_clients) == 1
    await conn.close()


async def test_server_normal_close_does_not_reconnect(backend) -> None:
    conn, _ = _feed(backend)
    conn.connect()
    await eventually(lambda: conn.is_connected)

    await backend.drop_feed(1000)
    await eventually(lambda: conn.state is ConnectionState.CLOSED_CLEAN)

    assert conn.error is None
    assert not conn.reconnect_pending
    await conn.close()


async def test_abnormal_close_reconnects(backend) -> None:
    conn, messages = _feed(backend, reconnect_interval=0.3)
    conn.connect()
    await eventually(lambda: conn.is_connected)

    await backend.drop_feed(1011)
    await eventually(lambda: conn.state is ConnectionState.CLOSED_ERROR)
    assert conn.error == "Connection lost"
    assert conn.reconnect_pending

    await eventually(lambda: conn.is_connected)
    assert conn.error is None
    assert conn.retries == 0
    assert len([m for m in messages if m["type"] == "initial_state"]) == 2
    await conn.close()


async def test_going_away_reconnects_without_error(backend) -> None:
    conn, _ = _feed(backend, reconnect_interval=1.0)
    conn.connect()
    await eventually(lambda: conn.is_connected)

    await backend.drop_feed(1001)
    await eventually(lambda: conn.state is ConnectionState.CLOSED_ERROR)

    assert conn.error is None
    assert conn.reconnect_pending
    await conn.close()
    assert not conn.reconnect_pending


async def test_close_during_reconnect_wait_cancels_reconnect(backend) -> None:
    conn, _ = _feed(backend, reconnect_interval=0.1)
    conn.connect()
    await eventually(lambda: conn.is_connected)
    await backend.drop_feed(1011)
    await eventually(lambda: conn.reconnect_pending)

    await conn.close()
    await asyncio.sleep(0.25)

    assert conn.state is ConnectionState.CLOSED_CLEAN
    assert backend.feed_clients == []


async def test_heartbeat_sends_ping(backend) -> None:
    conn, messages = _feed(backend, heartbeat_interval=0.05)
    conn.connect()

    await eventually(lambda: any(m["type"] == "pong" for m in messages))

    assert "ping" in backend.received
    await conn.close()


async def test_send_while_closed_returns_false(backend) -> None:
    conn, _ = _feed(backend)
    assert await conn.send("refresh") is False


async def test_unreachable_backend_gives_up_after_budget() -> None:
    conn = ConnectionManager(
        f"http://127.0.0.1:{unused_port()}/ws",
        reconnect_interval=0.01,
        jitter=0.0,
        linear_backoff=True,
        max_retries=2,
        heartbeat_interval=0,
    )
    errors = []
    conn.add_state_listener(lambda state: errors.append(conn.error))

    conn.connect()
    await eventually(lambda: conn.error == "Connection failed")

    assert conn.state is ConnectionState.CLOSED_ERROR
    assert not conn.reconnect_pending
    assert conn.retries == 2
    assert "Failed to connect" in errors
    await conn.close()


async def test_not_found_close_is_terminal(backend) -> None:
    conn = ConnectionManager(
        backend.ws_url + f"{V2}/ws/missing",
        reconnect_interval=0.01,
        heartbeat_interval=0,
        not_found_message="Session not found",
    )
    conn.connect()

    await eventually(lambda: conn.state is ConnectionState.CLOSED_ERROR)
    await asyncio.sleep(0.05)

    assert conn.error == "Session not found"
    assert not conn.reconnect_pending
    assert conn.retries == 0
    await conn.close()


async def test_existing_session_socket_stays_open(backend) -> None:
    backend.sessions["s-1"] = make_session("s-1")
    messages = []
    conn = ConnectionManager(
        backend.ws_url + f"{V2}/ws/s-1",
        on_message=messages.append,
        heartbeat_interval=0,
    )
    conn.connect()
    await eventually(lambda: messages)

    assert conn.is_connected
    assert json.loads(messages[0])["type"] == "connected"
    await conn.close()
