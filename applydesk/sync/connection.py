"""Live duplex channel to the backend: connect, heartbeat, reconnect, shutdown.

Reconnect policy:
    The long-lived intervention feed retries forever on a fixed interval
    with a little random jitter so a fleet of tabs does not reconnect in
    lockstep. Session-scoped channels pass ``linear_backoff=True`` and a
    ``max_retries`` budget: attempt N waits ``N * reconnect_interval`` and
    once the budget is spent the channel stays closed with
    ``error == "Connection failed"``.

Close codes:
    1000 (either side) or a ``close()`` call is a clean shutdown, 4004 means
    the resource is gone and is terminal, anything else is an error close
    that schedules a reconnect.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import sys
from typing import Callable, Optional

import aiohttp

from ..config import (
    AUTO_RECONNECT,
    HEARTBEAT_INTERVAL_SECONDS,
    RECONNECT_INTERVAL_SECONDS,
    RECONNECT_JITTER,
)
from ..constants import (
    CLOSE_ABNORMAL,
    CLOSE_GOING_AWAY,
    CLOSE_NORMAL,
    CLOSE_NOT_FOUND,
    CMD_PING,
    ERROR_CONNECTION_FAILED,
    ERROR_CONNECTION_LOST,
    ERROR_FAILED_TO_CONNECT,
    ERROR_NOT_FOUND,
)
from ..models.session import ConnectionState
from .listeners import Listeners

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class ConnectionManager:
    """Owns one WebSocket to a fixed backend URL.

    Nothing here raises into callers: failures show up in ``state`` and
    ``error`` and are published to state listeners.
    """

    def __init__(
        self,
        url: str,
        on_message: Optional[Callable[[str], None]] = None,
        auto_reconnect: bool = AUTO_RECONNECT,
        reconnect_interval: float = RECONNECT_INTERVAL_SECONDS,
        jitter: float = RECONNECT_JITTER,
        linear_backoff: bool = False,
        max_retries: Optional[int] = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        liveness_timeout: Optional[float] = None,
        not_found_message: str = ERROR_NOT_FOUND,
        session: Optional[aiohttp.ClientSession] = None,
        name: str = "channel",
    ):
        self.url = url
        self.name = name
        self.auto_reconnect = auto_reconnect
        self.reconnect_interval = reconnect_interval
        self.jitter = jitter
        self.linear_backoff = linear_backoff
        self.max_retries = max_retries
        self.heartbeat_interval = heartbeat_interval
        self.liveness_timeout = liveness_timeout
        self.not_found_message = not_found_message

        self.state = ConnectionState.CLOSED_CLEAN
        self.error: Optional[str] = None
        self.retries = 0

        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closing = False
        self._stale = False
        self._last_inbound = 0.0

        self._message_listeners = Listeners(f"{name} message")
        self._state_listeners = Listeners(f"{name} state")
        if on_message is not None:
            self._message_listeners.add(on_message)

    # ── Observation ──────────────────────────────────────────────────────────

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.OPEN

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def add_message_listener(self, callback: Callable[[str], None]) -> Callable[[], None]:
        return self._message_listeners.add(callback)

    def add_state_listener(
        self, callback: Callable[[ConnectionState], None]
    ) -> Callable[[], None]:
        return self._state_listeners.add(callback)

    def _set_state(self, state: ConnectionState):
        if state is self.state:
            return
        logger.debug(f"[{self.name}] {self.state.value} -> {state.value}")
        self.state = state
        self._state_listeners.notify(state)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def connect(self) -> None:
        """Open the channel unless it is already open or opening."""
        if self.state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            return
        loop = asyncio.get_running_loop()
        self._cancel_reconnect()
        self._closing = False
        self._stale = False
        self._set_state(ConnectionState.CONNECTING)
        self._task = loop.create_task(self._run(), name=f"applydesk-{self.name}")

    async def close(self) -> None:
        """Clean shutdown. Suppresses reconnect and stops every timer."""
        self._closing = True
        self._cancel_reconnect()
        self._cancel_heartbeat()

        ws = self._ws
        if ws is not None and not ws.closed:
            try:
                await ws.close(code=CLOSE_NORMAL, message=b"Client closed")
            except (aiohttp.ClientError, OSError) as e:
                logger.debug(f"[{self.name}] error while closing: {e}")

        task = self._task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._task = None
        self._ws = None

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

        self._set_state(ConnectionState.CLOSED_CLEAN)

    async def send(self, command: str) -> bool:
        """Send a plain-string control frame. Returns False instead of raising."""
        ws = self._ws
        if ws is None or ws.closed or self.state is not ConnectionState.OPEN:
            return False
        try:
            await ws.send_str(command)
            return True
        except (aiohttp.ClientError, OSError) as e:
            logger.warning(f"[{self.name}] failed to send {command!r}: {e}")
            return False

    # ── Channel task ─────────────────────────────────────────────────────────

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _run(self):
        try:
            ws = await self._get_session().ws_connect(self.url)
        except aiohttp.WSServerHandshakeError as e:
            logger.warning(f"[{self.name}] handshake with {self.url} rejected: HTTP {e.status}")
            self._handle_close(CLOSE_NOT_FOUND if e.status == 404 else None, opened=False)
            return
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"[{self.name}] could not connect to {self.url}: {e}")
            self._handle_close(None, opened=False)
            return

        if self._closing:
            await ws.close(code=CLOSE_NORMAL)
            return

        self._ws = ws
        self._on_open()

        async for msg in ws:
            self._last_inbound = asyncio.get_running_loop().time()
            if msg.type == aiohttp.WSMsgType.TEXT:
                self._message_listeners.notify(msg.data)
            elif msg.type == aiohttp.WSMsgType.BINARY:
                self._message_listeners.notify(msg.data.decode("utf-8", errors="replace"))
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning(f"[{self.name}] channel error: {ws.exception()}")
                break

        if not ws.closed and not self._closing:
            with contextlib.suppress(aiohttp.ClientError, OSError):
                await ws.close()

        code = CLOSE_ABNORMAL if self._stale else ws.close_code
        self._handle_close(code, opened=True)

    def _on_open(self):
        logger.info(f"[{self.name}] connected to {self.url}")
        self.retries = 0
        self.error = None
        self._cancel_reconnect()
        self._last_inbound = asyncio.get_running_loop().time()
        self._set_state(ConnectionState.OPEN)
        if self.heartbeat_interval > 0:
            self._heartbeat_task = asyncio.get_running_loop().create_task(self._heartbeat())

    def _handle_close(self, code: Optional[int], opened: bool):
        self._ws = None
        self._cancel_heartbeat()

        if self._closing or code == CLOSE_NORMAL:
            logger.info(f"[{self.name}] closed cleanly")
            self._set_state(ConnectionState.CLOSED_CLEAN)
            return

        if code == CLOSE_NOT_FOUND:
            logger.warning(f"[{self.name}] backend reports resource not found, not retrying")
            self.error = self.not_found_message
            self._set_state(ConnectionState.CLOSED_ERROR)
            return

        if code != CLOSE_GOING_AWAY:
            self.error = ERROR_CONNECTION_LOST if opened else ERROR_FAILED_TO_CONNECT

        retry = self.auto_reconnect
        if retry and self.max_retries is not None and self.retries >= self.max_retries:
            logger.error(f"[{self.name}] giving up after {self.retries} reconnect attempts")
            self.error = ERROR_CONNECTION_FAILED
            retry = False

        logger.info(f"[{self.name}] closed with code {code}")
        self._set_state(ConnectionState.CLOSED_ERROR)
        if retry:
            self._schedule_reconnect()

    # ── Timers ───────────────────────────────────────────────────────────────

    def _next_delay(self) -> float:
        base = self.reconnect_interval
        if self.linear_backoff:
            base *= max(1, self.retries)
        if self.jitter > 0:
            base += random.uniform(0, self.jitter * base)
        return base

    def _schedule_reconnect(self):
        self.retries += 1
        delay = self._next_delay()
        logger.info(f"[{self.name}] reconnecting in {delay:.1f}s (attempt {self.retries})")
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_after(delay)
        )

    async def _reconnect_after(self, delay: float):
        await asyncio.sleep(delay)
        self._reconnect_task = None
        if not self._closing:
            self.connect()

    def _cancel_reconnect(self):
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _heartbeat(self):
        loop = asyncio.get_running_loop()
        while self.state is ConnectionState.OPEN:
            await asyncio.sleep(self.heartbeat_interval)
            if self.state is not ConnectionState.OPEN:
                return
            if (
                self.liveness_timeout is not None
                and loop.time() - self._last_inbound > self.liveness_timeout
            ):
                logger.warning(f"[{self.name}] no traffic for {self.liveness_timeout}s, dropping")
                self._stale = True
                ws = self._ws
                if ws is not None:
                    with contextlib.suppress(aiohttp.ClientError, OSError):
                        await ws.close(code=CLOSE_GOING_AWAY)
                return
            await self.send(CMD_PING)

    def _cancel_heartbeat(self):
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
