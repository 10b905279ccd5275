"""In-process stand-in for the automation backend, plus small async test helpers."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Optional

from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

PREFIX = "/api/applications"
V2 = f"{PREFIX}/v2"


async def eventually(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01):
    """Wait until ``predicate()`` is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


def make_intervention(intervention_id: str, session_id: str = "s-1", **extra: Any) -> dict:
    data = {
        "id": intervention_id,
        "session_id": session_id,
        "intervention_type": "captcha",
        "status": "pending",
        "title": f"Help {intervention_id}",
        "description": "Solve the challenge",
        "created_at": "2026-01-01T10:00:00",
    }
    data.update(extra)
    return data


def make_session(session_id: str, status: str = "paused", **extra: Any) -> dict:
    data = {
        "session_id": session_id,
        "job_url": f"https://jobs.example.com/{session_id}",
        "status": status,
        "current_step": 2,
        "fields_filled": {"name": "Ada"},
        "created_at": "2026-01-01T09:00:00",
        "paused_at": None,
        "can_resume": status in ("paused", "needs_intervention"),
    }
    data.update(extra)
    return data


class FakeBackend:
    """REST and WebSocket endpoints with mutable in-memory state.

    Tests poke ``interventions``/``sessions`` directly, flip ``fail_*``
    switches, and push frames to connected sockets with ``broadcast``.
    """

    def __init__(self):
        self.interventions: list[dict] = []
        self.resolved: list[dict] = []
        self.sessions: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.received: list[str] = []
        self.fail_resolve: Optional[str] = None
        self.fail_list_interventions = False
        self.resume_status = "needs_intervention"
        self.feed_clients: list[web.WebSocketResponse] = []
        self.session_clients: dict[str, list[web.WebSocketResponse]] = {}
        self.server: Optional[TestServer] = None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(f"{V2}/ws/interventions", self.handle_feed)
        app.router.add_get(f"{V2}/ws/{{session_id}}", self.handle_session_ws)
        app.router.add_get(f"{V2}/interventions", self.handle_list_interventions)
        app.router.add_get(f"{V2}/interventions/{{id}}", self.handle_get_intervention)
        app.router.add_post(f"{V2}/interventions/{{id}}/resolve", self.handle_resolve)
        app.router.add_get(f"{V2}/sessions", self.handle_list_sessions)
        app.router.add_get(f"{V2}/sessions/{{id}}", self.handle_get_session)
        app.router.add_delete(f"{V2}/sessions/{{id}}", self.handle_delete_session)
        app.router.add_post(f"{V2}/sessions/{{id}}/resume", self.handle_resume)
        app.router.add_post(f"{V2}/sessions/{{id}}/mark-applied", self.handle_mark_applied)
        app.router.add_post(f"{PREFIX}/{{id}}/pause", self.handle_pause)
        app.router.add_post(f"{PREFIX}/{{id}}/submit", self.handle_submit)
        return app

    async def start(self):
        self.server = TestServer(self.create_app())
        await self.server.start_server()

    async def close(self):
        for ws in self.feed_clients + [w for ws in self.session_clients.values() for w in ws]:
            if not ws.closed:
                await ws.close()
        if self.server is not None:
            await self.server.close()

    @property
    def http_url(self) -> str:
        return f"http://{self.server.host}:{self.server.port}"

    @property
    def ws_url(self) -> str:
        # aiohttp's ws_connect accepts http URLs
        return self.http_url

    def _record(self, request: web.Request):
        self.calls.append((request.method, request.path))

    def count(self, method: str, path: str) -> int:
        return sum(1 for call in self.calls if call == (method, path))

    # ── Live channel ─────────────────────────────────────────────────────────

    def _snapshot(self, kind: str) -> dict:
        return {
            "type": kind,
            "payload": {
                "pending_count": len(self.interventions),
                "interventions": self.interventions,
            },
            "timestamp": "2026-01-01T10:00:00",
        }

    async def handle_feed(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.feed_clients.append(ws)
        await ws.send_json(self._snapshot("initial_state"))
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            self.received.append(msg.data)
            if msg.data == "ping":
                await ws.send_json({"type": "pong", "payload": {}})
            elif msg.data == "refresh":
                await ws.send_json(self._snapshot("refresh"))
        self.feed_clients.remove(ws)
        return ws

    async def handle_session_ws(self, request: web.Request) -> web.WebSocketResponse:
        session_id = request.match_info["session_id"]
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        session = self.sessions.get(session_id)
        if session is None:
            await ws.close(code=4004, message=b"Session not found")
            return ws

        self.session_clients.setdefault(session_id, []).append(ws)
        await ws.send_json({"type": "connected", "payload": self._status_payload(session)})
        async for msg in ws:
            if msg.type == WSMsgType.TEXT and msg.data == "status":
                session = self.sessions.get(session_id, session)
                await ws.send_json({"type": "status", "payload": self._status_payload(session)})
        self.session_clients[session_id].remove(ws)
        return ws

    @staticmethod
    def _status_payload(session: dict) -> dict:
        return {
            "session_id": session["session_id"],
            "status": session["status"],
            "current_step": session["current_step"],
            "fields_filled": len(session["fields_filled"]),
            "total_steps": 5,
            "blocker_type": None,
            "error": None,
        }

    async def broadcast(self, event_type: str, payload: dict):
        for ws in list(self.feed_clients):
            await ws.send_str(json.dumps({"type": event_type, "payload": payload}))

    async def drop_feed(self, code: int):
        for ws in list(self.feed_clients):
            await ws.close(code=code)

    # ── REST ─────────────────────────────────────────────────────────────────

    async def handle_list_interventions(self, request: web.Request) -> web.Response:
        self._record(request)
        if self.fail_list_interventions:
            return web.json_response({"detail": "Database unavailable"}, status=503)
        return web.json_response(self.interventions)

    async def handle_get_intervention(self, request: web.Request) -> web.Response:
        self._record(request)
        intervention_id = request.match_info["id"]
        for intervention in self.interventions + self.resolved:
            if intervention["id"] == intervention_id:
                return web.json_response(intervention)
        return web.json_response({"detail": "Intervention not found"}, status=404)

    async def handle_resolve(self, request: web.Request) -> web.Response:
        self._record(request)
        intervention_id = request.match_info["id"]
        if self.fail_resolve:
            return web.json_response({"detail": self.fail_resolve}, status=400)
        body = await request.json()
        matches = [i for i in self.interventions if i["id"] == intervention_id]
        if not matches:
            return web.json_response({"detail": "Intervention not found"}, status=404)
        self.interventions = [i for i in self.interventions if i["id"] != intervention_id]
        self.resolved.append(dict(matches[0], status="resolved"))
        await self.broadcast(
            "intervention_resolved",
            {"intervention_id": intervention_id, "action": body["action"]},
        )
        return web.json_response(
            {
                "status": "resolved",
                "intervention_id": intervention_id,
                "action": body["action"],
                "browser_closed": False,
            }
        )

    async def handle_list_sessions(self, request: web.Request) -> web.Response:
        self._record(request)
        sessions = list(self.sessions.values())
        if request.query.get("resumable_only") == "true":
            sessions = [s for s in sessions if s["can_resume"]]
        return web.json_response(sessions)

    async def handle_get_session(self, request: web.Request) -> web.Response:
        self._record(request)
        session = self.sessions.get(request.match_info["id"])
        if session is None:
            return web.json_response({"detail": "Session not found"}, status=404)
        return web.json_response(session)

    async def handle_delete_session(self, request: web.Request) -> web.Response:
        self._record(request)
        if self.sessions.pop(request.match_info["id"], None) is None:
            return web.json_response({"detail": "Session not found"}, status=404)
        return web.json_response({"status": "deleted"})

    async def handle_resume(self, request: web.Request) -> web.Response:
        self._record(request)
        session_id = request.match_info["id"]
        session = self.sessions.get(session_id)
        if session is None:
            return web.json_response({"detail": "Session not found"}, status=404)
        # resume runs in the background; the stored status is what the re-fetch sees
        session["status"] = self.resume_status
        session["can_resume"] = self.resume_status in ("paused", "needs_intervention")
        return web.json_response({"session_id": session_id, "status": "in_progress", "success": True})

    async def handle_mark_applied(self, request: web.Request) -> web.Response:
        self._record(request)
        session = self.sessions.get(request.match_info["id"])
        if session is None:
            return web.json_response({"detail": "Session not found"}, status=404)
        session["status"] = "submitted"
        session["can_resume"] = False
        return web.json_response(session)

    async def handle_pause(self, request: web.Request) -> web.Response:
        self._record(request)
        session_id = request.match_info["id"]
        session = self.sessions.get(session_id)
        if session is None:
            return web.json_response({"detail": "Application not found"}, status=404)
        session["status"] = "paused"
        session["can_resume"] = True
        return web.json_response({"session_id": session_id, "status": "paused"})

    async def handle_submit(self, request: web.Request) -> web.Response:
        self._record(request)
        session_id = request.match_info["id"]
        session = self.sessions.get(session_id)
        if session is None:
            return web.json_response({"detail": "Application not found"}, status=404)
        session["status"] = "submitted"
        session["can_resume"] = False
        return web.json_response({"session_id": session_id, "status": "submitted"})
