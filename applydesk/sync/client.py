"""Async HTTP client for the automation backend's request/response endpoints."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from ..config import API_URL, HTTP_TIMEOUT
from ..constants import (
    INTERVENTION_PATH,
    INTERVENTIONS_PATH,
    MARK_APPLIED_PATH,
    PAUSE_APPLICATION_PATH,
    RESOLVE_INTERVENTION_PATH,
    RESUME_SESSION_PATH,
    SESSION_PATH,
    SESSIONS_PATH,
    SUBMIT_APPLICATION_PATH,
)
from ..models.intervention import Intervention, ResolveAction, ResolveRequest, ResolveResult
from ..models.session import (
    ApplicationResponse,
    ResumeOptions,
    SessionDetail,
    SessionSummary,
    StatusResponse,
)

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class BackendError(Exception):
    """A request to the backend failed or returned something unusable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NotFoundError(BackendError):
    """The backend answered 404 for the requested resource."""


class BackendClient:
    """Talks to the intervention/session REST API.

    Reads (GET) are retried on connection errors and 5xx responses; commands
    are sent once, since resolving or resuming twice is not harmless.
    """

    def __init__(
        self,
        base_url: str = API_URL,
        timeout: float = HTTP_TIMEOUT,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._get_client()
        return self

    async def __aexit__(self, *args):
        await self.aclose()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers={"Accept": "application/json"},
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    # ── Transport ────────────────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Any:
        client = self._get_client()
        attempts = self._max_attempts if method == "GET" else 1

        for attempt in range(attempts):
            try:
                response = await client.request(method, path, json=json_body, params=params)
                response.raise_for_status()
                if not response.content:
                    return {}
                return response.json()

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                message = _error_message(e.response)
                if status == 404:
                    raise NotFoundError(message, status) from e
                if status == 429 and attempt + 1 < attempts:
                    wait = (attempt + 1) * self._retry_delay
                    logger.warning(f"Rate limited (429) on {path}, waiting {wait}s...")
                    await asyncio.sleep(wait)
                elif status >= 500 and attempt + 1 < attempts:
                    logger.warning(f"Server error {status} on {method} {path}, retrying...")
                    await asyncio.sleep(self._retry_delay)
                else:
                    logger.error(f"HTTP {status} for {method} {path}: {message}")
                    raise BackendError(message, status) from e

            except httpx.ConnectError as e:
                if attempt + 1 < attempts:
                    logger.warning(f"Connection error on attempt {attempt + 1}: {e}")
                    await asyncio.sleep(self._retry_delay)
                    continue
                raise BackendError(f"Backend is not reachable at {self._base_url}") from e

            except httpx.TimeoutException as e:
                raise BackendError(f"Backend timed out on {method} {path}") from e

            except ValueError as e:
                raise BackendError(f"Invalid JSON from {method} {path}") from e

        raise BackendError(f"Failed {method} {path} after {attempts} attempts.")

    # ── Interventions ────────────────────────────────────────────────────────

    async def list_interventions(self) -> list[Intervention]:
        data = await self._request("GET", INTERVENTIONS_PATH)
        return _parse_list(Intervention, data, INTERVENTIONS_PATH)

    async def get_intervention(self, intervention_id: str) -> Intervention:
        path = INTERVENTION_PATH.format(intervention_id=intervention_id)
        return _parse(Intervention, await self._request("GET", path), path)

    async def resolve_intervention(
        self,
        intervention_id: str,
        action: ResolveAction | str,
        notes: Optional[str] = None,
        close_browser: Optional[bool] = None,
    ) -> ResolveResult:
        path = RESOLVE_INTERVENTION_PATH.format(intervention_id=intervention_id)
        body = ResolveRequest(action=action, notes=notes, close_browser=close_browser)
        data = await self._request("POST", path, body.model_dump(mode="json", exclude_none=True))
        data.setdefault("intervention_id", intervention_id)
        data.setdefault("action", body.action.value)
        return _parse(ResolveResult, data, path)

    # ── Sessions ─────────────────────────────────────────────────────────────

    async def list_sessions(self, resumable_only: bool = False) -> list[SessionSummary]:
        params = {"resumable_only": "true" if resumable_only else "false"}
        data = await self._request("GET", SESSIONS_PATH, params=params)
        return _parse_list(SessionSummary, data, SESSIONS_PATH)

    async def get_session(self, session_id: str) -> SessionDetail:
        path = SESSION_PATH.format(session_id=session_id)
        return _parse(SessionDetail, await self._request("GET", path), path)

    async def resume_session(
        self, session_id: str, options: Optional[ResumeOptions] = None
    ) -> ApplicationResponse:
        path = RESUME_SESSION_PATH.format(session_id=session_id)
        body = (options or ResumeOptions()).model_dump()
        return _parse(ApplicationResponse, await self._request("POST", path, body), path)

    async def pause_session(self, session_id: str) -> StatusResponse:
        path = PAUSE_APPLICATION_PATH.format(session_id=session_id)
        return _parse(StatusResponse, await self._request("POST", path), path)

    async def submit_session(self, session_id: str) -> StatusResponse:
        path = SUBMIT_APPLICATION_PATH.format(session_id=session_id)
        return _parse(StatusResponse, await self._request("POST", path), path)

    async def mark_applied(self, session_id: str) -> SessionSummary:
        path = MARK_APPLIED_PATH.format(session_id=session_id)
        data = await self._request("POST", path)
        data.setdefault("session_id", session_id)
        return _parse(SessionSummary, data, path)

    async def delete_session(self, session_id: str) -> dict:
        path = SESSION_PATH.format(session_id=session_id)
        return await self._request("DELETE", path)


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(data, dict):
        return str(data.get("detail") or data.get("error") or f"HTTP {response.status_code}")
    return f"HTTP {response.status_code}"


def _parse(model, data: Any, path: str):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise BackendError(f"Malformed response from {path}: {e.error_count()} errors") from e


def _parse_list(model, data: Any, path: str) -> list:
    if not isinstance(data, list):
        raise BackendError(f"Malformed response from {path}: expected a list")
    return [_parse(model, item, path) for item in data]
