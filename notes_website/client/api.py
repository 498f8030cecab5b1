"""
Async HTTP client for the notes website API.

Every call has a bounded wait. Failures raise ``ApiError``; a deadline that
passes surfaces as ``status=0, error="timeout"`` so callers can tell it apart
from a server answer.
"""

import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

READ_TIMEOUT = 15.0
SAVE_TIMEOUT = 25.0


class ApiError(Exception):
    """A request that did not produce a successful JSON answer."""

    def __init__(self, status: int, error: str, data: Optional[Dict[str, Any]] = None,
                 request: Optional[Dict[str, Any]] = None):
        super().__init__(error)
        self.status = status
        self.error = error
        self.data = data or {}
        self.request = request or {}

    @property
    def is_timeout(self) -> bool:
        return self.error == "timeout"

    @property
    def is_conflict(self) -> bool:
        return self.status == 409 and self.data.get("error") == "conflict"


def format_api_error(e: Exception) -> str:
    """Render an error for the banner, e.g. ``not_found (HTTP 404)``."""
    status = getattr(e, "status", 0)
    code = getattr(e, "error", "") or str(e)
    if status and code:
        return f"{code} (HTTP {status})"
    if status:
        return f"HTTP {status}"
    return code or "error"


class NotesApi:
    """Talks to ``/api?action=...`` and the Passhroom sign-in routes."""

    def __init__(self, base_url: str = "", *, transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: float = READ_TIMEOUT):
        self.timeout = timeout
        self._client = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def call(self, action: str, query: Optional[Dict[str, Any]] = None, *, method: str = "GET",
                   body: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Dict[str, Any]:
        params = {"action": action}
        for key, value in (query or {}).items():
            if value is not None:
                params[key] = str(value)
        info = {"action": action, "method": method, "query": query or {}}
        logger.debug("api %s", info)
        return await self._request(method, "/api", params=params, body=body, timeout=timeout, info=info)

    async def _request(self, method: str, url: str, *, params=None, body=None,
                       timeout: Optional[float] = None, info: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._client.request(
                method, url, params=params, json=body, timeout=timeout or self.timeout
            )
        except httpx.TimeoutException as e:
            raise ApiError(0, "timeout", {"ok": False, "error": "timeout"}, info) from e
        except httpx.HTTPError as e:
            raise ApiError(0, "network_error", {"ok": False, "error": "network_error"}, info) from e

        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            snippet = " ".join(response.text[:200].split())
            raise ApiError(
                response.status_code,
                "non_json_response",
                {"error": "non_json_response", "contentType": content_type, "snippet": snippet},
                info,
            )
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if not response.is_success:
            raise ApiError(response.status_code, data.get("error") or f"http_{response.status_code}", data, info)
        return data

    # Session

    async def login(self) -> Dict[str, Any]:
        return await self.call("login", method="POST", body={})

    async def logout(self) -> Dict[str, Any]:
        return await self.call("logout", method="POST", body={})

    async def start_sign_in(self, email: str) -> Dict[str, Any]:
        return await self._request("POST", "/auth/passhroom/start", body={"email": email},
                                   info={"action": "passhroom_start", "method": "POST"})

    async def sign_in_with_code(self, email: str, code: str) -> Dict[str, Any]:
        return await self._request("POST", "/auth/passhroom/code", body={"email": email, "code": code},
                                   info={"action": "passhroom_code", "method": "POST"})

    # Notes

    async def list_notes(self) -> Dict[str, Any]:
        return await self.call("list")

    async def get_note(self, note_id: str) -> Dict[str, Any]:
        return await self.call("get", {"id": note_id})

    async def create_note(self, title: str = "Untitled") -> Dict[str, Any]:
        return await self.call("create", method="POST", body={"title": title})

    async def save_note(self, note_id: str, title: str, content: str, base_revision: int,
                        force: bool = False, timeout: float = SAVE_TIMEOUT) -> Dict[str, Any]:
        return await self.call(
            "save",
            {"id": note_id},
            method="POST",
            body={"title": title, "content": content, "baseRevision": base_revision, "force": bool(force)},
            timeout=timeout,
        )

    async def delete_note(self, note_id: str) -> Dict[str, Any]:
        return await self.call("delete", {"id": note_id}, method="POST", body={})
