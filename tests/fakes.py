"""Fake identity provider and instrumented transports for testing.

FakePasshroom answers the three provider endpoints the way the real service
does: start records the state it was handed, /code answers with a redirect
back to the callback carrying an authorization code and that state, and the
token endpoint hands out an identity for codes it minted.

RecordingTransport sits between the client and the real app and counts save
requests, optionally slowing or failing them.
"""
import asyncio
import json
from typing import Callable, List, Optional
from urllib.parse import parse_qs, urlencode

import httpx

CALLBACK_URL = "https://notes.example.com/auth/passhroom/callback"


class FakePasshroom:
    """Callable handler for ``httpx.MockTransport``."""

    def __init__(self, callback_url: str = CALLBACK_URL):
        self.callback_url = callback_url
        self.requests: List[httpx.Request] = []
        self.states: List[str] = []
        self.cooldown = False
        self.start_status = 200
        self.auth_codes = {"AUTH1"}
        self.accepted_redirects: Optional[List[str]] = None
        self.token_status = 200
        self.identity = {"user_id": "ph-user-1", "email": "User@Example.com"}
        # Overrides the state echoed back by /code; defaults to the last one started.
        self.minted_state: Optional[str] = None

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]

    def token_requests(self) -> List[dict]:
        return [json.loads(r.content) for r in self.requests if r.url.path == "/v1/auth/token"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v1/auth/start":
            return self._start(json.loads(request.content))
        if path == "/code":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            return self._code(form)
        if path == "/v1/auth/token":
            return self._token(json.loads(request.content))
        return httpx.Response(404, text="not found")

    def _start(self, body: dict) -> httpx.Response:
        if self.cooldown:
            return httpx.Response(429, json={"status": "cooldown", "message": "Check your inbox."})
        if self.start_status != 200:
            return httpx.Response(self.start_status, text="boom")
        self.states.append(body["state"])
        return httpx.Response(200, json={"ok": True})

    def _code(self, form: dict) -> httpx.Response:
        code = form.get("code", "")
        if code == "used":
            return httpx.Response(400, text="Code already used")
        if code == "expired":
            return httpx.Response(400, text="Code expired")
        if code == "slow-down":
            return httpx.Response(429, text="Too many requests")
        if code != "123456":
            return httpx.Response(400, text="Invalid code")
        state = self.minted_state or (self.states[-1] if self.states else "no-state")
        location = f"{self.callback_url}?{urlencode({'code': 'AUTH1', 'state': state})}"
        return httpx.Response(302, headers={"location": location})

    def _token(self, body: dict) -> httpx.Response:
        if self.token_status != 200:
            return httpx.Response(self.token_status, json={"error": "invalid_client"})
        if body.get("code") not in self.auth_codes:
            return httpx.Response(400, json={"error": "invalid_grant"})
        if self.accepted_redirects is not None and body.get("redirect_uri") not in self.accepted_redirects:
            return httpx.Response(400, json={"error": "redirect_uri_mismatch"})
        return httpx.Response(200, json=self.identity)


class RecordingTransport(httpx.AsyncBaseTransport):
    """Forwards to the app in-process, recording actions and save concurrency."""

    def __init__(self, app, save_delay: float = 0.0):
        self.inner = httpx.ASGITransport(app=app)
        self.save_delay = save_delay
        self.fail_saves: Optional[Callable[[httpx.Request], Exception]] = None
        self.actions: List[str] = []
        self.saves_in_flight = 0
        self.max_saves_in_flight = 0

    def count(self, action: str) -> int:
        return self.actions.count(action)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        action = request.url.params.get("action", "")
        self.actions.append(action)
        if action != "save":
            return await self.inner.handle_async_request(request)
        if self.fail_saves is not None:
            raise self.fail_saves(request)
        self.saves_in_flight += 1
        self.max_saves_in_flight = max(self.max_saves_in_flight, self.saves_in_flight)
        try:
            if self.save_delay:
                await asyncio.sleep(self.save_delay)
            return await self.inner.handle_async_request(request)
        finally:
            self.saves_in_flight -= 1
