"""Request/response helpers shared by the API and auth routes."""

import json
from typing import Any, Dict, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from .config import AppConfig
from .domain import AuthError, PayloadTooLarge, Session
from .services import Notebook


def get_config(request: Request) -> AppConfig:
    return request.app.state.config


def get_notebook(request: Request) -> Notebook:
    return request.app.state.notebook


def json_ok(payload: Optional[Dict[str, Any]] = None, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"ok": True, **(payload or {})}, status_code=status_code)


def json_error(status_code: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse({"ok": False, "error": error, **extra}, status_code=status_code)


async def read_json(request: Request) -> Dict[str, Any]:
    """
    Parse a JSON object body; anything else reads as an empty object.

    The size limit is enforced while streaming, so chunked bodies without a
    ``Content-Length`` are held to it too.
    """
    limit = get_config(request).max_body_bytes
    raw = bytearray()
    async for chunk in request.stream():
        raw.extend(chunk)
        if len(raw) > limit:
            raise PayloadTooLarge()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def is_request_secure(request: Request) -> bool:
    config = get_config(request)
    if config.cookie_secure is not None:
        return config.cookie_secure
    if request.url.scheme == "https":
        return True
    if config.trust_proxy:
        proto = request.headers.get("x-forwarded-proto", "")
        return proto.split(",")[0].strip().lower() == "https"
    return False


def set_cookie(request: Request, response: Response, name: str, value: str, max_age: int) -> None:
    response.set_cookie(
        name,
        value,
        max_age=max(0, int(max_age)),
        path="/",
        httponly=True,
        samesite="lax",
        secure=is_request_secure(request),
    )


def clear_cookie(request: Request, response: Response, name: str) -> None:
    response.delete_cookie(
        name,
        path="/",
        httponly=True,
        samesite="lax",
        secure=is_request_secure(request),
    )


def current_session(request: Request) -> Session:
    """
    Resolve the caller's session from its cookie.

    Expired sessions are purged by the store and read as absent. When
    ``DEV_USER_ID`` is configured every request runs as that user.
    """
    config = get_config(request)
    if config.dev_user_id:
        return Session("dev", config.dev_user_id, "dev@example.com")
    session_id = request.cookies.get(config.session_cookie, "")
    session = get_notebook(request).sessions.get(session_id)
    if session is None:
        raise AuthError()
    return session
