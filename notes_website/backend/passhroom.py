"""
HTTP client for the Passhroom login-code / magic-link identity provider.

The provider is treated as a black box with three endpoints:

- ``POST /v1/auth/start``  emails the user a login code and a magic link
- ``POST /code``           turns a human-readable login code into an
                           authorization code, answering with a redirect
- ``POST /v1/auth/token``  exchanges an authorization code for the user's identity

Every failure is reported as a ``PasshroomError`` whose ``code`` is one of the
keys of ``AUTH_ERROR_MESSAGES``.
"""

import logging
from typing import Iterable, List, Optional
from urllib.parse import parse_qs, urlsplit

import httpx

from .domain import UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0
CALLBACK_PATH = "/auth/passhroom/callback"

AUTH_ERROR_MESSAGES = {
    "bad_email": "Enter a valid email address.",
    "bad_code": "Enter the code from your sign-in email.",
    "rate_limited": "Too many attempts. Wait a moment and try again.",
    "code_used": "That code was already used. Request a new sign-in email.",
    "code_expired": "That code has expired. Request a new sign-in email.",
    "invalid_code": "That code is not valid. Check it and try again.",
    "bad_state": "This sign-in attempt is no longer valid. Start again from this browser.",
    "passhroom_client_secret_invalid": "Sign-in is misconfigured on the server (client credentials rejected).",
    "missing_passhroom_client_secret": "Sign-in is misconfigured on the server (no client secret).",
    "token_exchange_failed": "Could not complete sign-in. Start again.",
    "passhroom_start_failed": "Could not send the sign-in email. Try again.",
    "passhroom_code_failed": "The sign-in service could not check that code. Try again.",
    "passhroom_code_no_location": "The sign-in service gave an unexpected answer. Try again.",
    "passhroom_code_bad_location": "The sign-in service gave an unexpected answer. Try again later.",
    "passhroom_code_missing_params": "The sign-in service answered without a sign-in code. Try again.",
    "passhroom_unreachable": "The sign-in service is unreachable. Try again shortly.",
    "passhroom_timeout": "The sign-in service took too long to answer. Try again.",
}

# Failures after which the current sign-in attempt cannot be completed.
RESTART_ERRORS = frozenset({
    "code_used",
    "code_expired",
    "bad_state",
    "token_exchange_failed",
    "passhroom_client_secret_invalid",
})


def auth_error_message(code: str) -> str:
    return AUTH_ERROR_MESSAGES.get(code, f"Sign-in failed ({code}).")


class PasshroomError(UpstreamError):
    """A failed call to the identity provider, or a rejected sign-in."""

    def __init__(self, code: str, status: int = 502, restart: Optional[bool] = None):
        super().__init__(code, status)
        self._restart = restart

    @property
    def restart(self) -> bool:
        if self._restart is not None:
            return self._restart
        return self.code in RESTART_ERRORS

    def payload(self):
        return {
            "ok": False,
            "error": self.code,
            "message": auth_error_message(self.code),
            "restart": self.restart,
        }


class StartResult:
    def __init__(self, cooldown: bool = False, message: str = ""):
        self.cooldown = cooldown
        self.message = message


class MintedCode:
    """Authorization code minted from a login code, plus where the provider sent it."""

    def __init__(self, auth_code: str, state: str, redirect_uri: str):
        self.auth_code = auth_code
        self.state = state
        self.redirect_uri = redirect_uri


class IdentityToken:
    def __init__(self, user_id: str, email: str):
        self.user_id = user_id
        self.email = email


def redirect_uri_candidates(callback_url: str) -> List[str]:
    """
    Plausible spellings of the registered redirect URI, most likely first.

    Providers compare redirect URIs byte for byte, so the canonical callback is
    followed by slash variants, the bare origin and the explicit callback path.
    """
    candidates = [callback_url]
    parts = urlsplit(callback_url)
    if parts.scheme and parts.netloc:
        origin = f"{parts.scheme}://{parts.netloc}"
        candidates += [
            callback_url.rstrip("/"),
            callback_url if callback_url.endswith("/") else f"{callback_url}/",
            f"{origin}/",
            origin,
            f"{origin}{CALLBACK_PATH}",
            f"{origin}{CALLBACK_PATH}/",
        ]
    return _unique(candidates)


def _unique(values: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for value in values:
        value = str(value or "").strip()
        if value and value not in seen:
            seen.add(value)
            out.append(value)
    return out


def _json_or_none(response: httpx.Response):
    try:
        return response.json()
    except ValueError:
        return None


def _preview(response: httpx.Response, limit: int = 300) -> str:
    return (response.text or "")[:limit]


class PasshroomClient:
    """Thin async wrapper around the provider's HTTP API."""

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            follow_redirects=False,
        )

    @property
    def has_secret(self) -> bool:
        return bool(self.client_secret)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.post(path, **kwargs)
        except httpx.TimeoutException as e:
            logger.error("Passhroom %s timed out: %s", path, e)
            raise PasshroomError("passhroom_timeout", 504) from e
        except httpx.HTTPError as e:
            logger.error("Passhroom %s unreachable: %s", path, e)
            raise PasshroomError("passhroom_unreachable", 502) from e

    async def start(self, email: str, state: str, redirect_uri: str) -> StartResult:
        """Ask the provider to email a login code and magic link."""
        response = await self._post(
            "/v1/auth/start",
            json={
                "client_id": self.client_id,
                "email": email,
                "redirect_uri": redirect_uri,
                "state": state,
            },
        )
        if response.is_success:
            return StartResult()

        parsed = _json_or_none(response)
        if response.status_code == 429 and isinstance(parsed, dict) and parsed.get("status") == "cooldown":
            return StartResult(cooldown=True, message=str(parsed.get("message") or ""))
        logger.error("Passhroom start failed: %s %s", response.status_code, _preview(response))
        raise PasshroomError("passhroom_start_failed", 502)

    async def redeem_login_code(self, email: str, code: str) -> MintedCode:
        """Exchange the code a user typed for an authorization code and its state."""
        response = await self._post(
            "/code",
            data={"email": email.strip().lower(), "code": code},
        )

        if response.status_code in (302, 303):
            location = response.headers.get("location", "")
            if not location:
                raise PasshroomError("passhroom_code_no_location", 502)
            parts = urlsplit(location)
            if not parts.scheme or not parts.netloc:
                raise PasshroomError("passhroom_code_bad_location", 502)
            query = parse_qs(parts.query)
            auth_code = (query.get("code") or [""])[0]
            state = (query.get("state") or [""])[0]
            if not auth_code or not state:
                raise PasshroomError("passhroom_code_missing_params", 502)
            return MintedCode(auth_code, state, f"{parts.scheme}://{parts.netloc}{parts.path}")

        if response.status_code == 429:
            raise PasshroomError("rate_limited", 429)
        if response.status_code == 400:
            text = _preview(response, 400).lower()
            if "already used" in text:
                raise PasshroomError("code_used", 400)
            if "expired" in text:
                raise PasshroomError("code_expired", 400)
            raise PasshroomError("invalid_code", 400)

        logger.error("Passhroom /code failed: %s %s", response.status_code, _preview(response))
        raise PasshroomError("passhroom_code_failed", 502)

    async def exchange_token(self, code: str, redirect_uris: List[str]) -> IdentityToken:
        """
        Trade an authorization code for the user's identity.

        Redirect URIs are tried in order and the first accepted one wins. A 401
        or 403 means our client credentials are wrong, so no further variants
        are attempted.
        """
        last_status = 0
        last_error = ""
        last_preview = ""
        for redirect_uri in redirect_uris:
            response = await self._post(
                "/v1/auth/token",
                json={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "code": code,
                    "redirect_uri": redirect_uri,
                },
            )
            parsed = _json_or_none(response)
            if response.is_success and isinstance(parsed, dict) and parsed.get("user_id"):
                if redirect_uri != redirect_uris[0]:
                    logger.warning("Passhroom token accepted redirect_uri variant %s", redirect_uri)
                else:
                    logger.info("Passhroom token accepted redirect_uri %s", redirect_uri)
                return IdentityToken(str(parsed["user_id"]), str(parsed.get("email") or "").lower())

            last_status = response.status_code
            last_preview = _preview(response)
            if isinstance(parsed, dict) and isinstance(parsed.get("error"), str):
                last_error = parsed["error"]
            if response.status_code in (401, 403):
                logger.error("Passhroom token rejected client credentials: %s %s", last_status, last_preview)
                raise PasshroomError("passhroom_client_secret_invalid", 500)

        logger.error("Passhroom token failed: %s tried_redirect_uris=%s %s",
                     last_status, redirect_uris, last_preview)
        status = last_status if 400 <= last_status < 600 else 400
        raise PasshroomError(last_error or "token_exchange_failed", status, restart=True)
