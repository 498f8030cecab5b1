"""
Sign-in through the Passhroom identity provider.

A sign-in attempt starts by emailing the user and storing a random
anti-forgery state in a short-lived cookie. It completes either when the user
pastes the emailed code or when the magic link redirects back with
``code``/``state``. In both cases the state handed back by the provider must
equal the cookie before any token exchange happens, and the cookie is dropped
once the attempt succeeds or can no longer succeed.
"""

import hmac
import logging
from typing import List

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from pydantic import BaseModel, ValidationError

from .models import CodeSignIn, StartSignIn
from .passhroom import IdentityToken, PasshroomClient, PasshroomError, redirect_uri_candidates
from .utils import make_id
from .web import clear_cookie, get_config, get_notebook, json_ok, read_json, set_cookie

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_EMAIL_LENGTH = 254
MAX_CODE_LENGTH = 2048

# Upstream trouble worth retrying with the same sign-in attempt.
TRANSIENT_ERRORS = frozenset({"passhroom_unreachable", "passhroom_timeout"})


def get_passhroom(request: Request) -> PasshroomClient:
    return request.app.state.passhroom


def _body(model, data) -> BaseModel:
    try:
        return model.model_validate(data)
    except ValidationError:
        return model()


def _clean_email(value) -> str:
    email = str(value or "").strip().lower()
    if not email or "@" not in email or len(email) > MAX_EMAIL_LENGTH:
        raise PasshroomError("bad_email", 400)
    return email


def _states_match(expected: str, received: str) -> bool:
    if not expected or not received:
        return False
    return hmac.compare_digest(expected.encode(), received.encode())


def _redirect_uris(request: Request) -> List[str]:
    config = get_config(request)
    if config.passhroom_redirect_uris:
        return list(config.passhroom_redirect_uris)
    return redirect_uri_candidates(config.callback_url)


def _failure(request: Request, error: PasshroomError, clear_state: bool) -> JSONResponse:
    response = JSONResponse(error.payload(), status_code=error.status)
    if clear_state:
        clear_cookie(request, response, get_config(request).state_cookie)
    return response


def _issue_session(request: Request, response: Response, token: IdentityToken) -> None:
    config = get_config(request)
    sessions = get_notebook(request).sessions
    sessions.upsert_user(token.user_id, token.email)
    session = sessions.create(token.user_id, token.email)
    set_cookie(request, response, config.session_cookie, session.id, config.session_ttl_seconds)
    clear_cookie(request, response, config.state_cookie)
    logger.info("Signed in passhroom user %s", token.user_id)


@router.post("/auth/passhroom/start")
async def start_sign_in(request: Request):
    """Email the user a login code and magic link, binding the attempt to a state cookie."""
    config = get_config(request)
    body = _body(StartSignIn, await read_json(request))
    try:
        email = _clean_email(body.email)
        state = make_id()
        result = await get_passhroom(request).start(email, state, config.callback_url)
    except PasshroomError as e:
        return _failure(request, e, clear_state=False)

    if result.cooldown:
        return json_ok({"cooldown": True, "message": result.message})

    response = json_ok()
    set_cookie(request, response, config.state_cookie, state, config.state_ttl_seconds)
    return response


@router.post("/auth/passhroom/code")
async def sign_in_with_code(request: Request):
    """Complete a sign-in attempt from the code the user pasted."""
    config = get_config(request)
    passhroom = get_passhroom(request)
    body = _body(CodeSignIn, await read_json(request))
    try:
        email = _clean_email(body.email)
        code = body.code.strip()
        if not code or len(code) > MAX_CODE_LENGTH:
            raise PasshroomError("bad_code", 400)
        if not passhroom.has_secret:
            raise PasshroomError("missing_passhroom_client_secret", 500)
    except PasshroomError as e:
        return _failure(request, e, clear_state=False)

    try:
        minted = await passhroom.redeem_login_code(email, code)
    except PasshroomError as e:
        return _failure(request, e, clear_state=e.restart)

    expected = request.cookies.get(config.state_cookie, "")
    if not _states_match(expected, minted.state):
        logger.warning("Rejected code sign-in: state mismatch (cookie present: %s)", bool(expected))
        return _failure(request, PasshroomError("bad_state", 400), clear_state=True)

    try:
        token = await passhroom.exchange_token(minted.auth_code, [minted.redirect_uri])
    except PasshroomError as e:
        return _failure(request, e, clear_state=e.code not in TRANSIENT_ERRORS)

    response = json_ok()
    _issue_session(request, response, token)
    return response


async def passhroom_callback(request: Request):
    """Finish a magic-link sign-in; browsers land here, so answers are redirects or plain text."""
    config = get_config(request)
    passhroom = get_passhroom(request)
    code = request.query_params.get("code", "")
    state = request.query_params.get("state", "")
    expected = request.cookies.get(config.state_cookie, "")
    logger.info(
        "Passhroom callback host=%s proto=%s has_code=%s has_state=%s has_state_cookie=%s",
        request.headers.get("host", ""),
        request.headers.get("x-forwarded-proto", ""),
        bool(code), bool(state), bool(expected),
    )

    if not code or not state:
        return RedirectResponse("/", status_code=302)

    def fail(text: str, status_code: int) -> PlainTextResponse:
        response = PlainTextResponse(text, status_code=status_code)
        clear_cookie(request, response, config.state_cookie)
        return response

    if not _states_match(expected, state):
        return fail("bad_state", 400)
    if not passhroom.has_secret:
        return fail("missing_passhroom_client_secret", 500)

    try:
        token = await passhroom.exchange_token(code, _redirect_uris(request))
    except PasshroomError as e:
        if e.code in TRANSIENT_ERRORS or e.code == "passhroom_client_secret_invalid":
            return fail(e.code, e.status)
        return fail("token_exchange_failed", 400)

    response = RedirectResponse("/", status_code=302)
    _issue_session(request, response, token)
    return response


router.add_api_route("/auth/passhroom/callback", passhroom_callback, methods=["GET"])
