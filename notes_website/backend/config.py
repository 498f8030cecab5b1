"""Configuration for the notes website backend."""

import logging
import os
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlsplit

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent


def _env_list(name: str) -> List[str]:
    return [part.strip() for part in os.getenv(name, "").split(",") if part.strip()]


def _env_flag(name: str) -> Optional[bool]:
    raw = os.getenv(name, "").strip()
    if raw == "1":
        return True
    if raw == "0":
        return False
    return None


class AppConfig(BaseModel):
    """Settings for the API server, read from the environment by default."""

    database_path: str = Field(
        default_factory=lambda: os.getenv("NOTES_DATABASE_PATH", "notes.db")
    )

    # Passhroom identity provider
    passhroom_base_url: str = Field(
        default_factory=lambda: os.getenv("PASSHROOM_BASE_URL", "").strip()
    )
    passhroom_client_id: str = Field(
        default_factory=lambda: os.getenv("PASSHROOM_CLIENT_ID", "").strip()
    )
    passhroom_client_secret: str = Field(
        default_factory=lambda: os.getenv("PASSHROOM_CLIENT_SECRET", "").strip()
    )
    # Both the site root and /auth/passhroom/callback accept the redirect.
    passhroom_callback_url: str = Field(
        default_factory=lambda: os.getenv("PASSHROOM_CALLBACK_URL", "").strip()
    )
    # When set, these are the only redirect URIs tried during token exchange.
    passhroom_redirect_uris: List[str] = Field(
        default_factory=lambda: _env_list("PASSHROOM_REDIRECT_URIS")
    )
    upstream_timeout: float = Field(
        default_factory=lambda: float(os.getenv("PASSHROOM_TIMEOUT_SECONDS", "15"))
    )

    # Cookies and sessions
    session_cookie: str = Field(
        default_factory=lambda: os.getenv("SESSION_COOKIE", "fufnotes_sess")
    )
    state_cookie: str = Field(
        default_factory=lambda: os.getenv("PASSHROOM_STATE_COOKIE", "fufnotes_ph_state")
    )
    session_ttl_seconds: int = Field(
        default_factory=lambda: int(os.getenv("SESSION_TTL_SECONDS", str(60 * 60 * 24 * 14)))
    )
    state_ttl_seconds: int = Field(
        default_factory=lambda: int(os.getenv("PASSHROOM_STATE_TTL_SECONDS", str(10 * 60)))
    )
    cookie_secure: Optional[bool] = Field(default_factory=lambda: _env_flag("COOKIE_SECURE"))
    trust_proxy: bool = Field(default_factory=lambda: os.getenv("TRUST_PROXY", "1") == "1")
    dev_user_id: Optional[str] = Field(default_factory=lambda: os.getenv("DEV_USER_ID") or None)

    # HTTP surface
    max_body_bytes: int = Field(
        default_factory=lambda: int(os.getenv("MAX_BODY_BYTES", str(2 * 1024 * 1024)))
    )
    website_dir: str = Field(
        default_factory=lambda: os.getenv("NOTES_WEBSITE_DIR", str(BASE_DIR.parent / "website"))
    )
    cors_origins: List[str] = Field(default_factory=lambda: _env_list("CORS_ORIGINS"))
    log_level: str = Field(default_factory=lambda: os.getenv("NOTES_LOG_LEVEL", "INFO"))

    @property
    def callback_url(self) -> str:
        """The configured callback URL with an origin-only value normalized to end in ``/``."""
        raw = self.passhroom_callback_url.strip()
        if not raw:
            return ""
        parts = urlsplit(raw)
        if not parts.scheme or not parts.netloc:
            return raw if raw.endswith("/") else f"{raw}/"
        if parts.path in ("", "/"):
            return f"{parts.scheme}://{parts.netloc}/"
        return raw


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not any(getattr(h, "_notes_website", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s:%(name)s: %(message)s"))
        handler._notes_website = True
        root.addHandler(handler)
    logging.getLogger("notes_website").setLevel(level.upper())
