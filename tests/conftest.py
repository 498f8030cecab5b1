"""Common test fixtures for the notes website."""

import pytest
from fastapi.testclient import TestClient

from notes_website.backend.config import AppConfig
from notes_website.backend.main import create_app
from notes_website.backend.services import Notebook
from tests.fakes import CALLBACK_URL, FakePasshroom


def make_config(tmp_path, **overrides) -> AppConfig:
    settings = dict(
        database_path=str(tmp_path / "notes.db"),
        passhroom_base_url="https://passhroom.test",
        passhroom_client_id="notes-website",
        passhroom_client_secret="s3cret",
        passhroom_callback_url=CALLBACK_URL,
        passhroom_redirect_uris=[],
        cookie_secure=False,
        dev_user_id=None,
        cors_origins=[],
        website_dir=str(tmp_path / "website"),
        log_level="DEBUG",
    )
    settings.update(overrides)
    return AppConfig(**settings)


@pytest.fixture
def notebook(tmp_path):
    """A notebook on a fresh database file."""
    return Notebook(str(tmp_path / "notes.db"))


@pytest.fixture
def passhroom():
    return FakePasshroom()


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def app(config, passhroom):
    return create_app(config, passhroom_transport=passhroom.transport)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def dev_app(tmp_path, passhroom):
    """App where every request runs as user ``u1`` without signing in."""
    return create_app(make_config(tmp_path, dev_user_id="u1"), passhroom_transport=passhroom.transport)


@pytest.fixture
def dev_client(dev_app):
    with TestClient(dev_app) as test_client:
        yield test_client
