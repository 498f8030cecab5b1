"""Settling a rejected save."""

import httpx
import pytest

from notes_website.client.api import ApiError, NotesApi
from notes_website.client.conflicts import ConflictResolver
from notes_website.client.coordinator import SaveCoordinator
from notes_website.client.state import Phase
from tests.fakes import RecordingTransport


@pytest.fixture
def transport(dev_app):
    return RecordingTransport(dev_app)


@pytest.fixture
async def api(transport):
    async with NotesApi("http://testserver", transport=transport) as client:
        yield client


@pytest.fixture
async def other_api(dev_app):
    async with NotesApi("http://testserver", transport=httpx.ASGITransport(app=dev_app)) as client:
        yield client


@pytest.fixture
async def coordinator(api):
    coord = SaveCoordinator(api, debounce_seconds=60, periodic_seconds=60)
    yield coord
    await coord.close()


@pytest.fixture
async def conflicted(coordinator, api, other_api):
    """An editor whose save of "mine" lost to another editor's "theirs"."""
    meta = (await api.create_note("Plan"))["meta"]
    await coordinator.open_note(meta["id"])
    await other_api.save_note(meta["id"], "Their plan", "theirs", 1)
    coordinator.edit(content="mine")
    await coordinator.blur()
    assert coordinator.state.phase == Phase.CONFLICT
    return meta


async def test_nothing_to_resolve(coordinator):
    resolver = ConflictResolver(coordinator)
    assert resolver.state == "none"
    assert resolver.describe() == {"state": "none"}


async def test_resolutions_without_conflict_do_nothing(coordinator, api):
    resolver = ConflictResolver(coordinator)
    await resolver.use_server()
    await resolver.overwrite_mine()
    await resolver.save_as_copy()
    assert coordinator.state.current is None
    assert (await api.list_notes())["notes"] == []


async def test_describe_pending(coordinator, conflicted):
    resolver = ConflictResolver(coordinator)
    assert resolver.state == "pending"
    description = resolver.describe()
    assert description["server"]["content"] == "theirs"
    assert description["server"]["meta"]["revision"] == 2
    assert description["local"] == {"title": "Plan", "content": "mine"}


async def test_use_server(coordinator, api, conflicted):
    resolver = ConflictResolver(coordinator)
    await resolver.use_server()

    state = coordinator.state
    assert resolver.state == "none"
    assert state.frozen is False
    assert state.banner == ""
    assert state.dirty is False
    assert (state.title, state.content) == ("Their plan", "theirs")
    assert state.current.base_revision == 2

    # Autosave works again on top of the adopted revision.
    coordinator.edit(content="theirs, then mine")
    await coordinator.blur()
    assert state.current.base_revision == 3
    assert (await api.get_note(conflicted["id"]))["content"] == "theirs, then mine"


async def test_overwrite_mine(coordinator, api, conflicted):
    resolver = ConflictResolver(coordinator)
    await resolver.overwrite_mine()

    state = coordinator.state
    assert resolver.state == "none"
    assert state.frozen is False
    assert state.dirty is False
    assert state.current.base_revision == 3
    fetched = await api.get_note(conflicted["id"])
    assert fetched["content"] == "mine"
    assert fetched["meta"]["title"] == "Plan"
    assert fetched["meta"]["revision"] == 3


async def test_save_as_copy(coordinator, api, conflicted):
    resolver = ConflictResolver(coordinator)
    await resolver.save_as_copy()

    state = coordinator.state
    assert resolver.state == "none"
    assert state.frozen is False
    assert state.current.id != conflicted["id"]
    assert state.title == "Plan (copy)"
    assert state.content == "mine"

    original = await api.get_note(conflicted["id"])
    assert original["content"] == "theirs"
    assert original["meta"]["revision"] == 2
    copy = await api.get_note(state.current.id)
    assert copy["content"] == "mine"
    assert copy["meta"]["revision"] == 2
    assert len(state.notes) == 2


def time_out(request):
    return httpx.ReadTimeout("timed out", request=request)


async def test_overwrite_mine_when_forced_save_fails(coordinator, api, transport, conflicted):
    transport.fail_saves = time_out
    resolver = ConflictResolver(coordinator)
    await resolver.overwrite_mine()

    state = coordinator.state
    assert resolver.state == "none"
    assert state.frozen is False
    assert state.dirty is True
    assert state.phase == Phase.ERROR
    assert state.current.base_revision == 2

    # The retry builds on the server version the user chose to overwrite.
    transport.fail_saves = None
    await coordinator.blur()
    assert state.conflict is None
    assert state.dirty is False
    assert state.current.base_revision == 3
    assert (await api.get_note(conflicted["id"]))["content"] == "mine"


async def test_save_as_copy_failure_removes_the_copy(coordinator, api, transport, conflicted):
    transport.fail_saves = time_out
    resolver = ConflictResolver(coordinator)

    with pytest.raises(ApiError):
        await resolver.save_as_copy()

    state = coordinator.state
    assert resolver.state == "pending"
    assert state.frozen is True
    assert state.current.id == conflicted["id"]
    assert state.banner == "Copy failed: timeout"
    assert transport.count("delete") == 1
    titles = [n["title"] for n in (await api.list_notes())["notes"]]
    assert titles == ["Their plan"]
