"""
Autosave for the note editor.

Edits arm a trailing-edge debounce; a slower periodic tick catches anything
the debounce missed; blurring an editing surface saves at once. Each save
carries the revision the editor last saw, and the server rejects it with a
conflict when someone else got there first. At most one save request is in
flight at a time: a save asked for meanwhile is remembered as pending and
replayed once the running one settles.

The note moves through ``idle -> dirty -> saving -> saved | conflict | error``.
A conflict freezes autosave until a ``ConflictResolver`` settles it.
"""

import asyncio
import logging
from typing import Callable, Optional, Set

from .api import SAVE_TIMEOUT, ApiError, NotesApi, format_api_error
from .state import Conflict, EditorState, OpenNote, Phase

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 0.8
PERIODIC_SECONDS = 20.0


class SaveCoordinator:
    """Drives saving for one editor; all work happens on the running event loop."""

    def __init__(
        self,
        api: NotesApi,
        state: Optional[EditorState] = None,
        *,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        periodic_seconds: float = PERIODIC_SECONDS,
        save_timeout: float = SAVE_TIMEOUT,
        on_change: Optional[Callable[[EditorState], None]] = None,
    ):
        self.api = api
        self.state = state or EditorState()
        self.debounce_seconds = debounce_seconds
        self.periodic_seconds = periodic_seconds
        self.save_timeout = save_timeout
        self.on_change = on_change
        self._debounce: Optional[asyncio.TimerHandle] = None
        self._periodic: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    # Editor events

    def edit(self, title: Optional[str] = None, content: Optional[str] = None) -> None:
        """Record typing in the title or content and arm the debounce."""
        s = self.state
        if title is not None:
            s.title = title
        if content is not None:
            s.content = content
        if s.frozen:
            self._notify()
            return
        s.dirty = True
        s.phase = Phase.DIRTY
        s.status = "Saving…"
        self._arm_debounce()
        self._notify()

    async def blur(self) -> None:
        """The title or content field lost focus: save without waiting."""
        self._cancel_debounce()
        await self.request_save(False)

    # Saving

    async def request_save(self, force: bool = False) -> None:
        s = self.state
        if s.frozen:
            return
        if s.current is None and not force and not s.title.strip() and not s.content.strip():
            s.dirty = False
            s.status = "Saved"
            self._notify()
            return
        if not s.dirty and not force:
            s.status = "Saved"
            self._notify()
            return
        if s.saving:
            s.pending_save = True
            return

        self._cancel_debounce()
        s.saving = True
        s.pending_save = False
        s.phase = Phase.SAVING
        s.status = "Saving…"
        self._notify()
        try:
            if s.current is None and not await self._create_for_buffer():
                return
            await self._send(force)
        finally:
            s.saving = False
            self._notify()
        if not s.frozen and s.pending_save and s.current is not None and s.dirty:
            s.pending_save = False
            await self.request_save(False)

    async def _create_for_buffer(self) -> bool:
        """First save of a note typed from scratch: ask the server for an id."""
        s = self.state
        try:
            data = await self.api.create_note(s.title.strip() or "Untitled")
        except ApiError as e:
            logger.warning("create failed: %s", format_api_error(e))
            self._fail("Create failed", e)
            return False
        meta = data.get("meta") or {}
        s.current = OpenNote(meta["id"], meta, s.content, meta["revision"])
        s.dirty = True
        self._ensure_periodic()
        return True

    async def _send(self, force: bool) -> None:
        s = self.state
        note = s.current
        title, content = s.title, s.content

        # A newer save replaces whatever request is still outstanding.
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        request = asyncio.ensure_future(
            self.api.save_note(note.id, title, content, note.base_revision, force, timeout=self.save_timeout)
        )
        self._inflight = request
        try:
            data = await request
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            logger.debug("save of %s superseded", note.id)
            if s.current is note:
                s.phase = Phase.DIRTY
                s.status = "Unsaved"
            return
        except ApiError as e:
            logger.warning("save of %s failed: %s", note.id, format_api_error(e))
            if s.current is not note:
                return
            if e.is_conflict:
                s.conflict = Conflict(e.data.get("meta") or {}, e.data.get("content") or "")
                self.freeze("Conflict: choose how to resolve.")
                s.phase = Phase.CONFLICT
                s.status = "Conflict"
                return
            self._fail("Save failed", e)
            return
        finally:
            if self._inflight is request:
                self._inflight = None

        meta = data["meta"]
        note.meta = meta
        note.base_revision = meta["revision"]
        note.content = content
        if s.current is not note:
            # The editor moved on to another note while this one was saving.
            await self.refresh_list()
            return
        if s.title == title and s.content == content:
            s.dirty = False
            s.phase = Phase.SAVED
            s.status = "Saved"
        else:
            s.pending_save = True
        s.banner = ""
        await self.refresh_list()

    def _fail(self, what: str, e: ApiError) -> None:
        s = self.state
        hint = " Request timed out (server hung or network issue)." if e.is_timeout else ""
        snippet = e.data.get("snippet")
        detail = f" {snippet}" if snippet else ""
        s.banner = f"{what}: {format_api_error(e)}.{hint}{detail}"
        s.phase = Phase.ERROR
        s.status = "Error"

    # Freezing

    def freeze(self, reason: str = "Autosave paused.") -> None:
        self.state.frozen = True
        self._cancel_debounce()
        self.state.banner = reason
        self._notify()

    def unfreeze(self) -> None:
        self.state.frozen = False
        self.state.banner = ""
        self._notify()

    # Notes

    async def refresh_list(self) -> None:
        try:
            data = await self.api.list_notes()
        except ApiError as e:
            logger.warning("list refresh failed: %s", format_api_error(e))
            self.state.banner = f"Refresh failed: {format_api_error(e)}"
            return
        self.state.notes = data.get("notes") or []
        self._notify()

    async def open_note(self, note_id: str) -> None:
        s = self.state
        self._detach()
        s.banner = ""
        s.conflict = None
        s.frozen = False
        s.reset_buffers()
        try:
            data = await self.api.get_note(note_id)
        except ApiError as e:
            self._fail("Open failed", e)
            self._notify()
            raise
        meta = data["meta"]
        s.current = OpenNote(note_id, meta, data.get("content") or "", meta["revision"])
        s.title = meta.get("title") or ""
        s.content = s.current.content
        s.phase = Phase.SAVED
        self._ensure_periodic()
        self._notify()

    async def new_note(self) -> None:
        self._detach()
        data = await self.api.create_note("Untitled")
        await self.refresh_list()
        await self.open_note(data["meta"]["id"])

    async def refresh_current(self, discard_changes: bool = True) -> bool:
        """Reload the open note from the server; refuses to drop unsaved edits unless told to."""
        s = self.state
        if s.current is None:
            return False
        if s.dirty and not discard_changes:
            return False
        self._cancel_debounce()
        try:
            data = await self.api.get_note(s.current.id)
        except ApiError as e:
            s.banner = f"Refresh failed: {format_api_error(e)}"
            self._notify()
            return False
        meta = data["meta"]
        s.current.meta = meta
        s.current.base_revision = meta["revision"]
        s.current.content = data.get("content") or ""
        s.title = meta.get("title") or ""
        s.content = s.current.content
        s.dirty = False
        s.phase = Phase.SAVED
        s.status = "Saved"
        self._notify()
        return True

    async def delete_current(self) -> None:
        s = self.state
        if s.current is None:
            return
        note_id = s.current.id
        self._detach()
        await self.api.delete_note(note_id)
        s.reset_buffers()
        await self.refresh_list()

    async def close(self) -> None:
        """Stop timers and abandon any outstanding request; unsaved edits stay dirty."""
        self._cancel_debounce()
        tasks = [t for t in (self._periodic, self._inflight, *self._background) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._periodic = None
        self._inflight = None
        self._background.clear()

    def _detach(self) -> None:
        """Forget the open note's outstanding work before the editor switches away from it."""
        self._cancel_debounce()
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._inflight = None
        self.state.pending_save = False

    # Timers

    def _arm_debounce(self) -> None:
        self._cancel_debounce()
        loop = asyncio.get_running_loop()
        self._debounce = loop.call_later(self.debounce_seconds, self._debounce_fired)

    def _cancel_debounce(self) -> None:
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None

    def _debounce_fired(self) -> None:
        self._debounce = None
        self._spawn(self.request_save(False))

    def _ensure_periodic(self) -> None:
        if self._periodic is None or self._periodic.done():
            self._periodic = asyncio.get_running_loop().create_task(self._periodic_saves())

    async def _periodic_saves(self) -> None:
        while True:
            await asyncio.sleep(self.periodic_seconds)
            if not self.state.frozen and self.state.dirty:
                await self.request_save(False)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self.state)
