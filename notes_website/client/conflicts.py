import logging
from typing import Any, Dict

from .api import ApiError, format_api_error
from .coordinator import SaveCoordinator
from .state import OpenNote, Phase

logger = logging.getLogger(__name__)


class ConflictResolver:
    """
    Settles a rejected save. Three ways out:

    - ``use_server``: drop local edits and adopt the server's note.
    - ``overwrite_mine``: force-save the local buffer over the server's note.
    - ``save_as_copy``: keep both; the local buffer becomes a new note.

    Each one clears the conflict and resumes autosave.
    """

    def __init__(self, coordinator: SaveCoordinator):
        self.coordinator = coordinator

    @property
    def state(self) -> str:
        return "pending" if self.coordinator.state.conflict is not None else "none"

    def describe(self) -> Dict[str, Any]:
        s = self.coordinator.state
        if s.conflict is None:
            return {"state": "none"}
        return {
            "state": "pending",
            "server": {"meta": s.conflict.meta, "content": s.conflict.content},
            "local": {"title": s.title, "content": s.content},
        }

    async def use_server(self) -> None:
        s = self.coordinator.state
        if s.conflict is None:
            return
        conflict = s.conflict
        s.conflict = None
        if s.current is not None:
            s.current.meta = conflict.meta
            s.current.base_revision = conflict.meta.get("revision", s.current.base_revision)
            s.current.content = conflict.content
        s.title = conflict.meta.get("title") or ""
        s.content = conflict.content
        s.dirty = False
        s.pending_save = False
        s.phase = Phase.SAVED
        s.status = "Saved"
        self.coordinator.unfreeze()
        logger.info("conflict resolved with the server version")

    async def overwrite_mine(self) -> None:
        s = self.coordinator.state
        if s.conflict is None:
            return
        conflict = s.conflict
        s.conflict = None
        if s.current is not None:
            # Later saves build on the version we just overwrote.
            s.current.meta = conflict.meta
            s.current.base_revision = conflict.meta.get("revision", s.current.base_revision)
        self.coordinator.unfreeze()
        s.dirty = True
        await self.coordinator.request_save(True)
        logger.info("conflict resolved by overwriting the server version")

    async def save_as_copy(self) -> None:
        coordinator = self.coordinator
        s = coordinator.state
        if s.conflict is None:
            return
        title = (s.title.strip() or "Untitled") + " (copy)"
        content = s.content
        try:
            created = await coordinator.api.create_note(title)
        except ApiError as e:
            self._copy_failed(e)
            raise
        meta = created["meta"]
        try:
            saved = await coordinator.api.save_note(
                meta["id"], title, content, meta["revision"], timeout=coordinator.save_timeout
            )
        except ApiError as e:
            await self._discard_copy(meta["id"])
            self._copy_failed(e)
            raise
        meta = saved["meta"]
        s.conflict = None
        s.current = OpenNote(meta["id"], meta, content, meta["revision"])
        s.title = meta.get("title") or title
        s.content = content
        s.dirty = False
        s.pending_save = False
        s.phase = Phase.SAVED
        s.status = "Saved"
        coordinator.unfreeze()
        await coordinator.refresh_list()
        logger.info("conflict resolved by saving a copy as %s", meta["id"])

    def _copy_failed(self, e: ApiError) -> None:
        s = self.coordinator.state
        s.banner = f"Copy failed: {format_api_error(e)}"
        self.coordinator._notify()

    async def _discard_copy(self, note_id: str) -> None:
        """Remove a copy whose content never made it to the server; the conflict stays pending."""
        try:
            await self.coordinator.api.delete_note(note_id)
        except ApiError as e:
            logger.warning("could not remove empty copy %s: %s", note_id, format_api_error(e))
