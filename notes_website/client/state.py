from enum import Enum
from typing import Any, Dict, List, Optional


class Phase(str, Enum):
    IDLE = "idle"
    DIRTY = "dirty"
    SAVING = "saving"
    SAVED = "saved"
    CONFLICT = "conflict"
    ERROR = "error"


class OpenNote:
    """The note being edited, as last confirmed by the server."""

    def __init__(self, id: str, meta: Dict[str, Any], content: str, base_revision: int):
        self.id = id
        self.meta = meta
        self.content = content
        self.base_revision = base_revision


class Conflict:
    """The server's version of a note that rejected our save."""

    def __init__(self, meta: Dict[str, Any], content: str):
        self.meta = meta
        self.content = content


class EditorState:
    """
    Everything one editing session knows: the open note, the editor buffers
    and the save flags.

    Owned by a ``SaveCoordinator`` and shared with its ``ConflictResolver``.
    """

    def __init__(self):
        self.notes: List[Dict[str, Any]] = []
        self.current: Optional[OpenNote] = None
        self.title = ""
        self.content = ""
        self.dirty = False
        self.saving = False
        self.pending_save = False
        self.frozen = False
        self.conflict: Optional[Conflict] = None
        self.phase = Phase.IDLE
        self.status = "Saved"
        self.banner = ""

    def reset_buffers(self) -> None:
        self.current = None
        self.title = ""
        self.content = ""
        self.dirty = False
        self.phase = Phase.IDLE
        self.status = "Saved"
