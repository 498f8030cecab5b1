from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class _Body(BaseModel):
    model_config = ConfigDict(extra="ignore")


class StartSignIn(_Body):
    email: str = ""


class CodeSignIn(_Body):
    email: str = ""
    code: str = ""


class NoteCreate(_Body):
    title: Optional[str] = None


class NoteSave(_Body):
    title: Optional[str] = ""
    content: Optional[str] = ""
    baseRevision: Optional[int] = 0
    force: bool = False


class ProjectData(_Body):
    title: Optional[str] = None
    description: Optional[str] = None
    dueAt: Optional[str] = None


class TodoCreate(_Body):
    title: Optional[str] = None
    dueAt: Optional[str] = None


class TodoUpdate(_Body):
    """Partial todo update; fields left out of the request are not touched."""

    title: Optional[str] = None
    dueAt: Optional[Any] = None
    done: Optional[bool] = None
    linkedNoteId: Optional[str] = None
    noteManagedTitle: Optional[bool] = None
