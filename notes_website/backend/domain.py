from typing import Any, Dict, Optional


class NoteMeta:
    """Everything about a note except its content."""

    def __init__(self, id: str, title: str, revision: int, updated_at: str):
        self.id = id
        self.title = title
        self.revision = int(revision)
        self.updated_at = updated_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "revision": self.revision,
            "updatedAt": self.updated_at,
        }


class Session:
    """A logged-in browser, identified by the opaque id stored in its cookie."""

    def __init__(self, id: str, user_id: str, email: str, expires_at: Optional[str] = None):
        self.id = id
        self.user_id = user_id
        self.email = email
        self.expires_at = expires_at


class Project:
    def __init__(self, id: str, title: str, due_at: Optional[str], description: str,
                 created_at: str, updated_at: str):
        self.id = id
        self.title = title
        self.due_at = due_at
        self.description = description
        self.created_at = created_at
        self.updated_at = updated_at

    def to_dict(self, include_description: bool = True) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "title": self.title,
            "dueAt": self.due_at,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if include_description:
            data["description"] = self.description or ""
        return data


class Todo:
    """A single item on a project's todo list, optionally linked to one note."""

    def __init__(self, id: str, project_id: str, title: str, due_at: Optional[str], done: bool,
                 linked_note_id: Optional[str], note_managed_title: bool, created_at: str,
                 linked_note_title: str = ""):
        self.id = id
        self.project_id = project_id
        self.title = title
        self.due_at = due_at
        self.done = bool(done)
        self.linked_note_id = linked_note_id
        self.note_managed_title = bool(note_managed_title)
        self.created_at = created_at
        self.linked_note_title = linked_note_title

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "title": self.title or "",
            "dueAt": self.due_at,
            "done": self.done,
            "linkedNoteId": self.linked_note_id or "",
            "linkedNoteTitle": self.linked_note_title or "",
            "noteManagedTitle": self.note_managed_title,
            "createdAt": self.created_at,
        }


def managed_note_title(project_title: str, todo_title: str) -> str:
    """Title a linked note carries while its todo manages it."""
    return f"{project_title or 'Project'} — {todo_title or 'Todo'}"[:200]


class AppError(Exception):
    """Base class for errors that map onto an ``{ok: false, error: ...}`` response."""

    status = 500
    code = "server_error"

    def __init__(self, code: Optional[str] = None, status: Optional[int] = None, **extra: Any):
        self.code = code or self.code
        self.status = status or self.status
        self.extra = extra
        super().__init__(self.code)

    def payload(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.code, **self.extra}


class ValidationError(AppError):
    status = 400
    code = "validation"


class AuthError(AppError):
    """Missing, unknown or expired session."""

    status = 401
    code = "unauthorized"


class NotFoundError(AppError):
    status = 404
    code = "not_found"


class MethodNotAllowed(AppError):
    status = 405
    code = "method_not_allowed"


class ConflictError(AppError):
    """A save lost the revision race; carries the server's current state."""

    status = 409
    code = "conflict"

    def __init__(self, meta: NoteMeta, content: str):
        super().__init__(meta=meta.to_dict(), content=content or "")
        self.meta = meta
        self.content = content or ""


class PayloadTooLarge(AppError):
    status = 413
    code = "payload_too_large"


class UpstreamError(AppError):
    """The identity provider was unreachable or rejected the request."""

    status = 502
    code = "passhroom_unreachable"
