"""
JSON API dispatched on ``?action=``.

Every response is ``{"ok": true, ...}`` or ``{"ok": false, "error": code, ...}``.
Notes, projects and todos all belong to the session's user; ids of other
users' rows read as not found.
"""

import logging
from typing import Any, Callable, Dict, Optional, Type

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .domain import AppError, MethodNotAllowed, NotFoundError, Session, ValidationError
from .models import NoteCreate, NoteSave, ProjectData, TodoCreate, TodoUpdate
from .services import UNSET, Notebook
from .web import clear_cookie, current_session, get_config, get_notebook, json_error, json_ok, read_json

logger = logging.getLogger(__name__)

router = APIRouter()


class Call:
    """One dispatched API request."""

    def __init__(self, request: Request, notebook: Notebook, session: Optional[Session],
                 body: Dict[str, Any]):
        self.request = request
        self.notebook = notebook
        self.session = session
        self.body = body

    @property
    def user_id(self) -> str:
        return self.session.user_id

    def param(self, name: str, missing: str = "missing_id") -> str:
        value = self.request.query_params.get(name, "")
        if not value:
            raise ValidationError(missing)
        return value

    def parse(self, model: Type[BaseModel], error: str = "bad_request") -> Any:
        try:
            return model.model_validate(self.body)
        except PydanticValidationError as e:
            if model is NoteSave and any("baseRevision" in err["loc"] for err in e.errors()):
                raise ValidationError("bad_revision") from e
            raise ValidationError(error) from e


def login(call: Call):
    return {"email": call.session.email}


def logout(call: Call):
    config = get_config(call.request)
    session_id = call.request.cookies.get(config.session_cookie, "")
    if session_id:
        call.notebook.sessions.delete(session_id)
    response = json_ok()
    clear_cookie(call.request, response, config.session_cookie)
    return response


def list_notes(call: Call):
    return {"notes": [meta.to_dict() for meta in call.notebook.notes.list(call.user_id)]}


def get_note(call: Call):
    meta, content = call.notebook.notes.get(call.user_id, call.param("id"))
    return {"meta": meta.to_dict(), "content": content}


def create_note(call: Call):
    body = call.parse(NoteCreate)
    meta = call.notebook.notes.create(call.user_id, body.title or "Untitled")
    return {"meta": meta.to_dict()}


def save_note(call: Call):
    note_id = call.param("id")
    body = call.parse(NoteSave)
    meta = call.notebook.notes.save(
        call.user_id,
        note_id,
        body.title or "",
        body.content or "",
        body.baseRevision or 0,
        force=body.force,
    )
    return {"meta": meta.to_dict()}


def delete_note(call: Call):
    call.notebook.notes.delete(call.user_id, call.param("id"))
    return {}


def list_projects(call: Call):
    projects = call.notebook.projects.list(call.user_id)
    return {"projects": [p.to_dict(include_description=False) for p in projects]}


def get_project(call: Call):
    project, todos = call.notebook.projects.get(call.user_id, call.param("id"))
    return {"project": project.to_dict(), "todos": [t.to_dict() for t in todos]}


def create_project(call: Call):
    body = call.parse(ProjectData)
    project = call.notebook.projects.create(call.user_id, body.title, body.description, body.dueAt)
    return {"project": project.to_dict()}


def update_project(call: Call):
    project_id = call.param("id")
    body = call.parse(ProjectData)
    project = call.notebook.projects.update(call.user_id, project_id, body.title, body.description, body.dueAt)
    return {"project": project.to_dict()}


def create_todo(call: Call):
    project_id = call.param("projectId", "missing_project_id")
    body = call.parse(TodoCreate)
    todo = call.notebook.projects.create_todo(call.user_id, project_id, body.title, body.dueAt)
    return {"todo": todo.to_dict()}


def update_todo(call: Call):
    todo_id = call.param("id")
    body = call.parse(TodoUpdate)
    todo = call.notebook.projects.update_todo(
        call.user_id,
        todo_id,
        title=body.title,
        due_at=body.dueAt if "dueAt" in body.model_fields_set else UNSET,
        done=body.done,
        linked_note_id=body.linkedNoteId,
        note_managed_title=body.noteManagedTitle,
    )
    return {"todo": todo.to_dict()}


def add_todo_note(call: Call):
    meta = call.notebook.projects.attach_note(call.user_id, call.param("id"))
    return {"note": meta.to_dict()}


class Action:
    def __init__(self, handler: Callable[[Call], Any], write: bool = False, needs_session: bool = True):
        self.handler = handler
        self.write = write
        self.needs_session = needs_session


ACTIONS: Dict[str, Action] = {
    "login": Action(login),
    "logout": Action(logout, needs_session=False),
    "list": Action(list_notes),
    "get": Action(get_note),
    "create": Action(create_note, write=True),
    "save": Action(save_note, write=True),
    "delete": Action(delete_note, write=True),
    "projects_list": Action(list_projects),
    "projects_get": Action(get_project),
    "projects_create": Action(create_project, write=True),
    "projects_update": Action(update_project, write=True),
    "project_todos_create": Action(create_todo, write=True),
    "project_todos_update": Action(update_todo, write=True),
    "project_todos_add_note": Action(add_todo_note, write=True),
}


@router.api_route("/api", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
@router.api_route("/api/api.php", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def handle_api(request: Request):
    action_name = request.query_params.get("action", "")
    if not action_name:
        raise ValidationError("missing_action")
    action = ACTIONS.get(action_name)
    if action is None:
        raise NotFoundError()

    try:
        session = current_session(request) if action.needs_session else None
        if action.write and request.method != "POST":
            raise MethodNotAllowed()
        body = await read_json(request) if request.method == "POST" else {}
        result = action.handler(Call(request, get_notebook(request), session, body))
    except AppError:
        raise
    except Exception:
        logger.exception("API error in action %s", action_name)
        return json_error(500, "server_error")

    if isinstance(result, JSONResponse):
        return result
    return json_ok(result)
