"""Projects, todos and the todo-to-note link."""

import pytest

from notes_website.backend.domain import NotFoundError, ValidationError, managed_note_title


@pytest.fixture
def groceries(notebook):
    project = notebook.projects.create("u1", "Groceries")
    todo = notebook.projects.create_todo("u1", project.id, "Buy milk")
    return project, todo


def note_of(notebook, note_id):
    return notebook.notes.get("u1", note_id)[0]


def test_managed_title_defaults_and_truncation():
    assert managed_note_title("Groceries", "Buy milk") == "Groceries — Buy milk"
    assert managed_note_title("", "") == "Project — Todo"
    assert len(managed_note_title("p" * 150, "t" * 150)) == 200


def test_create_defaults(notebook):
    project = notebook.projects.create("u1", "  ", None, "")
    assert project.title == "Untitled project"
    assert project.due_at is None
    todo = notebook.projects.create_todo("u1", project.id)
    assert todo.title == "Todo"
    assert todo.done is False
    assert todo.note_managed_title is True


def test_due_dates(notebook):
    project = notebook.projects.create("u1", "Trip", due_at="2024-05-01")
    assert project.due_at == "2024-05-01T00:00:00.000+00:00"
    with pytest.raises(ValidationError) as exc:
        notebook.projects.create("u1", "Trip", due_at="2024-02-30")
    assert exc.value.code == "bad_due_date"
    with pytest.raises(ValidationError):
        notebook.projects.create_todo("u1", project.id, "Pack", "next week")


def test_length_limits(notebook):
    with pytest.raises(ValidationError) as exc:
        notebook.projects.create("u1", "x" * 201)
    assert exc.value.code == "title_too_long"
    with pytest.raises(ValidationError) as exc:
        notebook.projects.create("u1", "ok", "d" * 200001)
    assert exc.value.code == "description_too_long"


def test_todo_on_unknown_project(notebook):
    with pytest.raises(NotFoundError):
        notebook.projects.create_todo("u1", "missing", "x")


def test_get_lists_todos_in_creation_order(notebook, groceries):
    project, first = groceries
    second = notebook.projects.create_todo("u1", project.id, "Bread")
    found, todos = notebook.projects.get("u1", project.id)
    assert found.title == "Groceries"
    assert [t.id for t in todos] == [first.id, second.id]
    with pytest.raises(NotFoundError):
        notebook.projects.get("u2", project.id)


def test_attach_note_creates_managed_note_once(notebook, groceries):
    _, todo = groceries
    meta = notebook.projects.attach_note("u1", todo.id)
    assert meta.title == "Groceries — Buy milk"
    assert meta.revision == 1

    again = notebook.projects.attach_note("u1", todo.id)
    assert again.id == meta.id
    assert len(notebook.notes.list("u1")) == 1


def test_renaming_todo_retitles_managed_note(notebook, groceries):
    _, todo = groceries
    meta = notebook.projects.attach_note("u1", todo.id)

    updated = notebook.projects.update_todo("u1", todo.id, title="Buy oat milk")

    note = note_of(notebook, meta.id)
    assert note.title == "Groceries — Buy oat milk"
    assert note.revision == 2
    assert updated.linked_note_title == "Groceries — Buy oat milk"


def test_untouched_title_leaves_note_revision_alone(notebook, groceries):
    _, todo = groceries
    meta = notebook.projects.attach_note("u1", todo.id)
    notebook.projects.update_todo("u1", todo.id, done=True)
    notebook.projects.update_todo("u1", todo.id, title="Buy milk")
    assert note_of(notebook, meta.id).revision == 1


def test_renaming_project_retitles_managed_notes(notebook, groceries):
    project, todo = groceries
    meta = notebook.projects.attach_note("u1", todo.id)
    notebook.projects.update("u1", project.id, "Shopping", "weekly", None)
    note = note_of(notebook, meta.id)
    assert note.title == "Shopping — Buy milk"
    assert note.revision == 2


def test_unmanaged_note_keeps_its_title(notebook, groceries):
    project, todo = groceries
    meta = notebook.projects.attach_note("u1", todo.id)
    notebook.projects.update_todo("u1", todo.id, note_managed_title=False)
    notebook.projects.update_todo("u1", todo.id, title="Buy cream")
    notebook.projects.update("u1", project.id, "Shopping")
    assert note_of(notebook, meta.id).title == "Groceries — Buy milk"


def test_linking_existing_note_turns_management_off(notebook, groceries):
    _, todo = groceries
    mine = notebook.notes.create("u1", "My milk research")

    linked = notebook.projects.update_todo("u1", todo.id, linked_note_id=mine.id)

    assert linked.linked_note_id == mine.id
    assert linked.note_managed_title is False
    assert note_of(notebook, mine.id).title == "My milk research"

    managed = notebook.projects.update_todo("u1", todo.id, note_managed_title=True)
    assert managed.note_managed_title is True
    assert note_of(notebook, mine.id).title == "Groceries — Buy milk"


def test_linking_with_management_syncs_title(notebook, groceries):
    _, todo = groceries
    mine = notebook.notes.create("u1", "Scratch")
    notebook.projects.update_todo("u1", todo.id, linked_note_id=mine.id, note_managed_title=True)
    assert note_of(notebook, mine.id).title == "Groceries — Buy milk"


def test_linking_unknown_note(notebook, groceries):
    _, todo = groceries
    with pytest.raises(NotFoundError) as exc:
        notebook.projects.update_todo("u1", todo.id, linked_note_id="missing")
    assert exc.value.code == "note_not_found"
    other = notebook.notes.create("u2", "Not yours")
    with pytest.raises(NotFoundError):
        notebook.projects.update_todo("u1", todo.id, linked_note_id=other.id)


def test_unlink_and_clear_due_date(notebook, groceries):
    _, todo = groceries
    notebook.projects.update_todo("u1", todo.id, due_at="2024-01-02")
    meta = notebook.projects.attach_note("u1", todo.id)

    updated = notebook.projects.update_todo("u1", todo.id, linked_note_id="", due_at=None)

    assert updated.linked_note_id is None
    assert updated.due_at is None
    assert notebook.notes.exists("u1", meta.id)


def test_deleted_note_unlinks_and_attach_recreates(notebook, groceries):
    _, todo = groceries
    meta = notebook.projects.attach_note("u1", todo.id)
    notebook.notes.delete("u1", meta.id)

    _, todos = notebook.projects.get("u1", todo.project_id)
    assert todos[0].linked_note_id is None

    fresh = notebook.projects.attach_note("u1", todo.id)
    assert fresh.id != meta.id


def test_update_unknown_todo(notebook):
    with pytest.raises(NotFoundError):
        notebook.projects.update_todo("u1", "missing", title="x")
    with pytest.raises(NotFoundError):
        notebook.projects.attach_note("u1", "missing")
