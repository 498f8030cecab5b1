import contextlib
import logging
import sqlite3
import threading
from typing import Iterator, List, Optional, Tuple

from .domain import (
    ConflictError,
    NoteMeta,
    NotFoundError,
    Project,
    Session,
    Todo,
    ValidationError,
    managed_note_title,
)
from .utils import expires_in, is_expired, make_id, parse_due_date, time_now

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 200000

# Distinguishes "field not sent" from an explicit null in partial updates.
UNSET = object()

SCHEMA = """
CREATE TABLE IF NOT EXISTS app_users (
    passhroom_user_id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    passhroom_user_id TEXT NOT NULL REFERENCES app_users (passhroom_user_id) ON DELETE CASCADE,
    email TEXT NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS sessions_expires_idx ON sessions (expires_at);

CREATE TABLE IF NOT EXISTS notes (
    id TEXT PRIMARY KEY,
    owner_user_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    content TEXT NOT NULL DEFAULT '',
    revision INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS notes_owner_updated_idx ON notes (owner_user_id, updated_at DESC);

CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    owner_user_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    due_at TEXT NULL,
    description TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS projects_owner_updated_idx ON projects (owner_user_id, updated_at DESC);

CREATE TABLE IF NOT EXISTS project_todos (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects (id) ON DELETE CASCADE,
    owner_user_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    due_at TEXT NULL,
    done INTEGER NOT NULL DEFAULT 0,
    linked_note_id TEXT NULL REFERENCES notes (id) ON DELETE SET NULL,
    note_managed_title INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS project_todos_project_created_idx ON project_todos (project_id, created_at ASC);
"""


class Database:
    """
    Owns the SQLite file shared by every store.

    Connections are short-lived and opened per operation. Writes go through
    ``transaction()``, which holds a process-wide lock and commits or rolls
    back as a unit.
    """

    def __init__(self, db_path: str = "notes.db"):
        self.db_path = db_path
        self.lock = threading.Lock()
        self._init_schema()

    @contextlib.contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        try:
            yield conn
        finally:
            conn.close()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self.lock:
            with self.connection() as conn:
                try:
                    yield conn
                    conn.commit()
                except BaseException:
                    conn.rollback()
                    raise

    def _init_schema(self):
        with self.lock:
            with self.connection() as conn:
                conn.executescript(SCHEMA)
                conn.commit()
        logger.info("Database ready at %s", self.db_path)


class SessionStore:
    """Server-side sessions; the only authority on who is logged in."""

    def __init__(self, db: Database, ttl_seconds: int = 60 * 60 * 24 * 14):
        self.db = db
        self.ttl_seconds = ttl_seconds

    def upsert_user(self, passhroom_user_id: str, email: str) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO app_users (passhroom_user_id, email, created_at) VALUES (?, ?, ?)
                ON CONFLICT (passhroom_user_id) DO UPDATE SET email = excluded.email
                """,
                (passhroom_user_id, email, time_now()),
            )

    def create(self, user_id: str, email: str) -> Session:
        session = Session(make_id(24), user_id, email, expires_in(self.ttl_seconds))
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO sessions (id, passhroom_user_id, email, created_at, expires_at) VALUES (?, ?, ?, ?, ?)",
                (session.id, user_id, email, time_now(), session.expires_at),
            )
        return session

    def get(self, session_id: str) -> Optional[Session]:
        """Look up a session, purging it if it has expired."""
        if not session_id:
            return None
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT id, passhroom_user_id, email, expires_at FROM sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
        if row is None:
            return None
        if is_expired(row["expires_at"]):
            self.delete(session_id)
            return None
        return Session(row["id"], row["passhroom_user_id"], row["email"], row["expires_at"])

    def delete(self, session_id: str) -> bool:
        with self.db.transaction() as conn:
            cur = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            return cur.rowcount > 0


def _note_meta(row: sqlite3.Row) -> NoteMeta:
    return NoteMeta(row["id"], row["title"], row["revision"], row["updated_at"])


class NoteStore:
    """
    Notes with an optimistic-concurrency revision counter.

    Every successful mutation bumps ``revision`` by exactly one inside the same
    UPDATE statement that writes the change; callers never set it directly.
    """

    def __init__(self, db: Database):
        self.db = db

    def list(self, user_id: str) -> List[NoteMeta]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT id, title, revision, updated_at FROM notes WHERE owner_user_id = ? "
                "ORDER BY updated_at DESC, id",
                (user_id,),
            ).fetchall()
        return [_note_meta(row) for row in rows]

    def get(self, user_id: str, note_id: str) -> Tuple[NoteMeta, str]:
        with self.db.connection() as conn:
            row = self._fetch(conn, user_id, note_id)
        if row is None:
            raise NotFoundError()
        return _note_meta(row), row["content"] or ""

    def exists(self, user_id: str, note_id: str) -> bool:
        with self.db.connection() as conn:
            return self._fetch(conn, user_id, note_id) is not None

    def create(self, user_id: str, title: str = "Untitled", content: str = "") -> NoteMeta:
        with self.db.transaction() as conn:
            return self._insert(conn, user_id, title, content)

    def save(self, user_id: str, note_id: str, title: str, content: str,
             base_revision: int, force: bool = False) -> NoteMeta:
        """
        Write title and content, guarded by the caller's last-known revision.

        Without ``force`` the write is a single conditional UPDATE that only
        matches while the stored revision still equals ``base_revision``. When
        nothing matches, the current row decides between not-found and a
        conflict that carries the server's state.
        """
        if isinstance(base_revision, bool) or not isinstance(base_revision, int) or base_revision < 0:
            raise ValidationError("bad_revision")

        with self.db.transaction() as conn:
            if force:
                cur = conn.execute(
                    "UPDATE notes SET title = ?, content = ?, revision = revision + 1, updated_at = ? "
                    "WHERE id = ? AND owner_user_id = ?",
                    (title, content, time_now(), note_id, user_id),
                )
            else:
                cur = conn.execute(
                    "UPDATE notes SET title = ?, content = ?, revision = revision + 1, updated_at = ? "
                    "WHERE id = ? AND owner_user_id = ? AND revision = ?",
                    (title, content, time_now(), note_id, user_id, base_revision),
                )
            row = self._fetch(conn, user_id, note_id)
            if row is None:
                raise NotFoundError()
            if cur.rowcount == 0:
                logger.info("Save conflict on note %s: base %s, current %s",
                            note_id, base_revision, row["revision"])
                raise ConflictError(_note_meta(row), row["content"])
            return _note_meta(row)

    def retitle(self, user_id: str, note_id: str, title: str) -> Optional[NoteMeta]:
        """Unconditionally set a note's title, bumping its revision like a forced save."""
        with self.db.transaction() as conn:
            return self._retitle(conn, user_id, note_id, title)

    def delete(self, user_id: str, note_id: str) -> bool:
        with self.db.transaction() as conn:
            cur = conn.execute("DELETE FROM notes WHERE id = ? AND owner_user_id = ?", (note_id, user_id))
            return cur.rowcount > 0

    def _insert(self, conn: sqlite3.Connection, user_id: str, title: str, content: str) -> NoteMeta:
        now = time_now()
        note_id = make_id()
        conn.execute(
            "INSERT INTO notes (id, owner_user_id, title, content, revision, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, 1, ?, ?)",
            (note_id, user_id, title, content, now, now),
        )
        return NoteMeta(note_id, title, 1, now)

    def _retitle(self, conn: sqlite3.Connection, user_id: str, note_id: str, title: str) -> Optional[NoteMeta]:
        conn.execute(
            "UPDATE notes SET title = ?, revision = revision + 1, updated_at = ? WHERE id = ? AND owner_user_id = ?",
            (title, time_now(), note_id, user_id),
        )
        row = self._fetch(conn, user_id, note_id)
        return _note_meta(row) if row else None

    @staticmethod
    def _fetch(conn: sqlite3.Connection, user_id: str, note_id: str) -> Optional[sqlite3.Row]:
        return conn.execute(
            "SELECT id, title, content, revision, updated_at FROM notes WHERE id = ? AND owner_user_id = ?",
            (note_id, user_id),
        ).fetchone()


def _clean_title(value, default: str) -> str:
    title = str(value or "").strip() or default
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError("title_too_long")
    return title


def _clean_due(value) -> Optional[str]:
    try:
        return parse_due_date(value)
    except ValueError:
        raise ValidationError("bad_due_date")


def _project(row: sqlite3.Row) -> Project:
    return Project(row["id"], row["title"], row["due_at"], row["description"],
                   row["created_at"], row["updated_at"])


def _todo(row: sqlite3.Row) -> Todo:
    keys = row.keys()
    return Todo(
        row["id"], row["project_id"], row["title"], row["due_at"], row["done"],
        row["linked_note_id"], row["note_managed_title"], row["created_at"],
        row["linked_note_title"] if "linked_note_title" in keys else "",
    )


class ProjectStore:
    """
    Projects, their todo lists, and the todo-to-note link.

    A todo owns at most one linked note. While ``note_managed_title`` is on,
    the note's title follows ``<project title> — <todo title>``; renames are
    pushed through the note store's unconditional retitle path.
    """

    def __init__(self, db: Database, notes: NoteStore):
        self.db = db
        self.notes = notes

    def list(self, user_id: str) -> List[Project]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM projects WHERE owner_user_id = ? ORDER BY updated_at DESC, id",
                (user_id,),
            ).fetchall()
        return [_project(row) for row in rows]

    def get(self, user_id: str, project_id: str) -> Tuple[Project, List[Todo]]:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM projects WHERE id = ? AND owner_user_id = ?", (project_id, user_id)
            ).fetchone()
            if row is None:
                raise NotFoundError()
            todo_rows = conn.execute(
                """
                SELECT pt.*, n.title AS linked_note_title
                  FROM project_todos pt
                  LEFT JOIN notes n ON n.id = pt.linked_note_id AND n.owner_user_id = pt.owner_user_id
                 WHERE pt.project_id = ? AND pt.owner_user_id = ?
                 ORDER BY pt.created_at ASC, pt.rowid ASC
                """,
                (project_id, user_id),
            ).fetchall()
        return _project(row), [_todo(r) for r in todo_rows]

    def create(self, user_id: str, title=None, description=None, due_at=None) -> Project:
        title = _clean_title(title, "Untitled project")
        description = self._clean_description(description)
        due = _clean_due(due_at)
        now = time_now()
        project = Project(make_id(), title, due, description, now, now)
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO projects (id, owner_user_id, title, due_at, description, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (project.id, user_id, title, due, description, now, now),
            )
        return project

    def update(self, user_id: str, project_id: str, title=None, description=None, due_at=None) -> Project:
        title = _clean_title(title, "Untitled project")
        description = self._clean_description(description)
        due = _clean_due(due_at)
        with self.db.transaction() as conn:
            prev = conn.execute(
                "SELECT title FROM projects WHERE id = ? AND owner_user_id = ?", (project_id, user_id)
            ).fetchone()
            if prev is None:
                raise NotFoundError()
            conn.execute(
                "UPDATE projects SET title = ?, due_at = ?, description = ?, updated_at = ? "
                "WHERE id = ? AND owner_user_id = ?",
                (title, due, description, time_now(), project_id, user_id),
            )
            if prev["title"] != title:
                managed = conn.execute(
                    "SELECT title, linked_note_id FROM project_todos "
                    "WHERE project_id = ? AND owner_user_id = ? AND note_managed_title = 1 "
                    "AND linked_note_id IS NOT NULL",
                    (project_id, user_id),
                ).fetchall()
                for todo in managed:
                    self.notes._retitle(conn, user_id, todo["linked_note_id"],
                                        managed_note_title(title, todo["title"]))
            row = conn.execute(
                "SELECT * FROM projects WHERE id = ? AND owner_user_id = ?", (project_id, user_id)
            ).fetchone()
        return _project(row)

    def create_todo(self, user_id: str, project_id: str, title=None, due_at=None) -> Todo:
        title = _clean_title(title, "Todo")
        due = _clean_due(due_at)
        now = time_now()
        todo = Todo(make_id(), project_id, title, due, False, None, True, now)
        with self.db.transaction() as conn:
            if not self._project_exists(conn, user_id, project_id):
                raise NotFoundError()
            conn.execute(
                "INSERT INTO project_todos (id, project_id, owner_user_id, title, due_at, done, "
                "linked_note_id, note_managed_title, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, 0, NULL, 1, ?, ?)",
                (todo.id, project_id, user_id, title, due, now, now),
            )
            self._touch_project(conn, user_id, project_id)
        return todo

    def update_todo(self, user_id: str, todo_id: str, title=None, due_at=UNSET, done=None,
                    linked_note_id=None, note_managed_title=None) -> Todo:
        """
        Partially update a todo. ``None`` (or ``UNSET`` for the due date) leaves a field alone.

        ``linked_note_id=""`` removes the link. Linking a different existing note
        turns title management off unless ``note_managed_title`` says otherwise.
        """
        if title is not None:
            title = str(title).strip()
            if len(title) > MAX_TITLE_LENGTH:
                raise ValidationError("title_too_long")
        due = UNSET if due_at is UNSET else _clean_due(due_at)
        if linked_note_id:
            if not self.notes.exists(user_id, linked_note_id):
                raise NotFoundError("note_not_found")

        with self.db.transaction() as conn:
            cur = conn.execute(
                "SELECT * FROM project_todos WHERE id = ? AND owner_user_id = ?", (todo_id, user_id)
            ).fetchone()
            if cur is None:
                raise NotFoundError()

            next_title = (title or "Todo") if title is not None else cur["title"]
            next_due = cur["due_at"] if due is UNSET else due
            next_done = bool(done) if done is not None else bool(cur["done"])
            if linked_note_id is None:
                next_link = cur["linked_note_id"]
            else:
                next_link = linked_note_id or None
            link_changed = next_link != cur["linked_note_id"]

            if note_managed_title is not None:
                next_managed = bool(note_managed_title)
            elif link_changed and next_link:
                next_managed = False
            else:
                next_managed = bool(cur["note_managed_title"])

            conn.execute(
                "UPDATE project_todos SET title = ?, due_at = ?, done = ?, linked_note_id = ?, "
                "note_managed_title = ?, updated_at = ? WHERE id = ? AND owner_user_id = ?",
                (next_title, next_due, int(next_done), next_link, int(next_managed), time_now(),
                 todo_id, user_id),
            )
            self._touch_project(conn, user_id, cur["project_id"])

            needs_sync = (
                next_title != cur["title"]
                or link_changed
                or (next_managed and not cur["note_managed_title"])
            )
            if next_managed and next_link and needs_sync:
                project = conn.execute(
                    "SELECT title FROM projects WHERE id = ? AND owner_user_id = ?",
                    (cur["project_id"], user_id),
                ).fetchone()
                project_title = project["title"] if project else ""
                self.notes._retitle(conn, user_id, next_link, managed_note_title(project_title, next_title))

            row = self._fetch_todo(conn, user_id, todo_id)
        return _todo(row)

    def attach_note(self, user_id: str, todo_id: str) -> NoteMeta:
        """Return the todo's linked note, creating it on first request."""
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                SELECT pt.id, pt.project_id, pt.title, pt.linked_note_id, p.title AS project_title
                  FROM project_todos pt
                  JOIN projects p ON p.id = pt.project_id AND p.owner_user_id = pt.owner_user_id
                 WHERE pt.id = ? AND pt.owner_user_id = ?
                """,
                (todo_id, user_id),
            ).fetchone()
            if row is None:
                raise NotFoundError()
            if row["linked_note_id"]:
                existing = self.notes._fetch(conn, user_id, row["linked_note_id"])
                if existing is not None:
                    return _note_meta(existing)

            meta = self.notes._insert(conn, user_id, managed_note_title(row["project_title"], row["title"]), "")
            conn.execute(
                "UPDATE project_todos SET linked_note_id = ?, note_managed_title = 1, updated_at = ? "
                "WHERE id = ? AND owner_user_id = ?",
                (meta.id, time_now(), todo_id, user_id),
            )
            self._touch_project(conn, user_id, row["project_id"])
        logger.info("Created note %s for todo %s", meta.id, todo_id)
        return meta

    @staticmethod
    def _clean_description(value) -> str:
        description = str(value or "")
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError("description_too_long")
        return description

    @staticmethod
    def _project_exists(conn: sqlite3.Connection, user_id: str, project_id: str) -> bool:
        return conn.execute(
            "SELECT 1 FROM projects WHERE id = ? AND owner_user_id = ?", (project_id, user_id)
        ).fetchone() is not None

    @staticmethod
    def _touch_project(conn: sqlite3.Connection, user_id: str, project_id: str) -> None:
        conn.execute(
            "UPDATE projects SET updated_at = ? WHERE id = ? AND owner_user_id = ?",
            (time_now(), project_id, user_id),
        )

    @staticmethod
    def _fetch_todo(conn: sqlite3.Connection, user_id: str, todo_id: str) -> sqlite3.Row:
        return conn.execute(
            """
            SELECT pt.*, n.title AS linked_note_title
              FROM project_todos pt
              LEFT JOIN notes n ON n.id = pt.linked_note_id AND n.owner_user_id = pt.owner_user_id
             WHERE pt.id = ? AND pt.owner_user_id = ?
            """,
            (todo_id, user_id),
        ).fetchone()


class Notebook:
    """
    Main app logic: bundles the stores that share one database.

    The API layer talks to this object rather than wiring stores itself.
    """

    def __init__(self, db_path: str = "notes.db", session_ttl_seconds: int = 60 * 60 * 24 * 14):
        self.db = Database(db_path)
        self.sessions = SessionStore(self.db, session_ttl_seconds)
        self.notes = NoteStore(self.db)
        self.projects = ProjectStore(self.db, self.notes)
