from notes_website.backend.services import SessionStore


def test_create_and_get(notebook):
    notebook.sessions.upsert_user("ph-1", "a@example.com")
    session = notebook.sessions.create("ph-1", "a@example.com")
    assert len(session.id) == 48

    found = notebook.sessions.get(session.id)
    assert found.user_id == "ph-1"
    assert found.email == "a@example.com"


def test_unknown_or_empty_id(notebook):
    assert notebook.sessions.get("") is None
    assert notebook.sessions.get("nope") is None


def test_expired_session_is_purged(notebook):
    store = SessionStore(notebook.db, ttl_seconds=-1)
    notebook.sessions.upsert_user("ph-1", "a@example.com")
    session = store.create("ph-1", "a@example.com")

    assert store.get(session.id) is None
    # Purged, so deleting again finds nothing.
    assert store.delete(session.id) is False


def test_upsert_user_updates_email(notebook):
    notebook.sessions.upsert_user("ph-1", "old@example.com")
    notebook.sessions.upsert_user("ph-1", "new@example.com")
    with notebook.db.connection() as conn:
        rows = conn.execute("SELECT email FROM app_users").fetchall()
    assert [r["email"] for r in rows] == ["new@example.com"]


def test_logout_deletes(notebook):
    notebook.sessions.upsert_user("ph-1", "a@example.com")
    session = notebook.sessions.create("ph-1", "a@example.com")
    assert notebook.sessions.delete(session.id) is True
    assert notebook.sessions.get(session.id) is None
