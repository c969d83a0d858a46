"""Tests for atelier.db: schema, migrations and the agent/audit tables."""

import sqlite3

import pytest

from atelier.db import (
    SCHEMA_VERSION,
    add_agent_log,
    add_ai_audit_log,
    create_agent_session,
    get_agent_session,
    get_connection,
    list_agent_logs,
    list_agent_sessions,
    list_ai_audit_logs,
    list_status_history,
    record_status_change,
    save_agent_state,
)


def _session(conn, workspace):
    return create_agent_session(conn, workspace_id=workspace.id, user_id="alice")


def test_fresh_database_is_at_current_version(db_conn):
    assert db_conn.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION
    assert db_conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1


def test_migrates_old_database(tmp_path):
    path = tmp_path / "old.db"
    raw = sqlite3.connect(path)
    raw.executescript(
        """
        CREATE TABLE workspaces (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            source TEXT NOT NULL DEFAULT 'manual',
            vfs_data TEXT NOT NULL,
            editor_state_data TEXT,
            github_metadata TEXT,
            created_at TEXT, last_opened_at TEXT, updated_at TEXT
        );
        CREATE TABLE agent_sessions (
            id TEXT PRIMARY KEY,
            workspace_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            task TEXT NOT NULL DEFAULT '',
            stage TEXT NOT NULL DEFAULT 'idle'
        );
        """
    )
    raw.commit()
    raw.close()

    conn = get_connection(path)
    try:
        ws_cols = {r[1] for r in conn.execute("PRAGMA table_info(workspaces)")}
        agent_cols = {r[1] for r in conn.execute("PRAGMA table_info(agent_sessions)")}
        assert {"team_id", "storage_bytes"} <= ws_cols
        assert {"github_stage", "github_draft", "github_result", "github_error"} <= agent_cols
        assert conn.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION
    finally:
        conn.close()


def test_record_status_change_validates(db_conn):
    with pytest.raises(ValueError, match="Unknown entity_type"):
        record_status_change(db_conn, entity_type="plan", entity_id="x", new_status="idle")
    with pytest.raises(ValueError, match="Invalid new_status"):
        record_status_change(
            db_conn, entity_type="agent_session", entity_id="x", new_status="running"
        )
    assert (
        record_status_change(
            db_conn,
            entity_type="agent_session",
            entity_id="x",
            old_status="idle",
            new_status="idle",
        )
        == {}
    )


def test_save_agent_state_records_history(db_conn, workspace):
    row = _session(db_conn, workspace)
    assert save_agent_state(
        db_conn, row["id"], {"task": "t", "stage": "awaiting_permissions"}, actor="alice"
    )
    assert save_agent_state(db_conn, row["id"], {"github_stage": "drafting"})

    saved = get_agent_session(db_conn, row["id"])
    assert saved["stage"] == "awaiting_permissions"
    assert saved["task"] == "t"
    history = list_status_history(db_conn, entity_type="agent_session", entity_id=row["id"])
    assert [(h["old_status"], h["new_status"], h["actor"]) for h in history] == [
        ("idle", "awaiting_permissions", "alice")
    ]
    github = list_status_history(db_conn, entity_type="github_publish", entity_id=row["id"])
    assert [h["new_status"] for h in github] == ["drafting"]


def test_save_agent_state_stage_guard(db_conn, workspace):
    row = _session(db_conn, workspace)
    save_agent_state(db_conn, row["id"], {"stage": "planning"})

    assert not save_agent_state(
        db_conn, row["id"], {"stage": "error"}, expected_stage="awaiting_permissions"
    )
    assert get_agent_session(db_conn, row["id"])["stage"] == "planning"
    assert save_agent_state(db_conn, row["id"], {"stage": "error"}, expected_stage="planning")


def test_save_agent_state_github_stage_guard(db_conn, workspace):
    row = _session(db_conn, workspace)
    save_agent_state(db_conn, row["id"], {"github_stage": "publishing"})

    assert not save_agent_state(
        db_conn,
        row["id"],
        {"github_stage": "publishing"},
        expected_github_stage="awaiting_review",
    )
    assert save_agent_state(
        db_conn, row["id"], {"github_stage": "published"}, expected_github_stage="publishing"
    )
    assert get_agent_session(db_conn, row["id"])["github_stage"] == "published"


def test_save_agent_state_without_commit_can_roll_back(db_conn, workspace):
    row = _session(db_conn, workspace)
    assert save_agent_state(db_conn, row["id"], {"stage": "planning"}, commit=False)
    db_conn.rollback()

    assert get_agent_session(db_conn, row["id"])["stage"] == "idle"
    assert list_status_history(db_conn, entity_type="agent_session", entity_id=row["id"]) == []


def test_save_agent_state_rejects_bad_input(db_conn, workspace):
    row = _session(db_conn, workspace)
    with pytest.raises(ValueError, match="Unknown agent state columns"):
        save_agent_state(db_conn, row["id"], {"user_id": "bob"})
    with pytest.raises(ValueError, match="Invalid stage"):
        save_agent_state(db_conn, row["id"], {"stage": "running"})
    assert not save_agent_state(db_conn, "missing", {"stage": "idle"})


def test_sessions_are_deleted_with_their_workspace(db_conn, workspace):
    row = _session(db_conn, workspace)
    db_conn.execute("DELETE FROM workspaces WHERE id = ?", (workspace.id,))
    db_conn.commit()
    assert get_agent_session(db_conn, row["id"]) is None


def test_list_agent_sessions_limit(db_conn, workspace):
    for _ in range(3):
        _session(db_conn, workspace)
    assert len(list_agent_sessions(db_conn, workspace.id, limit=2)) == 2


def test_agent_logs_filter_by_level(db_conn, workspace):
    row = _session(db_conn, workspace)
    add_agent_log(db_conn, session_id=row["id"], level="INFO", message="one")
    add_agent_log(db_conn, session_id=row["id"], level="ERROR", message="two", source="worker")

    assert [r["message"] for r in list_agent_logs(db_conn, row["id"])] == ["one", "two"]
    errors = list_agent_logs(db_conn, row["id"], level="ERROR")
    assert [(r["message"], r["source"]) for r in errors] == [("two", "worker")]


def test_ai_audit_log_decodes_json(db_conn, workspace):
    add_ai_audit_log(
        db_conn,
        workspace_id=workspace.id,
        triggered_by="alice",
        action="agent_step_applied",
        files_modified=["/a.ts"],
        metadata={"session_id": "s1"},
    )
    [entry] = list_ai_audit_logs(db_conn, workspace.id)
    assert entry["files_modified"] == ["/a.ts"]
    assert entry["metadata"] == {"session_id": "s1"}
    assert entry["team_id"] is None
