"""SQLite database for atelier state."""

from __future__ import annotations

import contextlib
import json
import sqlite3
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import TypedDict, cast

from atelier.paths import DEFAULT_DB_PATH

VALID_WORKSPACE_SOURCES = {"zip", "github", "manual"}
VALID_AGENT_STAGES = {
    "idle",
    "awaiting_permissions",
    "planning",
    "awaiting_plan_approval",
    "executing",
    "awaiting_step_approval",
    "completed",
    "error",
}
VALID_GITHUB_STAGES = {"idle", "drafting", "awaiting_review", "publishing", "published", "error"}

# Higher rank includes every permission of the lower ranks.
TEAM_ROLE_RANKS = {"viewer": 1, "editor": 2, "admin": 3, "owner": 4}
VALID_TEAM_ROLES = set(TEAM_ROLE_RANKS)


def _utcnow() -> str:
    """ISO 8601 UTC timestamp matching SQLite strftime format."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


# Bump when adding migrations. 0 = fresh database.
SCHEMA_VERSION = 2

SCHEMA = """\
CREATE TABLE IF NOT EXISTS workspaces (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'manual',
    vfs_data TEXT NOT NULL,
    editor_state_data TEXT,
    github_metadata TEXT,
    team_id TEXT REFERENCES teams(id),
    storage_bytes INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    last_opened_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS workspace_settings (
    user_id TEXT PRIMARY KEY,
    active_workspace_id TEXT REFERENCES workspaces(id) ON DELETE SET NULL,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS github_snapshots (
    workspace_id TEXT PRIMARY KEY REFERENCES workspaces(id) ON DELETE CASCADE,
    branch TEXT,
    commit_sha TEXT,
    contents TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS teams (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS team_memberships (
    id TEXT PRIMARY KEY,
    team_id TEXT NOT NULL REFERENCES teams(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    role TEXT NOT NULL,
    invited_by TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    UNIQUE (team_id, user_id)
);

CREATE TABLE IF NOT EXISTS agent_sessions (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    task TEXT NOT NULL DEFAULT '',
    stage TEXT NOT NULL DEFAULT 'idle',
    permissions TEXT NOT NULL DEFAULT '{}',
    plan TEXT,
    current_step_index INTEGER NOT NULL DEFAULT -1,
    step_result TEXT,
    applied_changes TEXT NOT NULL DEFAULT '[]',
    error TEXT,
    github_stage TEXT NOT NULL DEFAULT 'idle',
    github_draft TEXT,
    github_result TEXT,
    github_error TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS agent_logs (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES agent_sessions(id) ON DELETE CASCADE,
    level TEXT NOT NULL,
    message TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'agent',
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS status_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    old_status TEXT,
    new_status TEXT NOT NULL,
    actor TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS ai_audit_logs (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL,
    team_id TEXT,
    triggered_by TEXT NOT NULL,
    action TEXT NOT NULL,
    files_modified TEXT NOT NULL DEFAULT '[]',
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""


# -- Row TypedDicts matching table schemas --


class WorkspaceRow(TypedDict):
    id: str
    user_id: str
    name: str
    source: str
    vfs_data: str
    editor_state_data: str | None
    github_metadata: str | None
    team_id: str | None
    storage_bytes: int
    created_at: str
    last_opened_at: str
    updated_at: str


class TeamRow(TypedDict):
    id: str
    name: str
    owner_id: str
    created_at: str


class TeamMembershipRow(TypedDict):
    id: str
    team_id: str
    user_id: str
    role: str
    invited_by: str | None
    created_at: str


class AgentSessionRow(TypedDict):
    id: str
    workspace_id: str
    user_id: str
    task: str
    stage: str
    permissions: str
    plan: str | None
    current_step_index: int
    step_result: str | None
    applied_changes: str
    error: str | None
    github_stage: str
    github_draft: str | None
    github_result: str | None
    github_error: str | None
    created_at: str
    updated_at: str


class GitHubSnapshotRow(TypedDict):
    workspace_id: str
    branch: str | None
    commit_sha: str | None
    contents: str
    created_at: str


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=10000")
    conn.executescript(SCHEMA)

    current_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if current_version < SCHEMA_VERSION:
        _migrate(conn, current_version)
        _create_indexes(conn)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()
    return conn


@contextlib.contextmanager
def connect(db_path: Path = DEFAULT_DB_PATH):
    """Context manager wrapper for get_connection().

    Usage:
        with connect() as conn:
            do_stuff(conn)
    # conn.close() is guaranteed even on exceptions.
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _add_column_if_missing(
    conn: sqlite3.Connection, table: str, column: str, col_def: str, cols: set[str]
) -> None:
    if column not in cols:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_def}")


def _migrate_to_v1(conn: sqlite3.Connection) -> None:
    """Team ownership and cached storage size on workspaces."""
    cols = _table_columns(conn, "workspaces")
    _add_column_if_missing(conn, "workspaces", "team_id", "TEXT REFERENCES teams(id)", cols)
    _add_column_if_missing(conn, "workspaces", "storage_bytes", "INTEGER NOT NULL DEFAULT 0", cols)


def _migrate_to_v2(conn: sqlite3.Connection) -> None:
    """GitHub publish state on agent sessions."""
    cols = _table_columns(conn, "agent_sessions")
    for col, defn in [
        ("github_stage", "TEXT NOT NULL DEFAULT 'idle'"),
        ("github_draft", "TEXT"),
        ("github_result", "TEXT"),
        ("github_error", "TEXT"),
    ]:
        _add_column_if_missing(conn, "agent_sessions", col, defn, cols)


_MIGRATIONS = [
    (1, _migrate_to_v1),
    (2, _migrate_to_v2),
]


def _migrate(conn: sqlite3.Connection, from_version: int) -> None:
    """Run schema migrations from from_version to SCHEMA_VERSION.

    Each migration checks column existence first, so it is a no-op on a
    fresh database created from SCHEMA. Commit is handled by the caller.
    """
    for version, migration_fn in _MIGRATIONS:
        if from_version < version:
            migration_fn(conn)


def _create_indexes(conn: sqlite3.Connection) -> None:
    """Create non-PK indexes for common query patterns. Idempotent."""
    conn.executescript("""
        CREATE INDEX IF NOT EXISTS idx_workspaces_user_id ON workspaces(user_id);
        CREATE INDEX IF NOT EXISTS idx_workspaces_user_last_opened
            ON workspaces(user_id, last_opened_at);
        CREATE INDEX IF NOT EXISTS idx_workspaces_team_id ON workspaces(team_id);
        CREATE INDEX IF NOT EXISTS idx_team_memberships_user_id ON team_memberships(user_id);
        CREATE INDEX IF NOT EXISTS idx_agent_sessions_workspace_id
            ON agent_sessions(workspace_id);
        CREATE INDEX IF NOT EXISTS idx_agent_logs_session_id ON agent_logs(session_id);
        CREATE INDEX IF NOT EXISTS idx_status_history_entity
            ON status_history(entity_type, entity_id);
        CREATE INDEX IF NOT EXISTS idx_ai_audit_logs_workspace_id
            ON ai_audit_logs(workspace_id);
    """)


# -- status history --

_STATUS_SETS = {
    "agent_session": VALID_AGENT_STAGES,
    "github_publish": VALID_GITHUB_STAGES,
}


def record_status_change(
    conn: sqlite3.Connection,
    *,
    entity_type: str,
    entity_id: str,
    new_status: str,
    old_status: str | None = None,
    actor: str | None = None,
) -> dict:
    """Record a validated status transition.

    Does not commit, so callers can make the status update and the history
    insert atomic.
    """
    valid = _STATUS_SETS.get(entity_type)
    if valid is None:
        raise ValueError(f"Unknown entity_type '{entity_type}'.")
    if new_status not in valid:
        raise ValueError(f"Invalid new_status '{new_status}' for {entity_type}.")
    if old_status is not None and old_status not in valid:
        raise ValueError(f"Invalid old_status '{old_status}' for {entity_type}.")
    if old_status == new_status:
        return {}
    cursor = conn.execute(
        "INSERT INTO status_history (entity_type, entity_id, old_status, new_status, actor) "
        "VALUES (?, ?, ?, ?, ?)",
        (entity_type, entity_id, old_status, new_status, actor),
    )
    row = conn.execute(
        "SELECT id, entity_type, entity_id, old_status, new_status, actor, created_at "
        "FROM status_history WHERE id = ?",
        (cursor.lastrowid,),
    ).fetchone()
    return dict(row) if row else {}


def list_status_history(
    conn: sqlite3.Connection,
    *,
    entity_type: str,
    entity_id: str,
) -> list[dict]:
    """List status history oldest-first for one entity."""
    rows = conn.execute(
        "SELECT id, entity_type, entity_id, old_status, new_status, actor, created_at "
        "FROM status_history "
        "WHERE entity_type = ? AND entity_id = ? "
        "ORDER BY created_at, id",
        (entity_type, entity_id),
    ).fetchall()
    return [dict(row) for row in rows]


# -- workspaces --


def insert_workspace(
    conn: sqlite3.Connection,
    *,
    workspace_id: str,
    user_id: str,
    name: str,
    source: str,
    vfs_data: str,
    editor_state_data: str | None,
    storage_bytes: int,
    github_metadata: str | None = None,
    team_id: str | None = None,
) -> WorkspaceRow:
    if source not in VALID_WORKSPACE_SOURCES:
        raise ValueError(
            f"Invalid source '{source}'. Must be one of: {sorted(VALID_WORKSPACE_SOURCES)}"
        )
    conn.execute(
        "INSERT INTO workspaces "
        "(id, user_id, name, source, vfs_data, editor_state_data, github_metadata, "
        "team_id, storage_bytes) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            workspace_id,
            user_id,
            name,
            source,
            vfs_data,
            editor_state_data,
            github_metadata,
            team_id,
            storage_bytes,
        ),
    )
    conn.commit()
    row = get_workspace_row(conn, workspace_id)
    if row is None:
        raise LookupError(f"Workspace '{workspace_id}' disappeared after insert")
    return row


def get_workspace_row(conn: sqlite3.Connection, workspace_id: str) -> WorkspaceRow | None:
    row = conn.execute("SELECT * FROM workspaces WHERE id = ?", (workspace_id,)).fetchone()
    return cast(WorkspaceRow, dict(row)) if row else None


def list_workspace_rows(conn: sqlite3.Connection, user_id: str) -> list[WorkspaceRow]:
    """Workspaces owned by *user_id*, most recently opened first."""
    rows = conn.execute(
        "SELECT * FROM workspaces WHERE user_id = ? ORDER BY last_opened_at DESC, created_at DESC",
        (user_id,),
    ).fetchall()
    return [cast(WorkspaceRow, dict(row)) for row in rows]


def count_user_workspaces(conn: sqlite3.Connection, user_id: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS cnt FROM workspaces WHERE user_id = ?", (user_id,)
    ).fetchone()
    return row["cnt"]


def total_user_storage(conn: sqlite3.Connection, user_id: str) -> int:
    row = conn.execute(
        "SELECT COALESCE(SUM(storage_bytes), 0) AS total FROM workspaces WHERE user_id = ?",
        (user_id,),
    ).fetchone()
    return row["total"]


def update_workspace_content(
    conn: sqlite3.Connection,
    workspace_id: str,
    *,
    vfs_data: str,
    storage_bytes: int,
    editor_state_data: str | None = None,
    commit: bool = True,
) -> bool:
    """Write back VFS (and editor state when given). Returns False if the row is gone."""
    if editor_state_data is None:
        cursor = conn.execute(
            "UPDATE workspaces SET vfs_data = ?, storage_bytes = ?, "
            "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE id = ?",
            (vfs_data, storage_bytes, workspace_id),
        )
    else:
        cursor = conn.execute(
            "UPDATE workspaces SET vfs_data = ?, storage_bytes = ?, editor_state_data = ?, "
            "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE id = ?",
            (vfs_data, storage_bytes, editor_state_data, workspace_id),
        )
    if commit:
        conn.commit()
    return cursor.rowcount > 0


def rename_workspace_row(conn: sqlite3.Connection, workspace_id: str, name: str) -> bool:
    cursor = conn.execute(
        "UPDATE workspaces SET name = ?, "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE id = ?",
        (name, workspace_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def set_workspace_team(conn: sqlite3.Connection, workspace_id: str, team_id: str | None) -> bool:
    cursor = conn.execute(
        "UPDATE workspaces SET team_id = ?, "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE id = ?",
        (team_id, workspace_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def touch_workspace(
    conn: sqlite3.Connection, workspace_id: str, *, commit: bool = True
) -> None:
    conn.execute(
        "UPDATE workspaces SET last_opened_at = ? WHERE id = ?",
        (_utcnow(), workspace_id),
    )
    if commit:
        conn.commit()


def delete_workspace_row(conn: sqlite3.Connection, workspace_id: str) -> bool:
    cursor = conn.execute("DELETE FROM workspaces WHERE id = ?", (workspace_id,))
    conn.commit()
    return cursor.rowcount > 0


def set_active_workspace_id(
    conn: sqlite3.Connection, user_id: str, workspace_id: str | None
) -> None:
    conn.execute(
        "INSERT INTO workspace_settings (user_id, active_workspace_id) VALUES (?, ?) "
        "ON CONFLICT(user_id) DO UPDATE SET active_workspace_id = excluded.active_workspace_id, "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now')",
        (user_id, workspace_id),
    )
    conn.commit()


def get_active_workspace_id(conn: sqlite3.Connection, user_id: str) -> str | None:
    row = conn.execute(
        "SELECT active_workspace_id FROM workspace_settings WHERE user_id = ?", (user_id,)
    ).fetchone()
    return row["active_workspace_id"] if row else None


def save_github_snapshot(
    conn: sqlite3.Connection,
    workspace_id: str,
    *,
    contents: dict[str, str],
    branch: str | None,
    commit_sha: str | None = None,
) -> None:
    conn.execute(
        "INSERT OR REPLACE INTO github_snapshots (workspace_id, branch, commit_sha, contents) "
        "VALUES (?, ?, ?, ?)",
        (workspace_id, branch, commit_sha, json.dumps(contents)),
    )
    conn.commit()


def get_github_snapshot(conn: sqlite3.Connection, workspace_id: str) -> GitHubSnapshotRow | None:
    row = conn.execute(
        "SELECT * FROM github_snapshots WHERE workspace_id = ?", (workspace_id,)
    ).fetchone()
    return cast(GitHubSnapshotRow, dict(row)) if row else None


# -- teams --


def create_team(conn: sqlite3.Connection, name: str, owner_id: str) -> TeamRow:
    if not name.strip():
        raise ValueError("Team name cannot be empty.")
    team_id = uuid.uuid4().hex[:12]
    conn.execute(
        "INSERT INTO teams (id, name, owner_id) VALUES (?, ?, ?)",
        (team_id, name.strip(), owner_id),
    )
    conn.execute(
        "INSERT INTO team_memberships (id, team_id, user_id, role) VALUES (?, ?, ?, 'owner')",
        (uuid.uuid4().hex[:12], team_id, owner_id),
    )
    conn.commit()
    team = get_team(conn, team_id)
    if team is None:
        raise LookupError(f"Team '{team_id}' disappeared after insert")
    return team


def get_team(conn: sqlite3.Connection, team_id: str) -> TeamRow | None:
    row = conn.execute("SELECT * FROM teams WHERE id = ?", (team_id,)).fetchone()
    return cast(TeamRow, dict(row)) if row else None


def upsert_team_membership(
    conn: sqlite3.Connection,
    team_id: str,
    user_id: str,
    role: str,
    *,
    invited_by: str | None = None,
) -> TeamMembershipRow:
    if role not in VALID_TEAM_ROLES:
        raise ValueError(f"Invalid role '{role}'. Must be one of: {sorted(VALID_TEAM_ROLES)}")
    conn.execute(
        "INSERT INTO team_memberships (id, team_id, user_id, role, invited_by) "
        "VALUES (?, ?, ?, ?, ?) "
        "ON CONFLICT(team_id, user_id) DO UPDATE SET role = excluded.role",
        (uuid.uuid4().hex[:12], team_id, user_id, role, invited_by),
    )
    conn.commit()
    row = conn.execute(
        "SELECT * FROM team_memberships WHERE team_id = ? AND user_id = ?", (team_id, user_id)
    ).fetchone()
    return cast(TeamMembershipRow, dict(row))


def get_team_role(conn: sqlite3.Connection, team_id: str, user_id: str) -> str | None:
    row = conn.execute(
        "SELECT role FROM team_memberships WHERE team_id = ? AND user_id = ?",
        (team_id, user_id),
    ).fetchone()
    return row["role"] if row else None


def list_team_members(conn: sqlite3.Connection, team_id: str) -> list[TeamMembershipRow]:
    rows = conn.execute(
        "SELECT * FROM team_memberships WHERE team_id = ? ORDER BY created_at, user_id",
        (team_id,),
    ).fetchall()
    return [cast(TeamMembershipRow, dict(row)) for row in rows]


# -- agent sessions --


def create_agent_session(
    conn: sqlite3.Connection, *, workspace_id: str, user_id: str
) -> AgentSessionRow:
    session_id = uuid.uuid4().hex[:12]
    conn.execute(
        "INSERT INTO agent_sessions (id, workspace_id, user_id) VALUES (?, ?, ?)",
        (session_id, workspace_id, user_id),
    )
    conn.commit()
    row = get_agent_session(conn, session_id)
    if row is None:
        raise LookupError(f"Agent session '{session_id}' disappeared after insert")
    return row


def get_agent_session(conn: sqlite3.Connection, session_id: str) -> AgentSessionRow | None:
    row = conn.execute("SELECT * FROM agent_sessions WHERE id = ?", (session_id,)).fetchone()
    return cast(AgentSessionRow, dict(row)) if row else None


def list_agent_sessions(
    conn: sqlite3.Connection, workspace_id: str, *, limit: int = 20
) -> list[AgentSessionRow]:
    rows = conn.execute(
        "SELECT * FROM agent_sessions WHERE workspace_id = ? "
        "ORDER BY created_at DESC, rowid DESC LIMIT ?",
        (workspace_id, limit),
    ).fetchall()
    return [cast(AgentSessionRow, dict(row)) for row in rows]


_AGENT_STATE_COLUMNS = (
    "task",
    "stage",
    "permissions",
    "plan",
    "current_step_index",
    "step_result",
    "applied_changes",
    "error",
    "github_stage",
    "github_draft",
    "github_result",
    "github_error",
)


def save_agent_state(
    conn: sqlite3.Connection,
    session_id: str,
    state: dict,
    *,
    expected_stage: str | None = None,
    expected_github_stage: str | None = None,
    actor: str | None = None,
    commit: bool = True,
) -> bool:
    """Persist a serialized agent state row.

    When *expected_stage* (or *expected_github_stage*) is given the write only
    lands if the stored value still matches it (guards against two workers
    advancing one session). Stage changes are recorded in status_history in
    the same transaction. With ``commit=False`` the caller owns the
    transaction and must commit or roll back, also when False is returned.
    """
    unknown = set(state) - set(_AGENT_STATE_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown agent state columns: {sorted(unknown)}")
    if state.get("stage") is not None and state["stage"] not in VALID_AGENT_STAGES:
        raise ValueError(f"Invalid stage '{state['stage']}'.")
    if state.get("github_stage") is not None and state["github_stage"] not in VALID_GITHUB_STAGES:
        raise ValueError(f"Invalid github_stage '{state['github_stage']}'.")

    current = conn.execute(
        "SELECT stage, github_stage FROM agent_sessions WHERE id = ?", (session_id,)
    ).fetchone()
    if not current:
        return False

    assignments = ", ".join(f"{col} = ?" for col in state)
    params: list = [state[col] for col in state]
    where = "WHERE id = ?"
    params.append(session_id)
    if expected_stage is not None:
        where += " AND stage = ?"
        params.append(expected_stage)
    if expected_github_stage is not None:
        where += " AND github_stage = ?"
        params.append(expected_github_stage)
    cursor = conn.execute(
        f"UPDATE agent_sessions SET {assignments}, "
        f"updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') {where}",
        params,
    )
    if cursor.rowcount == 0:
        if commit:
            conn.commit()
        return False

    if "stage" in state:
        record_status_change(
            conn,
            entity_type="agent_session",
            entity_id=session_id,
            old_status=current["stage"],
            new_status=state["stage"],
            actor=actor,
        )
    if "github_stage" in state:
        record_status_change(
            conn,
            entity_type="github_publish",
            entity_id=session_id,
            old_status=current["github_stage"],
            new_status=state["github_stage"],
            actor=actor,
        )
    if commit:
        conn.commit()
    return True


def add_agent_log(
    conn: sqlite3.Connection,
    *,
    session_id: str,
    level: str,
    message: str,
    source: str = "agent",
) -> None:
    conn.execute(
        "INSERT INTO agent_logs (id, session_id, level, message, source) VALUES (?, ?, ?, ?, ?)",
        (uuid.uuid4().hex[:12], session_id, level, message, source),
    )
    conn.commit()


def list_agent_logs(
    conn: sqlite3.Connection, session_id: str, *, level: str | None = None
) -> list[dict]:
    query = "SELECT * FROM agent_logs WHERE session_id = ?"
    params: list = [session_id]
    if level:
        query += " AND level = ?"
        params.append(level)
    query += " ORDER BY created_at, rowid"
    return [dict(r) for r in conn.execute(query, params).fetchall()]


# -- AI audit log --


def add_ai_audit_log(
    conn: sqlite3.Connection,
    *,
    workspace_id: str,
    triggered_by: str,
    action: str,
    files_modified: list[str],
    team_id: str | None = None,
    metadata: dict | None = None,
) -> str:
    audit_id = uuid.uuid4().hex[:12]
    conn.execute(
        "INSERT INTO ai_audit_logs "
        "(id, workspace_id, team_id, triggered_by, action, files_modified, metadata) "
        "VALUES (?, ?, ?, ?, ?, ?, ?)",
        (
            audit_id,
            workspace_id,
            team_id,
            triggered_by,
            action,
            json.dumps(files_modified),
            json.dumps(metadata or {}),
        ),
    )
    conn.commit()
    return audit_id


def list_ai_audit_logs(conn: sqlite3.Connection, workspace_id: str) -> list[dict]:
    rows = conn.execute(
        "SELECT * FROM ai_audit_logs WHERE workspace_id = ? ORDER BY created_at, rowid",
        (workspace_id,),
    ).fetchall()
    result = []
    for row in rows:
        item = dict(row)
        item["files_modified"] = json.loads(item["files_modified"])
        item["metadata"] = json.loads(item["metadata"])
        result.append(item)
    return result
