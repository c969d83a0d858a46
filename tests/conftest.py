"""Shared test fixtures: template DB for fast per-test isolation."""

import json
import shutil
import sqlite3
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from atelier.db import get_connection
from atelier.vfs import VirtualFileSystem
from atelier.workspaces import create_workspace

OWNER = "alice"


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Create a single template DB with the full schema.

    Copying this file is much cheaper than running the schema and
    migrations again in every test function.
    """
    fd, path_str = tempfile.mkstemp(suffix=".db")
    path = Path(path_str)
    try:
        conn = get_connection(path)
        conn.close()
        yield path
    finally:
        path.unlink(missing_ok=True)


@pytest.fixture()
def db_conn(tmp_path: Path, _db_template_path: Path) -> sqlite3.Connection:
    """Per-test DB connection with the schema pre-loaded."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def db_conn_path(tmp_path: Path, _db_template_path: Path) -> tuple[sqlite3.Connection, Path]:
    """Per-test DB connection + path (for tests that re-open the DB)."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn, db_path
    finally:
        conn.close()


@pytest.fixture(autouse=True)
def published_events(monkeypatch) -> MagicMock:
    """Stage-change events are captured here instead of going to Redis."""
    mock = MagicMock()
    monkeypatch.setattr("atelier.queue.publish_event", mock)
    return mock


def sample_vfs() -> dict:
    vfs = VirtualFileSystem()
    vfs.create_file_by_path(
        "/package.json",
        json.dumps({"name": "demo", "scripts": {"dev": "vite", "build": "vite build"}}),
    )
    vfs.create_file_by_path("/src/App.tsx", "export const App = () => null;\n")
    vfs.create_file_by_path("/src/old.ts", "export {};\n")
    return vfs.get_structure()


@pytest.fixture()
def workspace(db_conn):
    """A manual workspace owned by alice with a package.json and two sources."""
    return create_workspace(db_conn, OWNER, "demo", vfs=sample_vfs())


@pytest.fixture()
def github_workspace(db_conn):
    """A workspace imported from alice/demo on main."""
    return create_workspace(
        db_conn,
        OWNER,
        "demo",
        source="github",
        vfs=sample_vfs(),
        github_metadata={
            "repositoryUrl": "https://github.com/alice/demo",
            "owner": "alice",
            "repo": "demo",
            "branch": "main",
            "lastSyncCommit": "base-sha",
            "lastSyncedAt": "2026-01-01T00:00:00Z",
        },
    )


class ScriptedClient:
    """Completion client that replays canned replies and records the prompts."""

    def __init__(self, replies: list):
        self.replies = list(replies)
        self.calls: list[list[dict[str, str]]] = []

    def complete(self, messages, *, model=None):
        self.calls.append(messages)
        if not self.replies:
            raise AssertionError("ScriptedClient ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply if isinstance(reply, str) else json.dumps(reply)


@pytest.fixture()
def scripted_client():
    """Factory: ``scripted_client(reply, ...)`` builds a ScriptedClient."""

    def _make(*replies) -> ScriptedClient:
        return ScriptedClient(list(replies))

    return _make


PLAN_REPLY = {
    "summary": "Add a navbar",
    "steps": [
        {
            "id": "step-1",
            "title": "Create navbar",
            "description": "Add a Navbar component",
            "filesToRead": ["/src/App.tsx"],
            "filesToModify": [],
            "filesToCreate": ["/src/Navbar.tsx"],
        },
        {
            "id": "step-2",
            "title": "Use navbar",
            "description": "Render the Navbar in App",
            "filesToRead": [],
            "filesToModify": ["/src/App.tsx"],
            "filesToCreate": [],
        },
    ],
}

STEP1_REPLY = {
    "summary": "Created the Navbar component",
    "changes": [
        {
            "filePath": "/src/Navbar.tsx",
            "changeType": "create",
            "updatedContent": "export const Navbar = () => null;\n",
        }
    ],
}

STEP2_REPLY = {
    "summary": "Rendered the Navbar",
    "changes": [
        {
            "filePath": "/src/App.tsx",
            "changeType": "modify",
            "updatedContent": "import { Navbar } from './Navbar';\n",
        }
    ],
}

DRAFT_REPLY = {
    "commitMessage": "feat: add navbar\n",
    "prTitle": "  Add navbar  ",
    "summary": "Adds a navbar so pages share navigation.",
    "risks": [],
    "assumptions": ["React 18"],
}


@pytest.fixture()
def replies():
    """Canned model replies for a two-step navbar task."""
    return {
        "plan": PLAN_REPLY,
        "step1": STEP1_REPLY,
        "step2": STEP2_REPLY,
        "draft": DRAFT_REPLY,
    }
