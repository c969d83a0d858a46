"""Tests for git status tracking and GitHub repository import."""

from unittest.mock import MagicMock

import pytest

from atelier.db import get_github_snapshot
from atelier.git_status import (
    ADDED,
    DELETED,
    MODIFIED,
    UNMODIFIED,
    UNTRACKED,
    GitStatusManager,
    workspace_git_status,
)
from atelier.github_import import import_repository
from atelier.vfs import VirtualFileSystem
from atelier.workspaces import WorkspaceNotFoundError, WorkspaceSession


def _manager():
    return GitStatusManager({"/a.ts": "A", "/b.ts": "B"}, "main", "sha-1")


def test_manager_classifies_files():
    manager = _manager()
    assert manager.update_file_status("/a.ts", "A") == UNMODIFIED
    assert manager.update_file_status("/a.ts", "A2") == MODIFIED
    manager.add_file("/c.ts", "C")
    manager.delete_file("/b.ts")

    assert manager.get_file_status("/c.ts") == ADDED
    assert manager.get_file_status("/b.ts") == DELETED
    assert manager.get_file_status("/zzz.ts") == UNTRACKED
    assert sorted(manager.get_modified_files()) == ["/a.ts", "/b.ts", "/c.ts"]
    assert manager.has_uncommitted_changes()


def test_deleting_an_added_file_forgets_it():
    manager = _manager()
    manager.add_file("/c.ts", "C")
    manager.delete_file("/c.ts")
    assert manager.get_file_status("/c.ts") == UNTRACKED
    assert not manager.has_uncommitted_changes()


def test_file_diff():
    manager = _manager()
    assert manager.get_file_diff("/a.ts", "A") is None
    manager.update_file_status("/a.ts", "A2")
    assert manager.get_file_diff("/a.ts", "A2") == {
        "originalContent": "A",
        "currentContent": "A2",
        "status": MODIFIED,
    }


def test_sync_with_vfs():
    vfs = VirtualFileSystem()
    vfs.create_file_by_path("/a.ts", "A")
    vfs.create_file_by_path("/new.ts", "N")
    manager = _manager()
    manager.sync_with_vfs(vfs)
    assert dict(manager.export_status()["fileStatuses"]) == {
        "/a.ts": UNMODIFIED,
        "/b.ts": DELETED,
        "/new.ts": ADDED,
    }


def test_export_and_import_status():
    manager = _manager()
    manager.update_file_status("/a.ts", "changed")
    exported = manager.export_status()
    assert exported["branch"] == "main"
    assert exported["lastSyncCommit"] == "sha-1"

    restored = GitStatusManager.import_status(exported, manager.original_contents)
    assert restored.get_file_status("/a.ts") == MODIFIED
    assert restored.branch == "main"


# -- import + workspace status --


def _github_client(files: dict[str, str]) -> MagicMock:
    client = MagicMock()
    client.get_ref_sha.return_value = "sha-main"
    client.clone_repository.return_value = files
    return client


def test_import_repository(db_conn):
    client = _github_client({"src/index.ts": "x", "README.md": "# demo"})

    ws = import_repository(
        db_conn, "alice", "https://github.com/alice/demo.git", client=client, max_files=50
    )

    assert ws.name == "demo"
    assert ws.source == "github"
    assert ws.github_metadata["owner"] == "alice"
    assert ws.github_metadata["branch"] == "main"
    assert ws.github_metadata["lastSyncCommit"] == "sha-main"
    assert VirtualFileSystem(ws.vfs).list_file_paths() == ["/README.md", "/src/index.ts"]
    client.clone_repository.assert_called_once_with("alice", "demo", "main", max_files=50)
    snapshot = get_github_snapshot(db_conn, ws.id)
    assert snapshot["commit_sha"] == "sha-main"


def test_import_rejects_non_github_url(db_conn):
    client = _github_client({})
    with pytest.raises(ValueError, match="Invalid GitHub repository URL"):
        import_repository(db_conn, "alice", "https://example.com/x", client=client)
    client.ensure_repo_access.assert_not_called()


def test_workspace_git_status_after_edits(db_conn):
    client = _github_client({"src/index.ts": "x", "README.md": "# demo"})
    ws = import_repository(
        db_conn, "alice", "https://github.com/alice/demo", branch="dev", name="mine", client=client
    )
    session = WorkspaceSession.open(db_conn, "alice", ws.id)
    session.write_file_by_path("/src/index.ts", "y")
    session.write_file_by_path("/src/extra.ts", "z")
    session.delete_node(session.vfs.find_file("/README.md")["id"])

    status = workspace_git_status(db_conn, "alice", ws.id)

    assert status["branch"] == "dev"
    assert status["lastSyncCommit"] == "sha-main"
    assert dict(status["fileStatuses"]) == {
        "/src/index.ts": MODIFIED,
        "/README.md": DELETED,
        "/src/extra.ts": ADDED,
    }
    assert sorted(status["changedFiles"]) == ["/README.md", "/src/extra.ts", "/src/index.ts"]
    assert status["hasUncommittedChanges"] is True


def test_workspace_git_status_requires_github_workspace(db_conn, workspace):
    with pytest.raises(ValueError, match="not linked"):
        workspace_git_status(db_conn, "alice", workspace.id)
    with pytest.raises(WorkspaceNotFoundError):
        workspace_git_status(db_conn, "alice", "missing")
