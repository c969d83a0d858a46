"""Local change tracking for GitHub-linked workspaces.

The repository is the source of truth. The imported file contents are kept
as a snapshot, and each workspace file is classified against it. Nothing is
committed or pushed from here.
"""

from __future__ import annotations

import json
import sqlite3
from typing import Any

from atelier.db import get_github_snapshot
from atelier.vfs import VirtualFileSystem, normalize_path
from atelier.workspaces import WorkspaceNotFoundError, load_workspace

UNMODIFIED = "unmodified"
MODIFIED = "modified"
ADDED = "added"
DELETED = "deleted"
UNTRACKED = "untracked"

GIT_FILE_STATUSES = (UNMODIFIED, MODIFIED, ADDED, DELETED, UNTRACKED)
CHANGED_STATUSES = (MODIFIED, ADDED, DELETED)


class GitStatusManager:
    def __init__(
        self,
        original_contents: dict[str, str] | None = None,
        branch: str | None = None,
        last_sync_commit: str | None = None,
    ):
        self.original_contents = dict(original_contents or {})
        self.branch = branch
        self.last_sync_commit = last_sync_commit
        self.file_statuses: dict[str, str] = {path: UNMODIFIED for path in self.original_contents}

    def update_file_status(self, path: str, current_content: str) -> str:
        original = self.original_contents.get(path)
        if original is None:
            status = ADDED
        elif current_content == original:
            status = UNMODIFIED
        else:
            status = MODIFIED
        self.file_statuses[path] = status
        return status

    def add_file(self, path: str, content: str) -> None:
        if path not in self.original_contents:
            self.file_statuses[path] = ADDED
        else:
            self.update_file_status(path, content)

    def delete_file(self, path: str) -> None:
        if path in self.original_contents:
            self.file_statuses[path] = DELETED
        else:
            # Added locally, then deleted: nothing left to report.
            self.file_statuses.pop(path, None)

    def get_file_status(self, path: str) -> str:
        return self.file_statuses.get(path, UNTRACKED)

    def get_modified_files(self) -> list[str]:
        return [p for p, status in self.file_statuses.items() if status in CHANGED_STATUSES]

    def has_uncommitted_changes(self) -> bool:
        return bool(self.get_modified_files())

    def get_file_diff(self, path: str, current_content: str) -> dict[str, str] | None:
        status = self.get_file_status(path)
        if status == UNMODIFIED:
            return None
        return {
            "originalContent": self.original_contents.get(path) or "",
            "currentContent": current_content,
            "status": status,
        }

    def sync_with_vfs(self, vfs: VirtualFileSystem) -> None:
        """Reclassify every path from the current workspace contents."""
        current = {normalize_path(p): node.get("content") or "" for p, node in vfs.iter_files()}
        for path, content in current.items():
            self.update_file_status(path, content)
        for path in list(self.original_contents):
            if path not in current:
                self.delete_file(path)
        for path in list(self.file_statuses):
            if path not in current and path not in self.original_contents:
                self.file_statuses.pop(path)

    def export_status(self) -> dict[str, Any]:
        return {
            "fileStatuses": [[path, status] for path, status in self.file_statuses.items()],
            "lastSyncCommit": self.last_sync_commit,
            "branch": self.branch,
        }

    @classmethod
    def import_status(
        cls, data: dict[str, Any], original_contents: dict[str, str]
    ) -> GitStatusManager:
        manager = cls(original_contents, data.get("branch"), data.get("lastSyncCommit"))
        manager.file_statuses = {path: status for path, status in data.get("fileStatuses", [])}
        return manager


def workspace_git_status(
    conn: sqlite3.Connection, user_id: str, workspace_id: str
) -> dict[str, Any]:
    """Per-file status of a workspace against its imported repository snapshot."""
    workspace = load_workspace(conn, user_id, workspace_id, touch=False)
    if workspace is None:
        raise WorkspaceNotFoundError(f"Workspace '{workspace_id}' not found")
    snapshot = get_github_snapshot(conn, workspace_id)
    if workspace.source != "github" or snapshot is None:
        raise ValueError("Workspace is not linked to a GitHub repository.")

    originals = {normalize_path(p): c for p, c in json.loads(snapshot["contents"]).items()}
    manager = GitStatusManager(originals, snapshot["branch"], snapshot["commit_sha"])
    manager.sync_with_vfs(VirtualFileSystem(workspace.vfs))
    status = manager.export_status()
    status["changedFiles"] = manager.get_modified_files()
    status["hasUncommittedChanges"] = manager.has_uncommitted_changes()
    return status
