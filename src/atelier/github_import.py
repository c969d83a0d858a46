"""Import a GitHub repository as a new workspace."""

from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime

from atelier.db import save_github_snapshot
from atelier.github import DEFAULT_MAX_CLONE_FILES, GitHubClient, parse_github_url
from atelier.vfs import VirtualFileSystem, normalize_path
from atelier.workspaces import Workspace, create_workspace

log = logging.getLogger(__name__)

DEFAULT_BRANCH = "main"


def import_repository(
    conn: sqlite3.Connection,
    user_id: str,
    repo_url: str,
    *,
    branch: str | None = None,
    name: str | None = None,
    client: GitHubClient | None = None,
    max_files: int = DEFAULT_MAX_CLONE_FILES,
) -> Workspace:
    """Clone *repo_url* at *branch* into a new ``github`` workspace.

    The fetched contents are also kept as the snapshot that git status is
    computed against.
    """
    parsed = parse_github_url(repo_url)
    if parsed is None:
        raise ValueError("Invalid GitHub repository URL")
    owner, repo = parsed
    branch = branch or DEFAULT_BRANCH
    client = client or GitHubClient()

    client.ensure_repo_access(owner, repo)
    commit_sha = client.get_ref_sha(owner, repo, branch)
    files = client.clone_repository(owner, repo, branch, max_files=max_files)

    vfs = VirtualFileSystem()
    for path in sorted(files):
        vfs.create_file_by_path(path, files[path])

    workspace = create_workspace(
        conn,
        user_id,
        name or repo,
        source="github",
        vfs=vfs.get_structure(),
        github_metadata={
            "repositoryUrl": f"https://github.com/{owner}/{repo}",
            "owner": owner,
            "repo": repo,
            "branch": branch,
            "lastSyncCommit": commit_sha,
            "lastSyncedAt": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
        },
    )
    save_github_snapshot(
        conn,
        workspace.id,
        contents={normalize_path(p): c for p, c in files.items()},
        branch=branch,
        commit_sha=commit_sha,
    )
    log.info(
        "Imported %s/%s@%s as workspace %s (%d files)",
        owner,
        repo,
        branch,
        workspace.id,
        len(files),
    )
    return workspace
