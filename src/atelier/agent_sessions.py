"""Persistent agent sessions: load, advance and save an ``AgentOrchestrator``.

Each call opens the session row and its workspace, applies one user action
(or the pending AI work) and writes both back. Agent state is saved with an
optimistic stage guard so a worker and an interactive caller cannot both
advance the same session.
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
from typing import Any

from atelier.agent import (
    AgentOrchestrator,
    AgentStageError,
    AgentState,
)
from atelier.ai import CompletionClient, get_completion_client
from atelier.db import (
    AgentSessionRow,
    add_agent_log,
    add_ai_audit_log,
    create_agent_session,
    get_agent_session,
    list_agent_sessions,
    save_agent_state,
)
from atelier.github import GitHubClient
from atelier.workspaces import (
    WorkspaceAccessError,
    WorkspaceNotFoundError,
    WorkspaceSession,
    can_user_modify,
    load_workspace,
)

log = logging.getLogger(__name__)

# Logger whose records (from every atelier module) land in agent_logs.
_PACKAGE_LOGGER = logging.getLogger("atelier")


class AgentDBHandler(logging.Handler):
    """Logging handler that persists log records to the agent_logs table."""

    def __init__(self, conn: sqlite3.Connection, session_id: str, *, source: str = "agent"):
        super().__init__()
        self.conn = conn
        self.session_id = session_id
        self.source = source

    def emit(self, record: logging.LogRecord) -> None:
        try:
            add_agent_log(
                self.conn,
                session_id=self.session_id,
                level=record.levelname,
                message=self.format(record),
                source=self.source,
            )
        except Exception:
            self.handleError(record)


@contextlib.contextmanager
def capture_session_logs(conn: sqlite3.Connection, session_id: str, *, source: str = "agent"):
    """Persist atelier log records emitted inside the block to the session's log."""
    handler = AgentDBHandler(conn, session_id, source=source)
    handler.setLevel(logging.DEBUG)
    _PACKAGE_LOGGER.addHandler(handler)
    prev_level = _PACKAGE_LOGGER.level
    if prev_level > logging.DEBUG or prev_level == logging.NOTSET:
        _PACKAGE_LOGGER.setLevel(logging.DEBUG)
    try:
        yield handler
    finally:
        _PACKAGE_LOGGER.removeHandler(handler)
        _PACKAGE_LOGGER.setLevel(prev_level)


def _emit(
    event_type: str,
    entity_id: str,
    status: str,
    *,
    workspace_id: str,
    source: str,
    extra: dict | None = None,
) -> None:
    """Best-effort wrapper around queue.publish_event."""
    from atelier.queue import publish_event

    publish_event(
        event_type, entity_id, status, workspace_id=workspace_id, source=source, extra=extra
    )


class AgentRun:
    """One loaded agent session plus the workspace it edits."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        row: AgentSessionRow,
        workspace: WorkspaceSession,
        client: CompletionClient | None = None,
        *,
        source: str = "api",
    ):
        self.conn = conn
        self.row = row
        self.workspace = workspace
        self.source = source
        self.orchestrator = AgentOrchestrator(AgentState.from_row(row), workspace.vfs, client)
        self._loaded_stage = row["stage"]
        self._loaded_github_stage = row["github_stage"]
        self._loaded_vfs = workspace.vfs.get_structure()

    @property
    def id(self) -> str:
        return self.row["id"]

    @property
    def state(self) -> AgentState:
        return self.orchestrator.state

    def ensure_client(self) -> None:
        if self.orchestrator.client is None:
            self.orchestrator.client = get_completion_client()

    def commit(self, *, actor: str | None = None) -> None:
        """Save the agent state and, if the agent changed it, the workspace.

        Both writes share one transaction that only commits when the stored
        stages still match the ones this run loaded.
        """
        try:
            saved = save_agent_state(
                self.conn,
                self.id,
                self.state.to_row(),
                expected_stage=self._loaded_stage,
                expected_github_stage=self._loaded_github_stage,
                actor=actor,
                commit=False,
            )
            if not saved:
                raise AgentStageError(
                    f"Agent session {self.id} changed while it was being updated; "
                    "reload and retry."
                )
            if self.workspace.vfs.get_structure() != self._loaded_vfs:
                self.workspace.save(commit=False)
        except Exception:
            self.conn.rollback()
            raise
        self.conn.commit()
        workspace_id = self.row["workspace_id"]
        if self.state.stage != self._loaded_stage:
            _emit(
                "agent:stage",
                self.id,
                self.state.stage,
                workspace_id=workspace_id,
                source=self.source,
            )
        if self.state.github_stage != self._loaded_github_stage:
            _emit(
                "agent:github_stage",
                self.id,
                self.state.github_stage,
                workspace_id=workspace_id,
                source=self.source,
            )
        self._loaded_stage = self.state.stage
        self._loaded_github_stage = self.state.github_stage
        self._loaded_vfs = self.workspace.vfs.get_structure()
        refreshed = get_agent_session(self.conn, self.id)
        if refreshed is not None:
            self.row = refreshed

    def run_pending(self) -> None:
        if not self.orchestrator.needs_work():
            return
        self.ensure_client()
        with capture_session_logs(self.conn, self.id, source=self.source):
            self.orchestrator.run_pending()

    def to_dict(self) -> dict[str, Any]:
        return session_view(self.row, self.state)


def session_view(row: AgentSessionRow, state: AgentState | None = None) -> dict[str, Any]:
    state = state or AgentState.from_row(row)
    data = state.to_dict()
    data.update(
        {
            "id": row["id"],
            "workspace_id": row["workspace_id"],
            "user_id": row["user_id"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }
    )
    return data


def open_agent_run(
    conn: sqlite3.Connection,
    user_id: str,
    session_id: str,
    *,
    client: CompletionClient | None = None,
    source: str = "api",
) -> AgentRun:
    row = get_agent_session(conn, session_id)
    if row is None:
        raise LookupError(f"Agent session '{session_id}' not found")
    # Agent work neither activates nor touches the workspace.
    workspace = load_workspace(conn, user_id, row["workspace_id"], touch=False)
    if workspace is None:
        raise WorkspaceNotFoundError(f"Workspace '{row['workspace_id']}' not found")
    session = WorkspaceSession(conn, user_id, workspace, autosave=False)
    return AgentRun(conn, row, session, client, source=source)


def _require_modify(conn: sqlite3.Connection, user_id: str, workspace_id: str) -> None:
    if not can_user_modify(conn, user_id, workspace_id):
        raise WorkspaceAccessError(
            f"User '{user_id}' cannot run the agent on workspace '{workspace_id}'"
        )


def _dispatch_pending(run: AgentRun, *, background: bool, actor: str) -> None:
    """Run the owed AI work inline, or save and hand it to a worker."""
    if not run.orchestrator.needs_work():
        run.commit(actor=actor)
        return
    if background:
        from atelier.queue import enqueue_agent_session, enqueue_github_draft

        run.commit(actor=actor)
        if run.state.stage in ("planning", "executing"):
            enqueue_agent_session(run.id, run.state.stage)
        else:
            enqueue_github_draft(run.id)
        return
    run.ensure_client()
    # Persist the working stage first so observers see planning/executing.
    run.commit(actor=actor)
    run.run_pending()
    run.commit(actor=actor)


# -- operations --


def start_agent_session(
    conn: sqlite3.Connection,
    user_id: str,
    workspace_id: str,
    task: str,
    *,
    permissions: dict[str, bool] | None = None,
) -> dict[str, Any]:
    """Create a session for *task*, waiting for the user to approve permissions."""
    if load_workspace(conn, user_id, workspace_id, touch=False) is None:
        raise LookupError(f"Workspace '{workspace_id}' not found")
    _require_modify(conn, user_id, workspace_id)
    row = create_agent_session(conn, workspace_id=workspace_id, user_id=user_id)
    run = open_agent_run(conn, user_id, row["id"])
    run.orchestrator.start_task(task)
    if permissions:
        run.orchestrator.set_permissions(**permissions)
    run.commit(actor=user_id)
    log.info("Agent session %s started on workspace %s", run.id, workspace_id)
    return run.to_dict()


def get_agent_session_view(
    conn: sqlite3.Connection, user_id: str, session_id: str
) -> dict[str, Any]:
    row = get_agent_session(conn, session_id)
    if row is None:
        raise LookupError(f"Agent session '{session_id}' not found")
    if load_workspace(conn, user_id, row["workspace_id"], touch=False) is None:
        raise LookupError(f"Workspace '{row['workspace_id']}' not found")
    return session_view(row)


def list_agent_session_views(
    conn: sqlite3.Connection, user_id: str, workspace_id: str, *, limit: int = 20
) -> list[dict[str, Any]]:
    if load_workspace(conn, user_id, workspace_id, touch=False) is None:
        raise LookupError(f"Workspace '{workspace_id}' not found")
    return [session_view(row) for row in list_agent_sessions(conn, workspace_id, limit=limit)]


def set_agent_permissions(
    conn: sqlite3.Connection, user_id: str, session_id: str, flags: dict[str, bool]
) -> dict[str, Any]:
    run = open_agent_run(conn, user_id, session_id)
    _require_modify(conn, user_id, run.row["workspace_id"])
    run.orchestrator.set_permissions(**flags)
    run.commit(actor=user_id)
    return run.to_dict()


AGENT_ACTIONS = (
    "approve_permissions",
    "approve_plan",
    "reject_plan",
    "approve_step",
    "stop",
    "revoke",
    "reset",
)


def apply_agent_action(
    conn: sqlite3.Connection,
    user_id: str,
    session_id: str,
    action: str,
    *,
    client: CompletionClient | None = None,
    background: bool = False,
) -> dict[str, Any]:
    """Apply a user decision and run (or enqueue) whatever AI work it unlocks."""
    if action not in AGENT_ACTIONS:
        raise ValueError(f"Unknown agent action '{action}'. Must be one of: {AGENT_ACTIONS}")
    run = open_agent_run(conn, user_id, session_id, client=client)
    _require_modify(conn, user_id, run.row["workspace_id"])
    orchestrator = run.orchestrator
    applied: list = []
    step = None

    if action == "approve_permissions":
        orchestrator.approve_permissions()
    elif action == "approve_plan":
        orchestrator.approve_plan()
    elif action == "reject_plan":
        orchestrator.reject_plan()
    elif action == "approve_step":
        step = orchestrator.state.current_step
        applied = orchestrator.approve_step()
    elif action == "stop":
        orchestrator.stop_execution()
    elif action == "revoke":
        orchestrator.revoke_permissions()
    else:
        orchestrator.reset()

    _dispatch_pending(run, background=background, actor=user_id)
    if applied:
        add_ai_audit_log(
            conn,
            workspace_id=run.workspace.id,
            team_id=run.workspace.workspace.team_id,
            triggered_by=user_id,
            action="agent_step_applied",
            files_modified=[c.file_path for c in applied],
            metadata={"session_id": run.id, "step_id": step.id if step else None},
        )
    return run.to_dict()


def advance_agent_session(
    conn: sqlite3.Connection,
    session_id: str,
    *,
    client: CompletionClient | None = None,
    source: str = "worker",
) -> dict[str, Any]:
    """Do the pending AI work for a session as its owner. Used by workers."""
    row = get_agent_session(conn, session_id)
    if row is None:
        raise LookupError(f"Agent session '{session_id}' not found")
    run = open_agent_run(conn, row["user_id"], session_id, client=client, source=source)
    run.run_pending()
    run.commit(actor=source)
    return run.to_dict()


# -- GitHub --


def _github_repo(run: AgentRun) -> tuple[str, str]:
    metadata = run.workspace.workspace.github_metadata or {}
    owner, repo = metadata.get("owner"), metadata.get("repo")
    if run.workspace.workspace.source != "github" or not owner or not repo:
        raise ValueError("Workspace is not linked to a GitHub repository.")
    return owner, repo


def draft_github_changes(
    conn: sqlite3.Connection,
    user_id: str,
    session_id: str,
    *,
    base_branch: str | None = None,
    client: CompletionClient | None = None,
    background: bool = False,
) -> dict[str, Any]:
    """Ask the model for a commit message and PR text for a completed session.

    *base_branch* defaults to the branch the workspace was imported from.
    """
    run = open_agent_run(conn, user_id, session_id, client=client)
    _require_modify(conn, user_id, run.row["workspace_id"])
    owner, repo = _github_repo(run)
    base = base_branch or (run.workspace.workspace.github_metadata or {}).get("branch")
    run.orchestrator.begin_github_draft(f"{owner}/{repo}", base or "")
    _dispatch_pending(run, background=background, actor=user_id)
    return run.to_dict()


def edit_github_draft(
    conn: sqlite3.Connection, user_id: str, session_id: str, fields: dict[str, str]
) -> dict[str, Any]:
    run = open_agent_run(conn, user_id, session_id)
    _require_modify(conn, user_id, run.row["workspace_id"])
    run.orchestrator.edit_github_draft(**fields)
    run.commit(actor=user_id)
    return run.to_dict()


def publish_github_changes(
    conn: sqlite3.Connection,
    user_id: str,
    session_id: str,
    *,
    github: GitHubClient | None = None,
) -> dict[str, Any]:
    """Commit the session's changeset to its task branch and open the PR.

    The publishing stage is saved before GitHub is called, so a second
    request for the same session fails its stage guard instead of pushing
    the changeset again.
    """
    run = open_agent_run(conn, user_id, session_id)
    _require_modify(conn, user_id, run.row["workspace_id"])
    owner, repo = _github_repo(run)
    github = github or GitHubClient()
    run.orchestrator.begin_publish()
    run.commit(actor=user_id)
    with capture_session_logs(conn, run.id, source="github"):
        result = run.orchestrator.finish_publish(github, owner, repo)
    run.commit(actor=user_id)
    if result:
        add_ai_audit_log(
            conn,
            workspace_id=run.workspace.id,
            team_id=run.workspace.workspace.team_id,
            triggered_by=user_id,
            action="github_publish",
            files_modified=[c.file_path for c in run.state.applied_changes],
            metadata={"session_id": run.id, **result},
        )
    return run.to_dict()
