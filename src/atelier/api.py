"""JSON stdin/stdout dispatch layer for the editor backend (and any non-CLI consumer).

Protocol:
    stdin:  {"method": "workspace.show", "params": {"id": "...", "user": "alice"}}
    stdout: {"ok": true, "data": {...}}
    stdout: {"ok": false, "error": "Not found", "code": "NOT_FOUND"}

Every method acts on behalf of ``params["user"]`` (default: ``ATELIER_USER``).
Always exits 0. Always returns JSON on stdout. No stderr parsing needed.
Entry point: ``atelier-api`` console script (pyproject.toml).
"""

from __future__ import annotations

import json
import sys
from collections.abc import Callable
from pathlib import Path

from atelier import config
from atelier.agent import AgentStageError
from atelier.agent_sessions import (
    apply_agent_action,
    draft_github_changes,
    edit_github_draft,
    get_agent_session_view,
    list_agent_session_views,
    publish_github_changes,
    set_agent_permissions,
    start_agent_session,
)
from atelier.ai import get_completion_client
from atelier.db import (
    VALID_TEAM_ROLES,
    connect,
    count_user_workspaces,
    list_agent_logs,
    list_ai_audit_logs,
    list_status_history,
    total_user_storage,
)
from atelier.editor_state import EditorState
from atelier.git_status import workspace_git_status
from atelier.github import (
    BranchNameMismatchError,
    GitHubClient,
    build_deterministic_branch_name,
    parse_github_url,
)
from atelier.github_import import import_repository
from atelier.status_reference import get_status_reference
from atelier.teams import add_team_member, create_team, team_members
from atelier.terminal import run_in_active_workspace, run_sandboxed_command, terminal_assist
from atelier.workspaces import (
    WorkspaceLimitError,
    WorkspaceSession,
    assign_workspace_team,
    create_workspace,
    delete_workspace,
    format_bytes,
    get_active_workspace,
    get_last_opened_workspace,
    list_workspaces,
    load_workspace,
    rename_workspace,
    set_active_workspace,
    update_workspace,
)

# ---------------------------------------------------------------------------
# Error codes
# ---------------------------------------------------------------------------

NOT_FOUND = "NOT_FOUND"
INVALID_PARAMS = "INVALID_PARAMS"
INVALID_METHOD = "INVALID_METHOD"
FORBIDDEN = "FORBIDDEN"
CONFLICT = "CONFLICT"
INTERNAL = "INTERNAL"


class ApiError(Exception):
    """Raised by handlers to produce a structured error response."""

    def __init__(self, message: str, code: str = INTERNAL):
        super().__init__(message)
        self.code = code


def _require(params: dict, key: str) -> str:
    """Extract a required string param, raising ApiError if missing."""
    val = params.get(key)
    if not val:
        raise ApiError(f"Missing required param: {key}", INVALID_PARAMS)
    return str(val)


def _optional(params: dict, key: str) -> str | None:
    val = params.get(key)
    return str(val) if val is not None else None


def _optional_bool(params: dict, key: str, default: bool = False) -> bool:
    val = params.get(key)
    if val is None:
        return default
    return bool(val)


def _optional_non_negative_int(params: dict, key: str, default: int) -> int:
    val = params.get(key)
    if val is None:
        return default
    try:
        parsed = int(val)
    except (TypeError, ValueError) as exc:
        raise ApiError(f"Param '{key}' must be an integer", INVALID_PARAMS) from exc
    if parsed < 0:
        raise ApiError(f"Param '{key}' must be >= 0", INVALID_PARAMS)
    return parsed


def _optional_dict(params: dict, key: str) -> dict | None:
    val = params.get(key)
    if val is None:
        return None
    if not isinstance(val, dict):
        raise ApiError(f"Param '{key}' must be an object", INVALID_PARAMS)
    return val


def _user(params: dict) -> str:
    return _optional(params, "user") or config.default_user()


def _error_code(exc: Exception) -> str:
    if isinstance(exc, LookupError):
        return NOT_FOUND
    if isinstance(exc, PermissionError):
        return FORBIDDEN
    if isinstance(exc, AgentStageError | WorkspaceLimitError | BranchNameMismatchError):
        return CONFLICT
    if isinstance(exc, ValueError):
        return INVALID_PARAMS
    return INTERNAL


# ---------------------------------------------------------------------------
# Handlers: each takes (conn, params) and returns JSON-serializable data
# ---------------------------------------------------------------------------

# -- workspaces --


def _load(conn, params, key: str = "id"):
    workspace_id = _require(params, key)
    workspace = load_workspace(conn, _user(params), workspace_id, touch=False)
    if workspace is None:
        raise ApiError(f"Workspace '{workspace_id}' not found", NOT_FOUND)
    return workspace


def _handle_workspace_create(conn, params):
    workspace = create_workspace(
        conn,
        _user(params),
        _require(params, "name"),
        source=_optional(params, "source") or "manual",
        vfs=_optional_dict(params, "vfs"),  # type: ignore[arg-type]
        workspace_id=_optional(params, "workspace_id"),
    )
    return workspace.metadata()


def _handle_workspace_show(conn, params):
    workspace_id = _require(params, "id")
    workspace = load_workspace(conn, _user(params), workspace_id)
    if workspace is None:
        raise ApiError(f"Workspace '{workspace_id}' not found", NOT_FOUND)
    return workspace.to_dict()


def _handle_workspace_list(conn, params):
    return list_workspaces(conn, _user(params))


def _handle_workspace_update(conn, params):
    workspace_id = _require(params, "id")
    vfs = _optional_dict(params, "vfs")
    if vfs is None:
        raise ApiError("Missing required param: vfs", INVALID_PARAMS)
    editor_state = _optional_dict(params, "editor_state")
    size = update_workspace(
        conn,
        _user(params),
        workspace_id,
        vfs,  # type: ignore[arg-type]
        EditorState.from_dict(editor_state) if editor_state is not None else None,
    )
    return {"id": workspace_id, "storage_bytes": size, "storage": format_bytes(size)}


def _handle_workspace_rename(conn, params):
    workspace = rename_workspace(
        conn, _user(params), _require(params, "id"), _require(params, "name")
    )
    return workspace.metadata()


def _handle_workspace_delete(conn, params):
    workspace_id = _require(params, "id")
    if not delete_workspace(conn, _user(params), workspace_id):
        raise ApiError(f"Workspace '{workspace_id}' not found", NOT_FOUND)
    return {"id": workspace_id, "deleted": True}


def _handle_workspace_last_opened(conn, params):
    workspace = get_last_opened_workspace(conn, _user(params))
    return workspace.metadata() if workspace else None


def _handle_workspace_active_set(conn, params):
    workspace_id = _optional(params, "id")
    set_active_workspace(conn, _user(params), workspace_id)
    return {"active_workspace_id": workspace_id}


def _handle_workspace_active_get(conn, params):
    workspace = get_active_workspace(conn, _user(params))
    return workspace.metadata() if workspace else None


def _handle_workspace_usage(conn, params):
    user_id = _user(params)
    used = total_user_storage(conn, user_id)
    return {
        "workspace_count": count_user_workspaces(conn, user_id),
        "max_workspace_count": config.WORKSPACE_MAX_COUNT_PER_USER,
        "storage_bytes": used,
        "max_storage_bytes": config.WORKSPACE_MAX_STORAGE_BYTES,
        "storage": f"{format_bytes(used)} / {format_bytes(config.WORKSPACE_MAX_STORAGE_BYTES)}",
    }


def _handle_workspace_files(conn, params):
    workspace = _load(conn, params)
    session = WorkspaceSession(conn, _user(params), workspace, autosave=False)
    return session.vfs.list_file_paths()


def _handle_workspace_read_file(conn, params):
    workspace = _load(conn, params)
    path = _require(params, "path")
    session = WorkspaceSession(conn, _user(params), workspace, autosave=False)
    node = session.vfs.find_file(path)
    if node is None:
        raise ApiError(f"File '{path}' not found", NOT_FOUND)
    return {"path": session.vfs.get_node_path(node["id"]), "content": node.get("content") or ""}


def _handle_workspace_write_file(conn, params):
    workspace = _load(conn, params)
    path = _require(params, "path")
    content = params.get("content")
    if not isinstance(content, str):
        raise ApiError("Param 'content' must be a string", INVALID_PARAMS)
    session = WorkspaceSession(conn, _user(params), workspace)
    node_id = session.write_file_by_path(path, content)
    return {
        "id": node_id,
        "path": session.vfs.get_node_path(node_id),
        "storage_bytes": session.workspace.storage_bytes,
    }


def _handle_workspace_git_status(conn, params):
    return workspace_git_status(conn, _user(params), _require(params, "id"))


def _handle_workspace_team_assign(conn, params):
    workspace = assign_workspace_team(
        conn, _user(params), _require(params, "id"), _optional(params, "team_id")
    )
    return workspace.metadata()


# -- teams --


def _handle_team_create(conn, params):
    return dict(create_team(conn, _require(params, "name"), _user(params)))


def _handle_team_add_member(conn, params):
    role = _require(params, "role")
    if role not in VALID_TEAM_ROLES:
        raise ApiError(
            f"Invalid role '{role}'. Must be one of: {sorted(VALID_TEAM_ROLES)}", INVALID_PARAMS
        )
    membership = add_team_member(
        conn,
        _require(params, "team_id"),
        inviter_id=_user(params),
        user_id=_require(params, "member"),
        role=role,
    )
    return dict(membership)


def _handle_team_members(conn, params):
    return [dict(m) for m in team_members(conn, _require(params, "team_id"), user_id=_user(params))]


# -- agent sessions --


def _handle_agent_start(conn, params):
    return start_agent_session(
        conn,
        _user(params),
        _require(params, "workspace_id"),
        _require(params, "task"),
        permissions=_optional_dict(params, "permissions"),
    )


def _handle_agent_show(conn, params):
    return get_agent_session_view(conn, _user(params), _require(params, "id"))


def _handle_agent_list(conn, params):
    return list_agent_session_views(
        conn,
        _user(params),
        _require(params, "workspace_id"),
        limit=_optional_non_negative_int(params, "limit", 20),
    )


def _handle_agent_permissions(conn, params):
    flags = _optional_dict(params, "permissions")
    if not flags:
        raise ApiError("Missing required param: permissions", INVALID_PARAMS)
    return set_agent_permissions(conn, _user(params), _require(params, "id"), flags)


def _agent_action(action: str) -> Callable:
    def handler(conn, params):
        return apply_agent_action(
            conn,
            _user(params),
            _require(params, "id"),
            action,
            background=_optional_bool(params, "background"),
        )

    handler.__name__ = f"_handle_agent_{action}"
    return handler


def _handle_agent_logs(conn, params):
    session = get_agent_session_view(conn, _user(params), _require(params, "id"))
    return list_agent_logs(conn, session["id"], level=_optional(params, "level"))


def _handle_agent_history(conn, params):
    session = get_agent_session_view(conn, _user(params), _require(params, "id"))
    agent = list_status_history(conn, entity_type="agent_session", entity_id=session["id"])
    github = list_status_history(conn, entity_type="github_publish", entity_id=session["id"])
    return {"agent": agent, "github": github}


# -- GitHub --


def _handle_github_branch_name(conn, params):
    task = _require(params, "task")
    base_branch = _require(params, "base_branch")
    return {"branch_name": build_deterministic_branch_name(task, base_branch)}


def _handle_github_draft(conn, params):
    return draft_github_changes(
        conn,
        _user(params),
        _require(params, "id"),
        base_branch=_optional(params, "base_branch"),
        background=_optional_bool(params, "background"),
    )


def _handle_github_draft_edit(conn, params):
    fields = {
        key: params[name]
        for name, key in (
            ("commit_message", "commitMessage"),
            ("pr_title", "prTitle"),
            ("pr_body", "prBody"),
        )
        if params.get(name) is not None
    }
    if not fields:
        raise ApiError("Nothing to edit: pass commit_message, pr_title or pr_body", INVALID_PARAMS)
    return edit_github_draft(conn, _user(params), _require(params, "id"), fields)


def _handle_github_publish(conn, params):
    return publish_github_changes(
        conn, _user(params), _require(params, "id"), github=GitHubClient()
    )


def _handle_github_import(conn, params):
    workspace = import_repository(
        conn,
        _user(params),
        _require(params, "url"),
        branch=_optional(params, "branch"),
        name=_optional(params, "name"),
        client=GitHubClient(),
    )
    return workspace.metadata()


def _handle_github_branches(conn, params):
    url = _optional(params, "url")
    if url:
        parsed = parse_github_url(url)
        if parsed is None:
            raise ApiError("Invalid GitHub repository URL", INVALID_PARAMS)
        owner, repo = parsed
    else:
        metadata = _load(conn, params, "workspace_id").github_metadata or {}
        owner, repo = metadata.get("owner"), metadata.get("repo")
        if not owner or not repo:
            raise ApiError("Workspace is not linked to a GitHub repository.", INVALID_PARAMS)
    return GitHubClient().list_branches(owner, repo)


# -- terminal --


def _handle_terminal_run(conn, params):
    command = _require(params, "command")
    workspace_id = _optional(params, "workspace_id")
    if workspace_id:
        structure = _load(conn, params, "workspace_id").vfs
        events = run_sandboxed_command(command, structure, step_delay=0)
    else:
        events = run_in_active_workspace(conn, _user(params), command, step_delay=0)
    collected = list(events)
    exit_event = collected[-1]
    return {"events": collected, "exit_code": exit_event["exitCode"]}


def _handle_terminal_assist(conn, params):
    response = terminal_assist(
        _require(params, "kind"),
        _require(params, "output"),
        get_completion_client(),
        command=_optional(params, "command"),
    )
    return {"response": response}


# -- misc --


def _handle_status_reference(conn, params):
    return get_status_reference()


def _handle_audit_list(conn, params):
    workspace = _load(conn, params, "workspace_id")
    return list_ai_audit_logs(conn, workspace.id)


# ---------------------------------------------------------------------------
# Method registry
# ---------------------------------------------------------------------------

METHODS: dict[str, Callable] = {
    # workspaces
    "workspace.create": _handle_workspace_create,
    "workspace.show": _handle_workspace_show,
    "workspace.list": _handle_workspace_list,
    "workspace.update": _handle_workspace_update,
    "workspace.rename": _handle_workspace_rename,
    "workspace.delete": _handle_workspace_delete,
    "workspace.last_opened": _handle_workspace_last_opened,
    "workspace.active.set": _handle_workspace_active_set,
    "workspace.active.get": _handle_workspace_active_get,
    "workspace.usage": _handle_workspace_usage,
    "workspace.files": _handle_workspace_files,
    "workspace.read_file": _handle_workspace_read_file,
    "workspace.write_file": _handle_workspace_write_file,
    "workspace.git_status": _handle_workspace_git_status,
    "workspace.team.assign": _handle_workspace_team_assign,
    # teams
    "team.create": _handle_team_create,
    "team.add_member": _handle_team_add_member,
    "team.members": _handle_team_members,
    # agent sessions
    "agent.start": _handle_agent_start,
    "agent.show": _handle_agent_show,
    "agent.list": _handle_agent_list,
    "agent.permissions": _handle_agent_permissions,
    "agent.approve_permissions": _agent_action("approve_permissions"),
    "agent.approve_plan": _agent_action("approve_plan"),
    "agent.reject_plan": _agent_action("reject_plan"),
    "agent.approve_step": _agent_action("approve_step"),
    "agent.stop": _agent_action("stop"),
    "agent.revoke": _agent_action("revoke"),
    "agent.reset": _agent_action("reset"),
    "agent.logs": _handle_agent_logs,
    "agent.history": _handle_agent_history,
    # GitHub
    "github.branch_name": _handle_github_branch_name,
    "github.draft": _handle_github_draft,
    "github.draft.edit": _handle_github_draft_edit,
    "github.publish": _handle_github_publish,
    "github.import": _handle_github_import,
    "github.branches": _handle_github_branches,
    # terminal
    "terminal.run": _handle_terminal_run,
    "terminal.assist": _handle_terminal_assist,
    # misc
    "status.reference": _handle_status_reference,
    "audit.list": _handle_audit_list,
}


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def dispatch(request: dict, *, db_path: Path | None = None) -> dict:
    """Process a single API request and return the response dict.

    Args:
        request: ``{"method": "...", "params": {...}}``
        db_path: Override the default database path. When ``None``,
            uses ``DEFAULT_DB_PATH`` (``~/.config/atelier/atelier.db`` or
            ``ATELIER_DB_PATH`` env var).
    """
    method = request.get("method")
    if not method or not isinstance(method, str):
        return {"ok": False, "error": "Missing or invalid 'method'", "code": INVALID_METHOD}

    handler = METHODS.get(method)
    if not handler:
        return {"ok": False, "error": f"Unknown method: {method}", "code": INVALID_METHOD}

    params = request.get("params") or {}
    if not isinstance(params, dict):
        return {"ok": False, "error": "'params' must be an object", "code": INVALID_PARAMS}

    try:
        with connect(db_path) if db_path else connect() as conn:
            data = handler(conn, params)
        return {"ok": True, "data": data}
    except ApiError as exc:
        return {"ok": False, "error": str(exc), "code": exc.code}
    except Exception as exc:
        return {"ok": False, "error": str(exc), "code": _error_code(exc)}


def main() -> None:
    """Read JSON request from stdin, dispatch, write JSON response to stdout."""
    try:
        raw = sys.stdin.read()
        if not raw.strip():
            response = {"ok": False, "error": "Empty request", "code": INVALID_PARAMS}
        else:
            request = json.loads(raw)
            response = dispatch(request)
    except json.JSONDecodeError as exc:
        response = {"ok": False, "error": f"Invalid JSON: {exc}", "code": INVALID_PARAMS}
    except Exception as exc:
        response = {"ok": False, "error": str(exc), "code": INTERNAL}

    sys.stdout.write(json.dumps(response, default=str))
    sys.stdout.write("\n")
    sys.stdout.flush()


if __name__ == "__main__":
    main()
