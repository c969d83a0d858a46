"""Workspace persistence: serialization, per-user limits, access checks.

A workspace row stores the VFS and editor state as JSON text. Storage is
accounted against the workspace owner even when a team member saves it.
"""

from __future__ import annotations

import json
import logging
import math
import re
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Any

from atelier import config
from atelier.db import (
    WorkspaceRow,
    count_user_workspaces,
    delete_workspace_row,
    get_active_workspace_id,
    get_team,
    get_team_role,
    get_workspace_row,
    insert_workspace,
    list_workspace_rows,
    rename_workspace_row,
    set_active_workspace_id,
    set_workspace_team,
    total_user_storage,
    touch_workspace,
    update_workspace_content,
)
from atelier.editor_state import EditorState
from atelier.teams import ADMIN, EDITOR, VIEWER, has_role_at_least
from atelier.vfs import VFSStructure, VirtualFileSystem, calculate_vfs_size, empty_structure

log = logging.getLogger(__name__)

MAX_WORKSPACE_NAME_LENGTH = 255
_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)


class WorkspaceNotFoundError(LookupError):
    pass


class WorkspaceAccessError(PermissionError):
    pass


class WorkspaceLimitError(RuntimeError):
    """Base for per-user quota violations."""


class StorageLimitExceededError(WorkspaceLimitError):
    def __init__(self, current_size: int, attempted_size: int, max_size: int):
        super().__init__(
            f"Storage limit exceeded. Current: {format_bytes(current_size)}, "
            f"Attempted: {format_bytes(attempted_size)}, "
            f"Max: {format_bytes(max_size)}"
        )
        self.current_size = current_size
        self.attempted_size = attempted_size
        self.max_size = max_size


class WorkspaceCountLimitExceededError(WorkspaceLimitError):
    def __init__(self, current_count: int, max_count: int):
        super().__init__(
            f"Workspace count limit exceeded. Current: {current_count}, Max: {max_count}"
        )
        self.current_count = current_count
        self.max_count = max_count


# -- size helpers --

_BYTE_UNITS = ("Bytes", "KB", "MB", "GB")


def format_bytes(size: int) -> str:
    """Human-readable size, e.g. ``1.5 MB``."""
    if size <= 0:
        return "0 Bytes"
    exponent = min(int(math.floor(math.log(size, 1024))), len(_BYTE_UNITS) - 1)
    value = f"{size / 1024**exponent:.2f}".rstrip("0").rstrip(".")
    return f"{value} {_BYTE_UNITS[exponent]}"


def is_within_storage_limit(current_total: int, added: int, max_bytes: int) -> bool:
    return current_total + added <= max_bytes


# -- serialization --


def sanitize_json_value(value: Any) -> Any:
    """Escape NUL characters so the JSON text can be stored safely."""
    if isinstance(value, str):
        return value.replace("\u0000", "\\u0000")
    if isinstance(value, list):
        return [sanitize_json_value(v) for v in value]
    if isinstance(value, dict):
        return {k: sanitize_json_value(v) for k, v in value.items()}
    return value


def serialize_vfs(structure: VFSStructure) -> str:
    return json.dumps(sanitize_json_value(structure))


def serialize_editor_state(state: EditorState | None) -> str | None:
    if state is None:
        return None
    return json.dumps(sanitize_json_value(state.to_dict()))


@dataclass
class Workspace:
    id: str
    user_id: str
    name: str
    source: str
    vfs: VFSStructure
    created_at: str
    last_opened_at: str
    updated_at: str
    editor_state: EditorState | None = None
    github_metadata: dict[str, Any] | None = None
    team_id: str | None = None
    storage_bytes: int = 0

    def metadata(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "source": self.source,
            "created_at": self.created_at,
            "last_opened_at": self.last_opened_at,
            "updated_at": self.updated_at,
            "github_metadata": self.github_metadata,
            "team_id": self.team_id,
            "storage_bytes": self.storage_bytes,
        }

    def to_dict(self) -> dict[str, Any]:
        data = self.metadata()
        data["vfs"] = self.vfs
        data["editor_state"] = self.editor_state.to_dict() if self.editor_state else None
        return data


def workspace_from_row(row: WorkspaceRow) -> Workspace:
    try:
        vfs = json.loads(row["vfs_data"])
    except json.JSONDecodeError as e:
        raise ValueError(f"Failed to parse VFS data for workspace {row['id']}: {e}") from e

    editor_state = None
    if row["editor_state_data"]:
        try:
            editor_state = EditorState.from_dict(json.loads(row["editor_state_data"]))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            log.warning("Ignoring unreadable editor state for workspace %s", row["id"])

    github_metadata = json.loads(row["github_metadata"]) if row["github_metadata"] else None
    return Workspace(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        source=row["source"],
        vfs=vfs,
        created_at=row["created_at"],
        last_opened_at=row["last_opened_at"],
        updated_at=row["updated_at"],
        editor_state=editor_state,
        github_metadata=github_metadata,
        team_id=row["team_id"],
        storage_bytes=row["storage_bytes"],
    )


def validate_workspace_name(name: str) -> str:
    stripped = (name or "").strip()
    if not stripped:
        raise ValueError("Workspace name cannot be empty")
    if len(stripped) > MAX_WORKSPACE_NAME_LENGTH:
        raise ValueError(f"Workspace name exceeds {MAX_WORKSPACE_NAME_LENGTH} characters")
    return stripped


# -- access --


def _authorize(conn: sqlite3.Connection, row: WorkspaceRow, user_id: str, minimum: str) -> None:
    if row["user_id"] == user_id:
        return
    if row["team_id"]:
        role = get_team_role(conn, row["team_id"], user_id)
        if has_role_at_least(role, minimum):
            return
    raise WorkspaceAccessError(f"User '{user_id}' cannot access workspace '{row['id']}'")


def _require_row(
    conn: sqlite3.Connection, user_id: str, workspace_id: str, minimum: str = VIEWER
) -> WorkspaceRow:
    row = get_workspace_row(conn, workspace_id)
    if row is None:
        raise WorkspaceNotFoundError(f"Workspace '{workspace_id}' not found")
    _authorize(conn, row, user_id, minimum)
    return row


# -- operations --


def create_workspace(
    conn: sqlite3.Connection,
    user_id: str,
    name: str,
    *,
    source: str = "manual",
    vfs: VFSStructure | None = None,
    editor_state: EditorState | None = None,
    workspace_id: str | None = None,
    github_metadata: dict[str, Any] | None = None,
) -> Workspace:
    name = validate_workspace_name(name)
    if workspace_id is not None and not _UUID_RE.match(workspace_id):
        raise ValueError(f"Workspace id must be a UUID, got '{workspace_id}'")
    structure = vfs if vfs is not None else empty_structure()
    # Validates the root node before anything is stored.
    VirtualFileSystem(structure)

    current_count = count_user_workspaces(conn, user_id)
    if current_count >= config.WORKSPACE_MAX_COUNT_PER_USER:
        raise WorkspaceCountLimitExceededError(current_count, config.WORKSPACE_MAX_COUNT_PER_USER)

    size = calculate_vfs_size(structure)
    current_total = total_user_storage(conn, user_id)
    if not is_within_storage_limit(current_total, size, config.WORKSPACE_MAX_STORAGE_BYTES):
        raise StorageLimitExceededError(current_total, size, config.WORKSPACE_MAX_STORAGE_BYTES)

    row = insert_workspace(
        conn,
        workspace_id=workspace_id or str(uuid.uuid4()),
        user_id=user_id,
        name=name,
        source=source,
        vfs_data=serialize_vfs(structure),
        editor_state_data=serialize_editor_state(editor_state),
        storage_bytes=size,
        github_metadata=json.dumps(github_metadata) if github_metadata else None,
    )
    log.info("Workspace %s created for %s (%s, %s)", row["id"], user_id, source, format_bytes(size))
    return workspace_from_row(row)


def load_workspace(
    conn: sqlite3.Connection, user_id: str, workspace_id: str, *, touch: bool = True
) -> Workspace | None:
    """Load a workspace the user can read. Returns None when it does not exist."""
    row = get_workspace_row(conn, workspace_id)
    if row is None:
        return None
    _authorize(conn, row, user_id, VIEWER)
    if touch:
        touch_workspace(conn, workspace_id)
        row = get_workspace_row(conn, workspace_id) or row
    return workspace_from_row(row)


def update_workspace(
    conn: sqlite3.Connection,
    user_id: str,
    workspace_id: str,
    vfs: VFSStructure,
    editor_state: EditorState | None = None,
    *,
    commit: bool = True,
) -> int:
    """Write back the VFS (and editor state). Returns the new stored size.

    The owner's storage limit is only checked when the workspace grows.
    With ``commit=False`` the write joins the caller's open transaction.
    """
    row = _require_row(conn, user_id, workspace_id, EDITOR)
    VirtualFileSystem(vfs)
    new_size = calculate_vfs_size(vfs)
    delta = new_size - row["storage_bytes"]
    if delta > 0:
        current_total = total_user_storage(conn, row["user_id"])
        if current_total + delta > config.WORKSPACE_MAX_STORAGE_BYTES:
            raise StorageLimitExceededError(
                current_total, delta, config.WORKSPACE_MAX_STORAGE_BYTES
            )
    update_workspace_content(
        conn,
        workspace_id,
        vfs_data=serialize_vfs(vfs),
        storage_bytes=new_size,
        editor_state_data=serialize_editor_state(editor_state),
        commit=commit,
    )
    touch_workspace(conn, workspace_id, commit=commit)
    log.debug("Workspace %s saved (%s)", workspace_id, format_bytes(new_size))
    return new_size


def rename_workspace(
    conn: sqlite3.Connection, user_id: str, workspace_id: str, name: str
) -> Workspace:
    _require_row(conn, user_id, workspace_id, EDITOR)
    rename_workspace_row(conn, workspace_id, validate_workspace_name(name))
    row = get_workspace_row(conn, workspace_id)
    if row is None:
        raise WorkspaceNotFoundError(f"Workspace '{workspace_id}' not found")
    return workspace_from_row(row)


def delete_workspace(conn: sqlite3.Connection, user_id: str, workspace_id: str) -> bool:
    """Hard delete. Owners always may; team members need the admin role."""
    row = get_workspace_row(conn, workspace_id)
    if row is None:
        return False
    _authorize(conn, row, user_id, ADMIN)
    deleted = delete_workspace_row(conn, workspace_id)
    if deleted:
        log.info("Workspace %s deleted by %s", workspace_id, user_id)
    return deleted


def list_workspaces(conn: sqlite3.Connection, user_id: str) -> list[dict[str, Any]]:
    """Metadata for the user's own workspaces, most recently opened first."""
    return [workspace_from_row(row).metadata() for row in list_workspace_rows(conn, user_id)]


def get_last_opened_workspace(conn: sqlite3.Connection, user_id: str) -> Workspace | None:
    rows = list_workspace_rows(conn, user_id)
    return workspace_from_row(rows[0]) if rows else None


def set_active_workspace(conn: sqlite3.Connection, user_id: str, workspace_id: str | None) -> None:
    if workspace_id is not None:
        _require_row(conn, user_id, workspace_id, VIEWER)
    set_active_workspace_id(conn, user_id, workspace_id)


def get_active_workspace(conn: sqlite3.Connection, user_id: str) -> Workspace | None:
    """Active workspace, falling back to the most recently opened one."""
    workspace_id = get_active_workspace_id(conn, user_id)
    if workspace_id:
        workspace = load_workspace(conn, user_id, workspace_id, touch=False)
        if workspace is not None:
            return workspace
    return get_last_opened_workspace(conn, user_id)


def assign_workspace_team(
    conn: sqlite3.Connection, user_id: str, workspace_id: str, team_id: str | None
) -> Workspace:
    """Share a workspace with a team (owner only; the owner must be an admin of the team)."""
    row = _require_row(conn, user_id, workspace_id, ADMIN)
    if row["user_id"] != user_id:
        raise WorkspaceAccessError("Only the workspace owner can change its team")
    if team_id is not None:
        if get_team(conn, team_id) is None:
            raise LookupError(f"Team '{team_id}' not found")
        if not has_role_at_least(get_team_role(conn, team_id, user_id), ADMIN):
            raise WorkspaceAccessError(f"User '{user_id}' is not an admin of team '{team_id}'")
    set_workspace_team(conn, workspace_id, team_id)
    updated = get_workspace_row(conn, workspace_id)
    if updated is None:
        raise WorkspaceNotFoundError(f"Workspace '{workspace_id}' not found")
    return workspace_from_row(updated)


def can_user_modify(conn: sqlite3.Connection, user_id: str, workspace_id: str) -> bool:
    try:
        _require_row(conn, user_id, workspace_id, EDITOR)
    except (WorkspaceNotFoundError, WorkspaceAccessError):
        return False
    return True


class WorkspaceSession:
    """The open workspace: owns its VFS and editor state, saves on mutation.

    With ``autosave=True`` every mutating call writes the workspace back
    immediately. With ``autosave=False`` changes accumulate until ``save()``.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        workspace: Workspace,
        *,
        autosave: bool = True,
    ):
        self.conn = conn
        self.user_id = user_id
        self.workspace = workspace
        self.vfs = VirtualFileSystem(workspace.vfs)
        self.editor_state = workspace.editor_state or EditorState()
        self.autosave = autosave
        self.dirty = False

    @classmethod
    def open(
        cls,
        conn: sqlite3.Connection,
        user_id: str,
        workspace_id: str,
        *,
        autosave: bool = True,
    ) -> WorkspaceSession:
        workspace = load_workspace(conn, user_id, workspace_id)
        if workspace is None:
            raise WorkspaceNotFoundError(f"Workspace '{workspace_id}' not found")
        set_active_workspace_id(conn, user_id, workspace_id)
        session = cls(conn, user_id, workspace, autosave=autosave)
        if session.editor_state.prune_missing_files(session.vfs):
            session._changed()
        return session

    @property
    def id(self) -> str:
        return self.workspace.id

    def _changed(self) -> None:
        self.dirty = True
        if self.autosave:
            self.save()

    def save(self, *, commit: bool = True) -> int:
        structure = self.vfs.get_structure()
        size = update_workspace(
            self.conn, self.user_id, self.id, structure, self.editor_state, commit=commit
        )
        self.workspace.vfs = structure
        self.workspace.editor_state = self.editor_state
        self.workspace.storage_bytes = size
        self.dirty = False
        return size

    def replace_vfs(self, vfs: VirtualFileSystem) -> None:
        self.vfs = vfs
        self.editor_state.prune_missing_files(vfs)
        self._changed()

    # -- VFS mutations --

    def create_file(self, parent_id: str, name: str, content: str = "") -> str:
        node_id = self.vfs.create_file(parent_id, name, content)
        self._changed()
        return node_id

    def create_folder(self, parent_id: str, name: str) -> str:
        node_id = self.vfs.create_folder(parent_id, name)
        self._changed()
        return node_id

    def write_file(self, node_id: str, content: str) -> None:
        self.vfs.write_file(node_id, content)
        self._changed()

    def write_file_by_path(self, path: str, content: str) -> str:
        """Overwrite the file at *path*, creating it (and its folders) if needed."""
        node = self.vfs.find_file(path)
        if node is None:
            node_id = self.vfs.create_file_by_path(path, content)
        else:
            node_id = node["id"]
            self.vfs.write_file(node_id, content)
        self._changed()
        return node_id

    def rename_node(self, node_id: str, new_name: str) -> None:
        self.vfs.rename_node(node_id, new_name)
        self._changed()

    def delete_node(self, node_id: str) -> None:
        self.vfs.delete_node(node_id)
        self.editor_state.prune_missing_files(self.vfs)
        self._changed()

    # -- editor state --

    def open_file(self, file_id: str) -> str:
        if self.vfs.read_file(file_id) is None:
            raise ValueError(f"'{file_id}' is not a file in this workspace")
        tab = self.editor_state.open_file(file_id)
        self._changed()
        return tab.id

    def close_tab(self, tab_id: str) -> None:
        self.editor_state.close_tab(tab_id)
        self._changed()
