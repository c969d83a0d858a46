"""In-memory virtual file system backing a workspace.

Nodes live in a flat dict keyed by ID. The dict form (``get_structure()``)
is exactly what gets persisted in ``workspaces.vfs_data``, so node keys use
the camelCase names of that blob (``parentId``, ``children``, ``content``).
"""

from __future__ import annotations

import copy
import uuid
from collections.abc import Iterator
from typing import Literal, NotRequired, TypedDict

ROOT_ID = "root"
ROOT_NAME = "Project"

# Flat per-node allowance for the JSON structure around each node.
NODE_OVERHEAD_BYTES = 50


class VFSNode(TypedDict):
    id: str
    name: str
    type: Literal["file", "folder"]
    parentId: str | None
    depth: int
    children: NotRequired[list[str]]
    content: NotRequired[str]


class VFSStructure(TypedDict):
    nodes: dict[str, VFSNode]
    rootId: str


def normalize_path(path: str) -> str:
    """Canonical absolute form: leading slash, no trailing slash."""
    trimmed = path.strip()
    if not trimmed:
        return "/"
    if not trimmed.startswith("/"):
        trimmed = "/" + trimmed
    trimmed = trimmed.rstrip("/")
    return trimmed or "/"


def empty_structure() -> VFSStructure:
    return {
        "nodes": {
            ROOT_ID: {
                "id": ROOT_ID,
                "name": ROOT_NAME,
                "type": "folder",
                "parentId": None,
                "depth": 0,
                "children": [],
            }
        },
        "rootId": ROOT_ID,
    }


class VirtualFileSystem:
    def __init__(self, structure: VFSStructure | None = None):
        if structure is None:
            structure = empty_structure()
        if structure.get("rootId") not in structure.get("nodes", {}):
            raise ValueError("VFS structure is missing its root node")
        self._nodes: dict[str, VFSNode] = copy.deepcopy(structure["nodes"])
        self._root_id = structure["rootId"]

    # -- structure --

    def get_structure(self) -> VFSStructure:
        """Snapshot suitable for serialization. Later mutations do not leak into it."""
        return {"nodes": copy.deepcopy(self._nodes), "rootId": self._root_id}

    def get_root_id(self) -> str:
        return self._root_id

    def get_node(self, node_id: str) -> VFSNode | None:
        return self._nodes.get(node_id)

    # -- content --

    def read_file(self, node_id: str) -> str | None:
        node = self._nodes.get(node_id)
        if node and node["type"] == "file":
            return node.get("content") or ""
        return None

    def write_file(self, node_id: str, content: str) -> None:
        node = self._nodes.get(node_id)
        if node and node["type"] == "file":
            node["content"] = content

    # -- tree mutations --

    def _parent_folder(self, parent_id: str) -> VFSNode:
        parent = self._nodes.get(parent_id)
        if not parent or parent["type"] != "folder":
            raise ValueError("Parent must be a folder")
        return parent

    def create_file(self, parent_id: str, name: str, content: str = "") -> str:
        parent = self._parent_folder(parent_id)
        node_id = str(uuid.uuid4())
        self._nodes[node_id] = {
            "id": node_id,
            "name": name,
            "type": "file",
            "parentId": parent_id,
            "depth": parent["depth"] + 1,
            "content": content,
        }
        parent.setdefault("children", []).append(node_id)
        return node_id

    def create_folder(self, parent_id: str, name: str) -> str:
        parent = self._parent_folder(parent_id)
        node_id = str(uuid.uuid4())
        self._nodes[node_id] = {
            "id": node_id,
            "name": name,
            "type": "folder",
            "parentId": parent_id,
            "depth": parent["depth"] + 1,
            "children": [],
        }
        parent.setdefault("children", []).append(node_id)
        return node_id

    def rename_node(self, node_id: str, new_name: str) -> None:
        node = self._nodes.get(node_id)
        if node and node_id != self._root_id:
            node["name"] = new_name

    def delete_node(self, node_id: str) -> None:
        node = self._nodes.get(node_id)
        if not node or node_id == self._root_id:
            return
        parent_id = node["parentId"]
        parent = self._nodes.get(parent_id) if parent_id else None
        if parent is not None:
            parent["children"] = [c for c in parent.get("children", []) if c != node_id]
        self._delete_recursive(node_id)

    def _delete_recursive(self, node_id: str) -> None:
        node = self._nodes.pop(node_id, None)
        if node is None:
            return
        if node["type"] == "folder":
            for child_id in node.get("children", []):
                self._delete_recursive(child_id)

    # -- navigation --

    def list_directory(self, folder_id: str) -> list[VFSNode]:
        folder = self._nodes.get(folder_id)
        if not folder or folder["type"] != "folder":
            return []
        return [self._nodes[c] for c in folder.get("children", []) if c in self._nodes]

    def get_node_path(self, node_id: str) -> str:
        parts: list[str] = []
        current: str | None = node_id
        while current:
            node = self._nodes.get(current)
            if node is None:
                break
            if current != self._root_id:
                parts.append(node["name"])
            current = node["parentId"]
        return "/" + "/".join(reversed(parts))

    def iter_nodes(self) -> Iterator[tuple[str, VFSNode]]:
        """Yield ``(path, node)`` for every node except the root."""
        for node_id, node in self._nodes.items():
            if node_id == self._root_id:
                continue
            yield self.get_node_path(node_id), node

    def iter_files(self) -> Iterator[tuple[str, VFSNode]]:
        for path, node in self.iter_nodes():
            if node["type"] == "file":
                yield path, node

    def list_file_paths(self) -> list[str]:
        return sorted(path for path, _node in self.iter_files())

    def find_by_path(self, path: str) -> VFSNode | None:
        target = normalize_path(path)
        if target == "/":
            return self._nodes[self._root_id]
        current = self._nodes[self._root_id]
        for part in target.strip("/").split("/"):
            match = next((n for n in self.list_directory(current["id"]) if n["name"] == part), None)
            if match is None:
                return None
            current = match
        return current

    def find_file(self, path: str) -> VFSNode | None:
        node = self.find_by_path(path)
        if node and node["type"] == "file":
            return node
        return None

    def read_files_by_path(self, paths: list[str]) -> dict[str, str]:
        """Current content for each path that resolves to a file. Unknown paths are skipped."""
        contents: dict[str, str] = {}
        for path in paths:
            node = self.find_file(path)
            if node is not None:
                contents[normalize_path(path)] = node.get("content") or ""
        return contents

    def ensure_folder_path(self, path: str) -> str:
        """Return the ID of the folder at *path*, creating missing folders on the way."""
        target = normalize_path(path)
        current_id = self._root_id
        if target == "/":
            return current_id
        for part in target.strip("/").split("/"):
            existing = next((n for n in self.list_directory(current_id) if n["name"] == part), None)
            if existing is None:
                current_id = self.create_folder(current_id, part)
            elif existing["type"] != "folder":
                raise ValueError(f"Cannot create folder '{part}': a file already exists there")
            else:
                current_id = existing["id"]
        return current_id

    def create_file_by_path(self, path: str, content: str = "") -> str:
        target = normalize_path(path)
        if target == "/":
            raise ValueError("File path cannot be the workspace root")
        folder_path, _, name = target.rpartition("/")
        parent_id = self.ensure_folder_path(folder_path or "/")
        return self.create_file(parent_id, name, content)


def calculate_vfs_size(structure: VFSStructure) -> int:
    """Approximate stored size in bytes: UTF-8 file contents plus per-node metadata."""
    total = 0
    for node in structure["nodes"].values():
        if node["type"] == "file" and node.get("content"):
            total += len(node["content"].encode("utf-8"))
        total += len(node["id"].encode("utf-8"))
        total += len(node["name"].encode("utf-8"))
        if node.get("parentId"):
            total += len(node["parentId"].encode("utf-8"))
        for child_id in node.get("children", []):
            total += len(child_id.encode("utf-8"))
        total += NODE_OVERHEAD_BYTES
    return total
