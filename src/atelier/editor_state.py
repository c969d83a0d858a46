"""Open tabs and split-pane bookkeeping persisted alongside a workspace."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Literal

from atelier.vfs import VirtualFileSystem

Pane = Literal["primary", "secondary"]


@dataclass
class EditorTab:
    id: str
    file_id: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "fileId": self.file_id}


@dataclass
class CursorPosition:
    file_id: str
    line: int
    column: int

    def to_dict(self) -> dict[str, Any]:
        return {"fileId": self.file_id, "line": self.line, "column": self.column}


@dataclass
class EditorState:
    open_tabs: list[EditorTab] = field(default_factory=list)
    active_tab_id: str | None = None
    active_secondary_tab_id: str | None = None
    is_split: bool = False
    cursor_position: CursorPosition | None = None

    def _tab(self, tab_id: str | None) -> EditorTab | None:
        return next((t for t in self.open_tabs if t.id == tab_id), None)

    def active_file_id(self, pane: Pane = "primary") -> str | None:
        tab_id = self.active_secondary_tab_id if pane == "secondary" else self.active_tab_id
        tab = self._tab(tab_id)
        return tab.file_id if tab else None

    def open_file(self, file_id: str) -> EditorTab:
        """Focus the file's tab, opening one if it is not open yet."""
        existing = next((t for t in self.open_tabs if t.file_id == file_id), None)
        if existing is not None:
            self.active_tab_id = existing.id
            return existing
        tab = EditorTab(id=str(uuid.uuid4()), file_id=file_id)
        self.open_tabs.append(tab)
        self.active_tab_id = tab.id
        return tab

    def close_tab(self, tab_id: str) -> None:
        self.open_tabs = [t for t in self.open_tabs if t.id != tab_id]
        if self.active_tab_id == tab_id:
            self.active_tab_id = self.open_tabs[-1].id if self.open_tabs else None
        if self.active_secondary_tab_id == tab_id:
            self.active_secondary_tab_id = None

    def set_active_tab(self, tab_id: str, pane: Pane = "primary") -> None:
        if self._tab(tab_id) is None:
            raise ValueError(f"Tab '{tab_id}' is not open")
        if pane == "secondary" and self.is_split:
            self.active_secondary_tab_id = tab_id
        else:
            self.active_tab_id = tab_id

    def toggle_split(self) -> None:
        self.is_split = not self.is_split
        if self.is_split and self.active_secondary_tab_id is None:
            self.active_secondary_tab_id = self.active_tab_id

    def set_cursor(self, file_id: str, line: int, column: int) -> None:
        self.cursor_position = CursorPosition(file_id=file_id, line=line, column=column)

    def prune_missing_files(self, vfs: VirtualFileSystem) -> list[str]:
        """Close tabs whose file no longer exists. Returns the closed tab IDs."""
        missing = [t.id for t in self.open_tabs if vfs.read_file(t.file_id) is None]
        for tab_id in missing:
            self.close_tab(tab_id)
        if self.cursor_position and vfs.read_file(self.cursor_position.file_id) is None:
            self.cursor_position = None
        return missing

    def to_dict(self) -> dict[str, Any]:
        return {
            "openTabs": [t.to_dict() for t in self.open_tabs],
            "activeTabId": self.active_tab_id,
            "activeSecondaryTabId": self.active_secondary_tab_id,
            "isSplit": self.is_split,
            "cursorPosition": self.cursor_position.to_dict() if self.cursor_position else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> EditorState:
        if not data:
            return cls()
        cursor = data.get("cursorPosition")
        return cls(
            open_tabs=[
                EditorTab(id=t["id"], file_id=t["fileId"]) for t in data.get("openTabs", [])
            ],
            active_tab_id=data.get("activeTabId"),
            active_secondary_tab_id=data.get("activeSecondaryTabId"),
            is_split=bool(data.get("isSplit", False)),
            cursor_position=(
                CursorPosition(
                    file_id=cursor["fileId"], line=int(cursor["line"]), column=int(cursor["column"])
                )
                if cursor
                else None
            ),
        )
