"""Canonical filesystem paths for atelier configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

ATELIER_CONFIG_DIR = Path.home() / ".config" / "atelier"

_env_db = os.environ.get("ATELIER_DB_PATH")
DEFAULT_DB_PATH = Path(_env_db).expanduser() if _env_db else ATELIER_CONFIG_DIR / "atelier.db"
