"""Environment-driven settings shared by the CLI, API and job workers.

  GEMINI_API_KEY                 API key for the completion backend
  ATELIER_AI_MODEL               completion model (default: gemini-2.5-flash)
  AI_MAX_INPUT_TOKENS            estimated prompt tokens allowed per request
  GITHUB_TOKEN                   token used for GitHub import/publish
  ATELIER_GITHUB_API_URL         GitHub REST base URL (GHES installs)
  WORKSPACE_MAX_COUNT_PER_USER   workspaces a single user may own
  WORKSPACE_MAX_STORAGE_BYTES    total serialized VFS bytes per user
  ATELIER_USER                   identity used by the CLI (falls back to USER)
"""

from __future__ import annotations

import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY", "")
DEFAULT_AI_MODEL = os.environ.get("ATELIER_AI_MODEL", "gemini-2.5-flash")
AI_MAX_INPUT_TOKENS = _env_int("AI_MAX_INPUT_TOKENS", 8000)

GITHUB_TOKEN = os.environ.get("GITHUB_TOKEN", "")
GITHUB_API_URL = os.environ.get("ATELIER_GITHUB_API_URL", "https://api.github.com").rstrip("/")

WORKSPACE_MAX_COUNT_PER_USER = _env_int("WORKSPACE_MAX_COUNT_PER_USER", 10)
WORKSPACE_MAX_STORAGE_BYTES = _env_int("WORKSPACE_MAX_STORAGE_BYTES", 100 * 1024 * 1024)


def default_user() -> str:
    """Identity for interactive commands."""
    return os.environ.get("ATELIER_USER") or os.environ.get("USER", "unknown")
