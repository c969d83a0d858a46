"""Sandboxed terminal: a deterministic package-manager simulator.

Commands run against a workspace's persisted VFS snapshot only. Nothing is
executed on the host: the simulator reads ``/package.json`` and narrates
what the package manager would do. Chaining and shell operators are
rejected outright.

Events are dicts shaped like the wire format the editor consumes:
``{"type": "status" | "output" | "error", "text": ...}`` and a final
``{"type": "exit", "exitCode": ..., "durationMs": ...}``.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass

from atelier.ai import CompletionClient
from atelier.db import get_active_workspace_id
from atelier.prompts import build_terminal_assist_messages
from atelier.vfs import VFSStructure, VirtualFileSystem
from atelier.workspaces import load_workspace

log = logging.getLogger(__name__)

MAX_COMMAND_LENGTH = 200
MAX_OUTPUT_LINES = 200
MAX_EXECUTION_SECONDS = 10
STEP_DELAY_SECONDS = 0.08

ALLOWED_MANAGERS = ("npm", "yarn", "pnpm")
DEV_SCRIPTS = ("dev", "start")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_TIMEOUT = 124

_DISALLOWED_SHELL_RE = re.compile(r"[;&|`$<>]")


class TerminalCommandError(ValueError):
    pass


@dataclass
class ParsedCommand:
    manager: str
    action: str  # "install" | "run"
    raw: str
    script_name: str | None = None


def parse_terminal_command(command: str) -> ParsedCommand:
    trimmed = (command or "").strip()
    if not trimmed:
        raise TerminalCommandError("Command cannot be empty.")
    if len(trimmed) > MAX_COMMAND_LENGTH:
        raise TerminalCommandError(f"Command exceeds {MAX_COMMAND_LENGTH} characters.")
    if _DISALLOWED_SHELL_RE.search(trimmed):
        raise TerminalCommandError("Shell operators are not allowed in the sandbox.")

    parts = trimmed.split()
    manager = parts[0]
    if manager not in ALLOWED_MANAGERS:
        raise TerminalCommandError("Only npm, yarn, and pnpm are supported in the sandbox.")
    if len(parts) < 2:
        raise TerminalCommandError(
            "Missing command action (install, dev, build, test, or script name)."
        )

    action = parts[1]
    if action in ("install", "i"):
        return ParsedCommand(manager=manager, action="install", raw=trimmed)
    if action == "run":
        if len(parts) < 3:
            raise TerminalCommandError('Missing script name for "run".')
        return ParsedCommand(manager=manager, action="run", raw=trimmed, script_name=parts[2])
    # yarn and pnpm (and npm for a few built-ins) accept the script name directly.
    return ParsedCommand(manager=manager, action="run", raw=trimmed, script_name=action)


def load_package_scripts(structure: VFSStructure) -> dict[str, str]:
    node = VirtualFileSystem(structure).find_file("/package.json")
    if node is None or not node.get("content"):
        raise TerminalCommandError("package.json not found in workspace root.")
    try:
        data = json.loads(node["content"])
    except json.JSONDecodeError as e:
        raise TerminalCommandError("package.json is not valid JSON.") from e
    scripts = data.get("scripts") if isinstance(data, dict) else None
    return scripts if isinstance(scripts, dict) else {}


def _line(kind: str, text: str) -> dict:
    return {"type": kind, "text": text}


def _exit_event(code: int, duration_ms: int) -> dict:
    return {"type": "exit", "exitCode": code, "durationMs": duration_ms}


def _script_events(parsed: ParsedCommand, scripts: dict[str, str]) -> list[dict]:
    if parsed.action == "install":
        return [
            _line("output", f"{parsed.manager} install (sandboxed)"),
            _line("output", "Resolving packages..."),
            _line("output", "Installing dependencies (simulated, no network)."),
            _line("output", "Done in 1.2s."),
        ]
    name = parsed.script_name or ""
    script = scripts.get(name)
    if not script:
        raise TerminalCommandError(f'Script "{name}" not found in package.json.')
    events = [_line("output", f"> {name}"), _line("output", f"$ {script}")]
    if name in DEV_SCRIPTS:
        events += [
            _line("status", "Starting dev server (sandboxed)..."),
            _line("status", "Dev servers are auto-terminated to avoid long-running daemons."),
            _line("output", "Dev server stopped by policy."),
        ]
    else:
        events += [
            _line("output", "Executing script..."),
            _line("output", "Script completed successfully."),
        ]
    return events


def run_sandboxed_command(
    command: str,
    structure: VFSStructure,
    *,
    step_delay: float = STEP_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Iterator[dict]:
    """Yield terminal events for *command* run against *structure*.

    Exit codes: 0 success, 1 rejected command or missing script,
    124 for dev servers (stopped by policy) and timeouts.
    """
    start = clock()

    def elapsed_ms() -> int:
        return int((clock() - start) * 1000)

    try:
        parsed = parse_terminal_command(command)
    except TerminalCommandError as e:
        yield _line("error", str(e))
        yield _exit_event(EXIT_ERROR, elapsed_ms())
        return

    log.info("Sandbox: %s", parsed.raw)
    events = [
        _line("status", "Sandboxed execution started."),
        _line("status", "Workspace-scoped, no host access."),
    ]
    try:
        scripts = load_package_scripts(structure)
        events += _script_events(parsed, scripts)
    except TerminalCommandError as e:
        yield from events[:MAX_OUTPUT_LINES]
        yield _line("error", str(e))
        yield _exit_event(EXIT_ERROR, elapsed_ms())
        return

    for event in events[:MAX_OUTPUT_LINES]:
        if clock() - start > MAX_EXECUTION_SECONDS:
            yield _line("error", f"Execution timed out after {MAX_EXECUTION_SECONDS}s.")
            yield _exit_event(EXIT_TIMEOUT, elapsed_ms())
            return
        yield event
        if step_delay:
            sleep(step_delay)

    is_dev = parsed.action == "run" and parsed.script_name in DEV_SCRIPTS
    yield _exit_event(EXIT_TIMEOUT if is_dev else EXIT_OK, elapsed_ms())


def format_sse(events: Iterable[dict]) -> Iterator[str]:
    """Server-sent-event framing: one ``data:`` line per event, then ``[DONE]``.

    An exception raised while producing events is reported as a final
    error event rather than cutting the stream short.
    """
    try:
        for event in events:
            yield f"data: {json.dumps(event)}\n\n"
    except Exception as e:
        log.exception("Terminal stream failed")
        yield f"data: {json.dumps(_line('error', str(e) or 'Streaming failed'))}\n\n"
    yield "data: [DONE]\n\n"


def terminal_assist(
    kind: str, output: str, client: CompletionClient, command: str | None = None
) -> str:
    """Read-only AI help for terminal output (explain, summarize or fix)."""
    messages = build_terminal_assist_messages(kind, output, command)
    return client.complete(messages)


def run_in_active_workspace(
    conn: sqlite3.Connection, user_id: str, command: str, **kwargs
) -> Iterator[dict]:
    """Run *command* against the user's active workspace.

    Raises LookupError before any event is produced when there is no
    usable active workspace.
    """
    workspace_id = get_active_workspace_id(conn, user_id)
    if not workspace_id:
        raise LookupError("No active workspace found.")
    workspace = load_workspace(conn, user_id, workspace_id, touch=False)
    if workspace is None:
        raise LookupError("Active workspace not found.")
    return run_sandboxed_command(command, workspace.vfs, **kwargs)
