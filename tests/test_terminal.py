"""Tests for the sandboxed terminal simulator."""

import json
from unittest.mock import MagicMock

import pytest
from conftest import sample_vfs

from atelier.terminal import (
    EXIT_ERROR,
    EXIT_OK,
    EXIT_TIMEOUT,
    TerminalCommandError,
    format_sse,
    load_package_scripts,
    parse_terminal_command,
    run_in_active_workspace,
    run_sandboxed_command,
    terminal_assist,
)
from atelier.vfs import VirtualFileSystem
from atelier.workspaces import set_active_workspace


def _run(command, structure=None, **kwargs):
    kwargs.setdefault("clock", lambda: 0.0)
    return list(
        run_sandboxed_command(command, structure or sample_vfs(), step_delay=0, **kwargs)
    )


def _texts(events):
    return [e["text"] for e in events if e["type"] != "exit"]


@pytest.mark.parametrize(
    ("command", "action", "script"),
    [
        ("npm install", "install", None),
        ("pnpm i", "install", None),
        ("npm run build", "run", "build"),
        ("yarn dev", "run", "dev"),
    ],
)
def test_parse_terminal_command(command, action, script):
    parsed = parse_terminal_command(command)
    assert (parsed.action, parsed.script_name) == (action, script)


@pytest.mark.parametrize(
    ("command", "message"),
    [
        ("", "cannot be empty"),
        ("rm -rf /", "Only npm, yarn, and pnpm"),
        ("npm install && curl evil", "Shell operators"),
        ("npm run build; ls", "Shell operators"),
        ("echo $HOME", "Shell operators"),
        ("npm", "Missing command action"),
        ("npm run", 'Missing script name for "run"'),
        ("npm run " + "x" * 200, "exceeds 200 characters"),
    ],
)
def test_parse_rejects(command, message):
    with pytest.raises(TerminalCommandError, match=message):
        parse_terminal_command(command)


def test_load_package_scripts():
    assert load_package_scripts(sample_vfs()) == {"dev": "vite", "build": "vite build"}

    vfs = VirtualFileSystem()
    with pytest.raises(TerminalCommandError, match="package.json not found"):
        load_package_scripts(vfs.get_structure())
    vfs.create_file_by_path("/package.json", "{oops")
    with pytest.raises(TerminalCommandError, match="not valid JSON"):
        load_package_scripts(vfs.get_structure())


def test_install():
    events = _run("npm install")
    assert _texts(events) == [
        "Sandboxed execution started.",
        "Workspace-scoped, no host access.",
        "npm install (sandboxed)",
        "Resolving packages...",
        "Installing dependencies (simulated, no network).",
        "Done in 1.2s.",
    ]
    assert events[-1] == {"type": "exit", "exitCode": EXIT_OK, "durationMs": 0}


def test_run_script():
    events = _run("npm run build")
    assert _texts(events)[2:] == [
        "> build",
        "$ vite build",
        "Executing script...",
        "Script completed successfully.",
    ]
    assert events[-1]["exitCode"] == EXIT_OK


def test_dev_server_is_stopped_by_policy():
    events = _run("yarn dev")
    assert "Dev server stopped by policy." in _texts(events)
    assert events[-1]["exitCode"] == EXIT_TIMEOUT


def test_missing_script():
    events = _run("npm run test")
    assert events[-2] == {"type": "error", "text": 'Script "test" not found in package.json.'}
    assert events[-1]["exitCode"] == EXIT_ERROR


def test_rejected_command_emits_error_and_exit():
    events = _run("ls")
    assert [e["type"] for e in events] == ["error", "exit"]
    assert events[-1]["exitCode"] == EXIT_ERROR


def test_timeout():
    ticks = iter([0.0, 0.0, 0.0, 11.0, 11.0])
    events = _run("npm install", clock=lambda: next(ticks))
    assert events[-2]["text"] == "Execution timed out after 10s."
    assert events[-1] == {"type": "exit", "exitCode": EXIT_TIMEOUT, "durationMs": 11000}


def test_step_delay_uses_sleep():
    sleep = MagicMock()
    list(run_sandboxed_command("npm install", sample_vfs(), step_delay=0.5, sleep=sleep))
    assert sleep.call_count == 6
    sleep.assert_called_with(0.5)


def test_format_sse():
    frames = list(format_sse([{"type": "output", "text": "hi"}]))
    assert frames == ['data: {"type": "output", "text": "hi"}\n\n', "data: [DONE]\n\n"]


def test_format_sse_reports_stream_failure():
    def events():
        yield {"type": "output", "text": "one"}
        raise RuntimeError("disk gone")

    frames = list(format_sse(events()))
    assert json.loads(frames[1].removeprefix("data: ")) == {"type": "error", "text": "disk gone"}
    assert frames[-1] == "data: [DONE]\n\n"


def test_run_in_active_workspace(db_conn, workspace):
    with pytest.raises(LookupError, match="No active workspace"):
        run_in_active_workspace(db_conn, "alice", "npm install")

    set_active_workspace(db_conn, "alice", workspace.id)
    events = list(run_in_active_workspace(db_conn, "alice", "npm run build", step_delay=0))
    assert events[-1]["exitCode"] == EXIT_OK


def test_terminal_assist(scripted_client):
    client = scripted_client("Install the missing package.")
    answer = terminal_assist("fix", "Module not found", client, command="npm run build")
    assert answer == "Install the missing package."
    assert "Module not found" in client.calls[0][1]["content"]
