"""Tests for the rq job functions in atelier.jobs."""

import contextlib
from unittest.mock import MagicMock

import pytest

from atelier.agent_sessions import apply_agent_action, draft_github_changes, start_agent_session
from atelier.ai import CompletionError
from atelier.db import get_agent_session
from atelier.jobs import (
    on_agent_session_failure,
    on_github_draft_failure,
    run_agent_session,
    run_github_draft,
)


@pytest.fixture(autouse=True)
def _worker_db(db_conn, monkeypatch):
    @contextlib.contextmanager
    def _connect(*_args, **_kwargs):
        yield db_conn

    monkeypatch.setattr("atelier.jobs.connect", _connect)
    monkeypatch.setattr("atelier.queue.enqueue_agent_session", MagicMock())
    monkeypatch.setattr("atelier.queue.enqueue_github_draft", MagicMock())


@pytest.fixture()
def use_client(monkeypatch):
    """Make workers build the given completion client."""

    def _use(client):
        monkeypatch.setattr("atelier.agent_sessions.get_completion_client", lambda: client)
        return client

    return _use


def _planning_session(db_conn, workspace) -> str:
    session = start_agent_session(db_conn, "alice", workspace.id, "Add a navbar")
    apply_agent_action(db_conn, "alice", session["id"], "approve_permissions", background=True)
    return session["id"]


def _drafting_session(db_conn, github_workspace, scripted_client, replies) -> str:
    client = scripted_client(replies["plan"], replies["step1"], replies["step2"])
    session = start_agent_session(db_conn, "alice", github_workspace.id, "Add a navbar")
    for action in ("approve_permissions", "approve_plan", "approve_step", "approve_step"):
        apply_agent_action(db_conn, "alice", session["id"], action, client=client)
    draft_github_changes(db_conn, "alice", session["id"], background=True)
    return session["id"]


def test_run_agent_session_plans(db_conn, workspace, scripted_client, replies, use_client):
    session_id = _planning_session(db_conn, workspace)
    use_client(scripted_client(replies["plan"]))

    assert run_agent_session(session_id) == "awaiting_plan_approval"
    assert get_agent_session(db_conn, session_id)["plan"] is not None


def test_run_agent_session_skips(db_conn, workspace):
    assert run_agent_session("missing") == "skipped:entity_missing"
    session = start_agent_session(db_conn, "alice", workspace.id, "Add a navbar")
    assert run_agent_session(session["id"]) == "skipped:awaiting_permissions"


def test_run_agent_session_raises_when_session_errors(
    db_conn, workspace, scripted_client, use_client
):
    session_id = _planning_session(db_conn, workspace)
    use_client(scripted_client(CompletionError("quota exceeded")))

    with pytest.raises(RuntimeError, match="quota exceeded"):
        run_agent_session(session_id)
    row = get_agent_session(db_conn, session_id)
    assert row["stage"] == "error"
    assert row["error"] == "quota exceeded"


def test_unexpected_failure_marks_session_failed(db_conn, workspace, monkeypatch):
    session_id = _planning_session(db_conn, workspace)

    def _boom():
        raise CompletionError("Gemini API key is required.")

    monkeypatch.setattr("atelier.agent_sessions.get_completion_client", _boom)

    with pytest.raises(CompletionError):
        run_agent_session(session_id)
    row = get_agent_session(db_conn, session_id)
    assert row["stage"] == "error"
    assert row["error"] == "Gemini API key is required."


def test_failure_callback_marks_working_session(db_conn, workspace, published_events):
    session_id = _planning_session(db_conn, workspace)
    job = MagicMock(id="agent-job", args=[session_id])

    on_agent_session_failure(job, None, TimeoutError, TimeoutError("Job timed out"), None)

    assert get_agent_session(db_conn, session_id)["stage"] == "error"
    published_events.assert_called_with(
        "agent:stage",
        session_id,
        "error",
        workspace_id=workspace.id,
        source="worker",
        extra=None,
    )


def test_failure_callback_leaves_finished_session_alone(db_conn, workspace):
    session = start_agent_session(db_conn, "alice", workspace.id, "Add a navbar")
    job = MagicMock(id="agent-job", args=[session["id"]])
    on_agent_session_failure(job, None, RuntimeError, RuntimeError("late"), None)
    assert get_agent_session(db_conn, session["id"])["stage"] == "awaiting_permissions"


def test_run_github_draft(db_conn, github_workspace, scripted_client, replies, use_client):
    session_id = _drafting_session(db_conn, github_workspace, scripted_client, replies)
    use_client(scripted_client(replies["draft"]))

    assert run_github_draft(session_id) == "awaiting_review"
    assert run_github_draft(session_id) == "skipped:awaiting_review"
    assert run_github_draft("missing") == "skipped:entity_missing"


def test_github_draft_failure_callback(db_conn, github_workspace, scripted_client, replies):
    session_id = _drafting_session(db_conn, github_workspace, scripted_client, replies)
    job = MagicMock(id="draft-job", args=[session_id])

    on_github_draft_failure(job, None, RuntimeError, RuntimeError("worker died"), None)

    row = get_agent_session(db_conn, session_id)
    assert row["github_stage"] == "error"
    assert row["github_error"] == "worker died"
    assert row["stage"] == "completed"
