"""Job functions executed by rq workers.

run_agent_session: planning or step execution for an agent session.
run_github_draft: commit message / PR text drafting for a completed session.
"""

from __future__ import annotations

import logging
import os
import sqlite3

from atelier.agent_sessions import _emit, advance_agent_session, capture_session_logs
from atelier.db import connect, get_agent_session, save_agent_state

log = logging.getLogger(__name__)

_AGENT_WORKING_STAGES = ("planning", "executing")


def _mark_agent_failed(conn: sqlite3.Connection, session_id: str, message: str) -> bool:
    row = get_agent_session(conn, session_id)
    if row is None or row["stage"] not in _AGENT_WORKING_STAGES:
        return False
    marked = save_agent_state(
        conn,
        session_id,
        {"stage": "error", "error": message},
        expected_stage=row["stage"],
        actor="worker",
    )
    if marked:
        _emit("agent:stage", session_id, "error", workspace_id=row["workspace_id"], source="worker")
    return marked


def _mark_draft_failed(conn: sqlite3.Connection, session_id: str, message: str) -> bool:
    row = get_agent_session(conn, session_id)
    if row is None or row["github_stage"] != "drafting":
        return False
    marked = save_agent_state(
        conn,
        session_id,
        {"github_stage": "error", "github_error": message},
        expected_github_stage="drafting",
        actor="worker",
    )
    if marked:
        _emit(
            "agent:github_stage",
            session_id,
            "error",
            workspace_id=row["workspace_id"],
            source="worker",
        )
    return marked


def run_agent_session(session_id: str) -> str:
    """Do the AI work owed by an agent session in ``planning``/``executing``.

    Called by rq worker on the atelier:agent queue.

    Stage flow: planning -> awaiting_plan_approval | error,
    executing -> awaiting_step_approval | error
    """
    with connect() as conn:
        row = get_agent_session(conn, session_id)
        if not row:
            log.warning("Agent session %s not found (deleted?), skipping", session_id)
            return "skipped:entity_missing"
        if row["stage"] not in _AGENT_WORKING_STAGES:
            log.info("Agent session %s is '%s', nothing to run", session_id, row["stage"])
            return f"skipped:{row['stage']}"

        log.info(
            "Worker pid=%d picked up agent session %s (%s)", os.getpid(), session_id, row["stage"]
        )
        try:
            view = advance_agent_session(conn, session_id, source="worker")
        except Exception as e:
            with capture_session_logs(conn, session_id, source="worker"):
                log.exception("Agent session %s failed", session_id)
            _mark_agent_failed(conn, session_id, str(e) or type(e).__name__)
            raise

        if view["stage"] == "error":
            # Surface the failure to rq as well; the session already carries the message.
            raise RuntimeError(f"Agent session {session_id} failed: {view['error']}")
        return view["stage"]


def on_agent_session_failure(job, _connection, _exc_type, exc_value, _traceback):
    session_id = job.args[0]
    log.warning("Agent job %s failed: %s", job.id, exc_value)
    with connect() as conn:
        _mark_agent_failed(conn, session_id, str(exc_value) or "Agent job failed")


def run_github_draft(session_id: str) -> str:
    """Generate the GitHub draft for a session in github_stage ``drafting``.

    Called by rq worker on the atelier:github queue.
    """
    with connect() as conn:
        row = get_agent_session(conn, session_id)
        if not row:
            log.warning("Agent session %s not found (deleted?), skipping", session_id)
            return "skipped:entity_missing"
        if row["github_stage"] != "drafting":
            log.info("Agent session %s is not drafting, skipping", session_id)
            return f"skipped:{row['github_stage']}"

        try:
            view = advance_agent_session(conn, session_id, source="worker")
        except Exception as e:
            with capture_session_logs(conn, session_id, source="worker"):
                log.exception("GitHub draft for %s failed", session_id)
            _mark_draft_failed(conn, session_id, str(e) or type(e).__name__)
            raise

        if view["github_stage"] == "error":
            raise RuntimeError(f"GitHub draft for {session_id} failed: {view['github_error']}")
        return view["github_stage"]


def on_github_draft_failure(job, _connection, _exc_type, exc_value, _traceback):
    session_id = job.args[0]
    log.warning("GitHub draft job %s failed: %s", job.id, exc_value)
    with connect() as conn:
        _mark_draft_failed(conn, session_id, str(exc_value) or "GitHub draft job failed")
