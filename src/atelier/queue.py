"""rq-based job queue for atelier.

Agent planning/step execution and GitHub drafting can run in background
workers instead of inline in the API process. Each enqueue spawns a burst
worker for its queue, so nothing needs to be running ahead of time.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
import uuid
from datetime import UTC, datetime

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError
from rq import Callback, Queue
from rq.job import Job
from rq.registry import FailedJobRegistry, StartedJobRegistry

from atelier.paths import ATELIER_CONFIG_DIR

log = logging.getLogger(__name__)

REDIS_URL = os.environ.get("ATELIER_REDIS_URL", "redis://localhost:6379/0")

QUEUE_AGENT = "atelier:agent"
QUEUE_GITHUB = "atelier:github"
ATELIER_QUEUE_NAMES = (QUEUE_AGENT, QUEUE_GITHUB)

FAILURE_TTL = 7 * 24 * 3600  # 7 days

EVENTS_STREAM = "atelier:events:stream"
EVENTS_STREAM_MAXLEN = int(os.environ.get("ATELIER_EVENTS_STREAM_MAXLEN", "1000"))
EVENT_VERSION = 1

LOG_DIR = ATELIER_CONFIG_DIR / "logs"

_pool = ConnectionPool.from_url(REDIS_URL)


def get_redis() -> Redis:
    return Redis(connection_pool=_pool)


def get_queue(name: str = QUEUE_AGENT) -> Queue:
    # AI and GitHub calls carry their own request timeouts.
    return Queue(name, connection=get_redis(), default_timeout=-1)


def publish_event(
    event_type: str,
    entity_id: str,
    status: str,
    *,
    workspace_id: str,
    source: str = "worker",
    extra: dict | None = None,
) -> None:
    """Publish a stage-change event to the Redis stream. Best-effort, never raises."""
    event: dict = {
        "event_id": str(uuid.uuid4()),
        "type": event_type,
        "id": entity_id,
        "workspace_id": workspace_id,
        "status": status,
        "source": source,
        "v": EVENT_VERSION,
        "ts": datetime.now(UTC).isoformat(),
    }
    if extra:
        event.update(extra)
    try:
        get_redis().xadd(
            EVENTS_STREAM,
            {"data": json.dumps(event)},
            maxlen=EVENTS_STREAM_MAXLEN,
            approximate=True,
        )
    except RedisError:
        log.warning("Event publish failed (Redis unavailable): %s %s", event_type, entity_id)


def enqueue_agent_session(session_id: str, stage: str) -> Job:
    """Run the pending planning or step work for an agent session in a worker."""
    from atelier.jobs import run_agent_session

    q = get_queue(QUEUE_AGENT)
    job_id = f"agent-{session_id}-{stage}-{uuid.uuid4().hex[:6]}"
    job = q.enqueue(
        run_agent_session,
        session_id,
        job_id=job_id,
        on_failure=Callback("atelier.jobs.on_agent_session_failure"),
        failure_ttl=FAILURE_TTL,
        description=f"Agent {session_id} ({stage})",
    )
    _spawn_worker(QUEUE_AGENT, job_id=job_id)
    return job


def enqueue_github_draft(session_id: str) -> Job:
    from atelier.jobs import run_github_draft

    q = get_queue(QUEUE_GITHUB)
    job_id = f"github-draft-{session_id}-{uuid.uuid4().hex[:6]}"
    job = q.enqueue(
        run_github_draft,
        session_id,
        job_id=job_id,
        on_failure=Callback("atelier.jobs.on_github_draft_failure"),
        failure_ttl=FAILURE_TTL,
        description=f"GitHub draft for agent {session_id}",
    )
    _spawn_worker(QUEUE_GITHUB, job_id=job_id)
    return job


def _spawn_worker(queue_name: str = QUEUE_AGENT, *, job_id: str | None = None) -> None:
    """Spawn a burst rq worker for *queue_name*.

    With *job_id*, worker output goes to ``~/.config/atelier/logs/{job_id}.log``.
    """
    cmd = [sys.executable, "-m", "rq.cli", "worker", "--burst", "--url", REDIS_URL, queue_name]

    log_fh = None
    try:
        if job_id:
            LOG_DIR.mkdir(parents=True, exist_ok=True, mode=0o700)
            log_fh = open(LOG_DIR / f"{job_id}.log", "w")  # noqa: SIM115
            stdout_target = log_fh
            stderr_target = subprocess.STDOUT
        else:
            stdout_target = subprocess.DEVNULL
            stderr_target = subprocess.DEVNULL

        proc = subprocess.Popen(
            cmd,
            stdout=stdout_target,
            stderr=stderr_target,
            start_new_session=True,
        )
    finally:
        if log_fh is not None:
            log_fh.close()  # child keeps its own handle

    log.info("Spawned worker pid=%d for %s", proc.pid, queue_name)


def get_job(job_id: str) -> Job | None:
    try:
        return Job.fetch(job_id, connection=get_redis())
    except Exception:
        return None


def get_queue_counts_safe() -> dict:
    """Queued/running/failed counts per queue. Never raises."""
    try:
        redis = get_redis()
        redis.ping()
        counts = {}
        for name in ATELIER_QUEUE_NAMES:
            q = Queue(name, connection=redis)
            counts[name] = {
                "queued": len(q),
                "running": len(StartedJobRegistry(queue=q)),
                "failed": len(FailedJobRegistry(queue=q)),
            }
        return {"ok": True, "queues": counts, "error": None}
    except (RedisError, OSError) as exc:
        return {"ok": False, "queues": None, "error": str(exc) or type(exc).__name__}
