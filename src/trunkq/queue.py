"""rq-based job queue for trunkq.

Starting an attempt enqueues an rq job here; a burst worker is spawned per
enqueue so nothing waits on a long-lived daemon. Pipeline events go to a
Redis stream on a best-effort basis.
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
from rq.exceptions import NoSuchJobError
from rq.job import Job
from rq.registry import FailedJobRegistry, FinishedJobRegistry, StartedJobRegistry

from trunkq.paths import LOG_DIR

log = logging.getLogger(__name__)

REDIS_URL = os.environ.get("TRUNKQ_REDIS_URL", "redis://localhost:6379/0")

QUEUE_ATTEMPTS = "trunkq:attempts"
TRUNKQ_QUEUE_NAMES = (QUEUE_ATTEMPTS,)

FAILURE_TTL = 7 * 24 * 3600  # failed jobs expire from Redis after 7 days

EVENTS_STREAM = "trunkq:events:stream"
EVENTS_STREAM_MAXLEN = int(os.environ.get("TRUNKQ_EVENTS_STREAM_MAXLEN", "1000"))

EVENT_VERSION = 1  # Bump when payload shape changes

LIVE_JOB_STATUSES = {"queued", "started", "deferred", "scheduled"}

_pool = ConnectionPool.from_url(REDIS_URL)


def get_redis() -> Redis:
    return Redis(connection_pool=_pool)


def get_queue(name: str = QUEUE_ATTEMPTS) -> Queue:
    # No rq-level timeout (-1 disables). The agent timeout is enforced by the
    # supervisor around the agent subprocess.
    return Queue(name, connection=get_redis(), default_timeout=-1)


def publish_event(
    event_type: str,
    entity_id: str,
    status: str,
    *,
    project: str,
    source: str = "worker",
    extra: dict | None = None,
) -> None:
    """Publish a pipeline event to the Redis stream. Best-effort, never raises.

    *source* identifies the producer: ``"worker"`` (rq job) or ``"cli"``.
    """
    event: dict = {
        "event_id": str(uuid.uuid4()),
        "type": event_type,
        "id": entity_id,
        "project": project,
        "status": status,
        "source": source,
        "v": EVENT_VERSION,
        "ts": datetime.now(UTC).isoformat(),
    }
    if extra:
        event.update(extra)
    payload = json.dumps(event)
    try:
        r = get_redis()
        r.xadd(EVENTS_STREAM, {"data": payload}, maxlen=EVENTS_STREAM_MAXLEN, approximate=True)
    except RedisError:
        log.warning("Event publish failed (Redis unavailable): %s %s", event_type, entity_id)


def enqueue_task_attempt(attempt_id: str) -> Job:
    """Enqueue the agent run for an attempt.

    Sequential attempts are already serialized by the project lock, so
    workers are not constrained here.
    """
    from trunkq.jobs import run_task_attempt

    job_id = f"attempt-{attempt_id}"
    q = get_queue(QUEUE_ATTEMPTS)
    job = q.enqueue(
        run_task_attempt,
        attempt_id,
        job_id=job_id,
        on_failure=Callback("trunkq.jobs.on_task_attempt_failure"),
        failure_ttl=FAILURE_TTL,
        description=f"Run attempt {attempt_id}",
    )
    _spawn_worker(QUEUE_ATTEMPTS, job_id=job_id)
    return job


def _spawn_worker(queue_name: str = QUEUE_ATTEMPTS, *, job_id: str | None = None) -> None:
    """Spawn a background rq worker process for a specific queue.

    The worker processes jobs until the queue is empty (burst mode), then
    exits. When job_id is provided, worker stdout/stderr is captured to
    ``~/.config/trunkq/logs/{job_id}.log``.
    """
    cmd = [
        sys.executable,
        "-m",
        "rq.cli",
        "worker",
        "--burst",
        "--url",
        REDIS_URL,
        queue_name,
    ]

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
        # The child keeps its own copy of the descriptor.
        if log_fh is not None:
            log_fh.close()
    log.info("Spawned worker pid=%d for %s", proc.pid, queue_name)


def get_job(job_id: str) -> Job | None:
    """Fetch a job by ID."""
    try:
        return Job.fetch(job_id, connection=get_redis())
    except (NoSuchJobError, RedisError):
        return None


def _normalized_job_status(raw_status: object) -> str:
    """rq returns either ``started`` or ``JobStatus.STARTED``; reduce both to ``started``."""
    status_text = str(raw_status).strip()
    if status_text.startswith("JobStatus."):
        status_text = status_text.split(".", 1)[1]
    return status_text.lower()


def is_job_active(job_id: str) -> bool:
    """True while rq still owns the job: waiting, or started on a live worker.

    An unreachable Redis counts as active.
    """
    redis_conn = get_redis()
    try:
        job = Job.fetch(job_id, connection=redis_conn)
    except NoSuchJobError:
        return False
    except RedisError:
        log.warning("Cannot check job %s (Redis unavailable); assuming it is active", job_id)
        return True
    try:
        status = _normalized_job_status(job.get_status(refresh=True))
        if status not in LIVE_JOB_STATUSES:
            return False
        worker_name = getattr(job, "worker_name", None)
        if status == "started" and worker_name:
            # A worker that died mid-job leaves the job "started"; its heartbeat key expires.
            return bool(redis_conn.exists(f"rq:worker:{worker_name}"))
    except RedisError:
        log.warning("Cannot check job %s (Redis unavailable); assuming it is active", job_id)
    return True


def cancel_queued_job(job_id: str) -> bool:
    """Cancel a job that no worker has picked up yet. Best-effort."""
    job = get_job(job_id)
    if job is None:
        return False
    try:
        if job.get_status() != "queued":
            return False
        job.cancel()
    except RedisError:
        log.warning("Could not cancel job %s (Redis unavailable)", job_id)
        return False
    return True


def get_queue_counts() -> dict[str, dict[str, int]]:
    """Return job counts per queue: queued, running, failed, finished."""
    counts = {}
    for name in TRUNKQ_QUEUE_NAMES:
        q = get_queue(name)
        counts[name] = {
            "queued": q.count,
            "running": len(StartedJobRegistry(queue=q)),
            "failed": len(FailedJobRegistry(queue=q)),
            "finished": len(FinishedJobRegistry(queue=q)),
        }
    return counts


def get_queue_counts_safe() -> dict:
    """Job counts, or an ``ok: False`` payload when Redis is unreachable."""
    try:
        return {"ok": True, "queues": get_queue_counts()}
    except RedisError as exc:
        return {"ok": False, "error": f"{type(exc).__name__}: {exc}", "queues": None}
