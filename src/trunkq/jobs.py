"""Job functions executed by rq workers."""

from __future__ import annotations

import logging
import os
import sqlite3

from trunkq.db import add_task_log, connect, get_attempt
from trunkq.errors import ERROR_AGENT_EXECUTION
from trunkq.supervisor import finalize_attempt, run_agent

log = logging.getLogger(__name__)


class TaskDBHandler(logging.Handler):
    """Logging handler that persists log records to the task_logs table."""

    def __init__(self, conn: sqlite3.Connection, task_id: str, *, source: str = "task"):
        super().__init__()
        self.conn = conn
        self.task_id = task_id
        self.source = source

    def emit(self, record: logging.LogRecord) -> None:
        try:
            add_task_log(
                self.conn,
                task_id=self.task_id,
                level=record.levelname,
                message=self.format(record),
                source=self.source,
            )
        except Exception:
            self.handleError(record)


def run_task_attempt(attempt_id: str) -> str:
    """Run the agent for an attempt, then finalize it.

    Called by rq worker. Returns the attempt outcome.
    """
    with connect() as conn:
        attempt = get_attempt(conn, attempt_id)
        if not attempt:
            log.warning("Attempt %s not found (deleted?), skipping", attempt_id)
            return "skipped:entity_missing"
        if attempt["outcome"] != "running":
            log.info("Attempt %s already %s, skipping", attempt_id, attempt["outcome"])
            return f"skipped:{attempt['outcome']}"

        db_handler = TaskDBHandler(conn, attempt["task_id"], source="attempt")
        db_handler.setLevel(logging.DEBUG)
        # Attach at the shared "trunkq" namespace so logs from the supervisor,
        # merge and advancer modules are captured too.
        task_log_logger = logging.getLogger("trunkq")
        task_log_logger.addHandler(db_handler)
        prev_log_level = task_log_logger.level
        if task_log_logger.level > logging.DEBUG or task_log_logger.level == logging.NOTSET:
            task_log_logger.setLevel(logging.DEBUG)

        try:
            log.info("Worker pid=%d started attempt %s", os.getpid(), attempt_id)
            outcome, error_kind, reason = run_agent(conn, attempt_id)
            # Later records belong to the next task the advancer starts.
            task_log_logger.removeHandler(db_handler)
            log.info("Attempt %s agent outcome: %s", attempt_id, outcome)
            finalize_attempt(conn, attempt_id, outcome, error_kind=error_kind, reason=reason)
            return outcome
        finally:
            task_log_logger.removeHandler(db_handler)
            task_log_logger.setLevel(prev_log_level)


def on_task_attempt_failure(job, _connection, _exc_type, exc_value, _traceback):
    """Callback when an attempt job crashes. Finalizes the attempt as failed."""
    attempt_id = job.args[0] if job.args else None
    if not attempt_id:
        return
    failure_label = str(exc_value) if exc_value is not None else ""
    if not failure_label and isinstance(exc_value, BaseException):
        failure_label = exc_value.__class__.__name__
    with connect() as conn:
        attempt = get_attempt(conn, attempt_id)
        if not attempt:
            log.warning("Attempt %s failure callback skipped: attempt not found", attempt_id)
            return
        try:
            finalize_attempt(
                conn,
                attempt_id,
                "failed",
                error_kind=ERROR_AGENT_EXECUTION,
                reason=f"Worker crashed: {failure_label}",
            )
        except RuntimeError:
            log.exception("Could not finalize attempt %s after worker crash", attempt_id)
