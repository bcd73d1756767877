"""Error taxonomy for the sequential queue orchestrator.

Every error carries an ``error_kind`` that is persisted on the task and the
attempt, so terminal states can be audited after the fact.
"""

from __future__ import annotations

ERROR_WORKSPACE_CONFLICT = "WorkspaceConflict"
ERROR_QUEUE_RACE = "QueueRaceError"
ERROR_MERGE_CONFLICT = "MergeConflict"
ERROR_AGENT_EXECUTION = "AgentExecutionFailure"

VALID_ERROR_KINDS = {
    ERROR_WORKSPACE_CONFLICT,
    ERROR_QUEUE_RACE,
    ERROR_MERGE_CONFLICT,
    ERROR_AGENT_EXECUTION,
}

# Failures that leave the shared repository in a state an operator must look at.
HALTING_ERROR_KINDS = {
    ERROR_WORKSPACE_CONFLICT,
    ERROR_MERGE_CONFLICT,
    ERROR_AGENT_EXECUTION,
}


class TrunkqError(RuntimeError):
    """Base class for orchestrator failures."""

    error_kind: str = ""


class WorkspaceConflict(TrunkqError):
    """Dirty main checkout or exhausted branch-name budget at provisioning."""

    error_kind = ERROR_WORKSPACE_CONFLICT


class QueueRaceError(TrunkqError):
    """A concurrent queue-position mutation was detected."""

    error_kind = ERROR_QUEUE_RACE


class MergeConflict(TrunkqError):
    """Non-fast-forward merge stopped on textual conflicts."""

    error_kind = ERROR_MERGE_CONFLICT

    def __init__(self, message: str, conflicting_files: list[str] | None = None):
        super().__init__(message)
        self.conflicting_files = list(conflicting_files or [])


class AgentExecutionFailure(TrunkqError):
    """The external agent process errored or exited nonzero."""

    error_kind = ERROR_AGENT_EXECUTION
