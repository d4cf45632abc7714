"""Shared enums and the job state graph."""

from __future__ import annotations

import enum
from typing import Final, Mapping

__all__ = [
    "ALLOWED_TRANSITIONS",
    "ChangeKind",
    "ChangeSource",
    "DeploymentChannel",
    "JobState",
    "JobStrategy",
    "LogStage",
    "OverrideFileType",
    "STATE_PROGRESS",
    "STATE_STEP_LABELS",
    "TERMINAL_STATES",
    "is_allowed_transition",
]


class JobState(str, enum.Enum):
    """Lifecycle states of a deployment job."""

    QUEUED = "queued"
    RESOLVING = "resolving"
    OVERRIDING = "overriding"
    BUILDING = "building"
    DEPLOYING = "deploying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


class JobStrategy(str, enum.Enum):
    """Which files end up in the archive."""

    FULL = "full"
    DIFF = "diff"


class ChangeKind(str, enum.Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


class ChangeSource(str, enum.Enum):
    REPOSITORY = "repository"
    OVERRIDE = "override"


class OverrideFileType(str, enum.Enum):
    """Artifact kinds an environment override may replace."""

    BIX = "bix"
    PROXY = "proxy"


class DeploymentChannel(str, enum.Enum):
    HTTP = "http"
    WLST = "wlst"


class LogStage(str, enum.Enum):
    """Pipeline stage a log line originates from."""

    QUEUE = "queue"
    DIFF = "diff"
    OVERRIDE = "override"
    BUILD = "build"
    DEPLOY = "deploy"
    JOB = "job"


TERMINAL_STATES: Final[frozenset[JobState]] = frozenset({JobState.SUCCEEDED, JobState.FAILED})

STATE_PROGRESS: Final[Mapping[JobState, int]] = {
    JobState.QUEUED: 0,
    JobState.RESOLVING: 20,
    JobState.OVERRIDING: 40,
    JobState.BUILDING: 60,
    JobState.DEPLOYING: 80,
    JobState.SUCCEEDED: 100,
}

STATE_STEP_LABELS: Final[Mapping[JobState, str]] = {
    JobState.QUEUED: "Waiting for a worker",
    JobState.RESOLVING: "Resolving changed files",
    JobState.OVERRIDING: "Applying environment overrides",
    JobState.BUILDING: "Packaging archive",
    JobState.DEPLOYING: "Deploying archive",
    JobState.SUCCEEDED: "Completed",
    JobState.FAILED: "Failed",
}

# FAILED is reachable from every non-terminal state and is handled separately.
ALLOWED_TRANSITIONS: Final[Mapping[JobState, frozenset[JobState]]] = {
    JobState.QUEUED: frozenset({JobState.RESOLVING}),
    JobState.RESOLVING: frozenset({JobState.OVERRIDING, JobState.BUILDING}),
    JobState.OVERRIDING: frozenset({JobState.BUILDING}),
    JobState.BUILDING: frozenset({JobState.DEPLOYING, JobState.SUCCEEDED}),
    JobState.DEPLOYING: frozenset({JobState.SUCCEEDED}),
    JobState.SUCCEEDED: frozenset(),
    JobState.FAILED: frozenset(),
}


def is_allowed_transition(current: JobState, target: JobState) -> bool:
    """Return True when ``current -> target`` is an edge of the job graph."""

    if current.is_terminal:
        return False
    if target is JobState.FAILED:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())
