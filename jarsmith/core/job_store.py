from __future__ import annotations

"""Durable job records and append-only job logs.

Every state change is a conditional UPDATE guarded by the state the caller
expects, and the transition's log line is written in the same transaction.
Readers therefore never see a state without its progress, and two workers
racing on one job cannot both win a transition.
"""

import enum
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from jarsmith.core.pipeline.changes import RequestedFile
from jarsmith.core.pipeline.deploy import DeployConfirmation
from jarsmith.core.requests import JobRequest
from jarsmith.core.types import (
    STATE_PROGRESS,
    STATE_STEP_LABELS,
    JobState,
    JobStrategy,
    LogStage,
    is_allowed_transition,
)
from jarsmith.db.base import session_scope
from jarsmith.db.models import DeploymentJob, JobLogEntry

log = logger.bind(module="core.job_store")

__all__ = [
    "CancelOutcome",
    "CancelPending",
    "InvalidStateTransition",
    "JobError",
    "JobImmutable",
    "JobNotFound",
    "JobSnapshot",
    "JobStore",
    "JobStoreError",
    "LogEntry",
]

# Running states that still pass a cancellation checkpoint before deploying.
_CHECKPOINTED_STATES = (JobState.RESOLVING, JobState.OVERRIDING, JobState.BUILDING)


class JobStoreError(RuntimeError):
    """Raised when the job store cannot complete an operation."""


class JobNotFound(JobStoreError):
    def __init__(self, job_id: UUID | str) -> None:
        super().__init__(f"Job {job_id} does not exist.")
        self.job_id = job_id


class InvalidStateTransition(JobStoreError):
    """Raised for a transition that is not an edge of the job graph."""

    def __init__(self, job_id: UUID | str, current: JobState, target: JobState) -> None:
        super().__init__(f"Job {job_id} cannot move from {current.value} to {target.value}.")
        self.current = current
        self.target = target


class JobImmutable(JobStoreError):
    """Raised when writing to a job that already reached a terminal state."""

    def __init__(self, job_id: UUID | str, state: JobState) -> None:
        super().__init__(f"Job {job_id} is {state.value} and can no longer change.")
        self.state = state


class CancelPending(JobStoreError):
    """The job was flagged for cancellation before it could start deploying."""

    def __init__(self, job_id: UUID | str) -> None:
        super().__init__(f"Job {job_id} has a pending cancellation.")
        self.job_id = str(job_id)


class CancelOutcome(str, enum.Enum):
    CANCELLED = "cancelled"  # queued job failed immediately
    FLAGGED = "flagged"  # running job stops at the next checkpoint
    IGNORED = "ignored"  # deploying; the deploy finishes normally
    REJECTED = "rejected"  # already terminal

    @property
    def accepted(self) -> bool:
        return self is not CancelOutcome.REJECTED


@dataclass(slots=True, frozen=True)
class JobError:
    kind: str
    message: str
    stage: str | None = None


@dataclass(slots=True, frozen=True)
class LogEntry:
    job_id: UUID
    seq: int
    created_at: datetime
    level: str
    stage: LogStage
    message: str


@dataclass(slots=True, frozen=True)
class JobSnapshot:
    """Consistent, detached view of one job row."""

    job_id: UUID
    project_id: str
    branch: str
    version: str
    environment_id: str | None
    strategy: JobStrategy
    base_commit: str | None
    head_commit: str | None
    apply_overrides: bool
    requested_files: tuple[RequestedFile, ...]
    confirmation: DeployConfirmation
    state: JobState
    progress: int
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    archive_location: str | None
    partial_archive_location: str | None
    archive_sha256: str | None
    file_count: int | None
    error: JobError | None
    warning: str | None
    cancel_requested: bool
    override_digest: str | None
    last_log_seq: int

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def is_build_only(self) -> bool:
        return self.environment_id is None

    @property
    def step(self) -> str:
        return STATE_STEP_LABELS[self.state]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _files_payload(files: Iterable[RequestedFile]) -> list[dict[str, Any]]:
    return [{"path": entry.path, "status": entry.kind.value} for entry in files]


def _files_from_payload(payload: Sequence[dict[str, Any]] | None) -> tuple[RequestedFile, ...]:
    return tuple(RequestedFile(path=item["path"], kind=item.get("status", "modified")) for item in payload or ())


def _snapshot(job: DeploymentJob) -> JobSnapshot:
    error = None
    if job.error_kind:
        error = JobError(kind=job.error_kind, message=job.error_message or "", stage=job.error_stage)
    override_digest = None
    if job.override_snapshot:
        override_digest = job.override_snapshot.get("digest")
    return JobSnapshot(
        job_id=job.id,
        project_id=job.project_id,
        branch=job.branch,
        version=job.version,
        environment_id=job.environment_id,
        strategy=job.strategy,
        base_commit=job.base_commit,
        head_commit=job.head_commit,
        apply_overrides=bool(job.apply_overrides),
        requested_files=_files_from_payload(job.requested_files),
        confirmation=DeployConfirmation(
            confirm_production=bool(job.confirm_production),
            confirmed_strategy=job.confirmed_strategy,
            confirmed_override_digest=job.confirmed_override_digest,
        ),
        state=job.state,
        progress=int(job.progress),
        created_at=_as_utc(job.created_at) or _utc_now(),
        started_at=_as_utc(job.started_at),
        completed_at=_as_utc(job.completed_at),
        archive_location=job.archive_location,
        partial_archive_location=job.partial_archive_location,
        archive_sha256=job.archive_sha256,
        file_count=job.file_count,
        error=error,
        warning=job.warning,
        cancel_requested=bool(job.cancel_requested),
        override_digest=override_digest,
        last_log_seq=int(job.log_seq or 0),
    )


def _log_entry(row: JobLogEntry) -> LogEntry:
    return LogEntry(
        job_id=row.job_id,
        seq=int(row.seq),
        created_at=_as_utc(row.created_at) or _utc_now(),
        level=row.level,
        stage=row.stage,
        message=row.message,
    )


class JobStore:
    """SQLAlchemy-backed persistence for deployment jobs."""

    # Writes -----------------------------------------------------------------

    def create(self, request: JobRequest) -> JobSnapshot:
        now = _utc_now()
        try:
            with session_scope() as session:
                job = DeploymentJob(
                    project_id=request.project_id,
                    branch=request.branch,
                    version=request.version,
                    environment_id=request.environment_id,
                    strategy=request.strategy,
                    base_commit=request.base_commit,
                    head_commit=request.head_commit,
                    apply_overrides=request.apply_overrides,
                    requested_files=_files_payload(request.requested_files()) or None,
                    confirm_production=request.confirm_production,
                    confirmed_strategy=request.confirmed_strategy,
                    confirmed_override_digest=request.confirmed_override_digest,
                    state=JobState.QUEUED,
                    progress=STATE_PROGRESS[JobState.QUEUED],
                    log_seq=0,
                    created_at=now,
                    updated_at=now,
                )
                session.add(job)
                session.flush()
                self._append(
                    session,
                    job.id,
                    f"Job queued: {request.strategy.value} build of {request.project_id}@{request.branch} "
                    f"version {request.version}",
                    stage=LogStage.QUEUE,
                )
                session.refresh(job)
                snapshot = _snapshot(job)
        except SQLAlchemyError as exc:
            raise JobStoreError(f"Failed to create job: {exc}") from exc
        log.info("Created job {} for {}@{}", snapshot.job_id, snapshot.project_id, snapshot.branch)
        return snapshot

    def transition(
        self,
        job_id: UUID,
        target: JobState,
        *,
        message: str,
        stage: LogStage = LogStage.JOB,
    ) -> JobSnapshot:
        """Move a running job along a non-terminal edge of the graph."""

        if target.is_terminal:
            raise ValueError("Use succeed() or fail() for terminal transitions.")
        with self._session(job_id) as session:
            job = self._load(session, job_id)
            self._check_edge(job, target)
            values: dict[str, Any] = {
                "state": target,
                "progress": max(int(job.progress), STATE_PROGRESS[target]),
                "updated_at": _utc_now(),
            }
            if job.started_at is None:
                values["started_at"] = values["updated_at"]
            # A pending cancellation blocks entry into deploying.
            self._guarded_update(
                session,
                job,
                target,
                values,
                require_no_cancel=target is JobState.DEPLOYING,
            )
            self._append(session, job_id, message, stage=stage)
            return self._reload(session, job_id)

    def succeed(
        self,
        job_id: UUID,
        *,
        archive_location: str,
        archive_sha256: str,
        file_count: int,
        warning: str | None = None,
        message: str = "Job succeeded",
    ) -> JobSnapshot:
        with self._session(job_id) as session:
            job = self._load(session, job_id)
            self._check_edge(job, JobState.SUCCEEDED)
            if job.archive_location:
                raise JobStoreError(f"Job {job_id} already has an archive location.")
            now = _utc_now()
            values = {
                "state": JobState.SUCCEEDED,
                "progress": STATE_PROGRESS[JobState.SUCCEEDED],
                "archive_location": archive_location,
                "archive_sha256": archive_sha256,
                "file_count": int(file_count),
                "warning": warning,
                "completed_at": now,
                "updated_at": now,
            }
            self._guarded_update(session, job, JobState.SUCCEEDED, values)
            self._append(session, job_id, message, stage=LogStage.JOB)
            return self._reload(session, job_id)

    def fail(
        self,
        job_id: UUID,
        *,
        kind: str,
        message: str,
        stage: LogStage | None,
        partial_archive_location: str | None = None,
        archive_sha256: str | None = None,
        file_count: int | None = None,
    ) -> JobSnapshot:
        """Record the terminal error. Progress stays where the job got to."""

        with self._session(job_id) as session:
            job = self._load(session, job_id)
            self._check_edge(job, JobState.FAILED)
            now = _utc_now()
            values: dict[str, Any] = {
                "state": JobState.FAILED,
                "error_kind": kind,
                "error_message": message,
                "error_stage": stage.value if stage is not None else None,
                "completed_at": now,
                "updated_at": now,
            }
            if partial_archive_location:
                values.update(
                    partial_archive_location=partial_archive_location,
                    archive_sha256=archive_sha256,
                    file_count=file_count,
                )
            self._guarded_update(session, job, JobState.FAILED, values)
            where = f" during {stage.value}" if stage is not None else ""
            self._append(session, job_id, f"Job failed{where}: {kind}: {message}", stage=stage or LogStage.JOB, level="ERROR")
            return self._reload(session, job_id)

    def request_cancel(self, job_id: UUID) -> tuple[CancelOutcome, JobSnapshot]:
        with self._session(job_id) as session:
            job = self._load(session, job_id)
            if job.state.is_terminal:
                return CancelOutcome.REJECTED, _snapshot(job)

            if job.state is JobState.QUEUED:
                now = _utc_now()
                result = session.execute(
                    update(DeploymentJob)
                    .where(DeploymentJob.id == job_id, DeploymentJob.state == JobState.QUEUED)
                    .values(
                        state=JobState.FAILED,
                        cancel_requested=True,
                        error_kind="Cancelled",
                        error_message="Job cancelled before it started.",
                        error_stage=LogStage.QUEUE.value,
                        completed_at=now,
                        updated_at=now,
                    ),
                )
                if result.rowcount == 1:
                    self._append(session, job_id, "Job cancelled before it started", stage=LogStage.QUEUE, level="WARNING")
                    return CancelOutcome.CANCELLED, self._reload(session, job_id)
                # A worker claimed it meanwhile; fall through to the running case.
                session.expire_all()
                job = self._load(session, job_id)
                if job.state.is_terminal:
                    return CancelOutcome.REJECTED, _snapshot(job)

            flagged = session.execute(
                update(DeploymentJob)
                .where(DeploymentJob.id == job_id, DeploymentJob.state.in_(_CHECKPOINTED_STATES))
                .values(cancel_requested=True, updated_at=_utc_now()),
            )
            if flagged.rowcount == 1:
                self._append(session, job_id, "Cancellation requested", stage=LogStage.JOB, level="WARNING")
                return CancelOutcome.FLAGGED, self._reload(session, job_id)

            # The job left the checkpointed states since it was read.
            session.expire_all()
            job = self._load(session, job_id)
            if job.state.is_terminal:
                return CancelOutcome.REJECTED, _snapshot(job)
            session.execute(
                update(DeploymentJob)
                .where(DeploymentJob.id == job_id)
                .values(cancel_requested=True, updated_at=_utc_now()),
            )
            if job.state is JobState.DEPLOYING:
                self._append(
                    session,
                    job_id,
                    "Cancellation requested during deployment; the deployment will run to completion",
                    stage=LogStage.DEPLOY,
                    level="WARNING",
                )
                return CancelOutcome.IGNORED, self._reload(session, job_id)
            self._append(session, job_id, "Cancellation requested", stage=LogStage.JOB, level="WARNING")
            return CancelOutcome.FLAGGED, self._reload(session, job_id)

    def append_log(
        self,
        job_id: UUID,
        message: str,
        *,
        stage: LogStage,
        level: str = "INFO",
    ) -> int:
        with self._session(job_id) as session:
            job = self._load(session, job_id)
            if job.state.is_terminal:
                raise JobImmutable(job_id, job.state)
            return self._append(session, job_id, message, stage=stage, level=level)

    def record_resolution(self, job_id: UUID, *, base_commit: str | None, head_commit: str | None) -> None:
        """Store the full commit hashes the diff was computed against."""

        with self._session(job_id) as session:
            job = self._load(session, job_id)
            if job.state.is_terminal:
                raise JobImmutable(job_id, job.state)
            values: dict[str, Any] = {"updated_at": _utc_now()}
            if base_commit:
                values["base_commit"] = base_commit
            if head_commit:
                values["head_commit"] = head_commit
            session.execute(update(DeploymentJob).where(DeploymentJob.id == job_id).values(**values))

    def record_override_snapshot(self, job_id: UUID, payload: dict[str, Any]) -> None:
        """Persist the override snapshot. A job keeps its first snapshot."""

        with self._session(job_id) as session:
            job = self._load(session, job_id)
            if job.state.is_terminal:
                raise JobImmutable(job_id, job.state)
            if job.override_snapshot:
                raise JobStoreError(f"Job {job_id} already has an override snapshot.")
            session.execute(
                update(DeploymentJob)
                .where(DeploymentJob.id == job_id)
                .values(override_snapshot=dict(payload), updated_at=_utc_now()),
            )

    # Reads ------------------------------------------------------------------

    def get(self, job_id: UUID) -> JobSnapshot:
        with self._session(job_id) as session:
            return _snapshot(self._load(session, job_id))

    def is_cancel_requested(self, job_id: UUID) -> bool:
        with self._session(job_id) as session:
            value = session.execute(
                select(DeploymentJob.cancel_requested).where(DeploymentJob.id == job_id),
            ).scalar_one_or_none()
            if value is None:
                raise JobNotFound(job_id)
            return bool(value)

    def list_jobs(
        self,
        *,
        project_id: str | None = None,
        environment_id: str | None = None,
        state: JobState | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[JobSnapshot], int]:
        """Return a page of jobs (newest first) and the total match count."""

        filters = []
        if project_id is not None:
            filters.append(DeploymentJob.project_id == project_id)
        if environment_id is not None:
            filters.append(DeploymentJob.environment_id == environment_id)
        if state is not None:
            filters.append(DeploymentJob.state == state)
        try:
            with session_scope() as session:
                total = session.execute(select(func.count()).select_from(DeploymentJob).where(*filters)).scalar_one()
                stmt = (
                    select(DeploymentJob)
                    .where(*filters)
                    .order_by(DeploymentJob.created_at.desc(), DeploymentJob.id.desc())
                    .limit(max(1, int(limit)))
                    .offset(max(0, int(offset)))
                )
                jobs = [_snapshot(job) for job in session.execute(stmt).scalars()]
        except SQLAlchemyError as exc:
            raise JobStoreError(f"Failed to list jobs: {exc}") from exc
        return jobs, int(total)

    def logs(self, job_id: UUID, *, since: int = 0, limit: int = 1000) -> list[LogEntry]:
        """Return entries with ``seq > since`` in sequence order."""

        with self._session(job_id) as session:
            exists = session.execute(select(DeploymentJob.id).where(DeploymentJob.id == job_id)).scalar_one_or_none()
            if exists is None:
                raise JobNotFound(job_id)
            stmt = (
                select(JobLogEntry)
                .where(JobLogEntry.job_id == job_id, JobLogEntry.seq > max(0, int(since)))
                .order_by(JobLogEntry.seq)
                .limit(max(1, int(limit)))
            )
            return [_log_entry(row) for row in session.execute(stmt).scalars()]

    # Internals --------------------------------------------------------------

    @staticmethod
    @contextmanager
    def _session(job_id: UUID) -> Iterator[Session]:
        """``session_scope`` that maps driver failures to :class:`JobStoreError`."""
        try:
            with session_scope() as session:
                yield session
        except SQLAlchemyError as exc:
            raise JobStoreError(f"Database error for job {job_id}: {exc}") from exc

    @staticmethod
    def _load(session: Session, job_id: UUID) -> DeploymentJob:
        job = session.get(DeploymentJob, job_id, populate_existing=True)
        if job is None:
            raise JobNotFound(job_id)
        return job

    @staticmethod
    def _reload(session: Session, job_id: UUID) -> JobSnapshot:
        session.flush()
        return _snapshot(JobStore._load(session, job_id))

    @staticmethod
    def _check_edge(job: DeploymentJob, target: JobState) -> None:
        if job.state.is_terminal:
            raise JobImmutable(job.id, job.state)
        if not is_allowed_transition(job.state, target):
            raise InvalidStateTransition(job.id, job.state, target)

    @staticmethod
    def _guarded_update(
        session: Session,
        job: DeploymentJob,
        target: JobState,
        values: dict[str, Any],
        *,
        require_no_cancel: bool = False,
    ) -> None:
        expected = job.state
        stmt = update(DeploymentJob).where(DeploymentJob.id == job.id, DeploymentJob.state == expected)
        if require_no_cancel:
            stmt = stmt.where(DeploymentJob.cancel_requested.is_(False))
        result = session.execute(stmt.values(**values))
        if result.rowcount != 1:
            # Someone else moved the job first (cancel of a queued job, another worker).
            session.expire_all()
            current = session.get(DeploymentJob, job.id)
            current_state = current.state if current is not None else expected
            if current_state.is_terminal:
                raise JobImmutable(job.id, current_state)
            if require_no_cancel and current is not None and current.cancel_requested and current_state is expected:
                raise CancelPending(job.id)
            raise InvalidStateTransition(job.id, current_state, target)
        log.debug("Job {} {} -> {}", job.id, expected.value, target.value)

    @staticmethod
    def _append(
        session: Session,
        job_id: UUID,
        message: str,
        *,
        stage: LogStage,
        level: str = "INFO",
    ) -> int:
        # Bumping the counter first serialises concurrent appenders on the job row.
        session.execute(
            update(DeploymentJob).where(DeploymentJob.id == job_id).values(log_seq=DeploymentJob.log_seq + 1),
        )
        seq = session.execute(select(DeploymentJob.log_seq).where(DeploymentJob.id == job_id)).scalar_one()
        session.add(
            JobLogEntry(
                job_id=job_id,
                seq=int(seq),
                created_at=_utc_now(),
                level=level.upper(),
                stage=stage,
                message=str(message),
            ),
        )
        session.flush()
        log.bind(job_id=str(job_id), stage=stage.value).log(level.upper(), message)
        return int(seq)

