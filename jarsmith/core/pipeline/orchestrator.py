"""Job lifecycle: submit, run, observe, cancel.

``submit`` persists a queued job and hands its id to ``dispatch`` (the task
queue in production, a direct call in tests). ``run`` executes one job on a
worker thread:

    queued -> resolving -> [overriding] -> building -> [deploying] -> succeeded

Any stage error ends the job in ``failed`` with the error kind, message and
stage recorded. Worker interrupts such as a Dramatiq time limit are recorded
the same way and then re-raised. Cancellation is cooperative: it is checked
between stages, while waiting for the environment lock and when entering
``deploying``, never during a deployment.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable
from uuid import UUID

from dramatiq.middleware import TimeLimitExceeded
from loguru import logger
from rich.console import Console

from jarsmith.core.collaborators import EnvironmentDirectory, EnvironmentInfo, ProjectDirectory, ProjectRef
from jarsmith.core.errors import (
    DeployTimeout,
    EnvironmentNotFound,
    JobCancelled,
    PipelineError,
    ProjectNotFound,
)
from jarsmith.core.job_store import (
    CancelOutcome,
    CancelPending,
    InvalidStateTransition,
    JobImmutable,
    JobSnapshot,
    JobStore,
    LogEntry,
)
from jarsmith.core.locks import EnvironmentLocks, LockAborted
from jarsmith.core.pipeline.archive import ArchiveArtifact, ArchiveBuilder
from jarsmith.core.pipeline.changes import normalize_path
from jarsmith.core.pipeline.deploy import Deployer
from jarsmith.core.pipeline.diff import DiffRequest, DiffResolver, ResolvedChanges
from jarsmith.core.pipeline.overrides import OverrideApplier, OverrideSnapshot
from jarsmith.core.requests import JobRequest
from jarsmith.core.types import ChangeSource, JobState, JobStrategy, LogStage

console = Console()
log = logger.bind(module="pipeline.orchestrator")

__all__ = ["EMPTY_CHANGE_SET_WARNING", "JobOrchestrator"]

EMPTY_CHANGE_SET_WARNING = "EmptyChangeSet"
INTERNAL_ERROR_KIND = "InternalError"

# Per-file log lines are skipped above this many entries (full-tree builds).
_MAX_FILE_LOG_LINES = 200


@dataclass(slots=True)
class _RunContext:
    job: JobSnapshot
    stage: LogStage = LogStage.DIFF
    artifact: ArchiveArtifact | None = None

    @property
    def job_id(self) -> UUID:
        return self.job.job_id


class JobOrchestrator:
    """Sequence the pipeline stages for each job and keep the store current."""

    def __init__(
        self,
        *,
        store: JobStore,
        projects: ProjectDirectory,
        environments: EnvironmentDirectory,
        resolver: DiffResolver,
        overrides: OverrideApplier,
        builder: ArchiveBuilder,
        deployer: Deployer,
        locks: EnvironmentLocks,
        dispatch: Callable[[UUID], None] | None = None,
        log_page_max: int = 1000,
    ) -> None:
        self.store = store
        self.projects = projects
        self.environments = environments
        self.resolver = resolver
        self.overrides = overrides
        self.builder = builder
        self.deployer = deployer
        self.locks = locks
        self.dispatch = dispatch
        self.log_page_max = max(1, int(log_page_max))

    # Caller-facing contract --------------------------------------------------

    def submit(self, request: JobRequest) -> JobSnapshot:
        """Persist a queued job and enqueue it. Never waits for the job."""

        job = self.store.create(request)
        console.log(
            f"[bold cyan]Job submitted[/] id={job.job_id} project={job.project_id} "
            f"strategy={job.strategy.value} env={job.environment_id or '-'}",
        )
        if self.dispatch is None:
            return job
        try:
            self.dispatch(job.job_id)
        except Exception as exc:  # broker down, serialisation failure
            log.exception("Failed to enqueue job {}", job.job_id)
            return self.store.fail(
                job.job_id,
                kind=INTERNAL_ERROR_KIND,
                message=f"Failed to enqueue job: {exc}",
                stage=LogStage.QUEUE,
            )
        return job

    def status(self, job_id: UUID) -> JobSnapshot:
        return self.store.get(job_id)

    def logs(self, job_id: UUID, *, since: int = 0, limit: int | None = None) -> list[LogEntry]:
        page = self.log_page_max if limit is None else max(1, min(int(limit), self.log_page_max))
        return self.store.logs(job_id, since=since, limit=page)

    def cancel(self, job_id: UUID) -> tuple[CancelOutcome, JobSnapshot]:
        outcome, job = self.store.request_cancel(job_id)
        log.info("Cancel request for job {}: {}", job_id, outcome.value)
        return outcome, job

    def list_jobs(
        self,
        *,
        project_id: str | None = None,
        environment_id: str | None = None,
        state: JobState | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[JobSnapshot], int]:
        return self.store.list_jobs(
            project_id=project_id,
            environment_id=environment_id,
            state=state,
            limit=limit,
            offset=offset,
        )

    def archive_path(self, job_id: UUID) -> Path | None:
        """Return the stored archive of a job (successful or partial)."""

        job = self.store.get(job_id)
        location = job.archive_location or job.partial_archive_location
        if not location:
            return None
        path = Path(location)
        return path if path.is_file() else None

    def override_digest(self, environment_id: str) -> OverrideSnapshot:
        """Snapshot the current override set so operators can confirm its digest."""

        return self.overrides.snapshot(environment_id)

    def preview_changes(
        self,
        project_id: str,
        *,
        branch: str | None = None,
        base_commit: str | None = None,
        head_commit: str | None = None,
        strategy: JobStrategy = JobStrategy.DIFF,
        paths: tuple[str, ...] = (),
    ) -> ResolvedChanges:
        """Resolve a change set without creating a job.

        ``paths`` narrows the result to those repository paths; the ceiling
        still applies to the whole range.
        """

        project = self._project(project_id)
        resolved = self.resolver.resolve(
            DiffRequest(
                project=project,
                branch=branch or project.default_branch or "main",
                strategy=strategy,
                base_commit=base_commit,
                head_commit=head_commit,
            ),
        )
        if not paths:
            return resolved
        wanted = {normalize_path(path) for path in paths}
        return ResolvedChanges(
            changes=tuple(change for change in resolved.changes if change.path in wanted),
            base_commit=resolved.base_commit,
            head_commit=resolved.head_commit,
        )

    def _project(self, project_id: str) -> ProjectRef:
        project = self.projects.get_project(project_id)
        if project is None:
            raise ProjectNotFound(project_id)
        return project

    # Execution ----------------------------------------------------------------

    def run(self, job_id: UUID) -> JobSnapshot:
        """Execute a queued job to a terminal state. Safe to call twice."""

        job = self.store.get(job_id)
        if job.state is not JobState.QUEUED:
            log.info("Job {} is {}; nothing to run", job_id, job.state.value)
            return job
        try:
            job = self.store.transition(
                job_id,
                JobState.RESOLVING,
                message=self._resolving_message(job),
                stage=LogStage.DIFF,
            )
        except (InvalidStateTransition, JobImmutable) as exc:
            # Cancelled while queued, or claimed by another worker.
            log.info("Job {} not started: {}", job_id, exc)
            return self.store.get(job_id)

        ctx = _RunContext(job=job)
        try:
            self._execute(ctx)
        except PipelineError as exc:
            self._fail(ctx, exc.kind, exc.message)
        except JobImmutable as exc:
            log.warning("Job {} finished elsewhere: {}", job_id, exc)
        except Exception as exc:
            log.exception("Unexpected failure while running job {}", job_id)
            self._fail(ctx, INTERNAL_ERROR_KIND, f"{type(exc).__name__}: {exc}")
        except BaseException as exc:
            # Worker interrupts (time limit, shutdown) still end the job.
            self._interrupted(ctx, exc)
            raise

        final = self.store.get(job_id)
        colour = "green" if final.state is JobState.SUCCEEDED else "red"
        console.log(f"[bold {colour}]Job {final.state.value}[/] id={job_id} progress={final.progress}")
        return final

    def _execute(self, ctx: _RunContext) -> None:
        job = ctx.job
        project = self._project(job.project_id)

        ctx.stage = LogStage.DIFF
        resolved = self.resolver.resolve(
            DiffRequest(
                project=project,
                branch=job.branch,
                strategy=job.strategy,
                base_commit=job.base_commit,
                head_commit=job.head_commit,
                files=job.requested_files,
            ),
        )
        self.store.record_resolution(job.job_id, base_commit=resolved.base_commit, head_commit=resolved.head_commit)
        self._log_changes(ctx, resolved.changes, header=f"Resolved {len(resolved.changes)} files")
        self._checkpoint(ctx)

        changes = list(resolved.changes)
        override_digest: str | None = None
        if job.apply_overrides:
            ctx.stage = LogStage.OVERRIDE
            self.store.transition(
                job.job_id,
                JobState.OVERRIDING,
                message="Applying environment overrides",
                stage=LogStage.OVERRIDE,
            )
            if not job.environment_id:
                raise EnvironmentNotFound("(none)")
            snapshot = self.overrides.snapshot(job.environment_id)
            self.store.record_override_snapshot(job.job_id, snapshot.to_payload())
            override_digest = snapshot.digest
            self._emit(ctx, f"Override snapshot {snapshot.digest[:12]} holds {len(snapshot.records)} overrides")
            changes = self.overrides.apply(
                changes,
                snapshot,
                strategy=job.strategy,
                emit=lambda message: self._emit(ctx, message),
            )
            applied = sum(1 for change in changes if change.source is ChangeSource.OVERRIDE)
            self._emit(ctx, f"{applied} overrides applied")
            self._checkpoint(ctx)

        ctx.stage = LogStage.BUILD
        self.store.transition(job.job_id, JobState.BUILDING, message="Packaging archive", stage=LogStage.BUILD)
        artifact = self.builder.build(
            changes,
            project_id=job.project_id,
            version=job.version,
            strategy=job.strategy,
            allow_empty=job.is_build_only,
        )
        ctx.artifact = artifact
        self._emit(
            ctx,
            f"{'Reused' if artifact.reused else 'Built'} archive {artifact.location.name} "
            f"({artifact.file_count} files, {artifact.size} bytes, sha256 {artifact.sha256[:12]})",
        )
        warning = None
        if not changes and job.strategy is JobStrategy.DIFF:
            warning = EMPTY_CHANGE_SET_WARNING
            self._emit(ctx, "No files changed; the archive is empty", level="WARNING")
        self._checkpoint(ctx)

        if job.is_build_only:
            self.store.succeed(
                job.job_id,
                archive_location=str(artifact.location),
                archive_sha256=artifact.sha256,
                file_count=artifact.file_count,
                warning=warning,
                message="Build-only job succeeded",
            )
            return

        self._deploy(ctx, artifact, override_digest=override_digest, warning=warning)

    def _deploy(
        self,
        ctx: _RunContext,
        artifact: ArchiveArtifact,
        *,
        override_digest: str | None,
        warning: str | None,
    ) -> None:
        job = ctx.job
        ctx.stage = LogStage.DEPLOY
        if not job.environment_id:
            raise EnvironmentNotFound("(none)")
        environment = self.environments.get_environment(job.environment_id)
        if environment is None:
            raise EnvironmentNotFound(job.environment_id)

        def _waiting(holder: str | None) -> None:
            self._emit(ctx, f"Waiting for environment {job.environment_id} (held by job {holder or 'unknown'})")

        try:
            with self.locks.hold(
                job.environment_id,
                owner=str(job.job_id),
                should_abort=lambda: self.store.is_cancel_requested(job.job_id),
                on_wait=_waiting,
            ):
                # The terminal write happens while the lock is held so deploy intervals never overlap.
                self._deploy_locked(ctx, artifact, environment, override_digest=override_digest, warning=warning)
        except LockAborted as exc:
            raise JobCancelled() from exc

    def _deploy_locked(
        self,
        ctx: _RunContext,
        artifact: ArchiveArtifact,
        environment: EnvironmentInfo,
        *,
        override_digest: str | None,
        warning: str | None,
    ) -> None:
        job = ctx.job
        target = environment.name or environment.environment_id
        try:
            self._checkpoint(ctx)
            try:
                self.store.transition(
                    job.job_id,
                    JobState.DEPLOYING,
                    message=f"Deploying to {target}",
                    stage=LogStage.DEPLOY,
                )
            except CancelPending as exc:
                raise JobCancelled() from exc
            self.deployer.deploy(
                archive_path=str(artifact.location),
                environment=environment,
                version=job.version,
                strategy=job.strategy,
                override_digest=override_digest,
                confirmation=job.confirmation,
                emit=lambda message: self._emit(ctx, message),
            )
            if self.store.is_cancel_requested(job.job_id):
                self._emit(ctx, "Cancellation request ignored: the deployment had already started")
            self.store.succeed(
                job.job_id,
                archive_location=str(artifact.location),
                archive_sha256=artifact.sha256,
                file_count=artifact.file_count,
                warning=warning,
                message=f"Deployed {job.version} to {target}",
            )
        except PipelineError as exc:
            self._fail(ctx, exc.kind, exc.message)
        except JobImmutable:
            raise
        except Exception as exc:
            log.exception("Unexpected failure while deploying job {}", job.job_id)
            self._fail(ctx, INTERNAL_ERROR_KIND, f"{type(exc).__name__}: {exc}")
        except BaseException as exc:
            # Recorded before the environment lock is released.
            self._interrupted(ctx, exc)
            raise

    # Helpers ------------------------------------------------------------------

    def _checkpoint(self, ctx: _RunContext) -> None:
        if self.store.is_cancel_requested(ctx.job_id):
            raise JobCancelled()

    def _emit(self, ctx: _RunContext, message: str, *, level: str = "INFO") -> None:
        self.store.append_log(ctx.job_id, message, stage=ctx.stage, level=level)

    def _log_changes(self, ctx: _RunContext, changes, *, header: str) -> None:  # type: ignore[no-untyped-def]
        self._emit(ctx, header)
        if len(changes) > _MAX_FILE_LOG_LINES:
            return
        for change in changes:
            self._emit(ctx, f"  {change.kind.value:<8} {change.path}")

    def _interrupted(self, ctx: _RunContext, exc: BaseException) -> None:
        """Fail a job whose worker thread was interrupted, unless it already ended."""

        name = type(exc).__name__
        try:
            current = self.store.get(ctx.job_id)
            if current.is_terminal:
                return
            if isinstance(exc, TimeLimitExceeded):
                timed_out_deploying = current.state is JobState.DEPLOYING
                kind = DeployTimeout.kind if timed_out_deploying else INTERNAL_ERROR_KIND
                message = f"Worker time limit exceeded while {current.state.value}"
            else:
                kind, message = INTERNAL_ERROR_KIND, f"Worker interrupted: {name}"
            log.error("Job {} interrupted while {}: {}", ctx.job_id, current.state.value, name)
            self._fail(ctx, kind, message)
        except Exception:
            # The interrupt itself is re-raised by the caller.
            log.exception("Could not record interruption of job {}", ctx.job_id)

    def _fail(self, ctx: _RunContext, kind: str, message: str) -> None:
        artifact = ctx.artifact
        try:
            self.store.fail(
                ctx.job_id,
                kind=kind,
                message=message,
                stage=ctx.stage,
                partial_archive_location=str(artifact.location) if artifact else None,
                archive_sha256=artifact.sha256 if artifact else None,
                file_count=artifact.file_count if artifact else None,
            )
        except JobImmutable:
            log.warning("Job {} already terminal; dropping {} failure", ctx.job_id, kind)
            return
        console.log(f"[bold red]Job failed[/] id={ctx.job_id} stage={ctx.stage.value} kind={kind}")

    @staticmethod
    def _resolving_message(job: JobSnapshot) -> str:
        if job.requested_files:
            return f"Resolving {len(job.requested_files)} requested files on {job.branch}"
        if job.strategy is JobStrategy.FULL:
            return f"Resolving full tree of {job.branch} at {job.head_commit or 'branch tip'}"
        return f"Resolving changes {job.base_commit} -> {job.head_commit or 'branch tip'} on {job.branch}"
