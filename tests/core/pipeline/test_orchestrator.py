from __future__ import annotations

import json
import threading
import time
import zipfile
from datetime import datetime, timezone
from pathlib import Path

import pytest
from dramatiq.middleware import TimeLimitExceeded

from jarsmith.core.collaborators import DeployResult, EnvironmentInfo, OverrideRecord, ProjectRef
from jarsmith.core.job_store import CancelOutcome, JobStore
from jarsmith.core.locks import LocalEnvironmentLocks
from jarsmith.core.pipeline.archive import MANIFEST_JSON_PATH, ArchiveBuilder
from jarsmith.core.pipeline.changes import FileChange
from jarsmith.core.pipeline.deploy import Deployer
from jarsmith.core.pipeline.diff import DiffResolver
from jarsmith.core.pipeline.orchestrator import EMPTY_CHANGE_SET_WARNING, JobOrchestrator
from jarsmith.core.pipeline.overrides import OverrideApplier
from jarsmith.core.requests import JobRequest
from jarsmith.core.types import ChangeKind, DeploymentChannel, JobState, OverrideFileType

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
UAT = EnvironmentInfo(environment_id="uat", name="UAT", host="uat.local", port=7001)
PROD = EnvironmentInfo(environment_id="prod", name="PROD", host="prod.local", port=7001, is_production=True)


class FakeProjects:
    def get_project(self, project_id):
        if project_id != "billing":
            return None
        return ProjectRef(project_id="billing", remote_url="file:///unused", default_branch="main")


class FakeEnvironments:
    def __init__(self, *environments: EnvironmentInfo) -> None:
        self.environments = {env.environment_id: env for env in environments}

    def get_environment(self, environment_id):
        return self.environments.get(environment_id)


class FakeOverrides:
    def __init__(self, *records: OverrideRecord) -> None:
        self.records = list(records)

    def list_overrides(self, environment_id):
        return [record for record in self.records if record.environment_id == environment_id]


class FakeProvider:
    """Two-commit history; ``on_compare`` runs while the diff is being computed."""

    def __init__(self, changes: list[FileChange]) -> None:
        self.changes = changes
        self.on_compare = None

    def resolve_commit(self, project, branch, ref):
        return {"a1": "a" * 40, "b2": "b" * 40}.get(ref or "b2", ref)

    def compare(self, project, branch, base, head, *, max_files=None):
        if self.on_compare is not None:
            self.on_compare()
        return list(self.changes)

    def tree(self, project, branch, head):
        return list(self.changes)

    def read_files(self, project, branch, head, files):
        return [FileChange(path=entry.path, kind=entry.kind, content=b"explicit") for entry in files]


class RecordingTransport:
    def __init__(self, *, result: DeployResult | None = None, delay: float = 0.0) -> None:
        self.result = result or DeployResult(ok=True, message="Application activated")
        self.delay = delay
        self.calls: list[str] = []
        self.on_deploy = None
        self.active = 0
        self.max_active = 0
        self._guard = threading.Lock()

    def deploy(self, *, archive_path, environment, version, on_status):
        with self._guard:
            self.calls.append(version)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            on_status(f"Uploading {Path(archive_path).name}")
            if self.on_deploy is not None:
                self.on_deploy()
            if self.delay:
                time.sleep(self.delay)
            return self.result
        finally:
            with self._guard:
                self.active -= 1


def _changes() -> list[FileChange]:
    return [
        FileChange(path="src/app.proxy", kind=ChangeKind.MODIFIED, content=b"<proxy>repo</proxy>"),
        FileChange(path="src/Main.java", kind=ChangeKind.ADDED, content=b"class Main {}"),
        FileChange(path="old/Legacy.java", kind=ChangeKind.DELETED),
    ]


def _build(settings, tmp_path, *, provider=None, environments=None, overrides=None, transport=None, dispatch=None):
    provider = provider or FakeProvider(_changes())
    environments = environments or FakeEnvironments(UAT, PROD)
    transport = transport or RecordingTransport()
    orchestrator = JobOrchestrator(
        store=JobStore(),
        projects=FakeProjects(),
        environments=environments,
        resolver=DiffResolver(provider, max_files=100),
        overrides=OverrideApplier(environments, overrides or FakeOverrides()),
        builder=ArchiveBuilder(tmp_path / "archives"),
        deployer=Deployer({DeploymentChannel.HTTP: transport}, settings=settings, sleep=lambda _s: None),
        locks=LocalEnvironmentLocks(poll_seconds=0.01),
        dispatch=dispatch,
    )
    return orchestrator, provider, transport


def _request(**overrides) -> JobRequest:
    payload = {
        "project_id": "billing",
        "branch": "main",
        "version": "1.0.0",
        "strategy": "diff",
        "base_commit": "a1",
        "head_commit": "b2",
    }
    payload.update(overrides)
    return JobRequest.model_validate(payload)


def _messages(orchestrator: JobOrchestrator, job_id) -> list[str]:
    return [entry.message for entry in orchestrator.logs(job_id)]


def test_build_only_job_with_identical_commits_succeeds_with_warning(db, settings, tmp_path) -> None:
    orchestrator, _provider, transport = _build(settings, tmp_path)
    job = orchestrator.submit(_request(base_commit="a1", head_commit="a1"))

    final = orchestrator.run(job.job_id)

    assert final.state is JobState.SUCCEEDED
    assert final.progress == 100
    assert final.warning == EMPTY_CHANGE_SET_WARNING
    assert final.file_count == 0
    assert Path(final.archive_location).is_file()
    assert transport.calls == []
    with zipfile.ZipFile(final.archive_location) as archive:
        assert json.loads(archive.read(MANIFEST_JSON_PATH))["entries"] == []


def test_empty_change_set_fails_when_the_job_would_deploy(db, settings, tmp_path) -> None:
    orchestrator, _provider, transport = _build(settings, tmp_path)
    job = orchestrator.submit(_request(base_commit="a1", head_commit="a1", environment_id="uat"))

    final = orchestrator.run(job.job_id)

    assert final.state is JobState.FAILED
    assert final.error.kind == "EmptyChangeSet"
    assert final.error.stage == "build"
    assert transport.calls == []


def test_overrides_replace_repository_content_in_the_archive(db, settings, tmp_path) -> None:
    overrides = FakeOverrides(
        OverrideRecord(
            override_id="7",
            environment_id="uat",
            file_path="src/app.proxy",
            file_type=OverrideFileType.PROXY,
            content=b"<proxy>uat</proxy>",
            created_at=T0,
            updated_at=T0,
        ),
    )
    orchestrator, _provider, transport = _build(settings, tmp_path, overrides=overrides)
    job = orchestrator.submit(_request(environment_id="uat", apply_overrides=True))

    final = orchestrator.run(job.job_id)

    assert final.state is JobState.SUCCEEDED, final.error
    assert final.override_digest == orchestrator.override_digest("uat").digest
    assert final.base_commit == "a" * 40 and final.head_commit == "b" * 40
    assert final.file_count == 2
    assert transport.calls == ["1.0.0"]
    with zipfile.ZipFile(final.archive_location) as archive:
        assert archive.read("src/app.proxy") == b"<proxy>uat</proxy>"
        assert archive.read("src/Main.java") == b"class Main {}"
        assert "old/Legacy.java" not in archive.namelist()
        entries = {entry["path"]: entry for entry in json.loads(archive.read(MANIFEST_JSON_PATH))["entries"]}
    assert entries["src/app.proxy"]["source"] == "override"
    assert entries["old/Legacy.java"]["kind"] == "deleted"
    messages = _messages(orchestrator, job.job_id)
    assert any("Override proxy applied to src/app.proxy" in message for message in messages)


def test_unconfirmed_production_deploy_is_blocked_before_the_transport(db, settings, tmp_path) -> None:
    orchestrator, _provider, transport = _build(settings, tmp_path)
    job = orchestrator.submit(_request(environment_id="prod"))

    final = orchestrator.run(job.job_id)

    assert final.state is JobState.FAILED
    assert final.error.kind == "ProductionGuardViolation"
    assert final.error.stage == "deploy"
    assert final.progress == 80
    assert transport.calls == []
    assert final.partial_archive_location is not None
    assert orchestrator.archive_path(job.job_id) == Path(final.partial_archive_location)


def test_confirmed_production_deploy_goes_through(db, settings, tmp_path) -> None:
    orchestrator, _provider, transport = _build(settings, tmp_path)
    job = orchestrator.submit(_request(environment_id="prod", confirm_production=True, confirmed_strategy="diff"))

    final = orchestrator.run(job.job_id)

    assert final.state is JobState.SUCCEEDED, final.error
    assert transport.calls == ["1.0.0"]


def test_cancel_during_deploy_is_ignored(db, settings, tmp_path) -> None:
    orchestrator, _provider, transport = _build(settings, tmp_path)
    job = orchestrator.submit(_request(environment_id="uat"))
    outcomes: list[CancelOutcome] = []
    transport.on_deploy = lambda: outcomes.append(orchestrator.cancel(job.job_id)[0])

    final = orchestrator.run(job.job_id)

    assert outcomes == [CancelOutcome.IGNORED]
    assert final.state is JobState.SUCCEEDED
    assert final.cancel_requested
    assert any("Cancellation request ignored" in message for message in _messages(orchestrator, job.job_id))


def test_cancel_while_queued_prevents_the_run(db, settings, tmp_path) -> None:
    orchestrator, _provider, transport = _build(settings, tmp_path)
    job = orchestrator.submit(_request(environment_id="uat"))

    outcome, cancelled = orchestrator.cancel(job.job_id)
    final = orchestrator.run(job.job_id)

    assert outcome is CancelOutcome.CANCELLED
    assert cancelled.state is JobState.FAILED
    assert final.error.kind == "Cancelled"
    assert final.started_at is None
    assert transport.calls == []


def test_cancel_flag_stops_the_job_at_the_next_checkpoint(db, settings, tmp_path) -> None:
    orchestrator, provider, transport = _build(settings, tmp_path)
    job = orchestrator.submit(_request(environment_id="uat"))
    provider.on_compare = lambda: orchestrator.cancel(job.job_id)

    final = orchestrator.run(job.job_id)

    assert final.state is JobState.FAILED
    assert final.error.kind == "Cancelled"
    assert final.error.stage == "diff"
    assert final.progress == 20
    assert transport.calls == []


def test_missing_project_fails_during_resolution(db, settings, tmp_path) -> None:
    orchestrator, _provider, _transport = _build(settings, tmp_path)
    job = orchestrator.submit(_request(project_id="unknown"))

    final = orchestrator.run(job.job_id)

    assert final.error.kind == "RepositoryUnavailable"
    assert final.error.stage == "diff"


def test_rejected_deploy_keeps_the_partial_archive(db, settings, tmp_path) -> None:
    transport = RecordingTransport(result=DeployResult(ok=False, message="Activation failed"))
    orchestrator, _provider, _transport = _build(settings, tmp_path, transport=transport)
    job = orchestrator.submit(_request(environment_id="uat"))

    final = orchestrator.run(job.job_id)

    assert final.state is JobState.FAILED
    assert final.error.kind == "DeployRejected"
    assert final.error.message == "Activation failed"
    assert final.archive_location is None
    assert Path(final.partial_archive_location).is_file()
    assert final.archive_sha256 and final.file_count == 2


def test_dispatch_failure_marks_the_job_failed(db, settings, tmp_path) -> None:
    def _broken(job_id):
        raise ConnectionError("broker unavailable")

    orchestrator, _provider, _transport = _build(settings, tmp_path, dispatch=_broken)
    job = orchestrator.submit(_request())

    assert job.state is JobState.FAILED
    assert job.error.kind == "InternalError"
    assert "broker unavailable" in job.error.message


def test_dispatch_receives_the_job_id(db, settings, tmp_path) -> None:
    sent = []
    orchestrator, _provider, _transport = _build(settings, tmp_path, dispatch=sent.append)
    job = orchestrator.submit(_request())

    assert sent == [job.job_id]
    assert orchestrator.status(job.job_id).state is JobState.QUEUED


def test_running_a_finished_job_is_a_no_op(db, settings, tmp_path) -> None:
    orchestrator, _provider, transport = _build(settings, tmp_path)
    job = orchestrator.submit(_request(environment_id="uat"))
    first = orchestrator.run(job.job_id)
    second = orchestrator.run(job.job_id)

    assert first.state is second.state is JobState.SUCCEEDED
    assert transport.calls == ["1.0.0"]


def test_deployments_to_one_environment_never_overlap(db, settings, tmp_path) -> None:
    transport = RecordingTransport(delay=0.1)
    orchestrator, _provider, _transport = _build(settings, tmp_path, transport=transport)
    jobs = [orchestrator.submit(_request(environment_id="uat", version=f"1.0.{index}")) for index in range(2)]

    threads = [threading.Thread(target=orchestrator.run, args=(job.job_id,)) for job in jobs]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert transport.max_active == 1
    assert sorted(transport.calls) == ["1.0.0", "1.0.1"]
    assert all(orchestrator.status(job.job_id).state is JobState.SUCCEEDED for job in jobs)


def test_logs_are_capped_by_page_size(db, settings, tmp_path) -> None:
    orchestrator, _provider, _transport = _build(settings, tmp_path)
    orchestrator.log_page_max = 2
    job = orchestrator.submit(_request())
    orchestrator.run(job.job_id)

    assert [entry.seq for entry in orchestrator.logs(job.job_id)] == [1, 2]
    assert [entry.seq for entry in orchestrator.logs(job.job_id, since=2, limit=50)] == [3, 4]


def test_environment_missing_at_deploy_time(db, settings, tmp_path) -> None:
    orchestrator, _provider, _transport = _build(settings, tmp_path, environments=FakeEnvironments(UAT))
    job = orchestrator.submit(_request(environment_id="qa"))

    final = orchestrator.run(job.job_id)

    assert final.error.kind == "EnvironmentNotFound"
    assert final.error.stage == "deploy"


def test_override_environment_must_exist(db, settings, tmp_path) -> None:
    orchestrator, _provider, _transport = _build(settings, tmp_path, environments=FakeEnvironments(UAT))
    job = orchestrator.submit(_request(environment_id="qa", apply_overrides=True))

    final = orchestrator.run(job.job_id)

    assert final.error.kind == "EnvironmentNotFound"
    assert final.error.stage == "override"


class CancelBeforeDeployStore(JobStore):
    """Delivers a cancel request right after the last checkpoint, before deploying."""

    def __init__(self) -> None:
        super().__init__()
        self.outcomes: list[CancelOutcome] = []

    def transition(self, job_id, target, **kwargs):
        if target is JobState.DEPLOYING:
            outcome, _job = self.request_cancel(job_id)
            self.outcomes.append(outcome)
        return super().transition(job_id, target, **kwargs)


def test_cancel_flagged_just_before_deploying_is_honoured(db, settings, tmp_path) -> None:
    orchestrator, _provider, transport = _build(settings, tmp_path)
    store = CancelBeforeDeployStore()
    orchestrator.store = store
    job = orchestrator.submit(_request(environment_id="uat"))

    final = orchestrator.run(job.job_id)

    assert store.outcomes == [CancelOutcome.FLAGGED]
    assert final.state is JobState.FAILED
    assert final.error.kind == "Cancelled"
    assert final.progress == 60
    assert transport.calls == []
    assert final.partial_archive_location


def test_time_limit_during_resolution_fails_the_job_and_propagates(db, settings, tmp_path) -> None:
    orchestrator, provider, _transport = _build(settings, tmp_path)

    def _limit() -> None:
        raise TimeLimitExceeded()

    provider.on_compare = _limit
    job = orchestrator.submit(_request())

    with pytest.raises(TimeLimitExceeded):
        orchestrator.run(job.job_id)

    final = orchestrator.status(job.job_id)
    assert final.state is JobState.FAILED
    assert final.error.kind == "InternalError"
    assert final.error.stage == "diff"
    assert final.progress == 20


def test_time_limit_during_deploy_is_a_deploy_timeout_and_frees_the_environment(db, settings, tmp_path) -> None:
    orchestrator, _provider, transport = _build(settings, tmp_path)

    def _limit() -> None:
        raise TimeLimitExceeded()

    transport.on_deploy = _limit
    job = orchestrator.submit(_request(environment_id="uat"))

    with pytest.raises(TimeLimitExceeded):
        orchestrator.run(job.job_id)

    final = orchestrator.status(job.job_id)
    assert final.state is JobState.FAILED
    assert final.error.kind == "DeployTimeout"
    assert final.error.stage == "deploy"
    assert final.progress == 80
    assert final.partial_archive_location

    transport.on_deploy = None
    follow_up = orchestrator.submit(_request(environment_id="uat", version="1.0.1"))
    assert orchestrator.run(follow_up.job_id).state is JobState.SUCCEEDED
