from __future__ import annotations

import json
import zipfile

import pytest

from jarsmith.core.errors import BuildFailed, EmptyChangeSet
from jarsmith.core.pipeline.archive import MANIFEST_JSON_PATH, MANIFEST_MF_PATH, ArchiveBuilder
from jarsmith.core.pipeline.changes import FileChange
from jarsmith.core.types import ChangeKind, ChangeSource, JobStrategy


def _changes() -> list[FileChange]:
    return [
        FileChange(path="src/b.txt", kind=ChangeKind.MODIFIED, content=b"bravo"),
        FileChange(path="src/a.txt", kind=ChangeKind.ADDED, content=b"alpha"),
        FileChange(path="src/gone.txt", kind=ChangeKind.DELETED),
        FileChange(
            path="conf/env.proxy",
            kind=ChangeKind.MODIFIED,
            content=b"<uat/>",
            source=ChangeSource.OVERRIDE,
            override_id="7",
        ),
    ]


def test_archive_layout_and_manifest(tmp_path) -> None:
    builder = ArchiveBuilder(tmp_path)
    artifact = builder.build(_changes(), project_id="billing", version="1.4.0", strategy=JobStrategy.DIFF)

    assert artifact.location.parent == (tmp_path / "billing" / "1.4.0").resolve()
    assert artifact.location.name == f"billing-1.4.0-{artifact.sha256[:12]}.jar"
    assert artifact.file_count == 3
    assert artifact.size == artifact.location.stat().st_size

    with zipfile.ZipFile(artifact.location) as archive:
        names = archive.namelist()
        assert names == [MANIFEST_MF_PATH, MANIFEST_JSON_PATH, "conf/env.proxy", "src/a.txt", "src/b.txt"]
        assert archive.read("conf/env.proxy") == b"<uat/>"
        assert b"Implementation-Version: 1.4.0" in archive.read(MANIFEST_MF_PATH)
        manifest = json.loads(archive.read(MANIFEST_JSON_PATH))
        infos = archive.infolist()

    assert manifest == artifact.manifest
    assert manifest["strategy"] == "diff"
    entries = {entry["path"]: entry for entry in manifest["entries"]}
    assert entries["src/gone.txt"] == {
        "path": "src/gone.txt",
        "kind": "deleted",
        "source": "repository",
        "sha256": None,
        "size": 0,
    }
    assert entries["conf/env.proxy"]["source"] == "override"
    assert all(info.date_time == (1980, 1, 1, 0, 0, 0) for info in infos)


def test_identical_inputs_yield_identical_bytes(tmp_path) -> None:
    first = ArchiveBuilder(tmp_path / "one").build(
        _changes(), project_id="billing", version="1.4.0", strategy=JobStrategy.DIFF
    )
    second = ArchiveBuilder(tmp_path / "two").build(
        list(reversed(_changes())), project_id="billing", version="1.4.0", strategy=JobStrategy.DIFF
    )
    assert first.sha256 == second.sha256
    assert first.location.read_bytes() == second.location.read_bytes()


def test_rebuilding_reuses_content_addressed_file(tmp_path) -> None:
    builder = ArchiveBuilder(tmp_path)
    first = builder.build(_changes(), project_id="billing", version="1.4.0", strategy=JobStrategy.DIFF)
    second = builder.build(_changes(), project_id="billing", version="1.4.0", strategy=JobStrategy.DIFF)
    assert not first.reused
    assert second.reused
    assert second.location == first.location
    assert [p.name for p in first.location.parent.iterdir()] == [first.location.name]


def test_empty_diff_requires_allow_empty(tmp_path) -> None:
    builder = ArchiveBuilder(tmp_path)
    with pytest.raises(EmptyChangeSet):
        builder.build([], project_id="billing", version="1.0", strategy=JobStrategy.DIFF)

    artifact = builder.build([], project_id="billing", version="1.0", strategy=JobStrategy.DIFF, allow_empty=True)
    assert artifact.file_count == 0
    with zipfile.ZipFile(artifact.location) as archive:
        assert archive.namelist() == [MANIFEST_MF_PATH, MANIFEST_JSON_PATH]


def test_full_strategy_packages_empty_tree(tmp_path) -> None:
    artifact = ArchiveBuilder(tmp_path).build([], project_id="billing", version="1.0", strategy=JobStrategy.FULL)
    assert artifact.file_count == 0


def test_invalid_version_and_reserved_paths_fail_the_build(tmp_path) -> None:
    builder = ArchiveBuilder(tmp_path)
    with pytest.raises(BuildFailed):
        builder.build(_changes(), project_id="billing", version="../escape", strategy=JobStrategy.DIFF)

    clash = [FileChange(path=MANIFEST_MF_PATH, kind=ChangeKind.ADDED, content=b"Manifest-Version: 9")]
    with pytest.raises(BuildFailed):
        builder.build(clash, project_id="billing", version="1.0", strategy=JobStrategy.DIFF)


def test_filesystem_errors_are_wrapped_as_build_failed(tmp_path) -> None:
    blocker = tmp_path / "root"
    blocker.write_text("not a directory", encoding="utf-8")
    with pytest.raises(BuildFailed):
        ArchiveBuilder(blocker).build(_changes(), project_id="billing", version="1.0", strategy=JobStrategy.DIFF)
