from __future__ import annotations

"""Deterministic archive packaging.

Archives are plain zip files with the ``.jar`` layout. Every entry gets the
same timestamp, permissions and creator system, entries are written in path
order and the embedded manifest carries no job or wall-clock data, so equal
inputs always produce byte-identical files. The file name embeds the sha256 of
the archive, which makes storage content addressed.
"""

import contextlib
import hashlib
import json
import os
import uuid
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

from loguru import logger

from jarsmith.core.errors import BuildFailed, EmptyChangeSet
from jarsmith.core.pipeline.changes import FileChange
from jarsmith.core.types import ChangeKind, JobStrategy
from jarsmith.naming import archive_filename, is_valid_version, safe_slug

log = logger.bind(module="pipeline.archive")

__all__ = [
    "ArchiveArtifact",
    "ArchiveBuilder",
    "MANIFEST_JSON_PATH",
    "MANIFEST_MF_PATH",
    "build_manifest",
]

MANIFEST_MF_PATH = "META-INF/MANIFEST.MF"
MANIFEST_JSON_PATH = "META-INF/jarsmith-manifest.json"
MANIFEST_FORMAT = 1

_FIXED_DATE_TIME = (1980, 1, 1, 0, 0, 0)
_UNIX_CREATOR = 3
_FILE_MODE = 0o644 << 16
_RESERVED_PATHS = frozenset({MANIFEST_MF_PATH, MANIFEST_JSON_PATH})


@dataclass(slots=True, frozen=True)
class ArchiveArtifact:
    location: Path
    sha256: str
    size: int
    file_count: int
    manifest: dict[str, Any] = field(repr=False)
    reused: bool = False


def build_manifest(
    changes: Sequence[FileChange],
    *,
    project_id: str,
    version: str,
    strategy: JobStrategy,
) -> dict[str, Any]:
    """Return the JSON manifest embedded in the archive."""

    entries: list[dict[str, Any]] = []
    for change in sorted(changes, key=lambda item: item.path):
        entries.append(
            {
                "path": change.path,
                "kind": change.kind.value,
                "source": change.source.value,
                "sha256": change.sha256,
                "size": change.size,
            },
        )
    return {
        "format": MANIFEST_FORMAT,
        "project": project_id,
        "version": version,
        "strategy": strategy.value,
        "entries": entries,
    }


def _manifest_mf(project_id: str, version: str) -> bytes:
    lines = [
        "Manifest-Version: 1.0",
        "Created-By: Jarsmith",
        f"Implementation-Title: {project_id}",
        f"Implementation-Version: {version}",
        "",
        "",
    ]
    return "\r\n".join(lines).encode("utf-8")


def _zip_info(name: str) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(filename=name, date_time=_FIXED_DATE_TIME)
    info.create_system = _UNIX_CREATOR
    info.external_attr = _FILE_MODE
    info.compress_type = zipfile.ZIP_DEFLATED
    return info


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ArchiveBuilder:
    """Package change sets into versioned, content-addressed archives."""

    def __init__(self, root: Path | str, *, compression_level: int = 6) -> None:
        self.root = Path(root).expanduser().resolve()
        self.compression_level = min(9, max(0, int(compression_level)))

    def build(
        self,
        changes: Sequence[FileChange],
        *,
        project_id: str,
        version: str,
        strategy: JobStrategy,
        allow_empty: bool = False,
    ) -> ArchiveArtifact:
        if not is_valid_version(version):
            raise BuildFailed(f"Version {version!r} is not a valid archive version.")
        if not changes and strategy is JobStrategy.DIFF and not allow_empty:
            raise EmptyChangeSet("No files were selected for the archive.")

        packaged = [
            change
            for change in sorted(changes, key=lambda item: item.path)
            if change.kind is not ChangeKind.DELETED
        ]
        for change in packaged:
            if change.path in _RESERVED_PATHS:
                raise BuildFailed(f"{change.path} is generated by the archive builder and cannot be packaged.")

        manifest = build_manifest(changes, project_id=project_id, version=version, strategy=strategy)
        target_dir = self.root / safe_slug(project_id) / version
        tmp_path = target_dir / f".tmp-{uuid.uuid4().hex}.jar"
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            self._write(tmp_path, packaged, manifest, project_id=project_id, version=version)
            sha256 = _sha256_file(tmp_path)
            final_path = target_dir / archive_filename(project_id, version, sha256)
            reused = final_path.exists()
            if reused:
                tmp_path.unlink()
            else:
                os.replace(tmp_path, final_path)
            size = final_path.stat().st_size
        except (OSError, ValueError, zipfile.BadZipFile) as exc:
            with contextlib.suppress(OSError):
                tmp_path.unlink(missing_ok=True)
            raise BuildFailed(f"Packaging failed: {exc}") from exc

        log.info(
            "{} archive {} ({} files, {} bytes)",
            "Reused" if reused else "Built",
            final_path,
            len(packaged),
            size,
        )
        return ArchiveArtifact(
            location=final_path,
            sha256=sha256,
            size=size,
            file_count=len(packaged),
            manifest=manifest,
            reused=reused,
        )

    def _write(
        self,
        path: Path,
        packaged: Sequence[FileChange],
        manifest: dict[str, Any],
        *,
        project_id: str,
        version: str,
    ) -> None:
        manifest_json = json.dumps(manifest, sort_keys=True, indent=2).encode("utf-8") + b"\n"
        with zipfile.ZipFile(path, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
            self._add(archive, MANIFEST_MF_PATH, _manifest_mf(project_id, version))
            self._add(archive, MANIFEST_JSON_PATH, manifest_json)
            for change in packaged:
                self._add(archive, change.path, change.content or b"")

    def _add(self, archive: zipfile.ZipFile, name: str, data: bytes) -> None:
        archive.writestr(_zip_info(name), data, compresslevel=self.compression_level)
