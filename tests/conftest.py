from __future__ import annotations

from pathlib import Path
from typing import Generator

import os
import subprocess
import sys
import tempfile

import pytest


ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

# Settings and the SQLAlchemy engine are created at import time (via get_settings()).
# Tests must point them at throwaway locations before any jarsmith module is imported.
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="jarsmith-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_ROOT / 'jarsmith.db'}"
os.environ["TASKS_BROKER"] = "stub"
os.environ["DEPLOY_LOCK_BACKEND"] = "local"
os.environ["REPO_CACHE_DIR"] = str(_TEST_ROOT / "repos")
os.environ["ARCHIVE_ROOT"] = str(_TEST_ROOT / "archives")

from jarsmith.config import Settings


@pytest.fixture
def settings(tmp_path: Path) -> Generator[Settings, None, None]:
    """Return a fresh Settings instance for each test.

    Tests can freely mutate fields on this object without affecting others.
    """

    yield Settings(
        _env_file=None,
        repo_cache_dir=tmp_path / "repo-cache",
        archive_root=tmp_path / "archives",
        deploy_backoff_seconds=0.0,
        deploy_backoff_max_seconds=0.0,
        deploy_lock_poll_seconds=0.01,
        deploy_timeout_seconds=5.0,
    )


@pytest.fixture
def db():
    """Drop and recreate every table so each test starts from an empty database."""

    from jarsmith.db.base import Base, engine
    import jarsmith.db.models  # noqa: F401  # pylint: disable=unused-import

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine


class GitRemote:
    """A throwaway non-bare repository used as a project's remote."""

    def __init__(self, path: Path, branch: str = "main") -> None:
        self.path = path
        self.branch = branch
        path.mkdir(parents=True, exist_ok=True)
        self.git("init", "-b", branch)
        self.git("config", "user.email", "test@example.com")
        self.git("config", "user.name", "Test User")

    @property
    def url(self) -> str:
        return self.path.as_uri()

    def git(self, *args: str) -> str:
        result = subprocess.run(
            ["git", *args],
            cwd=self.path,
            check=True,
            text=True,
            capture_output=True,
        )
        return result.stdout.strip()

    def commit(
        self,
        message: str,
        files: dict[str, str | bytes] | None = None,
        *,
        delete: tuple[str, ...] = (),
        rename: dict[str, str] | None = None,
    ) -> str:
        for old, new in (rename or {}).items():
            (self.path / new).parent.mkdir(parents=True, exist_ok=True)
            self.git("mv", old, new)
        for rel, content in (files or {}).items():
            target = self.path / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                target.write_bytes(content)
            else:
                target.write_text(content, encoding="utf-8")
            self.git("add", rel)
        for rel in delete:
            self.git("rm", "-q", rel)
        self.git("commit", "-q", "--allow-empty", "-m", message)
        return self.git("rev-parse", "HEAD")


@pytest.fixture
def git_remote(tmp_path: Path) -> GitRemote:
    return GitRemote(tmp_path / "remote")
