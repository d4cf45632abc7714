from __future__ import annotations

"""Archive transports for the supported deployment channels.

``http`` posts the archive to a deploy endpoint on the target host and streams
the response body line by line. ``wlst`` runs the environment's WebLogic
scripting tool against a generated deploy script and streams its output.
Both map their failures onto the deploy error kinds.
"""

import os
import subprocess
import tempfile
import threading
from pathlib import Path
from time import monotonic
from typing import Mapping

import httpx
from loguru import logger

from jarsmith.config import Settings, get_settings
from jarsmith.core.collaborators import ArchiveTransport, DeployResult, EnvironmentInfo, StatusSink
from jarsmith.core.errors import ConnectionFailed, DeployRejected, DeployTimeout
from jarsmith.core.types import DeploymentChannel
from jarsmith.net.http import HttpCallError, HttpClient

log = logger.bind(module="pipeline.transports")

__all__ = [
    "HttpArchiveTransport",
    "WLST_DEPLOY_SCRIPT",
    "WlstTransport",
    "build_transports",
]

# Statuses where retrying later can succeed without changing the archive.
_RETRYABLE_STATUSES = frozenset({401, 403, 502, 503, 504})

_WLST_CONNECTION_MARKERS = (
    "connection refused",
    "unable to connect",
    "authentication denied",
    "error occurred while performing connect",
    "no route to host",
    "connection timed out",
)

WLST_DEPLOY_SCRIPT = """\
import os
connect(os.environ['JARSMITH_WLS_USER'], os.environ['JARSMITH_WLS_PASSWORD'], os.environ['JARSMITH_WLS_URL'])
try:
    deploy(os.environ['JARSMITH_APP_NAME'], os.environ['JARSMITH_ARCHIVE'], upload='true')
    print('Deployed ' + os.environ['JARSMITH_APP_NAME'] + ' version ' + os.environ['JARSMITH_VERSION'])
finally:
    disconnect()
"""


def _host_port(environment: EnvironmentInfo) -> str:
    if environment.port:
        return f"{environment.host}:{int(environment.port)}"
    return environment.host


def _application_name(archive: Path, version: str) -> str:
    """Strip the ``-<version>-<sha12>`` suffix from an archive file name."""
    suffix_len = len(version) + 14
    stem = archive.stem
    if len(stem) > suffix_len and stem[-suffix_len:].startswith(f"-{version}-"):
        return stem[:-suffix_len]
    return stem


class HttpArchiveTransport:
    """POST archive bytes to ``http://host:port<DEPLOY_HTTP_PATH>``."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.path = self.settings.deploy_http_path
        self.timeout_seconds = float(self.settings.deploy_timeout_seconds)
        self.transport = transport

    def deploy(
        self,
        *,
        archive_path: str,
        environment: EnvironmentInfo,
        version: str,
        on_status: StatusSink,
    ) -> DeployResult:
        url = f"http://{_host_port(environment)}{self.path}"
        archive = Path(archive_path)
        payload = archive.read_bytes()
        headers = {
            "Content-Type": "application/java-archive",
            "X-Archive-Name": archive.name,
            "X-Archive-Version": version,
        }
        auth = (environment.username, environment.password or "") if environment.username else None

        on_status(f"Uploading {archive.name} ({len(payload)} bytes) to {url}")
        client = HttpClient(
            timeout_seconds=self.timeout_seconds,
            user_agent="jarsmith-deployer",
            transport=self.transport,
        )
        try:
            status, lines = client.stream_lines(
                "POST",
                url,
                on_line=on_status,
                headers=headers,
                content=payload,
                auth=auth,
            )
        except HttpCallError as exc:
            raise self._map_error(exc, url) from exc
        return DeployResult(ok=True, message=f"{url} accepted {archive.name} (HTTP {status})", lines=lines)

    @staticmethod
    def _map_error(exc: HttpCallError, url: str) -> Exception:
        if exc.timed_out:
            return DeployTimeout(f"{url} did not finish the deployment in time: {exc.message}")
        if exc.status_code is None or exc.connect_failed:
            return ConnectionFailed(f"Cannot reach {url}: {exc.message}")
        if exc.status_code in _RETRYABLE_STATUSES:
            return ConnectionFailed(f"{url} answered HTTP {exc.status_code}: {exc.message}")
        return DeployRejected(f"{url} rejected the archive with HTTP {exc.status_code}: {exc.message}")


class WlstTransport:
    """Deploy through the WebLogic scripting tool.

    Credentials travel in the child's environment only; the generated script
    and the command line never contain them.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.default_tool = self.settings.deploy_wlst_bin
        self.timeout_seconds = float(self.settings.deploy_timeout_seconds)

    def deploy(
        self,
        *,
        archive_path: str,
        environment: EnvironmentInfo,
        version: str,
        on_status: StatusSink,
    ) -> DeployResult:
        tool = (environment.wlst_tool_path or self.default_tool or "").strip()
        if not tool:
            raise DeployRejected(f"No WLST tool configured for environment {environment.environment_id!r}.")

        archive = Path(archive_path)
        child_env = self._child_env(environment, archive=archive, version=version)
        with tempfile.TemporaryDirectory(prefix="jarsmith-wlst-") as tmp:
            script = Path(tmp) / "deploy.py"
            script.write_text(WLST_DEPLOY_SCRIPT, encoding="utf-8")
            command = [tool, str(script)]
            on_status(f"Running WLST deploy of {archive.name} against t3://{_host_port(environment)}")
            return self._run(command, child_env, on_status)

    @staticmethod
    def _child_env(environment: EnvironmentInfo, *, archive: Path, version: str) -> Mapping[str, str]:
        env = os.environ.copy()
        env.update(
            {
                "JARSMITH_WLS_URL": f"t3://{_host_port(environment)}",
                "JARSMITH_WLS_USER": environment.username or "",
                "JARSMITH_WLS_PASSWORD": environment.password or "",
                "JARSMITH_APP_NAME": _application_name(archive, version),
                "JARSMITH_ARCHIVE": str(archive),
                "JARSMITH_VERSION": version,
            },
        )
        return env

    def _run(self, command: list[str], env: Mapping[str, str], on_status: StatusSink) -> DeployResult:
        start = monotonic()
        log.debug("Running WLST command: {}", command)
        try:
            process = subprocess.Popen(
                command,
                env=dict(env),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except OSError as exc:
            raise DeployRejected(f"Cannot start WLST tool {command[0]!r}: {exc}") from exc

        timed_out = threading.Event()

        def _kill() -> None:
            timed_out.set()
            process.kill()

        watchdog = threading.Timer(self.timeout_seconds, _kill)
        watchdog.daemon = True
        watchdog.start()
        tail: list[str] = []
        count = 0
        try:
            if process.stdout is None:
                raise DeployRejected("WLST tool started without an output pipe.")
            for raw in process.stdout:
                line = raw.rstrip()
                if not line:
                    continue
                on_status(line)
                count += 1
                tail = (tail + [line])[-20:]
            returncode = process.wait()
        finally:
            watchdog.cancel()
            if process.poll() is None:
                process.kill()
                process.wait()

        duration = monotonic() - start
        log.debug("WLST finished (exit_code={}, duration={:.2f}s)", returncode, duration)
        if timed_out.is_set():
            raise DeployTimeout(f"WLST deploy did not finish within {self.timeout_seconds:.0f}s.")
        if returncode != 0:
            summary = " | ".join(tail[-3:]) or "no output"
            lowered = "\n".join(tail).lower()
            if any(marker in lowered for marker in _WLST_CONNECTION_MARKERS):
                raise ConnectionFailed(f"WLST could not connect (exit {returncode}): {summary}")
            raise DeployRejected(f"WLST deploy failed with exit code {returncode}: {summary}")
        return DeployResult(ok=True, message=f"WLST deploy finished in {duration:.1f}s", lines=count)


def build_transports(settings: Settings | None = None) -> dict[DeploymentChannel, ArchiveTransport]:
    settings = settings or get_settings()
    return {
        DeploymentChannel.HTTP: HttpArchiveTransport(settings),
        DeploymentChannel.WLST: WlstTransport(settings),
    }
