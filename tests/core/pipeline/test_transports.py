from __future__ import annotations

import base64
import stat
from pathlib import Path

import httpx
import pytest

from jarsmith.core.collaborators import EnvironmentInfo
from jarsmith.core.errors import ConnectionFailed, DeployRejected, DeployTimeout
from jarsmith.core.pipeline.transports import HttpArchiveTransport, WlstTransport, build_transports
from jarsmith.core.types import DeploymentChannel

ENV = EnvironmentInfo(
    environment_id="uat",
    name="UAT",
    host="uat.local",
    port=7001,
    username="deploy",
    password="s3cret",
)


@pytest.fixture
def archive(tmp_path: Path) -> Path:
    path = tmp_path / "billing-1.0-0123456789ab.jar"
    path.write_bytes(b"PK\x05\x06" + b"\x00" * 18)
    return path


def _http(settings, handler) -> HttpArchiveTransport:
    return HttpArchiveTransport(settings, transport=httpx.MockTransport(handler))


def test_http_transport_posts_archive_with_basic_auth_and_streams_lines(settings, archive) -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = request.content
        seen["version"] = request.headers.get("x-archive-version")
        return httpx.Response(200, content=b"staging\n\nactivating\ndone\n", request=request)

    lines: list[str] = []
    result = _http(settings, handler).deploy(archive_path=str(archive), environment=ENV, version="1.0", on_status=lines.append)

    assert seen["url"] == "http://uat.local:7001/deploy"
    assert seen["auth"] == "Basic " + base64.b64encode(b"deploy:s3cret").decode()
    assert seen["body"] == archive.read_bytes()
    assert seen["version"] == "1.0"
    assert lines[1:] == ["staging", "activating", "done"]
    assert result.ok and result.lines == 3


@pytest.mark.parametrize("status", [401, 403, 502, 503, 504])
def test_http_transport_maps_transient_statuses_to_connection_failed(settings, archive, status) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, content=b"nope", request=request)

    with pytest.raises(ConnectionFailed):
        _http(settings, handler).deploy(archive_path=str(archive), environment=ENV, version="1.0", on_status=lambda _l: None)


@pytest.mark.parametrize("status", [400, 409, 500])
def test_http_transport_maps_other_errors_to_rejected(settings, archive, status) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, content=b"invalid archive", request=request)

    with pytest.raises(DeployRejected, match="invalid archive"):
        _http(settings, handler).deploy(archive_path=str(archive), environment=ENV, version="1.0", on_status=lambda _l: None)


def test_http_transport_maps_connect_errors_and_timeouts(settings, archive) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    def stall(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(ConnectionFailed):
        _http(settings, refuse).deploy(archive_path=str(archive), environment=ENV, version="1.0", on_status=lambda _l: None)
    with pytest.raises(DeployTimeout):
        _http(settings, stall).deploy(archive_path=str(archive), environment=ENV, version="1.0", on_status=lambda _l: None)


def _fake_wlst(tmp_path: Path, body: str) -> str:
    tool = tmp_path / "wlst.sh"
    tool.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    tool.chmod(tool.stat().st_mode | stat.S_IXUSR)
    return str(tool)


def _wlst_env(tool: str) -> EnvironmentInfo:
    return EnvironmentInfo(
        environment_id="wl",
        name="WL",
        host="wl.local",
        port=7001,
        username="weblogic",
        password="s3cret",
        deployment_channel=DeploymentChannel.WLST,
        wlst_tool_path=tool,
    )


def test_wlst_transport_passes_credentials_through_environment_only(settings, archive, tmp_path) -> None:
    tool = _fake_wlst(
        tmp_path,
        'echo "args: $*"\n'
        'echo "url: $JARSMITH_WLS_URL user: $JARSMITH_WLS_USER app: $JARSMITH_APP_NAME"\n'
        'test "$JARSMITH_WLS_PASSWORD" = "s3cret" && echo "password ok"\n',
    )
    lines: list[str] = []
    result = WlstTransport(settings).deploy(
        archive_path=str(archive),
        environment=_wlst_env(tool),
        version="1.0",
        on_status=lines.append,
    )

    assert result.ok
    assert "s3cret" not in lines[1]
    assert lines[1].startswith("args: ") and lines[1].endswith("deploy.py")
    assert "url: t3://wl.local:7001 user: weblogic app: billing" in lines
    assert "password ok" in lines


def test_wlst_transport_maps_connection_markers(settings, archive, tmp_path) -> None:
    tool = _fake_wlst(tmp_path, 'echo "Connection refused by t3://wl.local:7001"\nexit 1\n')
    with pytest.raises(ConnectionFailed):
        WlstTransport(settings).deploy(archive_path=str(archive), environment=_wlst_env(tool), version="1.0", on_status=lambda _l: None)


def test_wlst_transport_maps_other_failures_to_rejected(settings, archive, tmp_path) -> None:
    tool = _fake_wlst(tmp_path, 'echo "weblogic.Deployer: invalid descriptor"\nexit 2\n')
    with pytest.raises(DeployRejected, match="exit code 2"):
        WlstTransport(settings).deploy(archive_path=str(archive), environment=_wlst_env(tool), version="1.0", on_status=lambda _l: None)


def test_wlst_transport_kills_slow_tool(settings, archive, tmp_path) -> None:
    settings.deploy_timeout_seconds = 0.5
    tool = _fake_wlst(tmp_path, "exec sleep 10\n")
    with pytest.raises(DeployTimeout):
        WlstTransport(settings).deploy(archive_path=str(archive), environment=_wlst_env(tool), version="1.0", on_status=lambda _l: None)


def test_wlst_transport_rejects_missing_tool(settings, archive, tmp_path) -> None:
    with pytest.raises(DeployRejected, match="Cannot start"):
        WlstTransport(settings).deploy(
            archive_path=str(archive),
            environment=_wlst_env(str(tmp_path / "absent.sh")),
            version="1.0",
            on_status=lambda _l: None,
        )


def test_build_transports_registers_both_channels(settings) -> None:
    transports = build_transports(settings)
    assert isinstance(transports[DeploymentChannel.HTTP], HttpArchiveTransport)
    assert isinstance(transports[DeploymentChannel.WLST], WlstTransport)
