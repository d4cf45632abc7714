"""Thin httpx wrapper used by the deployment transports.

Every failure leaves this module as :class:`HttpCallError`, tagged so callers
can tell an unreachable server from a slow one or from an explicit refusal.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Callable, Mapping

import httpx

__all__ = ["HttpCallError", "HttpClient"]

_FLOOR_TIMEOUT = 0.1
_ERROR_BODY_LIMIT = 2048


class HttpCallError(RuntimeError):
    """An HTTP exchange failed.

    ``status_code`` is set when the server answered with 4xx/5xx.
    ``connect_failed`` means the request never reached the server and
    ``timed_out`` means it did but no answer arrived in time.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        timed_out: bool = False,
        connect_failed: bool = False,
    ) -> None:
        self.message = str(message)
        self.status_code = None if status_code is None else int(status_code)
        self.timed_out = bool(timed_out)
        self.connect_failed = bool(connect_failed)
        suffix = "" if self.status_code is None else f" (status={self.status_code})"
        super().__init__(self.message + suffix)


def _error_body(response: httpx.Response) -> str:
    try:
        body = (response.text or "").strip()
    except (UnicodeDecodeError, httpx.ResponseNotRead):
        return ""
    if len(body) > _ERROR_BODY_LIMIT:
        body = body[: _ERROR_BODY_LIMIT - 3].rstrip() + "..."
    return body


def _status_error(response: httpx.Response) -> HttpCallError:
    return HttpCallError(_error_body(response) or "HTTP request failed", status_code=response.status_code)


def _transport_error(exc: httpx.RequestError) -> HttpCallError:
    if isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout)):
        return HttpCallError(f"Connection failed: {exc}", connect_failed=True)
    if isinstance(exc, httpx.TimeoutException):
        return HttpCallError(f"HTTP request timed out: {exc}", timed_out=True)
    return HttpCallError(f"HTTP request failed: {exc}", connect_failed=isinstance(exc, httpx.NetworkError))


def _target(url_or_path: str) -> str:
    target = (url_or_path or "").strip()
    if not target:
        raise ValueError("url_or_path must be non-empty.")
    return target


class HttpClient:
    """Sync client with shared defaults.

    A fresh ``httpx.Client`` serves each call unless ``reuse_connections`` is
    set, in which case one pooled client lives until :meth:`close` (or the end
    of a ``with`` block).
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout_seconds: float = 10.0,
        user_agent: str | None = None,
        headers: Mapping[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
        reuse_connections: bool = False,
    ) -> None:
        self.base_url = base_url.rstrip("/") + "/" if base_url else None
        self.timeout_seconds = max(_FLOOR_TIMEOUT, float(timeout_seconds))
        self.headers = dict(headers or {})
        if user_agent:
            self.headers.setdefault("User-Agent", user_agent)
        self.transport = transport
        self.reuse_connections = bool(reuse_connections)
        self._client: httpx.Client | None = None

    def __enter__(self) -> "HttpClient":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _new_client(self) -> httpx.Client:
        options: dict[str, Any] = {
            "timeout": self.timeout_seconds,
            "follow_redirects": True,
            "headers": self.headers,
        }
        if self.base_url:
            options["base_url"] = self.base_url
        if self.transport is not None:
            options["transport"] = self.transport
        return httpx.Client(**options)

    @contextmanager
    def _session(self) -> Iterator[httpx.Client]:
        if not self.reuse_connections:
            with self._new_client() as client:
                yield client
            return
        if self._client is None:
            self._client = self._new_client()
        yield self._client

    def _timeout(self, override: float | None) -> float:
        if override is None:
            return self.timeout_seconds
        return max(_FLOOR_TIMEOUT, float(override))

    def request(
        self,
        method: str,
        url_or_path: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        content: bytes | None = None,
        json_body: Any | None = None,
        auth: tuple[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> httpx.Response:
        """Send one request; 4xx/5xx answers raise :class:`HttpCallError`."""

        target = _target(url_or_path)
        try:
            with self._session() as client:
                response = client.request(
                    (method or "GET").upper(),
                    target,
                    params=dict(params) if params else None,
                    headers=dict(headers) if headers else None,
                    content=content,
                    json=json_body,
                    auth=auth,
                    timeout=self._timeout(timeout_seconds),
                )
        except httpx.RequestError as exc:
            raise _transport_error(exc) from exc
        if response.is_error:
            raise _status_error(response)
        return response

    def stream_lines(
        self,
        method: str,
        url_or_path: str,
        *,
        on_line: Callable[[str], None],
        headers: Mapping[str, str] | None = None,
        content: bytes | None = None,
        auth: tuple[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> tuple[int, int]:
        """Send a request and pass each non-blank response line to ``on_line``.

        Returns ``(status_code, line_count)``. An error status is raised
        before any line is emitted.
        """

        target = _target(url_or_path)
        emitted = 0
        try:
            with self._session() as client, client.stream(
                (method or "POST").upper(),
                target,
                headers=dict(headers) if headers else None,
                content=content,
                auth=auth,
                timeout=self._timeout(timeout_seconds),
            ) as response:
                if response.is_error:
                    response.read()
                    raise _status_error(response)
                for line in response.iter_lines():
                    text = line.rstrip()
                    if text:
                        on_line(text)
                        emitted += 1
                status = response.status_code
        except httpx.RequestError as exc:
            raise _transport_error(exc) from exc
        return int(status), emitted
