"""Shared Tenacity retry helpers for deployment calls.

Only transport failures flagged as retryable are retried. This module keeps
the Tenacity configuration and a loguru-friendly before-sleep hook in one
place so every transport backs off the same way.
"""

from __future__ import annotations

from typing import Any, Callable

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

__all__ = ["deploy_retrying"]


def deploy_retrying(
    *,
    max_attempts: int,
    backoff_seconds: float,
    backoff_max_seconds: float,
    retry_on: tuple[type[BaseException], ...],
    log: Any,
    operation: str,
    on_retry: Callable[[int, BaseException | None, float | None], None] | None = None,
    sleep: Callable[[float], None] | None = None,
) -> Retrying:
    """Return a configured Tenacity `Retrying` instance for deploy attempts.

    Notes:
    - `max_attempts` maps to Tenacity's `stop_after_attempt(max_attempts)`.
    - Backoff is exponential: backoff_seconds, 2x, 4x... capped at
      `backoff_max_seconds`.
    - The last exception is re-raised unchanged once attempts run out.
    - `on_retry(attempt, exc, sleep_seconds)` is called before each sleep.
    """

    max_attempts = max(1, int(max_attempts))
    backoff_seconds = max(0.0, float(backoff_seconds))
    backoff_max_seconds = max(backoff_seconds, float(backoff_max_seconds))
    retry_on = tuple(retry_on or ())
    if not retry_on:
        raise ValueError("deploy_retrying requires at least one retryable exception type.")

    operation = (operation or "Deploy").strip() or "Deploy"

    def _before_sleep(retry_state) -> None:  # type: ignore[no-untyped-def]
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = getattr(getattr(retry_state, "next_action", None), "sleep", None)
        attempt = getattr(retry_state, "attempt_number", None)
        if delay is None:
            log.warning("{} attempt {} failed: {}. Retrying...", operation, attempt, exc)
        else:
            log.warning(
                "{} attempt {} failed: {}. Retrying in {:.1f}s",
                operation,
                attempt,
                exc,
                float(delay),
            )
        if on_retry is not None:
            on_retry(int(attempt or 0), exc, float(delay) if delay is not None else None)

    kwargs: dict[str, Any] = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=backoff_seconds, min=backoff_seconds, max=backoff_max_seconds),
        retry=retry_if_exception_type(retry_on),
        reraise=True,
        before_sleep=_before_sleep,
        **kwargs,
    )
