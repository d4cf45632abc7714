from __future__ import annotations

"""Push built archives to target environments."""

from dataclasses import dataclass
from typing import Callable, Mapping

from loguru import logger

from jarsmith.config import Settings, get_settings
from jarsmith.core.collaborators import ArchiveTransport, DeployResult, EnvironmentInfo
from jarsmith.core.errors import ConnectionFailed, DeployRejected, ProductionGuardViolation
from jarsmith.core.retry import deploy_retrying
from jarsmith.core.types import DeploymentChannel, JobStrategy

log = logger.bind(module="pipeline.deploy")

__all__ = [
    "DeployConfirmation",
    "Deployer",
    "check_production_guard",
]


@dataclass(slots=True, frozen=True)
class DeployConfirmation:
    """What the requester explicitly confirmed for a production deploy."""

    confirm_production: bool = False
    confirmed_strategy: JobStrategy | None = None
    confirmed_override_digest: str | None = None


def check_production_guard(
    environment: EnvironmentInfo,
    *,
    strategy: JobStrategy,
    override_digest: str | None,
    confirmation: DeployConfirmation,
) -> None:
    """Raise :class:`ProductionGuardViolation` unless the deploy was confirmed.

    ``override_digest`` is None when the job did not apply overrides; the
    confirmed digest is only compared when it is set.
    """

    if not environment.is_production:
        return
    if not confirmation.confirm_production:
        raise ProductionGuardViolation(
            f"Environment {environment.name or environment.environment_id!r} is production; "
            "the deployment must be confirmed explicitly.",
        )
    if confirmation.confirmed_strategy is not strategy:
        confirmed = confirmation.confirmed_strategy.value if confirmation.confirmed_strategy else "none"
        raise ProductionGuardViolation(
            f"Confirmed strategy {confirmed!r} does not match job strategy {strategy.value!r}.",
        )
    if override_digest is not None and confirmation.confirmed_override_digest != override_digest:
        raise ProductionGuardViolation(
            "Confirmed override set does not match the overrides applied to this job "
            f"(expected digest {override_digest[:12]}).",
        )


class Deployer:
    """Run the production guard, then deploy through the channel's transport.

    Only :class:`ConnectionFailed` is retried; every other error surfaces on
    first occurrence.
    """

    def __init__(
        self,
        transports: Mapping[DeploymentChannel, ArchiveTransport],
        *,
        settings: Settings | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.transports = dict(transports)
        self._sleep = sleep

    def deploy(
        self,
        *,
        archive_path: str,
        environment: EnvironmentInfo,
        version: str,
        strategy: JobStrategy,
        override_digest: str | None,
        confirmation: DeployConfirmation,
        emit: Callable[[str], None],
    ) -> DeployResult:
        check_production_guard(
            environment,
            strategy=strategy,
            override_digest=override_digest,
            confirmation=confirmation,
        )
        transport = self.transports.get(environment.deployment_channel)
        if transport is None:
            raise DeployRejected(
                f"Deployment channel {environment.deployment_channel.value!r} is not supported.",
            )

        def _on_retry(attempt: int, exc: BaseException | None, delay: float | None) -> None:
            wait = f" in {delay:.1f}s" if delay is not None else ""
            emit(f"Attempt {attempt} failed: {exc}. Retrying{wait}")

        retrying = deploy_retrying(
            max_attempts=self.settings.deploy_max_attempts,
            backoff_seconds=self.settings.deploy_backoff_seconds,
            backoff_max_seconds=self.settings.deploy_backoff_max_seconds,
            retry_on=(ConnectionFailed,),
            log=log,
            operation=f"Deploy to {environment.environment_id}",
            on_retry=_on_retry,
            sleep=self._sleep,
        )

        result: DeployResult | None = None
        for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                emit(
                    f"Deploying {version} to {environment.name or environment.environment_id} "
                    f"via {environment.deployment_channel.value} (attempt {number})",
                )
                result = transport.deploy(
                    archive_path=archive_path,
                    environment=environment,
                    version=version,
                    on_status=emit,
                )
        if result is None:
            raise DeployRejected(f"The {environment.deployment_channel.value} transport returned no result.")
        if not result.ok:
            raise DeployRejected(result.message or "The server reported a failed deployment.")
        emit(result.message)
        log.info("Deployed {} to {}: {}", version, environment.environment_id, result.message)
        return result
