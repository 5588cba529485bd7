"""Executes approved deployments against an HTTP target with retries and rollback."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Any, Callable

import requests

from pullmint.models import TERMINAL_DEPLOYMENT_STATUSES, DeploymentApprovedEvent, DeploymentStatusEvent
from pullmint.server.bus import BusEvent, EventBus, publish_event
from pullmint.server.executions import ExecutionRepository
from pullmint.shared.errors import (
    ConfigurationError,
    DeploymentTargetError,
    DeploymentTimeoutError,
    DeploymentTransportUnavailable,
    create_structured_error,
    log_error,
)
from pullmint.shared.secrets import SecretCache
from pullmint.shared.settings import PipelineSettings

logger = logging.getLogger(__name__)

ORCHESTRATOR_SOURCE = "pullmint.orchestrator"
BACKOFF_STEP_S = 0.5

_TRANSPORT_ERRORS = (
    requests.exceptions.InvalidSchema,
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidURL,
)


@dataclass(frozen=True)
class DeploymentOutcome:
    status: str
    message: str
    attempts: int
    rollback: str = "not_needed"


class DeploymentExecutor:
    def __init__(
        self,
        settings: PipelineSettings,
        executions: ExecutionRepository,
        bus: EventBus,
        secrets: SecretCache,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not settings.deployment_webhook_url:
            raise ConfigurationError("deployment_webhook_url is required to execute deployments")
        self.settings = settings
        self.executions = executions
        self.bus = bus
        self.secrets = secrets
        self.session = session or requests.Session()
        self.sleep = sleep

    def handle_event(self, event: BusEvent) -> None:
        self.handle(DeploymentApprovedEvent.model_validate(event.detail))

    def handle(self, event: DeploymentApprovedEvent) -> DeploymentOutcome | None:
        started = self.executions.start_deployment(
            event.execution_id, event.deployment_environment, event.deployment_strategy
        )
        if not started:
            self._republish_finished(event)
            return None

        try:
            if self.settings.deployment_delay_ms > 0:
                self.sleep(self.settings.deployment_delay_ms / 1000)

            payload = build_target_payload(event)
            try:
                outcome = self._deploy(event, payload)
            except DeploymentTransportUnavailable as exc:
                self.executions.complete_deployment(
                    event.execution_id,
                    "failed",
                    event.deployment_environment,
                    event.deployment_strategy,
                    f"Deployment transport unavailable: {exc}",
                )
                raise

            self.executions.complete_deployment(
                event.execution_id,
                outcome.status,
                event.deployment_environment,
                event.deployment_strategy,
                outcome.message,
            )
        except DeploymentTransportUnavailable:
            raise
        except Exception:
            self._release(event.execution_id)
            raise

        # The status is durable from here on; a redelivery republishes it.
        self._publish_status(event, outcome.status, outcome.message)
        self.executions.store.append_audit_event(
            "deployment_finished",
            {
                "executionId": event.execution_id,
                "status": outcome.status,
                "attempts": outcome.attempts,
                "rollback": outcome.rollback,
            },
        )
        return outcome

    def _republish_finished(self, event: DeploymentApprovedEvent) -> None:
        record = self.executions.get_execution(event.execution_id)
        if (
            record is None
            or record.deployment_started_at is None
            or record.deployment_status not in TERMINAL_DEPLOYMENT_STATUSES
        ):
            logger.info("Execution %s is not deployable; dropping approval", event.execution_id)
            return
        logger.info(
            "Deployment for %s already finished as %s; republishing status",
            event.execution_id,
            record.deployment_status,
        )
        self._publish_status(event, record.deployment_status, record.deployment_message or "")

    def _release(self, execution_id: str) -> None:
        try:
            if self.executions.release_deployment(execution_id):
                logger.warning("Released deployment claim for %s after failure", execution_id)
        except Exception as exc:
            log_error(exc, {"context": "deployment-executor", "executionId": execution_id})

    def _publish_status(self, event: DeploymentApprovedEvent, status: str, message: str) -> None:
        status_event = DeploymentStatusEvent(
            **event.model_dump(exclude={"risk_score"}),
            deployment_status=status,
            message=message,
        )
        publish_event(
            self.bus,
            self.settings.event_bus_name,
            ORCHESTRATOR_SOURCE,
            "deployment.status",
            status_event.to_payload(),
        )

    def _deploy(self, event: DeploymentApprovedEvent, payload: dict[str, Any]) -> DeploymentOutcome:
        attempts = self.settings.deployment_attempts
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                self._post(self.settings.deployment_webhook_url, payload)
            except DeploymentTransportUnavailable:
                raise
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Deployment attempt %d/%d for %s failed: %s",
                    attempt,
                    attempts,
                    event.execution_id,
                    create_structured_error(exc, {"executionId": event.execution_id})["message"],
                )
                if attempt < attempts:
                    self.sleep(BACKOFF_STEP_S * attempt)
                continue
            logger.info("Deployed %s on attempt %d", event.execution_id, attempt)
            return DeploymentOutcome(
                status="deployed",
                message=f"Deployment succeeded for {event.repo_full_name}",
                attempts=attempt,
            )

        failure = f"Deployment failed after {attempts} attempt(s): {last_error}"
        rollback, rollback_message = self._rollback(event, payload, failure)
        return DeploymentOutcome(
            status="failed",
            message=f"{failure}. {rollback_message}",
            attempts=attempts,
            rollback=rollback,
        )

    def _rollback(
        self, event: DeploymentApprovedEvent, payload: dict[str, Any], reason: str
    ) -> tuple[str, str]:
        url = self.settings.deployment_rollback_url
        if not url:
            return "skipped", "Rollback skipped: no rollback URL configured"
        try:
            self._post(url, {**payload, "reason": reason})
        except Exception as exc:
            logger.error("Rollback for %s failed: %s", event.execution_id, exc)
            return "failed", f"Rollback failed: {exc}"
        logger.info("Rolled back %s", event.execution_id)
        return "succeeded", "Rollback succeeded"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        secret_id = self.settings.deployment_webhook_token_secret_id
        if secret_id:
            headers["Authorization"] = f"Bearer {self.secrets.get_secret(secret_id)}"
        return headers

    def _post(self, url: str, payload: dict[str, Any]) -> requests.Response:
        """POST under a hard deadline; a timed-out call is abandoned, not awaited."""

        timeout_s = self.settings.deployment_timeout_ms / 1000
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pullmint-deploy")
        future = pool.submit(
            self.session.post, url, json=payload, headers=self._headers(), timeout=timeout_s
        )
        try:
            response = future.result(timeout=timeout_s)
        except FuturesTimeoutError as exc:
            future.cancel()
            raise DeploymentTimeoutError(
                f"Deployment request timed out after {self.settings.deployment_timeout_ms}ms"
            ) from exc
        except _TRANSPORT_ERRORS as exc:
            raise DeploymentTransportUnavailable(f"No transport for {url}: {exc}") from exc
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        if not 200 <= response.status_code < 300:
            raise DeploymentTargetError(
                f"Deployment target responded with {response.status_code}",
                status_code=response.status_code,
            )
        return response


def build_target_payload(event: DeploymentApprovedEvent) -> dict[str, Any]:
    return {
        "executionId": event.execution_id,
        "prNumber": event.pr_number,
        "repoFullName": event.repo_full_name,
        "deploymentEnvironment": event.deployment_environment,
        "deploymentStrategy": event.deployment_strategy,
        "headSha": event.head_sha,
        "baseSha": event.base_sha,
        "author": event.author,
        "title": event.title,
        "orgId": event.org_id,
    }
