"""Webhook ingestion: signature check, delivery dedup, execution creation, republish."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from pydantic import ValidationError

from pullmint.models import DeploymentStatusEvent, ExecutionRecord, PullRequestEvent
from pullmint.server.bus import EventBus, publish_event
from pullmint.server.db import ExecutionStore
from pullmint.server.executions import ExecutionRepository
from pullmint.shared.errors import MalformedWebhookError, log_error
from pullmint.shared.secrets import SecretCache
from pullmint.shared.settings import PipelineSettings
from pullmint.shared.utils import generate_execution_id, repo_pr_key, verify_signature

logger = logging.getLogger(__name__)

GITHUB_SOURCE = "pullmint.github"
SIGNATURE_HEADER = "x-hub-signature-256"
EVENT_HEADER = "x-github-event"
DELIVERY_HEADER = "x-github-delivery"

ACCEPTED_EVENTS = {"pull_request", "deployment_status"}
PR_ACTIONS = {"opened", "synchronize", "reopened"}

# External deployment states; "inactive" is a deactivation and is dropped.
DEPLOYMENT_STATE_MAP: dict[str, str | None] = {
    "success": "deployed",
    "failure": "failed",
    "error": "failed",
    "inactive": None,
}


@dataclass(frozen=True)
class WebhookResponse:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


def map_deployment_state(state: str) -> str | None:
    return DEPLOYMENT_STATE_MAP.get(state, "deploying")


class WebhookGateway:
    def __init__(
        self,
        settings: PipelineSettings,
        executions: ExecutionRepository,
        bus: EventBus,
        secrets: SecretCache,
    ) -> None:
        self.settings = settings
        self.executions = executions
        self.bus = bus
        self.secrets = secrets

    @property
    def store(self) -> ExecutionStore:
        return self.executions.store

    def handle(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookResponse:
        normalized = {str(name).lower(): str(value) for name, value in headers.items()}
        event_type = normalized.get(EVENT_HEADER, "")
        delivery_id = ""
        claimed = False
        try:
            signature = normalized.get(SIGNATURE_HEADER)
            if not signature:
                logger.warning("Rejected webhook without signature")
                return WebhookResponse(401, {"error": "Invalid signature"})
            secret = self.secrets.get_secret(self.settings.webhook_secret_id)
            if not verify_signature(raw_body, signature, secret):
                logger.warning("Rejected webhook with invalid signature")
                return WebhookResponse(401, {"error": "Invalid signature"})

            if event_type not in ACCEPTED_EVENTS:
                logger.info("Ignoring event type: %s", event_type or "<missing>")
                return WebhookResponse(200, {"message": "Event type ignored"})

            delivery_id = normalized.get(DELIVERY_HEADER, "").strip()
            if not delivery_id:
                logger.warning("Rejected %s webhook without delivery id", event_type)
                return WebhookResponse(400, {"error": "Missing delivery ID"})

            payload = _parse_payload(raw_body)

            if not self.executions.claim_delivery(delivery_id):
                logger.info("Duplicate delivery: %s", delivery_id)
                return WebhookResponse(200, {"message": "Already processed"})
            claimed = True

            if event_type == "pull_request":
                return self._handle_pull_request(payload, delivery_id)
            return self._handle_deployment_status(payload, delivery_id)
        except MalformedWebhookError as exc:
            if claimed:
                self.executions.release_delivery(delivery_id)
            logger.warning("Malformed %s webhook %s: %s", event_type, delivery_id, exc)
            return WebhookResponse(400, {"error": str(exc)})
        except Exception as exc:
            if claimed:
                # Let the sender's retry of this delivery get past dedup.
                try:
                    self.executions.release_delivery(delivery_id)
                except Exception as release_exc:
                    log_error(release_exc, {"context": "webhook-receiver", "deliveryId": delivery_id})
            log_error(
                exc,
                {"context": "webhook-receiver", "eventType": event_type, "deliveryId": delivery_id},
            )
            return WebhookResponse(500, {"error": "Internal server error"})

    def _handle_pull_request(self, payload: dict[str, Any], delivery_id: str) -> WebhookResponse:
        action = str(payload.get("action", ""))
        if action not in PR_ACTIONS:
            logger.info("Ignoring PR action: %s", action or "<missing>")
            return WebhookResponse(200, {"message": "PR action ignored"})

        event = _pull_request_event(payload)
        record = ExecutionRecord(
            execution_id=event.execution_id,
            repo_full_name=event.repo_full_name,
            repo_pr_key=repo_pr_key(event.repo_full_name, event.pr_number),
            pr_number=event.pr_number,
            head_sha=event.head_sha,
            base_sha=event.base_sha,
            author=event.author,
            title=event.title,
            org_id=event.org_id,
        )
        if not self.executions.create_execution(record):
            logger.info("Execution %s already exists; republishing", event.execution_id)

        publish_event(
            self.bus,
            self.settings.event_bus_name,
            GITHUB_SOURCE,
            f"pr.{action}",
            event.to_payload(),
        )
        self.store.append_audit_event(
            "webhook_accepted",
            {"deliveryId": delivery_id, "executionId": event.execution_id, "action": action},
        )
        logger.info(
            "Published pr.%s for PR #%s in %s", action, event.pr_number, event.repo_full_name
        )
        return WebhookResponse(
            202, {"message": "Event accepted", "executionId": event.execution_id}
        )

    def _handle_deployment_status(
        self, payload: dict[str, Any], delivery_id: str
    ) -> WebhookResponse:
        event = _deployment_status_event(payload)
        if event is None:
            return WebhookResponse(200, {"message": "Deployment status ignored"})

        publish_event(
            self.bus,
            self.settings.event_bus_name,
            GITHUB_SOURCE,
            "deployment.status",
            event.to_payload(),
        )
        self.store.append_audit_event(
            "deployment_status_accepted",
            {
                "deliveryId": delivery_id,
                "executionId": event.execution_id,
                "deploymentStatus": event.deployment_status,
            },
        )
        return WebhookResponse(
            202, {"message": "Deployment status accepted", "executionId": event.execution_id}
        )


def _parse_payload(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedWebhookError("Body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedWebhookError("Body must be a JSON object")
    return payload


def _pull_request_event(payload: dict[str, Any]) -> PullRequestEvent:
    try:
        pull_request = payload["pull_request"]
        repository = payload["repository"]
        repo_full_name = str(repository["full_name"])
        pr_number = int(pull_request["number"])
        head_sha = str(pull_request["head"]["sha"])
        return PullRequestEvent(
            execution_id=generate_execution_id(repo_full_name, pr_number, head_sha),
            pr_number=pr_number,
            repo_full_name=repo_full_name,
            head_sha=head_sha,
            base_sha=str((pull_request.get("base") or {}).get("sha", "")),
            author=str((pull_request.get("user") or {}).get("login", "unknown")),
            title=str(pull_request.get("title", "")),
            org_id=f"org_{(repository.get('owner') or {}).get('id', '')}",
        )
    except (AttributeError, KeyError, TypeError, ValueError, ValidationError) as exc:
        raise MalformedWebhookError(f"Invalid pull_request payload: {exc}") from exc


def _deployment_status_event(payload: dict[str, Any]) -> DeploymentStatusEvent | None:
    try:
        deployment = payload["deployment"]
        status = payload["deployment_status"]
        state = str(status["state"])
        repository = payload.get("repository") or {}

        attached = deployment.get("payload") if isinstance(deployment.get("payload"), dict) else {}
        execution_id = attached.get("executionId")
        pr_number = attached.get("prNumber")
        if not execution_id or not pr_number:
            logger.info("Deployment status missing executionId or prNumber, ignoring")
            return None

        deployment_status = map_deployment_state(state)
        if deployment_status is None:
            logger.info("Deployment %s is inactive, ignoring", deployment.get("id"))
            return None

        owner_id = (repository.get("owner") or {}).get("id", "")
        return DeploymentStatusEvent(
            execution_id=str(execution_id),
            pr_number=int(pr_number),
            repo_full_name=str(attached.get("repoFullName") or repository.get("full_name", "")),
            head_sha=str(deployment.get("sha", "")),
            base_sha=str(attached.get("baseSha") or ""),
            author=str(attached.get("author") or "unknown"),
            title=str(attached.get("title") or "Deployment update"),
            org_id=str(attached.get("orgId") or f"org_{owner_id}"),
            deployment_environment=str(deployment.get("environment") or "unknown"),
            deployment_strategy=attached.get("deploymentStrategy") or "deployment",
            deployment_status=deployment_status,
            message=(status.get("description") or None),
        )
    except (AttributeError, KeyError, TypeError, ValueError, ValidationError) as exc:
        raise MalformedWebhookError(f"Invalid deployment_status payload: {exc}") from exc
