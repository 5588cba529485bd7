"""Risk-gated deployment approval that fires at most once per execution."""

from __future__ import annotations

import logging
from typing import Any

from pullmint.models import AnalysisCompleteEvent, DeploymentApprovedEvent
from pullmint.server.bus import BusEvent, EventBus, publish_event
from pullmint.server.comments import build_analysis_comment
from pullmint.server.executions import ExecutionRepository
from pullmint.server.github_connector import GitHubClientCache, GitHubConnector
from pullmint.shared.settings import PipelineSettings

logger = logging.getLogger(__name__)

INTEGRATION_SOURCE = "pullmint.integration"
APPROVAL_REVIEW_BODY = "Auto-approved by Pullmint: Low risk changes detected."


class DeploymentGate:
    def __init__(
        self,
        settings: PipelineSettings,
        executions: ExecutionRepository,
        bus: EventBus,
        github: GitHubClientCache,
    ) -> None:
        self.settings = settings
        self.executions = executions
        self.bus = bus
        self.github = github

    def handle_event(self, event: BusEvent) -> None:
        self.handle(AnalysisCompleteEvent.model_validate(event.detail))

    def handle(self, event: AnalysisCompleteEvent) -> bool:
        """Returns True only for the delivery that dispatched the deployment."""

        client = self.github.get(event.repo_full_name)
        logger.info(
            "Posting results for PR #%s in %s (risk %s)",
            event.pr_number,
            event.repo_full_name,
            event.risk_score,
        )
        client.create_comment(event.repo_full_name, event.pr_number, build_analysis_comment(event))

        if event.risk_score < self.settings.auto_approve_threshold:
            self._auto_approve(client, event)

        if not self._eligible(client, event):
            return False

        strategy = self.settings.deployment_strategy
        environment = self.settings.deployment_environment
        if not self.executions.approve_deployment(event.execution_id, strategy, environment):
            logger.info("Deployment already approved for %s; skipping", event.execution_id)
            return False

        try:
            self._dispatch(client, event, strategy, environment)
        except Exception as exc:
            message = f"Deployment dispatch via {strategy} failed: {exc}"
            logger.error("%s (%s)", message, event.execution_id)
            self.executions.revert_approval(event.execution_id, message)
            raise
        self.executions.store.append_audit_event(
            "deployment_approved",
            {
                "executionId": event.execution_id,
                "riskScore": event.risk_score,
                "strategy": strategy,
                "environment": environment,
            },
        )
        return True

    def _auto_approve(self, client: GitHubConnector, event: AnalysisCompleteEvent) -> None:
        try:
            client.create_review(
                event.repo_full_name, event.pr_number, "APPROVE", APPROVAL_REVIEW_BODY
            )
            logger.info("Auto-approved PR #%s", event.pr_number)
        except Exception as exc:
            logger.warning("Failed to auto-approve PR #%s: %s", event.pr_number, exc)

    def _eligible(self, client: GitHubConnector, event: AnalysisCompleteEvent) -> bool:
        if not self.settings.deployment_enabled:
            return False
        if event.risk_score >= self.settings.deployment_risk_threshold:
            logger.info(
                "Risk %s at or above deployment threshold %s for %s",
                event.risk_score,
                self.settings.deployment_risk_threshold,
                event.execution_id,
            )
            return False
        if self.settings.require_tests and not self._checks_green(client, event):
            logger.info("Required checks not green for %s", event.head_sha)
            return False
        return True

    def _checks_green(self, client: GitHubConnector, event: AnalysisCompleteEvent) -> bool:
        if event.tests_passed is False:
            return False
        checks = client.list_commit_checks(event.repo_full_name, event.head_sha)
        required = set(self.settings.required_contexts)
        if required:
            states = {check["context"]: check["state"] for check in checks}
            return all(states.get(context) == "success" for context in required)
        return bool(checks) and all(check["state"] == "success" for check in checks)

    def _dispatch(
        self,
        client: GitHubConnector,
        event: AnalysisCompleteEvent,
        strategy: str,
        environment: str,
    ) -> None:
        if strategy == "eventbridge":
            approved = DeploymentApprovedEvent(
                **_identity(event),
                risk_score=event.risk_score,
                deployment_environment=environment,
                deployment_strategy="eventbridge",
            )
            publish_event(
                self.bus,
                self.settings.event_bus_name,
                INTEGRATION_SOURCE,
                "deployment_approved",
                approved.to_payload(),
            )
            return

        if strategy == "label":
            client.add_labels(event.repo_full_name, event.pr_number, [self.settings.deployment_label])
            return

        deployment = client.create_deployment(
            event.repo_full_name,
            ref=event.head_sha,
            environment=environment,
            payload={
                "executionId": event.execution_id,
                "prNumber": event.pr_number,
                "repoFullName": event.repo_full_name,
                "deploymentStrategy": "deployment",
                "baseSha": event.base_sha,
                "author": event.author,
                "title": event.title,
                "orgId": event.org_id,
                "riskScore": event.risk_score,
            },
            description="Pullmint auto-deploy gate",
        )
        deployment_id = int(deployment["id"])
        client.create_deployment_status(
            event.repo_full_name, deployment_id, "queued", "Queued by Pullmint"
        )
        self.executions.attach_deployment_id(event.execution_id, deployment_id)


def _identity(event: AnalysisCompleteEvent) -> dict[str, Any]:
    return {
        "execution_id": event.execution_id,
        "pr_number": event.pr_number,
        "repo_full_name": event.repo_full_name,
        "head_sha": event.head_sha,
        "base_sha": event.base_sha,
        "author": event.author,
        "title": event.title,
        "org_id": event.org_id,
    }
