"""Applies deployment status events to the execution record."""

from __future__ import annotations

import logging

from pullmint.models import TERMINAL_DEPLOYMENT_STATUSES, DeploymentStatusEvent
from pullmint.server.bus import BusEvent
from pullmint.server.comments import build_deployment_comment
from pullmint.server.executions import ExecutionRepository
from pullmint.server.github_connector import GitHubClientCache


logger = logging.getLogger(__name__)


class StatusReconciler:
    def __init__(self, executions: ExecutionRepository, github: GitHubClientCache | None = None) -> None:
        self.executions = executions
        self.github = github

    def handle_event(self, event: BusEvent) -> None:
        self.handle(DeploymentStatusEvent.model_validate(event.detail))

    def handle(self, event: DeploymentStatusEvent) -> bool:
        applied = self.executions.apply_deployment_status(event)
        if not applied:
            return False
        logger.info(
            "Execution %s deployment status is now %s",
            event.execution_id,
            event.deployment_status,
        )
        if event.deployment_status in TERMINAL_DEPLOYMENT_STATUSES:
            self._notify(event)
        return True

    def _notify(self, event: DeploymentStatusEvent) -> None:
        if self.github is None:
            return
        if not self.executions.claim_deployment_notice(event.execution_id):
            return
        try:
            client = self.github.get(event.repo_full_name)
            client.create_comment(
                event.repo_full_name, event.pr_number, build_deployment_comment(event)
            )
        except Exception as exc:
            logger.warning(
                "Failed to post deployment comment for %s: %s", event.execution_id, exc
            )
