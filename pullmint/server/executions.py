"""Typed access layer over the durable store for execution, dedup and cache records."""

from __future__ import annotations

import logging
from typing import Any

from pullmint.models import (
    TERMINAL_DEPLOYMENT_STATUSES,
    DeploymentStatusEvent,
    ExecutionRecord,
    Finding,
    source_statuses,
)
from pullmint.server.db import (
    ExecutionStore,
    WriteResult,
    attribute_exists,
    attribute_in,
    attribute_not_exists,
)
from pullmint.shared.settings import PipelineSettings
from pullmint.shared.utils import calculate_ttl

logger = logging.getLogger(__name__)

EXECUTIONS = "executions"
DEDUP = "dedup"
CACHE = "cache"
UPDATED_AT = "updatedAt"


class ExecutionRepository:
    def __init__(self, store: ExecutionStore, settings: PipelineSettings) -> None:
        self.store = store
        self.settings = settings

    def now_ms(self) -> int:
        return int(self.store.clock() * 1000)

    def _ttl(self, seconds: int) -> int:
        return calculate_ttl(seconds, clock=self.store.clock)

    def _transition(self, execution_id: str, target: str, fields: dict[str, Any]) -> bool:
        result = self.store.update_conditional(
            EXECUTIONS,
            execution_id,
            {"status": target, **fields},
            attribute_in("status", source_statuses(target)),
            touch=UPDATED_AT,
        )
        if result is WriteResult.CONDITION_FAILED:
            current = self.store.get(EXECUTIONS, execution_id)
            logger.info(
                "Skipped %s -> %s for %s",
                (current or {}).get("status", "missing"),
                target,
                execution_id,
            )
            return False
        return True

    # -- dedup -----------------------------------------------------------------

    def claim_delivery(self, delivery_id: str) -> bool:
        """True for the first handler to see ``delivery_id`` inside the dedup window."""

        result = self.store.put_if_absent(
            DEDUP,
            {
                "deliveryId": delivery_id,
                "processedAt": self.now_ms(),
                "ttl": self._ttl(self.settings.dedup_ttl_seconds),
            },
        )
        return result is WriteResult.OK

    def release_delivery(self, delivery_id: str) -> None:
        self.store.delete(DEDUP, delivery_id)

    # -- executions --------------------------------------------------------------

    def create_execution(self, record: ExecutionRecord) -> bool:
        now = self.now_ms()
        record = record.model_copy(
            update={
                "status": "pending",
                "timestamp": record.timestamp or now,
                "updated_at": now,
                "ttl": record.ttl or self._ttl(self.settings.execution_ttl_seconds),
            }
        )
        result = self.store.put_if_absent(EXECUTIONS, record.to_payload())
        return result is WriteResult.OK

    def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        item = self.store.get(EXECUTIONS, execution_id)
        if item is None:
            return None
        return ExecutionRecord.model_validate(item)

    def mark_analyzing(self, execution_id: str) -> bool:
        return self._transition(execution_id, "analyzing", {"error": None})

    def record_analysis(
        self, execution_id: str, findings: list[Finding], risk_score: int
    ) -> bool:
        return self._transition(
            execution_id,
            "completed",
            {
                "findings": [finding.to_payload() for finding in findings],
                "riskScore": risk_score,
            },
        )

    def mark_failed(self, execution_id: str, error: str) -> bool:
        return self._transition(execution_id, "failed", {"error": error})

    def approve_deployment(self, execution_id: str, strategy: str, environment: str) -> bool:
        """Set ``deploymentApprovedAt`` once; every later caller gets False."""

        now = self.now_ms()
        result = self.store.update_conditional(
            EXECUTIONS,
            execution_id,
            {
                "status": "deploying",
                "deploymentStatus": "deploying",
                "deploymentStrategy": strategy,
                "deploymentEnvironment": environment,
                "deploymentApprovedAt": now,
                "deploymentNotifiedAt": None,
            },
            [
                attribute_in("status", source_statuses("deploying")),
                attribute_not_exists("deploymentApprovedAt"),
            ],
            touch=UPDATED_AT,
        )
        return result is WriteResult.OK

    def claim_deployment_notice(self, execution_id: str) -> bool:
        """First terminal status report for a deployment wins the PR comment."""

        result = self.store.update_conditional(
            EXECUTIONS,
            execution_id,
            {"deploymentNotifiedAt": self.now_ms()},
            [attribute_exists("executionId"), attribute_not_exists("deploymentNotifiedAt")],
        )
        return result is WriteResult.OK

    def revert_approval(self, execution_id: str, message: str) -> None:
        """Dispatch failed after approval; the approval timestamp stays to block re-dispatch."""

        self.store.update(
            EXECUTIONS,
            execution_id,
            {
                "status": "failed",
                "deploymentStatus": "failed",
                "deploymentMessage": message,
                "deploymentCompletedAt": self.now_ms(),
            },
            touch=UPDATED_AT,
        )

    def attach_deployment_id(self, execution_id: str, deployment_id: int) -> None:
        self.store.update(
            EXECUTIONS, execution_id, {"deploymentId": deployment_id}, touch=UPDATED_AT
        )

    def start_deployment(self, execution_id: str, environment: str, strategy: str) -> bool:
        """Claim the executor run; a redelivered approval finds ``deploymentStartedAt`` set."""

        result = self.store.update_conditional(
            EXECUTIONS,
            execution_id,
            {
                "status": "deploying",
                "deploymentStatus": "deploying",
                "deploymentEnvironment": environment,
                "deploymentStrategy": strategy,
                "deploymentStartedAt": self.now_ms(),
            },
            [
                attribute_in("status", source_statuses("deploying")),
                attribute_not_exists("deploymentStartedAt"),
            ],
            touch=UPDATED_AT,
        )
        if result is WriteResult.CONDITION_FAILED:
            logger.info("Deployment for %s already started or not deployable", execution_id)
            return False
        return True

    def release_deployment(self, execution_id: str) -> bool:
        """Drop the executor claim of a deployment that never reached a terminal status."""

        result = self.store.update_conditional(
            EXECUTIONS,
            execution_id,
            {"deploymentStartedAt": None},
            [attribute_in("deploymentStatus", ["deploying"])],
            touch=UPDATED_AT,
        )
        return result is WriteResult.OK

    def complete_deployment(
        self,
        execution_id: str,
        status: str,
        environment: str,
        strategy: str,
        message: str,
    ) -> bool:
        return self._transition(
            execution_id,
            status,
            {
                "deploymentStatus": status,
                "deploymentEnvironment": environment,
                "deploymentStrategy": strategy,
                "deploymentMessage": message,
                "deploymentCompletedAt": self.now_ms(),
            },
        )

    def apply_deployment_status(self, event: DeploymentStatusEvent) -> bool:
        fields: dict[str, Any] = {
            "deploymentStatus": event.deployment_status,
            "deploymentEnvironment": event.deployment_environment,
            "deploymentStrategy": event.deployment_strategy,
        }
        if event.message is not None:
            fields["deploymentMessage"] = event.message
        if event.deployment_status in TERMINAL_DEPLOYMENT_STATUSES:
            fields["deploymentCompletedAt"] = self.now_ms()
        else:
            fields["deploymentStartedAt"] = self.now_ms()
        return self._transition(event.execution_id, event.deployment_status, fields)

    def list_by_repo(self, repo_full_name: str, status: str = "", limit: int | None = None) -> list[ExecutionRecord]:
        filters = {"status": status} if status else None
        items = self.store.query(EXECUTIONS, "repo", repo_full_name, filters=filters, limit=limit)
        return [ExecutionRecord.model_validate(item) for item in items]

    def list_by_pr(self, repo_pr_key: str) -> list[ExecutionRecord]:
        items = self.store.query(EXECUTIONS, "repo_pr", repo_pr_key)
        return [ExecutionRecord.model_validate(item) for item in items]

    def list_recent(self, limit: int = 50, status: str = "") -> list[ExecutionRecord]:
        filters = {"status": status} if status else None
        items = self.store.query(EXECUTIONS, "recent", filters=filters, limit=limit)
        return [ExecutionRecord.model_validate(item) for item in items]

    # -- analysis cache ----------------------------------------------------------

    def get_cached_analysis(self, cache_key: str) -> tuple[list[Finding], int] | None:
        item = self.store.get(CACHE, cache_key)
        if item is None:
            return None
        findings = [Finding.model_validate(finding) for finding in item.get("findings", [])]
        return findings, int(item.get("riskScore", 0))

    def put_cached_analysis(self, cache_key: str, findings: list[Finding], risk_score: int) -> None:
        self.store.put(
            CACHE,
            {
                "cacheKey": cache_key,
                "findings": [finding.to_payload() for finding in findings],
                "riskScore": risk_score,
                "ttl": self._ttl(self.settings.cache_ttl_seconds),
            },
        )
