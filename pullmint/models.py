"""Execution record and bus event contracts.

Attribute names are snake_case; the persisted item and every bus payload use
the camelCase aliases, so ``model_dump(by_alias=True)`` is the wire shape.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ExecutionStatus = Literal["pending", "analyzing", "completed", "failed", "deploying", "deployed"]
DeploymentStatus = Literal["deploying", "deployed", "failed"]
DeploymentStrategy = Literal["eventbridge", "label", "deployment"]
Severity = Literal["critical", "high", "medium", "low", "info"]
FindingType = Literal["architecture", "security", "performance", "style"]

TERMINAL_STATUSES = {"deployed", "failed"}
TERMINAL_DEPLOYMENT_STATUSES = {"deployed", "failed"}

# Self-transitions are always allowed so redelivered events stay idempotent.
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"analyzing", "failed"},
    "analyzing": {"completed", "failed"},
    "completed": {"deploying", "failed"},
    "deploying": {"deployed", "failed"},
    "deployed": set(),
    # Redelivered analysis of a failed execution is the only way out of failed.
    "failed": {"analyzing"},
}


def can_transition(current: str | None, target: str) -> bool:
    if current is None:
        return False
    return target == current or target in ALLOWED_TRANSITIONS.get(current, set())


def source_statuses(target: str) -> set[str]:
    """Every status from which ``target`` is reachable."""

    return {status for status in ALLOWED_TRANSITIONS if can_transition(status, target)}


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class Finding(CamelModel):
    type: FindingType = "architecture"
    severity: Severity = "info"
    title: str = Field(min_length=1)
    description: str = ""
    file: str | None = None
    line: int | None = None
    suggestion: str | None = None


class PullRequestIdentity(CamelModel):
    pr_number: int = Field(ge=1)
    repo_full_name: str = Field(min_length=3)
    head_sha: str = Field(min_length=7)
    base_sha: str = ""
    author: str = "unknown"
    title: str = ""
    org_id: str = ""


class PullRequestEvent(PullRequestIdentity):
    """Detail of ``pr.opened`` / ``pr.synchronize`` / ``pr.reopened``."""

    execution_id: str = Field(min_length=1)


class AnalysisMetadata(CamelModel):
    processing_time: int = 0
    tokens_used: int = 0
    cached: bool = False


class AnalysisCompleteEvent(PullRequestEvent):
    agent_type: str = "architecture"
    findings: list[Finding] = Field(default_factory=list)
    risk_score: int = Field(ge=0, le=100)
    tests_passed: bool | None = None
    metadata: AnalysisMetadata = Field(default_factory=AnalysisMetadata)


class DeploymentApprovedEvent(PullRequestEvent):
    risk_score: int = Field(default=0, ge=0, le=100)
    deployment_environment: str = Field(min_length=1)
    deployment_strategy: DeploymentStrategy = "eventbridge"


class DeploymentStatusEvent(PullRequestEvent):
    deployment_environment: str = Field(min_length=1)
    deployment_status: DeploymentStatus
    deployment_strategy: DeploymentStrategy = "deployment"
    message: str | None = None


class ExecutionRecord(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    execution_id: str = Field(min_length=1)
    entity_type: str = "execution"
    repo_full_name: str
    repo_pr_key: str
    pr_number: int
    head_sha: str
    base_sha: str = ""
    author: str = ""
    title: str = ""
    org_id: str = ""
    status: ExecutionStatus = "pending"
    risk_score: int | None = Field(default=None, ge=0, le=100)
    findings: list[Finding] = Field(default_factory=list)
    error: str | None = None
    deployment_status: DeploymentStatus | None = None
    deployment_environment: str | None = None
    deployment_strategy: DeploymentStrategy | None = None
    deployment_id: int | None = None
    deployment_approved_at: int | None = None
    deployment_started_at: int | None = None
    deployment_completed_at: int | None = None
    deployment_message: str | None = None
    timestamp: int = 0
    updated_at: int = 0
    ttl: int | None = None

    def pull_request_event(self) -> PullRequestEvent:
        return PullRequestEvent(
            execution_id=self.execution_id,
            pr_number=self.pr_number,
            repo_full_name=self.repo_full_name,
            head_sha=self.head_sha,
            base_sha=self.base_sha,
            author=self.author or "unknown",
            title=self.title,
            org_id=self.org_id,
        )
