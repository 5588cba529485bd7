from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any

import pytest
import requests

from pullmint.models import DeploymentApprovedEvent, ExecutionRecord
from pullmint.server.bus import InMemoryEventBus, PublishResult
from pullmint.server.deployment_executor import DeploymentExecutor
from pullmint.server.executions import ExecutionRepository
from pullmint.shared.errors import (
    ConfigurationError,
    DeploymentTransportUnavailable,
    EventPublishError,
    StoreError,
)
from pullmint.shared.secrets import SecretCache
from pullmint.shared.settings import PipelineSettings

EXECUTION_ID = "octo/widgets#42#abcdef1"
HOOK_URL = "https://deploy.example.com/hook"
ROLLBACK_URL = "https://deploy.example.com/rollback"


@dataclass
class FakeResponse:
    status_code: int


class FakeSession:
    def __init__(self, outcomes: list[Any]) -> None:
        self.outcomes = outcomes
        self.calls: list[dict[str, Any]] = []

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"url": url, **kwargs})
        if not self.outcomes:
            raise RuntimeError("No fake outcome left")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome()
        return FakeResponse(outcome)


def _settings(**overrides: Any) -> PipelineSettings:
    values: dict[str, Any] = {
        "deployment_strategy": "eventbridge",
        "deployment_webhook_url": HOOK_URL,
        "deployment_rollback_url": ROLLBACK_URL,
        "deployment_webhook_token_secret_id": "deploy-token",
        "deployment_retries": 2,
    }
    values.update(overrides)
    return PipelineSettings(**values)


def _approve(repository: ExecutionRepository) -> DeploymentApprovedEvent:
    repository.create_execution(
        ExecutionRecord(
            execution_id=EXECUTION_ID,
            repo_full_name="octo/widgets",
            repo_pr_key="octo/widgets#42",
            pr_number=42,
            head_sha="abcdef1234567890",
            title="Add caching layer",
        )
    )
    repository.mark_analyzing(EXECUTION_ID)
    repository.record_analysis(EXECUTION_ID, [], 5)
    repository.approve_deployment(EXECUTION_ID, "eventbridge", "staging")
    return DeploymentApprovedEvent(
        execution_id=EXECUTION_ID,
        pr_number=42,
        repo_full_name="octo/widgets",
        head_sha="abcdef1234567890",
        base_sha="0123456789abcdef",
        author="octocat",
        title="Add caching layer",
        org_id="org_99",
        risk_score=5,
        deployment_environment="staging",
    )


def _executor(
    settings: PipelineSettings,
    repository: ExecutionRepository,
    bus: InMemoryEventBus,
    secrets: SecretCache,
    session: FakeSession,
    sleeps: list[float],
) -> DeploymentExecutor:
    return DeploymentExecutor(
        settings, repository, bus, secrets, session=session, sleep=sleeps.append
    )


def test_successful_deployment(
    repository: ExecutionRepository, bus: InMemoryEventBus, secrets: SecretCache
) -> None:
    session = FakeSession([200])
    sleeps: list[float] = []
    event = _approve(repository)

    outcome = _executor(_settings(), repository, bus, secrets, session, sleeps).handle(event)

    assert outcome.status == "deployed"
    assert outcome.attempts == 1
    assert sleeps == []
    call = session.calls[0]
    assert call["url"] == HOOK_URL
    assert call["headers"]["Authorization"] == "Bearer deploy-token-value"
    assert call["json"] == {
        "executionId": EXECUTION_ID,
        "prNumber": 42,
        "repoFullName": "octo/widgets",
        "deploymentEnvironment": "staging",
        "deploymentStrategy": "eventbridge",
        "headSha": "abcdef1234567890",
        "baseSha": "0123456789abcdef",
        "author": "octocat",
        "title": "Add caching layer",
        "orgId": "org_99",
    }
    assert call["timeout"] == 30
    record = repository.get_execution(EXECUTION_ID)
    assert record.status == "deployed"
    assert record.deployment_status == "deployed"
    assert record.deployment_completed_at is not None
    status_event = bus.published[-1]
    assert status_event.source == "pullmint.orchestrator"
    assert status_event.detail_type == "deployment.status"
    assert status_event.detail["deploymentStatus"] == "deployed"
    assert "riskScore" not in status_event.detail


def test_retry_uses_linear_backoff(
    repository: ExecutionRepository, bus: InMemoryEventBus, secrets: SecretCache
) -> None:
    session = FakeSession([500, requests.ConnectionError("reset"), 200])
    sleeps: list[float] = []

    outcome = _executor(_settings(), repository, bus, secrets, session, sleeps).handle(
        _approve(repository)
    )

    assert outcome.status == "deployed"
    assert outcome.attempts == 3
    assert sleeps == [0.5, 1.0]


def test_exhausted_retries_roll_back_once(
    repository: ExecutionRepository, bus: InMemoryEventBus, secrets: SecretCache
) -> None:
    session = FakeSession([500, 500, 500, 200])
    sleeps: list[float] = []

    outcome = _executor(_settings(), repository, bus, secrets, session, sleeps).handle(
        _approve(repository)
    )

    assert outcome.status == "failed"
    assert outcome.rollback == "succeeded"
    assert [call["url"] for call in session.calls] == [HOOK_URL, HOOK_URL, HOOK_URL, ROLLBACK_URL]
    rollback_body = session.calls[-1]["json"]
    assert rollback_body["executionId"] == EXECUTION_ID
    assert "responded with 500" in rollback_body["reason"]
    record = repository.get_execution(EXECUTION_ID)
    assert record.status == "failed"
    assert "Deployment failed after 3 attempt(s)" in record.deployment_message
    assert "Rollback succeeded" in record.deployment_message
    assert bus.published[-1].detail["deploymentStatus"] == "failed"


def test_failed_rollback_is_recorded(
    repository: ExecutionRepository, bus: InMemoryEventBus, secrets: SecretCache
) -> None:
    session = FakeSession([502, 503])
    settings = _settings(deployment_retries=0)

    outcome = _executor(settings, repository, bus, secrets, session, []).handle(_approve(repository))

    assert outcome.status == "failed"
    assert outcome.rollback == "failed"
    assert len(session.calls) == 2
    assert "Rollback failed" in repository.get_execution(EXECUTION_ID).deployment_message


def test_missing_rollback_url_skips_rollback(
    repository: ExecutionRepository, bus: InMemoryEventBus, secrets: SecretCache
) -> None:
    session = FakeSession([500, 500, 500])

    outcome = _executor(
        _settings(deployment_rollback_url=""), repository, bus, secrets, session, []
    ).handle(_approve(repository))

    assert outcome.rollback == "skipped"
    assert len(session.calls) == 3
    assert "Rollback skipped" in repository.get_execution(EXECUTION_ID).deployment_message


def test_timed_out_attempt_is_abandoned(
    repository: ExecutionRepository, bus: InMemoryEventBus, secrets: SecretCache
) -> None:
    release = threading.Event()

    def hang() -> FakeResponse:
        release.wait(5)
        return FakeResponse(200)

    session = FakeSession([hang, 200])
    settings = _settings(deployment_timeout_ms=50, deployment_retries=1)
    try:
        outcome = _executor(settings, repository, bus, secrets, session, []).handle(
            _approve(repository)
        )
    finally:
        release.set()

    assert outcome.status == "deployed"
    assert outcome.attempts == 2


def test_timeout_on_every_attempt_fails(
    repository: ExecutionRepository, bus: InMemoryEventBus, secrets: SecretCache
) -> None:
    release = threading.Event()

    def hang() -> FakeResponse:
        release.wait(5)
        return FakeResponse(200)

    session = FakeSession([hang])
    settings = _settings(deployment_timeout_ms=50, deployment_retries=0, deployment_rollback_url="")
    try:
        outcome = _executor(settings, repository, bus, secrets, session, []).handle(
            _approve(repository)
        )
    finally:
        release.set()

    assert outcome.status == "failed"
    assert "timed out after 50ms" in outcome.message


def test_missing_transport_is_fatal(
    repository: ExecutionRepository, bus: InMemoryEventBus, secrets: SecretCache
) -> None:
    session = FakeSession([requests.exceptions.InvalidSchema("No connection adapters")])
    sleeps: list[float] = []

    with pytest.raises(DeploymentTransportUnavailable):
        _executor(_settings(), repository, bus, secrets, session, sleeps).handle(_approve(repository))

    assert len(session.calls) == 1
    assert sleeps == []
    assert repository.get_execution(EXECUTION_ID).status == "failed"
    assert bus.published == []


def test_redelivered_approval_does_not_redeploy(
    repository: ExecutionRepository, bus: InMemoryEventBus, secrets: SecretCache
) -> None:
    session = FakeSession([200])
    executor = _executor(_settings(), repository, bus, secrets, session, [])
    event = _approve(repository)

    assert executor.handle(event) is not None
    assert executor.handle(event) is None
    assert len(session.calls) == 1


def test_store_failure_after_deploy_releases_the_claim(
    repository: ExecutionRepository,
    bus: InMemoryEventBus,
    secrets: SecretCache,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    session = FakeSession([200, 200])
    executor = _executor(_settings(), repository, bus, secrets, session, [])
    event = _approve(repository)
    complete = repository.complete_deployment
    calls: list[str] = []

    def flaky_complete(execution_id: str, *args: Any) -> bool:
        calls.append(execution_id)
        if len(calls) == 1:
            raise StoreError("database is locked")
        return complete(execution_id, *args)

    monkeypatch.setattr(repository, "complete_deployment", flaky_complete)

    with pytest.raises(StoreError):
        executor.handle(event)

    record = repository.get_execution(EXECUTION_ID)
    assert record.status == "deploying"
    assert record.deployment_started_at is None
    assert bus.published == []

    outcome = executor.handle(event)

    assert outcome.status == "deployed"
    assert len(session.calls) == 2
    assert repository.get_execution(EXECUTION_ID).status == "deployed"
    assert bus.published[-1].detail["deploymentStatus"] == "deployed"


def test_publish_failure_is_republished_on_redelivery(
    repository: ExecutionRepository,
    bus: InMemoryEventBus,
    secrets: SecretCache,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    session = FakeSession([200])
    executor = _executor(_settings(), repository, bus, secrets, session, [])
    event = _approve(repository)
    put_events = bus.put_events
    calls: list[int] = []

    def flaky_put_events(entries: list[dict[str, Any]]) -> PublishResult:
        calls.append(len(entries))
        if len(calls) == 1:
            return PublishResult(
                failed_entry_count=1,
                entries=[{"ErrorCode": "InternalFailure", "ErrorMessage": "bus down"}],
            )
        return put_events(entries)

    monkeypatch.setattr(bus, "put_events", flaky_put_events)

    with pytest.raises(EventPublishError):
        executor.handle(event)
    assert repository.get_execution(EXECUTION_ID).status == "deployed"

    assert executor.handle(event) is None

    assert len(session.calls) == 1
    status_event = bus.published[-1]
    assert status_event.source == "pullmint.orchestrator"
    assert status_event.detail["deploymentStatus"] == "deployed"
    assert status_event.detail["message"] == "Deployment succeeded for octo/widgets"


def test_approval_for_an_unstarted_execution_publishes_nothing(
    repository: ExecutionRepository, bus: InMemoryEventBus, secrets: SecretCache
) -> None:
    session = FakeSession([])
    event = _approve(repository)
    repository.complete_deployment(EXECUTION_ID, "failed", "staging", "eventbridge", "dispatch failed")

    assert _executor(_settings(), repository, bus, secrets, session, []).handle(event) is None

    assert session.calls == []
    assert bus.published == []


def test_configured_delay_runs_before_the_first_attempt(
    repository: ExecutionRepository, bus: InMemoryEventBus, secrets: SecretCache
) -> None:
    sleeps: list[float] = []

    _executor(_settings(deployment_delay_ms=250), repository, bus, secrets, FakeSession([200]), sleeps).handle(
        _approve(repository)
    )

    assert sleeps == [0.25]


def test_executor_requires_a_target(
    repository: ExecutionRepository, bus: InMemoryEventBus, secrets: SecretCache
) -> None:
    with pytest.raises(ConfigurationError):
        DeploymentExecutor(PipelineSettings(), repository, bus, secrets)
