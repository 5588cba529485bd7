from __future__ import annotations

import json
from typing import Any

import pytest

from pullmint.server.bus import InMemoryEventBus, PublishResult
from pullmint.server.db import ExecutionStore
from pullmint.server.executions import ExecutionRepository
from pullmint.server.webhooks import WebhookGateway, map_deployment_state
from pullmint.shared.secrets import EnvSecretProvider, SecretCache
from pullmint.shared.settings import PipelineSettings
from pullmint.shared.utils import compute_signature

SECRET = "test-webhook-secret"
EXECUTION_ID = "octo/widgets#42#abcdef1"


def _pr_payload(action: str = "opened", head_sha: str = "abcdef1234567890") -> dict[str, Any]:
    return {
        "action": action,
        "number": 42,
        "pull_request": {
            "number": 42,
            "title": "Add caching layer",
            "head": {"sha": head_sha},
            "base": {"sha": "0123456789abcdef"},
            "user": {"login": "octocat"},
        },
        "repository": {"full_name": "octo/widgets", "owner": {"id": 99}},
    }


def _deployment_payload(state: str, attached: dict[str, Any] | None = None) -> dict[str, Any]:
    if attached is None:
        attached = {
            "executionId": EXECUTION_ID,
            "prNumber": 42,
            "repoFullName": "octo/widgets",
            "deploymentStrategy": "deployment",
            "baseSha": "0123456789abcdef",
            "author": "octocat",
            "title": "Add caching layer",
            "orgId": "org_99",
        }
    return {
        "deployment": {
            "id": 1001,
            "sha": "abcdef1234567890",
            "environment": "staging",
            "payload": attached,
        },
        "deployment_status": {"state": state, "description": f"state {state}"},
        "repository": {"full_name": "octo/widgets", "owner": {"id": 99}},
    }


def _request(
    payload: Any,
    event: str = "pull_request",
    delivery: str | None = "delivery-1",
    secret: str = SECRET,
) -> tuple[bytes, dict[str, str]]:
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    headers = {
        "X-Hub-Signature-256": compute_signature(body, secret),
        "X-GitHub-Event": event,
    }
    if delivery is not None:
        headers["X-GitHub-Delivery"] = delivery
    return body, headers


@pytest.fixture
def gateway(
    settings: PipelineSettings,
    repository: ExecutionRepository,
    bus: InMemoryEventBus,
    secrets: SecretCache,
) -> WebhookGateway:
    return WebhookGateway(settings, repository, bus, secrets)


class ForbiddenCollaborator:
    def __getattr__(self, name: str) -> Any:
        raise AssertionError(f"unexpected call to {name}")


def test_missing_signature_is_rejected_without_store_calls(
    settings: PipelineSettings, secrets: SecretCache
) -> None:
    gateway = WebhookGateway(settings, ForbiddenCollaborator(), ForbiddenCollaborator(), secrets)
    body, headers = _request(_pr_payload())
    del headers["X-Hub-Signature-256"]

    response = gateway.handle(body, headers)

    assert response.status_code == 401


def test_wrong_signature_is_rejected(gateway: WebhookGateway, store: ExecutionStore, bus: InMemoryEventBus) -> None:
    body, headers = _request(_pr_payload(), secret="not-the-secret")

    assert gateway.handle(body, headers).status_code == 401
    assert store.get("dedup", "delivery-1") is None
    assert bus.published == []


def test_pull_request_opened_creates_execution_and_publishes(
    gateway: WebhookGateway,
    store: ExecutionStore,
    repository: ExecutionRepository,
    bus: InMemoryEventBus,
) -> None:
    body, headers = _request(_pr_payload())

    response = gateway.handle(body, headers)

    assert response.status_code == 202
    assert response.body["executionId"] == EXECUTION_ID
    assert store.get("dedup", "delivery-1") is not None
    record = repository.get_execution(EXECUTION_ID)
    assert record.status == "pending"
    assert record.author == "octocat"
    assert record.org_id == "org_99"
    assert len(bus.published) == 1
    event = bus.published[0]
    assert event.source == "pullmint.github"
    assert event.detail_type == "pr.opened"
    assert event.detail["executionId"] == EXECUTION_ID
    assert event.detail["headSha"] == "abcdef1234567890"
    assert [e["event_type"] for e in store.list_audit_events()] == ["webhook_accepted"]


def test_header_lookup_is_case_insensitive(gateway: WebhookGateway) -> None:
    body, headers = _request(_pr_payload())
    lowered = {name.lower(): value for name, value in headers.items()}

    assert gateway.handle(body, lowered).status_code == 202


def test_duplicate_delivery_short_circuits(
    gateway: WebhookGateway, repository: ExecutionRepository, bus: InMemoryEventBus
) -> None:
    body, headers = _request(_pr_payload())

    assert gateway.handle(body, headers).status_code == 202
    response = gateway.handle(body, headers)

    assert response.status_code == 200
    assert response.body == {"message": "Already processed"}
    assert len(bus.published) == 1
    assert len(repository.list_by_pr("octo/widgets#42")) == 1


def test_new_delivery_for_same_commit_reuses_execution(
    gateway: WebhookGateway, repository: ExecutionRepository, bus: InMemoryEventBus
) -> None:
    gateway.handle(*_request(_pr_payload(), delivery="delivery-1"))
    response = gateway.handle(*_request(_pr_payload("synchronize"), delivery="delivery-2"))

    assert response.status_code == 202
    assert len(repository.list_by_pr("octo/widgets#42")) == 1
    assert [event.detail_type for event in bus.published] == ["pr.opened", "pr.synchronize"]


def test_unrelated_event_type_is_ignored_before_dedup(
    gateway: WebhookGateway, store: ExecutionStore, bus: InMemoryEventBus
) -> None:
    response = gateway.handle(*_request({"zen": "hi"}, event="ping"))

    assert response.status_code == 200
    assert response.body == {"message": "Event type ignored"}
    assert store.get("dedup", "delivery-1") is None
    assert bus.published == []


def test_ignored_pr_action_still_consumes_the_delivery(
    gateway: WebhookGateway, store: ExecutionStore, bus: InMemoryEventBus
) -> None:
    response = gateway.handle(*_request(_pr_payload("closed")))

    assert response.status_code == 200
    assert store.get("dedup", "delivery-1") is not None
    assert bus.published == []


def test_missing_delivery_id_is_malformed(gateway: WebhookGateway) -> None:
    response = gateway.handle(*_request(_pr_payload(), delivery=None))

    assert response.status_code == 400
    assert response.body == {"error": "Missing delivery ID"}


def test_invalid_json_is_malformed(gateway: WebhookGateway, store: ExecutionStore) -> None:
    response = gateway.handle(*_request(b"{not json"))

    assert response.status_code == 400
    assert store.get("dedup", "delivery-1") is None


def test_malformed_pull_request_releases_the_delivery(
    gateway: WebhookGateway, store: ExecutionStore
) -> None:
    payload = _pr_payload()
    del payload["pull_request"]["head"]

    response = gateway.handle(*_request(payload))

    assert response.status_code == 400
    assert store.get("dedup", "delivery-1") is None


def _reshaped(payload: dict[str, Any], path: tuple[str, ...], value: Any) -> dict[str, Any]:
    target = payload
    for key in path[:-1]:
        target = target[key]
    target[path[-1]] = value
    return payload


@pytest.mark.parametrize(
    ("event", "payload"),
    [
        ("pull_request", _reshaped(_pr_payload(), ("pull_request", "base"), "main")),
        ("pull_request", _reshaped(_pr_payload(), ("pull_request", "user"), ["octocat"])),
        ("pull_request", _reshaped(_pr_payload(), ("repository", "owner"), "octo")),
        ("pull_request", _reshaped(_pr_payload(), ("pull_request",), "not-an-object")),
        ("deployment_status", _reshaped(_deployment_payload("success"), ("deployment",), "not-an-object")),
        ("deployment_status", _reshaped(_deployment_payload("success"), ("deployment_status",), "success")),
        ("deployment_status", _reshaped(_deployment_payload("success"), ("repository",), "octo/widgets")),
        (
            "deployment_status",
            _reshaped(_deployment_payload("success"), ("repository", "owner"), 99),
        ),
    ],
)
def test_wrongly_shaped_payloads_are_malformed(
    gateway: WebhookGateway,
    store: ExecutionStore,
    bus: InMemoryEventBus,
    event: str,
    payload: dict[str, Any],
) -> None:
    response = gateway.handle(*_request(payload, event=event))

    assert response.status_code == 400
    assert store.get("dedup", "delivery-1") is None
    assert bus.published == []


def test_missing_signature_is_rejected_before_fetching_the_secret(
    settings: PipelineSettings, repository: ExecutionRepository, bus: InMemoryEventBus
) -> None:
    gateway = WebhookGateway(settings, repository, bus, SecretCache(EnvSecretProvider({})))
    body, headers = _request(_pr_payload())
    del headers["X-Hub-Signature-256"]

    assert gateway.handle(body, headers).status_code == 401
    # A signed request still needs the secret.
    assert gateway.handle(*_request(_pr_payload())).status_code == 500


class RejectingBus:
    def put_events(self, entries: list[dict[str, Any]]) -> PublishResult:
        return PublishResult(
            failed_entry_count=len(entries),
            entries=[{"ErrorCode": "InternalFailure", "ErrorMessage": "bus down"}],
        )


def test_publish_failure_returns_500_and_allows_retry(
    settings: PipelineSettings,
    repository: ExecutionRepository,
    store: ExecutionStore,
    secrets: SecretCache,
    bus: InMemoryEventBus,
) -> None:
    failing = WebhookGateway(settings, repository, RejectingBus(), secrets)
    body, headers = _request(_pr_payload())

    response = failing.handle(body, headers)

    assert response.status_code == 500
    assert response.body == {"error": "Internal server error"}
    assert store.get("dedup", "delivery-1") is None
    assert repository.get_execution(EXECUTION_ID).status == "pending"

    retried = WebhookGateway(settings, repository, bus, secrets).handle(body, headers)
    assert retried.status_code == 202
    assert len(bus.published) == 1


@pytest.mark.parametrize(
    ("state", "expected"),
    [
        ("success", "deployed"),
        ("failure", "failed"),
        ("error", "failed"),
        ("in_progress", "deploying"),
        ("queued", "deploying"),
        ("pending", "deploying"),
        ("inactive", None),
    ],
)
def test_deployment_state_mapping(state: str, expected: str | None) -> None:
    assert map_deployment_state(state) == expected


def test_deployment_status_is_republished(gateway: WebhookGateway, bus: InMemoryEventBus) -> None:
    response = gateway.handle(*_request(_deployment_payload("success"), event="deployment_status"))

    assert response.status_code == 202
    event = bus.published[0]
    assert event.detail_type == "deployment.status"
    assert event.source == "pullmint.github"
    assert event.detail["executionId"] == EXECUTION_ID
    assert event.detail["deploymentStatus"] == "deployed"
    assert event.detail["deploymentEnvironment"] == "staging"
    assert event.detail["message"] == "state success"


@pytest.mark.parametrize(
    "payload",
    [
        _deployment_payload("inactive"),
        _deployment_payload("success", attached={}),
        _deployment_payload("success", attached={"prNumber": 42}),
    ],
)
def test_foreign_or_inactive_deployments_are_dropped(
    gateway: WebhookGateway, bus: InMemoryEventBus, payload: dict[str, Any]
) -> None:
    response = gateway.handle(*_request(payload, event="deployment_status"))

    assert response.status_code == 200
    assert bus.published == []
