from __future__ import annotations

import pytest

from pullmint.server.bus import InMemoryEventBus
from pullmint.server.db import ExecutionStore
from pullmint.server.executions import ExecutionRepository
from pullmint.server.github_connector import GitHubClientCache
from pullmint.server.github_connector_inmemory import InMemoryGitHubConnector
from pullmint.shared.secrets import EnvSecretProvider, SecretCache
from pullmint.shared.settings import PipelineSettings

WEBHOOK_SECRET = "test-webhook-secret"
DEPLOY_TOKEN = "deploy-token-value"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> PipelineSettings:
    return PipelineSettings()


@pytest.fixture
def store(clock: FakeClock):
    db = ExecutionStore(":memory:", clock=clock)
    yield db
    db.close()


@pytest.fixture
def repository(store: ExecutionStore, settings: PipelineSettings) -> ExecutionRepository:
    return ExecutionRepository(store, settings)


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def secrets() -> SecretCache:
    provider = EnvSecretProvider(
        {
            "PULLMINT_SECRET_WEBHOOK_SECRET": WEBHOOK_SECRET,
            "PULLMINT_SECRET_DEPLOY_TOKEN": DEPLOY_TOKEN,
        }
    )
    return SecretCache(provider)


@pytest.fixture
def github() -> InMemoryGitHubConnector:
    return InMemoryGitHubConnector()


@pytest.fixture
def clients(github: InMemoryGitHubConnector) -> GitHubClientCache:
    return GitHubClientCache(lambda _repo_full_name: github)
