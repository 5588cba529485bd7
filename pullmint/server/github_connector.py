"""GitHub collaborator contract, error types, and the per-owner client cache."""

from __future__ import annotations

import threading
from typing import Any, Callable, Protocol

from pullmint.shared.settings import PipelineSettings
from pullmint.shared.secrets import SecretCache


class GitHubAPIError(RuntimeError):
    def __init__(self, message: str, status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code


class RetryableGitHubError(GitHubAPIError):
    def __init__(
        self,
        message: str,
        reason_code: str,
        retry_after_s: float | None = None,
        status_code: int = 0,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.reason_code = reason_code
        self.retry_after_s = retry_after_s


class GitHubConnector(Protocol):
    """Calls the pipeline makes against GitHub for one repository owner."""

    def create_comment(self, repo: str, number: int, body: str) -> dict[str, Any]: ...

    def create_review(self, repo: str, number: int, event: str, body: str) -> dict[str, Any]: ...

    def add_labels(self, repo: str, number: int, labels: list[str]) -> list[dict[str, Any]]: ...

    def create_deployment(
        self,
        repo: str,
        ref: str,
        environment: str,
        payload: dict[str, Any],
        description: str,
    ) -> dict[str, Any]: ...

    def create_deployment_status(
        self, repo: str, deployment_id: int, state: str, description: str
    ) -> dict[str, Any]: ...

    def get_pull_request_diff(self, repo: str, number: int) -> str: ...

    def list_commit_checks(self, repo: str, ref: str) -> list[dict[str, str]]: ...


ConnectorFactory = Callable[[str], GitHubConnector]


class GitHubClientCache:
    """Lazily built connectors reused across handler invocations.

    One connector per repository owner (a GitHub App installation owns every
    repository of an account). ``reset`` drops them so the next call rebuilds
    with fresh credentials.
    """

    def __init__(self, factory: ConnectorFactory) -> None:
        self.factory = factory
        self._clients: dict[str, GitHubConnector] = {}
        self._lock = threading.Lock()

    def get(self, repo_full_name: str) -> GitHubConnector:
        owner = repo_full_name.split("/", 1)[0]
        with self._lock:
            client = self._clients.get(owner)
            if client is None:
                client = self.factory(repo_full_name)
                self._clients[owner] = client
            return client

    def reset(self) -> None:
        with self._lock:
            self._clients.clear()


def build_client_cache(settings: PipelineSettings, secrets: SecretCache) -> GitHubClientCache:
    if settings.github_connector == "api":
        from pullmint.server.github_auth import load_github_auth
        from pullmint.server.github_connector_api import GitHubAPIConnector

        def _api_factory(_repo_full_name: str) -> GitHubConnector:
            auth = load_github_auth(secrets, settings.github_token_secret_id)
            return GitHubAPIConnector(auth=auth, base_url=settings.github_api_url)

        return GitHubClientCache(_api_factory)

    from pullmint.server.github_connector_inmemory import InMemoryGitHubConnector

    shared = InMemoryGitHubConnector()
    return GitHubClientCache(lambda _repo_full_name: shared)


__all__ = [
    "GitHubAPIError",
    "GitHubClientCache",
    "GitHubConnector",
    "RetryableGitHubError",
    "build_client_cache",
]
