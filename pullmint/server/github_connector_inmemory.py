"""In-memory GitHub connector for deterministic tests and local runs."""

from __future__ import annotations

from typing import Any

from pullmint.server.github_connector import GitHubAPIError


class InMemoryGitHubConnector:
    """Records every write; ``fail_operations`` makes named calls raise."""

    def __init__(self, fail_operations: set[str] | None = None) -> None:
        self.fail_operations = set(fail_operations or set())
        self.comments: list[dict[str, Any]] = []
        self.reviews: list[dict[str, Any]] = []
        self.labels: list[dict[str, Any]] = []
        self.deployments: list[dict[str, Any]] = []
        self.deployment_statuses: list[dict[str, Any]] = []
        self.diffs: dict[tuple[str, int], str] = {}
        self.checks: dict[tuple[str, str], list[dict[str, str]]] = {}
        self._next_deployment_id = 1000

    def _guard(self, operation: str) -> None:
        if operation in self.fail_operations:
            raise GitHubAPIError(f"Simulated failure for {operation}", status_code=500)

    def create_comment(self, repo: str, number: int, body: str) -> dict[str, Any]:
        self._guard("create_comment")
        comment = {"id": len(self.comments) + 1, "repo": repo, "number": number, "body": body}
        self.comments.append(comment)
        return comment

    def create_review(self, repo: str, number: int, event: str, body: str) -> dict[str, Any]:
        self._guard("create_review")
        review = {"id": len(self.reviews) + 1, "repo": repo, "number": number, "event": event, "body": body}
        self.reviews.append(review)
        return review

    def add_labels(self, repo: str, number: int, labels: list[str]) -> list[dict[str, Any]]:
        self._guard("add_labels")
        self.labels.append({"repo": repo, "number": number, "labels": list(labels)})
        return [{"name": label} for label in labels]

    def create_deployment(
        self,
        repo: str,
        ref: str,
        environment: str,
        payload: dict[str, Any],
        description: str,
    ) -> dict[str, Any]:
        self._guard("create_deployment")
        self._next_deployment_id += 1
        deployment = {
            "id": self._next_deployment_id,
            "repo": repo,
            "ref": ref,
            "environment": environment,
            "payload": dict(payload),
            "description": description,
        }
        self.deployments.append(deployment)
        return deployment

    def create_deployment_status(
        self, repo: str, deployment_id: int, state: str, description: str
    ) -> dict[str, Any]:
        self._guard("create_deployment_status")
        status = {"repo": repo, "deployment_id": deployment_id, "state": state, "description": description}
        self.deployment_statuses.append(status)
        return status

    def get_pull_request_diff(self, repo: str, number: int) -> str:
        self._guard("get_pull_request_diff")
        return self.diffs.get((repo, number), "")

    def list_commit_checks(self, repo: str, ref: str) -> list[dict[str, str]]:
        self._guard("list_commit_checks")
        return [dict(check) for check in self.checks.get((repo, ref), [])]
