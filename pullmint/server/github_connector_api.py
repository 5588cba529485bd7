"""GitHub REST API connector implementation."""

from __future__ import annotations

from typing import Any

import requests

from pullmint.server.github_auth import GitHubAuth
from pullmint.server.github_connector import GitHubAPIError, RetryableGitHubError

DIFF_MEDIA_TYPE = "application/vnd.github.diff"


class GitHubAPIConnector:
    def __init__(
        self,
        auth: GitHubAuth | None = None,
        base_url: str = "https://api.github.com",
        session: requests.Session | None = None,
        timeout_s: float = 15,
    ) -> None:
        self.auth = auth or GitHubAuth(token=None)
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout_s = timeout_s

    def create_comment(self, repo: str, number: int, body: str) -> dict[str, Any]:
        return self._request("POST", f"/repos/{repo}/issues/{number}/comments", json={"body": body})

    def create_review(self, repo: str, number: int, event: str, body: str) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/repos/{repo}/pulls/{number}/reviews",
            json={"event": event, "body": body},
        )

    def add_labels(self, repo: str, number: int, labels: list[str]) -> list[dict[str, Any]]:
        response = self._request(
            "POST", f"/repos/{repo}/issues/{number}/labels", json={"labels": labels}
        )
        return response if isinstance(response, list) else []

    def create_deployment(
        self,
        repo: str,
        ref: str,
        environment: str,
        payload: dict[str, Any],
        description: str,
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/repos/{repo}/deployments",
            json={
                "ref": ref,
                "environment": environment,
                "payload": payload,
                "description": description,
                "required_contexts": [],
                "auto_merge": False,
                "transient_environment": True,
                "production_environment": False,
            },
        )

    def create_deployment_status(
        self, repo: str, deployment_id: int, state: str, description: str
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/repos/{repo}/deployments/{deployment_id}/statuses",
            json={"state": state, "description": description},
        )

    def get_pull_request_diff(self, repo: str, number: int) -> str:
        response = self._send("GET", f"/repos/{repo}/pulls/{number}", accept=DIFF_MEDIA_TYPE)
        return response.text

    def list_commit_checks(self, repo: str, ref: str) -> list[dict[str, str]]:
        """Combined legacy statuses and check runs as ``{context, state}`` rows."""

        checks: list[dict[str, str]] = []
        combined = self._request("GET", f"/repos/{repo}/commits/{ref}/status")
        for status in combined.get("statuses", []) if isinstance(combined, dict) else []:
            if isinstance(status, dict):
                checks.append(
                    {"context": str(status.get("context", "")), "state": str(status.get("state", ""))}
                )
        runs = self._request("GET", f"/repos/{repo}/commits/{ref}/check-runs")
        for run in runs.get("check_runs", []) if isinstance(runs, dict) else []:
            if not isinstance(run, dict):
                continue
            if run.get("status") != "completed":
                state = "pending"
            else:
                state = "success" if run.get("conclusion") in {"success", "neutral", "skipped"} else "failure"
            checks.append({"context": str(run.get("name", "")), "state": state})
        return checks

    def _send(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        accept: str = "application/vnd.github+json",
    ) -> requests.Response:
        headers = {
            "Accept": accept,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.auth.token:
            headers["Authorization"] = f"Bearer {self.auth.token}"

        response = self.session.request(
            method=method,
            url=f"{self.base_url}{path}",
            headers=headers,
            json=json,
            timeout=self.timeout_s,
        )

        if response.status_code in {429, 403} and _looks_like_rate_limit(response):
            raise RetryableGitHubError(
                "GitHub API rate limited",
                reason_code="github_rate_limited",
                retry_after_s=_parse_retry_after((response.headers or {}).get("Retry-After")),
                status_code=response.status_code,
            )
        if response.status_code in {500, 502, 503, 504}:
            raise RetryableGitHubError(
                "GitHub API 5xx response",
                reason_code=f"github_{response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise GitHubAPIError(
                f"GitHub API {method} {path} failed with {response.status_code}",
                status_code=response.status_code,
            )
        return response

    def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> Any:
        response = self._send(method, path, json=json)
        if not response.content:
            return {}
        return response.json()


def _looks_like_rate_limit(response: requests.Response) -> bool:
    if response.status_code == 429:
        return True
    try:
        payload = response.json()
    except ValueError:
        return False
    message = str(payload.get("message", "")).lower() if isinstance(payload, dict) else ""
    return "rate limit" in message


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        parsed = float(value)
    except ValueError:
        return None
    return parsed if parsed >= 0 else None
