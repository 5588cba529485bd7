"""GitHub token loading through the secret cache, with safe redaction."""

from __future__ import annotations

from dataclasses import dataclass

from pullmint.shared.errors import SecretNotFoundError
from pullmint.shared.secrets import SecretCache


@dataclass(frozen=True)
class GitHubAuth:
    token: str | None

    def redacted(self) -> dict[str, str]:
        return {"token": _redact_token(self.token)}


def load_github_auth(secrets: SecretCache, secret_id: str) -> GitHubAuth:
    if not secret_id:
        return GitHubAuth(token=None)
    try:
        return GitHubAuth(token=_clean(secrets.get_secret(secret_id)))
    except SecretNotFoundError:
        return GitHubAuth(token=None)


def _clean(token: str | None) -> str | None:
    if token is None:
        return None
    value = token.strip()
    return value or None


def _redact_token(token: str | None) -> str:
    if token is None:
        return "unset"
    if len(token) <= 8:
        return "***"
    return f"{token[:4]}...{token[-4:]}"
