"""Small pure helpers: signatures, identifiers, TTLs, hashing and risk scoring."""

from __future__ import annotations

import hashlib
import hmac
import time
from collections import Counter
from typing import Any, Iterable, Mapping

SIGNATURE_PREFIX = "sha256="

SEVERITY_WEIGHTS: dict[str, int] = {
    "critical": 30,
    "high": 15,
    "medium": 7,
    "low": 3,
    "info": 1,
}


def compute_signature(payload: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(payload: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time check of an ``X-Hub-Signature-256`` style header."""

    if not signature:
        return False
    expected = compute_signature(payload, secret)
    return hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8"))


def generate_execution_id(repo_full_name: str, pr_number: int, head_sha: str) -> str:
    return f"{repo_full_name}#{pr_number}#{head_sha[:7]}"


def repo_pr_key(repo_full_name: str, pr_number: int) -> str:
    return f"{repo_full_name}#{pr_number}"


def now_ms(clock: Any = time.time) -> int:
    return int(clock() * 1000)


def calculate_ttl(duration_seconds: int, clock: Any = time.time) -> int:
    """Epoch seconds at which a row becomes eligible for expiry."""

    return int(clock()) + int(duration_seconds)


def hash_content(content: str | bytes) -> str:
    data = content.encode("utf-8") if isinstance(content, str) else content
    return hashlib.sha256(data).hexdigest()


def calculate_risk_score(findings: Iterable[Mapping[str, Any] | Any]) -> int:
    counts: Counter[str] = Counter()
    for finding in findings:
        severity = (
            finding.get("severity") if isinstance(finding, Mapping) else getattr(finding, "severity", "")
        )
        counts[str(severity)] += 1
    score = sum(SEVERITY_WEIGHTS[severity] * counts[severity] for severity in SEVERITY_WEIGHTS)
    return min(100, score)


def risk_level(score: int) -> str:
    if score >= 70:
        return "High"
    if score >= 40:
        return "Medium"
    return "Low"


def split_repo(repo_full_name: str) -> tuple[str, str]:
    owner, _, name = repo_full_name.partition("/")
    if not owner or not name:
        raise ValueError(f"Unsupported repository name: {repo_full_name}")
    return owner, name
