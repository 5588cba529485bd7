"""Error taxonomy and structured error logging shared by every handler."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any

import requests

logger = logging.getLogger(__name__)

_TRANSIENT_MESSAGE_MARKERS = (
    "ECONNRESET",
    "ETIMEDOUT",
    "timed out",
    "Connection reset",
    "RequestTimeout",
    "Rate exceeded",
    "database is locked",
    "502",
    "503",
    "Conflict",
)


class PullmintError(Exception):
    """Base class for errors raised by the pipeline."""


class ConfigurationError(PullmintError, ValueError):
    """Invalid or missing configuration; raised at startup, never retried."""


class MalformedWebhookError(PullmintError, ValueError):
    """Inbound webhook is missing a required header or field."""


class SecretNotFoundError(PullmintError, LookupError):
    pass


class StoreError(PullmintError):
    """Durable store failure other than a failed write predicate."""


class EventPublishError(PullmintError):
    """The bus accepted the request but rejected one or more entries."""

    def __init__(self, message: str, failed_entry_count: int, entries: list[dict[str, Any]]) -> None:
        super().__init__(message)
        self.failed_entry_count = failed_entry_count
        self.entries = entries


class DeploymentTargetError(PullmintError):
    """Deployment target answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class DeploymentTimeoutError(PullmintError, TimeoutError):
    pass


class DeploymentTransportUnavailable(ConfigurationError):
    """No HTTP transport can reach the configured target; distinct from a network failure."""


def is_transient_error(error: BaseException) -> bool:
    if isinstance(error, (TimeoutError, requests.Timeout, requests.ConnectionError)):
        return True
    if isinstance(error, sqlite3.OperationalError) and "locked" in str(error):
        return True
    if isinstance(error, DeploymentTargetError):
        return error.status_code in {429, 502, 503, 504}
    if getattr(error, "reason_code", ""):
        # RetryableGitHubError and friends carry a reason code.
        return True
    message = str(error)
    return any(marker in message for marker in _TRANSIENT_MESSAGE_MARKERS)


def create_structured_error(
    error: BaseException, context: dict[str, Any] | None = None
) -> dict[str, Any]:
    message = str(error) or error.__class__.__name__
    error_type = error.__class__.__name__
    retryable = is_transient_error(error)

    severity = "error"
    if retryable:
        severity = "warning"
    elif "Fatal" in error_type or "Critical" in error_type or "FATAL" in message:
        severity = "critical"

    return {
        "message": message,
        "severity": severity,
        "errorType": error_type,
        "context": context or {},
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "retryable": retryable,
    }


def log_error(error: BaseException, context: dict[str, Any] | None = None) -> dict[str, Any]:
    structured = create_structured_error(error, context)
    level = logging.WARNING if structured["severity"] == "warning" else logging.ERROR
    logger.log(level, "%s", json.dumps(structured, sort_keys=True))
    return structured
