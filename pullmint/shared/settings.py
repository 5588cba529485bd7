"""Pipeline settings validated once at startup."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml

from pullmint.shared.errors import ConfigurationError

DEPLOYMENT_STRATEGIES = {"eventbridge", "label", "deployment"}
GITHUB_CONNECTORS = {"in_memory", "api"}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}

ENV_FIELD_MAP: dict[str, str] = {
    "PULLMINT_EVENT_BUS_NAME": "event_bus_name",
    "PULLMINT_WEBHOOK_SECRET_ID": "webhook_secret_id",
    "PULLMINT_GITHUB_TOKEN_SECRET_ID": "github_token_secret_id",
    "PULLMINT_AUTO_APPROVE_THRESHOLD": "auto_approve_threshold",
    "PULLMINT_DEPLOYMENT_RISK_THRESHOLD": "deployment_risk_threshold",
    "PULLMINT_DEPLOYMENT_ENABLED": "deployment_enabled",
    "PULLMINT_DEPLOYMENT_STRATEGY": "deployment_strategy",
    "PULLMINT_DEPLOYMENT_LABEL": "deployment_label",
    "PULLMINT_DEPLOYMENT_ENVIRONMENT": "deployment_environment",
    "PULLMINT_DEPLOYMENT_REQUIRE_TESTS": "require_tests",
    "PULLMINT_DEPLOYMENT_REQUIRED_CONTEXTS": "required_contexts",
    "PULLMINT_DEPLOYMENT_WEBHOOK_URL": "deployment_webhook_url",
    "PULLMINT_DEPLOYMENT_WEBHOOK_TOKEN_SECRET_ID": "deployment_webhook_token_secret_id",
    "PULLMINT_DEPLOYMENT_ROLLBACK_URL": "deployment_rollback_url",
    "PULLMINT_DEPLOYMENT_TIMEOUT_MS": "deployment_timeout_ms",
    "PULLMINT_DEPLOYMENT_RETRIES": "deployment_retries",
    "PULLMINT_DEPLOYMENT_DELAY_MS": "deployment_delay_ms",
    "PULLMINT_DEDUP_TTL_SECONDS": "dedup_ttl_seconds",
    "PULLMINT_CACHE_TTL_SECONDS": "cache_ttl_seconds",
    "PULLMINT_EXECUTION_TTL_SECONDS": "execution_ttl_seconds",
    "PULLMINT_SECRET_CACHE_TTL_SECONDS": "secret_cache_ttl_seconds",
    "PULLMINT_SQLITE_PATH": "sqlite_path",
    "PULLMINT_GITHUB_CONNECTOR": "github_connector",
    "PULLMINT_GITHUB_API_URL": "github_api_url",
}


@dataclass(frozen=True)
class PipelineSettings:
    """Every knob the webhook gateway, deployment gate and executor read."""

    event_bus_name: str = "pullmint"
    webhook_secret_id: str = "webhook-secret"
    github_token_secret_id: str = "github-token"
    auto_approve_threshold: int = 30
    deployment_risk_threshold: int = 30
    deployment_enabled: bool = True
    deployment_strategy: str = "label"
    deployment_label: str = "deploy:staging"
    deployment_environment: str = "staging"
    require_tests: bool = False
    required_contexts: tuple[str, ...] = field(default_factory=tuple)
    deployment_webhook_url: str = ""
    deployment_webhook_token_secret_id: str = ""
    deployment_rollback_url: str = ""
    deployment_timeout_ms: int = 30_000
    deployment_retries: int = 2
    deployment_delay_ms: int = 0
    dedup_ttl_seconds: int = 86_400
    cache_ttl_seconds: int = 7 * 86_400
    execution_ttl_seconds: int = 90 * 86_400
    secret_cache_ttl_seconds: int = 300
    sqlite_path: str = ":memory:"
    github_connector: str = "in_memory"
    github_api_url: str = "https://api.github.com"

    def __post_init__(self) -> None:
        for name in ("event_bus_name", "webhook_secret_id", "deployment_label", "deployment_environment"):
            if not str(getattr(self, name)).strip():
                raise ConfigurationError(f"{name} must not be empty")
        for name in ("auto_approve_threshold", "deployment_risk_threshold"):
            value = getattr(self, name)
            if not 0 <= value <= 100:
                raise ConfigurationError(f"{name} must be between 0 and 100, got {value}")
        if self.deployment_strategy not in DEPLOYMENT_STRATEGIES:
            raise ConfigurationError(
                f"deployment_strategy must be one of {sorted(DEPLOYMENT_STRATEGIES)}, "
                f"got {self.deployment_strategy!r}"
            )
        if self.github_connector not in GITHUB_CONNECTORS:
            raise ConfigurationError(
                f"github_connector must be one of {sorted(GITHUB_CONNECTORS)}, "
                f"got {self.github_connector!r}"
            )
        if self.deployment_timeout_ms <= 0:
            raise ConfigurationError("deployment_timeout_ms must be positive")
        if self.deployment_retries < 0:
            raise ConfigurationError("deployment_retries must not be negative")
        if self.deployment_delay_ms < 0:
            raise ConfigurationError("deployment_delay_ms must not be negative")
        for name in (
            "dedup_ttl_seconds",
            "cache_ttl_seconds",
            "execution_ttl_seconds",
            "secret_cache_ttl_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        for name in ("deployment_webhook_url", "deployment_rollback_url", "github_api_url"):
            value = getattr(self, name)
            if value and urlparse(value).scheme not in {"http", "https"}:
                raise ConfigurationError(f"{name} must be an http(s) URL, got {value!r}")
        if (
            self.deployment_enabled
            and self.deployment_strategy == "eventbridge"
            and not self.deployment_webhook_url
        ):
            raise ConfigurationError(
                "deployment_webhook_url is required when deployment_strategy is 'eventbridge'"
            )

    @property
    def deployment_attempts(self) -> int:
        return self.deployment_retries + 1

    @classmethod
    def from_mapping(cls, values: dict[str, Any]) -> "PipelineSettings":
        known = {item.name: item for item in fields(cls)}
        unknown = sorted(set(values) - set(known))
        if unknown:
            raise ConfigurationError(f"Unknown settings: {', '.join(unknown)}")
        coerced = {name: _coerce(name, known[name].type, value) for name, value in values.items()}
        return cls(**coerced)

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> "PipelineSettings":
        """Defaults, then YAML file, then PULLMINT_* variables, then the JSON blob."""

        source = os.environ if env is None else env
        values: dict[str, Any] = {}

        config_file = (source.get("PULLMINT_CONFIG_FILE") or "").strip()
        if config_file:
            values.update(load_settings_file(config_file))

        for env_name, field_name in ENV_FIELD_MAP.items():
            if env_name in source:
                values[field_name] = source[env_name]

        blob = (source.get("PULLMINT_CONFIG_JSON") or "").strip()
        if blob:
            try:
                override = json.loads(blob)
            except json.JSONDecodeError as exc:
                raise ConfigurationError(f"PULLMINT_CONFIG_JSON is not valid JSON: {exc}") from exc
            if not isinstance(override, dict):
                raise ConfigurationError("PULLMINT_CONFIG_JSON must be a JSON object")
            values.update(override)

        return cls.from_mapping(values)

    def redacted(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["required_contexts"] = list(self.required_contexts)
        for name in ("deployment_webhook_url", "deployment_rollback_url"):
            if payload[name]:
                parsed = urlparse(payload[name])
                payload[name] = f"{parsed.scheme}://{parsed.netloc}/..."
        return payload


def load_settings_file(path: str | Path) -> dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Settings file not found: {config_path}")
    loaded = yaml.safe_load(config_path.read_text()) or {}
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Settings file must contain a mapping: {config_path}")
    return loaded


def get_pipeline_settings(env: dict[str, str] | None = None) -> PipelineSettings:
    return PipelineSettings.from_env(env)


def _coerce(name: str, annotation: Any, value: Any) -> Any:
    kind = str(annotation)
    if kind == "bool":
        if isinstance(value, bool):
            return value
        normalized = str(value).strip().lower()
        if normalized in _TRUE_VALUES:
            return True
        if normalized in _FALSE_VALUES:
            return False
        raise ConfigurationError(f"{name} must be a boolean, got {value!r}")
    if kind == "int":
        if isinstance(value, bool):
            raise ConfigurationError(f"{name} must be an integer, got {value!r}")
        try:
            return int(str(value).strip())
        except ValueError as exc:
            raise ConfigurationError(f"{name} must be an integer, got {value!r}") from exc
    if kind.startswith("tuple"):
        if isinstance(value, str):
            items = value.split(",")
        elif isinstance(value, (list, tuple)):
            items = [str(item) for item in value]
        else:
            raise ConfigurationError(f"{name} must be a list or comma-separated string")
        return tuple(item.strip() for item in items if item.strip())
    if value is None:
        return ""
    return str(value).strip()
