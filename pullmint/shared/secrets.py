"""Secret lookup with an explicit in-process TTL cache."""

from __future__ import annotations

import os
import re
import threading
import time
from typing import Callable, Mapping, Protocol

from pullmint.shared.errors import SecretNotFoundError


class SecretProvider(Protocol):
    def get_secret_value(self, secret_id: str) -> str: ...


class EnvSecretProvider:
    """Resolve ``webhook-secret`` from ``PULLMINT_SECRET_WEBHOOK_SECRET``."""

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        self.env = os.environ if env is None else env

    @staticmethod
    def env_name(secret_id: str) -> str:
        return "PULLMINT_SECRET_" + re.sub(r"[^A-Za-z0-9]+", "_", secret_id).strip("_").upper()

    def get_secret_value(self, secret_id: str) -> str:
        value = self.env.get(self.env_name(secret_id), "")
        if not value:
            raise SecretNotFoundError(f"Secret {secret_id} has no string value")
        return value


class SecretCache:
    def __init__(
        self,
        provider: SecretProvider,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: dict[str, tuple[float, str]] = {}
        self._lock = threading.Lock()

    def get_secret(self, secret_id: str) -> str:
        now = self.clock()
        with self._lock:
            cached = self._entries.get(secret_id)
            if cached and cached[0] > now:
                return cached[1]

        value = self.provider.get_secret_value(secret_id)
        with self._lock:
            self._entries[secret_id] = (now + self.ttl_seconds, value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
