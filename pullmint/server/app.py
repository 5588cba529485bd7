"""Pipeline wiring and a minimal ASGI HTTP layer for the webhook endpoint."""

from __future__ import annotations

import argparse
import json
import logging
import time
from typing import Any, Callable, Mapping

import requests

from pullmint.server.analysis import AGENT_SOURCE, AnalysisWorker, Analyzer
from pullmint.server.bus import InMemoryEventBus
from pullmint.server.db import ExecutionStore
from pullmint.server.deployment_executor import ORCHESTRATOR_SOURCE, DeploymentExecutor
from pullmint.server.deployment_gate import INTEGRATION_SOURCE, DeploymentGate
from pullmint.server.executions import ExecutionRepository
from pullmint.server.github_connector import GitHubClientCache, build_client_cache
from pullmint.server.status_reconciler import StatusReconciler
from pullmint.server.webhooks import GITHUB_SOURCE, PR_ACTIONS, WebhookGateway, WebhookResponse
from pullmint.shared.secrets import EnvSecretProvider, SecretCache
from pullmint.shared.settings import PipelineSettings, get_pipeline_settings

logger = logging.getLogger(__name__)


class PipelineApp:
    """Every handler built over one store, bus, secret cache and GitHub client cache."""

    def __init__(
        self,
        settings: PipelineSettings | None = None,
        store: ExecutionStore | None = None,
        bus: InMemoryEventBus | None = None,
        secrets: SecretCache | None = None,
        github: GitHubClientCache | None = None,
        analyzer: Analyzer | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or get_pipeline_settings()
        self.store = store or ExecutionStore(self.settings.sqlite_path)
        self.bus = bus or InMemoryEventBus()
        self.secrets = secrets or SecretCache(
            EnvSecretProvider(), ttl_seconds=self.settings.secret_cache_ttl_seconds
        )
        self.github = github or build_client_cache(self.settings, self.secrets)
        self.executions = ExecutionRepository(self.store, self.settings)

        self.gateway = WebhookGateway(self.settings, self.executions, self.bus, self.secrets)
        self.gate = DeploymentGate(self.settings, self.executions, self.bus, self.github)
        self.reconciler = StatusReconciler(self.executions, self.github)
        self.analysis: AnalysisWorker | None = None
        if analyzer is not None:
            self.analysis = AnalysisWorker(
                self.settings, self.executions, self.bus, self.github, analyzer
            )
        self.executor: DeploymentExecutor | None = None
        if self.settings.deployment_webhook_url:
            self.executor = DeploymentExecutor(
                self.settings, self.executions, self.bus, self.secrets, session=session, sleep=sleep
            )
        self._subscribe()

    def _subscribe(self) -> None:
        if self.analysis is not None:
            self.bus.subscribe(
                "analysis-worker",
                GITHUB_SOURCE,
                [f"pr.{action}" for action in sorted(PR_ACTIONS)],
                self.analysis.handle_event,
            )
        self.bus.subscribe(
            "deployment-gate", AGENT_SOURCE, ["analysis.complete"], self.gate.handle_event
        )
        if self.executor is not None:
            self.bus.subscribe(
                "deployment-executor",
                INTEGRATION_SOURCE,
                ["deployment_approved"],
                self.executor.handle_event,
            )
        for source in (GITHUB_SOURCE, ORCHESTRATOR_SOURCE):
            self.bus.subscribe(
                f"status-reconciler-{source.rsplit('.', 1)[-1]}",
                source,
                ["deployment.status"],
                self.reconciler.handle_event,
            )

    def handle_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookResponse:
        return self.gateway.handle(raw_body, headers)

    def run_pending(self, max_deliveries: int | None = None) -> int:
        return self.bus.dispatch_pending(max_deliveries=max_deliveries)

    def reset_clients(self) -> None:
        self.github.reset()
        self.secrets.clear()


def create_app(
    settings: PipelineSettings | None = None,
    analyzer: Analyzer | None = None,
) -> PipelineApp:
    return PipelineApp(settings=settings, analyzer=analyzer)


class ASGIServer:
    """Minimal ASGI adapter: ``POST /webhook`` and ``GET /health``."""

    def __init__(self, service: PipelineApp | None = None) -> None:
        self._service = service

    @property
    def service(self) -> PipelineApp:
        if self._service is None:
            self._service = create_app()
        return self._service

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope.get("type") != "http":
            await self._send_json(send, 500, {"error": "unsupported_scope"})
            return

        method = scope.get("method", "GET")
        path = scope.get("path", "")
        body = await self._read_body(receive)

        try:
            if method == "GET" and path == "/health":
                await self._send_json(send, 200, {"status": "ok"})
                return

            if method == "POST" and path == "/webhook":
                response = self.service.handle_webhook(body, self._headers(scope))
                await self._send_json(send, response.status_code, response.body)
                if response.status_code == 202:
                    self.service.run_pending()
                return

            await self._send_json(send, 404, {"error": "not_found"})
        except Exception as exc:  # pragma: no cover
            logger.exception("Unhandled error serving %s %s", method, path)
            await self._send_json(send, 500, {"error": str(exc)})

    def _headers(self, scope: dict[str, Any]) -> dict[str, str]:
        headers: dict[str, str] = {}
        for name, value in scope.get("headers", []):
            headers[name.decode("latin-1").lower()] = value.decode("latin-1")
        return headers

    async def _read_body(self, receive: Any) -> bytes:
        chunks: list[bytes] = []
        while True:
            message = await receive()
            if message["type"] != "http.request":
                continue
            chunks.append(message.get("body", b""))
            if not message.get("more_body", False):
                break
        return b"".join(chunks)

    async def _send_json(self, send: Any, status: int, payload: dict[str, Any]) -> None:
        body = json.dumps(payload).encode("utf-8")
        await send(
            {
                "type": "http.response.start",
                "status": status,
                "headers": [(b"content-type", b"application/json")],
            }
        )
        await send({"type": "http.response.body", "body": body})


app = ASGIServer()


def main() -> int:
    parser = argparse.ArgumentParser(description="pullmint ASGI server entrypoint")
    parser.add_argument(
        "--print-startup",
        action="store_true",
        help="print the supported uvicorn startup command and exit",
    )
    args = parser.parse_args()

    if args.print_startup:
        print("uvicorn pullmint.server.app:app --host 127.0.0.1 --port 8000")
        return 0

    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
