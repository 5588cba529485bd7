"""Analysis worker: diff fetch, cache lookup, analyzer call, analysis.complete publish."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Protocol

from pullmint.models import AnalysisCompleteEvent, AnalysisMetadata, Finding, PullRequestEvent
from pullmint.server.bus import BusEvent, EventBus, publish_event
from pullmint.server.executions import ExecutionRepository
from pullmint.server.github_connector import GitHubClientCache
from pullmint.shared.settings import PipelineSettings
from pullmint.shared.utils import calculate_risk_score, hash_content

logger = logging.getLogger(__name__)

AGENT_SOURCE = "pullmint.agent"
AGENT_TYPE = "architecture"
MAX_DIFF_CHARS = 8000


class Analyzer(Protocol):
    """External reviewer; returns ``{"findings": [...], "riskScore": int?, "tokensUsed": int?}``."""

    def analyze(self, title: str, diff: str) -> dict[str, Any]: ...


def truncate_diff(diff: str, limit: int = MAX_DIFF_CHARS) -> str:
    if len(diff) <= limit:
        return diff
    return diff[:limit] + "\n\n[... diff truncated ...]"


class AnalysisWorker:
    def __init__(
        self,
        settings: PipelineSettings,
        executions: ExecutionRepository,
        bus: EventBus,
        github: GitHubClientCache,
        analyzer: Analyzer,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.executions = executions
        self.bus = bus
        self.github = github
        self.analyzer = analyzer
        self.clock = clock

    def handle_event(self, event: BusEvent) -> None:
        self.handle(PullRequestEvent.model_validate(event.detail))

    def handle(self, event: PullRequestEvent) -> AnalysisCompleteEvent | None:
        if not self.executions.mark_analyzing(event.execution_id):
            logger.info("Execution %s is past analysis; skipping", event.execution_id)
            return None
        try:
            return self._analyze(event)
        except Exception as exc:
            logger.error("Analysis failed for %s: %s", event.execution_id, exc)
            self.executions.mark_failed(event.execution_id, str(exc) or exc.__class__.__name__)
            raise

    def _analyze(self, event: PullRequestEvent) -> AnalysisCompleteEvent | None:
        logger.info("Processing PR #%s in %s", event.pr_number, event.repo_full_name)
        started = self.clock()
        client = self.github.get(event.repo_full_name)
        diff = client.get_pull_request_diff(event.repo_full_name, event.pr_number)

        cache_key = hash_content(diff)
        tokens_used = 0
        cached = self.executions.get_cached_analysis(cache_key)
        if cached is not None:
            logger.info("Analysis cache hit for %s", event.execution_id)
            findings, risk_score = cached
        else:
            result = self.analyzer.analyze(event.title, truncate_diff(diff))
            findings = [Finding.model_validate(item) for item in result.get("findings", [])]
            score = result.get("riskScore")
            risk_score = calculate_risk_score(findings) if score is None else max(0, min(100, int(score)))
            tokens_used = int(result.get("tokensUsed") or 0)
            self.executions.put_cached_analysis(cache_key, findings, risk_score)

        if not self.executions.record_analysis(event.execution_id, findings, risk_score):
            return None

        complete = AnalysisCompleteEvent(
            **event.model_dump(),
            agent_type=AGENT_TYPE,
            findings=findings,
            risk_score=risk_score,
            metadata=AnalysisMetadata(
                processing_time=int((self.clock() - started) * 1000),
                tokens_used=tokens_used,
                cached=cached is not None,
            ),
        )
        publish_event(
            self.bus,
            self.settings.event_bus_name,
            AGENT_SOURCE,
            "analysis.complete",
            complete.to_payload(),
        )
        self.executions.store.append_audit_event(
            "analysis_completed",
            {
                "executionId": event.execution_id,
                "riskScore": risk_score,
                "findings": len(findings),
                "cached": cached is not None,
            },
        )
        logger.info(
            "Analysis complete for PR #%s: risk=%s findings=%d",
            event.pr_number,
            risk_score,
            len(findings),
        )
        return complete
