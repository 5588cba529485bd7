"""Markdown bodies for the PR comments the pipeline posts."""

from __future__ import annotations

from pullmint.models import AnalysisCompleteEvent, DeploymentStatusEvent
from pullmint.shared.utils import risk_level

SEVERITY_GROUPS = [
    ("critical", "Critical"),
    ("high", "High"),
    ("medium", "Medium"),
    ("low", "Low"),
    ("info", "Info"),
]

FOOTER = "\n---\n<sub>Powered by Pullmint</sub>"


def build_analysis_comment(event: AnalysisCompleteEvent) -> str:
    lines = [
        "## Pullmint Analysis Results",
        "",
        f"**Risk Score:** {event.risk_score}/100 ({risk_level(event.risk_score)})",
        "",
    ]
    metadata = event.metadata
    if metadata.cached:
        lines += [f"_Analysis completed in {metadata.processing_time}ms (cached)_", ""]
    else:
        lines += [
            f"_Analysis completed in {metadata.processing_time}ms "
            f"using {metadata.tokens_used} tokens_",
            "",
        ]

    if not event.findings:
        lines += ["### No Issues Found", "", "No architecture or design issues detected.", ""]
        return "\n".join(lines) + FOOTER

    lines += [f"### Findings ({len(event.findings)})", ""]
    for severity, label in SEVERITY_GROUPS:
        group = [finding for finding in event.findings if finding.severity == severity]
        if not group:
            continue
        lines += [f"#### {label} ({len(group)})", ""]
        for finding in group:
            lines += [f"**{finding.title}**", "", finding.description, ""]
            if finding.suggestion:
                lines += [f"_Suggestion:_ {finding.suggestion}", ""]
            lines += ["---", ""]
    return "\n".join(lines) + FOOTER


def build_deployment_comment(event: DeploymentStatusEvent) -> str:
    heading = "Deployment succeeded" if event.deployment_status == "deployed" else "Deployment failed"
    lines = [
        f"## Pullmint: {heading}",
        "",
        f"**Environment:** {event.deployment_environment}",
        f"**Strategy:** {event.deployment_strategy}",
        f"**Commit:** `{event.head_sha[:7]}`",
    ]
    if event.message:
        lines += ["", event.message]
    return "\n".join(lines) + FOOTER
