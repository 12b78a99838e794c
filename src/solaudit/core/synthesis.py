"""Report scoring, cross-validation and rendering.

Everything here is a pure function of already-normalized findings.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Iterable, Sequence

from ..models.agent import AgentResult
from ..models.finding import Finding, FindingKind, Severity
from ..models.review import (
    AgentMetadata,
    AggregatedReport,
    ConsensusFinding,
    CrossValidation,
    ExecutiveSummary,
    RiskLevel,
)

DEFAULT_OVERALL_SCORE = 50

# Security score penalty per vulnerability severity
SECURITY_PENALTIES: dict[Severity, int] = {
    Severity.CRITICAL: 30,
    Severity.HIGH: 15,
    Severity.MEDIUM: 8,
    Severity.LOW: 3,
}
GAS_SAVINGS_PER_POINT = 1000
TOKENOMICS_CRITICAL_PENALTY = 25
TOKENOMICS_HIGH_PENALTY = 10

SIMILAR_CONFIDENCE_DELTA = 0.2


def _clamp_score(value: float) -> int:
    return min(max(int(math.floor(value + 0.5)), 0), 100)


def _count(findings: Iterable[Finding], severity: Severity) -> int:
    return sum(1 for f in findings if f.severity == severity)


def calculate_overall_score(results: Sequence[AgentResult]) -> int:
    """Mean of the agents' scores; 50 when no agent succeeded."""
    if not results:
        return DEFAULT_OVERALL_SCORE
    return _clamp_score(sum(r.score for r in results) / len(results))


def calculate_overall_risk(
    vulnerabilities: Sequence[Finding], tokenomics_findings: Sequence[Finding]
) -> RiskLevel:
    """Risk category from the combined vulnerability and tokenomics counts.

    Gas optimizations never raise the risk.
    """
    combined = list(vulnerabilities) + list(tokenomics_findings)
    critical = _count(combined, Severity.CRITICAL)
    high = _count(combined, Severity.HIGH)

    if critical > 0:
        return RiskLevel.CRITICAL
    if high > 2:
        return RiskLevel.HIGH
    if high > 0:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def calculate_security_score(vulnerabilities: Sequence[Finding]) -> int:
    penalty = sum(SECURITY_PENALTIES.get(v.severity, 0) for v in vulnerabilities)
    return _clamp_score(100 - penalty)


def calculate_gas_score(optimizations: Sequence[Finding]) -> int:
    total_savings = sum(o.gas_savings or 0 for o in optimizations)
    return _clamp_score(100 - total_savings / GAS_SAVINGS_PER_POINT)


def calculate_tokenomics_score(findings: Sequence[Finding]) -> int:
    penalty = (
        _count(findings, Severity.CRITICAL) * TOKENOMICS_CRITICAL_PENALTY
        + _count(findings, Severity.HIGH) * TOKENOMICS_HIGH_PENALTY
    )
    return _clamp_score(100 - penalty)


# ---------------------------------------------------------------------------
# Cross-validation
# ---------------------------------------------------------------------------

def are_similar_findings(a: Finding, b: Finding) -> bool:
    return (
        a.category.lower() == b.category.lower()
        and a.severity == b.severity
        and abs(a.confidence - b.confidence) < SIMILAR_CONFIDENCE_DELTA
    )


def group_similar_findings(findings: Sequence[Finding]) -> list[list[Finding]]:
    """Greedy grouping: each unclaimed finding collects later findings similar to it."""
    groups: list[list[Finding]] = []
    claimed: set[int] = set()
    for i, finding in enumerate(findings):
        if i in claimed:
            continue
        claimed.add(i)
        group = [finding]
        for j in range(i + 1, len(findings)):
            if j not in claimed and are_similar_findings(finding, findings[j]):
                group.append(findings[j])
                claimed.add(j)
        groups.append(group)
    return groups


def perform_cross_validation(findings: Sequence[Finding]) -> CrossValidation:
    """Find groups corroborated by at least two distinct agent/model sources."""
    if not findings:
        return CrossValidation()

    all_sources = {tag for f in findings for tag in f.reported_by}
    groups = group_similar_findings(findings)
    consensus: list[ConsensusFinding] = []
    for group in groups:
        reporters: list[str] = []
        for f in group:
            for tag in f.reported_by:
                if tag not in reporters:
                    reporters.append(tag)
        if len(reporters) >= 2:
            consensus.append(ConsensusFinding(
                finding=group[0],
                reported_by=reporters,
                confidence=round(len(reporters) / max(len(all_sources), 1), 4),
            ))

    return CrossValidation(
        consensus_findings=consensus,
        total_findings=len(findings),
        group_count=len(groups),
        confidence_score=round(len(consensus) / len(findings), 4),
    )


# ---------------------------------------------------------------------------
# Summary and recommendations
# ---------------------------------------------------------------------------

def generate_recommendations(
    vulnerabilities: Sequence[Finding],
    optimizations: Sequence[Finding],
    tokenomics_findings: Sequence[Finding],
) -> list[str]:
    recommendations: list[str] = []
    if any(v.severity == Severity.CRITICAL for v in vulnerabilities):
        recommendations.append("Address critical vulnerabilities immediately before deployment")
    if optimizations:
        recommendations.append("Implement gas optimizations to reduce transaction costs")
    if any(f.category.lower() == "governance" for f in tokenomics_findings):
        recommendations.append("Review governance mechanisms for potential attack vectors")
    return recommendations


def generate_executive_summary(
    vulnerabilities: Sequence[Finding], overall_risk: RiskLevel
) -> ExecutiveSummary:
    critical = _count(vulnerabilities, Severity.CRITICAL)
    return ExecutiveSummary(
        total_vulnerabilities=len(vulnerabilities),
        critical_vulnerabilities=critical,
        high_vulnerabilities=_count(vulnerabilities, Severity.HIGH),
        overall_risk=overall_risk,
        key_findings=[v.title or v.category for v in vulnerabilities[:3]],
        recommended_actions=(
            "Immediate action required" if critical > 0 else "Review and implement recommendations"
        ),
    )


def generate_agent_metadata(results: Sequence[AgentResult]) -> list[AgentMetadata]:
    return [
        AgentMetadata(
            agent=r.agent.value,
            execution_time=r.execution_time,
            tokens_used=r.tokens_used,
            cost=r.cost,
            models_used=list(r.models_used),
            version=r.version,
            score=r.score,
        )
        for r in results
    ]


def get_exit_code(risk: RiskLevel, ci: bool = False) -> int:
    """Map the risk category to an exit code.

    Critical only fails the build (1) under --ci; otherwise it reports as high.
    """
    if risk == RiskLevel.CRITICAL:
        return 1 if ci else 2
    if risk == RiskLevel.HIGH:
        return 2
    return 0


# ---------------------------------------------------------------------------
# Markdown rendering
# ---------------------------------------------------------------------------

def _finding_lines(finding: Finding) -> list[str]:
    lines = [f"### {finding.title or finding.category} [{finding.severity.value.upper()}]"]
    lines.append(f"**Category:** {finding.category}")
    if finding.location:
        lines.append(f"**Location:** `{finding.location}`")
    if finding.gas_savings:
        lines.append(f"**Gas savings:** ~{finding.gas_savings}")
    lines.append(f"**Confidence:** {finding.confidence:.2f}")
    if finding.reported_by:
        lines.append(f"**Reported by:** {', '.join(finding.reported_by)}")
    if finding.description:
        lines.append(f"\n{finding.description}")
    if finding.remediation:
        lines.append(f"\n**Remediation:** {finding.remediation}")
    lines.append("")
    return lines


def generate_report_markdown(report: AggregatedReport, dry_run: bool = False) -> str:
    """Render an AggregatedReport as the AUDIT-REPORT.md document."""
    timestamp = report.timestamp.strftime("%Y-%m-%d %H:%M:%S")
    risk_label = {
        RiskLevel.LOW: "PASS",
        RiskLevel.MEDIUM: "REVIEW",
        RiskLevel.HIGH: "WARN",
        RiskLevel.CRITICAL: "FAIL",
    }

    lines: list[str] = []
    lines.append("# Smart Contract Audit Report")
    lines.append("")
    lines.append(f"**Audit:** {report.audit_id}")
    lines.append(f"**Date:** {timestamp}")
    lines.append(f"**Risk:** {risk_label[report.risk_category]} ({report.risk_category.value})")
    if report.analysis_mode:
        lines.append(f"**Mode:** {report.analysis_mode.value}")
    lines.append(f"**Strategy:** {report.strategy.value}")
    if dry_run:
        lines.append("**Run:** DRY RUN (mock model responses)")
    lines.append(f"**Duration:** {round(report.execution_time, 1)}s")
    lines.append("")

    lines.append("## Scores")
    lines.append("")
    lines.append("| Dimension | Score |")
    lines.append("|-----------|-------|")
    lines.append(f"| Security   | {report.security_score} |")
    lines.append(f"| Gas        | {report.gas_score} |")
    lines.append(f"| Tokenomics | {report.tokenomics_score} |")
    lines.append(f"| **Overall** | **{report.overall_score}** |")
    lines.append("")

    summary = report.summary
    lines.append("## Executive Summary")
    lines.append("")
    lines.append(
        f"{summary.total_vulnerabilities} vulnerabilities "
        f"({summary.critical_vulnerabilities} critical, {summary.high_vulnerabilities} high). "
        f"{summary.recommended_actions}."
    )
    lines.append("")
    for rec in report.recommendations:
        lines.append(f"- {rec}")
    if report.recommendations:
        lines.append("")

    lines.append("## Agent Results")
    lines.append("")
    lines.append("| Agent | Score | Models | Tokens | Duration |")
    lines.append("|-------|-------|--------|--------|----------|")
    for meta in report.agent_metadata:
        lines.append(
            f"| {meta.agent} | {meta.score} | {len(meta.models_used)} | "
            f"{meta.tokens_used} | {round(meta.execution_time, 1)}s |"
        )
    for failed in report.failed_agents:
        status = "TIMEOUT" if failed.timed_out else "FAILED"
        lines.append(f"| {failed.agent} | {status} | - | - | - |")
    for skipped in report.skipped_agents:
        lines.append(f"| {skipped} | SKIPPED | - | - | - |")
    lines.append("")

    sections = (
        ("Vulnerabilities", report.vulnerabilities),
        ("Gas Optimizations", report.gas_optimizations),
        ("Tokenomics Findings", report.tokenomics_findings),
    )
    for heading, findings in sections:
        if not findings:
            continue
        lines.append(f"## {heading}")
        lines.append("")
        for finding in findings:
            lines.extend(_finding_lines(finding))

    cv = report.cross_validation
    lines.append("## Cross-Validation")
    lines.append("")
    lines.append(
        f"{len(cv.consensus_findings)} of {cv.total_findings} findings corroborated "
        f"(confidence {cv.confidence_score:.2f})."
    )
    if report.knowledge_fallback:
        lines.append("")
        lines.append("*Knowledge base unavailable; built-in core patterns were used.*")
    lines.append("")

    lines.append("---")
    lines.append(f"*Generated by solaudit at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}*")

    return "\n".join(lines)


def split_by_kind(findings: Iterable[Finding]) -> dict[FindingKind, list[Finding]]:
    buckets: dict[FindingKind, list[Finding]] = {kind: [] for kind in FindingKind}
    for f in findings:
        buckets[f.kind].append(f)
    return buckets
