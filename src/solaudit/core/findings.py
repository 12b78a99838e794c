"""Findings normalization, deduplication, ordering and export.

Model replies arrive in three JSON shapes (vulnerabilities, optimizations,
tokenomicsFindings); everything downstream works on Finding.
"""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Iterable, Optional

from pydantic import BaseModel

from ..models.agent import AgentKind
from ..models.finding import Finding, FindingKind, FindingSummary, Severity

logger = logging.getLogger(__name__)

# Reply key holding the findings list, per agent
FINDINGS_KEY: dict[AgentKind, str] = {
    AgentKind.SECURITY: "vulnerabilities",
    AgentKind.GAS_OPTIMIZER: "optimizations",
    AgentKind.TOKENOMICS: "tokenomicsFindings",
}

FINDING_KIND: dict[AgentKind, FindingKind] = {
    AgentKind.SECURITY: FindingKind.VULNERABILITY,
    AgentKind.GAS_OPTIMIZER: FindingKind.OPTIMIZATION,
    AgentKind.TOKENOMICS: FindingKind.TOKENOMICS,
}

_CONSUMED_KEYS = {
    "type", "name", "category", "title", "severity", "description",
    "affectedLines", "codeSnippet", "confidence", "remediation",
    "mitigation", "implementation", "gasSavings",
}


def _text(value: object) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _confidence(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.5
    if not math.isfinite(value):
        return 0.5
    return min(max(float(value), 0.0), 1.0)


def _gas_savings(value: object) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        return max(int(value), 0)
    if isinstance(value, str):
        digits = value.replace(",", "").replace("_", "").strip()
        if digits.isdigit():
            return int(digits)
    return None


def normalize_model_findings(
    agent: AgentKind, parsed: dict, model: str, source: Optional[str] = None
) -> list[Finding]:
    """Convert one model's parsed reply into Findings.

    A missing or non-list findings field contributes nothing; entries that
    are not objects are skipped.
    """
    entries = parsed.get(FINDINGS_KEY[agent])
    if not isinstance(entries, list):
        return []

    source = source or agent.value
    kind = FINDING_KIND[agent]
    findings: list[Finding] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue

        if agent == AgentKind.SECURITY:
            category = _text(entry.get("type") or entry.get("name")) or "unknown"
            title = _text(entry.get("name") or entry.get("type"))
            location = _text(entry.get("affectedLines") or entry.get("codeSnippet"))
            remediation = _text(entry.get("remediation"))
            gas_savings = None
        elif agent == AgentKind.GAS_OPTIMIZER:
            category = _text(entry.get("category")) or "general"
            title = _text(entry.get("title"))
            location = _text(entry.get("affectedLines"))
            remediation = _text(entry.get("implementation"))
            gas_savings = _gas_savings(entry.get("gasSavings"))
        else:
            category = _text(entry.get("category")) or "general"
            title = _text(entry.get("title"))
            location = ""
            remediation = _text(entry.get("mitigation"))
            gas_savings = None

        findings.append(Finding(
            kind=kind,
            category=category,
            severity=Severity.parse(entry.get("severity")),
            title=title,
            description=_text(entry.get("description")),
            location=location,
            confidence=_confidence(entry.get("confidence")),
            source=source,
            model=model,
            remediation=remediation,
            gas_savings=gas_savings,
            reported_by=[f"{source}:{model}"],
            details={k: v for k, v in entry.items() if k not in _CONSUMED_KEYS},
        ))
    return findings


def _prefer(candidate: Finding, current: Finding) -> bool:
    return (candidate.severity.rank, candidate.confidence) > (
        current.severity.rank, current.confidence
    )


def deduplicate_findings(findings: Iterable[Finding]) -> list[Finding]:
    """Collapse findings sharing a duplicate key into one representative.

    The representative has the highest severity, then confidence (first seen
    wins ties) and carries the union of the group's reported_by tags. Groups
    keep first-appearance order. Applying this twice changes nothing.
    """
    groups: dict[tuple, Finding] = {}
    tags: dict[tuple, list[str]] = {}
    for finding in findings:
        key = (finding.kind, *finding.dedup_key())
        if key not in groups:
            groups[key] = finding
            tags[key] = list(finding.reported_by)
            continue
        if _prefer(finding, groups[key]):
            groups[key] = finding
        for tag in finding.reported_by:
            if tag not in tags[key]:
                tags[key].append(tag)

    return [
        rep if rep.reported_by == tags[key] else rep.model_copy(update={"reported_by": tags[key]})
        for key, rep in groups.items()
    ]


def sort_findings(findings: Iterable[Finding]) -> list[Finding]:
    """Severity descending, then gas savings descending; otherwise stable."""
    return sorted(findings, key=lambda f: (-f.severity.rank, -(f.gas_savings or 0)))


def summarize_findings(findings: Iterable[Finding]) -> FindingSummary:
    counts = {s.value: 0 for s in Severity}
    total = 0
    for f in findings:
        counts[f.severity.value] += 1
        total += 1
    return FindingSummary(**counts, total=total)


def export_report_json(report: BaseModel, output_path: Path) -> Path:
    """Write a report or record as camelCase JSON (UTF-8, no BOM)."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(
        json.dumps(report.model_dump(mode="json", by_alias=True), indent=2, ensure_ascii=False),
        encoding="utf-8",
    )
    return output_path
