"""Agent definitions, loading, and mock responses.

Defines the 3 specialized audit agents. Each runs its pattern scanner, asks
several models for a JSON analysis concurrently and folds the replies into a
single AgentResult.
"""

from __future__ import annotations

import json
import logging
import math
import time
from importlib import resources
from typing import Optional, Sequence

from ..models.agent import AgentDef, AgentKind, AgentOptions, AgentResult, AgentSettings, StaticAnalysis
from ..models.finding import Finding, FindingKind, Severity
from ..models.provider import ModelResponse
from ..providers.base import AIProvider
from ..utils.concurrency import gather_settled
from .config import agent_settings
from .errors import NoValidAnalysis
from .findings import deduplicate_findings, normalize_model_findings, sort_findings, summarize_findings
from .knowledge import format_knowledge_for_prompt
from .scanner import GasScanner, SecurityScanner, TokenomicsScanner

logger = logging.getLogger(__name__)

AGENT_VERSION = "2.0.0"
DEFAULT_SCORE = 50

AGENT_DEFS: dict[AgentKind, AgentDef] = {
    AgentKind.SECURITY: AgentDef(key=AgentKind.SECURITY, name="SecurityAgent", role="Security", color="red"),
    AgentKind.GAS_OPTIMIZER: AgentDef(
        key=AgentKind.GAS_OPTIMIZER, name="GasOptimizerAgent", role="Gas Optimization", color="yellow"
    ),
    AgentKind.TOKENOMICS: AgentDef(
        key=AgentKind.TOKENOMICS, name="TokenomicsAgent", role="Tokenomics & DeFi", color="magenta"
    ),
}

ALL_AGENT_KEYS = [kind.value for kind in AgentKind]

# Reply field holding each model's score for the agent's dimension
SCORE_FIELD: dict[AgentKind, str] = {
    AgentKind.SECURITY: "securityScore",
    AgentKind.GAS_OPTIMIZER: "gasScore",
    AgentKind.TOKENOMICS: "tokenomicsScore",
}

RESPONSE_SHAPES: dict[AgentKind, str] = {
    AgentKind.SECURITY: """{
  "vulnerabilities": [
    {
      "name": "string",
      "type": "string",
      "severity": "critical|high|medium|low|info",
      "confidence": 0.95,
      "affectedLines": "42-47",
      "codeSnippet": "string",
      "description": "string",
      "technicalDetails": "string",
      "attackScenario": "string",
      "remediation": "string",
      "references": ["string"],
      "swcId": "string"
    }
  ],
  "securityScore": 85,
  "riskLevel": "low|medium|high|critical",
  "summary": "string",
  "recommendations": ["string"]
}""",
    AgentKind.GAS_OPTIMIZER: """{
  "optimizations": [
    {
      "category": "storage|loops|functions|events|deployment|general",
      "title": "string",
      "description": "string",
      "severity": "high|medium|low|info",
      "confidence": 0.9,
      "affectedLines": "10-15",
      "currentGasCost": 50000,
      "optimizedGasCost": 40000,
      "gasSavings": 10000,
      "difficulty": "easy|medium|hard",
      "implementation": "string",
      "beforeCode": "string",
      "afterCode": "string"
    }
  ],
  "gasScore": 75,
  "totalSavings": 30000,
  "summary": "string",
  "priorityOptimizations": ["string"]
}""",
    AgentKind.TOKENOMICS: """{
  "tokenomicsFindings": [
    {
      "category": "distribution|liquidity|governance|economic_attack|incentives|oracle|cross_protocol|market_dynamics",
      "title": "string",
      "description": "string",
      "severity": "critical|high|medium|low|info",
      "confidence": 0.8,
      "likelihood": "very_high|high|medium|low|very_low",
      "economicImpact": "string",
      "attackVector": "string",
      "mitigation": "string"
    }
  ],
  "tokenomicsScore": 75,
  "overallRisk": "low|medium|high|critical",
  "keyRisks": ["string"],
  "recommendations": ["string"]
}""",
}


def load_agent_instructions(kind: AgentKind) -> str:
    """Load the bundled rubric markdown for an agent."""
    try:
        data_pkg = resources.files("solaudit.data.agents")
        return (data_pkg / f"{kind.value}.md").read_text(encoding="utf-8")
    except (FileNotFoundError, ModuleNotFoundError):
        return f"# {kind.value.upper()} Agent\n\nAudit the contract for issues in your domain.\n"


def calculate_risk_level(findings: Sequence[Finding], score: int) -> str:
    critical = sum(1 for f in findings if f.severity == Severity.CRITICAL)
    high = sum(1 for f in findings if f.severity == Severity.HIGH)

    if critical > 0 or score < 30:
        return "critical"
    if high > 2 or score < 50:
        return "high"
    if high > 0 or score < 70:
        return "medium"
    return "low"


def average_score(values: Sequence[object]) -> int:
    """Mean of the numeric values, rounded half up and clamped to [0, 100]."""
    numbers = [float(v) for v in values if isinstance(v, (int, float)) and not isinstance(v, bool)]
    numbers = [n for n in numbers if math.isfinite(n)]
    if not numbers:
        return DEFAULT_SCORE
    mean = sum(numbers) / len(numbers)
    return min(max(int(math.floor(mean + 0.5)), 0), 100)


def _summarize_static(static: StaticAnalysis) -> str:
    if not static.findings and not static.estimates:
        return "No static findings."
    lines = [
        f"- [{f.severity.value}] {f.category}: {f.description or f.title}"
        + (f" (lines {f.location})" if f.location else "")
        for f in static.findings
    ]
    if static.estimates:
        lines.append("Estimates: " + json.dumps(static.estimates, sort_keys=True))
    return "\n".join(lines)


def _summarize_previous(results: Sequence[AgentResult]) -> str:
    lines = []
    for r in results:
        lines.append(
            f"- {r.name}: score {r.score}, risk {r.risk_level}, {len(r.findings)} findings"
        )
        for f in r.findings[:10]:
            lines.append(f"  - [{f.severity.value}] {f.title or f.category}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------

class SpecializedAgent:
    """Static scan plus concurrent multi-model analysis for one dimension."""

    kind: AgentKind = AgentKind.SECURITY
    scanner_class: type = SecurityScanner
    version = AGENT_VERSION

    def __init__(
        self,
        provider: AIProvider,
        models: Sequence[str],
        max_retries: Optional[int] = None,
    ):
        self.provider = provider
        self.models = list(models)
        self.max_retries = max_retries
        self.scanner = self.scanner_class(self.kind.value)

    @property
    def definition(self) -> AgentDef:
        return AGENT_DEFS[self.kind]

    def build_prompt(self, source: str, static: StaticAnalysis, options: AgentOptions) -> str:
        parts = [
            load_agent_instructions(self.kind),
            f"CONTRACT CODE:\n```solidity\n{source}\n```",
            f"STATIC ANALYSIS FINDINGS:\n{_summarize_static(static)}",
            f"KNOWLEDGE CONTEXT:\n{format_knowledge_for_prompt(options.contextual_knowledge)}",
        ]
        if options.previous_results:
            parts.append(f"PREVIOUS AGENT RESULTS:\n{_summarize_previous(options.previous_results)}")
        parts.append(f"RESPOND ONLY WITH VALID JSON:\n{RESPONSE_SHAPES[self.kind]}")
        return "\n\n".join(parts)

    def extras(self, findings: list[Finding], responses: list[ModelResponse], risk_level: str) -> dict:
        return {}

    async def analyze(self, source: str, options: Optional[AgentOptions] = None) -> AgentResult:
        """Run the scanner, fan out to every model and merge what comes back.

        Raises NoValidAnalysis when no model produced a usable reply.
        """
        options = options or AgentOptions()
        start_time = time.time()

        static = self.scanner.scan(source)
        prompt = self.build_prompt(source, static, options)

        settled = await gather_settled(
            self.provider.call_json(prompt, model, self.max_retries) for model in self.models
        )
        responses = [s.value for s in settled if s.ok]
        errors = [str(s.error) for s in settled if not s.ok]
        for error in errors:
            logger.warning("%s model failure: %s", self.definition.name, error)
        if not responses:
            raise NoValidAnalysis(self.kind.value, errors)

        collected: list[Finding] = []
        for response in responses:
            collected.extend(
                normalize_model_findings(self.kind, response.parsed_json, response.model_id)
            )
        findings = sort_findings(deduplicate_findings(collected))

        score = average_score([r.parsed_json.get(SCORE_FIELD[self.kind]) for r in responses])
        risk_level = calculate_risk_level(findings, score)

        return AgentResult(
            agent=self.kind,
            name=self.definition.name,
            version=self.version,
            status="success",
            findings=findings,
            summary=summarize_findings(findings),
            score=score,
            risk_level=risk_level,
            models_used=[r.model_id for r in responses],
            tokens_used=sum(r.tokens_used for r in responses),
            cost=sum(r.cost for r in responses),
            execution_time=round(time.time() - start_time, 2),
            static_analysis=static,
            extras={"static_findings": len(static.findings), **self.extras(findings, responses, risk_level)},
        )


class SecurityAgent(SpecializedAgent):
    kind = AgentKind.SECURITY
    scanner_class = SecurityScanner

    def extras(self, findings, responses, risk_level):
        return {
            "vulnerability_count": sum(1 for f in findings if f.kind == FindingKind.VULNERABILITY),
        }


class GasOptimizerAgent(SpecializedAgent):
    kind = AgentKind.GAS_OPTIMIZER
    scanner_class = GasScanner

    def extras(self, findings, responses, risk_level):
        return {"total_savings": sum(f.gas_savings or 0 for f in findings)}


class TokenomicsAgent(SpecializedAgent):
    kind = AgentKind.TOKENOMICS
    scanner_class = TokenomicsScanner

    def extras(self, findings, responses, risk_level):
        return {"overall_risk": risk_level}


AGENT_CLASSES: dict[AgentKind, type[SpecializedAgent]] = {
    AgentKind.SECURITY: SecurityAgent,
    AgentKind.GAS_OPTIMIZER: GasOptimizerAgent,
    AgentKind.TOKENOMICS: TokenomicsAgent,
}


def build_agents(
    config: dict,
    provider: AIProvider,
    settings: Optional[dict[AgentKind, AgentSettings]] = None,
) -> dict[AgentKind, SpecializedAgent]:
    """Instantiate every agent with its configured model list."""
    settings = settings or agent_settings(config)
    max_retries = (config.get("ai") or {}).get("retry_attempts")
    return {
        kind: AGENT_CLASSES[kind](provider, settings[kind].models, max_retries=max_retries)
        for kind in AgentKind
    }


# ---------------------------------------------------------------------------
# Mock responses for DryRun mode
# ---------------------------------------------------------------------------

MOCK_RESPONSES: dict[str, dict] = {
    "security": {
        "vulnerabilities": [
            {
                "name": "Reentrancy in withdraw",
                "type": "reentrancy",
                "severity": "critical",
                "confidence": 0.9,
                "affectedLines": "12-16",
                "codeSnippet": 'msg.sender.call{value: amount}("")',
                "description": "Ether is sent before the caller's balance is cleared.",
                "attackScenario": "A malicious fallback re-enters withdraw and drains the contract.",
                "remediation": "Update balances before the external call or add a reentrancy guard.",
                "swcId": "SWC-107",
            },
            {
                "name": "Missing access control on setOwner",
                "type": "accessControl",
                "severity": "medium",
                "confidence": 0.7,
                "affectedLines": "20-22",
                "description": "Ownership can be changed without an authorization check.",
                "remediation": "Restrict the function with onlyOwner.",
                "swcId": "SWC-105",
            },
        ],
        "securityScore": 45,
        "riskLevel": "critical",
        "summary": "One critical reentrancy issue and one access control weakness.",
        "recommendations": ["Apply checks-effects-interactions in withdraw."],
    },
    "gasOptimizer": {
        "optimizations": [
            {
                "category": "loops",
                "title": "Cache array length in loop",
                "description": "The loop reads array length from storage every iteration.",
                "severity": "low",
                "confidence": 0.85,
                "affectedLines": "30-34",
                "gasSavings": 2100,
                "difficulty": "easy",
                "implementation": "Store the length in a local variable before the loop.",
            },
            {
                "category": "functions",
                "title": "Use external visibility",
                "description": "Public functions never called internally can be external.",
                "severity": "info",
                "confidence": 0.8,
                "affectedLines": "40",
                "gasSavings": 300,
                "difficulty": "easy",
                "implementation": "Change public to external.",
            },
        ],
        "gasScore": 78,
        "totalSavings": 2400,
        "summary": "Minor loop and visibility savings available.",
    },
    "tokenomics": {
        "tokenomicsFindings": [
            {
                "category": "distribution",
                "title": "Owner can mint without limit",
                "description": "The owner may inflate supply at any time.",
                "severity": "high",
                "confidence": 0.75,
                "likelihood": "medium",
                "economicImpact": "Holder dilution",
                "mitigation": "Add a supply cap or move minting behind governance.",
            },
        ],
        "tokenomicsScore": 65,
        "overallRisk": "medium",
        "keyRisks": ["Centralized minting"],
    },
}
