"""Regex-based static analysis of Solidity source.

Each agent runs its scanner before any model call; the output is passed to
the models as preliminary findings and kept on the agent result.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from ..models.agent import StaticAnalysis
from ..models.finding import Finding, FindingKind, Severity

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

GAS_COSTS: Mapping[str, int] = MappingProxyType({
    "SSTORE_SET": 20000,
    "SSTORE_RESET": 5000,
    "SSTORE_CLEAR": 15000,
    "SLOAD": 2100,
    "MSTORE": 3,
    "MLOAD": 3,
    "CALL": 2600,
    "STATICCALL": 2600,
    "DELEGATECALL": 2600,
    "CREATE": 32000,
    "CREATE2": 32000,
    "LOG0": 375,
    "LOG1": 750,
    "LOG2": 1125,
    "LOG3": 1500,
    "LOG4": 1875,
})

TYPE_SIZES: Mapping[str, int] = MappingProxyType({
    "address": 32,
    "uint256": 32,
    "int256": 32,
    "uint128": 16,
    "int128": 16,
    "uint64": 8,
    "int64": 8,
    "uint32": 4,
    "int32": 4,
    "uint16": 2,
    "int16": 2,
    "uint8": 1,
    "int8": 1,
    "bool": 1,
})

SLOT_SIZE = 32

UNCHECKED_INCREMENT_SAVINGS = 120
VISIBILITY_SAVINGS = 300
VIEW_SAVINGS = 200
EXTRA_TOPIC_SAVINGS = 375
OWNER_CHECK_LIMIT = 5

# Weights for estimate_complexity, applied to count_metrics output
COMPLEXITY_WEIGHTS: Mapping[str, float] = MappingProxyType({
    "functions": 0.1,
    "modifiers": 0.15,
    "events": 0.05,
    "structs": 0.1,
    "inheritance": 0.2,
    "external_calls": 0.25,
    "loops": 0.15,
})

_METRIC_PATTERNS: Mapping[str, re.Pattern] = MappingProxyType({
    "functions": re.compile(r"function\s+\w+", re.I),
    "modifiers": re.compile(r"modifier\s+\w+", re.I),
    "events": re.compile(r"event\s+\w+", re.I),
    "structs": re.compile(r"struct\s+\w+", re.I),
    "inheritance": re.compile(r"\bis\s+\w+", re.I),
    "external_calls": re.compile(r"\.call\(|\.delegatecall\(|\.staticcall\(", re.I),
    "loops": re.compile(r"for\s*\(|while\s*\(", re.I),
})


@dataclass(frozen=True)
class PatternRule:
    regex: re.Pattern
    # Rule is ignored when this token appears anywhere in the source
    unless: Optional[str] = None


@dataclass(frozen=True)
class VulnerabilityRule:
    patterns: tuple[PatternRule, ...]
    severity: Severity
    confidence: float
    description: str


def _rule(pattern: str, unless: Optional[str] = None) -> PatternRule:
    return PatternRule(re.compile(pattern, re.I), unless)


VULNERABILITY_PATTERNS: Mapping[str, VulnerabilityRule] = MappingProxyType({
    "reentrancy": VulnerabilityRule(
        patterns=(
            _rule(r"\.call\s*\(\s*[^)]*\)\s*;?\s*(?!.*require|.*assert)"),
            _rule(r"\.call\s*\{\s*value\s*:"),
            _rule(r"\.transfer\s*\(\s*[^)]*\)\s*;?\s*(?=.*balances?\[)"),
            _rule(r"external\b[^{;]*\{[^}]*balances?\[", unless="nonReentrant"),
        ),
        severity=Severity.CRITICAL,
        confidence=0.85,
        description="Potential reentrancy vulnerability detected",
    ),
    "accessControl": VulnerabilityRule(
        patterns=(
            _rule(r"function\s+\w+\s*\([^)]*\)\s+(?!.*onlyOwner|.*onlyAdmin|.*require\s*\(|.*modifier)"),
            _rule(r"tx\.origin\s*==\s*\w+"),
            _rule(r"msg\.sender\s*==\s*owner(?!\s*\()"),
        ),
        severity=Severity.HIGH,
        confidence=0.75,
        description="Access control vulnerability detected",
    ),
    "integerOverflow": VulnerabilityRule(
        patterns=(
            _rule(r"\+\+\s*(?!.*SafeMath|.*unchecked)"),
            _rule(r"\w+\s*\+=\s*\w+(?!.*SafeMath|.*unchecked)"),
            _rule(r"\w+\s*\*\s*\w+(?!.*SafeMath|.*unchecked)"),
        ),
        severity=Severity.MEDIUM,
        confidence=0.60,
        description="Potential integer overflow/underflow",
    ),
    "flashLoanAttack": VulnerabilityRule(
        patterns=(
            _rule(r"flashLoan|flash_loan"),
            _rule(r"borrow.*repay"),
            _rule(r"\.balanceOf\(address\(this\)\).*\.transfer"),
        ),
        severity=Severity.HIGH,
        confidence=0.70,
        description="Flash loan attack vector detected",
    ),
    "oracleManipulation": VulnerabilityRule(
        patterns=(
            _rule(r"getPrice|price.*oracle"),
            _rule(r"latestRoundData|getRoundData"),
            _rule(r"\.price\(\)(?!.*require.*timestamp)"),
        ),
        severity=Severity.HIGH,
        confidence=0.65,
        description="Oracle manipulation vulnerability",
    ),
    "mevVulnerability": VulnerabilityRule(
        patterns=(
            _rule(r"block\.timestamp(?!.*require.*\+)"),
            _rule(r"block\.number(?!.*require.*\+)"),
            _rule(r"tx\.gasprice"),
        ),
        severity=Severity.MEDIUM,
        confidence=0.55,
        description="MEV vulnerability detected",
    ),
})

DEFI_PATTERNS: Mapping[str, tuple[re.Pattern, ...]] = MappingProxyType({
    "liquidity_pools": (
        re.compile(r"addLiquidity|removeLiquidity", re.I),
        re.compile(r"getReserves|getAmountOut", re.I),
        re.compile(r"swap|swapExactTokensFor", re.I),
    ),
    "yield_farming": (
        re.compile(r"stake|unstake|harvest", re.I),
        re.compile(r"rewardPerToken|earned", re.I),
        re.compile(r"updateReward|getReward", re.I),
    ),
    "governance": (
        re.compile(r"propose|vote|execute", re.I),
        re.compile(r"quorum|threshold", re.I),
        re.compile(r"timelock|delay", re.I),
    ),
    "flash_loans": (
        re.compile(r"flashLoan|flash_loan", re.I),
        re.compile(r"borrow.*repay", re.I),
        re.compile(r"onFlashLoan", re.I),
    ),
    "oracles": (
        re.compile(r"getPrice|latestRoundData", re.I),
        re.compile(r"oracle|price.*feed", re.I),
        re.compile(r"twap|time.*weighted", re.I),
    ),
})

_STRUCT_RE = re.compile(r"struct\s+\w+\s*\{[\s\S]*?\}", re.I)
_STRUCT_FIELD_RE = re.compile(r"(\w+)\s+(\w+)\s*;")
_LOOP_RE = re.compile(r"for\s*\([^}]*\{[\s\S]*?\}", re.I)
_FUNCTION_RE = re.compile(r"function\s+(\w+)\s*\([^)]*\)[^{;]*[{;]", re.I)
_EMIT_RE = re.compile(r"emit\s+\w+\([^)]*\)", re.I)
_STORAGE_WRITE_RE = re.compile(r"\w+\s*=\s*[^;]+;", re.I)
_STORAGE_READ_RE = re.compile(r"\w+\[\w+\]", re.I)
_STATE_CHANGING = ("=", "delete", "emit", "selfdestruct", "delegatecall", "call")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def get_type_size(type_name: str) -> int:
    """Storage size in bytes of a Solidity value type; unknown types take a slot."""
    return TYPE_SIZES.get(type_name.strip(), SLOT_SIZE)


def extract_struct_fields(struct_code: str) -> list[tuple[str, str, int]]:
    """Return (type, name, size) for each simple `type name;` member."""
    return [
        (m.group(1), m.group(2), get_type_size(m.group(1)))
        for m in _STRUCT_FIELD_RE.finditer(struct_code)
    ]


@dataclass
class PackingAnalysis:
    current_slots: int
    optimized_slots: int
    can_optimize: bool
    recommendation: str = ""
    order: list[str] = field(default_factory=list)


def analyze_struct_packing(sizes: list[int], names: Optional[list[str]] = None) -> PackingAnalysis:
    """Compare the naive slot count with a descending greedy packing.

    current = ceil(sum / 32). optimized sorts sizes descending and opens a
    new slot whenever the running total would exceed 32.
    """
    names = names or [str(i) for i in range(len(sizes))]
    current_slots = math.ceil(sum(sizes) / SLOT_SIZE)

    ordered = sorted(zip(sizes, names), key=lambda pair: pair[0], reverse=True)
    slots = 0
    used = 0
    for size, _ in ordered:
        if slots == 0 or used + size > SLOT_SIZE:
            slots += 1
            used = size
        else:
            used += size

    order = [name for _, name in ordered]
    return PackingAnalysis(
        current_slots=current_slots,
        optimized_slots=slots,
        can_optimize=slots < current_slots,
        recommendation=f"Reorder fields: {', '.join(order)}",
        order=order,
    )


def line_of(source: str, offset: int) -> int:
    return source.count("\n", 0, offset) + 1


def find_line_numbers(source: str, regex: re.Pattern) -> list[int]:
    """1-based line numbers of every match, sorted and unique."""
    return sorted({line_of(source, m.start()) for m in regex.finditer(source)})


def extract_code_snippets(lines: list[str], line_numbers: list[int], context: int = 2) -> list[str]:
    """Snippets of +/- context lines around each 1-based line number."""
    snippets = []
    for n in line_numbers:
        start = max(0, n - 1 - context)
        end = min(len(lines), n + context)
        snippets.append("\n".join(lines[start:end]))
    return snippets


def count_metrics(source: str) -> dict[str, int]:
    return {name: len(regex.findall(source)) for name, regex in _METRIC_PATTERNS.items()}


def estimate_complexity(source: str) -> float:
    """Weighted structural metric counts, divided by 100 and capped at 1."""
    metrics = count_metrics(source)
    weighted = sum(metrics[name] * weight for name, weight in COMPLEXITY_WEIGHTS.items())
    return min(weighted / 100, 1.0)


def _estimate_iterations(loop_code: str) -> int:
    return 10 if "length" in loop_code else 5


def _function_body(source: str, header_end: int) -> str:
    """Text of the brace-balanced block opening just before header_end."""
    depth = 1
    for i in range(header_end, len(source)):
        ch = source[i]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return source[header_end:i]
    return source[header_end:]


# ---------------------------------------------------------------------------
# Scanners
# ---------------------------------------------------------------------------

class SecurityScanner:
    """Vulnerability pattern matching."""

    def __init__(self, source_name: str = "security"):
        self.source_name = source_name

    def scan(self, source: str) -> StaticAnalysis:
        lines = source.split("\n")
        findings: list[Finding] = []
        matched: dict[str, int] = {}

        for vuln_type, rule in VULNERABILITY_PATTERNS.items():
            for pattern in rule.patterns:
                if pattern.unless and pattern.unless in source:
                    continue
                matches = pattern.regex.findall(source)
                if not matches:
                    continue
                line_numbers = find_line_numbers(source, pattern.regex)
                matched[vuln_type] = matched.get(vuln_type, 0) + len(matches)
                findings.append(Finding(
                    kind=FindingKind.VULNERABILITY,
                    category=vuln_type,
                    severity=rule.severity,
                    title=rule.description,
                    description=rule.description,
                    location=", ".join(str(n) for n in line_numbers),
                    confidence=rule.confidence,
                    source=self.source_name,
                    model="static",
                    details={
                        "line_numbers": line_numbers,
                        "code_snippets": extract_code_snippets(lines, line_numbers),
                        "matches": len(matches),
                        "pattern": pattern.regex.pattern,
                    },
                ))

        return StaticAnalysis(
            findings=findings,
            estimates={"complexity": estimate_complexity(source)},
            details={"matches_by_type": matched},
        )


class GasScanner:
    """Storage, loop, function and event cost heuristics."""

    def __init__(self, source_name: str = "gasOptimizer"):
        self.source_name = source_name

    def _finding(
        self,
        category: str,
        severity: Severity,
        description: str,
        line: int,
        savings: int,
        recommendation: str,
        code: str,
    ) -> Finding:
        return Finding(
            kind=FindingKind.OPTIMIZATION,
            category=category,
            severity=severity,
            title=description,
            description=description,
            location=str(line),
            confidence=0.8,
            source=self.source_name,
            model="static",
            remediation=recommendation,
            gas_savings=savings,
            details={"affected_code": code[:500]},
        )

    def _storage(self, source: str, findings: list[Finding]) -> dict:
        structs = []
        for m in _STRUCT_RE.finditer(source):
            fields = extract_struct_fields(m.group(0))
            packing = analyze_struct_packing(
                [size for _, _, size in fields], [name for _, name, _ in fields]
            )
            structs.append({
                "line": line_of(source, m.start()),
                "current_slots": packing.current_slots,
                "optimized_slots": packing.optimized_slots,
            })
            if packing.can_optimize:
                findings.append(self._finding(
                    "struct_packing",
                    Severity.MEDIUM,
                    f"Struct can be optimized to use {packing.optimized_slots} slots "
                    f"instead of {packing.current_slots}",
                    line_of(source, m.start()),
                    (packing.current_slots - packing.optimized_slots) * GAS_COSTS["SSTORE_SET"],
                    packing.recommendation,
                    m.group(0),
                ))

        writes = len(_STORAGE_WRITE_RE.findall(source))
        reads = len(_STORAGE_READ_RE.findall(source))
        return {
            "structs": structs,
            "storage_writes": writes,
            "storage_reads": reads,
            "storage_cost": writes * GAS_COSTS["SSTORE_SET"] + reads * GAS_COSTS["SLOAD"],
        }

    def _loops(self, source: str, findings: list[Finding]) -> dict:
        count = 0
        for m in _LOOP_RE.finditer(source):
            count += 1
            loop = m.group(0)
            line = line_of(source, m.start())
            iterations = _estimate_iterations(loop)
            if ".length" in loop and "uint256 length = " not in loop:
                findings.append(self._finding(
                    "array_length_caching",
                    Severity.MEDIUM,
                    "Cache array length to save gas on each iteration",
                    line,
                    GAS_COSTS["SLOAD"] * iterations,
                    "Store array.length in a local variable before the loop",
                    loop,
                ))
            if "++" in loop and "unchecked" not in loop:
                findings.append(self._finding(
                    "unchecked_arithmetic",
                    Severity.LOW,
                    "Use unchecked arithmetic for loop counters when overflow is impossible",
                    line,
                    UNCHECKED_INCREMENT_SAVINGS * iterations,
                    "Wrap increment operations in unchecked block",
                    loop,
                ))
        return {"loop_count": count}

    def _functions(self, source: str, findings: list[Finding]) -> dict:
        count = 0
        for m in _FUNCTION_RE.finditer(source):
            count += 1
            name = m.group(1)
            header = m.group(0)
            line = line_of(source, m.start())
            words = set(re.findall(r"\w+", header))

            if "public" in words and f"this.{name}" not in source:
                findings.append(self._finding(
                    "function_visibility",
                    Severity.LOW,
                    "Function can be external instead of public",
                    line,
                    VISIBILITY_SAVINGS,
                    "Change visibility from public to external",
                    header,
                ))

            # Declarations without a body have nothing to inspect
            if header.endswith(";") or words & {"view", "pure", "payable"}:
                continue
            body = _function_body(source, m.end())
            if not any(token in body for token in _STATE_CHANGING):
                findings.append(self._finding(
                    "function_state_mutability",
                    Severity.LOW,
                    "Function can be marked as view",
                    line,
                    VIEW_SAVINGS,
                    "Add view modifier to function",
                    header,
                ))
        return {"function_count": count}

    def _events(self, source: str, findings: list[Finding]) -> dict:
        count = 0
        cost = 0
        for m in _EMIT_RE.finditer(source):
            count += 1
            event = m.group(0)
            topics = event.count(",") + 1
            cost += GAS_COSTS[f"LOG{min(topics, 4)}"]
            if topics > 3:
                findings.append(self._finding(
                    "event_optimization",
                    Severity.LOW,
                    "Event has too many indexed parameters",
                    line_of(source, m.start()),
                    (topics - 3) * EXTRA_TOPIC_SAVINGS,
                    "Reduce indexed parameters or pack data",
                    event,
                ))
        return {"event_count": count, "event_cost": cost}

    def scan(self, source: str) -> StaticAnalysis:
        findings: list[Finding] = []
        storage = self._storage(source, findings)
        loops = self._loops(source, findings)
        functions = self._functions(source, findings)
        events = self._events(source, findings)

        total_savings = sum(f.gas_savings or 0 for f in findings)
        estimates = {
            "storage_reads": float(storage["storage_reads"]),
            "storage_writes": float(storage["storage_writes"]),
            "storage_cost": float(storage["storage_cost"]),
            "loop_count": float(loops["loop_count"]),
            "function_count": float(functions["function_count"]),
            "event_count": float(events["event_count"]),
            "event_cost": float(events["event_cost"]),
            "total_potential_savings": float(total_savings),
        }
        return StaticAnalysis(
            findings=findings,
            estimates=estimates,
            details={"structs": storage["structs"]},
        )


class TokenomicsScanner:
    """Distribution, liquidity and governance heuristics."""

    def __init__(self, source_name: str = "tokenomics"):
        self.source_name = source_name

    def _finding(self, category: str, title: str, description: str,
                 severity: Severity, risk: str) -> Finding:
        return Finding(
            kind=FindingKind.TOKENOMICS,
            category=category,
            severity=severity,
            title=title,
            description=description,
            confidence=0.6,
            source=self.source_name,
            model="static",
            details={"risk": risk},
        )

    def scan(self, source: str) -> StaticAnalysis:
        findings: list[Finding] = []
        protections: list[str] = []

        # Distribution
        if re.search(r"function\s+mint\s*\([^)]*\)", source, re.I):
            findings.append(self._finding(
                "distribution", "Minting capability",
                "Contract has minting capability", Severity.MEDIUM, "inflation_risk",
            ))
        if re.search(r"function\s+burn\s*\([^)]*\)|_burn\s*\(", source, re.I):
            findings.append(self._finding(
                "distribution", "Burn mechanism",
                "Contract has token burning capability", Severity.LOW, "deflation_control",
            ))
        owner_checks = len(re.findall(r"onlyOwner|owner\s*==|msg\.sender\s*==\s*owner", source, re.I))
        if owner_checks > OWNER_CHECK_LIMIT:
            findings.append(self._finding(
                "distribution", "Centralized control",
                "High concentration of owner-only functions", Severity.HIGH, "centralization_risk",
            ))

        # Liquidity
        if re.search(r"addLiquidity|removeLiquidity", source, re.I):
            findings.append(self._finding(
                "liquidity", "AMM liquidity pool",
                "Automated Market Maker liquidity pool", Severity.MEDIUM, "impermanent_loss",
            ))
        if re.search(r"stake|unstake", source, re.I):
            findings.append(self._finding(
                "liquidity", "Staking rewards",
                "Staking mechanism for liquidity incentives", Severity.MEDIUM, "reward_manipulation",
            ))
        if re.search(r"\b(?:lock|unlock|timelock)", source, re.I):
            protections.append("liquidity_lock")

        # Governance
        governance_type = "none"
        if re.search(r"function\s+(?:propose|vote|execute)\s*\([^)]*\)", source, re.I):
            governance_type = "on_chain"
            if re.search(r"quorum|threshold", source, re.I):
                protections.append("quorum_requirement")
            else:
                findings.append(self._finding(
                    "governance", "No quorum requirement",
                    "No quorum requirements detected", Severity.HIGH, "governance_attack",
                ))
            if re.search(r"timelock|delay", source, re.I):
                protections.append("execution_delay")
            else:
                findings.append(self._finding(
                    "governance", "No timelock",
                    "No timelock mechanism detected", Severity.CRITICAL, "instant_execution",
                ))

        features = {
            name: sum(len(p.findall(source)) for p in patterns)
            for name, patterns in DEFI_PATTERNS.items()
        }
        estimates = {f"defi_{name}": float(count) for name, count in features.items()}
        estimates["owner_checks"] = float(owner_checks)

        return StaticAnalysis(
            findings=findings,
            estimates=estimates,
            details={
                "governance_type": governance_type,
                "protections": protections,
                "defi_features": features,
            },
        )
