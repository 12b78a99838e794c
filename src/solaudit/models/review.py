"""Audit request and report data models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .finding import Finding


class AnalysisMode(str, Enum):
    QUICK = "quick"
    COMPREHENSIVE = "comprehensive"
    DEFI_FOCUSED = "defi-focused"
    SECURITY_ONLY = "security-only"
    GAS_OPTIMIZATION = "gas-optimization"


class Strategy(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"
    ADAPTIVE = "adaptive"


class RiskLevel(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class AuditStage(str, Enum):
    VALIDATING = "validating"
    SELECTING_AGENTS = "selecting_agents"
    ENRICHING = "enriching"
    EXECUTING = "executing"
    AGGREGATING = "aggregating"
    REPORTING = "reporting"
    PERSISTED = "persisted"
    FAILED = "failed"


class AnalysisRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str
    audit_id: str
    user_id: Optional[str] = None
    mode: Optional[AnalysisMode] = None
    agents: Optional[tuple[str, ...]] = None
    strategy: Optional[Strategy] = None


class ExecutionPlan(BaseModel):
    agents: list[str]
    strategy: Strategy
    order: list[str] = []
    complexity: float = 0.0


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConsensusFinding(_CamelModel):
    finding: Finding
    reported_by: list[str]
    confidence: float


class CrossValidation(_CamelModel):
    consensus_findings: list[ConsensusFinding] = []
    total_findings: int = 0
    group_count: int = 0
    confidence_score: float = 0.0


class FailedAgent(_CamelModel):
    agent: str
    error: str
    timed_out: bool = False


class AgentMetadata(_CamelModel):
    agent: str
    execution_time: float = 0
    tokens_used: int = 0
    cost: float = 0.0
    models_used: list[str] = []
    version: str = ""
    score: int = 50


class ExecutiveSummary(_CamelModel):
    total_vulnerabilities: int = 0
    critical_vulnerabilities: int = 0
    high_vulnerabilities: int = 0
    overall_risk: RiskLevel = RiskLevel.LOW
    key_findings: list[str] = []
    recommended_actions: str = ""


class AggregatedReport(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    audit_id: str
    user_id: Optional[str] = None
    analysis_mode: Optional[AnalysisMode] = None
    strategy: Strategy
    agents_used: list[str] = []
    summary: ExecutiveSummary = ExecutiveSummary()
    vulnerabilities: list[Finding] = []
    gas_optimizations: list[Finding] = []
    tokenomics_findings: list[Finding] = []
    security_score: int = 100
    gas_score: int = 100
    tokenomics_score: int = 100
    overall_score: int = 50
    risk_category: RiskLevel = RiskLevel.LOW
    recommendations: list[str] = []
    agent_metadata: list[AgentMetadata] = []
    cross_validation: CrossValidation = CrossValidation()
    failed_agents: list[FailedAgent] = []
    skipped_agents: list[str] = []
    knowledge_sources: int = 0
    knowledge_fallback: bool = False
    execution_time: float = 0
    timestamp: datetime


class AuditRecord(_CamelModel):
    """Row persisted for a completed audit."""

    audit_id: str
    user_id: Optional[str] = None
    analysis_mode: str = "comprehensive"
    agents_used: list[str] = []
    status: str = "completed"
    vulnerabilities: list[dict] = []
    security_score: int = 100
    gas_optimization_score: int = 100
    overall_score: int = 50
    risk_category: str = "low"
    code_insights: dict = {}
    analysis_duration: float = 0
    agent_results: list[dict] = []
    completed_at: str


class FailureRecord(_CamelModel):
    """Row persisted when an audit fails at any stage."""

    audit_id: str
    user_id: Optional[str] = None
    status: str = "failed"
    error_message: str
    completed_at: str
