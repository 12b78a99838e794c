"""Agent data models."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .finding import Finding, FindingSummary
from .knowledge import KnowledgeBundle


class AgentKind(str, Enum):
    SECURITY = "security"
    GAS_OPTIMIZER = "gasOptimizer"
    TOKENOMICS = "tokenomics"

    @classmethod
    def from_name(cls, name: str) -> Optional["AgentKind"]:
        for kind in cls:
            if kind.value == name:
                return kind
        return None


class AgentDef(BaseModel):
    key: AgentKind
    name: str
    role: str
    color: str = "white"


class AgentSettings(BaseModel):
    """Execution settings for one agent, resolved from config."""

    model_config = ConfigDict(frozen=True)

    timeout: float = 120
    dependencies: tuple[AgentKind, ...] = ()
    required: bool = False
    priority: int = 1
    models: tuple[str, ...] = ()


class StaticAnalysis(BaseModel):
    findings: list[Finding] = []
    estimates: dict[str, float] = {}
    details: dict = {}


class AgentOptions(BaseModel):
    audit_id: Optional[str] = None
    contextual_knowledge: Optional[KnowledgeBundle] = None
    previous_results: list["AgentResult"] = []


class AgentResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    agent: AgentKind
    name: str
    version: str = "2.0.0"
    status: str = "success"
    findings: list[Finding] = []
    summary: FindingSummary = FindingSummary()
    score: int = 50
    risk_level: str = "low"
    models_used: list[str] = []
    tokens_used: int = 0
    cost: float = 0.0
    execution_time: float = 0
    static_analysis: StaticAnalysis = StaticAnalysis()
    extras: dict = {}


class AgentRun(BaseModel):
    """Outcome of one agent invocation inside the orchestrator."""

    agent: AgentKind
    status: str
    result: Optional[AgentResult] = None
    error: Optional[str] = None
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == "success" and self.result is not None


AgentOptions.model_rebuild()
