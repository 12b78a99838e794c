"""Finding data models."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: object, default: Optional["Severity"] = None) -> "Severity":
        """Coerce a model-supplied severity string, falling back to default."""
        fallback = default or cls.INFO
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return fallback
        try:
            return cls(value.strip().lower())
        except ValueError:
            return fallback


SEVERITY_RANK: dict[Severity, int] = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
    Severity.INFO: 0,
}


class FindingKind(str, Enum):
    VULNERABILITY = "vulnerability"
    OPTIMIZATION = "optimization"
    TOKENOMICS = "tokenomics"


class Finding(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    kind: FindingKind
    category: str
    severity: Severity = Severity.INFO
    title: str = ""
    description: str = ""
    location: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    source: str = ""
    model: str = ""
    remediation: str = ""
    gas_savings: Optional[int] = None
    reported_by: list[str] = []
    details: dict = {}

    def dedup_key(self) -> tuple[str, str]:
        if self.kind == FindingKind.TOKENOMICS:
            return (self.category.lower(), self.title.strip().lower())
        return (self.category.lower(), self.location.strip())


class FindingSummary(BaseModel):
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    info: int = 0
    total: int = 0
