"""Knowledge retrieval data models."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ContractPatterns(BaseModel):
    has_external_calls: bool = False
    has_state_changes: bool = False
    has_loops: bool = False
    has_modifiers: bool = False
    has_events: bool = False
    has_inheritance: bool = False
    has_payable: bool = False
    has_ownership: bool = False
    has_tokens: bool = False
    has_defi: bool = False
    has_governance: bool = False
    has_oracles: bool = False
    has_flash_loans: bool = False
    has_upgradeable: bool = False
    functions: list[str] = []
    contract_types: list[str] = []
    complexity: float = 0.0


class SearchQuery(BaseModel):
    text: str
    doc_types: list[str] = []
    priority: int = 2


class KnowledgeDocument(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    doc_type: str
    title: str
    content: str
    embedding: list[float] = []
    source_url: Optional[str] = None
    tags: list[str] = []
    metadata: dict = {}
    similarity: float = 0.0
    relevance_score: float = 0.0


class KnowledgeItem(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    category: str
    title: str
    content: str
    relevance: float = 0.0
    source: Optional[str] = None
    tags: list[str] = []


class KnowledgeSummary(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    analysis_type: str
    categories_covered: list[str] = []
    average_relevance: float = 0.0
    top_sources: list[str] = []
    knowledge_quality: str = "low"


class KnowledgeBundle(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    context_type: str
    total_sources: int = 0
    knowledge_items: list[KnowledgeItem] = []
    core_patterns: dict[str, dict] = {}
    summary: KnowledgeSummary
    fallback: bool = False
