"""Retrieval of auditing knowledge relevant to a contract.

Topic flags extracted from the source drive a handful of semantic searches
against a vector store. Results are merged, re-ranked and trimmed into a
KnowledgeBundle for the agents' prompts. When the store or the embedder is
unavailable the bundle degrades to the built-in core patterns.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Protocol, Sequence, runtime_checkable

from ..models.knowledge import (
    ContractPatterns,
    KnowledgeBundle,
    KnowledgeDocument,
    KnowledgeItem,
    KnowledgeSummary,
    SearchQuery,
)
from ..models.review import AnalysisMode
from .errors import KnowledgeRetrievalDegraded
from .scanner import estimate_complexity

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

KNOWLEDGE_CATEGORIES: Mapping[str, Mapping] = MappingProxyType({
    "solidity-docs": MappingProxyType({
        "description": "Official Solidity documentation",
        "priority": 1,
        "sources": ("https://docs.soliditylang.org/en/latest/", "https://solidity-by-example.org/"),
    }),
    "openzeppelin": MappingProxyType({
        "description": "OpenZeppelin contracts and security patterns",
        "priority": 1,
        "sources": (
            "https://docs.openzeppelin.com/contracts/",
            "https://github.com/OpenZeppelin/openzeppelin-contracts",
        ),
    }),
    "audit-checklist": MappingProxyType({
        "description": "Security audit checklists and methodologies",
        "priority": 2,
        "sources": (
            "https://github.com/ConsenSys/smart-contract-best-practices",
            "https://swcregistry.io/",
            "https://github.com/crytic/building-secure-contracts",
        ),
    }),
    "vulnerability-db": MappingProxyType({
        "description": "Known vulnerability patterns and exploits",
        "priority": 1,
        "sources": (
            "https://swcregistry.io/",
            "https://consensys.github.io/smart-contract-best-practices/",
            "https://github.com/sigp/solidity-security-blog",
        ),
    }),
    "best-practices": MappingProxyType({
        "description": "Development best practices and patterns",
        "priority": 2,
        "sources": (
            "https://consensys.github.io/smart-contract-best-practices/",
            "https://github.com/ethereum/EIPs",
        ),
    }),
    "defi-patterns": MappingProxyType({
        "description": "DeFi protocols and tokenomics patterns",
        "priority": 1,
        "sources": (
            "https://docs.uniswap.org/",
            "https://docs.aave.com/",
            "https://docs.compound.finance/",
        ),
    }),
})

DEFAULT_CATEGORY_PRIORITY = 3

CORE_KNOWLEDGE: Mapping[str, Mapping] = MappingProxyType({
    "reentrancy": MappingProxyType({
        "pattern": "External calls followed by state changes",
        "mitigation": "Use checks-effects-interactions pattern or reentrancy guards",
        "examples": ("DAO hack", "Uniswap V1 vulnerability"),
        "severity": "critical",
    }),
    "accessControl": MappingProxyType({
        "pattern": "Missing or weak access controls",
        "mitigation": "Use OpenZeppelin AccessControl or Ownable",
        "examples": ("Parity wallet hack", "BNB Bridge exploit"),
        "severity": "high",
    }),
    "flashLoanAttacks": MappingProxyType({
        "pattern": "Price manipulation using borrowed funds",
        "mitigation": "Use time-weighted average prices (TWAP)",
        "examples": ("bZx attacks", "Harvest Finance exploit"),
        "severity": "critical",
    }),
    "governanceAttacks": MappingProxyType({
        "pattern": "Malicious governance proposals",
        "mitigation": "Implement timelock and quorum requirements",
        "examples": ("Compound governance attack", "Beanstalk exploit"),
        "severity": "critical",
    }),
})

# Core patterns shown per analysis type; comprehensive shows all of them
CORE_PATTERN_FILTER: Mapping[str, tuple[str, ...]] = MappingProxyType({
    "security": ("reentrancy", "accessControl"),
    "tokenomics": ("flashLoanAttacks", "governanceAttacks"),
    "gas": (),
})

# Doc types that earn the analysis-type bonus when ranking
ANALYSIS_DOC_TYPES: Mapping[str, tuple[str, ...]] = MappingProxyType({
    "security": ("vulnerability-db", "audit-checklist"),
    "gas": ("best-practices", "solidity-docs"),
    "tokenomics": ("defi-patterns",),
})

CORE_DOCUMENTS: tuple[dict, ...] = (
    {
        "doc_type": "vulnerability-db",
        "title": "Reentrancy Attack Pattern",
        "content": (
            "Reentrancy attacks occur when external calls are made before state changes "
            "are finalized. The attacker can recursively call back into the contract before "
            "the first invocation is finished. Use checks-effects-interactions pattern or "
            "reentrancy guards."
        ),
        "metadata": {"severity": "critical", "tags": ["reentrancy", "security"]},
    },
    {
        "doc_type": "vulnerability-db",
        "title": "Access Control Vulnerabilities",
        "content": (
            "Missing or weak access controls allow unauthorized users to execute privileged "
            "functions. Always implement proper role-based access control using OpenZeppelin "
            "AccessControl or similar patterns."
        ),
        "metadata": {"severity": "high", "tags": ["access-control", "authorization"]},
    },
    {
        "doc_type": "defi-patterns",
        "title": "Flash Loan Attack Vectors",
        "content": (
            "Flash loans enable attackers to manipulate prices and exploit DeFi protocols "
            "without initial capital. Implement time-weighted average prices (TWAP) and "
            "proper slippage protection."
        ),
        "metadata": {"severity": "critical", "tags": ["flash-loans", "defi", "price-manipulation"]},
    },
    {
        "doc_type": "best-practices",
        "title": "Gas Optimization Techniques",
        "content": (
            "Optimize gas usage through storage packing, function visibility optimization, "
            "loop optimization, and using unchecked arithmetic where safe. Cache array "
            "lengths and use memory instead of storage for temporary data."
        ),
        "metadata": {"category": "optimization", "tags": ["gas", "optimization", "performance"]},
    },
)

_PATTERN_FLAGS: Mapping[str, re.Pattern] = MappingProxyType({
    "has_external_calls": re.compile(r"\.call\(|\.delegatecall\(|\.staticcall\(", re.I),
    "has_state_changes": re.compile(r"=\s*[^=]", re.I),
    "has_loops": re.compile(r"for\s*\(|while\s*\(", re.I),
    "has_modifiers": re.compile(r"modifier\s+\w+", re.I),
    "has_events": re.compile(r"emit\s+\w+", re.I),
    "has_inheritance": re.compile(r"\bis\s+\w+", re.I),
    "has_payable": re.compile(r"payable", re.I),
    "has_ownership": re.compile(r"owner|onlyOwner", re.I),
    "has_tokens": re.compile(r"ERC20|ERC721|ERC1155|token", re.I),
    "has_defi": re.compile(r"swap|liquidity|stake|yield|farm|pool", re.I),
    "has_governance": re.compile(r"vote|proposal|governance|timelock", re.I),
    "has_oracles": re.compile(r"oracle|price|feed|chainlink", re.I),
    "has_flash_loans": re.compile(r"flashLoan|flash_loan|borrow.*repay", re.I),
    "has_upgradeable": re.compile(r"proxy|upgrade|implementation", re.I),
})


def knowledge_focus(mode: Optional[AnalysisMode | str]) -> str:
    """Map an analysis mode onto the retriever's analysis type."""
    value = mode.value if isinstance(mode, AnalysisMode) else mode
    if value in ("quick", "security-only"):
        return "security"
    if value == "gas-optimization":
        return "gas"
    if value == "defi-focused":
        return "tokenomics"
    return "comprehensive"


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


# ---------------------------------------------------------------------------
# Store and embedder interfaces
# ---------------------------------------------------------------------------

@runtime_checkable
class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...


@runtime_checkable
class VectorStore(Protocol):
    async def add(self, document: KnowledgeDocument) -> KnowledgeDocument: ...

    async def count(self) -> int: ...

    async def similarity_search(
        self,
        query_embedding: list[float],
        doc_types: Optional[list[str]] = None,
        limit: int = 5,
        similarity_threshold: float = 0.6,
    ) -> list[KnowledgeDocument]: ...


class InMemoryVectorStore:
    """Brute-force cosine search over documents held in a list."""

    def __init__(self, documents: Optional[Iterable[KnowledgeDocument]] = None):
        self.documents: list[KnowledgeDocument] = list(documents or [])

    async def add(self, document: KnowledgeDocument) -> KnowledgeDocument:
        self.documents.append(document)
        return document

    async def count(self) -> int:
        return len(self.documents)

    async def similarity_search(
        self,
        query_embedding: list[float],
        doc_types: Optional[list[str]] = None,
        limit: int = 5,
        similarity_threshold: float = 0.6,
    ) -> list[KnowledgeDocument]:
        scored = []
        for doc in self.documents:
            if doc_types and doc.doc_type not in doc_types:
                continue
            similarity = cosine_similarity(query_embedding, doc.embedding)
            if similarity >= similarity_threshold:
                scored.append(doc.model_copy(update={"similarity": similarity}))
        scored.sort(key=lambda d: d.similarity, reverse=True)
        return scored[:limit]


class JsonVectorStore(InMemoryVectorStore):
    """InMemoryVectorStore persisted to a single JSON file.

    The file is read on first use; an unreadable or malformed file raises
    KnowledgeRetrievalDegraded.
    """

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        self._loaded = False

    def _load(self) -> None:
        if self._loaded:
            return
        if self.path.exists():
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8-sig") or "[]")
                if not isinstance(raw, list):
                    raise ValueError("expected a JSON array of documents")
                self.documents = [KnowledgeDocument.model_validate(item) for item in raw]
            except (OSError, ValueError) as e:
                raise KnowledgeRetrievalDegraded(f"Unreadable knowledge store {self.path}: {e}") from e
        self._loaded = True

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [d.model_dump(mode="json", by_alias=True) for d in self.documents]
        self.path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

    async def add(self, document: KnowledgeDocument) -> KnowledgeDocument:
        self._load()
        await super().add(document)
        self._write()
        return document

    async def count(self) -> int:
        self._load()
        return await super().count()

    async def similarity_search(
        self,
        query_embedding: list[float],
        doc_types: Optional[list[str]] = None,
        limit: int = 5,
        similarity_threshold: float = 0.6,
    ) -> list[KnowledgeDocument]:
        self._load()
        return await super().similarity_search(query_embedding, doc_types, limit, similarity_threshold)


# ---------------------------------------------------------------------------
# Retriever
# ---------------------------------------------------------------------------

def extract_contract_patterns(source: str) -> ContractPatterns:
    flags = {name: bool(regex.search(source)) for name, regex in _PATTERN_FLAGS.items()}
    return ContractPatterns(
        **flags,
        functions=re.findall(r"function\s+(\w+)", source, re.I),
        contract_types=re.findall(r"contract\s+(\w+)", source, re.I),
        complexity=estimate_complexity(source),
    )


def generate_search_queries(patterns: ContractPatterns, analysis_type: str) -> list[SearchQuery]:
    """Queries gated by topic flags and analysis type, most important first."""
    queries: list[SearchQuery] = []
    everything = analysis_type == "comprehensive"

    if analysis_type == "security" or everything:
        if patterns.has_external_calls:
            queries.append(SearchQuery(
                text="reentrancy attacks external calls security vulnerabilities",
                doc_types=["vulnerability-db", "audit-checklist"],
                priority=1,
            ))
        if patterns.has_ownership:
            queries.append(SearchQuery(
                text="access control ownership vulnerabilities privilege escalation",
                doc_types=["vulnerability-db", "best-practices"],
                priority=1,
            ))
        if patterns.has_flash_loans:
            queries.append(SearchQuery(
                text="flash loan attacks price manipulation DeFi exploits",
                doc_types=["vulnerability-db", "defi-patterns"],
                priority=1,
            ))

    if analysis_type == "gas" or everything:
        if patterns.has_loops:
            queries.append(SearchQuery(
                text="gas optimization loops array length caching unchecked arithmetic",
                doc_types=["best-practices", "solidity-docs"],
                priority=2,
            ))
        queries.append(SearchQuery(
            text="solidity gas optimization storage packing function visibility",
            doc_types=["best-practices", "solidity-docs"],
            priority=2,
        ))

    if analysis_type == "tokenomics" or everything:
        if patterns.has_defi:
            queries.append(SearchQuery(
                text="DeFi tokenomics liquidity mining yield farming economic attacks",
                doc_types=["defi-patterns", "vulnerability-db"],
                priority=1,
            ))
        if patterns.has_governance:
            queries.append(SearchQuery(
                text="governance attacks voting mechanisms timelock security",
                doc_types=["vulnerability-db", "defi-patterns"],
                priority=1,
            ))

    if patterns.has_tokens or patterns.has_ownership:
        queries.append(SearchQuery(
            text="OpenZeppelin contracts security patterns access control",
            doc_types=["openzeppelin", "best-practices"],
            priority=2,
        ))

    return sorted(queries, key=lambda q: q.priority)


def relevant_core_knowledge(analysis_type: str) -> dict[str, dict]:
    keys = CORE_PATTERN_FILTER.get(analysis_type)
    return {
        name: {k: list(v) if isinstance(v, tuple) else v for k, v in entry.items()}
        for name, entry in CORE_KNOWLEDGE.items()
        if keys is None or name in keys
    }


def calculate_relevance_score(
    doc: KnowledgeDocument, patterns: ContractPatterns, analysis_type: str
) -> float:
    score = doc.similarity
    category = KNOWLEDGE_CATEGORIES.get(doc.doc_type)
    priority = category["priority"] if category else DEFAULT_CATEGORY_PRIORITY
    score += (4 - priority) * 0.1

    if doc.doc_type in ANALYSIS_DOC_TYPES.get(analysis_type, ()):
        score += 0.2

    content = doc.content.lower()
    if patterns.has_flash_loans and "flash loan" in content:
        score += 0.15
    if patterns.has_governance and "governance" in content:
        score += 0.15
    if patterns.has_defi and "defi" in content:
        score += 0.1

    return min(score, 1.0)


class KnowledgeRetriever:
    def __init__(
        self,
        embedder: Optional[Embedder],
        store: Optional[VectorStore],
        limit: int = 5,
        similarity_threshold: float = 0.6,
        max_results: int = 20,
        content_limit: int = 1000,
        batch_size: int = 5,
        batch_delay: float = 1.0,
    ):
        self.embedder = embedder
        self.store = store
        self.limit = limit
        self.similarity_threshold = similarity_threshold
        self.max_results = max_results
        self.content_limit = content_limit
        self.batch_size = batch_size
        self.batch_delay = batch_delay

    @classmethod
    def from_config(cls, config: dict) -> "KnowledgeRetriever":
        """Build from the knowledge section; no store path means no store."""
        from ..providers.embeddings import OpenAIEmbedder

        section = config.get("knowledge") or {}
        store_path = section.get("store_path")
        store = JsonVectorStore(Path(store_path)) if store_path else None
        embedder = OpenAIEmbedder(
            model=section.get("embedding_model", "text-embedding-3-small"),
            api_key_env=section.get("api_key_env", "OPENAI_API_KEY"),
        )
        return cls(
            embedder,
            store,
            limit=section.get("limit", 5),
            similarity_threshold=section.get("similarity_threshold", 0.6),
            max_results=section.get("max_results", 20),
            content_limit=section.get("content_limit", 1000),
            batch_size=section.get("batch_size", 5),
            batch_delay=section.get("batch_delay_seconds", 1),
        )

    def _require_backends(self) -> tuple[Embedder, VectorStore]:
        if self.embedder is None or self.store is None:
            raise KnowledgeRetrievalDegraded("No knowledge store or embedder configured")
        return self.embedder, self.store

    async def semantic_search(
        self,
        query: str,
        doc_types: Optional[list[str]] = None,
        limit: Optional[int] = None,
        similarity_threshold: Optional[float] = None,
    ) -> list[KnowledgeDocument]:
        embedder, store = self._require_backends()
        try:
            embedding = await embedder.embed(query)
            results = await store.similarity_search(
                embedding,
                doc_types,
                limit=limit or self.limit,
                similarity_threshold=(
                    self.similarity_threshold if similarity_threshold is None else similarity_threshold
                ),
            )
        except KnowledgeRetrievalDegraded:
            raise
        except Exception as e:
            raise KnowledgeRetrievalDegraded(f"Semantic search failed: {e}") from e
        logger.debug("Found %d documents for query %r", len(results), query)
        return results

    async def get_contextual_knowledge(
        self, source: str, analysis_type: str = "security"
    ) -> KnowledgeBundle:
        """Ranked knowledge for a contract, or the fallback bundle on any failure."""
        try:
            patterns = extract_contract_patterns(source)
            queries = generate_search_queries(patterns, analysis_type)
            self._require_backends()
            batches = await asyncio.gather(*(
                self.semantic_search(q.text, q.doc_types) for q in queries
            ))
        except KnowledgeRetrievalDegraded as e:
            logger.warning("Knowledge retrieval degraded, using core patterns: %s", e)
            return self.fallback_knowledge(analysis_type)

        unique = deduplicate_documents(doc for batch in batches for doc in batch)
        ranked = self.rank_results(unique, patterns, analysis_type)
        logger.info("Retrieved %d contextual knowledge items", len(ranked))
        return self.format_knowledge(ranked, analysis_type)

    def rank_results(
        self, docs: list[KnowledgeDocument], patterns: ContractPatterns, analysis_type: str
    ) -> list[KnowledgeDocument]:
        scored = [
            d.model_copy(update={"relevance_score": calculate_relevance_score(d, patterns, analysis_type)})
            for d in docs
        ]
        scored.sort(key=lambda d: d.relevance_score, reverse=True)
        return scored[: self.max_results]

    def format_knowledge(self, docs: list[KnowledgeDocument], analysis_type: str) -> KnowledgeBundle:
        items = [
            KnowledgeItem(
                category=d.doc_type,
                title=d.title,
                content=d.content[: self.content_limit],
                relevance=d.relevance_score,
                source=d.source_url,
                tags=d.tags,
            )
            for d in docs
        ]
        return KnowledgeBundle(
            context_type=analysis_type,
            total_sources=len(items),
            knowledge_items=items,
            core_patterns=relevant_core_knowledge(analysis_type),
            summary=summarize_knowledge(docs, analysis_type),
        )

    def fallback_knowledge(self, analysis_type: str) -> KnowledgeBundle:
        return KnowledgeBundle(
            context_type=analysis_type,
            total_sources=0,
            knowledge_items=[],
            core_patterns=relevant_core_knowledge(analysis_type),
            summary=KnowledgeSummary(analysis_type=analysis_type, knowledge_quality="fallback"),
            fallback=True,
        )

    async def index_document(
        self, doc_type: str, title: str, content: str, metadata: Optional[dict] = None
    ) -> KnowledgeDocument:
        embedder, store = self._require_backends()
        metadata = dict(metadata or {})
        metadata.setdefault("version", "1.0")
        metadata.setdefault("indexed_at", datetime.now(timezone.utc).isoformat())
        document = KnowledgeDocument(
            doc_type=doc_type,
            title=title,
            content=content,
            embedding=await embedder.embed(content),
            source_url=metadata.get("source_url"),
            tags=list(metadata.get("tags") or []),
            metadata=metadata,
        )
        await store.add(document)
        logger.info("Indexed document: %s (%s)", title, doc_type)
        return document

    async def batch_index_documents(self, documents: Sequence[dict]) -> list[dict]:
        """Index in batches; a failed document is reported, not raised."""
        results: list[dict] = []
        for start in range(0, len(documents), self.batch_size):
            batch = documents[start:start + self.batch_size]
            outcomes = await asyncio.gather(
                *(
                    self.index_document(d["doc_type"], d["title"], d["content"], d.get("metadata"))
                    for d in batch
                ),
                return_exceptions=True,
            )
            for doc, outcome in zip(batch, outcomes):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                if isinstance(outcome, BaseException):
                    logger.warning("Failed to index %s: %s", doc.get("title"), outcome)
                    results.append({"title": doc.get("title"), "error": str(outcome)})
                else:
                    results.append({"title": outcome.title, "error": None})
            if start + self.batch_size < len(documents):
                await asyncio.sleep(self.batch_delay)

        indexed = sum(1 for r in results if r["error"] is None)
        logger.info("Batch indexed %d/%d documents", indexed, len(documents))
        return results

    async def initialize_knowledge_base(self) -> int:
        """Seed the core documents into an empty store. Returns how many were indexed.

        Raises KnowledgeRetrievalDegraded when none of them could be indexed.
        """
        _, store = self._require_backends()
        existing = await store.count()
        if existing > 0:
            logger.info("Knowledge base already contains %d documents", existing)
            return 0
        results = await self.batch_index_documents(CORE_DOCUMENTS)
        indexed = sum(1 for r in results if r["error"] is None)
        if indexed == 0:
            raise KnowledgeRetrievalDegraded(f"No core documents indexed: {results[0]['error']}")
        return indexed


def deduplicate_documents(docs: Iterable[KnowledgeDocument]) -> list[KnowledgeDocument]:
    seen: set[tuple[str, str]] = set()
    unique = []
    for doc in docs:
        key = (doc.doc_type, doc.title)
        if key in seen:
            continue
        seen.add(key)
        unique.append(doc)
    return unique


def summarize_knowledge(docs: list[KnowledgeDocument], analysis_type: str) -> KnowledgeSummary:
    categories: list[str] = []
    for d in docs:
        if d.doc_type not in categories:
            categories.append(d.doc_type)
    average = sum(d.relevance_score for d in docs) / len(docs) if docs else 0.0
    quality = "high" if average > 0.8 else "medium" if average > 0.6 else "low"
    return KnowledgeSummary(
        analysis_type=analysis_type,
        categories_covered=categories,
        average_relevance=average,
        top_sources=[d.title for d in docs[:3]],
        knowledge_quality=quality,
    )


def format_knowledge_for_prompt(bundle: Optional[KnowledgeBundle]) -> str:
    """Render a bundle as plain text for inclusion in an agent prompt."""
    if bundle is None:
        return "None available."
    lines: list[str] = []
    if bundle.core_patterns:
        lines.append("Core patterns:")
        for name, entry in bundle.core_patterns.items():
            lines.append(
                f"- {name} [{entry.get('severity', 'info')}]: {entry.get('pattern', '')}. "
                f"Mitigation: {entry.get('mitigation', '')}"
            )
    if bundle.knowledge_items:
        lines.append(f"Reference material ({bundle.total_sources} sources):")
        for item in bundle.knowledge_items:
            lines.append(f"- [{item.category}] {item.title} (relevance {item.relevance:.2f}): {item.content}")
    return "\n".join(lines) if lines else "None available."
