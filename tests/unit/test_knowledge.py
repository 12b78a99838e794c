"""Tests for core/knowledge.py."""

from __future__ import annotations

import pytest

from solaudit.core.errors import KnowledgeRetrievalDegraded
from solaudit.core.knowledge import (
    CORE_DOCUMENTS,
    InMemoryVectorStore,
    JsonVectorStore,
    KnowledgeRetriever,
    cosine_similarity,
    deduplicate_documents,
    extract_contract_patterns,
    format_knowledge_for_prompt,
    generate_search_queries,
    knowledge_focus,
    relevant_core_knowledge,
    summarize_knowledge,
)
from solaudit.models.knowledge import ContractPatterns, KnowledgeDocument
from solaudit.models.review import AnalysisMode


class FakeEmbedder:
    """Embeds every text as the same unit vector unless told to fail on it."""

    def __init__(self, vector=(1.0, 0.0), fail_on: str = ""):
        self.vector = list(vector)
        self.fail_on = fail_on
        self.texts: list[str] = []

    async def embed(self, text):
        self.texts.append(text)
        if self.fail_on and self.fail_on in text:
            raise RuntimeError("embedding service down")
        return list(self.vector)


def _doc(doc_type, title, embedding, content="text"):
    return KnowledgeDocument(doc_type=doc_type, title=title, content=content, embedding=embedding)


class TestCosineSimilarity:
    def test_identical(self):
        assert cosine_similarity([1, 2, 3], [1, 2, 3]) == pytest.approx(1.0)

    def test_orthogonal(self):
        assert cosine_similarity([1, 0], [0, 1]) == 0

    def test_degenerate_inputs(self):
        assert cosine_similarity([], [1]) == 0.0
        assert cosine_similarity([1, 2], [1]) == 0.0
        assert cosine_similarity([0, 0], [1, 1]) == 0.0


class TestKnowledgeFocus:
    @pytest.mark.parametrize("mode,focus", [
        (AnalysisMode.QUICK, "security"),
        (AnalysisMode.SECURITY_ONLY, "security"),
        (AnalysisMode.GAS_OPTIMIZATION, "gas"),
        (AnalysisMode.DEFI_FOCUSED, "tokenomics"),
        (AnalysisMode.COMPREHENSIVE, "comprehensive"),
        (None, "comprehensive"),
    ])
    def test_mapping(self, mode, focus):
        assert knowledge_focus(mode) == focus


class TestPatternsAndQueries:
    def test_extract_patterns(self, governed_token):
        patterns = extract_contract_patterns(governed_token)
        assert patterns.has_governance
        assert patterns.has_loops
        assert patterns.has_events
        assert patterns.has_ownership
        assert not patterns.has_flash_loans
        assert patterns.functions == ["mint", "propose", "total"]
        assert patterns.contract_types == ["GovernedToken"]
        assert 0 <= patterns.complexity <= 1

    def test_comprehensive_queries_sorted_by_priority(self):
        patterns = ContractPatterns(has_external_calls=True, has_loops=True, has_governance=True)
        queries = generate_search_queries(patterns, "comprehensive")

        assert [q.priority for q in queries] == [1, 1, 2, 2]
        assert queries[0].text.startswith("reentrancy")
        assert queries[1].text.startswith("governance")

    def test_analysis_type_gates_queries(self):
        patterns = ContractPatterns(has_external_calls=True, has_loops=True, has_governance=True)
        queries = generate_search_queries(patterns, "security")
        assert len(queries) == 1
        assert queries[0].doc_types == ["vulnerability-db", "audit-checklist"]

    def test_gas_always_queries_storage(self):
        queries = generate_search_queries(ContractPatterns(), "gas")
        assert [q.text for q in queries] == [
            "solidity gas optimization storage packing function visibility"
        ]


class TestCoreKnowledge:
    def test_security_subset(self):
        assert list(relevant_core_knowledge("security")) == ["reentrancy", "accessControl"]

    def test_gas_has_none(self):
        assert relevant_core_knowledge("gas") == {}

    def test_comprehensive_has_all(self):
        core = relevant_core_knowledge("comprehensive")
        assert len(core) == 4
        assert core["reentrancy"]["examples"] == ["DAO hack", "Uniswap V1 vulnerability"]


class TestFallback:
    @pytest.mark.asyncio
    async def test_no_backends(self, vulnerable_bank):
        bundle = await KnowledgeRetriever(None, None).get_contextual_knowledge(vulnerable_bank, "security")

        assert bundle.fallback
        assert bundle.total_sources == 0
        assert bundle.summary.knowledge_quality == "fallback"
        assert list(bundle.core_patterns) == ["reentrancy", "accessControl"]

    @pytest.mark.asyncio
    async def test_embedder_failure_degrades(self, governed_token):
        store = InMemoryVectorStore([_doc("vulnerability-db", "A", [1.0, 0.0])])
        retriever = KnowledgeRetriever(FakeEmbedder(fail_on="access control"), store)

        bundle = await retriever.get_contextual_knowledge(governed_token, "security")
        assert bundle.fallback

    @pytest.mark.asyncio
    async def test_semantic_search_wraps_errors(self):
        retriever = KnowledgeRetriever(FakeEmbedder(fail_on="x"), InMemoryVectorStore())
        with pytest.raises(KnowledgeRetrievalDegraded, match="Semantic search failed"):
            await retriever.semantic_search("x")

    def test_prompt_text(self):
        bundle = KnowledgeRetriever(None, None).fallback_knowledge("tokenomics")
        text = format_knowledge_for_prompt(bundle)
        assert text.startswith("Core patterns:")
        assert "flashLoanAttacks" in text
        assert format_knowledge_for_prompt(None) == "None available."


class TestContextualKnowledge:
    def _store(self):
        return InMemoryVectorStore([
            _doc("vulnerability-db", "Access Control", [1.0, 0.0], content="x" * 50),
            _doc("best-practices", "Patterns", [0.6, 0.8]),
            _doc("defi-patterns", "Flash Loans", [1.0, 0.0]),
        ])

    @pytest.mark.asyncio
    async def test_ranked_and_deduplicated(self, governed_token):
        retriever = KnowledgeRetriever(FakeEmbedder(), self._store(), similarity_threshold=0.5, content_limit=10)

        bundle = await retriever.get_contextual_knowledge(governed_token, "security")

        assert not bundle.fallback
        assert [item.title for item in bundle.knowledge_items] == ["Access Control", "Patterns"]
        assert bundle.knowledge_items[0].relevance == pytest.approx(1.0)
        assert bundle.knowledge_items[1].relevance == pytest.approx(0.8)
        assert bundle.knowledge_items[0].content == "x" * 10
        assert bundle.summary.categories_covered == ["vulnerability-db", "best-practices"]
        assert bundle.summary.knowledge_quality == "high"

    @pytest.mark.asyncio
    async def test_threshold_filters(self, governed_token):
        retriever = KnowledgeRetriever(FakeEmbedder(), self._store(), similarity_threshold=0.7)
        bundle = await retriever.get_contextual_knowledge(governed_token, "security")
        assert [item.title for item in bundle.knowledge_items] == ["Access Control"]

    @pytest.mark.asyncio
    async def test_max_results(self, governed_token):
        retriever = KnowledgeRetriever(FakeEmbedder(), self._store(), similarity_threshold=0.5, max_results=1)
        bundle = await retriever.get_contextual_knowledge(governed_token, "security")
        assert bundle.total_sources == 1

    def test_deduplicate_documents(self):
        docs = [_doc("a", "t", []), _doc("a", "t", []), _doc("b", "t", [])]
        assert len(deduplicate_documents(docs)) == 2

    def test_empty_summary(self):
        summary = summarize_knowledge([], "gas")
        assert summary.average_relevance == 0
        assert summary.knowledge_quality == "low"


class TestIndexing:
    @pytest.mark.asyncio
    async def test_initialize_seeds_once(self):
        store = InMemoryVectorStore()
        retriever = KnowledgeRetriever(FakeEmbedder(), store, batch_delay=0)

        assert await retriever.initialize_knowledge_base() == len(CORE_DOCUMENTS)
        assert await store.count() == 4
        assert await retriever.initialize_knowledge_base() == 0
        assert await store.count() == 4

    @pytest.mark.asyncio
    async def test_failed_document_reported(self):
        retriever = KnowledgeRetriever(
            FakeEmbedder(fail_on="Flash loans"), InMemoryVectorStore(), batch_size=2, batch_delay=0
        )
        results = await retriever.batch_index_documents(CORE_DOCUMENTS)

        assert len(results) == 4
        failed = [r for r in results if r["error"]]
        assert [r["title"] for r in failed] == ["Flash Loan Attack Vectors"]

    @pytest.mark.asyncio
    async def test_initialize_fails_when_nothing_indexed(self):
        retriever = KnowledgeRetriever(FakeEmbedder(fail_on=" "), InMemoryVectorStore(), batch_delay=0)
        with pytest.raises(KnowledgeRetrievalDegraded, match="No core documents indexed"):
            await retriever.initialize_knowledge_base()

    @pytest.mark.asyncio
    async def test_index_document_metadata(self):
        store = InMemoryVectorStore()
        retriever = KnowledgeRetriever(FakeEmbedder(), store)
        doc = await retriever.index_document("openzeppelin", "Ownable", "content", {"tags": ["auth"]})

        assert doc.tags == ["auth"]
        assert doc.metadata["version"] == "1.0"
        assert "indexed_at" in doc.metadata
        assert doc.embedding == [1.0, 0.0]

    @pytest.mark.asyncio
    async def test_initialize_without_store(self):
        with pytest.raises(KnowledgeRetrievalDegraded):
            await KnowledgeRetriever(FakeEmbedder(), None).initialize_knowledge_base()


class TestJsonVectorStore:
    @pytest.mark.asyncio
    async def test_persists_documents(self, tmp_path):
        path = tmp_path / "kb" / "store.json"
        store = JsonVectorStore(path)
        await store.add(_doc("vulnerability-db", "Reentrancy", [1.0, 0.0]))

        reloaded = JsonVectorStore(path)
        assert await reloaded.count() == 1
        [hit] = await reloaded.similarity_search([1.0, 0.0])
        assert hit.title == "Reentrancy"
        assert hit.similarity == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_bom_tolerated(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_bytes(b"\xef\xbb\xbf[]")
        assert await JsonVectorStore(path).count() == 0

    def test_from_config(self, tmp_path):
        assert KnowledgeRetriever.from_config({"knowledge": {}}).store is None
        retriever = KnowledgeRetriever.from_config({"knowledge": {"store_path": str(tmp_path / "s.json")}})
        assert isinstance(retriever.store, JsonVectorStore)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["{not json", '{"title": "x"}', '[{"embedding": "nope"}]'])
    async def test_malformed_file_degrades(self, tmp_path, content):
        path = tmp_path / "store.json"
        path.write_text(content, encoding="utf-8")
        store = JsonVectorStore(path)

        with pytest.raises(KnowledgeRetrievalDegraded, match="Unreadable knowledge store"):
            await store.count()

    @pytest.mark.asyncio
    async def test_malformed_file_falls_back(self, tmp_path, governed_token):
        path = tmp_path / "store.json"
        path.write_bytes(b"\xff\xfe garbage")
        retriever = KnowledgeRetriever(FakeEmbedder(), JsonVectorStore(path))

        bundle = await retriever.get_contextual_knowledge(governed_token, "security")
        assert bundle.fallback
        assert list(bundle.core_patterns) == ["reentrancy", "accessControl"]

    def test_from_config_defers_loading(self, tmp_path):
        path = tmp_path / "s.json"
        path.write_text("{not json", encoding="utf-8")
        retriever = KnowledgeRetriever.from_config({"knowledge": {"store_path": str(path)}})
        assert isinstance(retriever.store, JsonVectorStore)
