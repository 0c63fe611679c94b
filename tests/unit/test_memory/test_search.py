"""Unit tests for metamemory.search module."""

import numpy as np
import pytest
from conftest import make_thread

from metamemory.search import InMemorySimilaritySearch, SimilaritySearch, embed, tokenize
from metamemory.types import ThreadSummary


def archived_thread(name, summary):
    thread = make_thread(name, 0)
    thread.summaries.append(ThreadSummary(level="archival", text=summary, created_at=1.0))
    return thread


@pytest.fixture
def index():
    search = InMemorySimilaritySearch()
    search.add_summary("database_schema", "Designed the users and orders tables in Postgres")
    search.add_summary("deployment", "Configured Kubernetes manifests and helm charts")
    search.add_summary("frontend_styling", "Tailwind themes and responsive layouts")
    return search


class TestEmbedding:
    """Tests for tokenize and embed."""

    def test_tokenize_drops_stopwords_and_short_tokens(self):
        assert tokenize("What is the Postgres schema for a user?") == ["postgres", "schema", "user"]

    def test_embed_is_unit_length(self):
        vector = embed("postgres schema tables")
        assert vector.shape == (256,)
        assert np.isclose(np.linalg.norm(vector), 1.0)

    def test_embed_empty_text_is_zero(self):
        assert not embed("the and of").any()

    def test_embed_deterministic(self):
        assert np.array_equal(embed("helm charts", 64), embed("helm charts", 64))


class TestSearch:
    """Tests for InMemorySimilaritySearch.search."""

    def test_satisfies_protocol(self, index):
        assert isinstance(index, SimilaritySearch)

    @pytest.mark.asyncio
    async def test_ranks_most_relevant_first(self, index):
        results = await index.search("which postgres tables hold orders", top_k=3)
        assert results[0].topic_name == "database_schema"
        assert 0 < results[0].relevance_score <= 1.0
        assert results[0].summary.startswith("Designed the users")

    @pytest.mark.asyncio
    async def test_zero_similarity_not_returned(self, index):
        results = await index.search("kubernetes manifests", top_k=3)
        assert [r.topic_name for r in results] == ["deployment"]

    @pytest.mark.asyncio
    async def test_top_k_limits_results(self, index):
        index.add_summary("database_migrations", "Postgres migrations for the orders tables")
        results = await index.search("postgres orders tables", top_k=1)
        assert len(results) == 1

    @pytest.mark.asyncio
    async def test_empty_index_and_query(self, index):
        assert await InMemorySimilaritySearch().search("postgres") == []
        assert await index.search("the of and") == []
        assert await index.search("postgres", top_k=0) == []

    @pytest.mark.asyncio
    async def test_topic_name_contributes(self):
        search = InMemorySimilaritySearch()
        search.add_summary("billing_invoices", "Discussed numbers")
        results = await search.search("invoices")
        assert [r.topic_name for r in results] == ["billing_invoices"]


class TestIndexMaintenance:
    """Tests for adding, replacing and removing entries."""

    def test_add_thread_uses_summary(self):
        search = InMemorySimilaritySearch()
        search.add_thread(archived_thread("old_topic", "Final record"))
        assert search.get("old_topic").summary == "Final record"

    def test_add_thread_without_summary_skipped(self):
        search = InMemorySimilaritySearch()
        search.add_thread(make_thread("empty", 2))
        assert search.size() == 0

    def test_readding_replaces(self, index):
        index.add_summary("deployment", "Moved to serverless")
        assert index.size() == 3
        assert index.get("deployment").summary == "Moved to serverless"

    def test_remove_thread(self, index):
        assert index.remove_thread("deployment") is True
        assert index.remove_thread("deployment") is False
        assert "deployment" not in index.topic_names()

    def test_clear(self, index):
        index.clear()
        assert index.size() == 0


class TestExportLoad:
    """Tests for exporting and loading embeddings."""

    @pytest.mark.asyncio
    async def test_round_trip(self, index):
        exported = index.export_embeddings()

        restored = InMemorySimilaritySearch()
        restored.load_embeddings(exported)

        assert restored.topic_names() == index.topic_names()
        original = await index.search("postgres tables")
        reloaded = await restored.search("postgres tables")
        assert [r.topic_name for r in reloaded] == [r.topic_name for r in original]

    def test_export_is_copy(self, index):
        exported = index.export_embeddings()
        exported["deployment"].summary = "changed"
        assert index.get("deployment").summary.startswith("Configured")

    @pytest.mark.asyncio
    async def test_dimension_mismatch_reembeds(self, index):
        small = InMemorySimilaritySearch(dimensions=32)
        small.load_embeddings(index.export_embeddings())

        assert len(small.get("deployment").embedding) == 32
        results = await small.search("kubernetes")
        assert results[0].topic_name == "deployment"
