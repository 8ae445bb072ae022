"""
Tests for services/retrieval.py - Hybrid Retrieval Orchestrator.

Covers:
  - method selection: hybrid / vector / keyword / fallback
  - metadata filters (category, inclusive price bounds, "All")
  - price and category extraction from free text
  - a failing stage counts as empty; a failing pipeline falls back
  - the "leather jacket under $300" walkthrough
"""

import math

import pytest

from services.catalog import Catalog
from services.config import RetrievalConfig
from services.retrieval import (
    HybridRetriever,
    SearchOutcome,
    extract_category,
    extract_price_filters,
)
from services.vector_matcher import build_item_embeddings

from conftest import FakeEmbeddingProvider, make_item


def _warm(catalog: Catalog, provider: FakeEmbeddingProvider) -> Catalog:
    return catalog.with_embeddings(build_item_embeddings(catalog, provider))


# ══════════════════════════════════════════════════════════════════════
#  Text extraction
# ══════════════════════════════════════════════════════════════════════

class TestExtractPriceFilters:

    def test_under(self):
        assert extract_price_filters("leather jacket under $300") == (None, 300.0)

    def test_less_than_without_dollar(self):
        assert extract_price_filters("a lamp less than 150") == (None, 150.0)

    def test_over(self):
        assert extract_price_filters("boots over $100") == (100.0, None)

    def test_plus_suffix(self):
        assert extract_price_filters("coats $200+") == (200.0, None)

    def test_between(self):
        assert extract_price_filters("shirts between 50 and 120") == (50.0, 120.0)

    def test_between_reversed_bounds(self):
        assert extract_price_filters("between $120 and $50") == (50.0, 120.0)

    def test_thousands_separator(self):
        assert extract_price_filters("under $1,200") == (None, 1200.0)

    def test_no_price(self):
        assert extract_price_filters("something warm") == (None, None)


class TestExtractCategory:

    CATEGORIES = ["Outerwear", "Basics", "Home", "Footwear"]

    def test_case_insensitive(self):
        assert extract_category("only OUTERWEAR please", self.CATEGORIES) == "Outerwear"

    def test_word_boundary(self):
        assert extract_category("homes and gardens", self.CATEGORIES) is None

    def test_none_when_absent(self):
        assert extract_category("a linen shirt", self.CATEGORIES) is None


# ══════════════════════════════════════════════════════════════════════
#  Method selection
# ══════════════════════════════════════════════════════════════════════

class TestMethodSelection:

    @pytest.mark.asyncio
    async def test_hybrid_when_both_stages_hit(self, catalog):
        provider = FakeEmbeddingProvider()
        retriever = HybridRetriever(_warm(catalog, provider), provider)
        outcome = await retriever.search("suede blazer")
        assert outcome.method == "hybrid"
        assert outcome.items[0].id == "out-001"
        assert outcome.keyword_match_count >= 1
        assert outcome.vector_match_count >= 1

    @pytest.mark.asyncio
    async def test_keyword_when_no_provider(self, catalog):
        outcome = await HybridRetriever(catalog).search("linen summer shirt")
        assert outcome.method == "keyword"
        assert outcome.items[0].id == "app-001"
        assert outcome.vector_match_count == 0

    @pytest.mark.asyncio
    async def test_keyword_when_embedding_fails(self, catalog):
        warm = _warm(catalog, FakeEmbeddingProvider())
        retriever = HybridRetriever(warm, FakeEmbeddingProvider(fail=True))
        outcome = await retriever.search("linen summer shirt")
        assert outcome.method == "keyword"
        assert [i.id for i in outcome.items] == ["app-001"]

    @pytest.mark.asyncio
    async def test_substring_fallback_when_no_candidates(self, catalog):
        # "wo" is below the minimum token length, so BM25 sees nothing
        outcome = await HybridRetriever(catalog).search("wo")
        assert outcome.method == "fallback"
        assert [i.id for i in outcome.items] == ["out-002"]

    @pytest.mark.asyncio
    async def test_fallback_may_be_empty(self, catalog):
        outcome = await HybridRetriever(catalog).search("zz")
        assert outcome.method == "fallback"
        assert outcome.items == []

    @pytest.mark.asyncio
    async def test_method_is_always_known(self, catalog):
        retriever = HybridRetriever(catalog)
        for query in ("", "linen", "qq", "white canvas"):
            outcome = await retriever.search(query)
            assert outcome.method in ("hybrid", "vector", "keyword", "fallback")

    @pytest.mark.asyncio
    async def test_elapsed_time_recorded(self, catalog):
        outcome = await HybridRetriever(catalog).search("linen")
        assert outcome.elapsed_ms >= 0.0


# ══════════════════════════════════════════════════════════════════════
#  Filters
# ══════════════════════════════════════════════════════════════════════

class TestFilters:

    @pytest.mark.asyncio
    async def test_category_filter_case_insensitive(self, catalog):
        outcome = await HybridRetriever(catalog).search("white", category="footwear")
        assert [i.id for i in outcome.items] == ["ftw-001"]

    @pytest.mark.asyncio
    async def test_all_category_disables_filter(self, catalog):
        outcome = await HybridRetriever(catalog).search("white", category="All")
        assert {i.id for i in outcome.items} == {"bas-001", "ftw-001"}

    @pytest.mark.asyncio
    async def test_price_bounds_inclusive(self, catalog):
        outcome = await HybridRetriever(catalog).search("white", min_price=45, max_price=90)
        assert {i.id for i in outcome.items} == {"bas-001", "ftw-001"}

    @pytest.mark.asyncio
    async def test_price_bound_excludes(self, catalog):
        outcome = await HybridRetriever(catalog).search("white", max_price=60)
        assert [i.id for i in outcome.items] == ["bas-001"]

    @pytest.mark.asyncio
    async def test_price_inferred_from_query(self, catalog):
        outcome = await HybridRetriever(catalog).search("white under $60")
        assert [i.id for i in outcome.items] == ["bas-001"]

    @pytest.mark.asyncio
    async def test_explicit_price_beats_inferred(self, catalog):
        outcome = await HybridRetriever(catalog).search("white under $60", max_price=100)
        assert {i.id for i in outcome.items} == {"bas-001", "ftw-001"}

    @pytest.mark.asyncio
    async def test_every_result_satisfies_filters(self, catalog):
        outcome = await HybridRetriever(catalog).search(
            "white linen wool canvas", category="Outerwear", min_price=300)
        assert all(i.category == "Outerwear" and i.price >= 300 for i in outcome.items)

    @pytest.mark.asyncio
    async def test_max_results_truncates(self):
        items = [make_item(f"k-{i}", f"Knit Beanie {i}", "Accessories", 30) for i in range(15)]
        outcome = await HybridRetriever(Catalog(items)).search("knit beanie", max_results=4)
        assert len(outcome.items) == 4

    @pytest.mark.asyncio
    async def test_default_max_results_from_config(self):
        items = [make_item(f"k-{i}", f"Knit Beanie {i}", "Accessories", 30) for i in range(15)]
        retriever = HybridRetriever(Catalog(items), config=RetrievalConfig(default_max_results=6))
        outcome = await retriever.search("knit beanie")
        assert len(outcome.items) == 6


# ══════════════════════════════════════════════════════════════════════
#  Failure handling
# ══════════════════════════════════════════════════════════════════════

class TestFailures:

    @pytest.mark.asyncio
    async def test_keyword_stage_error_counts_as_empty(self, catalog, monkeypatch):
        provider = FakeEmbeddingProvider()
        retriever = HybridRetriever(_warm(catalog, provider), provider)

        def boom(*args, **kwargs):
            raise RuntimeError("index corrupted")

        monkeypatch.setattr(retriever.keyword, "search", boom)
        outcome = await retriever.search("suede blazer")
        assert outcome.method == "vector"
        assert outcome.keyword_match_count == 0

    @pytest.mark.asyncio
    async def test_pipeline_error_uses_name_category_match(self, catalog, monkeypatch):
        retriever = HybridRetriever(catalog)

        def boom(*args, **kwargs):
            raise RuntimeError("filter bug")

        monkeypatch.setattr(retriever, "_apply_filters", boom)
        outcome = await retriever.search("blazer")
        assert outcome.method == "fallback"
        assert [i.id for i in outcome.items] == ["out-001"]

    @pytest.mark.asyncio
    async def test_empty_catalog(self):
        outcome = await HybridRetriever(Catalog()).search("anything")
        assert outcome.items == []
        assert outcome.method == "fallback"


# ══════════════════════════════════════════════════════════════════════
#  Walkthrough: semantic match without keyword overlap
# ══════════════════════════════════════════════════════════════════════

class TestLeatherJacketUnder300:

    QUERY = "leather jacket under $300"

    @pytest.fixture
    def retriever(self):
        items = [
            make_item("blazer", "Suede Blazer", "Outerwear", 280, 210, ["tailored", "camel"]),
            make_item("coat", "Wool Overcoat", "Outerwear", 350, 270, ["wool", "winter"]),
            make_item("shirt", "Linen Camp Shirt", "Apparel", 95, 72, ["linen", "summer"]),
        ]
        embeddings = {
            "blazer": [0.42, math.sqrt(1 - 0.42 ** 2)],   # cosine 0.42 with the query
            "coat": [0.9, math.sqrt(1 - 0.9 ** 2)],       # very similar, but too expensive
            "shirt": [0.0, 1.0],
        }
        catalog = Catalog(items).with_embeddings(embeddings)
        provider = FakeEmbeddingProvider(vectors={self.QUERY: [1.0, 0.0]})
        return HybridRetriever(catalog, provider)

    @pytest.mark.asyncio
    async def test_no_keyword_candidates(self, retriever):
        assert retriever.keyword.search(self.QUERY) == []

    @pytest.mark.asyncio
    async def test_vector_method_and_blazer_included(self, retriever):
        outcome = await retriever.search(self.QUERY)
        assert outcome.method == "vector"
        assert [i.name for i in outcome.items] == ["Suede Blazer"]

    @pytest.mark.asyncio
    async def test_over_budget_item_excluded_despite_similarity(self, retriever):
        outcome = await retriever.search(self.QUERY)
        assert outcome.vector_match_count == 2
        assert all(i.price <= 300 for i in outcome.items)

    @pytest.mark.asyncio
    async def test_to_dict_shape(self, retriever):
        data = (await retriever.search(self.QUERY)).to_dict()
        assert data["method"] == "vector"
        assert "embedding" not in data["items"][0]
        assert set(data) == {"items", "method", "elapsed_time_ms",
                             "vector_match_count", "keyword_match_count"}


class TestSearchOutcome:

    def test_defaults(self):
        outcome = SearchOutcome()
        assert outcome.items == []
        assert outcome.method == "fallback"
