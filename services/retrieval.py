"""
Clerk - Hybrid Retrieval Orchestrator
=====================================
BM25 + embedding similarity + reciprocal rank fusion, with metadata
filters and a fallback chain:

    hybrid  → both stages returned candidates, fused with RRF
    vector  → only the embedding stage returned candidates
    keyword → only BM25 returned candidates
    fallback→ neither did; plain substring match over item text

Any stage that throws counts as "returned nothing". search() never
raises; worst case it answers with a name/category substring match,
which may be empty.
"""

import logging
import re
import time
from dataclasses import dataclass, field

from services.catalog import Catalog, Item
from services.config import RetrievalConfig
from services.keyword_ranker import BM25Ranker
from services.rank_fusion import FusedResult, reciprocal_rank_fusion
from services.vector_matcher import EmbeddingProvider, VectorMatcher

logger = logging.getLogger("clerk.retrieval")


_AMOUNT = r"\$?\s*(\d+(?:,\d{3})*(?:\.\d+)?)"
_UNDER = re.compile(r"\b(?:under|less than|below|cheaper than|max(?:imum)?|up to)\s*" + _AMOUNT, re.I)
_OVER = re.compile(r"\b(?:over|more than|above|at least|min(?:imum)?)\s*" + _AMOUNT, re.I)
_PLUS = re.compile(r"\$(\d+(?:,\d{3})*(?:\.\d+)?)\s*\+")
_BETWEEN = re.compile(r"\bbetween\s*" + _AMOUNT + r"\s*(?:and|-|to)\s*" + _AMOUNT, re.I)


def _amount(raw: str) -> float:
    return float(raw.replace(",", ""))


def extract_price_filters(query: str) -> tuple[float | None, float | None]:
    """Pull (min_price, max_price) out of phrases like "under $300" or "between 50 and 120"."""
    min_price = max_price = None
    if m := _BETWEEN.search(query):
        low, high = sorted((_amount(m.group(1)), _amount(m.group(2))))
        return low, high
    if m := _UNDER.search(query):
        max_price = _amount(m.group(1))
    if m := _OVER.search(query):
        min_price = _amount(m.group(1))
    elif m := _PLUS.search(query):
        min_price = _amount(m.group(1))
    return min_price, max_price


def extract_category(query: str, categories: list[str]) -> str | None:
    """First catalog category named in the query, case-insensitive."""
    lowered = query.lower()
    for category in categories:
        if re.search(rf"\b{re.escape(category.lower())}\b", lowered):
            return category
    return None


@dataclass
class SearchOutcome:
    """What search() hands back to the router and the tool layer."""
    items: list[Item] = field(default_factory=list)
    method: str = "fallback"
    elapsed_ms: float = 0.0
    vector_match_count: int = 0
    keyword_match_count: int = 0

    def to_dict(self) -> dict:
        return {
            "items": [item.model_dump(exclude={"embedding"}) for item in self.items],
            "method": self.method,
            "elapsed_time_ms": round(self.elapsed_ms, 2),
            "vector_match_count": self.vector_match_count,
            "keyword_match_count": self.keyword_match_count,
        }


class HybridRetriever:
    """Coordinates the keyword ranker, vector matcher and fusion for one catalog snapshot."""

    def __init__(self, catalog: Catalog, provider: EmbeddingProvider | None = None,
                 config: RetrievalConfig | None = None):
        self.catalog = catalog
        self.config = config or RetrievalConfig()
        self.keyword = BM25Ranker(
            [(item.id, item.search_text()) for item in catalog],
            k1=self.config.k1,
            b=self.config.b,
            min_token_length=self.config.min_token_length,
        )
        self.vector = VectorMatcher(
            catalog,
            provider,
            threshold=self.config.similarity_threshold,
            timeout=self.config.embedding_timeout,
        )

    # ── Stages ─────────────────────────────────────────────────────────

    def _keyword_stage(self, query: str, limit: int) -> list[str]:
        try:
            return [hit.doc_id for hit in self.keyword.search(query, top_k=limit)]
        except Exception as e:
            logger.error("Keyword stage failed, treating as empty: %s", e)
            return []

    async def _vector_stage(self, query: str, limit: int) -> list[str]:
        try:
            return [hit.item_id for hit in await self.vector.match(query, limit)]
        except Exception as e:
            logger.error("Vector stage failed, treating as empty: %s", e)
            return []

    def _substring_stage(self, query: str) -> list[FusedResult]:
        needle = query.lower().strip()
        if not needle:
            return []
        matches = [item for item in self.catalog if needle in item.search_text().lower()]
        return [FusedResult(item_id=item.id, score=1.0 / (i + 1)) for i, item in enumerate(matches)]

    def _emergency(self, query: str, max_results: int) -> list[Item]:
        needle = query.lower().strip()
        if not needle:
            return []
        return [
            item for item in self.catalog
            if needle in f"{item.name} {item.category}".lower()
        ][:max_results]

    @staticmethod
    def _apply_filters(items: list[Item], category: str | None,
                       min_price: float | None, max_price: float | None) -> list[Item]:
        if category and category.lower() != "all":
            items = [i for i in items if i.category.lower() == category.lower()]
        if min_price is not None:
            items = [i for i in items if i.price >= min_price]
        if max_price is not None:
            items = [i for i in items if i.price <= max_price]
        return items

    # ── Public API ─────────────────────────────────────────────────────

    async def search(self, query: str, category: str | None = None,
                     min_price: float | None = None, max_price: float | None = None,
                     max_results: int | None = None) -> SearchOutcome:
        """
        Rank catalog items against free text.

        Args:
            query:       Free-text query. Price phrases ("under $300") fill in
                         min/max price when those are not given explicitly.
            category:    Case-insensitive category filter ("All" disables it).
            min_price:   Inclusive lower price bound.
            max_price:   Inclusive upper price bound.
            max_results: Result cap (default from config, 10).

        Returns:
            SearchOutcome with the items, the method that produced them,
            elapsed time and per-stage candidate counts.
        """
        started = time.perf_counter()
        max_results = max_results or self.config.default_max_results
        query = query or ""

        try:
            inferred_min, inferred_max = extract_price_filters(query)
            if min_price is None:
                min_price = inferred_min
            if max_price is None:
                max_price = inferred_max

            limit = max_results * 2
            keyword_ids = self._keyword_stage(query, limit)
            vector_ids = await self._vector_stage(query, limit)

            if vector_ids and keyword_ids:
                ranked = [r.item_id for r in reciprocal_rank_fusion(
                    vector_ids, keyword_ids, k=self.config.rrf_k)]
                method = "hybrid"
            elif vector_ids:
                ranked, method = vector_ids, "vector"
            elif keyword_ids:
                ranked, method = keyword_ids, "keyword"
            else:
                logger.warning("No keyword or vector candidates, substring fallback for \"%s\"", query[:50])
                ranked = [r.item_id for r in self._substring_stage(query)]
                method = "fallback"

            items = [item for item in (self.catalog.get(i) for i in ranked) if item is not None]
            items = self._apply_filters(items, category, min_price, max_price)[:max_results]
            outcome = SearchOutcome(
                items=items,
                method=method,
                vector_match_count=len(vector_ids),
                keyword_match_count=len(keyword_ids),
            )
        except Exception as e:
            logger.error("Hybrid search failed, emergency name/category match: %s", e)
            outcome = SearchOutcome(items=self._emergency(query, max_results), method="fallback")

        outcome.elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Search \"%s\": %d items via %s in %.1fms (vector=%d keyword=%d)",
            query[:50], len(outcome.items), outcome.method, outcome.elapsed_ms,
            outcome.vector_match_count, outcome.keyword_match_count,
        )
        return outcome
