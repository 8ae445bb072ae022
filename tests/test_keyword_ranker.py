"""
Tests for services/keyword_ranker.py - BM25 Keyword Ranker.

Covers:
  - tokenize (case, punctuation, short tokens)
  - IDF formula and average document length
  - zero-score documents left out
  - ordering, ties in corpus order, top_k
  - empty corpus and empty query
"""

import math

import pytest

from services.keyword_ranker import BM25Ranker, KeywordHit, tokenize


DOCS = [
    ("a", "linen shirt summer linen"),
    ("b", "wool overcoat winter"),
    ("c", "linen throw blanket"),
    ("d", "canvas sneakers white"),
]


# ══════════════════════════════════════════════════════════════════════
#  tokenize
# ══════════════════════════════════════════════════════════════════════

class TestTokenize:

    def test_lowercases_and_splits(self):
        assert tokenize("Suede BLAZER Outerwear") == ["suede", "blazer", "outerwear"]

    def test_punctuation_becomes_whitespace(self):
        assert tokenize("camp-collar, linen!") == ["camp", "collar", "linen"]

    def test_drops_tokens_shorter_than_three(self):
        assert tokenize("a to the cat of it") == ["the", "cat"]

    def test_custom_min_length(self):
        assert tokenize("ox cat mouse", min_length=4) == ["mouse"]

    def test_empty_text(self):
        assert tokenize("") == []


# ══════════════════════════════════════════════════════════════════════
#  Index statistics
# ══════════════════════════════════════════════════════════════════════

class TestIndex:

    def test_document_count(self):
        assert len(BM25Ranker(DOCS)) == 4

    def test_average_length(self):
        ranker = BM25Ranker(DOCS)
        assert ranker.avg_doc_length == pytest.approx((4 + 3 + 3 + 3) / 4)

    def test_idf_formula(self):
        ranker = BM25Ranker(DOCS)
        n, df = 4, 2  # "linen" appears in a and c
        assert ranker.idf["linen"] == pytest.approx(math.log((n - df + 0.5) / (df + 0.5) + 1))

    def test_idf_rarer_term_is_higher(self):
        ranker = BM25Ranker(DOCS)
        assert ranker.idf["wool"] > ranker.idf["linen"]

    def test_idf_always_positive(self):
        ranker = BM25Ranker([("a", "same word"), ("b", "same word")])
        assert all(v > 0 for v in ranker.idf.values())


# ══════════════════════════════════════════════════════════════════════
#  Search
# ══════════════════════════════════════════════════════════════════════

class TestSearch:

    def test_no_shared_token_scores_zero_and_is_dropped(self):
        hits = BM25Ranker(DOCS).search("leather jacket")
        assert hits == []

    def test_only_matching_docs_returned(self):
        ids = [h.doc_id for h in BM25Ranker(DOCS).search("linen")]
        assert set(ids) == {"a", "c"}

    def test_higher_term_frequency_ranks_first(self):
        hits = BM25Ranker(DOCS).search("linen")
        assert hits[0].doc_id == "a"

    def test_scores_non_increasing(self):
        hits = BM25Ranker(DOCS).search("linen winter white shirt")
        scores = [h.score for h in hits]
        assert scores == sorted(scores, reverse=True)
        assert all(s > 0 for s in scores)

    def test_ties_keep_corpus_order(self):
        ranker = BM25Ranker([("x", "red scarf"), ("y", "red scarf"), ("z", "red scarf")])
        assert [h.doc_id for h in ranker.search("scarf")] == ["x", "y", "z"]

    def test_top_k_truncates(self):
        ranker = BM25Ranker([(str(i), "wool knit") for i in range(8)])
        assert len(ranker.search("wool", top_k=3)) == 3

    def test_hits_are_keyword_hits(self):
        hit = BM25Ranker(DOCS).search("canvas")[0]
        assert isinstance(hit, KeywordHit)
        assert hit.doc_id == "d"

    def test_query_of_only_short_tokens(self):
        assert BM25Ranker(DOCS).search("a an of") == []

    def test_empty_corpus(self):
        ranker = BM25Ranker([])
        assert ranker.avg_doc_length == 0.0
        assert ranker.search("linen") == []

    def test_query_is_case_insensitive(self):
        ranker = BM25Ranker(DOCS)
        assert [h.doc_id for h in ranker.search("WOOL")] == ["b"]
