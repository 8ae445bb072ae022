"""
Clerk - Keyword Ranker (BM25)
=============================
Okapi BM25 over the catalog text.

The index is built once per session-open and is read-only afterwards.
Documents sharing no token with the query score exactly 0 and are left
out of the results. Equal scores keep corpus order.
"""

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass

logger = logging.getLogger("clerk.keyword")

_NON_WORD = re.compile(r"[^\w\s]")


def tokenize(text: str, min_length: int = 3) -> list[str]:
    """Lowercase, blank out punctuation, split on whitespace, drop short tokens."""
    cleaned = _NON_WORD.sub(" ", text.lower())
    return [t for t in cleaned.split() if len(t) >= min_length]


@dataclass(frozen=True)
class KeywordHit:
    doc_id: str
    score: float


class BM25Ranker:
    """BM25 index over (doc_id, text) pairs."""

    def __init__(self, documents: list[tuple[str, str]], k1: float = 1.5,
                 b: float = 0.75, min_token_length: int = 3):
        self.k1 = k1
        self.b = b
        self.min_token_length = min_token_length
        self._doc_ids: list[str] = []
        self._term_freqs: list[Counter] = []
        self._doc_lengths: list[int] = []
        self.idf: dict[str, float] = {}
        self.avg_doc_length = 0.0
        self._build(documents)

    def __len__(self) -> int:
        return len(self._doc_ids)

    def _build(self, documents: list[tuple[str, str]]) -> None:
        doc_freq: Counter = Counter()
        for doc_id, text in documents:
            tokens = tokenize(text, self.min_token_length)
            self._doc_ids.append(doc_id)
            self._term_freqs.append(Counter(tokens))
            self._doc_lengths.append(len(tokens))
            doc_freq.update(set(tokens))

        n = len(self._doc_ids)
        if n:
            self.avg_doc_length = sum(self._doc_lengths) / n
        for term, df in doc_freq.items():
            self.idf[term] = math.log((n - df + 0.5) / (df + 0.5) + 1)

        logger.info(
            "BM25 index built: %d docs, %d terms, avg length %.1f",
            n, len(self.idf), self.avg_doc_length,
        )

    def score(self, query_tokens: list[str], index: int) -> float:
        """BM25 score of one document for already-tokenized query terms."""
        freqs = self._term_freqs[index]
        if self.avg_doc_length > 0:
            length_ratio = self._doc_lengths[index] / self.avg_doc_length
        else:
            length_ratio = 0.0
        total = 0.0
        for term in query_tokens:
            tf = freqs.get(term, 0)
            if not tf:
                continue
            numerator = tf * (self.k1 + 1)
            denominator = tf + self.k1 * (1 - self.b + self.b * length_ratio)
            total += self.idf.get(term, 0.0) * numerator / denominator
        return total

    def search(self, query: str, top_k: int = 10) -> list[KeywordHit]:
        """Top-k documents by descending score; zero scores are dropped."""
        query_tokens = tokenize(query, self.min_token_length)
        if not query_tokens or not self._doc_ids:
            return []

        hits = []
        for i, doc_id in enumerate(self._doc_ids):
            s = self.score(query_tokens, i)
            if s > 0:
                hits.append(KeywordHit(doc_id=doc_id, score=s))
        # sort is stable, so ties stay in corpus order
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:top_k]
