"""
Clerk - Reciprocal Rank Fusion
==============================
Merge ranked id lists using positions only, so BM25 scores and cosine
similarities never need to be put on the same scale.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class FusedResult:
    item_id: str
    score: float


def reciprocal_rank_fusion(*ranked_lists: list[str], k: int = 60) -> list[FusedResult]:
    """
    Sum 1 / (k + rank + 1) per id over every list it appears in (rank is 0-indexed).

    Output is ordered by non-increasing fused score; ties keep the order
    in which ids were first seen.
    """
    totals: dict[str, float] = {}
    for ranked in ranked_lists:
        for rank, item_id in enumerate(ranked):
            totals[item_id] = totals.get(item_id, 0.0) + 1.0 / (k + rank + 1)
    fused = [FusedResult(item_id=i, score=s) for i, s in totals.items()]
    fused.sort(key=lambda r: r.score, reverse=True)
    return fused
