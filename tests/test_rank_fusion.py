"""
Tests for services/rank_fusion.py - Reciprocal Rank Fusion.
"""

import pytest

from services.rank_fusion import reciprocal_rank_fusion


class TestReciprocalRankFusion:

    def test_single_list_keeps_order(self):
        fused = reciprocal_rank_fusion(["a", "b", "c"])
        assert [r.item_id for r in fused] == ["a", "b", "c"]

    def test_score_formula_zero_indexed(self):
        fused = reciprocal_rank_fusion(["a", "b"], k=60)
        assert fused[0].score == pytest.approx(1 / 61)
        assert fused[1].score == pytest.approx(1 / 62)

    def test_scores_sum_across_lists(self):
        fused = {r.item_id: r.score for r in reciprocal_rank_fusion(["a", "b"], ["b", "a"])}
        assert fused["a"] == pytest.approx(1 / 61 + 1 / 62)
        assert fused["b"] == pytest.approx(1 / 62 + 1 / 61)

    def test_item_in_both_lists_beats_item_in_one(self):
        fused = reciprocal_rank_fusion(["x", "shared"], ["shared", "y"])
        assert fused[0].item_id == "shared"

    def test_every_id_appears_once(self):
        fused = reciprocal_rank_fusion(["a", "b", "c"], ["c", "d"])
        ids = [r.item_id for r in fused]
        assert sorted(ids) == ["a", "b", "c", "d"]

    def test_non_increasing_scores(self):
        fused = reciprocal_rank_fusion(["a", "b", "c", "d"], ["d", "e", "a"], ["b"])
        scores = [r.score for r in fused]
        assert scores == sorted(scores, reverse=True)

    def test_ties_keep_first_seen_order(self):
        fused = reciprocal_rank_fusion(["a", "b"], ["b", "a"])
        assert [r.item_id for r in fused] == ["a", "b"]

    def test_custom_k(self):
        fused = reciprocal_rank_fusion(["a"], k=0)
        assert fused[0].score == pytest.approx(1.0)

    def test_empty_input(self):
        assert reciprocal_rank_fusion() == []
        assert reciprocal_rank_fusion([], []) == []
