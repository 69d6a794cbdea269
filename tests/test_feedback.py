"""
Tests for threshold recommendations learned from review decisions.
"""

import pytest

from recon_engine.exceptions import InvalidInput
from recon_engine.models import ResolutionConfig, ReviewItem, ReviewReason
from recon_engine.reconciliation import ReviewFeedback


def item(n, score):
    return ReviewItem(
        reason=ReviewReason.DIVERGENCE_OUT_OF_TOLERANCE,
        transaction_id=f"t{n}",
        entry_id=f"e{n}",
        score=score,
    )


class TestReviewFeedback:
    """recommend_config() from accepted and rejected items."""

    def test_too_few_decisions_keeps_config(self):
        feedback = ReviewFeedback()
        current = ResolutionConfig()
        for n in range(5):
            feedback.record(item(n, 0.9), accepted=True)

        assert feedback.recommend_config(current) is current

    def test_threshold_above_rejected_scores(self):
        feedback = ReviewFeedback()
        for n, score in enumerate([0.55, 0.6, 0.65, 0.7]):
            feedback.record(item(n, score), accepted=False)
        for n, score in enumerate([0.72, 0.75, 0.8, 0.85, 0.9, 0.95], start=10):
            feedback.record(item(n, score), accepted=True)

        recommended = feedback.recommend_config(ResolutionConfig())

        assert recommended.min_confidence_to_resolve == pytest.approx(0.72)
        assert recommended.tolerance_fraction == ResolutionConfig().tolerance_fraction

    def test_no_separating_threshold_keeps_config(self):
        feedback = ReviewFeedback(min_decisions=4)
        current = ResolutionConfig()
        feedback.record(item(1, 0.95), accepted=False)
        for n in range(2, 6):
            feedback.record(item(n, 0.9), accepted=True)

        assert feedback.recommend_config(current) is current

    def test_recommendation_is_clamped(self):
        feedback = ReviewFeedback(min_decisions=3)
        for n in range(3):
            feedback.record(item(n, 0.1 + n / 100), accepted=True)

        recommended = feedback.recommend_config(ResolutionConfig())

        assert recommended.min_confidence_to_resolve == 0.5

    def test_item_without_score_is_rejected(self):
        feedback = ReviewFeedback()
        unscored = ReviewItem(reason=ReviewReason.UNMATCHED_ENTRY, entry_id="e1")

        with pytest.raises(InvalidInput):
            feedback.record(unscored, accepted=True)

        decision = feedback.record(unscored, accepted=True, score=0.7)
        assert decision.score == 0.7
        assert len(feedback) == 1
