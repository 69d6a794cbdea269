"""
Tests for the similarity and scoring kernel.
"""

import pytest
from datetime import date, timedelta
from decimal import Decimal

from recon_engine.exceptions import ConfigurationConflict
from recon_engine.scoring import (
    ScoringWeights,
    date_score,
    match_score,
    normalize_text,
    relative_difference,
    severity_rank_for_distance,
    text_score,
    value_score,
)

SAMPLE_TEXTS = [
    "",
    "Pagamento Fornecedor ABC",
    "pagamento fornecedor abc!!",
    "Aluguel março",
    "TED própria 123",
    "x",
]

SAMPLE_AMOUNTS = [Decimal("0"), Decimal("0.01"), Decimal("1500.00"), Decimal("-1500.00"), Decimal("1e9")]


class TestDateScore:
    """dateScore decays linearly over the lookback window."""

    def test_same_day_is_one(self):
        assert date_score(date(2024, 3, 10), date(2024, 3, 10), 90) == 1.0

    def test_linear_decay(self):
        base = date(2024, 1, 1)
        assert date_score(base, base + timedelta(days=45), 90) == pytest.approx(0.5)

    def test_out_of_range_clamps_to_zero(self):
        base = date(2024, 1, 1)
        assert date_score(base, base + timedelta(days=90), 90) == 0.0
        assert date_score(base, base + timedelta(days=400), 90) == 0.0

    def test_delta_is_absolute(self):
        base = date(2024, 1, 1)
        later = base + timedelta(days=10)
        assert date_score(base, later, 90) == date_score(later, base, 90)


class TestValueScore:
    """valueScore reaches zero at tolerance * 4."""

    def test_equal_amounts(self):
        for amount in SAMPLE_AMOUNTS:
            assert value_score(amount, amount, 0.02) == 1.0

    def test_partial_score_at_tolerance_boundary(self):
        assert value_score(Decimal("100"), Decimal("98"), 0.02) == pytest.approx(0.75)

    def test_zero_at_four_times_tolerance(self):
        assert value_score(Decimal("100"), Decimal("92"), 0.02) == pytest.approx(0.0, abs=1e-9)
        assert value_score(Decimal("100"), Decimal("50"), 0.02) == 0.0

    def test_relative_difference_uses_larger_magnitude(self):
        assert relative_difference(1000, 1030) == pytest.approx(30 / 1030)


class TestTextScore:
    """textScore is symmetric and reflexive."""

    def test_reflexive(self):
        for text in SAMPLE_TEXTS:
            assert text_score(text, text) == 1.0

    def test_symmetric(self):
        for a in SAMPLE_TEXTS:
            for b in SAMPLE_TEXTS:
                assert text_score(a, b) == text_score(b, a)

    def test_case_and_punctuation_insensitive(self):
        assert text_score("Pagamento Fornecedor ABC", "pagamento, fornecedor abc!!") == 1.0

    def test_one_empty_side(self):
        assert text_score("", "Aluguel") == 0.0
        assert text_score("", "") == 1.0

    def test_normalize_text(self):
        assert normalize_text("  TED   Própria-123 ") == "ted própria 123"


class TestMatchScore:
    """Composite score and its weights."""

    def test_default_weights(self):
        weights = ScoringWeights()
        assert (weights.date, weights.value, weights.text) == (0.25, 0.45, 0.30)

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ConfigurationConflict):
            ScoringWeights(date=0.5, value=0.5, text=0.5)

    def test_weights_must_be_non_negative(self):
        with pytest.raises(ConfigurationConflict):
            ScoringWeights(date=-0.2, value=0.9, text=0.3)

    def test_scenario_pair_scores_above_auto_threshold(self):
        score = match_score(
            date(2024, 3, 10), date(2024, 3, 10),
            Decimal("1500.00"), Decimal("1500.00"),
            "Pagamento Fornecedor ABC", "Pagamento Fornecedor ABC 45",
            tolerance_fraction=0.02,
            max_lookback_days=90,
        )
        assert score >= 0.85

    def test_bounds(self):
        base = date(2024, 1, 1)
        for days in (0, 1, 30, 89, 90, 365):
            for a in SAMPLE_AMOUNTS:
                for b in SAMPLE_AMOUNTS:
                    for text in SAMPLE_TEXTS:
                        score = match_score(
                            base, base + timedelta(days=days), a, b, text, "Aluguel",
                            tolerance_fraction=0.02, max_lookback_days=90,
                        )
                        assert 0.0 <= score <= 1.0


class TestSeverity:
    """Severity is monotonic in distance."""

    def test_bands(self):
        assert severity_rank_for_distance(0.0) == 0
        assert severity_rank_for_distance(0.049) == 0
        assert severity_rank_for_distance(0.05) == 1
        assert severity_rank_for_distance(0.20) == 1
        assert severity_rank_for_distance(0.2001) == 2
        assert severity_rank_for_distance(1.0) == 2

    def test_monotonic(self):
        distances = [i / 1000 for i in range(0, 1500)]
        ranks = [severity_rank_for_distance(d) for d in distances]
        assert ranks == sorted(ranks)
