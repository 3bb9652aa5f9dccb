"""Tests for the pure scoring engine.

No database, no fixtures: every function here is a deterministic transform.
"""
from __future__ import annotations

from datetime import date, timedelta
from itertools import product

import pytest

from rapport import scoring
from rapport.scoring import (
    ScoreValidationError,
    compute_attention_gap,
    compute_contribution_score,
    compute_heat,
    compute_potential_score,
    evaluate_contact,
)


# ---------------------------------------------------------------------------
# Heat
# ---------------------------------------------------------------------------


class TestComputeHeat:
    def test_fresh_and_warm_is_green(self):
        result = compute_heat(0, 30, 3, 5, 1)
        assert result.heat_index == 1.0
        assert result.heat_status == "green"

    def test_one_period_with_defaults_is_yellow(self):
        # R=0.5, E=0.5, Q=2/3, T=0.5
        result = compute_heat(30, 30, 2, 3, 0)
        assert result.heat_index == 0.53
        assert result.heat_status == "yellow"

    def test_cold_relationship_is_red(self):
        result = compute_heat(90, 30, 0, 1, -1)
        assert result.heat_index == 0.0
        assert result.heat_status == "red"

    def test_index_stays_in_unit_interval(self):
        for days, q, e, t in product((0, 15, 60, 400), (0, 3), (1, 5), (-1, 0, 1)):
            idx = compute_heat(days, 30, q, e, t).heat_index
            assert 0.0 <= idx <= 1.0

    def test_non_increasing_in_days(self):
        previous = None
        for days in range(0, 120):
            idx = compute_heat(days, 21, 2, 3, 0).heat_index
            if previous is not None:
                assert idx <= previous
            previous = idx

    def test_increasing_in_quality_and_energy(self):
        low_q = compute_heat(10, 30, 0, 3, 0).heat_index
        high_q = compute_heat(10, 30, 3, 3, 0).heat_index
        assert high_q > low_q
        low_e = compute_heat(10, 30, 2, 1, 0).heat_index
        high_e = compute_heat(10, 30, 2, 5, 0).heat_index
        assert high_e > low_e

    def test_zero_frequency_is_always_overdue(self):
        for days in (0, 5, 1000):
            result = compute_heat(days, 0, 3, 5, 1)
            assert result.heat_index == 0.0
            assert result.heat_status == "red"

    def test_negative_frequency_does_not_raise(self):
        assert compute_heat(3, -7, 2, 3, 0).heat_status == "red"

    def test_future_contact_counts_as_zero_days(self):
        assert compute_heat(-5, 30, 2, 3, 0) == compute_heat(0, 30, 2, 3, 0)

    def test_out_of_range_inputs_are_clamped(self):
        assert compute_heat(0, 30, 9, 99, 5) == compute_heat(0, 30, 3, 5, 1)
        assert compute_heat(0, 30, -2, -4, -3) == compute_heat(0, 30, 0, 1, -1)

    def test_strict_mode_names_the_field(self):
        with pytest.raises(ScoreValidationError) as exc_info:
            compute_heat(0, 30, 4, 3, 0, strict=True)
        assert exc_info.value.field == "response_quality"

    def test_strict_mode_rejects_bad_trend(self):
        with pytest.raises(ScoreValidationError):
            compute_heat(0, 30, 2, 3, 2, strict=True)

    def test_idempotent(self):
        assert compute_heat(12, 30, 1, 4, -1) == compute_heat(12, 30, 1, 4, -1)


class TestHeatStatusFor:
    @pytest.mark.parametrize("index,status", [
        (1.0, "green"), (0.7, "green"), (0.69, "yellow"),
        (0.4, "yellow"), (0.39, "red"), (0.0, "red"),
    ])
    def test_thresholds(self, index, status):
        assert scoring.heat_status_for(index) == status


class TestDaysSinceLastContact:
    def test_never_contacted_is_one_period(self):
        assert scoring.days_since_last_contact(None, 45) == 45

    def test_counts_calendar_days(self):
        today = date(2026, 3, 10)
        assert scoring.days_since_last_contact(date(2026, 3, 1), 30, today) == 9


# ---------------------------------------------------------------------------
# Contribution / potential
# ---------------------------------------------------------------------------


class TestContributionScore:
    @pytest.mark.parametrize("args,score,cls", [
        ((3, 3, 3), 9, "A"),
        ((0, 0, 0), 0, "D"),
        ((2, 2, 1), 5, "B"),
        ((3, 2, 2), 7, "A"),
        ((1, 1, 0), 2, "C"),
        ((1, 0, 0), 1, "D"),
    ])
    def test_examples(self, args, score, cls):
        result = compute_contribution_score(*args)
        assert result.score == score
        assert result.score_class == cls

    def test_clamps_sub_scores_before_summing(self):
        result = compute_contribution_score(5, -1, 2)
        assert result.score == 5
        assert result.score_class == "B"

    def test_none_counts_as_zero(self):
        assert compute_contribution_score(None, None, 3).score == 3

    def test_strict_mode_rejects(self):
        with pytest.raises(ScoreValidationError) as exc_info:
            compute_contribution_score(5, 0, 0, strict=True)
        assert exc_info.value.field == "financial"


class TestPotentialScore:
    @pytest.mark.parametrize("args,score,cls", [
        ((3, 3, 3, 3, 3), 15, "A"),
        ((3, 3, 3, 2, 1), 12, "A"),
        ((2, 2, 2, 1, 1), 8, "B"),
        ((1, 1, 1, 1, 0), 4, "C"),
        ((1, 1, 1, 0, 0), 3, "D"),
    ])
    def test_examples(self, args, score, cls):
        result = compute_potential_score(*args)
        assert result.score == score
        assert result.score_class == cls

    def test_total_bounded(self):
        assert compute_potential_score(9, 9, 9, 9, 9).score == 15
        assert compute_potential_score(-3, -3, -3, -3, -3).score == 0


class TestImportance:
    def test_lookup_is_total(self):
        for c, p in product(scoring.SCORE_CLASSES, repeat=2):
            assert scoring.importance_level(c, p) in scoring.IMPORTANCE_LEVELS

    def test_table_covers_exactly_all_pairs(self):
        expected = {c + p for c, p in product(scoring.SCORE_CLASSES, repeat=2)}
        assert set(scoring.IMPORTANCE_BY_VALUE_CATEGORY) == expected

    def test_value_category_is_concatenation(self):
        assert scoring.value_category("A", "B") == "AB"

    def test_known_levels(self):
        assert scoring.importance_level("A", "A") == "A"
        assert scoring.importance_level("B", "B") == "B"
        assert scoring.importance_level("D", "D") == "C"

    def test_recommended_attention(self):
        assert scoring.recommended_attention_level("A") == 8
        assert scoring.recommended_attention_level("B") == 5
        assert scoring.recommended_attention_level("C") == 3

    def test_tables_are_immutable(self):
        with pytest.raises(TypeError):
            scoring.IMPORTANCE_BY_VALUE_CATEGORY["AA"] = "C"  # type: ignore[index]


# ---------------------------------------------------------------------------
# Attention gap
# ---------------------------------------------------------------------------


class TestAttentionGap:
    @pytest.mark.parametrize("actual,recommended,gap,status", [
        (8, 8, 0, "green"),
        (5, 7, 2, "yellow"),
        (2, 9, 7, "red"),
        (9, 3, -6, "green"),
        (4, 5, 1, "yellow"),
        (4, 7, 3, "red"),
    ])
    def test_examples(self, actual, recommended, gap, status):
        result = compute_attention_gap(actual, recommended)
        assert result.gap == gap
        assert result.status == status

    def test_clamps_to_one_through_ten(self):
        result = compute_attention_gap(0, 15)
        assert result.gap == 9
        assert result.status == "red"

    def test_strict_mode_rejects(self):
        with pytest.raises(ScoreValidationError):
            compute_attention_gap(11, 5, strict=True)


# ---------------------------------------------------------------------------
# Sub-scores from recorded totals
# ---------------------------------------------------------------------------


class TestSubscoresFromTotals:
    def test_empty_totals(self):
        assert scoring.contribution_subscores_from_totals({}) == {
            "financial": 0, "network": 0, "trust": 0,
        }

    def test_financial_tiers(self):
        def fin(amount, count=1):
            return scoring.contribution_subscores_from_totals(
                {"financial": {"total_amount": amount, "count": count}})["financial"]
        assert fin(150_000) == 3
        assert fin(100_000) == 3
        assert fin(10_000) == 2
        assert fin(500) == 1
        # a record without an amount still counts
        assert fin(0, count=1) == 1
        assert fin(0, count=0) == 0

    def test_count_tiers(self):
        totals = {
            "network": {"total_amount": 0, "count": 2},
            "trust": {"total_amount": 0, "count": 5},
        }
        result = scoring.contribution_subscores_from_totals(totals)
        assert result["network"] == 2
        assert result["trust"] == 3


# ---------------------------------------------------------------------------
# Whole-contact evaluation
# ---------------------------------------------------------------------------


def _evaluate(**overrides):
    kwargs = dict(
        contribution_details={}, potential_details={}, attention_level=1,
        last_contact_date=None, desired_frequency_days=30, response_quality=2,
        relationship_energy=3, attention_trend=0, today=date(2026, 6, 1),
    )
    kwargs.update(overrides)
    return evaluate_contact(**kwargs)


class TestEvaluateContact:
    def test_defaults(self):
        m = _evaluate()
        assert m.value_category == "DD"
        assert m.importance_level == "C"
        assert m.recommended_attention_level == 3
        assert m.attention_gap == 2
        assert m.attention_gap_status == "yellow"
        assert m.days_since_last_contact == 30
        assert m.heat_index == 0.53
        assert m.heat_status == "yellow"

    def test_high_value_contact(self):
        m = _evaluate(
            contribution_details={"financial": 3, "network": 3, "trust": 3},
            potential_details={k: 3 for k in scoring.POTENTIAL_KEYS},
            attention_level=8,
        )
        assert m.value_category == "AA"
        assert m.importance_level == "A"
        assert m.attention_gap == 0
        assert m.attention_gap_status == "green"

    def test_recent_contact_is_warm(self):
        today = date(2026, 6, 1)
        m = _evaluate(last_contact_date=today - timedelta(days=1), response_quality=3,
                      relationship_energy=5, attention_trend=1, today=today)
        assert m.days_since_last_contact == 1
        assert m.heat_status == "green"

    def test_future_date_reports_zero_days(self):
        today = date(2026, 6, 1)
        m = _evaluate(last_contact_date=today + timedelta(days=10), today=today)
        assert m.days_since_last_contact == 0

    def test_details_are_clamped_and_completed(self):
        m = _evaluate(contribution_details={"financial": 7}, potential_details={"synergy": -2})
        assert m.contribution_details == {"financial": 3, "network": 0, "trust": 0}
        assert m.potential_details["synergy"] == 0
        assert set(m.potential_details) == set(scoring.POTENTIAL_KEYS)

    def test_attention_level_clamped(self):
        assert _evaluate(attention_level=42).attention_level == 10

    def test_as_dict_has_every_field(self):
        d = _evaluate().as_dict()
        assert d["heat_status"] == "yellow"
        assert "attention_gap_status" in d
        assert isinstance(d["contribution_details"], dict)

    def test_idempotent(self):
        assert _evaluate() == _evaluate()
