"""Tests for the deterministic conflict rule set.

Covers:
- Key normalization and relative value difference
- Duplicate end user: severity band around the 20% threshold, terminal deals
- Territory overlap and timing windows (inclusive edges)
- Missing territory, self-match and symmetry
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from src.dealreg.config import Settings
from src.dealreg.deals.rules import (
    RuleConfig,
    check_duplicate_end_user,
    check_territory_overlap,
    check_timing_conflict,
    evaluate_all,
    normalize_key,
    value_difference,
)
from src.dealreg.deals.schemas import ConflictSeverity, ConflictType, DealStatus
from tests.doubles import NOW, make_deal

CONFIG = RuleConfig()


# ── Helpers ──────────────────────────────────────────────────────────────────


class TestNormalizeKey:
    def test_case_and_whitespace_insensitive(self):
        assert normalize_key("  ACME   corp ") == "acme corp"

    def test_none_and_blank_are_empty(self):
        assert normalize_key(None) == ""
        assert normalize_key("   ") == ""


class TestValueDifference:
    def test_relative_to_average_value(self):
        assert value_difference(Decimal("110000"), Decimal("90000")) == Decimal("0.2")

    def test_symmetric(self):
        assert value_difference(Decimal("120000"), Decimal("100000")) == value_difference(
            Decimal("100000"), Decimal("120000")
        )

    def test_zero_values(self):
        assert value_difference(Decimal("0"), Decimal("0")) == 0
        assert value_difference(Decimal("10"), Decimal("0")) == 2


# ── Duplicate End User ───────────────────────────────────────────────────────


class TestDuplicateEndUser:
    def test_close_values_are_high(self):
        existing = make_deal(value=100_000)
        new = make_deal(value=95_000)
        verdict = check_duplicate_end_user(new, existing, CONFIG)
        assert verdict is not None
        assert verdict.conflict_type == ConflictType.DUPLICATE_END_USER
        assert verdict.severity == ConflictSeverity.HIGH
        assert "Acme Corp" in verdict.reason

    def test_far_values_are_medium(self):
        existing = make_deal(value=100_000)
        new = make_deal(value=200_000)
        verdict = check_duplicate_end_user(new, existing, CONFIG)
        assert verdict.severity == ConflictSeverity.MEDIUM

    @pytest.mark.parametrize(
        ("existing_value", "new_value", "expected"),
        [
            ("90000", "109999.99", ConflictSeverity.HIGH),
            ("90000", "110000", ConflictSeverity.MEDIUM),
            ("110000", "90000", ConflictSeverity.MEDIUM),
            ("110000", "90000.01", ConflictSeverity.HIGH),
        ],
    )
    def test_exactly_twenty_percent_is_medium(self, existing_value, new_value, expected):
        existing = make_deal(value=existing_value)
        new = make_deal(value=new_value)
        assert check_duplicate_end_user(new, existing, CONFIG).severity == expected

    @pytest.mark.parametrize(
        ("first", "second"),
        [("100000", "120000"), ("100000", "117000"), ("100000", "125000")],
    )
    def test_severity_independent_of_submission_order(self, first, second):
        a = make_deal(value=first)
        b = make_deal(value=second)
        b_after_a = check_duplicate_end_user(b, a, CONFIG).severity
        a_after_b = check_duplicate_end_user(a, b, CONFIG).severity
        assert b_after_a == a_after_b

    def test_difference_measured_against_average(self):
        # 120k vs 100k is 20% of the smaller value but about 18% of the average
        a = make_deal(value=100_000)
        b = make_deal(value=120_000)
        assert check_duplicate_end_user(b, a, CONFIG).severity == ConflictSeverity.HIGH

    def test_normalized_names_match(self):
        existing = make_deal(company="Acme Corp", territory="West")
        new = make_deal(company="  acme   CORP ", territory="west ")
        assert check_duplicate_end_user(new, existing, CONFIG) is not None

    def test_different_territory_does_not_match(self):
        existing = make_deal(territory="West")
        new = make_deal(territory="East")
        assert check_duplicate_end_user(new, existing, CONFIG) is None

    @pytest.mark.parametrize("status", [DealStatus.APPROVED, DealStatus.REJECTED])
    def test_terminal_candidate_does_not_match(self, status):
        existing = make_deal(status=status)
        new = make_deal()
        assert check_duplicate_end_user(new, existing, CONFIG) is None

    @pytest.mark.parametrize(
        "status", [DealStatus.PENDING, DealStatus.ASSIGNED, DealStatus.DISPUTED]
    )
    def test_non_terminal_candidate_matches(self, status):
        existing = make_deal(status=status)
        assert check_duplicate_end_user(make_deal(), existing, CONFIG) is not None

    def test_threshold_comes_from_config(self):
        existing = make_deal(value=100_000)
        new = make_deal(value=150_000)
        loose = RuleConfig(duplicate_value_threshold=Decimal("0.60"))
        assert check_duplicate_end_user(new, existing, loose).severity == ConflictSeverity.HIGH

    def test_symmetric_in_matching(self):
        a = make_deal(value=100_000)
        b = make_deal(value=97_000)
        ab = check_duplicate_end_user(a, b, CONFIG)
        ba = check_duplicate_end_user(b, a, CONFIG)
        assert ab is not None and ba is not None
        assert ab.conflict_type == ba.conflict_type


# ── Territory Overlap ────────────────────────────────────────────────────────


class TestTerritoryOverlap:
    def test_different_company_same_territory_within_window(self):
        existing = make_deal(company="Globex", submitted=NOW - timedelta(days=30))
        new = make_deal(company="Acme Corp")
        verdict = check_territory_overlap(new, existing, CONFIG)
        assert verdict.conflict_type == ConflictType.TERRITORY_OVERLAP
        assert verdict.severity == ConflictSeverity.MEDIUM
        assert "30 days apart" in verdict.reason

    def test_window_edge_is_inclusive(self):
        existing = make_deal(company="Globex", submitted=NOW - timedelta(days=90))
        assert check_territory_overlap(make_deal(), existing, CONFIG) is not None

    def test_outside_window(self):
        existing = make_deal(
            company="Globex", submitted=NOW - timedelta(days=90, seconds=1)
        )
        assert check_territory_overlap(make_deal(), existing, CONFIG) is None

    def test_same_company_is_not_territory_overlap(self):
        assert check_territory_overlap(make_deal(), make_deal(), CONFIG) is None

    @pytest.mark.parametrize(("left", "right"), [(None, "West"), ("West", None), (None, None), ("", "")])
    def test_missing_territory_never_matches(self, left, right):
        existing = make_deal(company="Globex", territory=left)
        new = make_deal(territory=right)
        assert check_territory_overlap(new, existing, CONFIG) is None


# ── Timing Conflict ──────────────────────────────────────────────────────────


class TestTimingConflict:
    def test_within_seven_days_is_low(self):
        existing = make_deal(company="Globex", submitted=NOW - timedelta(days=7))
        verdict = check_timing_conflict(make_deal(), existing, CONFIG)
        assert verdict.conflict_type == ConflictType.TIMING_CONFLICT
        assert verdict.severity == ConflictSeverity.LOW

    def test_same_company_also_matches(self):
        existing = make_deal(submitted=NOW - timedelta(days=1))
        assert check_timing_conflict(make_deal(), existing, CONFIG) is not None

    def test_outside_window(self):
        existing = make_deal(submitted=NOW - timedelta(days=8))
        assert check_timing_conflict(make_deal(), existing, CONFIG) is None

    def test_missing_territory(self):
        existing = make_deal(territory=None)
        assert check_timing_conflict(make_deal(territory=None), existing, CONFIG) is None


# ── evaluate_all ─────────────────────────────────────────────────────────────


class TestEvaluateAll:
    def test_pair_can_match_several_types(self):
        existing = make_deal(value=100_000, submitted=NOW - timedelta(days=2))
        new = make_deal(value=95_000)
        types = [v.conflict_type for v in evaluate_all(new, existing, CONFIG)]
        assert types == [ConflictType.DUPLICATE_END_USER, ConflictType.TIMING_CONFLICT]

    def test_never_matches_itself(self):
        deal = make_deal()
        assert evaluate_all(deal, deal, CONFIG) == []
        assert check_duplicate_end_user(deal, deal, CONFIG) is None
        assert check_timing_conflict(deal, deal, CONFIG) is None

    def test_unrelated_deals(self):
        existing = make_deal(company="Globex", territory="East")
        assert evaluate_all(make_deal(), existing, CONFIG) == []

    def test_symmetry_of_detected_types(self):
        a = make_deal(value=100_000, submitted=NOW - timedelta(days=3))
        b = make_deal(company="acme corp", value=101_000)
        forward = {v.conflict_type for v in evaluate_all(a, b, CONFIG)}
        backward = {v.conflict_type for v in evaluate_all(b, a, CONFIG)}
        assert forward == backward

    def test_config_from_settings(self):
        settings = Settings(
            TERRITORY_OVERLAP_WINDOW_DAYS=30,
            TIMING_CONFLICT_WINDOW_DAYS=1,
            DUPLICATE_VALUE_THRESHOLD=0.1,
        )
        config = RuleConfig.from_settings(settings)
        assert config.territory_window_days == 30
        assert config.timing_window_days == 1
        assert config.duplicate_value_threshold == Decimal("0.1")
