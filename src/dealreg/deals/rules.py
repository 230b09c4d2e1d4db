"""Deterministic conflict rules comparing a new deal against one candidate.

Each rule is a pure function ``(new_deal, candidate, config) -> MatchVerdict | None``.
Rules never read the clock or the store; windows and thresholds come from
RuleConfig so tests can pin them. All rules are applied to every candidate and
a pair may match more than one rule.

Rules:
- check_duplicate_end_user: same normalized (company, territory) key, both
  deals non-terminal. HIGH when values differ by less than the threshold
  (relative to the average of the two values), MEDIUM otherwise.
- check_territory_overlap: different companies in the same territory,
  submitted within the territory window. MEDIUM.
- check_timing_conflict: same territory, submitted within the timing window.
  LOW.

Exports:
    RuleConfig, normalize_key, value_difference, evaluate_all, RULES
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from pydantic import BaseModel, Field

from src.dealreg.config import Settings
from src.dealreg.deals.schemas import (
    NON_TERMINAL_STATUSES,
    ConflictSeverity,
    ConflictType,
    DealRead,
    MatchVerdict,
)


class RuleConfig(BaseModel):
    """Tunable windows and thresholds for the rule set."""

    territory_window_days: int = Field(default=90, ge=0)
    timing_window_days: int = Field(default=7, ge=0)
    duplicate_value_threshold: Decimal = Field(default=Decimal("0.20"), ge=0)

    @classmethod
    def from_settings(cls, settings: Settings) -> RuleConfig:
        return cls(
            territory_window_days=settings.TERRITORY_OVERLAP_WINDOW_DAYS,
            timing_window_days=settings.TIMING_CONFLICT_WINDOW_DAYS,
            duplicate_value_threshold=Decimal(str(settings.DUPLICATE_VALUE_THRESHOLD)),
        )


# ── Helpers ─────────────────────────────────────────────────────────────────


def normalize_key(value: str | None) -> str:
    """Normalize a company name or territory for comparison.

    Case-insensitive, trimmed, internal whitespace collapsed. None and blank
    strings normalize to "".
    """
    if not value:
        return ""
    return " ".join(value.split()).lower()


def value_difference(a: Decimal, b: Decimal) -> Decimal:
    """Difference of two deal values relative to their average.

    Symmetric in its arguments, so severity does not depend on which deal
    was submitted first. Two zero values differ by 0.
    """
    a = Decimal(a)
    b = Decimal(b)
    base = (abs(a) + abs(b)) / 2
    if base == 0:
        return Decimal("0")
    return abs(a - b) / base


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _days_apart(a: datetime, b: datetime) -> timedelta:
    return abs(_utc(a) - _utc(b))


def _shared_territory(new_deal: DealRead, candidate: DealRead) -> str | None:
    """Normalized territory both deals share, or None.

    A missing territory on either side never matches.
    """
    left = normalize_key(new_deal.end_customer.territory)
    right = normalize_key(candidate.end_customer.territory)
    if not left or left != right:
        return None
    return left


def _label(deal: DealRead) -> str:
    return deal.end_customer.company_name.strip()


# ── Rules ───────────────────────────────────────────────────────────────────


def check_duplicate_end_user(
    new_deal: DealRead, candidate: DealRead, config: RuleConfig
) -> MatchVerdict | None:
    """Same end customer registered twice while both deals are still open."""
    if candidate.id == new_deal.id:
        return None
    if (
        new_deal.status not in NON_TERMINAL_STATUSES
        or candidate.status not in NON_TERMINAL_STATUSES
    ):
        return None

    new_key = (
        normalize_key(new_deal.end_customer.company_name),
        normalize_key(new_deal.end_customer.territory),
    )
    candidate_key = (
        normalize_key(candidate.end_customer.company_name),
        normalize_key(candidate.end_customer.territory),
    )
    if not new_key[0] or new_key != candidate_key:
        return None

    diff = value_difference(new_deal.total_value, candidate.total_value)
    if diff < config.duplicate_value_threshold:
        severity = ConflictSeverity.HIGH
    else:
        severity = ConflictSeverity.MEDIUM

    diff_text = f"{float(diff):.0%}"
    reason = (
        f'Duplicate end user: "{_label(new_deal)}" is already registered on '
        f"deal {candidate.id} (value difference {diff_text})"
    )
    return MatchVerdict(
        conflict_type=ConflictType.DUPLICATE_END_USER,
        severity=severity,
        reason=reason,
    )


def check_territory_overlap(
    new_deal: DealRead, candidate: DealRead, config: RuleConfig
) -> MatchVerdict | None:
    """Different companies in the same territory within the overlap window."""
    if candidate.id == new_deal.id:
        return None
    territory = _shared_territory(new_deal, candidate)
    if territory is None:
        return None
    if normalize_key(new_deal.end_customer.company_name) == normalize_key(
        candidate.end_customer.company_name
    ):
        return None

    apart = _days_apart(new_deal.submission_date, candidate.submission_date)
    if apart > timedelta(days=config.territory_window_days):
        return None

    reason = (
        f'Territory overlap: "{_label(new_deal)}" and "{_label(candidate)}" are both '
        f'in territory "{new_deal.end_customer.territory.strip()}", submitted '
        f"{apart.days} days apart"
    )
    return MatchVerdict(
        conflict_type=ConflictType.TERRITORY_OVERLAP,
        severity=ConflictSeverity.MEDIUM,
        reason=reason,
    )


def check_timing_conflict(
    new_deal: DealRead, candidate: DealRead, config: RuleConfig
) -> MatchVerdict | None:
    """Two submissions in the same territory inside the short timing window."""
    if candidate.id == new_deal.id:
        return None
    if _shared_territory(new_deal, candidate) is None:
        return None

    apart = _days_apart(new_deal.submission_date, candidate.submission_date)
    if apart > timedelta(days=config.timing_window_days):
        return None

    reason = (
        f"Timing conflict: deal {candidate.id} was submitted in the same territory "
        f"{apart.days} days apart"
    )
    return MatchVerdict(
        conflict_type=ConflictType.TIMING_CONFLICT,
        severity=ConflictSeverity.LOW,
        reason=reason,
    )


Rule = Callable[[DealRead, DealRead, RuleConfig], "MatchVerdict | None"]

RULES: tuple[Rule, ...] = (
    check_duplicate_end_user,
    check_territory_overlap,
    check_timing_conflict,
)


def evaluate_all(
    new_deal: DealRead, candidate: DealRead, config: RuleConfig
) -> list[MatchVerdict]:
    """Run every rule against one candidate and return all matches."""
    if candidate.id == new_deal.id:
        return []
    verdicts = []
    for rule in RULES:
        verdict = rule(new_deal, candidate, config)
        if verdict is not None:
            verdicts.append(verdict)
    return verdicts
