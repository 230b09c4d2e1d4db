"""Tests for ConflictDetectionEngine with in-memory repositories.

Covers:
- Acme Corp / West scenarios (high -> disputed, medium -> stays pending)
- Idempotent re-detection (one open row per pair and type) and read-only preview
- Per-record write failures reported without suppressing other records
- Compare-and-set race on the disputed status step
- Ordering, suggestions, candidate filtering and conflict.created events
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from src.dealreg.deals.detection import ConflictDetectionEngine, build_suggestions
from src.dealreg.deals.errors import NotFoundError, RepositoryUnavailable
from src.dealreg.deals.notifications import ConflictNotifier
from src.dealreg.deals.schemas import (
    ConflictCandidate,
    ConflictSeverity,
    ConflictType,
    DealCreate,
    DealStatus,
    EndCustomerCreate,
    ResolutionStatus,
)
from src.dealreg.events.schemas import ConflictEventType
from tests.doubles import (
    FAST_RETRY,
    NOW,
    RecordingBus,
    make_deal,
    make_repositories,
)


def _engine(deals, conflicts, notifier=None, prefilter=True):
    return ConflictDetectionEngine(
        deal_repository=deals,
        conflict_repository=conflicts,
        retry_policy=FAST_RETRY,
        notifier=notifier,
        prefilter_by_territory=prefilter,
    )


@pytest.fixture
def repos():
    return make_repositories()


# ── Acme Corp scenarios ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_close_duplicate_disputes_new_deal(repos):
    """A=100k pending, B=95k same customer -> high duplicate, B disputed."""
    deals, conflicts = repos
    a = deals.add(make_deal(value=100_000, submitted=NOW - timedelta(days=30)))
    b = deals.add(make_deal(value=95_000))

    result = await _engine(deals, conflicts).detect_conflicts(b)

    assert result.has_conflicts is True
    assert result.deal_status == DealStatus.DISPUTED
    assert deals.deals[b.id].status == DealStatus.DISPUTED
    assert deals.deals[a.id].status == DealStatus.PENDING
    [conflict] = result.conflicts
    assert conflict.conflict_type == ConflictType.DUPLICATE_END_USER
    assert conflict.severity == ConflictSeverity.HIGH
    assert conflict.competing_deal_id == a.id
    [row] = conflicts.rows.values()
    assert row.deal_id == b.id and row.competing_deal_id == a.id
    assert row.resolution_status == ResolutionStatus.PENDING


@pytest.mark.asyncio
async def test_far_duplicate_leaves_deal_pending(repos):
    """A=100k, B=200k same customer -> medium duplicate, B stays pending."""
    deals, conflicts = repos
    deals.add(make_deal(value=100_000, submitted=NOW - timedelta(days=30)))
    b = deals.add(make_deal(value=200_000))

    result = await _engine(deals, conflicts).detect_conflicts(b)

    assert result.has_conflicts is True
    assert [c.severity for c in result.conflicts] == [ConflictSeverity.MEDIUM]
    assert result.deal_status == DealStatus.PENDING
    assert deals.deals[b.id].status == DealStatus.PENDING
    assert deals.cas_calls == []


@pytest.mark.asyncio
async def test_no_candidates(repos):
    deals, conflicts = repos
    b = deals.add(make_deal())

    result = await _engine(deals, conflicts).detect_conflicts(b)

    assert result.has_conflicts is False
    assert result.conflicts == []
    assert result.suggestions == []
    assert conflicts.rows == {}


@pytest.mark.asyncio
async def test_missing_territory_only_duplicate_rule_applies(repos):
    deals, conflicts = repos
    deals.add(make_deal(territory=None, value=100_000))
    deals.add(make_deal(company="Globex", territory=None))
    b = deals.add(make_deal(territory=None, value=99_000))

    result = await _engine(deals, conflicts).detect_conflicts(b)

    assert [c.conflict_type for c in result.conflicts] == [ConflictType.DUPLICATE_END_USER]


@pytest.mark.asyncio
async def test_terminal_deals_are_not_candidates(repos):
    deals, conflicts = repos
    deals.add(make_deal(status=DealStatus.APPROVED))
    deals.add(make_deal(status=DealStatus.REJECTED))
    b = deals.add(make_deal())

    result = await _engine(deals, conflicts).detect_conflicts(b)

    assert result.has_conflicts is False


@pytest.mark.asyncio
async def test_prefilter_does_not_change_result():
    results = []
    for prefilter in (True, False):
        deals, conflicts = make_repositories()
        deals.add(make_deal(value=100_000, submitted=NOW - timedelta(days=3)))
        deals.add(make_deal(company="Globex", submitted=NOW - timedelta(days=40)))
        deals.add(make_deal(company="Initech", territory="East"))
        b = deals.add(make_deal(value=98_000))
        result = await _engine(deals, conflicts, prefilter=prefilter).detect_conflicts(b)
        results.append(sorted((c.conflict_type, c.severity) for c in result.conflicts))
    assert results[0] == results[1]
    assert len(results[0]) == 3


# ── Idempotence ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_redetection_reports_existing_rows(repos):
    deals, conflicts = repos
    deals.add(make_deal(value=100_000, submitted=NOW - timedelta(days=2)))
    b = deals.add(make_deal(value=95_000))
    engine = _engine(deals, conflicts)

    first = await engine.detect_conflicts(b)
    second = await engine.detect_conflicts(deals.deals[b.id])

    assert len(conflicts.rows) == 2
    assert all(c.created for c in first.conflicts)
    assert not any(c.created for c in second.conflicts)
    assert {c.conflict_id for c in first.conflicts} == {c.conflict_id for c in second.conflicts}
    assert second.deal_status == DealStatus.DISPUTED


@pytest.mark.asyncio
async def test_reverse_direction_does_not_duplicate(repos):
    """Detection run from the other side of the pair finds the open row."""
    deals, conflicts = repos
    a = deals.add(make_deal(value=100_000, submitted=NOW - timedelta(days=30)))
    b = deals.add(make_deal(value=95_000))
    engine = _engine(deals, conflicts)

    await engine.detect_conflicts(b)
    again = await engine.detect_conflicts(deals.deals[a.id])

    assert len(conflicts.rows) == 1
    assert again.conflicts[0].created is False
    assert again.conflicts[0].competing_deal_id == b.id


@pytest.mark.asyncio
async def test_redetect_unknown_deal(repos):
    deals, conflicts = repos
    with pytest.raises(NotFoundError):
        await _engine(deals, conflicts).redetect("missing")


@pytest.mark.asyncio
async def test_preview_writes_nothing(repos):
    deals, conflicts = repos
    a = deals.add(make_deal(value=100_000, submitted=NOW - timedelta(days=30)))
    b = deals.add(make_deal(value=95_000))
    engine = _engine(deals, conflicts)

    [staged] = await engine.preview(b.id)

    assert staged.deal_id == b.id
    assert staged.competing_deal_id == a.id
    assert staged.severity == ConflictSeverity.HIGH
    assert conflicts.rows == {}
    assert deals.cas_calls == []
    assert deals.deals[b.id].status == DealStatus.PENDING
    with pytest.raises(NotFoundError):
        await engine.preview("missing")


# ── Failures ─────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_failed_record_does_not_suppress_others(repos):
    deals, conflicts = repos
    failing = deals.add(make_deal(value=100_000, submitted=NOW - timedelta(days=40)))
    ok = deals.add(make_deal(company="Globex", submitted=NOW - timedelta(days=40)))
    b = deals.add(make_deal(value=96_000))
    conflicts.fail_for.add(failing.id)

    result = await _engine(deals, conflicts).detect_conflicts(b)

    assert result.has_conflicts is True
    assert result.is_complete is False
    assert [f.competing_deal_id for f in result.failed] == [failing.id]
    assert result.failed[0].conflict_type == ConflictType.DUPLICATE_END_USER
    assert [c.competing_deal_id for c in result.conflicts] == [ok.id]
    # The high-severity match was not persisted, so the deal is not disputed
    assert result.deal_status == DealStatus.PENDING


@pytest.mark.asyncio
async def test_transient_write_failure_is_retried(repos):
    deals, conflicts = repos
    a = deals.add(make_deal(value=100_000, submitted=NOW - timedelta(days=40)))
    b = deals.add(make_deal(value=96_000))
    conflicts.flaky_for[a.id] = 1

    result = await _engine(deals, conflicts).detect_conflicts(b)

    assert result.failed == []
    assert len(result.conflicts) == 1
    assert conflicts.write_attempts == 2


@pytest.mark.asyncio
async def test_candidate_load_failure_propagates(repos):
    deals, conflicts = repos
    b = deals.add(make_deal())
    deals.fail_reads = 5

    with pytest.raises(RepositoryUnavailable):
        await _engine(deals, conflicts).detect_conflicts(b)


@pytest.mark.asyncio
async def test_candidate_load_retried_once(repos):
    deals, conflicts = repos
    deals.add(make_deal(value=100_000))
    b = deals.add(make_deal(value=100_000))
    deals.fail_reads = 1

    result = await _engine(deals, conflicts).detect_conflicts(b)

    assert result.has_conflicts is True


# ── Status compare-and-set ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_lost_race_rereads_and_disputes_assigned_deal(repos):
    deals, conflicts = repos
    deals.add(make_deal(value=100_000, submitted=NOW - timedelta(days=30)))
    b = deals.add(make_deal(value=95_000))

    def concurrent_assign(deal_id):
        if len(deals.cas_calls) == 1:
            deals.set_status(deal_id, DealStatus.ASSIGNED)

    deals.before_cas = concurrent_assign

    result = await _engine(deals, conflicts).detect_conflicts(b)

    assert result.deal_status == DealStatus.DISPUTED
    assert [c[1] for c in deals.cas_calls] == [DealStatus.PENDING, DealStatus.ASSIGNED]


@pytest.mark.asyncio
async def test_concurrent_rejection_is_left_alone(repos):
    deals, conflicts = repos
    deals.add(make_deal(value=100_000, submitted=NOW - timedelta(days=30)))
    b = deals.add(make_deal(value=95_000))
    deals.before_cas = lambda deal_id: deals.set_status(deal_id, DealStatus.REJECTED)

    result = await _engine(deals, conflicts).detect_conflicts(b)

    assert result.deal_status == DealStatus.REJECTED
    assert deals.deals[b.id].status == DealStatus.REJECTED
    assert len(deals.cas_calls) == 1


# ── Ordering, suggestions, submission, events ────────────────────────────────


@pytest.mark.asyncio
async def test_conflicts_sorted_by_severity_then_type(repos):
    deals, conflicts = repos
    deals.add(make_deal(company="Globex", submitted=NOW - timedelta(days=1)))
    deals.add(make_deal(value=100_000, submitted=NOW - timedelta(days=60)))
    b = deals.add(make_deal(value=100_000))

    result = await _engine(deals, conflicts).detect_conflicts(b)

    assert [(c.severity, c.conflict_type) for c in result.conflicts] == [
        (ConflictSeverity.HIGH, ConflictType.DUPLICATE_END_USER),
        (ConflictSeverity.MEDIUM, ConflictType.TERRITORY_OVERLAP),
        (ConflictSeverity.LOW, ConflictType.TIMING_CONFLICT),
    ]
    assert result.suggestions[0].startswith("High-priority")
    assert result.suggestions[-1].startswith("Multiple conflicts")


def test_suggestions_for_timing_only():
    candidate = ConflictCandidate(
        conflict_type=ConflictType.TIMING_CONFLICT,
        severity=ConflictSeverity.LOW,
        reason="r",
        competing_deal_id="x",
    )
    assert build_suggestions([candidate]) == []


@pytest.mark.asyncio
async def test_submit_deal_returns_post_detection_status(repos):
    deals, conflicts = repos
    deals.add(make_deal(value=100_000, submitted=NOW - timedelta(days=30)))
    data = DealCreate(
        reseller_id="reseller-b",
        end_customer=EndCustomerCreate(company_name="ACME corp", territory="West"),
        total_value=95_000,
        submission_date=NOW,
    )

    deal, result = await _engine(deals, conflicts).submit_deal(data)

    assert deal.status == DealStatus.DISPUTED
    assert result.deal_id == deal.id


@pytest.mark.asyncio
async def test_created_events_only_for_new_rows(repos):
    deals, conflicts = repos
    deals.add(make_deal(value=100_000, submitted=NOW - timedelta(days=30)))
    b = deals.add(make_deal(value=95_000))
    bus = RecordingBus()
    notifier = ConflictNotifier(bus, stream="events:conflicts")
    engine = _engine(deals, conflicts, notifier=notifier)

    await engine.detect_conflicts(b)
    await engine.detect_conflicts(deals.deals[b.id])
    await notifier.drain()

    assert len(bus.published) == 1
    stream, event = bus.published[0]
    assert stream == "events:conflicts"
    assert event.event_type == ConflictEventType.CONFLICT_CREATED
    assert event.deal_id == b.id


@pytest.mark.asyncio
async def test_notification_failure_does_not_affect_result(repos):
    deals, conflicts = repos
    deals.add(make_deal(value=100_000))
    b = deals.add(make_deal(value=100_000))
    notifier = ConflictNotifier(RecordingBus(fail=True))

    result = await _engine(deals, conflicts, notifier=notifier).detect_conflicts(b)
    await notifier.drain()

    assert result.has_conflicts is True
    assert notifier.pending_count == 0
