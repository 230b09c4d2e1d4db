"""Conflict detection for newly submitted deals.

Loads the candidate deals a submission could collide with, applies every rule
to every candidate, persists the matches through the conflict store, and flags
the new deal as disputed when a high-severity conflict exists.

Detection is deterministic: no similarity scoring, every conflict carries the
rule's reason text. A pair matching several rules yields one conflict per
type. Re-running detection for the same deal reports the already open rows
instead of creating duplicates.

Exports:
    ConflictDetectionEngine: Per-submission detection pass.
    build_suggestions: Reviewer hints derived from a conflict mix.
"""

from __future__ import annotations

import structlog

from src.dealreg.core.monitoring import (
    record_conflict_detected,
    record_persist_failure,
    track_detection,
)
from src.dealreg.deals.errors import NotFoundError
from src.dealreg.deals.notifications import ConflictNotifier
from src.dealreg.deals.repository import ConflictRepository, DealRepository
from src.dealreg.deals.retry import RetryPolicy, call_with_retry
from src.dealreg.deals.rules import RuleConfig, evaluate_all, normalize_key
from src.dealreg.deals.schemas import (
    SEVERITY_RANK,
    TYPE_RANK,
    ConflictCandidate,
    ConflictDetectionResult,
    ConflictSeverity,
    ConflictType,
    DealCreate,
    DealRead,
    DealStatus,
    StagedConflict,
)

logger = structlog.get_logger(__name__)

# A deal in one of these statuses may be moved to disputed by detection.
_DISPUTABLE = (DealStatus.PENDING, DealStatus.ASSIGNED)


def build_suggestions(conflicts: list[ConflictCandidate]) -> list[str]:
    """Plain-text reviewer hints for a set of detected conflicts."""
    suggestions: list[str] = []
    types = {c.conflict_type for c in conflicts}

    if any(c.severity == ConflictSeverity.HIGH for c in conflicts):
        suggestions.append("High-priority conflicts detected - requires immediate review")
    if ConflictType.DUPLICATE_END_USER in types:
        suggestions.append("Verify if this is a duplicate submission for the same end user")
        suggestions.append("Contact the reseller to confirm deal details")
    if ConflictType.TERRITORY_OVERLAP in types:
        suggestions.append("Review territory assignments and partner agreements")
        suggestions.append("Consider first-come-first-served or partner tier priority")
    if len(conflicts) > 2:
        suggestions.append("Multiple conflicts detected - consider escalating to management")
    return suggestions


def _priority(candidate: ConflictCandidate) -> tuple[int, int]:
    return (-SEVERITY_RANK[candidate.severity], -TYPE_RANK[candidate.conflict_type])


class ConflictDetectionEngine:
    """Detect and persist conflicts for one newly submitted deal.

    Holds no per-request state; safe to share across requests.

    Args:
        deal_repository: Source of the new deal's status and candidate deals.
        conflict_repository: Conflict record store.
        config: Rule windows and thresholds.
        retry_policy: Retry applied to repository reads and the status step.
        notifier: Optional sink for conflict.created events.
        prefilter_by_territory: Load only candidates sharing the new deal's
            normalized territory. Every rule requires equal territories, so
            this narrows the query without changing the result.
    """

    MAX_STATUS_ATTEMPTS = 3

    def __init__(
        self,
        deal_repository: DealRepository,
        conflict_repository: ConflictRepository,
        config: RuleConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        notifier: ConflictNotifier | None = None,
        prefilter_by_territory: bool = True,
    ) -> None:
        self._deals = deal_repository
        self._conflicts = conflict_repository
        self._config = config or RuleConfig()
        self._retry = retry_policy or RetryPolicy()
        self._notifier = notifier
        self._prefilter = prefilter_by_territory

    async def submit_deal(
        self, data: DealCreate
    ) -> tuple[DealRead, ConflictDetectionResult]:
        """Persist a new deal as pending and run detection for it.

        Returns:
            (deal with its post-detection status, detection result)
        """
        deal = await self._deals.create_deal(data, status=DealStatus.PENDING)
        result = await self.detect_conflicts(deal)
        if result.deal_status != deal.status:
            deal = deal.model_copy(update={"status": result.deal_status})
        return deal, result

    async def redetect(self, deal_id: str) -> ConflictDetectionResult:
        """Re-run detection for an existing deal (ops re-scan)."""
        deal = await call_with_retry(self._retry, self._deals.get_deal, deal_id)
        if deal is None:
            raise NotFoundError(f"Deal not found: {deal_id}")
        return await self.detect_conflicts(deal)

    async def preview(self, deal_id: str) -> list[StagedConflict]:
        """Conflicts a detection pass for ``deal_id`` would record, unwritten.

        Reads only: no conflict rows, status changes or events.
        """
        deal = await call_with_retry(self._retry, self._deals.get_deal, deal_id)
        if deal is None:
            raise NotFoundError(f"Deal not found: {deal_id}")
        _, staged = await self._stage(deal)
        return staged

    async def detect_conflicts(self, new_deal: DealRead) -> ConflictDetectionResult:
        """Run one detection pass for ``new_deal``.

        Steps:
        1. Load non-terminal candidate deals (excluding the new deal)
        2. Apply every rule to every candidate
        3. Persist matches; open rows for the same pair and type are reported,
           not duplicated; per-record failures land in ``failed``
        4. Move the new deal to disputed if any persisted conflict is high
        5. Return conflicts ordered by severity then type, with suggestions

        Raises:
            RepositoryUnavailable: Candidate loading failed after retries.
            IntegrityViolation: The store could not uphold pair uniqueness.
        """
        async with track_detection() as tracker:
            candidates, staged = await self._stage(new_deal)

            if not staged:
                logger.info(
                    "conflict_detection_clear",
                    deal_id=new_deal.id,
                    candidates=len(candidates),
                )
                return ConflictDetectionResult(
                    deal_id=new_deal.id, deal_status=new_deal.status
                )

            written = await self._conflicts.create_conflict_records(new_deal.id, staged)
            tracker["partial"] = bool(written.failed)

            reported: list[ConflictCandidate] = []
            for persisted in written.persisted:
                row = persisted.conflict
                record_conflict_detected(
                    row.conflict_type.value, row.severity.value, persisted.created
                )
                reported.append(
                    ConflictCandidate(
                        conflict_type=row.conflict_type,
                        severity=row.severity,
                        reason=row.reason,
                        competing_deal_id=row.other_side(new_deal.id),
                        conflict_id=row.id,
                        created=persisted.created,
                    )
                )
            for failure in written.failed:
                record_persist_failure(failure.conflict_type.value)

            deal_status = new_deal.status
            if any(c.severity == ConflictSeverity.HIGH for c in reported):
                deal_status = await self._mark_disputed(new_deal)

            if self._notifier is not None:
                for persisted in written.persisted:
                    if persisted.created:
                        self._notifier.notify_created(persisted.conflict)

            reported.sort(key=_priority)
            logger.info(
                "conflict_detection_complete",
                deal_id=new_deal.id,
                candidates=len(candidates),
                matched=len(staged),
                persisted=len(written.persisted),
                created=sum(1 for p in written.persisted if p.created),
                failed=len(written.failed),
                deal_status=deal_status.value,
            )
            return ConflictDetectionResult(
                deal_id=new_deal.id,
                has_conflicts=True,
                conflicts=reported,
                failed=written.failed,
                deal_status=deal_status,
                suggestions=build_suggestions(reported),
            )

    # ── Internals ───────────────────────────────────────────────────────────

    async def _stage(
        self, new_deal: DealRead
    ) -> tuple[list[DealRead], list[StagedConflict]]:
        candidates = await self._load_candidates(new_deal)
        staged = [
            StagedConflict(
                deal_id=new_deal.id,
                competing_deal_id=candidate.id,
                conflict_type=verdict.conflict_type,
                severity=verdict.severity,
                reason=verdict.reason,
            )
            for candidate in candidates
            for verdict in evaluate_all(new_deal, candidate, self._config)
        ]
        return candidates, staged

    async def _load_candidates(self, new_deal: DealRead) -> list[DealRead]:
        territory_key = (
            normalize_key(new_deal.end_customer.territory) if self._prefilter else None
        )
        return await call_with_retry(
            self._retry,
            self._deals.list_candidate_deals,
            new_deal.id,
            territory_key=territory_key,
        )

    async def _mark_disputed(self, new_deal: DealRead) -> DealStatus:
        """Compare-and-set the deal to disputed, re-reading on a lost race.

        A deal already disputed stays disputed. A deal that reached a
        terminal status concurrently is left alone.
        """
        expected = new_deal.status
        for attempt in range(1, self.MAX_STATUS_ATTEMPTS + 1):
            if expected == DealStatus.DISPUTED:
                return DealStatus.DISPUTED
            if expected not in _DISPUTABLE:
                logger.warning(
                    "conflict_dispute_skipped",
                    deal_id=new_deal.id,
                    status=expected.value,
                )
                return expected

            changed = await call_with_retry(
                self._retry,
                self._deals.compare_and_set_status,
                new_deal.id,
                expected,
                DealStatus.DISPUTED,
            )
            if changed:
                logger.info(
                    "deal_disputed", deal_id=new_deal.id, previous=expected.value
                )
                return DealStatus.DISPUTED

            current = await call_with_retry(self._retry, self._deals.get_deal, new_deal.id)
            if current is None:
                raise NotFoundError(f"Deal not found: {new_deal.id}")
            logger.info(
                "deal_status_race_lost",
                deal_id=new_deal.id,
                expected=expected.value,
                observed=current.status.value,
                attempt=attempt,
            )
            expected = current.status

        logger.warning(
            "deal_dispute_gave_up",
            deal_id=new_deal.id,
            status=expected.value,
            attempts=self.MAX_STATUS_ATTEMPTS,
        )
        return expected
