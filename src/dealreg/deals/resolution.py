"""Staff-driven conflict resolution and deal review.

ConflictResolutionService moves a conflict from pending to resolved or
dismissed. Resolving assigns the winning deal to a reseller in the same
transaction as the conflict update, so a resolved conflict is never
observable without its assignment. The losing deal is rejected in that same
transaction, so only one deal of the pair can ever be approved. After every
decision the affected deals are re-evaluated: a disputed deal left without
pending high-severity conflicts returns to pending.

Exports:
    ConflictResolutionService: resolve / approve_deal / reject_deal.
"""

from __future__ import annotations

import structlog

from src.dealreg.core.monitoring import record_resolution
from src.dealreg.deals.errors import (
    IntegrityViolation,
    NotFoundError,
    RepositoryUnavailable,
    ValidationError,
)
from src.dealreg.deals.notifications import ConflictNotifier
from src.dealreg.deals.repository import ConflictRepository, DealRepository
from src.dealreg.deals.retry import RetryPolicy, call_with_retry
from src.dealreg.deals.schemas import (
    ConflictRead,
    ConflictSeverity,
    DealDecision,
    DealRead,
    DealStatus,
    ResolutionResult,
    ResolutionStatus,
)

logger = structlog.get_logger(__name__)


class ConflictResolutionService:
    """Apply staff decisions to conflicts and deals.

    Args:
        deal_repository: Deal reads and status compare-and-set.
        conflict_repository: Conflict store and resolution units of work.
        retry_policy: Retry applied to each unit of work on RepositoryUnavailable.
        notifier: Optional sink for conflict.resolved / conflict.dismissed.
    """

    def __init__(
        self,
        deal_repository: DealRepository,
        conflict_repository: ConflictRepository,
        retry_policy: RetryPolicy | None = None,
        notifier: ConflictNotifier | None = None,
    ) -> None:
        self._deals = deal_repository
        self._conflicts = conflict_repository
        self._retry = retry_policy or RetryPolicy()
        self._notifier = notifier

    async def resolve(
        self,
        conflict_id: str,
        resolution: ResolutionStatus | str,
        assigned_reseller_id: str | None = None,
        *,
        winning_deal_id: str | None = None,
        staff_id: str | None = None,
    ) -> ResolutionResult:
        """Resolve or dismiss a pending conflict.

        ``resolved`` requires ``assigned_reseller_id``. The winning deal is
        ``winning_deal_id`` when given, otherwise the pair member submitted by
        the assigned reseller. Every other pending conflict between the same
        two deals is resolved alongside, and the losing deal is rejected.

        A unit of work whose commit landed but whose acknowledgement was lost
        is recognised on retry and reported as a success.

        Args:
            conflict_id: Conflict to transition.
            resolution: Target status, resolved or dismissed.
            assigned_reseller_id: Reseller the winning deal is assigned to.
            winning_deal_id: Explicit winner, one of the pair.
            staff_id: Staff member making the decision.

        Returns:
            ResolutionResult with the updated conflict, the winning deal for
            resolved, and both deals of the pair after dispute settling.

        Raises:
            ValidationError: Bad resolution value, missing reseller, or no
                unambiguous winning deal.
            NotFoundError: Unknown conflict or deal.
            IntegrityViolation: The conflict is already resolved or dismissed.
            RepositoryUnavailable: Store unavailable after retries.
        """
        target = _parse_resolution(resolution)

        conflict = await call_with_retry(
            self._retry, self._conflicts.get_conflict, conflict_id
        )
        if conflict is None:
            raise NotFoundError(f"Conflict not found: {conflict_id}")
        if conflict.resolution_status != ResolutionStatus.PENDING:
            raise IntegrityViolation(
                f"Conflict {conflict_id} is already {conflict.resolution_status.value}"
            )

        winner: str | None = None
        if target == ResolutionStatus.RESOLVED:
            if not assigned_reseller_id:
                raise ValidationError("assigned_reseller_id is required to resolve")
            winner = await self._choose_winner(
                conflict, assigned_reseller_id, winning_deal_id
            )
            result = await self._run_unit(
                self._conflicts.resolve_with_assignment,
                conflict_id,
                winner,
                assigned_reseller_id,
                staff_id,
            )
        else:
            dismissed = await self._run_unit(
                self._conflicts.update_resolution,
                conflict_id,
                ResolutionStatus.DISMISSED,
                staff_id,
            )
            result = ResolutionResult(conflict=dismissed) if dismissed else None

        if result is None:
            result = await self._recover_committed(
                conflict_id, target, winner, assigned_reseller_id
            )

        conflict = result.conflict
        transitioned = [conflict, *result.related_conflicts]
        record_resolution(target.value, len(transitioned))
        if result.dismissed_conflicts:
            record_resolution(
                ResolutionStatus.DISMISSED.value, len(result.dismissed_conflicts)
            )
        logger.info(
            "conflict_resolved",
            conflict_id=conflict_id,
            resolution=target.value,
            winning_deal_id=winner,
            assigned_reseller_id=assigned_reseller_id,
            related=len(result.related_conflicts),
            dismissed=len(result.dismissed_conflicts),
            staff_id=staff_id,
        )

        pair = [conflict.deal_id, conflict.competing_deal_id]
        loser = conflict.other_side(winner) if winner else None
        await self._settle_disputes(
            [*pair, *(c.other_side(loser) for c in result.dismissed_conflicts)]
        )
        deals: list[DealRead] = []
        for deal_id in pair:
            deal = await call_with_retry(self._retry, self._deals.get_deal, deal_id)
            if deal is not None:
                deals.append(deal)
        winning = next((d for d in deals if d.id == winner), result.deal)

        if self._notifier is not None:
            for row in transitioned:
                self._notifier.notify_transition(
                    row,
                    winning_deal_id=winner,
                    assigned_reseller_id=assigned_reseller_id,
                )
            for row in result.dismissed_conflicts:
                self._notifier.notify_dismissed(row)

        return result.model_copy(update={"deal": winning, "deals": deals})

    async def approve_deal(self, deal_id: str) -> DealDecision:
        """Approve a pending or assigned deal with no pending conflicts."""
        deal = await call_with_retry(self._retry, self._deals.approve_deal, deal_id)
        logger.info("deal_approved", deal_id=deal_id)
        return DealDecision(deal=deal)

    async def reject_deal(self, deal_id: str, staff_id: str | None = None) -> DealDecision:
        """Reject a deal and dismiss its pending conflicts.

        Counterpart deals of the dismissed conflicts are re-evaluated so a
        dispute caused only by the rejected deal clears.
        """
        deal, dismissed = await call_with_retry(
            self._retry, self._conflicts.reject_deal, deal_id, staff_id
        )
        if dismissed:
            record_resolution(ResolutionStatus.DISMISSED.value, len(dismissed))
        logger.info(
            "deal_rejected",
            deal_id=deal_id,
            dismissed_conflicts=len(dismissed),
            staff_id=staff_id,
        )

        await self._settle_disputes([c.other_side(deal_id) for c in dismissed])

        if self._notifier is not None:
            for row in dismissed:
                self._notifier.notify_dismissed(row)

        return DealDecision(deal=deal, dismissed_conflicts=dismissed)

    # ── Internals ───────────────────────────────────────────────────────────

    async def _choose_winner(
        self,
        conflict: ConflictRead,
        assigned_reseller_id: str,
        winning_deal_id: str | None,
    ) -> str:
        if winning_deal_id is not None:
            if not conflict.involves(winning_deal_id):
                raise ValidationError(
                    f"Deal {winning_deal_id} is not part of conflict {conflict.id}"
                )
            return winning_deal_id

        matches = []
        for deal_id in (conflict.deal_id, conflict.competing_deal_id):
            deal = await call_with_retry(self._retry, self._deals.get_deal, deal_id)
            if deal is None:
                raise NotFoundError(f"Deal not found: {deal_id}")
            if deal.reseller_id == assigned_reseller_id:
                matches.append(deal_id)

        if len(matches) != 1:
            raise ValidationError(
                f"Cannot infer the winning deal of conflict {conflict.id} from "
                f"reseller {assigned_reseller_id}; pass winning_deal_id"
            )
        return matches[0]

    async def _run_unit(self, fn, *args):
        """Run a resolution unit of work with retry.

        Returns None when a retry found the conflict already terminal after an
        earlier attempt failed with RepositoryUnavailable: that attempt may
        have committed before its acknowledgement was lost.
        """
        lost = 0

        async def attempt():
            nonlocal lost
            try:
                return await fn(*args)
            except RepositoryUnavailable:
                lost += 1
                raise

        try:
            return await call_with_retry(self._retry, attempt)
        except IntegrityViolation:
            if not lost:
                raise
            logger.warning(
                "resolution_ack_lost", operation=fn.__name__, lost_attempts=lost
            )
            return None

    async def _recover_committed(
        self,
        conflict_id: str,
        target: ResolutionStatus,
        winner: str | None,
        assigned_reseller_id: str | None,
    ) -> ResolutionResult:
        """Rebuild the outcome of a unit of work that committed unacknowledged.

        Rows changed by the same transaction share the conflict's
        ``resolved_at``.

        Raises:
            IntegrityViolation: The stored state is not the requested outcome,
                so another decision won.
        """
        conflict = await call_with_retry(
            self._retry, self._conflicts.get_conflict, conflict_id
        )
        if conflict is None or conflict.resolution_status != target:
            status = conflict.resolution_status.value if conflict else "missing"
            raise IntegrityViolation(f"Conflict {conflict_id} is already {status}")
        if target == ResolutionStatus.DISMISSED:
            logger.info("resolution_recovered", conflict_id=conflict_id)
            return ResolutionResult(conflict=conflict)

        deal = await call_with_retry(self._retry, self._deals.get_deal, winner)
        if (
            deal is None
            or deal.status != DealStatus.ASSIGNED
            or deal.assigned_reseller_id != assigned_reseller_id
        ):
            raise IntegrityViolation(
                f"Conflict {conflict_id} was resolved by another decision"
            )

        loser = conflict.other_side(winner)
        rows = await call_with_retry(
            self._retry, self._conflicts.get_deal_conflicts, loser
        )
        same_batch = [
            c for c in rows
            if c.id != conflict.id and c.resolved_at == conflict.resolved_at
        ]
        logger.info(
            "resolution_recovered",
            conflict_id=conflict_id,
            winning_deal_id=winner,
            rows=len(same_batch),
        )
        return ResolutionResult(
            conflict=conflict,
            deal=deal,
            related_conflicts=[
                c for c in same_batch
                if c.involves(winner) and c.resolution_status == ResolutionStatus.RESOLVED
            ],
            dismissed_conflicts=[
                c for c in same_batch
                if not c.involves(winner)
                and c.resolution_status == ResolutionStatus.DISMISSED
            ],
        )

    async def _settle_disputes(self, deal_ids: list[str]) -> None:
        """Return disputed deals without pending high-severity conflicts to pending."""
        for deal_id in dict.fromkeys(deal_ids):
            deal = await call_with_retry(self._retry, self._deals.get_deal, deal_id)
            if deal is None or deal.status != DealStatus.DISPUTED:
                continue
            open_conflicts = await call_with_retry(
                self._retry, self._conflicts.get_open_conflicts, deal_id
            )
            if any(c.severity == ConflictSeverity.HIGH for c in open_conflicts):
                continue
            cleared = await call_with_retry(
                self._retry,
                self._deals.compare_and_set_status,
                deal_id,
                DealStatus.DISPUTED,
                DealStatus.PENDING,
            )
            logger.info("deal_dispute_cleared", deal_id=deal_id, changed=cleared)


def _parse_resolution(value: ResolutionStatus | str) -> ResolutionStatus:
    try:
        target = ResolutionStatus(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown resolution: {value!r}") from exc
    if target == ResolutionStatus.PENDING:
        raise ValidationError("Resolution must be resolved or dismissed")
    return target
