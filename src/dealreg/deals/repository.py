"""Deal registration repositories -- async persistence for deals and conflicts.

Provides DealRepository (resellers, end customers, deals, line items) and
ConflictRepository (conflict records plus the transactional units that move a
conflict and its deal together). Both use the session_factory callable
pattern: an async generator yielding AsyncSession instances.

Every operation runs under an asyncio timeout. Timeouts and connection-level
database errors surface as RepositoryUnavailable; unexpected constraint
violations surface as IntegrityViolation. Conversion between SQLAlchemy
models and Pydantic schemas happens in the module-level helpers.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealreg.deals.errors import (
    IntegrityViolation,
    NotFoundError,
    RepositoryUnavailable,
    ValidationError,
)
from src.dealreg.deals.models import (
    AssignmentHistoryModel,
    DealConflictModel,
    DealModel,
    DealProductModel,
    EndCustomerModel,
    ResellerModel,
)
from src.dealreg.deals.retry import RetryPolicy, call_with_retry
from src.dealreg.deals.rules import normalize_key
from src.dealreg.deals.schemas import (
    NON_TERMINAL_STATUSES,
    ConflictFilter,
    ConflictListItem,
    ConflictPage,
    ConflictRead,
    ConflictWriteResult,
    DealCreate,
    DealRead,
    DealStatus,
    DealSummary,
    EndCustomerRead,
    FailedConflict,
    PersistedConflict,
    ResellerCreate,
    ResellerRead,
    ResolutionResult,
    ResolutionStatus,
    StagedConflict,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]


# ── Serialization Helpers ───────────────────────────────────────────────────


def _aware(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid(value: str, what: str) -> uuid.UUID:
    """Parse an id; malformed deal/conflict ids cannot exist, others are bad input."""
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        if what in ("deal", "conflict"):
            raise NotFoundError(f"Unknown {what} id: {value!r}") from exc
        raise ValidationError(f"Malformed {what} id: {value!r}") from exc


def _pair(a: str, b: str) -> tuple[str, str]:
    """Order two deal ids so (a, b) and (b, a) share one key."""
    a, b = str(_uuid(a, "deal")), str(_uuid(b, "deal"))
    return (a, b) if a <= b else (b, a)


def _model_to_reseller(model: ResellerModel) -> ResellerRead:
    """Convert ResellerModel to ResellerRead schema."""
    return ResellerRead(
        id=str(model.id),
        name=model.name,
        contact_email=model.contact_email,
        created_at=_aware(model.created_at),
    )


def _model_to_end_customer(model: EndCustomerModel) -> EndCustomerRead:
    """Convert EndCustomerModel to EndCustomerRead schema."""
    return EndCustomerRead(
        id=str(model.id),
        company_name=model.company_name,
        contact_name=model.contact_name,
        contact_email=model.contact_email,
        territory=model.territory,
        company_key=model.company_key,
        territory_key=model.territory_key or "",
    )


def _model_to_deal(model: DealModel, customer: EndCustomerModel) -> DealRead:
    """Convert DealModel plus its EndCustomerModel to DealRead schema."""
    return DealRead(
        id=str(model.id),
        reseller_id=str(model.reseller_id),
        end_customer_id=str(model.end_customer_id),
        end_customer=_model_to_end_customer(customer),
        assigned_reseller_id=(
            str(model.assigned_reseller_id) if model.assigned_reseller_id else None
        ),
        total_value=Decimal(model.total_value),
        status=DealStatus(model.status),
        submission_date=_aware(model.submission_date),
        assignment_date=_aware(model.assignment_date),
        created_at=_aware(model.created_at),
        updated_at=_aware(model.updated_at),
    )


def _model_to_conflict(model: DealConflictModel) -> ConflictRead:
    """Convert DealConflictModel to ConflictRead schema."""
    return ConflictRead(
        id=str(model.id),
        deal_id=str(model.deal_id),
        competing_deal_id=str(model.competing_deal_id),
        conflict_type=model.conflict_type,
        severity=model.severity,
        reason=model.reason or "",
        resolution_status=ResolutionStatus(model.resolution_status),
        assigned_to_staff=(
            str(model.assigned_to_staff) if model.assigned_to_staff else None
        ),
        created_at=_aware(model.created_at),
        resolved_at=_aware(model.resolved_at),
        updated_at=_aware(model.updated_at),
    )


def _deal_select():
    return select(DealModel, EndCustomerModel).join(
        EndCustomerModel, EndCustomerModel.id == DealModel.end_customer_id
    )


# ── Base ────────────────────────────────────────────────────────────────────


class _SessionScope:
    """Timeout and error mapping shared by both repositories.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        timeout: Seconds allowed for one repository operation.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        timeout: float = 5.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._timeout = timeout
        self._clock = clock

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with asyncio.timeout(self._timeout):
                sessions = self._session_factory()
                session = await anext(sessions)
                try:
                    yield session
                finally:
                    await sessions.aclose()
        except TimeoutError as exc:
            logger.warning(
                "repository_timeout", operation=operation, timeout=self._timeout
            )
            raise RepositoryUnavailable(
                f"{operation} timed out after {self._timeout}s"
            ) from exc
        except IntegrityError as exc:
            logger.error("repository_integrity_error", operation=operation, error=str(exc))
            raise IntegrityViolation(f"{operation}: {exc.orig}") from exc
        except (OperationalError, InterfaceError) as exc:
            logger.warning("repository_unavailable", operation=operation, error=str(exc))
            raise RepositoryUnavailable(f"{operation} failed: {exc}") from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                logger.warning(
                    "repository_connection_lost", operation=operation, error=str(exc)
                )
                raise RepositoryUnavailable(f"{operation} lost its connection") from exc
            raise


# ── Deal Repository ─────────────────────────────────────────────────────────


class DealRepository(_SessionScope):
    """Async CRUD for resellers, end customers, deals and line items.

    Owns Deal and EndCustomer lifecycle. Deal status changes made outside the
    resolution unit of work go through compare_and_set_status so concurrent
    writers cannot overwrite each other's decision.
    """

    # ── Resellers ───────────────────────────────────────────────────────────

    async def create_reseller(self, data: ResellerCreate) -> ResellerRead:
        async with self._session("create_reseller") as session:
            model = ResellerModel(name=data.name, contact_email=data.contact_email)
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_reseller(model)

    # ── Deals ───────────────────────────────────────────────────────────────

    async def create_deal(
        self,
        data: DealCreate,
        status: DealStatus = DealStatus.PENDING,
    ) -> DealRead:
        """Persist a submitted deal with its end customer and line items.

        All three writes share one transaction.

        Args:
            data: DealCreate schema from the submission flow.
            status: Initial status (the submission flow sets pending).

        Returns:
            DealRead with all persisted fields.
        """
        async with self._session("create_deal") as session:
            customer = EndCustomerModel(
                company_name=data.end_customer.company_name.strip(),
                contact_name=data.end_customer.contact_name,
                contact_email=data.end_customer.contact_email,
                territory=(data.end_customer.territory or "").strip() or None,
                company_key=normalize_key(data.end_customer.company_name),
                territory_key=normalize_key(data.end_customer.territory),
            )
            session.add(customer)
            await session.flush()

            deal = DealModel(
                reseller_id=_uuid(data.reseller_id, "reseller"),
                end_customer_id=customer.id,
                status=status.value,
                total_value=data.computed_total(),
                submission_date=data.submission_date or self._clock(),
            )
            session.add(deal)
            await session.flush()

            for product in data.products:
                session.add(
                    DealProductModel(
                        deal_id=deal.id,
                        product_id=product.product_id,
                        quantity=product.quantity,
                        price=product.price,
                    )
                )

            await session.commit()
            await session.refresh(deal)
            await session.refresh(customer)

            logger.info(
                "deal_created",
                deal_id=str(deal.id),
                reseller_id=data.reseller_id,
                total_value=str(deal.total_value),
            )
            return _model_to_deal(deal, customer)

    async def get_deal(self, deal_id: str) -> DealRead | None:
        async with self._session("get_deal") as session:
            stmt = _deal_select().where(DealModel.id == _uuid(deal_id, "deal"))
            row = (await session.execute(stmt)).one_or_none()
            if row is None:
                return None
            return _model_to_deal(row[0], row[1])

    async def list_deals(
        self, statuses: frozenset[DealStatus] | None = None
    ) -> list[DealRead]:
        """List deals ordered by submission date, optionally by status."""
        async with self._session("list_deals") as session:
            stmt = _deal_select().order_by(DealModel.submission_date)
            if statuses:
                stmt = stmt.where(DealModel.status.in_([s.value for s in statuses]))
            rows = (await session.execute(stmt)).all()
            return [_model_to_deal(d, c) for d, c in rows]

    async def list_candidate_deals(
        self,
        exclude_deal_id: str,
        territory_key: str | None = None,
        statuses: frozenset[DealStatus] = NON_TERMINAL_STATUSES,
    ) -> list[DealRead]:
        """Load deals a new submission should be compared against.

        Args:
            exclude_deal_id: The new deal itself (never a candidate).
            territory_key: Optional normalized territory pre-filter.
            statuses: Candidate statuses (non-terminal by default).

        Returns:
            Candidate deals, newest first.
        """
        async with self._session("list_candidate_deals") as session:
            stmt = (
                _deal_select()
                .where(
                    DealModel.id != _uuid(exclude_deal_id, "deal"),
                    DealModel.status.in_([s.value for s in statuses]),
                )
                .order_by(DealModel.created_at.desc())
            )
            if territory_key is not None:
                stmt = stmt.where(EndCustomerModel.territory_key == territory_key)
            rows = (await session.execute(stmt)).all()
            return [_model_to_deal(d, c) for d, c in rows]

    async def compare_and_set_status(
        self, deal_id: str, expected: DealStatus, new: DealStatus
    ) -> bool:
        """Atomically move a deal from ``expected`` to ``new``.

        Returns:
            True if the row was updated, False if the deal's status was no
            longer ``expected`` (a concurrent writer won).
        """
        async with self._session("compare_and_set_status") as session:
            stmt = (
                update(DealModel)
                .where(
                    DealModel.id == _uuid(deal_id, "deal"),
                    DealModel.status == expected.value,
                )
                .values(status=new.value, updated_at=self._clock())
            )
            result = await session.execute(stmt)
            await session.commit()
            changed = result.rowcount == 1
            logger.debug(
                "deal_status_cas",
                deal_id=deal_id,
                expected=expected.value,
                new=new.value,
                changed=changed,
            )
            return changed

    async def approve_deal(self, deal_id: str) -> DealRead:
        """Approve a pending or assigned deal that has no open conflicts.

        Raises:
            NotFoundError: If the deal does not exist.
            ValidationError: If the deal is in the wrong status or still has
                pending conflicts.
        """
        async with self._session("approve_deal") as session:
            deal = await _lock_deal(session, deal_id)
            if deal.status not in (DealStatus.PENDING.value, DealStatus.ASSIGNED.value):
                raise ValidationError(
                    f"Deal {deal_id} cannot be approved from status {deal.status}"
                )
            open_count = await _count_open_conflicts(session, deal.id)
            if open_count:
                raise ValidationError(
                    f"Deal {deal_id} has {open_count} unresolved conflicts"
                )
            deal.status = DealStatus.APPROVED.value
            deal.updated_at = self._clock()
            await session.commit()
            customer = await session.get(EndCustomerModel, deal.end_customer_id)
            return _model_to_deal(deal, customer)


# ── Conflict Repository ─────────────────────────────────────────────────────


class ConflictRepository(_SessionScope):
    """Conflict record store plus resolution units of work.

    Enforces one pending conflict per unordered deal pair and conflict type:
    check-then-insert, with the partial unique index as the backstop for
    concurrent detection passes.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        timeout: Seconds allowed for one repository operation.
        retry_policy: Retry applied to each record in create_conflict_records.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        timeout: float = 5.0,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(session_factory, timeout, clock)
        self._retry = retry_policy or RetryPolicy()

    # ── Writes from detection ───────────────────────────────────────────────

    async def create_conflict_records(
        self, deal_id: str, conflicts: list[StagedConflict]
    ) -> ConflictWriteResult:
        """Persist staged conflicts for one detection pass, record by record.

        A record whose write keeps failing with RepositoryUnavailable is listed
        in ``failed``; the remaining records are still written.

        Raises:
            ValidationError: If a staged conflict belongs to another deal or
                pairs a deal with itself.
            IntegrityViolation: If the uniqueness invariant cannot be upheld.
        """
        for staged in conflicts:
            if staged.deal_id != deal_id:
                raise ValidationError(
                    f"Staged conflict for deal {staged.deal_id} passed with {deal_id}"
                )
            if staged.competing_deal_id == deal_id:
                raise ValidationError(f"Deal {deal_id} cannot conflict with itself")

        result = ConflictWriteResult()
        for staged in conflicts:
            try:
                persisted = await call_with_retry(
                    self._retry, self.create_conflict_record, staged
                )
            except RepositoryUnavailable as exc:
                logger.error(
                    "conflict_record_write_failed",
                    deal_id=deal_id,
                    competing_deal_id=staged.competing_deal_id,
                    conflict_type=staged.conflict_type.value,
                    error=str(exc),
                )
                result.failed.append(
                    FailedConflict(
                        conflict_type=staged.conflict_type,
                        severity=staged.severity,
                        competing_deal_id=staged.competing_deal_id,
                        error=str(exc),
                    )
                )
                continue
            result.persisted.append(persisted)
        return result

    async def create_conflict_record(self, staged: StagedConflict) -> PersistedConflict:
        """Insert one conflict unless an open row for the pair and type exists."""
        low, high = _pair(staged.deal_id, staged.competing_deal_id)
        async with self._session("create_conflict_record") as session:
            existing = await _find_open(session, low, high, staged.conflict_type.value)
            if existing is not None:
                return PersistedConflict(
                    conflict=_model_to_conflict(existing), created=False
                )

            model = DealConflictModel(
                deal_id=_uuid(staged.deal_id, "deal"),
                competing_deal_id=_uuid(staged.competing_deal_id, "deal"),
                pair_low=low,
                pair_high=high,
                conflict_type=staged.conflict_type.value,
                severity=staged.severity.value,
                reason=staged.reason,
                resolution_status=ResolutionStatus.PENDING.value,
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError:
                # Lost the insert race to a concurrent detection pass
                await session.rollback()
                existing = await _find_open(
                    session, low, high, staged.conflict_type.value
                )
                if existing is None:
                    raise
                logger.info(
                    "conflict_insert_race_deduplicated",
                    conflict_id=str(existing.id),
                    conflict_type=staged.conflict_type.value,
                )
                return PersistedConflict(
                    conflict=_model_to_conflict(existing), created=False
                )

            await session.refresh(model)
            return PersistedConflict(conflict=_model_to_conflict(model), created=True)

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get_conflict(self, conflict_id: str) -> ConflictRead | None:
        async with self._session("get_conflict") as session:
            model = await session.get(
                DealConflictModel, _uuid(conflict_id, "conflict")
            )
            return _model_to_conflict(model) if model is not None else None

    async def get_open_conflicts(self, deal_id: str) -> list[ConflictRead]:
        """Pending conflicts referencing ``deal_id`` on either side."""
        return await self.get_deal_conflicts(deal_id, ResolutionStatus.PENDING)

    async def get_deal_conflicts(
        self, deal_id: str, status: ResolutionStatus | None = None
    ) -> list[ConflictRead]:
        """Conflicts referencing ``deal_id`` on either side, oldest first."""
        async with self._session("get_deal_conflicts") as session:
            deal_uuid = _uuid(deal_id, "deal")
            stmt = (
                select(DealConflictModel)
                .where(
                    or_(
                        DealConflictModel.deal_id == deal_uuid,
                        DealConflictModel.competing_deal_id == deal_uuid,
                    )
                )
                .order_by(DealConflictModel.created_at)
            )
            if status is not None:
                stmt = stmt.where(DealConflictModel.resolution_status == status.value)
            models = (await session.execute(stmt)).scalars().all()
            return [_model_to_conflict(m) for m in models]

    async def find_open_conflict(
        self, deal_id: str, other_deal_id: str, conflict_type: str
    ) -> ConflictRead | None:
        low, high = _pair(deal_id, other_deal_id)
        async with self._session("find_open_conflict") as session:
            model = await _find_open(session, low, high, str(conflict_type))
            return _model_to_conflict(model) if model is not None else None

    async def list_conflicts(self, filters: ConflictFilter) -> ConflictPage:
        """Page through conflicts joined with both deals' display summaries."""
        async with self._session("list_conflicts") as session:
            stmt = select(DealConflictModel)
            count_stmt = select(func.count()).select_from(DealConflictModel)
            conditions = []
            if filters.resolution_status is not None:
                conditions.append(
                    DealConflictModel.resolution_status
                    == filters.resolution_status.value
                )
            if filters.conflict_type is not None:
                conditions.append(
                    DealConflictModel.conflict_type == filters.conflict_type.value
                )
            if filters.assigned_to_staff is not None:
                conditions.append(
                    DealConflictModel.assigned_to_staff
                    == _uuid(filters.assigned_to_staff, "staff")
                )
            if conditions:
                stmt = stmt.where(*conditions)
                count_stmt = count_stmt.where(*conditions)

            total = (await session.execute(count_stmt)).scalar_one()
            stmt = (
                stmt.order_by(DealConflictModel.created_at.desc())
                .offset(filters.offset)
                .limit(filters.limit)
            )
            models = (await session.execute(stmt)).scalars().all()

            deal_ids = {m.deal_id for m in models} | {m.competing_deal_id for m in models}
            summaries = await _load_summaries(session, deal_ids)

            items = [
                ConflictListItem(
                    conflict=_model_to_conflict(m),
                    deal=summaries.get(m.deal_id),
                    competing_deal=summaries.get(m.competing_deal_id),
                )
                for m in models
            ]
            return ConflictPage(
                items=items, total=total, page=filters.page, limit=filters.limit
            )

    # ── Resolution writes ───────────────────────────────────────────────────

    async def update_resolution(
        self,
        conflict_id: str,
        status: ResolutionStatus,
        assigned_staff_id: str | None = None,
    ) -> ConflictRead:
        """Dismiss a pending conflict, or claim it for a staff member.

        ``status=PENDING`` only records ``assigned_staff_id``. RESOLVED is
        refused: a resolution always assigns a deal and goes through
        resolve_with_assignment.

        Raises:
            ValidationError: If ``status`` is RESOLVED.
            NotFoundError: If the conflict does not exist.
            IntegrityViolation: If the conflict is already terminal.
        """
        if status == ResolutionStatus.RESOLVED:
            raise ValidationError(
                "Resolving a conflict requires an assignment; use resolve_with_assignment"
            )
        async with self._session("update_resolution") as session:
            model = await _lock_conflict(session, conflict_id)
            _ensure_pending(model)
            now = self._clock()
            if assigned_staff_id is not None:
                model.assigned_to_staff = _uuid(assigned_staff_id, "staff")
            if status != ResolutionStatus.PENDING:
                model.resolution_status = status.value
                model.resolved_at = now
            model.updated_at = now
            await session.commit()
            return _model_to_conflict(model)

    async def resolve_with_assignment(
        self,
        conflict_id: str,
        winning_deal_id: str,
        reseller_id: str,
        staff_id: str | None = None,
        reason: str | None = None,
    ) -> ResolutionResult:
        """Resolve a conflict in favour of one deal, in one transaction.

        The winning deal is assigned to ``reseller_id`` (with an
        assignment-history row). Every other pending conflict between the
        same two deals is resolved alongside. The losing deal is rejected and
        its pending conflicts with other deals are dismissed, so exactly one
        deal of the pair stays authoritative.

        Returns:
            ResolutionResult with the winning deal and both deals of the pair.

        Raises:
            NotFoundError: Unknown conflict or deal.
            ValidationError: Winner not part of the pair, the winner still
                has pending conflicts with other deals, or the winner is
                already approved or rejected.
            IntegrityViolation: The conflict is already terminal.
        """
        async with self._session("resolve_with_assignment") as session:
            conflict = await _lock_conflict(session, conflict_id)
            _ensure_pending(conflict)

            winner_uuid = _uuid(winning_deal_id, "deal")
            if winner_uuid not in (conflict.deal_id, conflict.competing_deal_id):
                raise ValidationError(
                    f"Deal {winning_deal_id} is not part of conflict {conflict_id}"
                )
            loser_uuid = (
                conflict.competing_deal_id
                if winner_uuid == conflict.deal_id
                else conflict.deal_id
            )

            open_rows = await _lock_pending_for(session, winner_uuid)
            same_pair = [
                c for c in open_rows
                if {c.deal_id, c.competing_deal_id} == {winner_uuid, loser_uuid}
            ]
            blocking = [c for c in open_rows if c not in same_pair]
            if blocking:
                raise ValidationError(
                    f"Deal {winning_deal_id} still has {len(blocking)} pending "
                    "conflicts with other deals"
                )

            non_terminal = {s.value for s in NON_TERMINAL_STATUSES}
            deal = await _lock_deal(session, winning_deal_id)
            if deal.status not in non_terminal:
                raise ValidationError(
                    f"Deal {winning_deal_id} cannot be assigned from status {deal.status}"
                )
            loser = await _lock_deal(session, str(loser_uuid))

            now = self._clock()
            staff_uuid = _uuid(staff_id, "staff") if staff_id else None
            for row in same_pair:
                row.resolution_status = ResolutionStatus.RESOLVED.value
                row.resolved_at = now
                row.updated_at = now
                if staff_uuid is not None:
                    row.assigned_to_staff = staff_uuid

            old_reseller = deal.assigned_reseller_id
            deal.assigned_reseller_id = _uuid(reseller_id, "reseller")
            deal.status = DealStatus.ASSIGNED.value
            deal.assignment_date = now
            deal.updated_at = now

            session.add(
                AssignmentHistoryModel(
                    deal_id=deal.id,
                    old_reseller_id=old_reseller,
                    new_reseller_id=deal.assigned_reseller_id,
                    assigned_by=staff_uuid,
                    reason=reason or f"Resolved conflict {conflict_id}",
                )
            )

            dismissed = []
            if loser.status in non_terminal:
                dismissed = [
                    c for c in await _lock_pending_for(session, loser.id)
                    if c not in same_pair
                ]
                for row in dismissed:
                    row.resolution_status = ResolutionStatus.DISMISSED.value
                    row.resolved_at = now
                    row.updated_at = now
                    if staff_uuid is not None:
                        row.assigned_to_staff = staff_uuid
                loser.status = DealStatus.REJECTED.value
                loser.updated_at = now
            await session.commit()

            winner_read = _model_to_deal(
                deal, await session.get(EndCustomerModel, deal.end_customer_id)
            )
            loser_read = _model_to_deal(
                loser, await session.get(EndCustomerModel, loser.end_customer_id)
            )
            pair = (
                [winner_read, loser_read]
                if winner_uuid == conflict.deal_id
                else [loser_read, winner_read]
            )
            logger.info(
                "conflict_resolved_with_assignment",
                conflict_id=conflict_id,
                winning_deal_id=winning_deal_id,
                losing_deal_id=str(loser_uuid),
                dismissed=len(dismissed),
            )
            return ResolutionResult(
                conflict=_model_to_conflict(conflict),
                deal=winner_read,
                deals=pair,
                related_conflicts=[
                    _model_to_conflict(c) for c in same_pair if c.id != conflict.id
                ],
                dismissed_conflicts=[_model_to_conflict(c) for c in dismissed],
            )

    async def reject_deal(
        self, deal_id: str, staff_id: str | None = None
    ) -> tuple[DealRead, list[ConflictRead]]:
        """Reject a deal and dismiss its pending conflicts in one transaction.

        Raises:
            NotFoundError: Unknown deal.
            ValidationError: Deal already approved or rejected.
        """
        async with self._session("reject_deal") as session:
            deal = await _lock_deal(session, deal_id)
            if deal.status not in {s.value for s in NON_TERMINAL_STATUSES}:
                raise ValidationError(
                    f"Deal {deal_id} cannot be rejected from status {deal.status}"
                )

            now = self._clock()
            staff_uuid = _uuid(staff_id, "staff") if staff_id else None
            dismissed = await _lock_pending_for(session, deal.id)
            for row in dismissed:
                row.resolution_status = ResolutionStatus.DISMISSED.value
                row.resolved_at = now
                row.updated_at = now
                if staff_uuid is not None:
                    row.assigned_to_staff = staff_uuid

            deal.status = DealStatus.REJECTED.value
            deal.updated_at = now
            await session.commit()

            customer = await session.get(EndCustomerModel, deal.end_customer_id)
            return _model_to_deal(deal, customer), [_model_to_conflict(c) for c in dismissed]


# ── Query Helpers ───────────────────────────────────────────────────────────


async def _find_open(
    session: AsyncSession, low: str, high: str, conflict_type: str
) -> DealConflictModel | None:
    stmt = select(DealConflictModel).where(
        DealConflictModel.pair_low == low,
        DealConflictModel.pair_high == high,
        DealConflictModel.conflict_type == conflict_type,
        DealConflictModel.resolution_status == ResolutionStatus.PENDING.value,
    )
    return (await session.execute(stmt)).scalars().first()


async def _lock_conflict(session: AsyncSession, conflict_id: str) -> DealConflictModel:
    stmt = (
        select(DealConflictModel)
        .where(DealConflictModel.id == _uuid(conflict_id, "conflict"))
        .with_for_update()
    )
    model = (await session.execute(stmt)).scalar_one_or_none()
    if model is None:
        raise NotFoundError(f"Conflict not found: {conflict_id}")
    return model


async def _lock_pending_for(
    session: AsyncSession, deal_uuid: uuid.UUID
) -> list[DealConflictModel]:
    stmt = select(DealConflictModel).where(
        or_(
            DealConflictModel.deal_id == deal_uuid,
            DealConflictModel.competing_deal_id == deal_uuid,
        ),
        DealConflictModel.resolution_status == ResolutionStatus.PENDING.value,
    ).with_for_update()
    return list((await session.execute(stmt)).scalars().all())


async def _lock_deal(session: AsyncSession, deal_id: str) -> DealModel:
    stmt = (
        select(DealModel)
        .where(DealModel.id == _uuid(deal_id, "deal"))
        .with_for_update()
    )
    model = (await session.execute(stmt)).scalar_one_or_none()
    if model is None:
        raise NotFoundError(f"Deal not found: {deal_id}")
    return model


def _ensure_pending(model: DealConflictModel) -> None:
    if model.resolution_status != ResolutionStatus.PENDING.value:
        raise IntegrityViolation(
            f"Conflict {model.id} is already {model.resolution_status}"
        )


async def _count_open_conflicts(session: AsyncSession, deal_uuid: uuid.UUID) -> int:
    stmt = (
        select(func.count())
        .select_from(DealConflictModel)
        .where(
            or_(
                DealConflictModel.deal_id == deal_uuid,
                DealConflictModel.competing_deal_id == deal_uuid,
            ),
            DealConflictModel.resolution_status == ResolutionStatus.PENDING.value,
        )
    )
    return (await session.execute(stmt)).scalar_one()


async def _load_summaries(
    session: AsyncSession, deal_ids: set[uuid.UUID]
) -> dict[uuid.UUID, DealSummary]:
    if not deal_ids:
        return {}
    stmt = (
        select(DealModel, EndCustomerModel, ResellerModel.name)
        .join(EndCustomerModel, EndCustomerModel.id == DealModel.end_customer_id)
        .outerjoin(ResellerModel, ResellerModel.id == DealModel.reseller_id)
        .where(DealModel.id.in_(deal_ids))
    )
    summaries = {}
    for deal, customer, reseller_name in (await session.execute(stmt)).all():
        summaries[deal.id] = DealSummary(
            deal_id=str(deal.id),
            reseller_id=str(deal.reseller_id),
            reseller_name=reseller_name,
            end_customer_name=customer.company_name,
            territory=customer.territory,
            total_value=Decimal(deal.total_value),
            status=DealStatus(deal.status),
        )
    return summaries
