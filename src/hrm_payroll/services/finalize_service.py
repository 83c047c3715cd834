"""Payroll period service - orchestrates run, finalize, and reopen.

Finalize is the compliance-critical transition: it turns reviewed payroll
results into authoritative payslips exactly once. All of it happens in one
transaction that holds an exclusive lock on the period row; concurrent
attempts on the same period are serialized by the database, not by any
in-process lock.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import AsyncGenerator
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hrm_payroll.database import dialect_insert, is_lock_timeout, set_lock_timeout
from hrm_payroll.errors import (
    InvalidStateError,
    LockTimeoutError,
    NotFoundError,
    ValidationError,
)
from hrm_payroll.models import AuditEvent, PayrollPeriod, PayrollResult, Payslip
from hrm_payroll.services.calculation import PayrollCalculationEngine
from hrm_payroll.services.side_effects import PayslipSideEffects
from hrm_payroll.services.state_machine import PayrollPeriodStateMachine, PeriodStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunResult:
    """Outcome of a payroll run."""

    period_id: UUID
    status: str
    result_count: int


@dataclass(frozen=True)
class FinalizeResult:
    """Outcome of a committed finalize."""

    period_id: UUID
    status: str
    payslip_count: int
    finalized_at: datetime


class FinalizeService:
    """Service for the payroll period lifecycle.

    Operations:
    - run_period: compute results, draft/reopened → running → reviewed
    - finalize_period: lock, verify, write payslips, reviewed → finalized
    - reopen_period: finalized → reopened, discarding results and payslips
    - regenerate_payslip: re-render one payslip document of a finalized period
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        side_effects: PayslipSideEffects,
        lock_timeout_ms: int = 5000,
    ):
        self.session_factory = session_factory
        self.side_effects = side_effects
        self.lock_timeout_ms = lock_timeout_ms

    # ------------------------------------------------------------------
    # Reads and period creation
    # ------------------------------------------------------------------

    async def create_period(
        self,
        tenant_id: UUID,
        schedule_id: UUID,
        start_date: date,
        end_date: date,
    ) -> PayrollPeriod:
        """Create a payroll period in draft status."""
        if end_date < start_date:
            raise ValidationError("end_date must not be before start_date")

        async with self.session_factory() as session, session.begin():
            period = PayrollPeriod(
                tenant_id=tenant_id,
                schedule_id=schedule_id,
                start_date=start_date,
                end_date=end_date,
                status=PeriodStatus.DRAFT.value,
            )
            session.add(period)
            await session.flush()
            await session.refresh(period)
        return period

    async def get_period(self, tenant_id: UUID, period_id: UUID) -> PayrollPeriod:
        """Load a period, raising NotFoundError if it is not the tenant's."""
        async with self.session_factory() as session, session.begin():
            period = await session.get(PayrollPeriod, period_id)
        if period is None or period.tenant_id != tenant_id:
            raise NotFoundError("payroll period not found")
        return period

    async def list_payslips(self, tenant_id: UUID, period_id: UUID) -> list[Payslip]:
        """List payslips of a period ordered by employee."""
        await self.get_period(tenant_id, period_id)
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                select(Payslip)
                .where(Payslip.tenant_id == tenant_id, Payslip.period_id == period_id)
                .order_by(Payslip.employee_id)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def run_period(
        self,
        tenant_id: UUID,
        period_id: UUID,
        actor_user_id: UUID | None = None,
    ) -> RunResult:
        """Compute results for a period and move it to reviewed.

        The period is marked running in its own transaction first. If the
        calculation fails afterwards, the period stays running so an operator
        can retry; no authoritative records exist yet at that point.
        """
        async with self._locked_period(tenant_id, period_id) as (_, period):
            if not PayrollPeriodStateMachine.can_run(period.status):
                raise InvalidStateError(
                    period.status,
                    PeriodStatus.RUNNING.value,
                    "payroll period cannot be run in its current status",
                )
            period.status = PeriodStatus.RUNNING.value

        try:
            async with self._locked_period(tenant_id, period_id) as (session, period):
                if period.status != PeriodStatus.RUNNING:
                    raise InvalidStateError(
                        period.status,
                        PeriodStatus.REVIEWED.value,
                        "payroll period left running status during calculation",
                    )
                engine = PayrollCalculationEngine(session)
                result_count = await engine.compute_results(period)
                PayrollPeriodStateMachine.validate_transition(
                    period.status, PeriodStatus.REVIEWED
                )
                period.status = PeriodStatus.REVIEWED.value
                self._record_audit(
                    session,
                    tenant_id=tenant_id,
                    actor_user_id=actor_user_id,
                    period_id=period_id,
                    action="payroll.run",
                    details={"result_count": result_count},
                )
        except (InvalidStateError, NotFoundError):
            raise
        except Exception:
            logger.exception(
                "Payroll calculation for period %s failed; period left running",
                period_id,
            )
            raise

        logger.info("Payroll period %s reviewed with %d result(s)", period_id, result_count)
        return RunResult(
            period_id=period_id,
            status=PeriodStatus.REVIEWED.value,
            result_count=result_count,
        )

    async def finalize_period(
        self,
        tenant_id: UUID,
        period_id: UUID,
        actor_user_id: UUID | None = None,
    ) -> FinalizeResult:
        """Finalize a reviewed period into payslips.

        This method:
        1. Opens one transaction and locks the period row
        2. Re-reads status under the lock; must be reviewed
        3. Requires at least one payroll result
        4. Inserts or updates one payslip per result
        5. Moves the period to finalized with a conditional update
        6. Commits, then renders and announces payslips best-effort

        Raises:
            NotFoundError: If the period does not exist for the tenant
            InvalidStateError: If the period is not reviewed or has no results
            LockTimeoutError: If the row lock could not be acquired in time
        """
        async with self._locked_period(tenant_id, period_id) as (session, period):
            if period.status != PeriodStatus.REVIEWED:
                raise InvalidStateError(
                    period.status,
                    PeriodStatus.FINALIZED.value,
                    "payroll period must be reviewed before finalize",
                )

            results = await PayrollCalculationEngine(session).fetch_results(
                tenant_id, period_id
            )
            if not results:
                raise InvalidStateError(
                    period.status,
                    PeriodStatus.FINALIZED.value,
                    "payroll period has no payroll results",
                )

            payslip_count = await self._upsert_payslips(session, results)

            finalized_at = datetime.now(timezone.utc)
            updated = await session.execute(
                update(PayrollPeriod)
                .where(
                    PayrollPeriod.period_id == period_id,
                    PayrollPeriod.tenant_id == tenant_id,
                    PayrollPeriod.status == PeriodStatus.REVIEWED.value,
                )
                .values(status=PeriodStatus.FINALIZED.value, finalized_at=finalized_at)
            )
            if updated.rowcount == 0:
                raise InvalidStateError(
                    period.status,
                    PeriodStatus.FINALIZED.value,
                    "status changed during finalize",
                )

            self._record_audit(
                session,
                tenant_id=tenant_id,
                actor_user_id=actor_user_id,
                period_id=period_id,
                action="payroll.finalize",
                details={"payslip_count": payslip_count},
            )

        logger.info("Payroll period %s finalized with %d payslip(s)", period_id, payslip_count)

        await self._publish_payslips(tenant_id, period_id)

        return FinalizeResult(
            period_id=period_id,
            status=PeriodStatus.FINALIZED.value,
            payslip_count=payslip_count,
            finalized_at=finalized_at,
        )

    async def reopen_period(
        self,
        tenant_id: UUID,
        period_id: UUID,
        reason: str | None,
        actor_user_id: UUID | None = None,
    ) -> PayrollPeriod:
        """Reopen a finalized period so it can be run again.

        Results and payslips of the period are discarded in the same
        transaction as the status change.
        """
        if reason is None or not reason.strip():
            raise ValidationError("reopen reason required")

        async with self._locked_period(tenant_id, period_id) as (session, period):
            PayrollPeriodStateMachine.validate_transition(
                period.status,
                PeriodStatus.REOPENED,
                "only finalized periods can be reopened",
            )

            await session.execute(
                delete(Payslip).where(
                    Payslip.tenant_id == tenant_id, Payslip.period_id == period_id
                )
            )
            await session.execute(
                delete(PayrollResult).where(
                    PayrollResult.tenant_id == tenant_id,
                    PayrollResult.period_id == period_id,
                )
            )

            period.status = PeriodStatus.REOPENED.value
            period.finalized_at = None
            period.reopen_count += 1

            self._record_audit(
                session,
                tenant_id=tenant_id,
                actor_user_id=actor_user_id,
                period_id=period_id,
                action="payroll.reopen",
                details={"reason": reason.strip()},
            )
            await session.flush()
            await session.refresh(period)

        logger.info("Payroll period %s reopened", period_id)
        return period

    async def regenerate_payslip(self, tenant_id: UUID, payslip_id: UUID) -> Payslip:
        """Re-render the document of one payslip without re-running finalize."""
        async with self.session_factory() as session, session.begin():
            payslip = await session.get(Payslip, payslip_id)
            if payslip is None or payslip.tenant_id != tenant_id:
                raise NotFoundError("payslip not found")
            period = await session.get(PayrollPeriod, payslip.period_id)
            if period is None or not PayrollPeriodStateMachine.is_immutable(period.status):
                raise InvalidStateError(
                    period.status if period else "missing",
                    reason="payslips can only be regenerated for finalized periods",
                )

        await self.side_effects.regenerate(tenant_id, payslip_id)

        async with self.session_factory() as session, session.begin():
            return await session.get(Payslip, payslip_id, populate_existing=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _locked_period(
        self, tenant_id: UUID, period_id: UUID
    ) -> AsyncGenerator[tuple[AsyncSession, PayrollPeriod], None]:
        """Open a transaction holding an exclusive lock on the period row.

        Any exception inside the block, including cancellation, rolls the
        transaction back before it propagates.
        """
        try:
            async with self.session_factory() as session, session.begin():
                await set_lock_timeout(session, self.lock_timeout_ms)
                result = await session.execute(
                    select(PayrollPeriod)
                    .where(
                        PayrollPeriod.period_id == period_id,
                        PayrollPeriod.tenant_id == tenant_id,
                    )
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
                period = result.scalar_one_or_none()
                if period is None:
                    raise NotFoundError("payroll period not found")
                yield session, period
        except DBAPIError as exc:
            if is_lock_timeout(exc):
                logger.warning("Timed out waiting for lock on payroll period %s", period_id)
                raise LockTimeoutError(
                    f"timed out waiting for payroll period {period_id} to become available"
                ) from exc
            raise

    async def _upsert_payslips(
        self, session: AsyncSession, results: list[PayrollResult]
    ) -> int:
        """Insert or update one payslip per result. Returns the period's payslip count."""
        insert = dialect_insert(session)
        for row in results:
            stmt = insert(Payslip).values(
                tenant_id=row.tenant_id,
                period_id=row.period_id,
                employee_id=row.employee_id,
                gross=row.gross,
                deductions=row.deductions,
                net=row.net,
                currency=row.currency,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["period_id", "employee_id"],
                set_={
                    "gross": stmt.excluded.gross,
                    "deductions": stmt.excluded.deductions,
                    "net": stmt.excluded.net,
                    "currency": stmt.excluded.currency,
                    "updated_at": func.now(),
                },
            )
            await session.execute(stmt)

        count = await session.scalar(
            select(func.count())
            .select_from(Payslip)
            .where(Payslip.period_id == results[0].period_id)
        )
        return count or 0

    async def _publish_payslips(self, tenant_id: UUID, period_id: UUID) -> None:
        """Run post-commit side effects; failures never undo finalize."""
        try:
            await self.side_effects.payslips_published(tenant_id, period_id)
        except Exception:
            logger.exception(
                "Post-commit publishing for payroll period %s failed", period_id
            )

    def _record_audit(
        self,
        session: AsyncSession,
        tenant_id: UUID,
        actor_user_id: UUID | None,
        period_id: UUID,
        action: str,
        details: dict | None = None,
    ) -> None:
        """Record an audit event for a period action."""
        session.add(
            AuditEvent(
                tenant_id=tenant_id,
                actor_user_id=actor_user_id,
                entity_type="payroll_period",
                entity_id=period_id,
                action=action,
                details=details,
            )
        )
