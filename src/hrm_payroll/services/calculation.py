"""Payroll calculation engine.

Computes one PayrollResult per active employee for a period. Net pay is
base salary plus earning inputs minus deduction inputs; there is no
statutory tax modelling here.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from hrm_payroll.models import Employee, PayrollInput, PayrollPeriod, PayrollResult

CENTS = Decimal("0.01")

ELEMENT_EARNING = "earning"
ELEMENT_DEDUCTION = "deduction"

WARNING_MISSING_BANK = "missing_bank_account"
WARNING_NEGATIVE_NET = "negative_net"
WARNING_NET_VARIANCE = "net_variance"

# Relative change against the previous net that triggers a variance warning
NET_VARIANCE_THRESHOLD = Decimal("0.5")


@dataclass(frozen=True)
class InputLine:
    """A single earning or deduction amount."""

    element_type: str
    amount: Decimal


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def compute_payroll(
    base_salary: Decimal, inputs: Iterable[InputLine]
) -> tuple[Decimal, Decimal, Decimal]:
    """Return (gross, deductions, net) for one employee."""
    gross = Decimal(base_salary)
    deductions = Decimal("0")
    for line in inputs:
        if line.element_type == ELEMENT_EARNING:
            gross += line.amount
        elif line.element_type == ELEMENT_DEDUCTION:
            deductions += line.amount
    return _money(gross), _money(deductions), _money(gross - deductions)


def collect_warnings(
    bank_account: str | None,
    net: Decimal,
    previous_net: Decimal | None,
) -> list[str]:
    """Flag results a reviewer should look at before finalizing."""
    warnings: list[str] = []
    if not bank_account:
        warnings.append(WARNING_MISSING_BANK)
    if net < 0:
        warnings.append(WARNING_NEGATIVE_NET)
    if previous_net is not None and previous_net > 0:
        if abs(net - previous_net) / previous_net > NET_VARIANCE_THRESHOLD:
            warnings.append(WARNING_NET_VARIANCE)
    return warnings


class PayrollCalculationEngine:
    """Computes and stores PayrollResult rows for a period.

    Runs inside the caller's transaction; nothing here commits.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def compute_results(self, period: PayrollPeriod) -> int:
        """Recompute results for every active employee of the period's tenant.

        Returns count of result rows written.
        """
        await self.session.execute(
            delete(PayrollResult).where(
                PayrollResult.tenant_id == period.tenant_id,
                PayrollResult.period_id == period.period_id,
            )
        )

        employees = await self.session.execute(
            select(Employee)
            .where(Employee.tenant_id == period.tenant_id, Employee.status == "active")
            .order_by(Employee.employee_id)
        )

        count = 0
        for employee in employees.scalars().all():
            inputs = await self._input_lines(period.period_id, employee.employee_id)
            gross, deductions, net = compute_payroll(employee.salary, inputs)
            previous_net = await self._previous_net(period, employee.employee_id)

            self.session.add(
                PayrollResult(
                    tenant_id=period.tenant_id,
                    period_id=period.period_id,
                    employee_id=employee.employee_id,
                    gross=gross,
                    deductions=deductions,
                    net=net,
                    currency=employee.currency,
                    warnings=collect_warnings(employee.bank_account, net, previous_net),
                )
            )
            count += 1

        await self.session.flush()
        return count

    async def fetch_results(self, tenant_id: UUID, period_id: UUID) -> list[PayrollResult]:
        """Get all results for a period."""
        result = await self.session.execute(
            select(PayrollResult)
            .where(
                PayrollResult.tenant_id == tenant_id,
                PayrollResult.period_id == period_id,
            )
            .order_by(PayrollResult.employee_id)
        )
        return list(result.scalars().all())

    async def _input_lines(self, period_id: UUID, employee_id: UUID) -> list[InputLine]:
        result = await self.session.execute(
            select(PayrollInput.element_type, PayrollInput.amount).where(
                PayrollInput.period_id == period_id,
                PayrollInput.employee_id == employee_id,
            )
        )
        return [InputLine(element_type, amount) for element_type, amount in result.all()]

    async def _previous_net(self, period: PayrollPeriod, employee_id: UUID) -> Decimal | None:
        """Net of the employee's most recent earlier period, if any."""
        result = await self.session.execute(
            select(PayrollResult.net)
            .join(PayrollPeriod, PayrollResult.period_id == PayrollPeriod.period_id)
            .where(
                PayrollResult.tenant_id == period.tenant_id,
                PayrollResult.employee_id == employee_id,
                PayrollPeriod.end_date < period.start_date,
            )
            .order_by(PayrollPeriod.end_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
