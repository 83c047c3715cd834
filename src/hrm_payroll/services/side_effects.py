"""Post-commit side effects of finalize: payslip documents and notifications.

These run after the finalize transaction has committed. Each payslip is
handled in isolation: a failed render or notification is logged and
reported, never raised, and never affects the finalized period.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hrm_payroll.errors import NotFoundError
from hrm_payroll.models import Employee, Notification, PayrollPeriod, Payslip

logger = logging.getLogger(__name__)

NOTIFICATION_PAYSLIP_PUBLISHED = "payslip_published"


@dataclass(frozen=True)
class PayslipDocument:
    """Everything a renderer needs to produce one payslip document."""

    payslip_id: UUID
    tenant_id: UUID
    employee_id: UUID
    employee_user_id: UUID | None
    employee_name: str
    employee_email: str
    period_start: date
    period_end: date
    gross: Decimal
    deductions: Decimal
    net: Decimal
    currency: str


@dataclass
class SideEffectReport:
    """Outcome of a post-commit side-effect pass."""

    rendered: int = 0
    notified: int = 0
    failures: list[str] = field(default_factory=list)


@runtime_checkable
class PayslipRenderer(Protocol):
    """Protocol for payslip document renderers.

    render is called in a worker thread, so it may do blocking file I/O.
    """

    def render(self, document: PayslipDocument) -> str:
        """Render the document and return its file URL."""
        ...


class TextPayslipRenderer:
    """Writes a plain-text payslip under a storage directory."""

    def __init__(self, storage_dir: str | Path):
        self.storage_dir = Path(storage_dir)

    def render(self, document: PayslipDocument) -> str:
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        path = self.storage_dir / f"{document.payslip_id}.txt"
        lines = [
            "Payslip",
            f"Employee: {document.employee_name}",
            f"Email: {document.employee_email}",
            f"Period: {document.period_start.isoformat()} to {document.period_end.isoformat()}",
            f"Gross: {document.gross:.2f} {document.currency}",
            f"Deductions: {document.deductions:.2f} {document.currency}",
            f"Net: {document.net:.2f} {document.currency}",
        ]
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return str(path)


class PayslipNotifier:
    """Records an in-app notification that a payslip is available."""

    async def notify(self, session: AsyncSession, document: PayslipDocument) -> bool:
        """Add a notification row. Returns False if the employee has no user."""
        if document.employee_user_id is None:
            return False
        session.add(
            Notification(
                tenant_id=document.tenant_id,
                user_id=document.employee_user_id,
                type=NOTIFICATION_PAYSLIP_PUBLISHED,
                title="Payslip published",
                body="A new payslip is available for download.",
            )
        )
        return True


class PayslipSideEffects:
    """Runs document rendering and notification for finalized payslips.

    Usage:
        effects = PayslipSideEffects(session_factory, TextPayslipRenderer("storage"))
        report = await effects.payslips_published(tenant_id, period_id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        renderer: PayslipRenderer,
        notifier: PayslipNotifier | None = None,
    ):
        self.session_factory = session_factory
        self.renderer = renderer
        self.notifier = notifier or PayslipNotifier()

    async def payslips_published(self, tenant_id: UUID, period_id: UUID) -> SideEffectReport:
        """Render and announce every payslip of a freshly finalized period."""
        report = SideEffectReport()
        try:
            documents = await self._load_documents(
                Payslip.tenant_id == tenant_id, Payslip.period_id == period_id
            )
        except Exception:
            logger.exception("Loading payslips of period %s for publishing failed", period_id)
            report.failures.append(str(period_id))
            return report

        for document in documents:
            await self._publish_one(document, report)

        if report.failures:
            logger.warning(
                "Period %s published with %d side-effect failure(s)",
                period_id,
                len(report.failures),
            )
        return report

    async def regenerate(self, tenant_id: UUID, payslip_id: UUID) -> str:
        """Re-render a single payslip document and store its new file URL.

        Unlike publishing, failures propagate to the caller.
        """
        documents = await self._load_documents(
            Payslip.tenant_id == tenant_id, Payslip.payslip_id == payslip_id
        )
        if not documents:
            raise NotFoundError("payslip not found")
        document = documents[0]
        file_url = await asyncio.to_thread(self.renderer.render, document)
        await self._store_file_url(document.payslip_id, file_url)
        return file_url

    async def _publish_one(self, document: PayslipDocument, report: SideEffectReport) -> None:
        """Render and notify for one payslip, isolating failures."""
        try:
            file_url = await asyncio.to_thread(self.renderer.render, document)
            await self._store_file_url(document.payslip_id, file_url)
            report.rendered += 1
        except Exception:
            logger.exception("Payslip %s document rendering failed", document.payslip_id)
            report.failures.append(str(document.payslip_id))

        try:
            async with self.session_factory() as session, session.begin():
                if await self.notifier.notify(session, document):
                    report.notified += 1
        except Exception:
            logger.exception("Payslip %s notification failed", document.payslip_id)
            report.failures.append(str(document.payslip_id))

    async def _store_file_url(self, payslip_id: UUID, file_url: str) -> None:
        async with self.session_factory() as session, session.begin():
            payslip = await session.get(Payslip, payslip_id)
            if payslip is not None:
                payslip.file_url = file_url

    async def _load_documents(self, *criteria) -> list[PayslipDocument]:
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                select(Payslip, Employee, PayrollPeriod)
                .join(Employee, Payslip.employee_id == Employee.employee_id)
                .join(PayrollPeriod, Payslip.period_id == PayrollPeriod.period_id)
                .where(*criteria)
                .order_by(Payslip.employee_id)
            )
            return [
                PayslipDocument(
                    payslip_id=payslip.payslip_id,
                    tenant_id=payslip.tenant_id,
                    employee_id=employee.employee_id,
                    employee_user_id=employee.user_id,
                    employee_name=employee.full_name,
                    employee_email=employee.email,
                    period_start=period.start_date,
                    period_end=period.end_date,
                    gross=payslip.gross,
                    deductions=payslip.deductions,
                    net=payslip.net,
                    currency=payslip.currency,
                )
                for payslip, employee, period in result.all()
            ]
