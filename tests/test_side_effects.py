"""Tests for post-commit payslip side effects."""

import threading
from datetime import date
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

import pytest

from hrm_payroll.errors import NotFoundError
from hrm_payroll.services.side_effects import (
    PayslipDocument,
    PayslipNotifier,
    PayslipRenderer,
    PayslipSideEffects,
    TextPayslipRenderer,
)

from .conftest import TENANT_ID


class BrokenNotifier(PayslipNotifier):
    async def notify(self, session, document) -> bool:
        raise ConnectionError("notification store unavailable")


class FlakyRenderer(TextPayslipRenderer):
    """Fails for one employee's payslip only."""

    def __init__(self, storage_dir, failing_employee_id):
        super().__init__(storage_dir)
        self.failing_employee_id = failing_employee_id

    def render(self, document: PayslipDocument) -> str:
        if document.employee_id == self.failing_employee_id:
            raise OSError("disk full")
        return super().render(document)


def make_document(**overrides) -> PayslipDocument:
    values = dict(
        payslip_id=uuid4(),
        tenant_id=TENANT_ID,
        employee_id=uuid4(),
        employee_user_id=None,
        employee_name="Alice Smith",
        employee_email="alice@example.com",
        period_start=date(2026, 1, 1),
        period_end=date(2026, 1, 31),
        gross=Decimal("5500.00"),
        deductions=Decimal("300.00"),
        net=Decimal("5200.00"),
        currency="USD",
    )
    values.update(overrides)
    return PayslipDocument(**values)


class TestTextPayslipRenderer:

    def test_render_writes_file(self, tmp_path: Path):
        renderer = TextPayslipRenderer(tmp_path / "slips")
        document = make_document()

        file_url = renderer.render(document)

        path = Path(file_url)
        assert path == tmp_path / "slips" / f"{document.payslip_id}.txt"
        content = path.read_text(encoding="utf-8")
        assert "Employee: Alice Smith" in content
        assert "Period: 2026-01-01 to 2026-01-31" in content
        assert "Net: 5200.00 USD" in content

    def test_satisfies_protocol(self, tmp_path: Path):
        assert isinstance(TextPayslipRenderer(tmp_path), PayslipRenderer)


class TestPayslipSideEffects:

    async def test_publish_renders_and_notifies(
        self, service, side_effects: PayslipSideEffects, reviewed_period
    ):
        await service.finalize_period(TENANT_ID, reviewed_period.period_id)

        report = await side_effects.payslips_published(TENANT_ID, reviewed_period.period_id)

        assert report.rendered == 2
        assert report.notified == 1
        assert report.failures == []

    async def test_one_failure_does_not_stop_others(
        self, service, session_factory, storage_dir, employees, reviewed_period
    ):
        await service.finalize_period(TENANT_ID, reviewed_period.period_id)
        bob = employees[1]
        effects = PayslipSideEffects(session_factory, FlakyRenderer(storage_dir, bob.employee_id))

        report = await effects.payslips_published(TENANT_ID, reviewed_period.period_id)

        assert report.rendered == 1
        assert report.notified == 1
        assert len(report.failures) == 1

    async def test_notifier_failure_is_reported(
        self, service, session_factory, storage_dir, reviewed_period
    ):
        await service.finalize_period(TENANT_ID, reviewed_period.period_id)
        effects = PayslipSideEffects(
            session_factory, TextPayslipRenderer(storage_dir), BrokenNotifier()
        )

        report = await effects.payslips_published(TENANT_ID, reviewed_period.period_id)

        assert report.rendered == 2
        assert report.notified == 0
        assert len(report.failures) == 2

    async def test_unknown_period_publishes_nothing(self, side_effects: PayslipSideEffects):
        report = await side_effects.payslips_published(TENANT_ID, uuid4())
        assert report.rendered == 0
        assert report.failures == []

    async def test_regenerate_unknown_payslip(self, side_effects: PayslipSideEffects):
        with pytest.raises(NotFoundError):
            await side_effects.regenerate(TENANT_ID, uuid4())

    async def test_regenerate_after_payslip_removed(
        self, service, side_effects: PayslipSideEffects, reviewed_period
    ):
        await service.finalize_period(TENANT_ID, reviewed_period.period_id)
        payslip = (await service.list_payslips(TENANT_ID, reviewed_period.period_id))[0]
        await service.reopen_period(TENANT_ID, reviewed_period.period_id, "bonus missing")

        with pytest.raises(NotFoundError):
            await side_effects.regenerate(TENANT_ID, payslip.payslip_id)

    async def test_blocking_renderer_runs_off_event_loop(
        self, service, session_factory, storage_dir, reviewed_period
    ):
        await service.finalize_period(TENANT_ID, reviewed_period.period_id)
        threads = []

        class RecordingRenderer(TextPayslipRenderer):
            def render(self, document: PayslipDocument) -> str:
                threads.append(threading.get_ident())
                return super().render(document)

        effects = PayslipSideEffects(session_factory, RecordingRenderer(storage_dir))
        report = await effects.payslips_published(TENANT_ID, reviewed_period.period_id)

        assert report.rendered == 2
        assert threads
        assert threading.get_ident() not in threads
