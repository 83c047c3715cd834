"""Pytest fixtures for HRM payroll tests."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import AsyncGenerator
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from hrm_payroll.api.app import create_app
from hrm_payroll.config import Settings
from hrm_payroll.database import create_engine_for_url, create_schema, create_session_factory
from hrm_payroll.models import Employee, PayrollInput, PayrollPeriod
from hrm_payroll.services.finalize_service import FinalizeService
from hrm_payroll.services.side_effects import PayslipSideEffects, TextPayslipRenderer

TENANT_ID = UUID("11111111-1111-1111-1111-111111111111")
OTHER_TENANT_ID = UUID("22222222-2222-2222-2222-222222222222")
USER_ID = UUID("33333333-3333-3333-3333-333333333333")
SCHEDULE_ID = UUID("44444444-4444-4444-4444-444444444444")
ALICE_USER_ID = UUID("55555555-5555-5555-5555-555555555555")

PERIOD_START = date(2026, 1, 1)
PERIOD_END = date(2026, 1, 31)


def api_headers(**extra: str) -> dict[str, str]:
    """Tenant and user headers for API calls."""
    headers = {"X-Tenant-ID": str(TENANT_ID), "X-User-ID": str(USER_ID)}
    headers.update(extra)
    return headers


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """File-backed SQLite so concurrent sessions use separate connections."""
    return f"sqlite+aiosqlite:///{tmp_path / 'payroll.db'}"


@pytest_asyncio.fixture
async def engine(database_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """Create test database engine with schema."""
    engine = create_engine_for_url(database_url)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def storage_dir(tmp_path: Path) -> Path:
    return tmp_path / "payslips"


@pytest.fixture
def side_effects(session_factory, storage_dir: Path) -> PayslipSideEffects:
    return PayslipSideEffects(session_factory, TextPayslipRenderer(storage_dir))


@pytest.fixture
def service(session_factory, side_effects) -> FinalizeService:
    return FinalizeService(session_factory, side_effects, lock_timeout_ms=1000)


@pytest_asyncio.fixture
async def employees(session_factory) -> list[Employee]:
    """Two active employees and one inactive employee of the test tenant.

    Alice has a bank account, a linked user, and inputs for the period
    fixture's dates. Bob has neither bank account nor user.
    """
    alice = Employee(
        employee_id=uuid4(),
        tenant_id=TENANT_ID,
        user_id=ALICE_USER_ID,
        first_name="Alice",
        last_name="Smith",
        email="alice@example.com",
        salary=Decimal("5000.00"),
        bank_account="DE89370400440532013000",
    )
    bob = Employee(
        employee_id=uuid4(),
        tenant_id=TENANT_ID,
        first_name="Bob",
        last_name="Jones",
        email="bob@example.com",
        salary=Decimal("4000.00"),
    )
    carol = Employee(
        employee_id=uuid4(),
        tenant_id=TENANT_ID,
        first_name="Carol",
        last_name="White",
        email="carol@example.com",
        salary=Decimal("3000.00"),
        bank_account="GB29NWBK60161331926819",
        status="inactive",
    )
    async with session_factory() as session, session.begin():
        session.add_all([alice, bob, carol])
    return [alice, bob, carol]


@pytest_asyncio.fixture
async def period(service: FinalizeService) -> PayrollPeriod:
    """A draft period for the test tenant."""
    return await service.create_period(TENANT_ID, SCHEDULE_ID, PERIOD_START, PERIOD_END)


@pytest_asyncio.fixture
async def period_inputs(session_factory, employees: list[Employee], period: PayrollPeriod):
    """Bonus and deduction inputs for Alice."""
    alice = employees[0]
    async with session_factory() as session, session.begin():
        session.add_all([
            PayrollInput(
                tenant_id=TENANT_ID,
                period_id=period.period_id,
                employee_id=alice.employee_id,
                element_type="earning",
                amount=Decimal("500.00"),
            ),
            PayrollInput(
                tenant_id=TENANT_ID,
                period_id=period.period_id,
                employee_id=alice.employee_id,
                element_type="deduction",
                amount=Decimal("300.00"),
                source="import",
            ),
        ])


@pytest_asyncio.fixture
async def reviewed_period(
    service: FinalizeService, period: PayrollPeriod, period_inputs
) -> PayrollPeriod:
    """A period that has been run and is ready to finalize."""
    await service.run_period(TENANT_ID, period.period_id, actor_user_id=USER_ID)
    return await service.get_period(TENANT_ID, period.period_id)


@pytest.fixture
def settings(database_url: str, storage_dir: Path) -> Settings:
    return Settings(
        database_url=database_url,
        host="127.0.0.1",
        port=8000,
        debug=False,
        log_level="INFO",
        lock_timeout_ms=1000,
        payslip_storage_dir=str(storage_dir),
        auto_create_schema=False,
    )


@pytest_asyncio.fixture
async def client(session_factory, side_effects, settings) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to an app using the test database."""
    app = create_app(session_factory=session_factory, side_effects=side_effects, settings=settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
