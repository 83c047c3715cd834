"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hrm_payroll.errors import ValidationError
from hrm_payroll.services.finalize_service import FinalizeService
from hrm_payroll.services.side_effects import PayslipSideEffects


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    """Session factory configured on the application."""
    return request.app.state.session_factory


async def get_db_session(
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with session_factory() as session:
        yield session


def _parse_uuid_header(value: str | None, header: str) -> UUID:
    if not value:
        raise ValidationError(f"{header} header is required")
    try:
        return UUID(value)
    except ValueError:
        raise ValidationError(f"Invalid {header} format")


async def get_tenant_id(
    x_tenant_id: Annotated[str | None, Header()] = None
) -> UUID:
    """Extract tenant ID from header."""
    return _parse_uuid_header(x_tenant_id, "X-Tenant-ID")


async def get_user_id(
    x_user_id: Annotated[str | None, Header()] = None
) -> UUID:
    """Extract acting user ID from header."""
    return _parse_uuid_header(x_user_id, "X-User-ID")


async def get_idempotency_key(
    idempotency_key: Annotated[str | None, Header()] = None
) -> str | None:
    """Raw Idempotency-Key header; validated by the gate."""
    return idempotency_key


def get_finalize_service(
    request: Request,
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
) -> FinalizeService:
    """Build the payroll period service for a request."""
    side_effects: PayslipSideEffects = request.app.state.side_effects
    return FinalizeService(
        session_factory,
        side_effects,
        lock_timeout_ms=request.app.state.settings.lock_timeout_ms,
    )


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
TenantId = Annotated[UUID, Depends(get_tenant_id)]
UserId = Annotated[UUID, Depends(get_user_id)]
IdempotencyKey = Annotated[str | None, Depends(get_idempotency_key)]
PeriodService = Annotated[FinalizeService, Depends(get_finalize_service)]
