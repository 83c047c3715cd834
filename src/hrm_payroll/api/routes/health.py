"""Health check endpoints."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError

from hrm_payroll.api.dependencies import DbSession
from hrm_payroll.models import IdempotencyRecord, PayrollPeriod

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime
    database: str
    dialect: str
    lock_scope: str
    lock_timeout_ms: int


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
)
async def health_check(request: Request, db: DbSession) -> HealthResponse:
    """Check database health and report how finalize locks are taken."""
    dialect = db.get_bind().dialect.name
    db_status = "unhealthy"
    try:
        await db.execute(text("SELECT 1"))
        db_status = "healthy"
    except SQLAlchemyError:
        logger.warning("Database health check failed", exc_info=True)

    return HealthResponse(
        status="healthy" if db_status == "healthy" else "degraded",
        timestamp=datetime.now(timezone.utc),
        database=db_status,
        dialect=dialect,
        # SQLite serializes writers on the whole database
        lock_scope="row" if dialect == "postgresql" else "database",
        lock_timeout_ms=request.app.state.settings.lock_timeout_ms,
    )


@router.get("/ready", status_code=status.HTTP_200_OK)
async def readiness_check(db: DbSession):
    """Ready once the period and idempotency tables can be queried."""
    try:
        await db.execute(select(PayrollPeriod.period_id).limit(1))
        await db.execute(select(IdempotencyRecord.key).limit(1))
    except SQLAlchemyError:
        logger.warning("Payroll schema is not available", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready"},
        )
    return {"status": "ready"}


@router.get("/live", status_code=status.HTTP_200_OK)
async def liveness_check() -> dict[str, str]:
    """Liveness check for container orchestration."""
    return {"status": "alive"}
