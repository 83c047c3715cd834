"""Payroll period API endpoints."""

from uuid import UUID

from fastapi import APIRouter, Request, status

from hrm_payroll.api.dependencies import (
    IdempotencyKey,
    PeriodService,
    SessionFactory,
    TenantId,
    UserId,
)
from hrm_payroll.api.idempotency import GuardedResponse, IdempotencyGate
from hrm_payroll.api.schemas import (
    ErrorResponse,
    FinalizeResponse,
    PayslipListResponse,
    PayslipResponse,
    PeriodCreate,
    PeriodResponse,
    ReopenRequest,
    ReopenResponse,
    RunResponse,
)

router = APIRouter(prefix="/payroll", tags=["payroll"])

FINALIZE_ENDPOINT = "payroll.finalize"


# ============================================================================
# Periods
# ============================================================================


@router.post(
    "/periods",
    response_model=PeriodResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
)
async def create_period(
    service: PeriodService,
    tenant_id: TenantId,
    payload: PeriodCreate,
) -> PeriodResponse:
    """Create a new payroll period in draft status."""
    period = await service.create_period(
        tenant_id,
        schedule_id=payload.schedule_id,
        start_date=payload.start_date,
        end_date=payload.end_date,
    )
    return PeriodResponse.model_validate(period)


@router.get(
    "/periods/{period_id}",
    response_model=PeriodResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_period(
    service: PeriodService,
    tenant_id: TenantId,
    period_id: UUID,
) -> PeriodResponse:
    """Get a payroll period by ID."""
    period = await service.get_period(tenant_id, period_id)
    return PeriodResponse.model_validate(period)


@router.get(
    "/periods/{period_id}/payslips",
    response_model=PayslipListResponse,
    responses={404: {"model": ErrorResponse}},
)
async def list_payslips(
    service: PeriodService,
    tenant_id: TenantId,
    period_id: UUID,
) -> PayslipListResponse:
    """List the payslips of a period."""
    payslips = await service.list_payslips(tenant_id, period_id)
    return PayslipListResponse(
        items=[PayslipResponse.model_validate(p) for p in payslips],
        total=len(payslips),
    )


# ============================================================================
# Transitions
# ============================================================================


@router.post(
    "/periods/{period_id}/run",
    response_model=RunResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def run_period(
    service: PeriodService,
    tenant_id: TenantId,
    user_id: UserId,
    period_id: UUID,
) -> RunResponse:
    """Compute payroll results and move the period to reviewed."""
    result = await service.run_period(tenant_id, period_id, actor_user_id=user_id)
    return RunResponse(
        period_id=result.period_id,
        status=result.status,
        result_count=result.result_count,
    )


@router.post(
    "/periods/{period_id}/finalize",
    response_model=FinalizeResponse,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def finalize_period(
    request: Request,
    service: PeriodService,
    session_factory: SessionFactory,
    tenant_id: TenantId,
    user_id: UserId,
    idempotency_key: IdempotencyKey,
    period_id: UUID,
):
    """Finalize a reviewed period into payslips.

    Requires an Idempotency-Key header. A retry with the same key and the
    same request replays the first successful response.
    """

    async def finalize() -> GuardedResponse:
        result = await service.finalize_period(tenant_id, period_id, actor_user_id=user_id)
        body = FinalizeResponse(
            period_id=result.period_id,
            status=result.status,
            payslip_count=result.payslip_count,
            finalized_at=result.finalized_at,
        )
        return GuardedResponse(status.HTTP_200_OK, body.model_dump(mode="json"))

    gate = IdempotencyGate(session_factory, FINALIZE_ENDPOINT)
    return await gate.execute(
        request,
        tenant_id,
        user_id,
        idempotency_key,
        finalize,
        path_params={"period_id": period_id},
    )


@router.post(
    "/periods/{period_id}/reopen",
    response_model=ReopenResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def reopen_period(
    service: PeriodService,
    tenant_id: TenantId,
    user_id: UserId,
    period_id: UUID,
    payload: ReopenRequest | None = None,
) -> ReopenResponse:
    """Reopen a finalized period, discarding its results and payslips."""
    period = await service.reopen_period(
        tenant_id,
        period_id,
        reason=payload.reason if payload else None,
        actor_user_id=user_id,
    )
    return ReopenResponse(
        period_id=period.period_id,
        status=period.status,
        reopen_count=period.reopen_count,
    )


# ============================================================================
# Payslips
# ============================================================================


@router.post(
    "/payslips/{payslip_id}/regenerate",
    response_model=PayslipResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def regenerate_payslip(
    service: PeriodService,
    tenant_id: TenantId,
    user_id: UserId,
    payslip_id: UUID,
) -> PayslipResponse:
    """Re-render the document of a finalized payslip."""
    payslip = await service.regenerate_payslip(tenant_id, payslip_id)
    return PayslipResponse.model_validate(payslip)
