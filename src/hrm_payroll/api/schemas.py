"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Payroll Period schemas
# ============================================================================


class PeriodCreate(BaseModel):
    """Schema for creating a new payroll period."""

    schedule_id: UUID
    start_date: date
    end_date: date


class PeriodResponse(BaseModel):
    """Schema for payroll period response."""

    model_config = ConfigDict(from_attributes=True)

    period_id: UUID
    tenant_id: UUID
    schedule_id: UUID
    start_date: date
    end_date: date
    status: str
    finalized_at: datetime | None = None
    reopen_count: int
    created_at: datetime
    updated_at: datetime


# ============================================================================
# Transition schemas
# ============================================================================


class RunResponse(BaseModel):
    """Schema for run response."""

    period_id: UUID
    status: str
    result_count: int


class FinalizeResponse(BaseModel):
    """Schema for finalize response."""

    period_id: UUID
    status: str
    payslip_count: int
    finalized_at: datetime


class ReopenRequest(BaseModel):
    """Schema for reopen request."""

    reason: str | None = Field(default=None, max_length=1000)


class ReopenResponse(BaseModel):
    """Schema for reopen response."""

    period_id: UUID
    status: str
    reopen_count: int


# ============================================================================
# Payslip schemas
# ============================================================================


class PayslipResponse(BaseModel):
    """Schema for payslip response."""

    model_config = ConfigDict(from_attributes=True)

    payslip_id: UUID
    period_id: UUID
    employee_id: UUID
    gross: Decimal
    deductions: Decimal
    net: Decimal
    currency: str
    file_url: str | None = None
    created_at: datetime
    updated_at: datetime


class PayslipListResponse(BaseModel):
    """Schema for listing payslips of a period."""

    items: list[PayslipResponse]
    total: int


# ============================================================================
# Error schemas
# ============================================================================


class ErrorResponse(BaseModel):
    """Schema for error response."""

    detail: str
    code: str | None = None
    context: dict[str, Any] | None = None
