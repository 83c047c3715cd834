"""ORM models."""

from hrm_payroll.models.base import Base, TimestampMixin, UpdatedAtMixin
from hrm_payroll.models.employee import Employee
from hrm_payroll.models.idempotency import IdempotencyRecord
from hrm_payroll.models.payroll import (
    AuditEvent,
    Notification,
    PayrollInput,
    PayrollPeriod,
    PayrollResult,
    Payslip,
)

__all__ = [
    "AuditEvent",
    "Base",
    "Employee",
    "IdempotencyRecord",
    "Notification",
    "PayrollInput",
    "PayrollPeriod",
    "PayrollResult",
    "Payslip",
    "TimestampMixin",
    "UpdatedAtMixin",
]
