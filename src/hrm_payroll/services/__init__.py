"""Payroll services."""

from hrm_payroll.services.state_machine import PayrollPeriodStateMachine, PeriodStatus
from hrm_payroll.services.calculation import PayrollCalculationEngine
from hrm_payroll.services.idempotency import IdempotencyStore, compute_fingerprint
from hrm_payroll.services.side_effects import PayslipSideEffects, TextPayslipRenderer
from hrm_payroll.services.finalize_service import FinalizeService

__all__ = [
    "PayrollPeriodStateMachine",
    "PeriodStatus",
    "PayrollCalculationEngine",
    "IdempotencyStore",
    "compute_fingerprint",
    "PayslipSideEffects",
    "TextPayslipRenderer",
    "FinalizeService",
]
