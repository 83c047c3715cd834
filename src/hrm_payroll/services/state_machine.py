"""Payroll period state machine with transition validation."""

from __future__ import annotations

from enum import Enum

from hrm_payroll.errors import InvalidStateError


class PeriodStatus(str, Enum):
    """Payroll period status values."""

    DRAFT = "draft"
    RUNNING = "running"
    REVIEWED = "reviewed"
    FINALIZED = "finalized"
    REOPENED = "reopened"


class PayrollPeriodStateMachine:
    """State machine for payroll period status transitions.

    Allowed transitions:
    - draft → running
    - reopened → running
    - running → running (retry after a failed calculation)
    - running → reviewed
    - reviewed → running (recalculate before finalize)
    - reviewed → finalized
    - finalized → reopened
    """

    # Define valid transitions: {from_status: [allowed_to_statuses]}
    VALID_TRANSITIONS: dict[str, list[str]] = {
        PeriodStatus.DRAFT: [PeriodStatus.RUNNING],
        PeriodStatus.RUNNING: [PeriodStatus.RUNNING, PeriodStatus.REVIEWED],
        PeriodStatus.REVIEWED: [PeriodStatus.RUNNING, PeriodStatus.FINALIZED],
        PeriodStatus.FINALIZED: [PeriodStatus.REOPENED],
        PeriodStatus.REOPENED: [PeriodStatus.RUNNING],
    }

    # Statuses from which the calculation engine may be invoked
    RUN_ALLOWED = {
        PeriodStatus.DRAFT,
        PeriodStatus.RUNNING,
        PeriodStatus.REVIEWED,
        PeriodStatus.REOPENED,
    }

    # Statuses where results and payslips are immutable
    IMMUTABLE = {
        PeriodStatus.FINALIZED,
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(
        cls, from_status: str, to_status: str, reason: str | None = None
    ) -> None:
        """Validate a transition, raising InvalidStateError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateError(from_status, to_status, reason)

    @classmethod
    def can_run(cls, status: str) -> bool:
        """Check if the calculation engine may run in this status."""
        return status in cls.RUN_ALLOWED

    @classmethod
    def is_immutable(cls, status: str) -> bool:
        """Check if results and payslips are frozen in this status."""
        return status in cls.IMMUTABLE
