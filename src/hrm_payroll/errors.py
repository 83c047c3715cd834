"""Error taxonomy shared by the payroll services and the HTTP layer."""

from __future__ import annotations


class PayrollError(Exception):
    """Base class for errors that map to a stable API error code."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(PayrollError):
    """A request-level precondition failed before any state was touched."""

    code = "validation_error"
    status_code = 400


class InvalidStateError(PayrollError):
    """Raised when a period is not in a state that permits the transition."""

    code = "invalid_state"
    status_code = 400

    def __init__(
        self,
        from_status: str,
        to_status: str | None = None,
        reason: str | None = None,
    ):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        if to_status is None:
            msg = f"Operation not allowed in status '{from_status}'"
        else:
            msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class IdempotencyConflictError(PayrollError):
    """An idempotency key was reused for a different logical request."""

    code = "idempotency_conflict"
    status_code = 409

    def __init__(self, key: str, endpoint: str):
        self.key = key
        self.endpoint = endpoint
        super().__init__(
            f"Idempotency key '{key}' was already used for a different "
            f"request to {endpoint}"
        )


class NotFoundError(PayrollError):
    """The addressed record does not exist for this tenant."""

    code = "not_found"
    status_code = 404


class LockTimeoutError(PayrollError):
    """The period row lock could not be acquired within the configured wait."""

    code = "lock_timeout"
    status_code = 503
