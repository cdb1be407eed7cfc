"""
Dispatch error taxonomy.

Every core operation raises one of these; the API layer maps them to HTTP
responses through ``status_code`` and ``code``.
"""
from typing import Optional, Dict, Any


class DispatchError(Exception):
    status_code: int = 400
    code: str = "dispatch_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.message, "error": self.code}
        if self.context:
            body["context"] = {k: str(v) for k, v in self.context.items()}
        return body


class ValidationError(DispatchError):
    """Malformed input, e.g. a latitude outside [-90, 90]. Never retried."""
    status_code = 422
    code = "validation_error"


class NotFoundError(DispatchError):
    status_code = 404
    code = "not_found"


class StateConflictError(DispatchError):
    """Invalid lifecycle transition, or a lost assignment race."""
    status_code = 409
    code = "state_conflict"


class OutOfServiceAreaError(DispatchError):
    status_code = 422
    code = "out_of_service_area"


class CapacityError(DispatchError):
    """Worker is offline or already at its concurrent-job limit."""
    status_code = 409
    code = "capacity"


class UnknownServiceTypeError(DispatchError):
    status_code = 422
    code = "unknown_service_type"

    def __init__(self, service_type: Optional[str]):
        super().__init__(f"Unknown service type: {service_type}", service_type=service_type)
        self.service_type = service_type


class AssignmentCorruptionError(DispatchError):
    """
    A partially committed assignment could not be rolled back.

    The one-active-assignment-per-booking invariant may be violated; the
    booking needs manual reconciliation and must not be retried blindly.
    """
    status_code = 500
    code = "assignment_corruption"

    def __init__(self, message: str, cause: Optional[BaseException] = None, **context: Any):
        super().__init__(message, **context)
        self.cause = cause


class OperationTimeoutError(DispatchError):
    status_code = 504
    code = "timeout"
