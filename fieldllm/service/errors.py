from __future__ import annotations

from typing import Any, Optional

from fieldllm.logging import sanitize_error_message, sanitize_response_data


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - unauthorized (401)
    - payment_required (402)
    - rate_limited (429)
    - configuration_error / provider_error / server_error (500)

    Messages and details are scrubbed of credentials on construction, so
    every raise site produces a loggable, returnable error.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = sanitize_error_message(message)
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = sanitize_response_data(detail or {})


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """No execution context could be resolved for the caller (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class BudgetExceededError(ServiceError):
    """Tenant spend would exceed its budget (402)."""
    status_code = 402
    error_code = "payment_required"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """Missing API key or unsupported provider family (500)."""
    error_code = "configuration_error"


class ProviderCallError(ServerError):
    """Model provider call failed.

    ``transient`` marks failures worth retrying or failing over
    (throttling, 5xx, connection loss, timeouts).
    """

    error_code = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        upstream_status: Optional[int] = None,
        provider_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            detail={"upstream_status": upstream_status, "provider_id": provider_id},
        )
        self.transient = transient
        self.upstream_status = upstream_status
        self.provider_id = provider_id


class WorkflowStepError(Exception):
    """Failure of a single workflow step.

    Never reaches the HTTP layer; the engine records it on the step's
    result and applies the required/optional rule.
    """

    code: str = "STEP_EXECUTION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Any = None,
    ) -> None:
        message = sanitize_error_message(message)
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = sanitize_response_data(details) if details is not None else None


class StepParameterError(WorkflowStepError):
    """Required parameter unresolved or failed type/pattern/range validation."""
    code = "PARAMETER_ERROR"


class StepTransportError(WorkflowStepError):
    """Timeout, non-2xx response or RPC-level error from a step target."""

    code = "STEP_TRANSPORT_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Any = None,
        status: Optional[int] = None,
        request_id: Optional[str] = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.status = status
        self.request_id = request_id


class VariableConflictError(WorkflowStepError):
    """A step variable key was written twice."""
    code = "VARIABLE_CONFLICT"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "BudgetExceededError",
    "RateLimitedError",
    "ServerError",
    "ConfigurationError",
    "ProviderCallError",
    "WorkflowStepError",
    "StepParameterError",
    "StepTransportError",
    "VariableConflictError",
]
