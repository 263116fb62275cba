"""Custom application exceptions."""

from typing import Any

from fastapi import HTTPException, status


class AppException(HTTPException):
    """Base application exception."""

    def __init__(
        self,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail: str = "An unexpected error occurred",
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=detail, headers=headers)


class ValidationError(AppException):
    """Validation error exception."""

    def __init__(self, detail: str = "Validation failed", errors: list[dict[str, Any]] | None = None) -> None:
        self.errors = errors
        super().__init__(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


class NotFoundError(AppException):
    """Resource not found exception."""

    def __init__(self, resource: str = "Resource", identifier: str | None = None) -> None:
        detail = f"{resource} not found"
        if identifier:
            detail = f"{resource} with ID '{identifier}' not found"
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class AuthenticationError(AppException):
    """Authentication failed exception."""

    def __init__(self, detail: str = "Authentication failed") -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthorizationError(AppException):
    """Authorization denied exception."""

    def __init__(self, detail: str = "You don't have permission to access this resource") -> None:
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class InvalidTransition(AppException):
    """Event does not apply to the booking's current state.

    ``deferrable`` is True when the event may become valid once a
    prerequisite event lands (e.g. a payment arriving before scheduling).
    ``redundant`` is True when the booking already reflects the event.
    """

    def __init__(
        self,
        current_state: str,
        event_type: str,
        deferrable: bool = False,
        redundant: bool = False,
    ) -> None:
        self.current_state = current_state
        self.event_type = event_type
        self.deferrable = deferrable
        self.redundant = redundant
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Invalid booking transition: {event_type} from {current_state}",
        )


class SignatureVerificationFailed(AppException):
    """Webhook signature could not be verified.

    The response body is intentionally generic; the reason is only logged.
    """

    def __init__(self, provider: str, reason: str = "invalid signature") -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook signature")


class VersionConflict(AppException):
    """Concurrent write detected by the optimistic version check."""

    def __init__(self, booking_id: str, expected_version: int) -> None:
        self.booking_id = booking_id
        self.expected_version = expected_version
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Booking {booking_id} was modified concurrently (expected version {expected_version})",
        )


class DirectiveExecutionFailed(AppException):
    """A side-effect directive failed against an external service."""

    def __init__(self, directive: str, detail: str | None = None, retryable: bool = True) -> None:
        self.directive = directive
        self.retryable = retryable
        message = f"Directive '{directive}' failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=message)


class ExternalProviderUnavailable(AppException):
    """External provider could not be reached or answered with an error."""

    def __init__(self, service: str, detail: str | None = None) -> None:
        self.service = service
        message = f"External service '{service}' is unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=message)
