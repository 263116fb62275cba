"""Core utilities and security modules."""

from booking_coordinator.core.exceptions import (
    AppException,
    AuthenticationError,
    AuthorizationError,
    DirectiveExecutionFailed,
    ExternalProviderUnavailable,
    InvalidTransition,
    NotFoundError,
    SignatureVerificationFailed,
    ValidationError,
    VersionConflict,
)
from booking_coordinator.core.security import Principal, principal_from_claims, verify_token

__all__ = [
    "AppException",
    "AuthenticationError",
    "AuthorizationError",
    "DirectiveExecutionFailed",
    "ExternalProviderUnavailable",
    "InvalidTransition",
    "NotFoundError",
    "SignatureVerificationFailed",
    "ValidationError",
    "VersionConflict",
    "Principal",
    "principal_from_claims",
    "verify_token",
]
