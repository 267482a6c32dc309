from __future__ import annotations

from typing import Any


class WhisprError(Exception):
    """Base error for WhisprNet."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code).strip()
        self.details = details


class UnauthenticatedError(WhisprError):
    """Missing or invalid credentials."""

    code = "AUTH_UNAUTHORIZED"
    status_code = 401


class InvalidCredentialsError(UnauthenticatedError):
    """Invalid email or password."""

    code = "AUTH_INVALID_CREDENTIALS"


class InvalidTokenError(UnauthenticatedError):
    """Token is invalid or has been revoked."""

    code = "AUTH_INVALID_TOKEN"


class TokenExpiredError(UnauthenticatedError):
    """Token has expired."""

    code = "AUTH_TOKEN_EXPIRED"


class SignatureVerificationError(UnauthenticatedError):
    """Webhook signature verification failed."""

    code = "WEBHOOK_SIGNATURE_INVALID"


class ForbiddenError(WhisprError):
    """Insufficient role for this operation."""

    code = "AUTH_FORBIDDEN"
    status_code = 403


class MalformedPayloadError(WhisprError):
    """Request body is malformed."""

    code = "BAD_REQUEST"
    status_code = 400


class NotFoundError(WhisprError):
    """Resource not found."""

    code = "NOT_FOUND"
    status_code = 404


class ConflictError(WhisprError):
    """Resource already exists."""

    code = "CONFLICT"
    status_code = 409


class TransientError(WhisprError):
    """Downstream dependency is temporarily unavailable."""

    code = "SERVICE_UNAVAILABLE"
    status_code = 503


class IntegrationVerificationError(WhisprError):
    """Provider rejected the supplied credentials."""

    code = "INTEGRATION_VERIFICATION_FAILED"
    status_code = 422


class UnsupportedEventTypeError(WhisprError):
    """Provider event type has no canonical mapping."""

    code = "UNSUPPORTED_EVENT_TYPE"


class RuleFailure(WhisprError):
    """A classification rule raised while evaluating events."""

    code = "RULE_FAILURE"

    def __init__(self, rule_name: str, cause: Exception) -> None:
        super().__init__(f"rule {rule_name} failed: {cause.__class__.__name__}")
        self.rule_name = rule_name
        self.cause = cause
