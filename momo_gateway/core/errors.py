"""
Error taxonomy for the disbursement core.

Every error carries a machine-readable code and the HTTP status the API
boundary should answer with, so callers always get a definitive status plus
a classification.
"""
from typing import Any, Dict, Optional


class MomoGatewayError(Exception):
    """Base exception for all gateway errors."""

    error_code = "internal_error"
    http_status = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        http_status: Optional[int] = None,
        **metadata: Any,
    ):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        if http_status is not None:
            self.http_status = http_status
        self.metadata = metadata

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
            }
        }


class AuthError(MomoGatewayError):
    """Invalid or missing credentials on an inbound call. Never retried."""

    error_code = "auth_error"
    http_status = 401


class ProviderAuthError(AuthError):
    """Provider rejected our credentials, or the Vault has none for the pair."""

    error_code = "provider_auth_error"
    http_status = 502


class ValidationError(MomoGatewayError):
    """Malformed request or webhook payload, rejected before any state mutation."""

    error_code = "validation_error"
    http_status = 400


class ProviderError(MomoGatewayError):
    """
    4xx/5xx from a provider.

    retryable=True for transient failures (5xx, 429, network); False for
    business rejections such as an unknown payee.
    """

    error_code = "provider_error"
    http_status = 502

    def __init__(
        self,
        message: str,
        retryable: bool,
        provider_code: Optional[str] = None,
        status_code: Optional[int] = None,
        response: Optional[Dict[str, Any]] = None,
        retry_after_seconds: Optional[int] = None,
    ):
        super().__init__(message)
        self.retryable = retryable
        self.provider_code = provider_code or "UNKNOWN_ERROR"
        self.status_code = status_code
        self.response = response
        self.retry_after_seconds = retry_after_seconds


class ProviderNotFoundError(ProviderError):
    """Provider has no record of the referenced transaction."""

    def __init__(self, message: str, status_code: Optional[int] = 404):
        super().__init__(
            message, retryable=False, provider_code="NOT_FOUND", status_code=status_code
        )


class ProviderTimeoutError(MomoGatewayError):
    """No provider response within the deadline. Outcome unknown."""

    error_code = "provider_timeout"
    http_status = 504


class ConflictError(MomoGatewayError):
    """Request conflicts with existing state."""

    error_code = "conflict"
    http_status = 409


class IdempotencyConflict(ConflictError):
    """Idempotency-Key reused for a different method/path."""

    error_code = "idempotency_key_reused"
    http_status = 400


class DuplicateExternalId(ConflictError):
    """externalId already exists for the tenant."""

    error_code = "duplicate_external_id"

    def __init__(self, message: str, existing: Any = None):
        super().__init__(message)
        self.existing = existing


class DuplicateEventError(MomoGatewayError):
    """Webhook transaction id was already processed."""

    error_code = "duplicate_event"
    http_status = 200


class InvalidTransitionError(ConflictError):
    """Requested status change is not an edge of the state machine graph."""

    error_code = "invalid_transition"


class NotFoundError(MomoGatewayError):
    """Tenant-scoped lookup found nothing."""

    error_code = "not_found"
    http_status = 404


class VaultError(MomoGatewayError):
    """Master key unavailable or stored ciphertext failed authentication."""

    error_code = "vault_error"
    http_status = 500
