"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    CONFIGURATION_ERROR = "ERR_1007"

    # Delivery errors (2xxx)
    DELIVERY_FAILED = "ERR_2001"
    DELIVERY_TARGET_MISSING = "ERR_2002"
    DELIVERY_PAYLOAD_INVALID = "ERR_2003"

    # Verification errors (3xxx)
    WEBHOOK_SIGNATURE_MISSING = "ERR_3001"
    WEBHOOK_SIGNATURE_INVALID = "ERR_3002"
    WEBHOOK_TIMESTAMP_STALE = "ERR_3003"

    # OAuth errors (4xxx)
    OAUTH_STATE_INVALID = "ERR_4001"
    OAUTH_STATE_EXPIRED = "ERR_4002"
    OAUTH_PROVIDER_UNKNOWN = "ERR_4003"
    OAUTH_TOKEN_EXCHANGE_FAILED = "ERR_4004"
    TOKEN_DECRYPTION_FAILED = "ERR_4005"

    # External service errors (5xxx)
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class ConfigurationError(AppException):
    """Raised when a required secret or key is missing for this invocation"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.CONFIGURATION_ERROR,
            status_code=500,
            details=details
        )


class AuthenticationError(AppException):
    """Raised when a caller presents no credentials or invalid ones"""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(
            message=message,
            error_code=ErrorCode.UNAUTHORIZED,
            status_code=401
        )


class ForbiddenError(AppException):
    """Raised when an authenticated caller lacks the required role"""

    def __init__(self, message: str = "Forbidden", details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.FORBIDDEN,
            status_code=403,
            details=details
        )


class WebhookVerificationError(AppException):
    """Raised when an inbound webhook fails signature or freshness checks"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.WEBHOOK_SIGNATURE_INVALID,
        provider: str | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400
        )
        if provider:
            self.details["provider"] = provider


class OAuthStateError(AppException):
    """Raised when an OAuth state token is malformed, forged or expired"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.OAUTH_STATE_INVALID
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400
        )


class TokenDecryptionError(AppException):
    """Raised when a stored credential cannot be decrypted"""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            error_code=ErrorCode.TOKEN_DECRYPTION_FAILED,
            status_code=500
        )


class DeliveryError(AppException):
    """
    Raised when a single delivery attempt fails.

    Carries the observed response so the job store can record it
    alongside the retry decision.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.DELIVERY_FAILED,
        response_status: int | None = None,
        response_body: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=502,
            details=details
        )
        self.response_status = response_status
        self.response_body = response_body
        if response_status is not None:
            self.details["response_status"] = response_status

    @classmethod
    def from_response(
        cls,
        channel: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 1000
    ) -> "DeliveryError":
        """
        Build a DeliveryError from an HTTP response in a consistent way.

        Args:
            channel: delivery channel name (webhook, communication, calendar...)
            response: response object (e.g. httpx.Response)
            message: custom message (built from the status code when omitted)
            max_response_chars: body truncation limit
        """
        status_code = getattr(response, "status_code", None)
        response_text = (getattr(response, "text", "") or "")[:max_response_chars]
        return cls(
            message=message or f"{channel} delivery returned status {status_code}",
            response_status=status_code,
            response_body=response_text,
            details={"channel": channel},
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class OAuthProviderError(ExternalServiceException):
    """Raised when an OAuth provider rejects a token exchange or profile call"""

    def __init__(self, provider: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name=provider,
            message=message,
            error_code=ErrorCode.OAUTH_TOKEN_EXCHANGE_FAILED,
            details=details
        )
