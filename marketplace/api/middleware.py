"""
Request validation and error handling for the API boundary.
"""
import logging
from functools import wraps

from django.http import JsonResponse

from marketplace.domain.errors import MarketplaceError

logger = logging.getLogger(__name__)


class ValidationError(Exception):
    """Malformed input that never reached the domain."""
    def __init__(self, message: str, code: str = "VALIDATION_ERROR"):
        self.message = message
        self.code = code
        super().__init__(self.message)


class ErrorHandler:
    """Error handler for API responses."""

    ERROR_CODES = {
        "VALIDATION_ERROR": 400,
        "NOT_FOUND": 404,
        "NOT_OWNER": 403,
        "FORBIDDEN": 403,
        "TERMINAL_STATE": 409,
        "CONFLICT": 409,
        "INVALID_QUANTITY": 400,
        "INVALID_AMOUNT": 400,
        "CURRENCY_MISMATCH": 400,
        "DUPLICATE_LINE_KEY": 400,
        "DUPLICATE_REQUEST": 409,
        "MARKETPLACE_ERROR": 400,
        "INTERNAL_ERROR": 500,
    }

    @classmethod
    def to_payload(cls, error: Exception) -> dict:
        """Typed error payload returned inside GraphQL results."""
        if isinstance(error, MarketplaceError):
            return error.to_dict()
        if isinstance(error, ValidationError):
            return {"code": error.code, "message": error.message, "retryable": False}
        return {"code": "INTERNAL_ERROR", "message": "An internal error occurred", "retryable": False}

    @classmethod
    def status_for(cls, code: str) -> int:
        return cls.ERROR_CODES.get(code, 400)

    @classmethod
    def handle_error(cls, error: Exception) -> JsonResponse:
        """Handle error and return JSON response."""
        if isinstance(error, (MarketplaceError, ValidationError)):
            payload = cls.to_payload(error)
            return JsonResponse({"error": payload}, status=cls.status_for(payload["code"]))

        # Log unexpected errors
        logger.error(
            "unexpected_error",
            extra={
                "error_type": type(error).__name__,
                "error_message": str(error),
            },
            exc_info=True,
        )

        return JsonResponse(
            {
                "error": {
                    "code": "INTERNAL_ERROR",
                    "message": "An internal error occurred",
                }
            },
            status=500,
        )


def error_payload(resolver):
    """Turn expected errors raised by ``resolver`` into ``{ok: false, error}``."""
    @wraps(resolver)
    def wrapper(*args, **kwargs):
        try:
            return resolver(*args, **kwargs)
        except (MarketplaceError, ValidationError) as e:
            payload = ErrorHandler.to_payload(e)
            logger.warning("resolver_error", extra={"operation": resolver.__name__, "code": payload["code"]})
            return {"ok": False, "error": payload}
    return wrapper
