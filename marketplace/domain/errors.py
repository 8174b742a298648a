"""
Error taxonomy for the marketplace core.

Every error carries a stable ``code`` that callers branch on and a message
that is safe to show to the vendor. Only ``Conflict`` is retryable.
"""
from __future__ import annotations


class MarketplaceError(Exception):
    """Base class for all recoverable marketplace errors."""
    code = "MARKETPLACE_ERROR"
    retryable = False
    default_message = "The request could not be completed."

    def __init__(self, message: str | None = None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


class NotOwner(MarketplaceError):
    code = "NOT_OWNER"
    default_message = "This item belongs to another vendor."


class TerminalStateViolation(MarketplaceError):
    code = "TERMINAL_STATE"
    default_message = "This line can no longer change status."


class InvalidQuantity(MarketplaceError):
    code = "INVALID_QUANTITY"
    default_message = "Fulfilled quantity must be between zero and the ordered quantity."


class InvalidAmount(MarketplaceError):
    code = "INVALID_AMOUNT"
    default_message = "Amounts do not add up."


class Conflict(MarketplaceError):
    code = "CONFLICT"
    retryable = True
    default_message = "This line was updated by someone else. Reload and try again."


class CurrencyMismatch(MarketplaceError):
    code = "CURRENCY_MISMATCH"
    default_message = "Wallet currency does not match the entry currency."


class DuplicateLineKey(MarketplaceError):
    code = "DUPLICATE_LINE_KEY"
    default_message = "An order cannot contain the same item twice."


class NotFound(MarketplaceError):
    code = "NOT_FOUND"
    default_message = "Not found."


class Forbidden(MarketplaceError):
    code = "FORBIDDEN"
    default_message = "You do not have access to this order."
