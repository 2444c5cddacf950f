from __future__ import annotations

from typing import Dict

ERROR_CODE_MAP: Dict[str, Dict[str, str]] = {
    "VALIDATION_FAILED": {
        "message": "Invalid request",
        "hint": "Check the submitted fields and try again.",
    },
    "INVALID_AMOUNT": {
        "message": "Amount must be a positive number of cents",
        "hint": "Charges are created in minor units (e.g. 1250 for 12.50).",
    },
    "INVALID_PROMO_CODE": {
        "message": "This promo code is invalid or has expired",
        "hint": "Check that the code is active, not expired and not exhausted.",
    },
    "PROMO_ALREADY_REDEEMED": {
        "message": "You have already used this promo code",
        "hint": "Each promo code can be redeemed once per account.",
    },
    "INSUFFICIENT_CREDIT": {
        "message": "Not enough free photos left",
        "hint": "Redeem another promo code or pay for the remaining photos.",
    },
    "CHARGE_ALREADY_PAID": {
        "message": "This charge has already been paid",
        "hint": "Paid charges have an invoice; look it up instead of paying again.",
    },
    "CONFLICT": {
        "message": "The request conflicts with the current state",
        "hint": "Reload the record and retry.",
    },
    "CONCURRENCY_CONFLICT": {
        "message": "The record was updated concurrently",
        "hint": "Retry the operation.",
    },
    "NOT_FOUND": {
        "message": "Record not found",
        "hint": "Check the identifier.",
    },
    "INVALID_SIGNATURE": {
        "message": "Webhook signature verification failed",
        "hint": "Check PAYMENT_WEBHOOK_SECRET / STRIPE_WEBHOOK_SECRET against the provider dashboard.",
    },
    "MALFORMED_EVENT": {
        "message": "Webhook payload could not be parsed",
        "hint": "The provider sent a body that is not a JSON object.",
    },
    "MISSING_METADATA": {
        "message": "Payment event has no charge_id/user_id metadata",
        "hint": "Checkout sessions must be created through /charges/{id}/checkout.",
    },
    "INTEGRITY_VIOLATION": {
        "message": "Billing invariant violation",
        "hint": "The operation was rolled back; inspect the audit log before retrying.",
    },
    "DEPENDENCY_UNAVAILABLE": {
        "message": "A billing dependency is unavailable",
        "hint": "Database or payment provider unreachable; the caller should retry.",
    },
    "UNEXPECTED_ERROR": {
        "message": "Unexpected error",
        "hint": "Check the service logs.",
    },
}


def explain_error(code: str | None) -> Dict[str, str] | None:
    if not code:
        return None
    return ERROR_CODE_MAP.get(code)


class LedgerError(RuntimeError):
    """Base class for every billing-core failure.

    `code` indexes ERROR_CODE_MAP; `http_status` is what the API layer answers.
    """

    code = "UNEXPECTED_ERROR"
    http_status = 500

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message

    @property
    def public_message(self) -> str:
        entry = ERROR_CODE_MAP.get(self.code) or ERROR_CODE_MAP["UNEXPECTED_ERROR"]
        return entry["message"]


class ValidationError(LedgerError):
    code = "VALIDATION_FAILED"
    http_status = 400


class InvalidAmount(ValidationError):
    code = "INVALID_AMOUNT"


class InvalidCode(ValidationError):
    code = "INVALID_PROMO_CODE"


class MalformedEvent(ValidationError):
    code = "MALFORMED_EVENT"


class MissingMetadata(ValidationError):
    code = "MISSING_METADATA"


class ConflictError(LedgerError):
    code = "CONFLICT"
    http_status = 409


class AlreadyPaid(ConflictError):
    code = "CHARGE_ALREADY_PAID"


class AlreadyRedeemed(ConflictError):
    code = "PROMO_ALREADY_REDEEMED"


class InsufficientCredit(ConflictError):
    code = "INSUFFICIENT_CREDIT"


class ConcurrencyConflict(ConflictError):
    code = "CONCURRENCY_CONFLICT"


class NotFoundError(LedgerError):
    code = "NOT_FOUND"
    http_status = 404


class AuthenticationError(LedgerError):
    code = "INVALID_SIGNATURE"
    http_status = 401


class InvalidSignature(AuthenticationError):
    code = "INVALID_SIGNATURE"


class ExternalDependencyError(LedgerError):
    code = "DEPENDENCY_UNAVAILABLE"
    http_status = 503


class IntegrityViolation(LedgerError):
    code = "INTEGRITY_VIOLATION"
    http_status = 409
