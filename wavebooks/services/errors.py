# wavebooks/services/errors.py
from __future__ import annotations

from typing import Any


class ReconciliationError(Exception):
    """
    Base for every failure the engine reports to callers.

    `code` is a stable machine identifier, `http_status` is what the API
    layer answers with, `details` carries structured context.
    """

    code = "reconciliation-error"
    http_status = 400

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error_code": self.code, "message": self.message, "details": self.details}


# =========================================================
# Validation (recoverable locally, nothing was written)
# =========================================================
class ValidationError(ReconciliationError):
    code = "validation-error"
    http_status = 400


class InvalidSelectionError(ValidationError):
    code = "invalid-selection"


class EmptySelectionError(ValidationError):
    code = "empty-selection"


class MalformedPhoneError(ValidationError):
    code = "malformed-phone"


class CandidateNotOfferedError(ValidationError):
    code = "candidate-not-offered"


class IneligibleActionError(ValidationError):
    code = "action-not-eligible"


class GatewayNotConfiguredError(ValidationError):
    code = "wave-api-key-missing"


class NotFoundError(ReconciliationError):
    code = "not-found"
    http_status = 404


class StateError(ReconciliationError):
    code = "invalid-state"
    http_status = 409


class AssignmentNotInConflictError(StateError):
    code = "assignment-not-in-conflict"


# =========================================================
# Time-boxed eligibility (checked before any network call)
# =========================================================
class WindowExpiredError(ReconciliationError):
    code = "reversal-window-expired"
    http_status = 422


# =========================================================
# Gateway (money movement) failures, original code preserved
# =========================================================
GATEWAY_MESSAGES = {
    "insufficient-funds": "The recipient does not have enough balance to cover the reversal.",
    "payout-reversal-time-limit-exceeded": "The reversal window for this payment has passed.",
    "payout-reversal-account-terminated": "The recipient's Wave account has been closed.",
    "not-found": "This payment does not exist or does not belong to this account.",
    "gateway-unavailable": "Wave could not be reached. Nothing was changed; try again.",
}


class GatewayError(ReconciliationError):
    http_status = 502

    def __init__(
        self,
        code: str,
        message: str | None = None,
        *,
        status_code: int | None = None,
        payload: dict[str, Any] | None = None,
    ):
        friendly = GATEWAY_MESSAGES.get(code) or f"Wave error: {code}"
        super().__init__(
            friendly,
            code=code,
            details={
                "gateway_message": message,
                "gateway_status": status_code,
                "gateway_payload": payload or {},
            },
        )
        self.status_code = status_code
        self.gateway_message = message


# =========================================================
# Concurrency
# =========================================================
class ConsistencyError(ReconciliationError):
    code = "concurrent-modification"
    http_status = 409
