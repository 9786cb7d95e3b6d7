from typing import Optional, Dict, Any


class VoiceConnectException(Exception):
    """Base exception for all billing core errors."""

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}

    def __str__(self) -> str:
        return f"{self.code} ({self.status_code}): {self.message}"


class SignatureInvalidError(VoiceConnectException):
    """Raised when a webhook body does not carry a valid processor signature."""

    def __init__(self, message: str = "Invalid webhook signature", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="signature_invalid", status_code=400, details=details)


class UnresolvedTenantError(VoiceConnectException):
    """Raised when an event references an agency or client this system does not know."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="unresolved_tenant", status_code=404, details=details)


class DuplicateLedgerEntryError(VoiceConnectException):
    """Raised when a commission for the same invoice has already been recorded."""

    def __init__(self, invoice_ref: str):
        super().__init__(
            f"Commission already recorded for invoice {invoice_ref}",
            code="duplicate_ledger_entry",
            status_code=409,
            details={"invoice_ref": invoice_ref},
        )


class CollaboratorCallFailed(VoiceConnectException):
    """Raised when a provisioning or notification call fails."""

    def __init__(self, message: str, collaborator: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            code="collaborator_call_failed",
            status_code=502,
            details={"collaborator": collaborator, **(details or {})},
        )


class PayoutPreconditionFailed(VoiceConnectException):
    """Raised when a referral payout cannot start (no destination, balance too low)."""

    def __init__(self, message: str, code: str = "payout_precondition_failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=400, details=details)


class PayoutTransferError(VoiceConnectException):
    """Raised when the processor rejects the payout transfer."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="payout_transfer_failed", status_code=502, details=details)


class ResourceNotFoundError(VoiceConnectException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=404, details=details)


class InvalidReferralCode(VoiceConnectException):
    """Raised when a referral code is malformed, unknown or self-referencing."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="invalid_referral_code", status_code=400, details=details)


class ReferralCodeConflict(VoiceConnectException):
    """Raised when a requested referral code is already taken."""

    def __init__(self, code_value: str):
        super().__init__(
            "This referral code is already taken",
            code="referral_code_conflict",
            status_code=409,
            details={"referral_code": code_value},
        )


class ReferralCodeLocked(VoiceConnectException):
    """Raised when renaming a code that referred agencies already signed up with."""

    def __init__(self, code_value: str, referred_count: int):
        super().__init__(
            "Referral code cannot change once agencies have signed up with it",
            code="referral_code_locked",
            status_code=409,
            details={"referral_code": code_value, "referred_agencies": referred_count},
        )


class ConfigurationError(VoiceConnectException):
    """Raised when application configuration is invalid or missing."""

    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)
