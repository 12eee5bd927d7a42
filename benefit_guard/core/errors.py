"""
Error taxonomy for benefit queries.

Every failure surfaced by the query core carries a stable ``code`` and a
human-readable message. ``status_code`` is a suggestion for transport
layers; the core itself never speaks HTTP.
"""

from typing import Any, Dict, Optional


class BenefitGuardError(Exception):
    """Base exception for the query core."""

    code = "BENEFIT_GUARD_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form for responses and logs."""
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(BenefitGuardError):
    """Missing or malformed document, benefit or login."""
    code = "VALIDATION_ERROR"
    status_code = 400


class UserNotFound(BenefitGuardError):
    code = "USER_NOT_FOUND"
    status_code = 404


class NoCreditRelationship(BenefitGuardError):
    """The user has no ledger row at all (distinct from a zero balance)."""
    code = "NO_CREDIT_RELATIONSHIP"
    status_code = 400


class InsufficientCredit(BenefitGuardError):
    code = "INSUFFICIENT_CREDIT"
    status_code = 400


class ExternalServiceUnavailable(BenefitGuardError):
    """The lookup service could not be reached after every retry."""
    code = "EXTERNAL_SERVICE_UNAVAILABLE"
    status_code = 503

    def __init__(self, message: str, attempts: int = 0, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.attempts = attempts


class UnmatchedIdentity(BenefitGuardError):
    """The lookup service answered but found no beneficiary. Never billed."""
    code = "UNMATCHED_IDENTITY"
    status_code = 400


class PersistenceFailure(BenefitGuardError):
    code = "PERSISTENCE_FAILURE"
    status_code = 500


class RecordNotFound(BenefitGuardError):
    code = "RECORD_NOT_FOUND"
    status_code = 404
