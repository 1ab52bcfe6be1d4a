"""Error taxonomy for the verification pipeline.

Caller-facing errors (validation, state conflict, authorization, business
rule) carry field/message pairs.  Provider errors carry a machine-readable
``code`` that ends up in the record's failure detail.
"""

from __future__ import annotations

from typing import Optional

from insurance_verifier.schemas.operations import FieldError, OperationResult


class VerificationError(Exception):
    """Base class for every error raised by this package."""

    category = "internal"

    def __init__(
        self,
        message: str,
        *,
        field: str = "base",
        errors: Optional[list[FieldError]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.errors = errors or [FieldError(field=field, message=message)]

    def as_result(self) -> OperationResult:
        return OperationResult(record=None, errors=list(self.errors))


class ValidationFailed(VerificationError):
    category = "validation"


class StateConflict(VerificationError):
    category = "state_conflict"


class AlreadyInProgress(StateConflict):
    def __init__(self, message: str = "Verification already in progress") -> None:
        super().__init__(message, field="status")


class NotAuthorized(VerificationError):
    category = "authorization"

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(message, field="case_id")


class RecordNotFound(VerificationError):
    category = "not_found"

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Verification record {record_id} not found", field="record_id")
        self.record_id = record_id


class BusinessRuleViolation(VerificationError):
    category = "business_rule"


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


class ProviderError(VerificationError):
    """An external provider call failed in a way the provider could classify."""

    category = "provider"

    def __init__(self, message: str, *, code: str = "UNKNOWN_ERROR") -> None:
        super().__init__(message, field="provider")
        self.code = code


class TransientProviderError(ProviderError):
    category = "transient_provider"


class ProviderThrottledError(TransientProviderError):
    def __init__(self, message: str, *, code: str = "THROTTLED") -> None:
        super().__init__(message, code=code)


class ProviderConnectionError(TransientProviderError):
    def __init__(self, message: str, *, code: str = "NETWORK_ERROR") -> None:
        super().__init__(message, code=code)


class ProviderTimeoutError(TransientProviderError):
    def __init__(self, message: str, *, code: str = "TIMEOUT") -> None:
        super().__init__(message, code=code)


class ProviderPermanentError(ProviderError):
    category = "permanent_provider"
