"""Pydantic schemas for the insurance verification pipeline."""

from insurance_verifier.schemas.operations import (
    FieldError,
    ManualFields,
    OperationResult,
    OverrideFields,
)
from insurance_verifier.schemas.record import (
    Coverage,
    DeductibleOverride,
    EligibilityError,
    EligibilityResult,
    ExtractionSection,
    VerificationRecord,
    VerificationResult,
    VerificationStatus,
)

__all__ = [
    "Coverage",
    "DeductibleOverride",
    "EligibilityError",
    "EligibilityResult",
    "ExtractionSection",
    "FieldError",
    "ManualFields",
    "OperationResult",
    "OverrideFields",
    "VerificationRecord",
    "VerificationResult",
    "VerificationStatus",
]
