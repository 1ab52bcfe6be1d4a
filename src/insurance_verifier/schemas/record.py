"""Pydantic models for the insurance verification record.

The record's ``result`` payload is split into named sections
(``extraction``, ``eligibility``, ``override``, ``retry_history``) so each
pipeline merges into its own section only.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional

from pydantic import BaseModel, Field, PrivateAttr, model_validator

MAX_MONETARY_VALUE = 1_000_000.0

Money = Annotated[float, Field(ge=0, le=MAX_MONETARY_VALUE)]

# Identifying fields the extraction pipeline looks for on a card.
TARGET_FIELDS: tuple[str, ...] = ("member_id", "group_number", "payer_name", "subscriber_name")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationStatus(str, Enum):
    """Lifecycle states of a verification record."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    OCR_COMPLETE = "ocr_complete"
    OCR_NEEDS_REVIEW = "ocr_needs_review"
    MANUAL_ENTRY = "manual_entry"
    MANUAL_ENTRY_COMPLETE = "manual_entry_complete"
    VERIFIED = "verified"
    FAILED = "failed"
    MANUAL_REVIEW = "manual_review"
    SELF_PAY = "self_pay"


# ---------------------------------------------------------------------------
# Extraction section
# ---------------------------------------------------------------------------


class ExtractedField(BaseModel):
    """One value read off a card image."""

    value: str = Field(..., description="Value as it appears on the card")
    confidence_score: float = Field(..., ge=0, le=100, description="Provider confidence 0-100")
    source: str = Field(..., description="Extraction provider that produced the value")


class ExtractionSection(BaseModel):
    fields: dict[str, ExtractedField] = Field(default_factory=dict)
    low_confidence_fields: list[str] = Field(default_factory=list)
    needs_review: bool = False
    provider: Optional[str] = None
    completed_at: Optional[datetime] = None
    raw_summary: dict[str, Any] = Field(
        default_factory=dict, description="PHI-free provider response summary"
    )


class FailureDetail(BaseModel):
    """Last extraction failure recorded on the record."""

    code: str
    message: str
    occurred_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Eligibility section
# ---------------------------------------------------------------------------


class AmountProgress(BaseModel):
    """An annual threshold (deductible / out-of-pocket max) and how much is met."""

    amount: Optional[Money] = None
    met: Optional[Money] = None
    currency: str = "USD"

    @model_validator(mode="after")
    def _met_within_amount(self) -> AmountProgress:
        if self.amount is not None and self.met is not None and self.met > self.amount:
            raise ValueError("met cannot exceed amount")
        return self


class Copay(BaseModel):
    amount: Money
    currency: str = "USD"


class Coinsurance(BaseModel):
    percentage: int = Field(..., ge=0, le=100)


class Coverage(BaseModel):
    mental_health_covered: Optional[bool] = None
    copay: Optional[Copay] = None
    deductible: Optional[AmountProgress] = None
    coinsurance: Optional[Coinsurance] = None
    out_of_pocket_max: Optional[AmountProgress] = None
    effective_date: Optional[date] = None
    termination_date: Optional[date] = None


class EligibilityError(BaseModel):
    code: str
    category: str = "unknown"
    message: str
    retryable: bool = False


class EligibilityResult(BaseModel):
    """Structured outcome of an eligibility check, as stored and cached."""

    status: str = Field(..., description="Provider status: VERIFIED, FAILED or MANUAL_REVIEW")
    eligible: Optional[bool] = None
    coverage: Coverage = Field(default_factory=Coverage)
    error: Optional[EligibilityError] = None
    verified_at: datetime = Field(default_factory=utcnow)
    provider_reference_id: Optional[str] = None
    retry_count: Optional[int] = Field(default=None, ge=0)


# ---------------------------------------------------------------------------
# Override section
# ---------------------------------------------------------------------------


class DeductibleOverride(BaseModel):
    """Manually entered financial progress; preferred over eligibility coverage."""

    deductible_met: Optional[Money] = None
    oop_met: Optional[Money] = None
    deductible_amount: Optional[Money] = None
    oop_max_amount: Optional[Money] = None
    reason: str = Field(..., min_length=1)
    overridden_by: Optional[str] = None
    overridden_at: datetime = Field(default_factory=utcnow)
    source: Literal["manual"] = "manual"

    @model_validator(mode="after")
    def _met_within_totals(self) -> DeductibleOverride:
        if (
            self.deductible_met is not None
            and self.deductible_amount is not None
            and self.deductible_met > self.deductible_amount
        ):
            raise ValueError("deductible_met cannot exceed deductible_amount")
        if (
            self.oop_met is not None
            and self.oop_max_amount is not None
            and self.oop_met > self.oop_max_amount
        ):
            raise ValueError("oop_met cannot exceed oop_max_amount")
        return self


class RetryHistoryEntry(BaseModel):
    attempt_number: int = Field(..., ge=1)
    error_code: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)


class VerificationResult(BaseModel):
    """Sectioned result payload; each section is owned by one writer."""

    extraction: Optional[ExtractionSection] = None
    eligibility: Optional[EligibilityResult] = None
    override: Optional[DeductibleOverride] = None
    retry_history: list[RetryHistoryEntry] = Field(default_factory=list)
    data_sources: dict[str, Literal["ocr", "manual"]] = Field(default_factory=dict)
    error: Optional[FailureDetail] = None


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------


class VerificationRecord(BaseModel):
    """One coverage case's insurance verification state."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    case_id: str = Field(..., description="Owning onboarding case")
    case_expires_at: Optional[datetime] = None

    payer_name: Optional[str] = None
    member_id: Optional[str] = None
    group_number: Optional[str] = None
    subscriber_name: Optional[str] = None
    subscriber_dob: Optional[date] = None

    status: VerificationStatus = VerificationStatus.PENDING
    result: VerificationResult = Field(default_factory=VerificationResult)
    retry_attempts: int = Field(default=0, ge=0)
    verified_at: Optional[datetime] = None

    card_image_front: Optional[str] = Field(default=None, description="Opaque image reference")
    card_image_back: Optional[str] = Field(default=None, description="Opaque image reference")

    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    # Statuses visited by the current write, in order (see core.state_machine.transition).
    _transitions: list[VerificationStatus] = PrivateAttr(default_factory=list)

    @property
    def has_required_fields(self) -> bool:
        return bool(self.payer_name) and bool(self.member_id)

    @property
    def has_identifying_data(self) -> bool:
        return bool(self.payer_name) or bool(self.member_id)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.case_expires_at is None:
            return False
        expires_at = self.case_expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= (now or utcnow())
