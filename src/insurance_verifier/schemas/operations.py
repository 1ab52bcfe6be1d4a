"""Pydantic models for operation inputs and structured results."""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field

from insurance_verifier.schemas.record import VerificationRecord


class FieldError(BaseModel):
    """A single field/message pair returned to callers."""

    field: str = Field(default="base", description="Offending input field, or 'base'")
    message: str


class OperationResult(BaseModel):
    """Return value of every exposed operation."""

    record: Optional[VerificationRecord] = None
    errors: list[FieldError] = Field(default_factory=list)
    cached: bool = Field(default=False, description="Eligibility result served from cache")


class CreateRecordRequest(BaseModel):
    case_id: str = Field(..., min_length=1)
    case_expires_at: Optional[datetime] = None


class CardImagesRequest(BaseModel):
    front_image: str = Field(..., min_length=1, description="Reference to the front card image")
    back_image: Optional[str] = Field(default=None, description="Reference to the back card image")


class ManualFields(BaseModel):
    """Manually entered identifying fields; omitted values are left untouched."""

    payer_name: Optional[str] = None
    member_id: Optional[str] = None
    group_number: Optional[str] = None
    subscriber_name: Optional[str] = None
    subscriber_dob: Optional[date] = None

    model_config = {"json_schema_extra": {
        "examples": [
            {
                "payer_name": "Aetna",
                "member_id": "MEM123456",
                "group_number": "GRP1234",
                "subscriber_name": "Jane Doe",
                "subscriber_dob": "1985-04-12",
            }
        ]
    }}


class OverrideFields(BaseModel):
    """Deductible / out-of-pocket values to override; at least one is required."""

    deductible_met: Optional[float] = None
    oop_met: Optional[float] = None
    deductible_amount: Optional[float] = None
    oop_max_amount: Optional[float] = None


class OverrideRequest(OverrideFields):
    reason: str = Field(default="", description="Why the values are being overridden")
