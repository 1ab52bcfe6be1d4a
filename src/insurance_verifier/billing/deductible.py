"""Deductible / out-of-pocket progress, read from a verification record."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from insurance_verifier.schemas.record import VerificationRecord

DEFAULT_SESSION_RATE = 100.0

DataSource = Literal["manual_override", "eligibility_api", "unknown"]


class DeductibleStatus(BaseModel):
    """Current financial progress for one record."""

    deductible_amount: Optional[float] = None
    deductible_met: Optional[float] = None
    deductible_remaining: Optional[float] = None
    is_met: bool = False

    oop_max_amount: Optional[float] = None
    oop_met: Optional[float] = None
    oop_remaining: Optional[float] = None

    progress_percentage: Optional[int] = Field(default=None, ge=0, le=100)
    oop_progress_percentage: Optional[int] = Field(default=None, ge=0, le=100)
    sessions_until_deductible_met: Optional[int] = None

    data_source: DataSource = "unknown"
    last_updated_at: Optional[datetime] = None


def _remaining(total: Optional[float], met: Optional[float]) -> Optional[float]:
    if total is None:
        return None
    return max(total - (met or 0.0), 0.0)


def progress_percentage(met: Optional[float], total: Optional[float]) -> Optional[int]:
    """Whole-number percentage clamped to 0-100; 0 when the total is unknown or zero."""
    if not total:
        return 0
    if met is None:
        return None
    return min(max(round(met / total * 100), 0), 100)


class DeductibleTracker:
    """Prefers the manual override over eligibility coverage, field by field."""

    def __init__(self, session_rate: float = DEFAULT_SESSION_RATE) -> None:
        self.session_rate = session_rate

    def sessions_until_met(self, remaining: Optional[float]) -> Optional[int]:
        if remaining is None or remaining <= 0:
            return 0
        if self.session_rate <= 0:
            return None
        return math.ceil(remaining / self.session_rate)

    def current_status(self, record: VerificationRecord) -> DeductibleStatus:
        override = record.result.override
        eligibility = record.result.eligibility
        coverage = eligibility.coverage if eligibility is not None else None
        deductible = coverage.deductible if coverage is not None else None
        oop = coverage.out_of_pocket_max if coverage is not None else None

        def pick(override_value: Optional[float], coverage_value: Optional[float]) -> Optional[float]:
            return override_value if override_value is not None else coverage_value

        ded_amount = pick(override.deductible_amount if override else None, deductible.amount if deductible else None)
        ded_met = pick(override.deductible_met if override else None, deductible.met if deductible else None)
        oop_amount = pick(override.oop_max_amount if override else None, oop.amount if oop else None)
        oop_met = pick(override.oop_met if override else None, oop.met if oop else None)

        ded_remaining = _remaining(ded_amount, ded_met)
        oop_remaining = _remaining(oop_amount, oop_met)

        if override is not None:
            source: DataSource = "manual_override"
            updated: Optional[datetime] = override.overridden_at
        elif eligibility is not None:
            source = "eligibility_api"
            updated = eligibility.verified_at
        else:
            source = "unknown"
            updated = None

        return DeductibleStatus(
            deductible_amount=ded_amount,
            deductible_met=ded_met,
            deductible_remaining=ded_remaining,
            is_met=ded_remaining == 0 if ded_remaining is not None else False,
            oop_max_amount=oop_amount,
            oop_met=oop_met,
            oop_remaining=oop_remaining,
            progress_percentage=progress_percentage(ded_met, ded_amount),
            oop_progress_percentage=progress_percentage(oop_met, oop_amount),
            sessions_until_deductible_met=self.sessions_until_met(ded_remaining),
            data_source=source,
            last_updated_at=updated,
        )
