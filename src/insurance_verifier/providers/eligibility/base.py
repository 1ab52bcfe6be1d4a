"""Contract and shared helpers for eligibility provider adapters."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import Optional

from insurance_verifier.schemas.record import Coverage, EligibilityError, EligibilityResult

TIMEOUT_SECONDS = 30

ERROR_CATEGORIES = frozenset(
    {
        "invalid_member_id",
        "coverage_not_active",
        "service_not_covered",
        "network_error",
        "timeout",
        "unknown",
    }
)

VERIFIED = "VERIFIED"
FAILED = "FAILED"
MANUAL_REVIEW = "MANUAL_REVIEW"


@dataclass(frozen=True)
class EligibilityRequest:
    """What an adapter needs to ask a payer about coverage."""

    payer_name: str
    member_id: str
    group_number: Optional[str] = None
    subscriber_name: Optional[str] = None
    subscriber_dob: Optional[date] = None
    payer_id: Optional[str] = None


class BaseEligibilityAdapter(ABC):
    """A payer (or clearinghouse) integration.

    ``verify`` returns an :class:`EligibilityResult` for every outcome the
    provider can describe, including timeouts and connectivity failures
    (as retryable errors).  Anything else is raised and handled by the
    eligibility pipeline's retry policy.
    """

    name: str = "base"

    @abstractmethod
    def verify(self, request: EligibilityRequest) -> EligibilityResult:
        ...

    # ------------------------------------------------------------------
    # Result builders
    # ------------------------------------------------------------------

    @staticmethod
    def determine_status(eligible: Optional[bool], error: Optional[EligibilityError]) -> str:
        if error is not None:
            if error.retryable and eligible is None:
                return MANUAL_REVIEW
            return FAILED
        if eligible is None:
            return MANUAL_REVIEW
        return VERIFIED if eligible else FAILED

    def build_result(
        self,
        eligible: Optional[bool],
        coverage: Optional[Coverage] = None,
        error: Optional[EligibilityError] = None,
    ) -> EligibilityResult:
        return EligibilityResult(
            status=self.determine_status(eligible, error),
            eligible=eligible,
            coverage=coverage or Coverage(),
            error=error,
            provider_reference_id=f"eligibility-{uuid.uuid4()}",
        )

    @staticmethod
    def build_error(
        category: str,
        message: str,
        retryable: bool = False,
        code: Optional[str] = None,
    ) -> EligibilityError:
        category = category if category in ERROR_CATEGORIES else "unknown"
        return EligibilityError(
            code=code or category.upper(),
            category=category,
            message=message,
            retryable=retryable,
        )

    def timeout_error(self, seconds: float = TIMEOUT_SECONDS) -> EligibilityError:
        return self.build_error(
            "timeout",
            f"Verification timed out after {int(seconds)} seconds",
            retryable=True,
            code="TIMEOUT",
        )

    def network_error(self, exc: BaseException) -> EligibilityError:
        return self.build_error(
            "network_error",
            f"Network error: {exc}",
            retryable=True,
            code="NETWORK_ERROR",
        )
