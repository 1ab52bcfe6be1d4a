"""Generic X12 EDI 270/271 eligibility adapter.

Builds a 270 inquiry, sends it to a clearinghouse over HTTP and reads the
271 response:

* ``AAA`` segments are rejections, mapped through :data:`ERROR_MAPPINGS`.
* ``EB`` segments carry benefits: ``1`` active coverage, ``B`` copay,
  ``C`` deductible, ``A`` coinsurance, ``G`` out-of-pocket maximum.  A
  benefit with time-period qualifier ``29`` is the *remaining* amount.
* ``DTP`` 348/349 are the plan effective/termination dates.

In test mode the clearinghouse is simulated from markers in the member id
(``INVALID``, ``INACTIVE``, ``NOMENTAL``, ``TIMEOUT``).
"""

from __future__ import annotations

import random
import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Optional

import httpx
from loguru import logger

from insurance_verifier.core.errors import ProviderError
from insurance_verifier.providers.eligibility.base import (
    TIMEOUT_SECONDS,
    BaseEligibilityAdapter,
    EligibilityRequest,
)
from insurance_verifier.schemas.record import (
    AmountProgress,
    Coinsurance,
    Copay,
    Coverage,
    EligibilityResult,
)

if TYPE_CHECKING:
    from omegaconf import DictConfig

SERVICE_TYPE_HEALTH_BENEFIT = "30"
SERVICE_TYPE_MENTAL_HEALTH = "MH"
REMAINING_QUALIFIER = "29"

# Psychiatric service CPT codes.
MENTAL_HEALTH_CPT_RANGE = range(90791, 90900)

ERROR_MAPPINGS: dict[str, tuple[str, str, bool]] = {
    # AAA03 reject reason -> (category, message, retryable)
    "42": ("invalid_member_id", "Member ID not found", False),
    "33": ("invalid_member_id", "Invalid date of birth", False),
    "56": ("coverage_not_active", "Coverage not active", False),
    "57": ("coverage_not_active", "Coverage terminated", False),
    "58": ("service_not_covered", "Service not covered", False),
    "72": ("network_error", "Unable to respond at this time", True),
    "73": ("network_error", "System currently unavailable", True),
    "75": ("unknown", "Subscriber/insured not found", False),
}


@dataclass(frozen=True)
class Segment:
    name: str
    elements: tuple[str, ...] = ()

    def element(self, index: int) -> str:
        return self.elements[index] if index < len(self.elements) else ""


def seg(name: str, *elements: str) -> Segment:
    return Segment(name, tuple(elements))


def to_x12(segments: Sequence[Segment]) -> str:
    return "~".join("*".join((s.name, *s.elements)) for s in segments)


def parse_x12(text: str) -> list[Segment]:
    segments = []
    for raw in text.split("~"):
        raw = raw.strip()
        if not raw:
            continue
        name, *elements = raw.split("*")
        segments.append(Segment(name, tuple(elements)))
    return segments


class EdiAdapter(BaseEligibilityAdapter):
    name = "edi"

    def __init__(
        self,
        endpoint: str = "",
        api_key: str = "",
        provider_name: str = "",
        provider_npi: str = "",
        timeout_seconds: float = TIMEOUT_SECONDS,
        connect_timeout_seconds: float = 10,
        test_mode: bool = False,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.endpoint = endpoint
        self.api_key = api_key
        self.provider_name = provider_name
        self.provider_npi = provider_npi
        self.timeout_seconds = timeout_seconds
        self.test_mode = test_mode
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds)
        )

    @classmethod
    def from_config(cls, cfg: DictConfig) -> EdiAdapter:
        edi = cfg.edi
        return cls(
            endpoint=edi.endpoint,
            api_key=edi.api_key,
            provider_name=edi.provider_name,
            provider_npi=edi.provider_npi,
            timeout_seconds=edi.timeout_seconds,
            connect_timeout_seconds=edi.connect_timeout_seconds,
            test_mode=bool(edi.test_mode),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def verify(self, request: EligibilityRequest) -> EligibilityResult:
        inquiry = self.build_270(request)
        try:
            response = self._simulate(inquiry) if self.test_mode else self._transmit(inquiry)
        except httpx.TimeoutException:
            logger.error("EDI eligibility request timed out")
            return self.build_result(None, error=self.timeout_error(self.timeout_seconds))
        except httpx.TransportError as exc:
            logger.error("EDI eligibility network error: {err}", err=exc)
            return self.build_result(None, error=self.network_error(exc))
        return self.parse_271(response)

    # ------------------------------------------------------------------
    # 270 inquiry
    # ------------------------------------------------------------------

    def build_270(self, request: EligibilityRequest, now: Optional[datetime] = None) -> list[Segment]:
        now = now or datetime.now()
        control_number = f"{random.randint(1, 999_999_999):09d}"
        trace_id = f"INSV{now:%Y%m%d%H%M%S}{random.randint(1000, 9999)}"
        first, last = _split_name(request.subscriber_name)

        body: list[Segment] = [
            seg("BHT", "0022", "13", trace_id, f"{now:%Y%m%d}", f"{now:%H%M}"),
            seg("HL", "1", "", "20", "1"),
            seg("NM1", "PR", "2", normalize_payer_name(request.payer_name), "", "", "", "", "PI", request.payer_id or ""),
            seg("HL", "2", "1", "21", "1"),
            seg("NM1", "1P", "2", self.provider_name, "", "", "", "", "XX", self.provider_npi),
            seg("HL", "3", "2", "22", "0"),
            seg("NM1", "IL", "1", last, first, "", "", "", "MI", request.member_id),
            seg("REF", "0F", request.member_id),
        ]
        if request.group_number:
            body.append(seg("REF", "1L", request.group_number))
        if request.subscriber_dob:
            body.append(seg("DMG", "D8", f"{request.subscriber_dob:%Y%m%d}"))
        body += [
            seg("DTP", "291", "D8", f"{now:%Y%m%d}"),
            seg("EQ", SERVICE_TYPE_HEALTH_BENEFIT),
            seg("EQ", SERVICE_TYPE_MENTAL_HEALTH),
        ]
        # SE01 counts every segment from ST to SE inclusive.
        return [seg("ST", "270", control_number), *body, seg("SE", str(len(body) + 2), control_number)]

    def _transmit(self, inquiry: list[Segment]) -> list[Segment]:
        trace_id = inquiry[1].element(2)
        response = self._client.post(
            self.endpoint,
            json={"transaction": to_x12(inquiry), "trace_id": trace_id},
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        if response.is_error:
            logger.error("EDI clearinghouse returned {status}", status=response.status_code)
            raise ProviderError(f"Clearinghouse returned error: {response.status_code}")
        try:
            data: dict[str, Any] = response.json()
        except ValueError:
            logger.warning("EDI clearinghouse response was not JSON")
            return []
        return parse_x12(data.get("response") or data.get("edi_response") or "")

    # ------------------------------------------------------------------
    # 271 response
    # ------------------------------------------------------------------

    def parse_271(self, segments: Sequence[Segment]) -> EligibilityResult:
        rejections = [s for s in segments if s.name == "AAA"]
        if rejections:
            return self._rejection(rejections[0])

        benefits = [s for s in segments if s.name == "EB"]
        if not benefits:
            return self.build_result(
                None,
                error=self.build_error(
                    "unknown", "No eligibility information in response", retryable=True
                ),
            )

        mental_health = any(_is_mental_health(b) for b in benefits)
        general = any(
            b.element(0) == "1" and b.element(3) in (SERVICE_TYPE_HEALTH_BENEFIT, "")
            for b in benefits
        )
        coverage = Coverage(
            mental_health_covered=mental_health,
            copay=_copay(benefits),
            deductible=_amount_progress(benefits, "C"),
            coinsurance=_coinsurance(benefits),
            out_of_pocket_max=_amount_progress(benefits, "G"),
            effective_date=_dtp_date(segments, "348"),
            termination_date=_dtp_date(segments, "349"),
        )

        if not mental_health and general:
            return self.build_result(
                None,
                coverage,
                self.build_error(
                    "unknown",
                    "Mental health coverage unclear - general coverage exists",
                    retryable=True,
                    code="MENTAL_HEALTH_UNCLEAR",
                ),
            )
        return self.build_result(mental_health, coverage)

    def _rejection(self, segment: Segment) -> EligibilityResult:
        code = segment.element(1)
        category, message, retryable = ERROR_MAPPINGS.get(
            code, ("unknown", f"Unknown error code: {code}", False)
        )
        logger.info("EDI rejection AAA{code} ({category})", code=code, category=category)
        return self.build_result(
            False,
            error=self.build_error(category, message, retryable=retryable, code=f"AAA{code}"),
        )

    # ------------------------------------------------------------------
    # Test-mode clearinghouse
    # ------------------------------------------------------------------

    def _simulate(self, inquiry: list[Segment]) -> list[Segment]:
        member_id = next(
            (s.element(1) for s in inquiry if s.name == "REF" and s.element(0) == "0F"), ""
        ).upper()
        if "INVALID" in member_id:
            return [seg("AAA", "Y", "42", "", "C")]
        if "INACTIVE" in member_id:
            return [seg("AAA", "Y", "56", "", "C")]
        if "NOMENTAL" in member_id:
            return [seg("EB", "1", "IND", "", SERVICE_TYPE_HEALTH_BENEFIT)]
        if "TIMEOUT" in member_id:
            raise httpx.ReadTimeout("Simulated clearinghouse timeout")
        return [
            seg("EB", "1", "IND", "", SERVICE_TYPE_MENTAL_HEALTH),
            seg("EB", "B", "IND", "", SERVICE_TYPE_MENTAL_HEALTH, "", "", "25.00"),
            seg("EB", "C", "IND", "", SERVICE_TYPE_HEALTH_BENEFIT, "", "", "500.00"),
            seg("EB", "A", "IND", "", SERVICE_TYPE_HEALTH_BENEFIT, "", "", "", "0.20"),
            seg("DTP", "348", "D8", f"{date.today():%Y%m%d}"),
        ]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def normalize_payer_name(name: Optional[str]) -> str:
    cleaned = re.sub(r"[^A-Z0-9\s]", "", (name or "").upper()).strip()
    return cleaned[:35]


def _split_name(full_name: Optional[str]) -> tuple[str, str]:
    parts = (full_name or "").split()
    if not parts:
        return "", ""
    return parts[0], parts[-1]


def _to_float(raw: str) -> Optional[float]:
    try:
        return float(raw) if raw else None
    except ValueError:
        return None


def _is_mental_health(benefit: Segment) -> bool:
    if benefit.element(0) == "6":
        return False
    if benefit.element(3) == SERVICE_TYPE_MENTAL_HEALTH:
        return True
    procedure = benefit.element(13)
    return procedure.isdigit() and int(procedure) in MENTAL_HEALTH_CPT_RANGE


def _copay(benefits: Sequence[Segment]) -> Optional[Copay]:
    for b in benefits:
        if b.element(0) == "B":
            amount = _to_float(b.element(6))
            return Copay(amount=round(amount, 2)) if amount and amount > 0 else None
    return None


def _coinsurance(benefits: Sequence[Segment]) -> Optional[Coinsurance]:
    for b in benefits:
        if b.element(0) == "A":
            fraction = _to_float(b.element(7))
            return Coinsurance(percentage=int(round(fraction * 100))) if fraction is not None else None
    return None


def _amount_progress(benefits: Sequence[Segment], code: str) -> Optional[AmountProgress]:
    """Total from the first non-remaining benefit; met = total - remaining (0 when unknown)."""
    total = next(
        (_to_float(b.element(6)) for b in benefits if b.element(0) == code and b.element(5) != REMAINING_QUALIFIER),
        None,
    )
    if total is None:
        return None
    remaining = next(
        (_to_float(b.element(6)) for b in benefits if b.element(0) == code and b.element(5) == REMAINING_QUALIFIER),
        None,
    )
    met = 0.0 if remaining is None else min(max(total - remaining, 0.0), total)
    return AmountProgress(amount=round(total, 2), met=round(met, 2))


def _dtp_date(segments: Sequence[Segment], qualifier: str) -> Optional[date]:
    for s in segments:
        if s.name == "DTP" and s.element(0) == qualifier:
            raw = s.element(2)
            if len(raw) != 8:
                return None
            try:
                return datetime.strptime(raw, "%Y%m%d").date()
            except ValueError:
                return None
    return None
