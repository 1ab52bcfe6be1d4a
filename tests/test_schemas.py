"""Tests for Pydantic schemas: VerificationRecord, coverage amounts and overrides."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from insurance_verifier.schemas.operations import FieldError, OperationResult, OverrideRequest
from insurance_verifier.schemas.record import (
    AmountProgress,
    Copay,
    DeductibleOverride,
    EligibilityResult,
    VerificationRecord,
    VerificationStatus,
)

# ═══════════════════════════════════════════════════════════════════════
# VerificationRecord
# ═══════════════════════════════════════════════════════════════════════


class TestVerificationRecord:
    """Test suite for :class:`VerificationRecord`."""

    def test_defaults(self) -> None:
        record = VerificationRecord(case_id="case-1")
        assert record.status == VerificationStatus.PENDING
        assert record.retry_attempts == 0
        assert record.version == 0
        assert record.result.data_sources == {}
        assert record.id

    def test_status_from_string(self) -> None:
        record = VerificationRecord.model_validate({"case_id": "c", "status": "manual_entry_complete"})
        assert record.status == VerificationStatus.MANUAL_ENTRY_COMPLETE

    def test_unknown_status(self) -> None:
        with pytest.raises(ValidationError):
            VerificationRecord.model_validate({"case_id": "c", "status": "approved"})

    @pytest.mark.parametrize(
        "payer, member, required, identifying",
        [("Aetna", "MEM123456", True, True), ("Aetna", None, False, True), (None, None, False, False)],
    )
    def test_field_presence(self, payer, member, required, identifying) -> None:
        record = VerificationRecord(case_id="c", payer_name=payer, member_id=member)
        assert record.has_required_fields is required
        assert record.has_identifying_data is identifying

    def test_is_expired(self) -> None:
        now = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
        assert not VerificationRecord(case_id="c").is_expired(now)
        assert VerificationRecord(case_id="c", case_expires_at=now).is_expired(now)
        assert not VerificationRecord(case_id="c", case_expires_at=now + timedelta(minutes=5)).is_expired(now)

    def test_naive_expiry_treated_as_utc(self) -> None:
        now = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
        record = VerificationRecord(case_id="c", case_expires_at=datetime(2026, 10, 19, 11, 59))
        assert record.is_expired(now)

    def test_json_roundtrip_keeps_status(self) -> None:
        record = VerificationRecord(case_id="c", status=VerificationStatus.SELF_PAY)
        restored = VerificationRecord.model_validate_json(record.model_dump_json())
        assert restored.status == VerificationStatus.SELF_PAY


# ═══════════════════════════════════════════════════════════════════════
# Money values
# ═══════════════════════════════════════════════════════════════════════


class TestMoney:
    def test_negative_rejected(self) -> None:
        with pytest.raises(ValidationError, match="greater_than_equal"):
            Copay(amount=-1)

    def test_upper_bound(self) -> None:
        assert Copay(amount=1_000_000).amount == 1_000_000
        with pytest.raises(ValidationError, match="less_than_equal"):
            Copay(amount=1_000_000.01)

    def test_met_cannot_exceed_amount(self) -> None:
        with pytest.raises(ValidationError, match="met cannot exceed amount"):
            AmountProgress(amount=500, met=600)

    def test_partial_amounts(self) -> None:
        assert AmountProgress(met=100).amount is None


# ═══════════════════════════════════════════════════════════════════════
# Overrides
# ═══════════════════════════════════════════════════════════════════════


class TestDeductibleOverride:
    def test_reason_required(self) -> None:
        with pytest.raises(ValidationError):
            DeductibleOverride(deductible_met=10, reason="")

    def test_totals_checked(self) -> None:
        with pytest.raises(ValidationError, match="oop_met cannot exceed oop_max_amount"):
            DeductibleOverride(oop_met=10, oop_max_amount=5, reason="EOB")

    def test_source_is_manual(self) -> None:
        assert DeductibleOverride(oop_met=10, reason="EOB").source == "manual"

    def test_request_reason_defaults_blank(self) -> None:
        request = OverrideRequest.model_validate({"oop_met": 10})
        assert request.reason == ""


# ═══════════════════════════════════════════════════════════════════════
# Results
# ═══════════════════════════════════════════════════════════════════════


class TestResults:
    def test_eligibility_requires_status(self) -> None:
        with pytest.raises(ValidationError):
            EligibilityResult.model_validate({"eligible": True})

    def test_operation_result_defaults(self) -> None:
        result = OperationResult()
        assert result.record is None
        assert result.errors == []
        assert result.cached is False

    def test_field_error_defaults_to_base(self) -> None:
        assert FieldError(message="x").field == "base"
