"""Tests for the verification service: records, card images, manual entry and self-pay."""

from __future__ import annotations

from datetime import date, timedelta

import pytest

from insurance_verifier.core.errors import (
    AlreadyInProgress,
    BusinessRuleViolation,
    NotAuthorized,
    RecordNotFound,
    StateConflict,
    ValidationFailed,
)
from insurance_verifier.schemas.operations import ManualFields
from insurance_verifier.schemas.record import ExtractionSection, FailureDetail, VerificationStatus, utcnow
from insurance_verifier.service import VerificationService

S = VerificationStatus


# ═══════════════════════════════════════════════════════════════════════
# Records
# ═══════════════════════════════════════════════════════════════════════


class TestRecords:
    @pytest.mark.asyncio
    async def test_create_and_get(self, service: VerificationService) -> None:
        created = await service.create_record("  case-9 ")
        assert created.record.status == S.PENDING
        assert created.record.case_id == "case-9"

        fetched = await service.get_record(created.record.id, actor="case-9")
        assert fetched.record.id == created.record.id

    @pytest.mark.asyncio
    async def test_blank_case_id(self, service: VerificationService) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            await service.create_record(" ")
        assert exc_info.value.errors[0].field == "case_id"

    @pytest.mark.asyncio
    async def test_unknown_record(self, service: VerificationService) -> None:
        with pytest.raises(RecordNotFound):
            await service.get_record("missing")

    @pytest.mark.asyncio
    async def test_other_case_is_denied(self, service: VerificationService, make_record) -> None:
        record = await make_record()
        with pytest.raises(NotAuthorized):
            await service.get_record(record.id, actor="case-2")


# ═══════════════════════════════════════════════════════════════════════
# Card images
# ═══════════════════════════════════════════════════════════════════════


class TestCardImages:
    @pytest.mark.asyncio
    async def test_attach(self, service: VerificationService, make_record, audit) -> None:
        record = await make_record()
        result = await service.attach_card_images(record.id, "front.jpg", "back.jpg")

        assert result.record.card_image_front == "front.jpg"
        assert result.record.card_image_back == "back.jpg"
        assert audit.events[-1].action == "INSURANCE_CARD_UPLOADED"
        assert audit.events[-1].details["has_back_image"] is True

    @pytest.mark.asyncio
    async def test_new_upload_resets_failed_extraction(self, service: VerificationService, make_record) -> None:
        record = await make_record(status=S.FAILED)

        def mutate(r) -> None:
            r.result.error = FailureDetail(code="THROTTLED", message="slow down")

        await service.store.update(record.id, mutate)
        result = await service.attach_card_images(record.id, "front.jpg")

        assert result.record.status == S.PENDING
        assert result.record.result.error is None

    @pytest.mark.asyncio
    async def test_front_required(self, service: VerificationService, make_record) -> None:
        record = await make_record()
        with pytest.raises(ValidationFailed):
            await service.attach_card_images(record.id, "")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, error", [(S.IN_PROGRESS, AlreadyInProgress), (S.VERIFIED, StateConflict)])
    async def test_rejected_statuses(self, service: VerificationService, make_record, status, error) -> None:
        record = await make_record(status=status)
        with pytest.raises(error):
            await service.attach_card_images(record.id, "front.jpg")

    @pytest.mark.asyncio
    async def test_extraction_needs_pending(self, service: VerificationService, make_record) -> None:
        record = await make_record(status=S.OCR_COMPLETE, card_image_front="front.jpg")
        with pytest.raises(StateConflict):
            await service.begin_extraction(record.id)

    @pytest.mark.asyncio
    async def test_extraction_on_expired_case(self, service: VerificationService, make_record) -> None:
        record = await make_record(card_image_front="front.jpg", case_expires_at=utcnow() - timedelta(seconds=1))
        with pytest.raises(BusinessRuleViolation, match="Session has expired"):
            await service.begin_extraction(record.id)


# ═══════════════════════════════════════════════════════════════════════
# Manual entry
# ═══════════════════════════════════════════════════════════════════════


class TestManualEntry:
    @pytest.mark.asyncio
    async def test_complete_entry(self, service: VerificationService, make_record, notifier, audit) -> None:
        record = await make_record()
        result = await service.submit_manual_fields(
            record.id, ManualFields(payer_name="Aetna", member_id="MEM123456")
        )

        assert result.record.status == S.MANUAL_ENTRY_COMPLETE
        assert result.record.result.data_sources == {"payer_name": "manual", "member_id": "manual"}
        assert notifier.events[-1][1]["status"] == "manual_entry_complete"
        event = audit.events[-1]
        assert event.action == "INSURANCE_MANUAL_ENTRY"
        assert event.details["fields_updated"] == ["member_id", "payer_name"]
        assert event.details["ocr_pre_populated"] is False

    @pytest.mark.asyncio
    async def test_partial_entry(self, service: VerificationService, make_record) -> None:
        record = await make_record()
        result = await service.submit_manual_fields(record.id, ManualFields(group_number="GRP1234"))
        assert result.record.status == S.MANUAL_ENTRY
        assert result.record.group_number == "GRP1234"

    @pytest.mark.asyncio
    async def test_partial_entries_accumulate(self, service: VerificationService, make_record) -> None:
        record = await make_record()
        await service.submit_manual_fields(record.id, ManualFields(payer_name="Aetna"))
        result = await service.submit_manual_fields(record.id, ManualFields(member_id="MEM123456"))
        assert result.record.status == S.MANUAL_ENTRY_COMPLETE

    @pytest.mark.asyncio
    async def test_resubmission_keeps_complete(self, service: VerificationService, make_record, notifier) -> None:
        record = await make_record(payer_name="Aetna", member_id="MEM123456")
        await service.submit_manual_fields(record.id, ManualFields(member_id="MEM123456"))
        published = len(notifier.events)
        result = await service.submit_manual_fields(record.id, ManualFields(group_number="GRP1234"))

        assert result.record.status == S.MANUAL_ENTRY_COMPLETE
        assert len(notifier.events) == published

    @pytest.mark.asyncio
    async def test_alias_canonicalised_and_other_kept(self, service: VerificationService, make_record) -> None:
        record = await make_record()
        result = await service.submit_manual_fields(record.id, ManualFields(payer_name="uhc"))
        assert result.record.payer_name == "UnitedHealthcare"

        other = await make_record(case_id="case-2")
        result = await service.submit_manual_fields(other.id, ManualFields(payer_name="other"))
        assert result.record.payer_name == "Other"

    @pytest.mark.asyncio
    async def test_after_failure(self, service: VerificationService, make_record) -> None:
        record = await make_record(status=S.FAILED)
        result = await service.submit_manual_fields(
            record.id, ManualFields(payer_name="Aetna", member_id="MEM123456")
        )
        assert result.record.status == S.MANUAL_ENTRY_COMPLETE

    @pytest.mark.asyncio
    async def test_after_extraction_review(self, service: VerificationService, make_record, audit) -> None:
        record = await make_record(status=S.OCR_NEEDS_REVIEW, card_image_front="front.jpg", member_id="MEM123456")

        def mutate(r) -> None:
            r.result.extraction = ExtractionSection(low_confidence_fields=["payer_name"])

        await service.store.update(record.id, mutate)
        result = await service.submit_manual_fields(record.id, ManualFields(payer_name="Cigna"))

        assert result.record.status == S.MANUAL_ENTRY_COMPLETE
        assert audit.events[-1].details["ocr_pre_populated"] is True

    @pytest.mark.asyncio
    async def test_invalid_values(self, service: VerificationService, make_record) -> None:
        record = await make_record()
        fields = ManualFields(
            payer_name="Acme Mutual",
            member_id="AB-1",
            group_number="G1",
            subscriber_dob=date.today() + timedelta(days=1),
        )
        with pytest.raises(ValidationFailed) as exc_info:
            await service.submit_manual_fields(record.id, fields)
        assert sorted(e.field for e in exc_info.value.errors) == [
            "group_number",
            "member_id",
            "payer_name",
            "subscriber_dob",
        ]

    @pytest.mark.asyncio
    async def test_blank_values_only(self, service: VerificationService, make_record) -> None:
        record = await make_record()
        with pytest.raises(ValidationFailed, match="At least one insurance field"):
            await service.submit_manual_fields(record.id, ManualFields(subscriber_name="  "))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [S.VERIFIED, S.MANUAL_REVIEW, S.SELF_PAY])
    async def test_locked_statuses(self, service: VerificationService, make_record, status) -> None:
        record = await make_record(status=status, payer_name="Aetna", member_id="MEM123456")
        with pytest.raises(StateConflict):
            await service.submit_manual_fields(record.id, ManualFields(member_id="MEM999999"))
        assert (await service.store.get(record.id)).member_id == "MEM123456"

    @pytest.mark.asyncio
    async def test_in_progress(self, service: VerificationService, make_record) -> None:
        record = await make_record(status=S.IN_PROGRESS)
        with pytest.raises(AlreadyInProgress):
            await service.submit_manual_fields(record.id, ManualFields(member_id="MEM123456"))


# ═══════════════════════════════════════════════════════════════════════
# Self-pay
# ═══════════════════════════════════════════════════════════════════════


class TestSelfPay:
    @pytest.mark.asyncio
    async def test_select_and_switch_back(self, service: VerificationService, make_record, audit) -> None:
        record = await make_record(payer_name="Aetna", member_id="MEM123456", status=S.MANUAL_ENTRY_COMPLETE)

        selected = await service.select_self_pay(record.id)
        assert selected.record.status == S.SELF_PAY
        assert selected.record.verified_at is not None

        switched = await service.switch_to_insurance(record.id)
        assert switched.record.status == S.PENDING
        assert switched.record.verified_at is None
        assert audit.actions()[-2:] == ["INSURANCE_SELF_PAY_SELECTED", "INSURANCE_SWITCHED_FROM_SELF_PAY"]

    @pytest.mark.asyncio
    async def test_switch_without_insurance_data(self, service: VerificationService, make_record) -> None:
        record = await make_record()
        await service.select_self_pay(record.id)
        result = await service.switch_to_insurance(record.id)
        assert result.record.status == S.FAILED

    @pytest.mark.asyncio
    async def test_select_is_idempotent(self, service: VerificationService, make_record, audit) -> None:
        record = await make_record(status=S.SELF_PAY)
        result = await service.select_self_pay(record.id)
        assert result.record.version == record.version
        assert audit.events == []

    @pytest.mark.asyncio
    async def test_select_from_verified(self, service: VerificationService, make_record) -> None:
        record = await make_record(status=S.VERIFIED, payer_name="Aetna", member_id="MEM123456")
        result = await service.select_self_pay(record.id)
        assert result.record.status == S.SELF_PAY

    @pytest.mark.asyncio
    async def test_select_while_in_progress(self, service: VerificationService, make_record) -> None:
        record = await make_record(status=S.IN_PROGRESS)
        with pytest.raises(AlreadyInProgress):
            await service.select_self_pay(record.id)

    @pytest.mark.asyncio
    async def test_switch_requires_self_pay(self, service: VerificationService, make_record) -> None:
        record = await make_record()
        with pytest.raises(StateConflict, match="Verification is not self-pay"):
            await service.switch_to_insurance(record.id)
