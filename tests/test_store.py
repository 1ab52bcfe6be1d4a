"""Tests for the in-memory record store."""

from __future__ import annotations

import asyncio

import pytest

from insurance_verifier.core.errors import RecordNotFound, StateConflict, ValidationFailed
from insurance_verifier.core.state_machine import transition
from insurance_verifier.core.store import InMemoryRecordStore
from insurance_verifier.schemas.record import (
    AmountProgress,
    Coverage,
    EligibilityResult,
    VerificationRecord,
    VerificationStatus,
)

S = VerificationStatus


class TestCreateAndGet:
    @pytest.mark.asyncio
    async def test_roundtrip(self, store: InMemoryRecordStore) -> None:
        created = await store.create(VerificationRecord(case_id="case-1"))
        fetched = await store.get(created.id)
        assert fetched.id == created.id
        assert fetched.version == 0

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, store: InMemoryRecordStore) -> None:
        record = VerificationRecord(case_id="case-1")
        await store.create(record)
        with pytest.raises(StateConflict):
            await store.create(record)

    @pytest.mark.asyncio
    async def test_missing_record(self, store: InMemoryRecordStore) -> None:
        with pytest.raises(RecordNotFound):
            await store.get("nope")

    @pytest.mark.asyncio
    async def test_reads_are_copies(self, store: InMemoryRecordStore) -> None:
        created = await store.create(VerificationRecord(case_id="case-1"))
        copy = await store.get(created.id)
        copy.member_id = "CHANGED1"
        assert (await store.get(created.id)).member_id is None


class TestUpdate:
    @pytest.mark.asyncio
    async def test_bumps_version(self, store: InMemoryRecordStore) -> None:
        created = await store.create(VerificationRecord(case_id="case-1"))

        def mutate(record: VerificationRecord) -> None:
            record.member_id = "MEM123456"

        updated = await store.update(created.id, mutate)
        assert updated.version == 1
        assert updated.member_id == "MEM123456"

    @pytest.mark.asyncio
    async def test_stale_version_rejected(self, store: InMemoryRecordStore) -> None:
        created = await store.create(VerificationRecord(case_id="case-1"))
        await store.update(created.id, lambda r: None)
        with pytest.raises(StateConflict):
            await store.update(created.id, lambda r: None, expected_version=0)

    @pytest.mark.asyncio
    async def test_status_assignment_without_transition_rejected(self, store: InMemoryRecordStore) -> None:
        created = await store.create(VerificationRecord(case_id="case-1"))

        def mutate(record: VerificationRecord) -> None:
            record.status = S.VERIFIED

        with pytest.raises(StateConflict):
            await store.update(created.id, mutate)
        assert (await store.get(created.id)).status == S.PENDING

    @pytest.mark.asyncio
    async def test_transition_is_committed(self, store: InMemoryRecordStore) -> None:
        created = await store.create(VerificationRecord(case_id="case-1"))
        updated = await store.update(created.id, lambda r: transition(r, S.IN_PROGRESS))
        assert updated.status == S.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_invalid_write_leaves_record_untouched(self, store: InMemoryRecordStore) -> None:
        created = await store.create(VerificationRecord(case_id="case-1"))

        def mutate(record: VerificationRecord) -> None:
            record.member_id = "MEM123456"
            record.result.eligibility = EligibilityResult(
                status="VERIFIED",
                coverage=Coverage(deductible=AmountProgress(amount=500)),
            )
            record.result.eligibility.coverage.deductible.met = 900

        with pytest.raises(ValidationFailed) as exc_info:
            await store.update(created.id, mutate)

        assert exc_info.value.errors
        stored = await store.get(created.id)
        assert stored.member_id is None
        assert stored.version == 0

    @pytest.mark.asyncio
    async def test_concurrent_start_only_one_wins(self, store: InMemoryRecordStore) -> None:
        created = await store.create(VerificationRecord(case_id="case-1"))

        results = await asyncio.gather(
            store.update(created.id, lambda r: transition(r, S.IN_PROGRESS)),
            store.update(created.id, lambda r: transition(r, S.IN_PROGRESS)),
            return_exceptions=True,
        )
        assert sum(isinstance(r, VerificationRecord) for r in results) == 1
        assert sum(isinstance(r, StateConflict) for r in results) == 1
