"""Versioned record repository with per-record mutual exclusion."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Optional, Protocol

from loguru import logger
from pydantic import ValidationError

from insurance_verifier.core.errors import RecordNotFound, StateConflict, ValidationFailed
from insurance_verifier.core.state_machine import replay
from insurance_verifier.schemas.operations import FieldError
from insurance_verifier.schemas.record import VerificationRecord, utcnow

Mutation = Callable[[VerificationRecord], None]


class RecordStore(Protocol):
    """Persistence contract used by the service and both pipelines."""

    async def create(self, record: VerificationRecord) -> VerificationRecord: ...

    async def get(self, record_id: str) -> VerificationRecord: ...

    async def update(
        self,
        record_id: str,
        mutate: Mutation,
        expected_version: Optional[int] = None,
    ) -> VerificationRecord: ...


class InMemoryRecordStore:
    """Dict-backed :class:`RecordStore`.

    Every ``update`` is a read-modify-write under the record's lock:

    1. copy the stored record,
    2. apply ``mutate`` to the copy (status changes must go through
       :func:`~insurance_verifier.core.state_machine.transition`),
    3. replay the recorded transitions from the stored status,
    4. re-validate the whole candidate,
    5. bump ``version`` and swap it in.

    Any failure leaves the stored record untouched.
    """

    def __init__(self) -> None:
        self._records: dict[str, VerificationRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, record_id: str) -> asyncio.Lock:
        lock = self._locks.get(record_id)
        if lock is None:
            lock = self._locks[record_id] = asyncio.Lock()
        return lock

    async def create(self, record: VerificationRecord) -> VerificationRecord:
        async with self._lock_for(record.id):
            if record.id in self._records:
                raise StateConflict(f"Verification record {record.id} already exists", field="id")
            stored = record.model_copy(deep=True)
            stored._transitions = []
            self._records[record.id] = stored
            logger.debug("Created verification record {id}", id=record.id)
            return stored.model_copy(deep=True)

    async def get(self, record_id: str) -> VerificationRecord:
        record = self._records.get(record_id)
        if record is None:
            raise RecordNotFound(record_id)
        return record.model_copy(deep=True)

    async def update(
        self,
        record_id: str,
        mutate: Mutation,
        expected_version: Optional[int] = None,
    ) -> VerificationRecord:
        async with self._lock_for(record_id):
            current = self._records.get(record_id)
            if current is None:
                raise RecordNotFound(record_id)
            if expected_version is not None and expected_version != current.version:
                raise StateConflict(
                    "Verification record was modified concurrently; reload and retry",
                    field="version",
                )

            candidate = current.model_copy(deep=True)
            candidate._transitions = []
            mutate(candidate)

            replay(current.status, candidate._transitions, candidate.status)

            try:
                validated = VerificationRecord.model_validate(candidate.model_dump())
            except ValidationError as exc:
                raise ValidationFailed(
                    "Verification record failed validation",
                    errors=_field_errors(exc),
                ) from exc

            validated.version = current.version + 1
            validated.updated_at = utcnow()
            self._records[record_id] = validated

            if validated.status != current.status:
                logger.info(
                    "Record {id}: {src} -> {dst}",
                    id=record_id,
                    src=current.status.value,
                    dst=validated.status.value,
                )
            return validated.model_copy(deep=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _field_errors(exc: ValidationError) -> list[FieldError]:
    """Flatten pydantic errors into field/message pairs (leaf field names)."""
    errors: list[FieldError] = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if not isinstance(part, int)]
        field = loc[-1] if loc else "base"
        errors.append(FieldError(field=field, message=err.get("msg", "Invalid value")))
    return errors
