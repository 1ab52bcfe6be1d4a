"""Manual deductible / out-of-pocket overrides."""

from __future__ import annotations

from typing import Any, Optional

from loguru import logger

from insurance_verifier.core.errors import BusinessRuleViolation, ValidationFailed
from insurance_verifier.core.events import AuditSink, safe_audit
from insurance_verifier.core.store import RecordStore
from insurance_verifier.core.validation import validate_override_values
from insurance_verifier.schemas.operations import FieldError, OverrideFields
from insurance_verifier.schemas.record import (
    MAX_MONETARY_VALUE,
    DeductibleOverride,
    VerificationRecord,
    utcnow,
)

OVERRIDE_FIELDS = ("deductible_met", "oop_met", "deductible_amount", "oop_max_amount")

MET_AMOUNT_PAIRS = (
    ("deductible_met", "deductible_amount", "Deductible met cannot exceed deductible amount"),
    ("oop_met", "oop_max_amount", "OOP met cannot exceed OOP max amount"),
)


def _existing_amount(record: VerificationRecord, name: str) -> Optional[float]:
    """Current total from the override, falling back to eligibility coverage."""
    override = record.result.override
    if override is not None and getattr(override, name) is not None:
        return getattr(override, name)
    eligibility = record.result.eligibility
    if eligibility is None:
        return None
    coverage = eligibility.coverage
    if name == "deductible_amount":
        return coverage.deductible.amount if coverage.deductible else None
    return coverage.out_of_pocket_max.amount if coverage.out_of_pocket_max else None


def check_consistency(record: VerificationRecord, values: dict[str, float]) -> list[FieldError]:
    """``met <= amount`` against the new amount when given, else the existing one."""
    errors: list[FieldError] = []
    for met_name, amount_name, message in MET_AMOUNT_PAIRS:
        met = values.get(met_name)
        amount = values.get(amount_name, _existing_amount(record, amount_name))
        if met is None and amount_name in values:
            # Lowering the total below what is already recorded as met.
            override = record.result.override
            met = getattr(override, met_name) if override is not None else None
        if met is not None and amount is not None and met > amount:
            errors.append(FieldError(field=met_name, message=message))
    return errors


def coverage_met_conflicts(record: VerificationRecord, values: dict[str, float]) -> list[str]:
    """Met fields whose eligibility-reported value exceeds a newly lowered amount.

    Not an error: the reported figure is the payer's, and progress is
    clamped to the amount when reported.
    """
    eligibility = record.result.eligibility
    if eligibility is None:
        return []
    coverage = eligibility.coverage
    reported = {
        "deductible_met": coverage.deductible.met if coverage.deductible else None,
        "oop_met": coverage.out_of_pocket_max.met if coverage.out_of_pocket_max else None,
    }
    override = record.result.override
    conflicts: list[str] = []
    for met_name, amount_name, _ in MET_AMOUNT_PAIRS:
        if amount_name not in values or met_name in values:
            continue
        if override is not None and getattr(override, met_name) is not None:
            continue
        met = reported[met_name]
        if met is not None and met > values[amount_name]:
            conflicts.append(met_name)
    return conflicts


class DeductibleOverrideManager:
    """Writes ``result.override`` and nothing else; never changes the status."""

    def __init__(
        self,
        store: RecordStore,
        audit: AuditSink,
        max_value: float = MAX_MONETARY_VALUE,
    ) -> None:
        self.store = store
        self.audit = audit
        self.max_value = max_value

    async def apply(
        self,
        record_id: str,
        fields: OverrideFields,
        reason: str,
        actor: Optional[str] = None,
    ) -> VerificationRecord:
        # ── 1. Reason required ──────────────────────────────────────────
        if not reason or not reason.strip():
            raise ValidationFailed("Override reason is required", field="reason")

        values = {name: value for name, value in fields.model_dump().items() if value is not None}
        if not values:
            raise ValidationFailed("At least one override value is required", field="base")

        # ── 2-3. Non-negative, then within the reasonable maximum ───────
        range_errors = validate_override_values(fields, self.max_value)
        if range_errors:
            raise ValidationFailed(range_errors[0].message, errors=range_errors)

        previous: dict[str, Any] = {}
        warnings: list[str] = []

        def mutate(record: VerificationRecord) -> None:
            # ── 4-5. met <= amount, checked under the record lock ───────
            consistency = check_consistency(record, values)
            if consistency:
                raise BusinessRuleViolation(consistency[0].message, errors=consistency)
            warnings[:] = coverage_met_conflicts(record, values)

            current = record.result.override
            previous.update(
                {name: getattr(current, name) if current else None for name in OVERRIDE_FIELDS}
            )
            merged = {name: previous[name] for name in OVERRIDE_FIELDS}
            merged.update(values)
            record.result.override = DeductibleOverride(
                **merged,
                reason=reason.strip(),
                overridden_by=actor,
                overridden_at=utcnow(),
            )

        record = await self.store.update(record_id, mutate)

        safe_audit(
            self.audit,
            "DEDUCTIBLE_OVERRIDE",
            record.id,
            {
                "case_id": record.case_id,
                "fields_updated": sorted(values),
                "previous_values": {name: previous.get(name) for name in values},
                "new_values": values,
                "reason": reason.strip(),
                "performed_by": actor,
                "warnings": warnings,
            },
        )
        if warnings:
            logger.warning(
                "Override on record {id} lowers totals below eligibility-reported {fields}",
                id=record_id,
                fields=warnings,
            )
        logger.info(
            "Deductible override applied to record {id} ({fields})",
            id=record_id,
            fields=sorted(values),
        )
        return record
