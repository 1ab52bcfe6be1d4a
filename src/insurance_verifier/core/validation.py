"""Input validation for manual entry and deductible overrides."""

from __future__ import annotations

import re
from datetime import date
from typing import Optional

from loguru import logger

from insurance_verifier.core.payers import PayerDirectory
from insurance_verifier.schemas.operations import FieldError, ManualFields, OverrideFields
from insurance_verifier.schemas.record import MAX_MONETARY_VALUE

MEMBER_ID_PATTERN = re.compile(r"^[A-Za-z0-9]{6,20}$")
GROUP_NUMBER_PATTERN = re.compile(r"^[A-Za-z0-9]{4,15}$")

_OVERRIDE_LABELS = {
    "deductible_met": "Deductible met",
    "oop_met": "OOP met",
    "deductible_amount": "Deductible amount",
    "oop_max_amount": "OOP max amount",
}


def validate_manual_fields(
    fields: ManualFields,
    directory: PayerDirectory,
    today: Optional[date] = None,
) -> list[FieldError]:
    """Check manually entered identifying fields.

    Omitted (``None``) or blank values are not checked, so partial saves are
    accepted.

    Parameters
    ----------
    fields:
        The submitted values.
    directory:
        Known-payer directory used for the payer name check.
    today:
        Reference date for the date-of-birth check (defaults to today).

    Returns
    -------
    list[FieldError]
        Empty when every supplied value is acceptable.
    """
    errors: list[FieldError] = []

    # ── 1. Member ID format ─────────────────────────────────────────────
    if fields.member_id and not MEMBER_ID_PATTERN.match(fields.member_id):
        errors.append(FieldError(field="member_id", message="must be 6-20 alphanumeric characters"))

    # ── 2. Group number format ──────────────────────────────────────────
    if fields.group_number and not GROUP_NUMBER_PATTERN.match(fields.group_number):
        errors.append(
            FieldError(field="group_number", message="must be 4-15 alphanumeric characters")
        )

    # ── 3. Payer is known or "Other" ────────────────────────────────────
    if fields.payer_name and not directory.is_acceptable_manual_entry(fields.payer_name):
        errors.append(FieldError(field="payer_name", message="must be a known payer or 'Other'"))

    # ── 4. Date of birth not in the future ──────────────────────────────
    if fields.subscriber_dob is not None and fields.subscriber_dob > (today or date.today()):
        errors.append(FieldError(field="subscriber_dob", message="cannot be in the future"))

    if errors:
        logger.warning(
            "Manual entry rejected for fields {fields}",
            fields=[err.field for err in errors],
        )
    return errors


def validate_override_values(
    fields: OverrideFields,
    max_value: float = MAX_MONETARY_VALUE,
) -> list[FieldError]:
    """Range checks for override values: non-negative, then at most *max_value*.

    Every negative value is reported before any too-large value.
    """
    supplied = {
        name: value
        for name, value in fields.model_dump().items()
        if value is not None
    }

    negative = [
        FieldError(field=name, message=f"{_OVERRIDE_LABELS[name]} cannot be negative")
        for name, value in supplied.items()
        if value < 0
    ]
    if negative:
        return negative

    return [
        FieldError(
            field=name,
            message=(
                f"{_OVERRIDE_LABELS[name]} exceeds reasonable maximum "
                f"(${int(max_value)})"
            ),
        )
        for name, value in supplied.items()
        if value > max_value
    ]
