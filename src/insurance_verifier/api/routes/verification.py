"""Insurance verification API routes.

Endpoints (all under ``/api/v1``)
---------------------------------
POST /records                          create a record for a case
GET  /records/{id}                     current record
POST /records/{id}/card-images         attach card image references
POST /records/{id}/extraction          start card extraction (background)
POST /records/{id}/eligibility         start eligibility verification
PUT  /records/{id}/manual-fields       save manually entered fields
POST /records/{id}/self-pay            choose self-pay
POST /records/{id}/insurance           leave self-pay
PUT  /records/{id}/override            override deductible / OOP progress
GET  /records/{id}/deductible          current deductible progress
GET  /health                           health check

The caller's case id is passed in the ``X-Case-Id`` header and is checked
against the record's owning case.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request
from loguru import logger

from insurance_verifier.billing.deductible import DeductibleStatus
from insurance_verifier.core.errors import VerificationError
from insurance_verifier.schemas.operations import (
    CardImagesRequest,
    CreateRecordRequest,
    ManualFields,
    OperationResult,
    OverrideFields,
    OverrideRequest,
)
from insurance_verifier.service import VerificationService

router = APIRouter()

HTTP_STATUS_BY_CATEGORY = {
    "validation": 422,
    "business_rule": 422,
    "state_conflict": 409,
    "authorization": 403,
    "not_found": 404,
}


def _service(request: Request) -> VerificationService:
    return request.app.state.service


@contextmanager
def _translate_errors(operation: str, record_id: Optional[str] = None) -> Iterator[None]:
    """Turn a :class:`VerificationError` into an ``HTTPException`` with field errors."""
    try:
        yield
    except VerificationError as exc:
        status = HTTP_STATUS_BY_CATEGORY.get(exc.category, 500)
        logger.warning(
            "API: {op} on record {id} rejected ({status}): {err}",
            op=operation,
            id=record_id,
            status=status,
            err=exc.message,
        )
        raise HTTPException(
            status_code=status,
            detail={"errors": [error.model_dump() for error in exc.errors]},
        ) from exc


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@router.post("/records", response_model=OperationResult, status_code=201, summary="Create a record")
async def create_record(body: CreateRecordRequest, request: Request) -> OperationResult:
    with _translate_errors("create"):
        return await _service(request).create_record(body.case_id, body.case_expires_at)


@router.get("/records/{record_id}", response_model=OperationResult, summary="Get a record")
async def get_record(
    record_id: str,
    request: Request,
    x_case_id: Optional[str] = Header(default=None),
) -> OperationResult:
    with _translate_errors("get", record_id):
        return await _service(request).get_record(record_id, actor=x_case_id)


@router.post(
    "/records/{record_id}/card-images",
    response_model=OperationResult,
    summary="Attach insurance card images",
)
async def attach_card_images(
    record_id: str,
    body: CardImagesRequest,
    request: Request,
    x_case_id: Optional[str] = Header(default=None),
) -> OperationResult:
    with _translate_errors("attach_card_images", record_id):
        return await _service(request).attach_card_images(
            record_id, body.front_image, body.back_image, actor=x_case_id
        )


# ---------------------------------------------------------------------------
# Pipelines
# ---------------------------------------------------------------------------

@router.post(
    "/records/{record_id}/extraction",
    response_model=OperationResult,
    status_code=202,
    summary="Start card extraction",
    description="Queues extraction; completion is reported through status notifications.",
)
async def begin_extraction(
    record_id: str,
    request: Request,
    x_case_id: Optional[str] = Header(default=None),
) -> OperationResult:
    with _translate_errors("begin_extraction", record_id):
        return await _service(request).begin_extraction(record_id, actor=x_case_id)


@router.post(
    "/records/{record_id}/eligibility",
    response_model=OperationResult,
    status_code=202,
    summary="Start eligibility verification",
    description="Applies a cached result immediately when one is fresh, otherwise queues verification.",
)
async def begin_eligibility(
    record_id: str,
    request: Request,
    x_case_id: Optional[str] = Header(default=None),
) -> OperationResult:
    with _translate_errors("begin_eligibility", record_id):
        return await _service(request).begin_eligibility_verification(record_id, actor=x_case_id)


# ---------------------------------------------------------------------------
# Manual entry & self-pay
# ---------------------------------------------------------------------------

@router.put("/records/{record_id}/manual-fields", response_model=OperationResult, summary="Save manual entry")
async def submit_manual_fields(
    record_id: str,
    body: ManualFields,
    request: Request,
    x_case_id: Optional[str] = Header(default=None),
) -> OperationResult:
    with _translate_errors("submit_manual_fields", record_id):
        return await _service(request).submit_manual_fields(record_id, body, actor=x_case_id)


@router.post("/records/{record_id}/self-pay", response_model=OperationResult, summary="Choose self-pay")
async def select_self_pay(
    record_id: str,
    request: Request,
    x_case_id: Optional[str] = Header(default=None),
) -> OperationResult:
    with _translate_errors("select_self_pay", record_id):
        return await _service(request).select_self_pay(record_id, actor=x_case_id)


@router.post("/records/{record_id}/insurance", response_model=OperationResult, summary="Leave self-pay")
async def switch_to_insurance(
    record_id: str,
    request: Request,
    x_case_id: Optional[str] = Header(default=None),
) -> OperationResult:
    with _translate_errors("switch_to_insurance", record_id):
        return await _service(request).switch_to_insurance(record_id, actor=x_case_id)


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------

@router.put("/records/{record_id}/override", response_model=OperationResult, summary="Override deductible progress")
async def apply_override(
    record_id: str,
    body: OverrideRequest,
    request: Request,
    x_case_id: Optional[str] = Header(default=None),
) -> OperationResult:
    fields = OverrideFields.model_validate(body.model_dump(exclude={"reason"}))
    with _translate_errors("apply_override", record_id):
        return await _service(request).apply_override(record_id, fields, body.reason, actor=x_case_id)


@router.get("/records/{record_id}/deductible", response_model=DeductibleStatus, summary="Deductible progress")
async def deductible_status(
    record_id: str,
    request: Request,
    x_case_id: Optional[str] = Header(default=None),
) -> DeductibleStatus:
    with _translate_errors("deductible_status", record_id):
        return await _service(request).deductible_status(record_id, actor=x_case_id)


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------

@router.get("/health", summary="Health check")
async def health(request: Request) -> dict:
    """Return a lightweight health-check response."""
    return {"status": "healthy", "pending_jobs": _service(request).runner.pending}
