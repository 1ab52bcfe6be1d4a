"""Document extraction pipeline: card images -> identifying fields.

Workflow for one record (already ``in_progress``)::

    read images ──(missing)──► failed (NO_FRONT_IMAGE / IMAGE_NOT_FOUND / IMAGE_READ_ERROR)
      │
      ▼
    extract (timeout, retry policies)
      │ ──(permanent / connectivity / timeout / exhausted)──► failed (<code>)
      ▼
    apply high-confidence fields ──► ocr_complete | ocr_needs_review
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Optional

from loguru import logger

from insurance_verifier.core.errors import (
    ProviderError,
    ProviderPermanentError,
    ProviderThrottledError,
    ProviderTimeoutError,
    TransientProviderError,
    VerificationError,
)
from insurance_verifier.core.retry import RetryExhausted, RetryPolicy, fixed_backoff, run_with_policies
from insurance_verifier.core.state_machine import transition
from insurance_verifier.pipelines.base import BasePipeline
from insurance_verifier.schemas.record import (
    TARGET_FIELDS,
    ExtractedField,
    ExtractionSection,
    FailureDetail,
    VerificationRecord,
    VerificationStatus,
    utcnow,
)

if TYPE_CHECKING:
    from omegaconf import DictConfig

    from insurance_verifier.core.events import AuditSink, Notifier
    from insurance_verifier.core.images import ImageStore
    from insurance_verifier.core.payers import PayerDirectory
    from insurance_verifier.core.store import RecordStore
    from insurance_verifier.providers.extraction.base import BaseExtractor, ExtractionOutput

S = VerificationStatus

UNKNOWN_ERROR = "UNKNOWN_ERROR"
IMAGE_READ_ERROR = "IMAGE_READ_ERROR"
THROTTLE_POLICY = "throttled"
UNCLASSIFIED_POLICY = "unclassified"


def _is_unclassified(exc: BaseException) -> bool:
    """Errors no provider could classify (plain exceptions or bare ProviderError)."""
    if not isinstance(exc, Exception):
        return False
    if isinstance(exc, (TransientProviderError, ProviderPermanentError)):
        return False
    return not isinstance(exc, VerificationError) or type(exc) is ProviderError


def summarize_confidence(scores: list[float]) -> dict[str, Any]:
    """min/max/avg/count of confidence scores, rounded to one decimal."""
    if not scores:
        return {}
    return {
        "min": round(min(scores), 1),
        "max": round(max(scores), 1),
        "avg": round(sum(scores) / len(scores), 1),
        "fields_count": len(scores),
    }


class ExtractionPipeline(BasePipeline):
    def __init__(
        self,
        cfg: DictConfig,
        store: RecordStore,
        extractor: BaseExtractor,
        images: ImageStore,
        directory: PayerDirectory,
        notifier: Notifier,
        audit: AuditSink,
    ) -> None:
        super().__init__(cfg, store, notifier, audit)
        self.extractor = extractor
        self.images = images
        self.directory = directory

        ext = cfg.extraction
        self.min_confidence: float = float(ext.min_confidence)
        self.timeout_seconds: float = float(ext.timeout_seconds)
        self.policies = [
            RetryPolicy(
                name=THROTTLE_POLICY,
                max_attempts=int(ext.retry.throttle_attempts),
                backoff=fixed_backoff(float(ext.retry.throttle_wait_seconds)),
                is_retryable=lambda exc: isinstance(exc, ProviderThrottledError),
            ),
            RetryPolicy(
                name=UNCLASSIFIED_POLICY,
                max_attempts=int(ext.retry.unknown_attempts),
                backoff=fixed_backoff(float(ext.retry.unknown_wait_seconds)),
                is_retryable=_is_unclassified,
            ),
        ]

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self, record_id: str) -> Optional[VerificationRecord]:
        record = await self.store.get(record_id)
        logger.info("Extraction started for record {id}", id=record_id)

        if not record.card_image_front:
            return await self.record_failure(record_id, "NO_FRONT_IMAGE", "No front card image attached")

        try:
            return await self._process(record)
        except Exception:
            logger.exception("Extraction for record {id} failed unexpectedly", id=record_id)
            return await self.record_failure(record_id, UNKNOWN_ERROR, "Unexpected extraction error")

    async def _process(self, record: VerificationRecord) -> Optional[VerificationRecord]:
        record_id = record.id
        try:
            front = await asyncio.to_thread(self.images.read, record.card_image_front)
            back = (
                await asyncio.to_thread(self.images.read, record.card_image_back)
                if record.card_image_back
                else None
            )
        except (FileNotFoundError, ValueError) as exc:
            return await self.record_failure(record_id, "IMAGE_NOT_FOUND", str(exc))
        except OSError as exc:
            return await self.record_failure(record_id, IMAGE_READ_ERROR, str(exc))

        try:
            output = await run_with_policies(
                lambda: self._extract(front, back),
                self.policies,
                label=f"extraction[{record_id}]",
            )
        except RetryExhausted as exc:
            code = UNKNOWN_ERROR if exc.policy.name == UNCLASSIFIED_POLICY else _code_of(exc.last_exception)
            return await self.record_failure(record_id, code, str(exc.last_exception))
        except ProviderError as exc:
            return await self.record_failure(record_id, exc.code, exc.message)

        return await self._apply(record_id, output)

    async def _extract(self, front: bytes, back: Optional[bytes]) -> ExtractionOutput:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.extractor.extract, front, back),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderTimeoutError(
                f"OCR processing timed out after {self.timeout_seconds:.0f} seconds"
            ) from exc

    # ------------------------------------------------------------------
    # Success path
    # ------------------------------------------------------------------

    async def _apply(self, record_id: str, output: ExtractionOutput) -> Optional[VerificationRecord]:
        applied: list[str] = []
        low_confidence = [
            name
            for name in TARGET_FIELDS
            if name in output.fields and output.fields[name].confidence < self.min_confidence
        ]

        def mutate(record: VerificationRecord) -> None:
            applied.clear()
            for name in TARGET_FIELDS:
                candidate = output.fields.get(name)
                if candidate is None or candidate.confidence < self.min_confidence:
                    continue
                value: Optional[str] = candidate.value
                if name == "payer_name":
                    value = self.directory.canonical(candidate.value)
                    if value is None:
                        logger.info(
                            "Record {id}: extracted payer is not a known payer; not applied",
                            id=record.id,
                        )
                        continue
                setattr(record, name, value)
                record.result.data_sources[name] = "ocr"
                applied.append(name)

            record.result.extraction = ExtractionSection(
                fields={
                    name: ExtractedField(
                        value=candidate.value,
                        confidence_score=candidate.confidence,
                        source=output.provider,
                    )
                    for name, candidate in output.fields.items()
                },
                low_confidence_fields=low_confidence,
                needs_review=bool(low_confidence),
                provider=output.provider,
                completed_at=utcnow(),
                raw_summary=output.raw_summary,
            )
            record.result.error = None
            transition(record, S.OCR_NEEDS_REVIEW if low_confidence else S.OCR_COMPLETE)

        try:
            record = await self.store.update(record_id, mutate)
        except VerificationError as exc:
            logger.warning(
                "Extraction result for record {id} discarded: {err}",
                id=record_id,
                err=exc.message,
            )
            return None

        self.notify(record)
        self.record_audit(
            "OCR_PROCESSING_COMPLETED",
            record,
            {
                "status": record.status.value,
                "provider": output.provider,
                "fields_extracted": sorted(output.fields),
                "fields_applied": applied,
                "needs_review": bool(low_confidence),
                "confidence_summary": summarize_confidence(
                    [candidate.confidence for candidate in output.fields.values()]
                ),
            },
        )
        logger.info(
            "Extraction complete for record {id}: {status} ({n} fields applied)",
            id=record_id,
            status=record.status.value,
            n=len(applied),
        )
        return record

    # ------------------------------------------------------------------
    # Failure path
    # ------------------------------------------------------------------

    async def record_failure(self, record_id: str, code: str, message: str) -> Optional[VerificationRecord]:
        """Move the record to ``failed`` with *code*; repeated calls are no-ops."""
        current = await self.store.get(record_id)
        error = current.result.error
        if current.status == S.FAILED and error is not None and error.code == code:
            return current

        def mutate(record: VerificationRecord) -> None:
            record.result.error = FailureDetail(code=code, message=message)
            if record.status == S.PENDING:
                transition(record, S.IN_PROGRESS)
            if record.status != S.FAILED:
                transition(record, S.FAILED)

        try:
            record = await self.store.update(record_id, mutate)
        except VerificationError as exc:
            logger.warning(
                "Could not record extraction failure {code} for record {id}: {err}",
                code=code,
                id=record_id,
                err=exc.message,
            )
            return None

        logger.error("Extraction failed for record {id}: {code}", id=record_id, code=code)
        self.notify(record)
        self.record_audit("OCR_PROCESSING_FAILED", record, {"error_code": code})
        return record


def _code_of(exc: BaseException) -> str:
    return getattr(exc, "code", None) or UNKNOWN_ERROR
