"""Verification service — the operations exposed to callers.

The service checks preconditions, makes the synchronous part of each state
change through the record store, and hands long-running work to the
background task runner.  Every operation returns an
:class:`~insurance_verifier.schemas.operations.OperationResult`; failures
are raised as :class:`~insurance_verifier.core.errors.VerificationError`
subclasses carrying field/message pairs.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from loguru import logger

from insurance_verifier.billing.deductible import DeductibleStatus, DeductibleTracker
from insurance_verifier.billing.overrides import DeductibleOverrideManager
from insurance_verifier.core.errors import (
    AlreadyInProgress,
    BusinessRuleViolation,
    NotAuthorized,
    StateConflict,
    ValidationFailed,
)
from insurance_verifier.core.events import STATUS_TOPIC, safe_audit, safe_publish, status_payload
from insurance_verifier.core.payers import OTHER_PAYER
from insurance_verifier.core.state_machine import transition
from insurance_verifier.core.validation import validate_manual_fields
from insurance_verifier.pipelines.eligibility import can_retry_verification, enter_in_progress
from insurance_verifier.schemas.operations import ManualFields, OperationResult, OverrideFields
from insurance_verifier.schemas.record import VerificationRecord, VerificationStatus

if TYPE_CHECKING:
    from omegaconf import DictConfig

    from insurance_verifier.core.cache import CacheStore
    from insurance_verifier.core.events import AuditSink, Notifier
    from insurance_verifier.core.images import ImageStore
    from insurance_verifier.core.payers import PayerDirectory
    from insurance_verifier.core.store import RecordStore
    from insurance_verifier.core.tasks import TaskRunner
    from insurance_verifier.pipelines.eligibility import EligibilityPipeline
    from insurance_verifier.pipelines.extraction import ExtractionPipeline
    from insurance_verifier.providers.eligibility.registry import AdapterRegistry
    from insurance_verifier.providers.extraction.base import BaseExtractor

S = VerificationStatus

# A fresh card upload resets these back to pending.
_CARD_RESET_STATUSES = frozenset({S.OCR_COMPLETE, S.OCR_NEEDS_REVIEW, S.FAILED})

# Identifying fields are locked once a decision has been made.
_LOCKED_STATUSES = frozenset({S.VERIFIED, S.MANUAL_REVIEW, S.SELF_PAY})


class VerificationService:
    """Facade over the record store, both pipelines and the override manager."""

    def __init__(
        self,
        store: RecordStore,
        directory: PayerDirectory,
        extraction: ExtractionPipeline,
        eligibility: EligibilityPipeline,
        overrides: DeductibleOverrideManager,
        tracker: DeductibleTracker,
        runner: TaskRunner,
        notifier: Notifier,
        audit: AuditSink,
    ) -> None:
        self.store = store
        self.directory = directory
        self.extraction = extraction
        self.eligibility = eligibility
        self.overrides = overrides
        self.tracker = tracker
        self.runner = runner
        self.notifier = notifier
        self.audit = audit

    @classmethod
    def from_config(
        cls,
        cfg: DictConfig,
        *,
        store: Optional[RecordStore] = None,
        cache: Optional[CacheStore] = None,
        directory: Optional[PayerDirectory] = None,
        images: Optional[ImageStore] = None,
        extractor: Optional[BaseExtractor] = None,
        registry: Optional[AdapterRegistry] = None,
        notifier: Optional[Notifier] = None,
        audit: Optional[AuditSink] = None,
    ) -> VerificationService:
        """Wire the service from config; any collaborator may be supplied instead."""
        from insurance_verifier.core.cache import InMemoryCache
        from insurance_verifier.core.events import LoggingAuditSink, LoggingNotifier
        from insurance_verifier.core.images import LocalImageStore
        from insurance_verifier.core.payers import PayerDirectory
        from insurance_verifier.core.store import InMemoryRecordStore
        from insurance_verifier.core.tasks import TaskRunner
        from insurance_verifier.pipelines.eligibility import EligibilityPipeline
        from insurance_verifier.pipelines.extraction import ExtractionPipeline
        from insurance_verifier.providers.factory import create_adapter_registry, create_extractor

        store = store or InMemoryRecordStore()
        cache = cache or InMemoryCache(max_size=int(cfg.cache.max_size))
        directory = directory or PayerDirectory.from_csv(cfg.data.known_payers_csv)
        images = images or LocalImageStore(cfg.data.image_dir)
        extractor = extractor or create_extractor(cfg)
        registry = registry or create_adapter_registry(cfg, directory)
        notifier = notifier or LoggingNotifier()
        audit = audit or LoggingAuditSink()

        return cls(
            store=store,
            directory=directory,
            extraction=ExtractionPipeline(cfg, store, extractor, images, directory, notifier, audit),
            eligibility=EligibilityPipeline(cfg, store, registry, cache, directory, notifier, audit),
            overrides=DeductibleOverrideManager(
                store, audit, max_value=float(cfg.billing.max_monetary_value)
            ),
            tracker=DeductibleTracker(session_rate=float(cfg.billing.session_rate)),
            runner=TaskRunner(max_concurrency=int(cfg.worker.max_concurrency)),
            notifier=notifier,
            audit=audit,
        )

    async def shutdown(self, timeout: float = 30.0) -> None:
        await self.runner.shutdown(timeout=timeout)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, record_id: str, actor: Optional[str]) -> VerificationRecord:
        record = await self.store.get(record_id)
        if actor is not None and actor != record.case_id:
            logger.warning("Access to record {id} denied", id=record_id)
            raise NotAuthorized()
        return record

    def _notify(self, record: VerificationRecord) -> None:
        safe_publish(self.notifier, STATUS_TOPIC, status_payload(record))

    def _audit(self, action: str, record: VerificationRecord, details: dict[str, Any]) -> None:
        safe_audit(self.audit, action, record.id, {"case_id": record.case_id, **details})

    # ------------------------------------------------------------------
    # Record lifecycle
    # ------------------------------------------------------------------

    async def create_record(
        self,
        case_id: str,
        case_expires_at: Optional[datetime] = None,
    ) -> OperationResult:
        if not case_id or not case_id.strip():
            raise ValidationFailed("Case ID is required", field="case_id")
        record = await self.store.create(
            VerificationRecord(case_id=case_id.strip(), case_expires_at=case_expires_at)
        )
        logger.info("Verification record {id} created", id=record.id)
        return OperationResult(record=record)

    async def get_record(self, record_id: str, actor: Optional[str] = None) -> OperationResult:
        return OperationResult(record=await self._load(record_id, actor))

    async def attach_card_images(
        self,
        record_id: str,
        front: str,
        back: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> OperationResult:
        """Attach card image references; a previous extraction outcome is reset to pending."""
        await self._load(record_id, actor)
        if not front:
            raise ValidationFailed("Front card image is required", field="front_image")

        def mutate(record: VerificationRecord) -> None:
            if record.status == S.IN_PROGRESS:
                raise AlreadyInProgress()
            if record.status in _CARD_RESET_STATUSES:
                transition(record, S.PENDING)
            elif record.status != S.PENDING:
                raise StateConflict(
                    f"Card images cannot be replaced while verification is '{record.status.value}'",
                    field="status",
                )
            record.card_image_front = front
            record.card_image_back = back
            record.result.error = None

        record = await self.store.update(record_id, mutate)
        self._audit("INSURANCE_CARD_UPLOADED", record, {"has_back_image": back is not None})
        return OperationResult(record=record)

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    async def begin_extraction(self, record_id: str, actor: Optional[str] = None) -> OperationResult:
        """Start card extraction in the background.

        A record without a front image fails immediately with
        ``NO_FRONT_IMAGE``; no provider is called.
        """
        record = await self._load(record_id, actor)
        if record.is_expired():
            raise BusinessRuleViolation("Session has expired", field="case_id")
        if record.status == S.IN_PROGRESS:
            raise AlreadyInProgress()
        if record.status != S.PENDING:
            raise StateConflict(
                f"Extraction cannot start while verification is '{record.status.value}'",
                field="status",
            )

        if not record.card_image_front:
            failed = await self.extraction.record_failure(
                record_id, "NO_FRONT_IMAGE", "No front card image attached"
            )
            return OperationResult(record=failed or await self.store.get(record_id))

        def mutate(r: VerificationRecord) -> None:
            transition(r, S.IN_PROGRESS)
            r.result.error = None

        record = await self.store.update(record_id, mutate)
        self.runner.submit(f"extraction:{record_id}", self.extraction.run, record_id)
        self._notify(record)
        self._audit("OCR_PROCESSING_STARTED", record, {"has_back_image": bool(record.card_image_back)})
        return OperationResult(record=record)

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    async def begin_eligibility_verification(
        self,
        record_id: str,
        actor: Optional[str] = None,
    ) -> OperationResult:
        """Verify coverage, from cache when a result is fresh, else in the background."""
        record = await self._load(record_id, actor)

        # ── 1. Case still open ──────────────────────────────────────────
        if record.is_expired():
            raise BusinessRuleViolation("Session has expired", field="case_id")

        # ── 2. Required identifying fields ──────────────────────────────
        if not record.has_required_fields:
            raise ValidationFailed("Insurance must have member ID and payer name")

        # ── 3. Not already running ──────────────────────────────────────
        if record.status == S.IN_PROGRESS:
            raise AlreadyInProgress()
        if record.status == S.FAILED and not can_retry_verification(record):
            raise BusinessRuleViolation("Verification cannot be retried", field="status")

        # ── 4. Cache ────────────────────────────────────────────────────
        cached = self.eligibility.cached_result(record_id)
        if cached is not None:
            record = await self.eligibility.apply_cached(record_id, cached)
            return OperationResult(record=record, cached=True)

        # ── 5. Enqueue ──────────────────────────────────────────────────
        def mutate(r: VerificationRecord) -> None:
            if r.status == S.IN_PROGRESS:
                raise AlreadyInProgress()
            if r.status == S.MANUAL_REVIEW:
                # Reviewer re-trigger starts a fresh attempt budget.
                r.retry_attempts = 0
            enter_in_progress(r)

        record = await self.store.update(record_id, mutate)
        self.runner.submit(f"eligibility:{record_id}", self.eligibility.run, record_id)
        self._notify(record)
        self._audit(
            "ELIGIBILITY_VERIFICATION_INITIATED",
            record,
            {"payer_name": record.payer_name, "verification_status": record.status.value},
        )
        return OperationResult(record=record)

    # ------------------------------------------------------------------
    # Manual entry
    # ------------------------------------------------------------------

    async def submit_manual_fields(
        self,
        record_id: str,
        fields: ManualFields,
        actor: Optional[str] = None,
    ) -> OperationResult:
        """Save manually entered fields; complete when payer and member ID are present."""
        await self._load(record_id, actor)

        errors = validate_manual_fields(fields, self.directory)
        if errors:
            raise ValidationFailed("Insurance details are invalid", errors=errors)

        values: dict[str, Any] = {}
        for name, value in fields.model_dump().items():
            if isinstance(value, str):
                value = value.strip() or None
            if value is not None:
                values[name] = value
        if not values:
            raise ValidationFailed("At least one insurance field is required")

        payer = values.get("payer_name")
        if payer is not None:
            values["payer_name"] = (
                OTHER_PAYER if payer.lower() == OTHER_PAYER.lower() else self.directory.canonical(payer)
            )

        previous_status: list[VerificationStatus] = []

        def mutate(record: VerificationRecord) -> None:
            previous_status.append(record.status)
            if record.status == S.IN_PROGRESS:
                raise AlreadyInProgress()
            if record.status in _LOCKED_STATUSES:
                raise StateConflict(
                    f"Insurance details cannot be edited while verification is '{record.status.value}'",
                    field="status",
                )
            for name, value in values.items():
                setattr(record, name, value)
                record.result.data_sources[name] = "manual"

            if record.status == S.FAILED:
                transition(record, S.MANUAL_ENTRY)
            transition(record, S.MANUAL_ENTRY_COMPLETE if record.has_required_fields else S.MANUAL_ENTRY)

        record = await self.store.update(record_id, mutate)
        if record.status != previous_status[0]:
            self._notify(record)
        self._audit(
            "INSURANCE_MANUAL_ENTRY",
            record,
            {
                "fields_updated": sorted(values),
                "ocr_pre_populated": record.result.extraction is not None,
                "status": record.status.value,
            },
        )
        return OperationResult(record=record)

    # ------------------------------------------------------------------
    # Self-pay
    # ------------------------------------------------------------------

    async def select_self_pay(self, record_id: str, actor: Optional[str] = None) -> OperationResult:
        record = await self._load(record_id, actor)
        if record.status == S.SELF_PAY:
            return OperationResult(record=record)

        def mutate(r: VerificationRecord) -> None:
            if r.status == S.IN_PROGRESS:
                raise AlreadyInProgress()
            transition(r, S.SELF_PAY)

        record = await self.store.update(record_id, mutate)
        self._notify(record)
        self._audit("INSURANCE_SELF_PAY_SELECTED", record, {"status": record.status.value})
        return OperationResult(record=record)

    async def switch_to_insurance(self, record_id: str, actor: Optional[str] = None) -> OperationResult:
        """Leave self-pay: back to ``pending`` with identifying data, else ``failed``."""
        await self._load(record_id, actor)

        def mutate(r: VerificationRecord) -> None:
            if r.status != S.SELF_PAY:
                raise StateConflict("Verification is not self-pay", field="status")
            transition(r, S.PENDING if r.has_identifying_data else S.FAILED)

        record = await self.store.update(record_id, mutate)
        self._notify(record)
        self._audit("INSURANCE_SWITCHED_FROM_SELF_PAY", record, {"status": record.status.value})
        return OperationResult(record=record)

    # ------------------------------------------------------------------
    # Billing
    # ------------------------------------------------------------------

    async def apply_override(
        self,
        record_id: str,
        fields: OverrideFields,
        reason: str,
        actor: Optional[str] = None,
    ) -> OperationResult:
        await self._load(record_id, actor)
        record = await self.overrides.apply(record_id, fields, reason, actor=actor)
        return OperationResult(record=record)

    async def deductible_status(self, record_id: str, actor: Optional[str] = None) -> DeductibleStatus:
        record = await self._load(record_id, actor)
        return self.tracker.current_status(record)
