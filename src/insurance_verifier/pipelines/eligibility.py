"""Eligibility verification pipeline.

One job per record, run after the record has moved to ``in_progress``:

1. progress *started* (0%), resolve the adapter for the payer
2. progress *api_called* (33%), call the adapter under the job timeout
3. progress *parsing* (66%), map the provider status onto the record
4. cache the result, progress *complete* (100%), notify and audit

An exception from step 2 marks the record ``failed`` with ``JOB_FAILED``
and is retried with polynomial backoff; once the attempts are used up
the record is escalated to ``manual_review``.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Optional

from loguru import logger

from insurance_verifier.core.cache import eligibility_cache_key
from insurance_verifier.core.errors import (
    ProviderTimeoutError,
    RecordNotFound,
    StateConflict,
    VerificationError,
)
from insurance_verifier.core.retry import RetryExhausted, RetryPolicy, polynomial_backoff, run_with_policies
from insurance_verifier.core.state_machine import transition
from insurance_verifier.pipelines.base import BasePipeline
from insurance_verifier.providers.eligibility.base import EligibilityRequest
from insurance_verifier.schemas.record import (
    EligibilityError,
    EligibilityResult,
    RetryHistoryEntry,
    VerificationRecord,
    VerificationStatus,
)

if TYPE_CHECKING:
    from omegaconf import DictConfig

    from insurance_verifier.core.cache import CacheStore
    from insurance_verifier.core.events import AuditSink, Notifier
    from insurance_verifier.core.payers import PayerDirectory
    from insurance_verifier.core.store import RecordStore
    from insurance_verifier.providers.eligibility.registry import AdapterRegistry

S = VerificationStatus

MAX_RETRY_ATTEMPTS = 3

PROGRESS_STAGES: dict[str, tuple[int, str]] = {
    "started": (0, "Contacting insurance company..."),
    "api_called": (33, "Checking coverage..."),
    "parsing": (66, "Processing response..."),
    "complete": (100, "Verification complete"),
}

STATUS_MAP = {
    "VERIFIED": S.VERIFIED,
    "FAILED": S.FAILED,
    "MANUAL_REVIEW": S.MANUAL_REVIEW,
}

AUDIT_ACTIONS = {
    "VERIFIED": "ELIGIBILITY_VERIFICATION_COMPLETED",
    "MANUAL_REVIEW": "ELIGIBILITY_VERIFICATION_MANUAL_REVIEW",
}

HIGH_SEVERITY_CODES = frozenset(
    {"COVERAGE_INACTIVE", "COVERAGE_TERMINATED", "SERVICE_NOT_COVERED", "OUT_OF_NETWORK", "PAYER_NOT_SUPPORTED"}
)
LOW_SEVERITY_CODES = frozenset({"NETWORK_ERROR", "TIMEOUT", "SERVICE_UNAVAILABLE", "RATE_LIMITED"})

# Statuses that are confirmed as complete manual entry before verification starts.
_AUTO_CONFIRM = frozenset({S.PENDING, S.OCR_COMPLETE, S.OCR_NEEDS_REVIEW, S.MANUAL_ENTRY})


# ---------------------------------------------------------------------------
# Record predicates
# ---------------------------------------------------------------------------

def error_severity(record: VerificationRecord) -> str:
    """``low`` / ``medium`` / ``high`` severity of the record's eligibility error."""
    if record.status in (S.PENDING, S.IN_PROGRESS):
        return "low"
    eligibility = record.result.eligibility
    if eligibility is None or eligibility.error is None:
        return "medium"
    code = eligibility.error.code
    if code in HIGH_SEVERITY_CODES:
        return "high"
    if code in LOW_SEVERITY_CODES:
        return "low"
    return "medium"


def can_retry_verification(record: VerificationRecord) -> bool:
    if record.status in (S.VERIFIED, S.SELF_PAY):
        return False
    if record.retry_attempts >= MAX_RETRY_ATTEMPTS:
        return False
    eligibility = record.result.eligibility
    if eligibility is None or eligibility.error is None:
        return True
    if not eligibility.error.retryable:
        return False
    return error_severity(record) != "high"


def enter_in_progress(record: VerificationRecord) -> None:
    """Move *record* to ``in_progress``, confirming manual entry on the way when needed."""
    if record.status in _AUTO_CONFIRM:
        transition(record, S.MANUAL_ENTRY_COMPLETE)
    transition(record, S.IN_PROGRESS)


def map_status(provider_status: Optional[str]) -> VerificationStatus:
    return STATUS_MAP.get((provider_status or "").upper(), S.FAILED)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class EligibilityPipeline(BasePipeline):
    def __init__(
        self,
        cfg: DictConfig,
        store: RecordStore,
        registry: AdapterRegistry,
        cache: CacheStore,
        directory: PayerDirectory,
        notifier: Notifier,
        audit: AuditSink,
    ) -> None:
        super().__init__(cfg, store, notifier, audit)
        self.registry = registry
        self.cache = cache
        self.directory = directory

        elig = cfg.eligibility
        self.job_timeout: float = float(elig.job_timeout_seconds)
        self.cache_ttl: float = float(elig.cache_ttl_seconds)
        self.policy = RetryPolicy(
            name="eligibility_job",
            max_attempts=int(elig.max_attempts),
            backoff=polynomial_backoff(float(elig.backoff_scale)),
            is_retryable=lambda exc: isinstance(exc, Exception)
            and not isinstance(exc, (StateConflict, RecordNotFound)),
        )

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def cached_result(self, record_id: str) -> Optional[EligibilityResult]:
        raw = self.cache.get(eligibility_cache_key(record_id))
        if raw is None:
            return None
        try:
            return EligibilityResult.model_validate(raw)
        except ValueError as exc:
            logger.warning("Ignoring unreadable cached eligibility for {id}: {err}", id=record_id, err=exc)
            return None

    async def apply_cached(self, record_id: str, result: EligibilityResult) -> VerificationRecord:
        """Apply a cached result without calling a provider.

        A record already settled at the status the result maps to is
        returned as stored; otherwise it moves through ``in_progress``.
        """
        target = map_status(result.status)
        record = await self.store.get(record_id)

        if record.status != target:

            def mutate(r: VerificationRecord) -> None:
                if r.status == S.IN_PROGRESS:
                    raise StateConflict("Verification already in progress", field="status")
                enter_in_progress(r)
                r.result.eligibility = result
                transition(r, target)

            record = await self.store.update(record_id, mutate)
            self.notify(record)

        self.record_audit(
            "ELIGIBILITY_CACHE_HIT",
            record,
            {"verification_status": record.status.value, "payer_name": record.payer_name},
        )
        logger.info("Eligibility for record {id} served from cache", id=record_id)
        return record

    # ------------------------------------------------------------------
    # Job
    # ------------------------------------------------------------------

    async def run(self, record_id: str) -> Optional[VerificationRecord]:
        try:
            return await run_with_policies(
                lambda: self._attempt(record_id),
                [self.policy],
                label=f"eligibility[{record_id}]",
            )
        except RetryExhausted as exc:
            return await self._escalate(record_id, exc)
        except (StateConflict, RecordNotFound) as exc:
            logger.warning(
                "Eligibility job for record {id} stopped: {err}",
                id=record_id,
                err=exc.message,
            )
            return None

    async def _attempt(self, record_id: str) -> VerificationRecord:
        record = await self.store.get(record_id)
        if record.status == S.FAILED:
            # Retry after a failed attempt re-enters in_progress.
            record = await self.store.update(record_id, lambda r: transition(r, S.IN_PROGRESS))
        elif record.status != S.IN_PROGRESS:
            raise StateConflict(
                f"Record is '{record.status.value}', not in progress",
                field="status",
            )

        self._progress(record, "started")
        adapter = self.registry.resolve(record.payer_name)
        request = EligibilityRequest(
            payer_name=record.payer_name or "",
            member_id=record.member_id or "",
            group_number=record.group_number,
            subscriber_name=record.subscriber_name,
            subscriber_dob=record.subscriber_dob,
            payer_id=self.directory.payer_id_for(record.payer_name),
        )

        self._progress(record, "api_called")
        try:
            result = await self._call_adapter(adapter.verify, request)
        except Exception as exc:
            await self._record_attempt_failure(record_id, exc)
            raise

        self._progress(record, "parsing")
        target = map_status(result.status)

        def mutate(r: VerificationRecord) -> None:
            r.result.eligibility = result
            transition(r, target)

        record = await self.store.update(record_id, mutate)
        self.cache.set(eligibility_cache_key(record_id), result.model_dump(mode="json"), self.cache_ttl)

        self._progress(record, "complete")
        self.notify(record)
        self.record_audit(
            AUDIT_ACTIONS.get(result.status, "ELIGIBILITY_VERIFICATION_FAILED"),
            record,
            {
                "status": result.status,
                "eligible": result.eligible,
                "error_category": result.error.category if result.error else None,
                "provider_reference_id": result.provider_reference_id,
                "adapter": adapter.name,
            },
        )
        logger.info(
            "Eligibility for record {id}: {status}",
            id=record_id,
            status=record.status.value,
        )
        return record

    async def _call_adapter(self, verify: Any, request: EligibilityRequest) -> EligibilityResult:
        try:
            return await asyncio.wait_for(asyncio.to_thread(verify, request), timeout=self.job_timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderTimeoutError(
                f"Eligibility job timed out after {self.job_timeout:.0f} seconds"
            ) from exc

    async def _record_attempt_failure(self, record_id: str, exc: BaseException) -> None:
        error_code = getattr(exc, "code", None) or "JOB_FAILED"
        logger.error(
            "Eligibility attempt for record {id} failed ({err_type}: {err})",
            id=record_id,
            err_type=type(exc).__name__,
            err=exc,
        )

        def mutate(record: VerificationRecord) -> None:
            record.retry_attempts += 1
            record.result.retry_history.append(
                RetryHistoryEntry(attempt_number=record.retry_attempts, error_code=error_code)
            )
            record.result.eligibility = EligibilityResult(
                status="FAILED",
                eligible=False,
                error=EligibilityError(
                    code="JOB_FAILED",
                    category="unknown",
                    message="Verification processing error",
                    retryable=True,
                ),
            )
            transition(record, S.FAILED)

        try:
            record = await self.store.update(record_id, mutate)
        except VerificationError as err:
            logger.warning("Could not record failed attempt for {id}: {err}", id=record_id, err=err.message)
            return
        self.notify(record)

    async def _escalate(self, record_id: str, exc: RetryExhausted) -> Optional[VerificationRecord]:
        def mutate(record: VerificationRecord) -> None:
            record.result.eligibility = EligibilityResult(
                status="MANUAL_REVIEW",
                eligible=None,
                error=EligibilityError(
                    code="MAX_RETRIES_EXCEEDED",
                    category="unknown",
                    message="Verification failed after multiple attempts - requires manual review",
                    retryable=False,
                ),
                retry_count=exc.attempts,
            )
            transition(record, S.MANUAL_REVIEW)

        try:
            record = await self.store.update(record_id, mutate)
        except VerificationError as err:
            logger.warning("Could not escalate record {id}: {err}", id=record_id, err=err.message)
            return None

        self.notify(record)
        self.record_audit(
            "ELIGIBILITY_VERIFICATION_ESCALATED",
            record,
            {
                "reason": "max_retries_exceeded",
                "attempts": exc.attempts,
                "error_type": type(exc.last_exception).__name__,
            },
        )
        return record

    def _progress(self, record: VerificationRecord, stage: str) -> None:
        percentage, message = PROGRESS_STAGES[stage]
        self.notify(record, progress={"stage": stage, "percentage": percentage, "message": message})
