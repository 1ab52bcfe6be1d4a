"""Abstract base class shared by the background verification pipelines."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Optional

from insurance_verifier.core.events import STATUS_TOPIC, safe_audit, safe_publish, status_payload

if TYPE_CHECKING:
    from omegaconf import DictConfig

    from insurance_verifier.core.events import AuditSink, Notifier
    from insurance_verifier.core.store import RecordStore
    from insurance_verifier.schemas.record import VerificationRecord


class BasePipeline(ABC):
    """Contract for pipelines that run one record per background task.

    Subclasses implement :meth:`run`, which is handed to the task runner
    after the caller has moved the record to ``in_progress``.  Outcomes are
    communicated through the record's status, a status notification and an
    audit event; :meth:`run` never raises for an expected failure.
    """

    def __init__(
        self,
        cfg: DictConfig,
        store: RecordStore,
        notifier: Notifier,
        audit: AuditSink,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.notifier = notifier
        self.audit = audit

    @abstractmethod
    async def run(self, record_id: str) -> Optional[VerificationRecord]:
        """Process one record and return its settled state.

        Parameters
        ----------
        record_id:
            The record to process.

        Returns
        -------
        VerificationRecord | None
            The stored record after the pipeline's final write, or ``None``
            when the result was discarded.
        """
        ...

    # ------------------------------------------------------------------
    # Best-effort side channels
    # ------------------------------------------------------------------

    def notify(self, record: VerificationRecord, progress: Optional[dict[str, Any]] = None) -> None:
        safe_publish(self.notifier, STATUS_TOPIC, status_payload(record, progress=progress))

    def record_audit(self, action: str, record: VerificationRecord, details: dict[str, Any]) -> None:
        safe_audit(self.audit, action, record.id, {"case_id": record.case_id, **details})
