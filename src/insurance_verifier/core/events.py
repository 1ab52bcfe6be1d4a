"""Status-change notifications and audit events.

Both channels are best-effort: a failing notifier or audit sink is logged
and never aborts the operation that produced the event.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from loguru import logger

from insurance_verifier.schemas.record import VerificationRecord, utcnow

STATUS_TOPIC = "insurance_status_changed"
RESOURCE_TYPE = "Insurance"


class Notifier(Protocol):
    def publish(self, topic: str, payload: dict[str, Any]) -> None: ...


class AuditSink(Protocol):
    def record(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        details: dict[str, Any],
    ) -> None: ...


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


class LoggingNotifier:
    """Writes notifications to the log; the default when nothing is wired in."""

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        logger.info("Notify {topic}: {payload}", topic=topic, payload=payload)


class LoggingAuditSink:
    def record(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        details: dict[str, Any],
    ) -> None:
        logger.info(
            "Audit {action} {rtype}/{rid}: {details}",
            action=action,
            rtype=resource_type,
            rid=resource_id,
            details=details,
        )


@dataclass
class AuditEvent:
    action: str
    resource_type: str
    resource_id: str
    details: dict[str, Any] = field(default_factory=dict)


class InMemoryNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        self.events.append((topic, payload))


class InMemoryAuditSink:
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def record(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        details: dict[str, Any],
    ) -> None:
        self.events.append(AuditEvent(action, resource_type, resource_id, dict(details)))

    def actions(self) -> list[str]:
        return [event.action for event in self.events]


# ---------------------------------------------------------------------------
# Best-effort helpers
# ---------------------------------------------------------------------------


def status_payload(
    record: VerificationRecord,
    *,
    progress: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Notification body for a status change; carries no identifying fields."""
    payload: dict[str, Any] = {
        "record_id": record.id,
        "case_id": record.case_id,
        "status": record.status.value,
        "version": record.version,
        "timestamp": utcnow().isoformat(),
    }
    if progress is not None:
        payload["progress"] = progress
    return payload


def safe_publish(notifier: Notifier, topic: str, payload: dict[str, Any]) -> None:
    try:
        notifier.publish(topic, payload)
    except Exception as exc:
        logger.warning("Notification on {topic} failed: {err}", topic=topic, err=exc)


def safe_audit(
    sink: AuditSink,
    action: str,
    resource_id: str,
    details: dict[str, Any],
    resource_type: str = RESOURCE_TYPE,
) -> None:
    try:
        sink.record(action, resource_type, resource_id, details)
    except Exception as exc:
        logger.warning("Audit event {action} failed: {err}", action=action, err=exc)
