"""Verification status lifecycle.

Every status change goes through :func:`transition`, which checks the
declared edge table and any guard on the target state.  The record store
replays the recorded steps on write, so a status assigned any other way is
rejected.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable

from insurance_verifier.core.errors import AlreadyInProgress, StateConflict
from insurance_verifier.schemas.record import VerificationRecord, VerificationStatus, utcnow

S = VerificationStatus

TRANSITIONS: dict[VerificationStatus, frozenset[VerificationStatus]] = {
    S.PENDING: frozenset(
        {S.IN_PROGRESS, S.MANUAL_ENTRY, S.MANUAL_ENTRY_COMPLETE, S.SELF_PAY}
    ),
    S.IN_PROGRESS: frozenset(
        {S.OCR_COMPLETE, S.OCR_NEEDS_REVIEW, S.VERIFIED, S.FAILED, S.MANUAL_REVIEW}
    ),
    S.OCR_COMPLETE: frozenset({S.MANUAL_ENTRY_COMPLETE, S.MANUAL_ENTRY, S.PENDING, S.SELF_PAY}),
    S.OCR_NEEDS_REVIEW: frozenset(
        {S.MANUAL_ENTRY_COMPLETE, S.MANUAL_ENTRY, S.PENDING, S.SELF_PAY}
    ),
    S.MANUAL_ENTRY: frozenset({S.MANUAL_ENTRY_COMPLETE, S.SELF_PAY}),
    S.MANUAL_ENTRY_COMPLETE: frozenset({S.IN_PROGRESS, S.MANUAL_ENTRY, S.SELF_PAY}),
    S.VERIFIED: frozenset({S.SELF_PAY}),
    S.FAILED: frozenset({S.IN_PROGRESS, S.MANUAL_REVIEW, S.MANUAL_ENTRY, S.PENDING, S.SELF_PAY}),
    S.MANUAL_REVIEW: frozenset({S.IN_PROGRESS, S.SELF_PAY}),
    S.SELF_PAY: frozenset({S.PENDING, S.FAILED}),
}

# Re-submitting manual fields keeps these statuses without an error.
IDEMPOTENT_STATUSES = frozenset({S.MANUAL_ENTRY, S.MANUAL_ENTRY_COMPLETE})

# verified_at is stamped whenever one of these is reached.
SETTLED_STATUSES = frozenset({S.VERIFIED, S.FAILED, S.SELF_PAY})

# No further pipeline action happens automatically from these.
AUTOMATION_TERMINAL_STATUSES = frozenset({S.VERIFIED, S.SELF_PAY, S.MANUAL_REVIEW})


def _requires_policy_fields(record: VerificationRecord) -> str | None:
    if not record.has_required_fields:
        return "Payer name and member ID are required"
    return None


def _requires_identifying_data(record: VerificationRecord) -> str | None:
    if not record.has_identifying_data:
        return "Insurance information is required to return to verification"
    return None


def _requires_no_identifying_data(record: VerificationRecord) -> str | None:
    if record.has_identifying_data:
        return "Insurance information is present; return to pending instead"
    return None


# (source, target) -> guard returning an error message when the edge is not allowed.
GUARDS: dict[tuple[VerificationStatus, VerificationStatus], Callable[[VerificationRecord], str | None]] = {
    (S.PENDING, S.MANUAL_ENTRY_COMPLETE): _requires_policy_fields,
    (S.OCR_COMPLETE, S.MANUAL_ENTRY_COMPLETE): _requires_policy_fields,
    (S.OCR_NEEDS_REVIEW, S.MANUAL_ENTRY_COMPLETE): _requires_policy_fields,
    (S.MANUAL_ENTRY, S.MANUAL_ENTRY_COMPLETE): _requires_policy_fields,
    (S.SELF_PAY, S.PENDING): _requires_identifying_data,
    (S.SELF_PAY, S.FAILED): _requires_no_identifying_data,
}


def can_transition(source: VerificationStatus, target: VerificationStatus) -> bool:
    """Return ``True`` when ``source -> target`` is a declared edge."""
    return target in TRANSITIONS.get(source, frozenset())


def assert_edge(source: VerificationStatus, target: VerificationStatus) -> None:
    """Raise unless ``source -> target`` is a declared edge."""
    if source == target == S.IN_PROGRESS:
        raise AlreadyInProgress()
    if not can_transition(source, target):
        raise StateConflict(
            f"Cannot move verification from '{source.value}' to '{target.value}'",
            field="status",
        )


def transition(record: VerificationRecord, target: VerificationStatus) -> VerificationRecord:
    """Move *record* to *target* in place, enforcing edges and guards.

    Re-entering :data:`IDEMPOTENT_STATUSES` is a no-op.  The step is recorded
    on the record so the store can replay it when the write is committed.
    ``verified_at`` is stamped on settled statuses and cleared on ``pending``.
    """
    source = record.status
    if source == target and target in IDEMPOTENT_STATUSES:
        return record

    assert_edge(source, target)

    guard = GUARDS.get((source, target))
    if guard is not None:
        problem = guard(record)
        if problem:
            raise StateConflict(problem, field="status")

    record.status = target
    record._transitions.append(target)
    if target in SETTLED_STATUSES:
        record.verified_at = utcnow()
    elif target == S.PENDING:
        record.verified_at = None
    return record


def replay(source: VerificationStatus, steps: Iterable[VerificationStatus], final: VerificationStatus) -> None:
    """Check that *steps* walk declared edges from *source* and end at *final*."""
    current = source
    for step in steps:
        assert_edge(current, step)
        current = step
    if current != final:
        raise StateConflict(
            f"Status changed to '{final.value}' without a declared transition",
            field="status",
        )


def reachable_from(start: VerificationStatus = S.PENDING) -> set[VerificationStatus]:
    """All statuses reachable from *start* through declared edges."""
    seen = {start}
    queue = deque([start])
    while queue:
        for nxt in TRANSITIONS.get(queue.popleft(), frozenset()):
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return seen
