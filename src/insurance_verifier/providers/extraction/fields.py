"""Label matching: map form keys found on a card to target fields.

Each form key is scored against every synonym of every target field.  An
exact (case-insensitive) match beats containment, and a longer contained
label beats a shorter one, so ``"Group ID"`` goes to ``group_number``
rather than to ``member_id`` via the bare ``"ID"`` synonym.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Optional

from insurance_verifier.providers.extraction.base import FieldCandidate
from insurance_verifier.schemas.record import TARGET_FIELDS

FIELD_LABELS: dict[str, tuple[str, ...]] = {
    "member_id": (
        "Member ID", "ID#", "Subscriber ID", "Member Number",
        "ID Number", "Member #", "ID", "Identification Number",
    ),
    "group_number": (
        "Group", "Group#", "Group No", "Group Number", "Grp",
        "Group ID", "GRP#", "Plan Group",
    ),
    "payer_name": (
        "Plan Name", "Insurance Company", "Carrier", "Payer",
        "Health Plan", "Plan", "Insurance Plan",
    ),
    "subscriber_name": (
        "Name", "Member Name", "Subscriber", "Subscriber Name",
        "Primary Subscriber", "Member",
    ),
}

KNOWN_PAYER_PATTERN = re.compile(
    r"\b(Aetna|UnitedHealthcare|UHC|BCBS|Blue Cross|Blue Shield|Cigna|Humana|Kaiser|Anthem|Molina)\b",
    re.IGNORECASE,
)

PAYER_PATTERN_DEFAULT_CONFIDENCE = 80.0
PAYER_HEURISTIC_DEFAULT_CONFIDENCE = 70.0
PAYER_HEURISTIC_DISCOUNT = 0.8
PAYER_TOP_LINES = 3

_EXACT_BONUS = 1000


@dataclass(frozen=True)
class KeyValue:
    key: str
    value: str
    confidence: float


@dataclass(frozen=True)
class TextLine:
    text: str
    confidence: Optional[float] = None
    top: float = 0.0


@dataclass
class PageText:
    """Form pairs and text lines recovered from one card side."""

    key_values: list[KeyValue] = field(default_factory=list)
    lines: list[TextLine] = field(default_factory=list)


def _normalise(text: str) -> str:
    return " ".join(text.lower().replace(":", " ").split())


def label_score(key: str, label: str) -> int:
    """Score how closely *key* matches *label*; 0 means no match."""
    key_n, label_n = _normalise(key), _normalise(label)
    if not key_n or not label_n:
        return 0
    if key_n == label_n:
        return _EXACT_BONUS + len(label_n)
    # Whole-word containment only, so "ID" does not match "Provider".
    if re.search(rf"(?<!\w){re.escape(label_n)}(?!\w)", key_n):
        return len(label_n)
    return 0


def best_field_for(key: str) -> Optional[tuple[str, int]]:
    """Return ``(field, score)`` for the target field whose synonym matches *key* best."""
    best: Optional[tuple[str, int]] = None
    for field_name in TARGET_FIELDS:
        score = max(label_score(key, label) for label in FIELD_LABELS[field_name])
        if score and (best is None or score > best[1]):
            best = (field_name, score)
    return best


def _match_page(page: PageText) -> dict[str, FieldCandidate]:
    chosen: dict[str, tuple[int, FieldCandidate]] = {}
    for kv in page.key_values:
        value = kv.value.strip()
        if not value:
            continue
        match = best_field_for(kv.key)
        if match is None:
            continue
        field_name, score = match
        current = chosen.get(field_name)
        if current is None or score > current[0]:
            chosen[field_name] = (score, FieldCandidate(value=value, confidence=kv.confidence))
    return {name: candidate for name, (_, candidate) in chosen.items()}


def payer_from_lines(lines: Sequence[TextLine]) -> Optional[FieldCandidate]:
    """Guess the payer from the topmost text lines of a card.

    A line naming a known insurer wins; otherwise the first line longer than
    three characters is used with its confidence discounted.
    """
    top_lines = sorted(lines, key=lambda line: line.top)[:PAYER_TOP_LINES]

    for line in top_lines:
        text = line.text.strip()
        if text and KNOWN_PAYER_PATTERN.search(text):
            confidence = line.confidence if line.confidence is not None else PAYER_PATTERN_DEFAULT_CONFIDENCE
            return FieldCandidate(value=text, confidence=confidence)

    for line in top_lines:
        text = line.text.strip()
        if len(text) > 3:
            confidence = line.confidence if line.confidence is not None else PAYER_HEURISTIC_DEFAULT_CONFIDENCE
            return FieldCandidate(value=text, confidence=confidence * PAYER_HEURISTIC_DISCOUNT)
    return None


def match_fields(front: PageText, back: Optional[PageText] = None) -> dict[str, FieldCandidate]:
    """Resolve every target field, preferring the front of the card."""
    found = _match_page(front)
    if back is not None:
        for name, candidate in _match_page(back).items():
            found.setdefault(name, candidate)

    if "payer_name" not in found:
        payer = payer_from_lines(front.lines)
        if payer is not None:
            found["payer_name"] = payer
    return found
