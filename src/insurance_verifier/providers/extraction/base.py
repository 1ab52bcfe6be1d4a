"""Contract shared by document field extractors."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class FieldCandidate:
    """A value read off a card together with the provider's confidence (0-100)."""

    value: str
    confidence: float


@dataclass
class ExtractionOutput:
    provider: str
    fields: dict[str, FieldCandidate] = field(default_factory=dict)
    raw_summary: dict[str, Any] = field(default_factory=dict)


class BaseExtractor(ABC):
    """Turns card images into candidate field values.

    Implementations are synchronous (they wrap blocking SDKs); the extraction
    pipeline runs them in a worker thread.  Provider SDK errors must be
    translated into :mod:`insurance_verifier.core.errors` provider errors.
    """

    name: str = "base"

    @abstractmethod
    def extract(self, front: bytes, back: Optional[bytes] = None) -> ExtractionOutput:
        """Extract target fields from the front and, if given, back image."""
        ...
