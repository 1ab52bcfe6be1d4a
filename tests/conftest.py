"""Shared fixtures for the insurance verifier test suite."""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Optional

import pytest
import pytest_asyncio
from omegaconf import OmegaConf

from insurance_verifier.core.cache import InMemoryCache
from insurance_verifier.core.events import InMemoryAuditSink, InMemoryNotifier
from insurance_verifier.core.images import InMemoryImageStore
from insurance_verifier.core.payers import PayerDirectory
from insurance_verifier.core.store import InMemoryRecordStore
from insurance_verifier.providers.eligibility.base import BaseEligibilityAdapter, EligibilityRequest
from insurance_verifier.providers.eligibility.registry import AdapterRegistry
from insurance_verifier.providers.extraction.base import BaseExtractor, ExtractionOutput, FieldCandidate
from insurance_verifier.schemas.record import EligibilityResult, VerificationRecord
from insurance_verifier.service import VerificationService

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeExtractor(BaseExtractor):
    """Returns ``fields`` after raising each queued error once, in order."""

    name = "fake"

    def __init__(self) -> None:
        self.fields: dict[str, FieldCandidate] = {}
        self.errors: list[Exception] = []
        self.always_raise: Optional[Exception] = None
        self.calls = 0

    def extract(self, front: bytes, back: Optional[bytes] = None) -> ExtractionOutput:
        self.calls += 1
        if self.always_raise is not None:
            raise self.always_raise
        if self.errors:
            raise self.errors.pop(0)
        return ExtractionOutput(
            provider=self.name,
            fields=dict(self.fields),
            raw_summary={"images": 2 if back else 1},
        )


class FakeAdapter(BaseEligibilityAdapter):
    """Returns ``result`` after raising each queued error once, in order."""

    name = "fake"

    def __init__(self) -> None:
        self.result = EligibilityResult(status="VERIFIED", eligible=True, provider_reference_id="ref-1")
        self.errors: list[Exception] = []
        self.always_raise: Optional[Exception] = None
        self.requests: list[EligibilityRequest] = []

    def verify(self, request: EligibilityRequest) -> EligibilityResult:
        self.requests.append(request)
        if self.always_raise is not None:
            raise self.always_raise
        if self.errors:
            raise self.errors.pop(0)
        return self.result


# ---------------------------------------------------------------------------
# Payer directory
# ---------------------------------------------------------------------------


@pytest.fixture()
def payers_csv(tmp_path: Path) -> str:
    """Write a small known-payers CSV and return its path."""
    csv_file = tmp_path / "known_payers.csv"
    rows = [
        ["name", "payer_id", "adapter", "aliases"],
        ["Aetna", "60054", "edi", "Aetna Health|Aetna Inc"],
        ["UnitedHealthcare", "87726", "edi", "UHC|United Healthcare"],
        ["Cigna", "62308", "", "Cigna Healthcare"],
        ["Regional Plan", "", "regional", ""],
    ]
    with csv_file.open("w", newline="") as f:
        writer = csv.writer(f)
        writer.writerows(rows)
    return str(csv_file)


@pytest.fixture()
def directory(payers_csv: str) -> PayerDirectory:
    return PayerDirectory.from_csv(payers_csv)


# ---------------------------------------------------------------------------
# Hydra config fixture (test overrides)
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_cfg(tmp_path: Path, payers_csv: str) -> Any:
    """Return a complete OmegaConf DictConfig with zero retry delays."""
    cfg_dict = {
        "extraction": {
            "primary": "vision",
            "fallback": None,
            "min_confidence": 85.0,
            "timeout_seconds": 5,
            "retry": {
                "throttle_attempts": 5,
                "throttle_wait_seconds": 0,
                "unknown_attempts": 3,
                "unknown_wait_seconds": 0,
            },
        },
        "eligibility": {
            "job_timeout_seconds": 5,
            "cache_ttl_seconds": 86400,
            "max_attempts": 3,
            "backoff_scale": 0.0,
            "default_adapter": "edi",
            "payer_adapters": {},
        },
        "cache": {"max_size": 100},
        "worker": {"max_concurrency": 4},
        "billing": {"max_monetary_value": 1000000, "session_rate": 100.0},
        "data": {
            "known_payers_csv": payers_csv,
            "image_dir": str(tmp_path / "card_images"),
        },
        "llm": {
            "model": "gpt-4o-mini",
            "temperature": 0.0,
            "max_tokens": 1000,
            "api_key": "test-key",
        },
        "aws": {"region": "us-east-1", "endpoint_url": None},
        "edi": {
            "endpoint": "https://clearinghouse.test/eligibility",
            "api_key": "test-key",
            "provider_name": "TEST CLINIC",
            "provider_npi": "1234567890",
            "timeout_seconds": 30,
            "connect_timeout_seconds": 10,
            "test_mode": True,
        },
        "logging": {
            "level": "WARNING",
            "colored": False,
            "format": "pretty",
        },
        "server": {
            "host": "127.0.0.1",
            "port": 8000,
            "debug": False,
            "cors_origins": ["http://localhost:3000"],
        },
    }
    return OmegaConf.create(cfg_dict)


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------


@pytest.fixture()
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture()
def cache() -> InMemoryCache:
    return InMemoryCache(max_size=100)


@pytest.fixture()
def notifier() -> InMemoryNotifier:
    return InMemoryNotifier()


@pytest.fixture()
def audit() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture()
def images() -> InMemoryImageStore:
    return InMemoryImageStore({"front.jpg": b"\xff\xd8front", "back.jpg": b"\xff\xd8back"})


@pytest.fixture()
def fake_extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture()
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture()
def registry(directory: PayerDirectory, fake_adapter: FakeAdapter) -> AdapterRegistry:
    reg = AdapterRegistry(directory, default_key="edi")
    reg.register("edi", fake_adapter)
    return reg


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def service(
    test_cfg: Any,
    store: InMemoryRecordStore,
    cache: InMemoryCache,
    directory: PayerDirectory,
    images: InMemoryImageStore,
    fake_extractor: FakeExtractor,
    registry: AdapterRegistry,
    notifier: InMemoryNotifier,
    audit: InMemoryAuditSink,
) -> VerificationService:
    svc = VerificationService.from_config(
        test_cfg,
        store=store,
        cache=cache,
        directory=directory,
        images=images,
        extractor=fake_extractor,
        registry=registry,
        notifier=notifier,
        audit=audit,
    )
    yield svc
    await svc.shutdown(timeout=5)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_record(store: InMemoryRecordStore):
    """Insert a record directly (any status) and return the stored copy."""

    async def _make(**fields: Any) -> VerificationRecord:
        fields.setdefault("case_id", "case-1")
        return await store.create(VerificationRecord(**fields))

    return _make
