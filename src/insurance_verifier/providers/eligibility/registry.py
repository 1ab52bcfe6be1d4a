"""Payer-keyed registry of eligibility adapters."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Optional

from loguru import logger

from insurance_verifier.core.payers import PayerDirectory
from insurance_verifier.providers.eligibility.base import BaseEligibilityAdapter


class AdapterRegistry:
    """Resolve the adapter for a payer at call time.

    Resolution order: explicit per-payer override (``payer_adapters``), then
    the payer directory's ``adapter`` column, then the default adapter.  An
    adapter key with no registered adapter falls back to the default.
    """

    def __init__(
        self,
        directory: PayerDirectory,
        default_key: str = "edi",
        payer_adapters: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.directory = directory
        self.default_key = default_key
        self.payer_adapters = {k.strip().lower(): v for k, v in (payer_adapters or {}).items()}
        self._adapters: dict[str, BaseEligibilityAdapter] = {}

    def register(self, key: str, adapter: BaseEligibilityAdapter) -> None:
        self._adapters[key] = adapter
        logger.debug("Registered eligibility adapter {key}", key=key)

    @property
    def keys(self) -> list[str]:
        return sorted(self._adapters)

    def key_for(self, payer_name: Optional[str]) -> str:
        name = (payer_name or "").strip().lower()
        canonical = (self.directory.canonical(payer_name) or "").lower()
        for candidate in (name, canonical):
            if candidate and candidate in self.payer_adapters:
                return self.payer_adapters[candidate]
        return self.directory.adapter_for(payer_name) if canonical else self.default_key

    def resolve(self, payer_name: Optional[str]) -> BaseEligibilityAdapter:
        key = self.key_for(payer_name)
        adapter = self._adapters.get(key)
        if adapter is None:
            logger.warning(
                "No eligibility adapter registered for key '{key}', falling back to '{default}'",
                key=key,
                default=self.default_key,
            )
            adapter = self._adapters.get(self.default_key)
        if adapter is None:
            raise ValueError(f"Default eligibility adapter '{self.default_key}' is not registered")
        return adapter
