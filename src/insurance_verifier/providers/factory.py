"""Provider factory — build extractors and eligibility adapters from Hydra config."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from loguru import logger

if TYPE_CHECKING:
    from omegaconf import DictConfig

    from insurance_verifier.core.payers import PayerDirectory
    from insurance_verifier.providers.eligibility.registry import AdapterRegistry
    from insurance_verifier.providers.extraction.base import BaseExtractor

_EXTRACTOR_TYPES = ("vision", "textract")


def _build_extractor(kind: str, cfg: DictConfig) -> BaseExtractor:
    if kind == "vision":
        from insurance_verifier.providers.extraction.vision import VisionExtractor

        return VisionExtractor.from_config(cfg)

    if kind == "textract":
        from insurance_verifier.providers.extraction.textract import TextractExtractor

        return TextractExtractor.from_config(cfg)

    raise ValueError(
        f"Unknown extractor type '{kind}'. Expected one of {', '.join(_EXTRACTOR_TYPES)}."
    )


def create_extractor(cfg: DictConfig) -> BaseExtractor:
    """Create the extractor named by ``cfg.extraction.primary``.

    When ``cfg.extraction.fallback`` names a different extractor, the two are
    composed so connectivity failures of the primary fall back once.

    Uses lazy imports so only the selected provider SDKs are loaded.

    Raises
    ------
    ValueError
        If an extractor type is not recognised.
    """
    primary_kind: str = cfg.extraction.primary
    fallback_kind: Optional[str] = cfg.extraction.get("fallback")
    logger.info(
        "Creating extractor: {primary} (fallback={fallback})",
        primary=primary_kind,
        fallback=fallback_kind,
    )

    primary = _build_extractor(primary_kind, cfg)
    if not fallback_kind or fallback_kind == primary_kind:
        return primary

    from insurance_verifier.providers.extraction.fallback import FallbackExtractor

    return FallbackExtractor(primary, _build_extractor(fallback_kind, cfg))


def create_adapter_registry(cfg: DictConfig, directory: PayerDirectory) -> AdapterRegistry:
    """Create the eligibility adapter registry with every built-in adapter registered."""
    from insurance_verifier.providers.eligibility.edi import EdiAdapter
    from insurance_verifier.providers.eligibility.registry import AdapterRegistry

    registry = AdapterRegistry(
        directory,
        default_key=cfg.eligibility.default_adapter,
        payer_adapters=dict(cfg.eligibility.get("payer_adapters") or {}),
    )
    registry.register("edi", EdiAdapter.from_config(cfg))
    logger.info("Eligibility adapters registered: {keys}", keys=registry.keys)
    return registry
