"""Primary/secondary extractor composition."""

from __future__ import annotations

from typing import Optional

from loguru import logger

from insurance_verifier.core.errors import ProviderConnectionError
from insurance_verifier.providers.extraction.base import BaseExtractor, ExtractionOutput


class FallbackExtractor(BaseExtractor):
    """Use *primary*; on a connectivity failure, try *secondary* once.

    Any other error from the primary propagates unchanged, as does any error
    from the secondary.
    """

    def __init__(self, primary: BaseExtractor, secondary: BaseExtractor) -> None:
        self.primary = primary
        self.secondary = secondary
        self.name = primary.name

    def extract(self, front: bytes, back: Optional[bytes] = None) -> ExtractionOutput:
        try:
            return self.primary.extract(front, back)
        except ProviderConnectionError as exc:
            logger.warning(
                "{primary} unreachable ({err}); falling back to {secondary}",
                primary=self.primary.name,
                err=exc,
                secondary=self.secondary.name,
            )
            return self.secondary.extract(front, back)
