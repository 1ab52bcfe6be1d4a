"""OpenAI vision-model card extractor (via ``langchain-openai``)."""

from __future__ import annotations

import base64
from typing import TYPE_CHECKING, Any, Optional

import openai
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from loguru import logger
from pydantic import BaseModel, Field

from insurance_verifier.core.errors import (
    ProviderConnectionError,
    ProviderError,
    ProviderPermanentError,
    ProviderThrottledError,
    ProviderTimeoutError,
)
from insurance_verifier.providers.extraction.base import (
    BaseExtractor,
    ExtractionOutput,
    FieldCandidate,
)
from insurance_verifier.providers.extraction.prompts import (
    CARD_EXTRACTION_SYSTEM_PROMPT,
    CARD_EXTRACTION_USER_TEXT,
)
from insurance_verifier.schemas.record import TARGET_FIELDS

if TYPE_CHECKING:
    from omegaconf import DictConfig

DEFAULT_CONFIDENCE = 80.0


class CardFields(BaseModel):
    member_id: Optional[str] = None
    group_number: Optional[str] = None
    payer_name: Optional[str] = None
    subscriber_name: Optional[str] = None


class CardConfidence(BaseModel):
    member_id: Optional[float] = Field(default=None, ge=0, le=100)
    group_number: Optional[float] = Field(default=None, ge=0, le=100)
    payer_name: Optional[float] = Field(default=None, ge=0, le=100)
    subscriber_name: Optional[float] = Field(default=None, ge=0, le=100)


class CardExtraction(BaseModel):
    """Structured output requested from the vision model."""

    extracted_fields: CardFields = Field(default_factory=CardFields)
    confidence_scores: CardConfidence = Field(default_factory=CardConfidence)
    notes: Optional[str] = Field(default=None, description="Observations about the card")


def _data_url(image: bytes) -> str:
    if image.startswith(b"\x89PNG"):
        mime = "image/png"
    elif image[:4] == b"RIFF" and image[8:12] == b"WEBP":
        mime = "image/webp"
    else:
        mime = "image/jpeg"
    return f"data:{mime};base64,{base64.b64encode(image).decode('ascii')}"


class VisionExtractor(BaseExtractor):
    """Asks a vision LLM for the target fields and per-field confidence."""

    name = "vision"

    def __init__(self, llm: Any) -> None:
        self.llm = llm
        self.chain = llm.with_structured_output(CardExtraction)

    @classmethod
    def from_config(cls, cfg: DictConfig) -> VisionExtractor:
        llm = ChatOpenAI(
            model=cfg.llm.model,
            temperature=cfg.llm.temperature,
            max_tokens=cfg.llm.max_tokens,
            api_key=cfg.llm.api_key,
            timeout=cfg.extraction.timeout_seconds,
            max_retries=0,
        )
        logger.info("Vision extractor initialised (model={model})", model=cfg.llm.model)
        return cls(llm)

    def _messages(self, front: bytes, back: Optional[bytes]) -> list[Any]:
        content: list[dict[str, Any]] = [{"type": "text", "text": CARD_EXTRACTION_USER_TEXT}]
        for image in (front, back):
            if image:
                content.append(
                    {"type": "image_url", "image_url": {"url": _data_url(image), "detail": "high"}}
                )
        return [SystemMessage(content=CARD_EXTRACTION_SYSTEM_PROMPT), HumanMessage(content=content)]

    def extract(self, front: bytes, back: Optional[bytes] = None) -> ExtractionOutput:
        try:
            result: CardExtraction = self.chain.invoke(self._messages(front, back))
        except openai.APITimeoutError as exc:
            raise ProviderTimeoutError(f"Vision model timed out: {exc}") from exc
        except openai.APIConnectionError as exc:
            raise ProviderConnectionError(f"Vision model unreachable: {exc}") from exc
        except openai.RateLimitError as exc:
            raise ProviderThrottledError(f"Vision model rate limited: {exc}") from exc
        except openai.BadRequestError as exc:
            raise ProviderPermanentError(str(exc), code="INVALID_PARAMETER") from exc
        except openai.APIError as exc:
            raise ProviderError(f"Vision model error: {exc}") from exc

        fields: dict[str, FieldCandidate] = {}
        for name in TARGET_FIELDS:
            value = getattr(result.extracted_fields, name)
            if not value or not str(value).strip():
                continue
            confidence = getattr(result.confidence_scores, name)
            fields[name] = FieldCandidate(
                value=str(value).strip(),
                confidence=float(confidence) if confidence is not None else DEFAULT_CONFIDENCE,
            )

        return ExtractionOutput(
            provider=self.name,
            fields=fields,
            raw_summary={
                "model": getattr(self.llm, "model_name", None),
                "images": 2 if back else 1,
                "fields_returned": len(fields),
            },
        )
