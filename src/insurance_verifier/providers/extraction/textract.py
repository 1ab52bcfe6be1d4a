"""AWS Textract (``AnalyzeDocument`` / FORMS) card extractor."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from loguru import logger

from insurance_verifier.core.errors import (
    ProviderConnectionError,
    ProviderError,
    ProviderPermanentError,
    ProviderThrottledError,
    ProviderTimeoutError,
)
from insurance_verifier.providers.extraction.base import BaseExtractor, ExtractionOutput
from insurance_verifier.providers.extraction.fields import KeyValue, PageText, TextLine, match_fields

if TYPE_CHECKING:
    from omegaconf import DictConfig

_THROTTLING_CODES = frozenset(
    {"ProvisionedThroughputExceededException", "ThrottlingException", "LimitExceededException"}
)

_PERMANENT_CODES = {
    "InvalidParameterException": "INVALID_PARAMETER",
    "InvalidS3ObjectException": "INVALID_S3_OBJECT",
    "UnsupportedDocumentException": "UNSUPPORTED_DOCUMENT",
    "BadDocumentException": "UNSUPPORTED_DOCUMENT",
    "DocumentTooLargeException": "UNSUPPORTED_DOCUMENT",
}


class TextractExtractor(BaseExtractor):
    """Reads form key/value pairs and text lines with Textract.

    Parameters
    ----------
    client:
        A boto3 ``textract`` client.  Tests pass a stub exposing
        ``analyze_document``.
    """

    name = "textract"

    def __init__(self, client: Any) -> None:
        self.client = client

    @classmethod
    def from_config(cls, cfg: DictConfig) -> TextractExtractor:
        client = boto3.client(
            "textract",
            region_name=cfg.aws.region,
            endpoint_url=cfg.aws.endpoint_url or None,
            config=Config(
                connect_timeout=10,
                read_timeout=int(cfg.extraction.timeout_seconds),
                retries={"max_attempts": 0},
            ),
        )
        return cls(client)

    def extract(self, front: bytes, back: Optional[bytes] = None) -> ExtractionOutput:
        front_response = self._analyze(front)
        back_response = self._analyze(back) if back else None

        fields = match_fields(
            parse_blocks(front_response),
            parse_blocks(back_response) if back_response is not None else None,
        )
        logger.debug("Textract matched fields {fields}", fields=sorted(fields))
        return ExtractionOutput(
            provider=self.name,
            fields=fields,
            raw_summary={
                "front": summarize_response(front_response),
                "back": summarize_response(back_response),
            },
        )

    # ------------------------------------------------------------------
    # SDK call + error translation
    # ------------------------------------------------------------------

    def _analyze(self, image: bytes) -> dict[str, Any]:
        try:
            return self.client.analyze_document(
                Document={"Bytes": image},
                FeatureTypes=["FORMS"],
            )
        except ClientError as exc:
            raise translate_client_error(exc) from exc
        except (EndpointConnectionError, ConnectTimeoutError) as exc:
            raise ProviderConnectionError(f"Textract unreachable: {exc}") from exc
        except ReadTimeoutError as exc:
            raise ProviderTimeoutError(f"Textract timed out: {exc}") from exc
        except BotoCoreError as exc:
            raise ProviderError(f"Textract call failed: {exc}") from exc


def translate_client_error(exc: ClientError) -> ProviderError:
    code = exc.response.get("Error", {}).get("Code", "")
    message = exc.response.get("Error", {}).get("Message", str(exc))
    if code in _THROTTLING_CODES:
        return ProviderThrottledError(f"Textract throttled: {message}")
    if code in _PERMANENT_CODES:
        return ProviderPermanentError(message, code=_PERMANENT_CODES[code])
    return ProviderError(f"Textract error {code}: {message}")


# ---------------------------------------------------------------------------
# Block parsing
# ---------------------------------------------------------------------------


def _child_text(blocks_by_id: dict[str, dict[str, Any]], block: dict[str, Any]) -> str:
    parts: list[str] = []
    for rel in block.get("Relationships", []) or []:
        if rel.get("Type") != "CHILD":
            continue
        for child_id in rel.get("Ids", []):
            child = blocks_by_id.get(child_id)
            if child and child.get("BlockType") in ("WORD", "SELECTION_ELEMENT"):
                parts.append(child.get("Text") or "")
    return " ".join(part for part in parts if part)


def _value_block(blocks_by_id: dict[str, dict[str, Any]], key_block: dict[str, Any]) -> Optional[dict[str, Any]]:
    for rel in key_block.get("Relationships", []) or []:
        if rel.get("Type") != "VALUE":
            continue
        for value_id in rel.get("Ids", []):
            value = blocks_by_id.get(value_id)
            if value and value.get("BlockType") == "KEY_VALUE_SET":
                return value
    return None


def parse_blocks(response: dict[str, Any]) -> PageText:
    """Convert an ``AnalyzeDocument`` response into key/value pairs and lines."""
    blocks = response.get("Blocks", []) or []
    blocks_by_id = {block["Id"]: block for block in blocks if "Id" in block}
    page = PageText()

    for block in blocks:
        block_type = block.get("BlockType")
        if block_type == "KEY_VALUE_SET" and "KEY" in (block.get("EntityTypes") or []):
            key_text = _child_text(blocks_by_id, block)
            value_block = _value_block(blocks_by_id, block)
            if not key_text or value_block is None:
                continue
            page.key_values.append(
                KeyValue(
                    key=key_text,
                    value=_child_text(blocks_by_id, value_block),
                    confidence=float(block.get("Confidence") or 0.0),
                )
            )
        elif block_type == "LINE" and block.get("Text"):
            top = ((block.get("Geometry") or {}).get("BoundingBox") or {}).get("Top", 0.0)
            confidence = block.get("Confidence")
            page.lines.append(
                TextLine(
                    text=block["Text"],
                    confidence=float(confidence) if confidence is not None else None,
                    top=float(top),
                )
            )
    return page


def summarize_response(response: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """Block counts and model version only; never the recognised text."""
    if response is None:
        return None
    return {
        "pages": (response.get("DocumentMetadata") or {}).get("Pages"),
        "blocks_count": len(response.get("Blocks", []) or []),
        "model_version": response.get("AnalyzeDocumentModelVersion"),
    }
