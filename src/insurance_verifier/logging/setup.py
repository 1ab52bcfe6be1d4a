"""Logging configuration using loguru — colored console or structured JSON.

Both sinks share a filter that masks identifying values passed as log
extras (``member_id=`` and friends), in the extra itself and wherever the
same value was formatted into the message. Values interpolated under
other names or positionally are not detected.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from omegaconf import DictConfig

# Libraries that log request-level detail at INFO/DEBUG.
NOISY_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3", "openai")

# Extras that carry identifying data and are masked before emission.
PHI_EXTRA_KEYS = frozenset({"member_id", "group_number", "subscriber_name", "subscriber_dob"})


def mask_value(value: Any) -> str:
    """Keep at most the last two characters of *value*."""
    text = str(value)
    if len(text) <= 4:
        return "***"
    return f"***{text[-2:]}"


def _redact_phi(record: dict[str, Any]) -> bool:
    extra = record["extra"]
    for key in PHI_EXTRA_KEYS.intersection(extra):
        value = extra[key]
        if value is None:
            continue
        masked = mask_value(value)
        # Keyword arguments used in the message template land in extra too.
        record["message"] = record["message"].replace(str(value), masked)
        extra[key] = masked
    return True


class _InterceptHandler(logging.Handler):
    """Route standard-library log records (boto3, httpx, uvicorn) through loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno  # type: ignore[assignment]

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


_PRETTY_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[request_id]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)


def setup_logging(cfg: DictConfig) -> None:
    """Configure loguru from the ``logging`` config section.

    Parameters
    ----------
    cfg:
        Keys ``level``, ``colored`` and ``format`` (``"pretty"`` for the
        colored console, ``"structured"`` for JSON lines).
    """
    logger.remove()
    # Lines logged outside a request still render the request id column.
    logger.configure(extra={"request_id": "-"})

    level: str = getattr(cfg, "level", "INFO").upper()
    use_json: bool = getattr(cfg, "format", "pretty") == "structured"

    if use_json:
        logger.add(sys.stderr, level=level, serialize=True, colorize=False, filter=_redact_phi)
    else:
        logger.add(
            sys.stderr,
            level=level,
            format=_PRETTY_FORMAT,
            colorize=getattr(cfg, "colored", True),
            filter=_redact_phi,
        )

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger.info("Logging configured (level={level}, json={json_mode})", level=level, json_mode=use_json)
