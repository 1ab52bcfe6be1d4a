"""Insurance Verifier server entry point.

Loads configuration with Hydra and starts the FastAPI application via
uvicorn.

Usage::

    poetry run python -m insurance_verifier.main                       # default config
    poetry run python -m insurance_verifier.main extraction.primary=textract
"""

from __future__ import annotations

import os
from pathlib import Path

import hydra
import uvicorn
from dotenv import load_dotenv
from loguru import logger
from omegaconf import DictConfig, open_dict

from insurance_verifier.api.app import create_app

# Load .env BEFORE Hydra resolves ${oc.env:...} references
load_dotenv()

_DATA_PATH_KEYS = ("known_payers_csv", "image_dir")


def _resolve_data_paths(cfg: DictConfig) -> None:
    """Anchor relative ``cfg.data`` paths to the project root.

    Hydra changes the CWD to ``outputs/<date>/<time>/``.
    """
    original_cwd = Path(hydra.utils.get_original_cwd())

    with open_dict(cfg):
        for key in _DATA_PATH_KEYS:
            resolved = Path(cfg.data[key])
            if not resolved.is_absolute():
                cfg.data[key] = str(original_cwd / resolved)


def _check_providers(cfg: DictConfig) -> None:
    """Warn about provider settings that only fail on the first request."""
    if not cfg.edi.test_mode and not cfg.edi.endpoint:
        logger.warning(
            "EDI endpoint is not set; eligibility checks will fail (set EDI_ENDPOINT or EDI_TEST_MODE)"
        )
    kinds = {cfg.extraction.primary, cfg.extraction.get("fallback")}
    if "vision" in kinds and not cfg.llm.api_key:
        logger.warning("OPENAI_API_KEY is not set; vision extraction will fail")
    Path(cfg.data.image_dir).mkdir(parents=True, exist_ok=True)


@hydra.main(version_base=None, config_path="../../conf", config_name="config")
def main(cfg: DictConfig) -> None:
    """Bootstrap the application from Hydra config and run uvicorn."""
    _resolve_data_paths(cfg)
    os.chdir(hydra.utils.get_original_cwd())
    _check_providers(cfg)

    app = create_app(cfg)

    host: str = cfg.server.host
    port: int = cfg.server.port
    debug: bool = cfg.server.debug

    logger.info(
        "Starting server on {host}:{port} (debug={debug})",
        host=host,
        port=port,
        debug=debug,
    )

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="debug" if debug else "info",
    )


if __name__ == "__main__":
    main()
