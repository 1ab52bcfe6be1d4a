"""FastAPI application factory.

``create_app`` builds a fully configured ``FastAPI`` instance with:

* CORS middleware
* Request-logging / exception-handling middleware
* Verification routes
* Lifespan manager that drains background jobs on shutdown
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from insurance_verifier.api.middleware import ExceptionHandlerMiddleware, RequestLoggingMiddleware
from insurance_verifier.api.routes.verification import router as verification_router
from insurance_verifier.logging.setup import setup_logging
from insurance_verifier.service import VerificationService

if TYPE_CHECKING:
    from omegaconf import DictConfig


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle for the FastAPI application."""
    service: VerificationService = app.state.service
    logger.info(
        "Application startup complete ({n} known payers)",
        n=len(service.directory.known_payer_names()),
    )
    yield
    logger.info("Application shutting down")
    await service.shutdown()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_app(cfg: DictConfig, service: Optional[VerificationService] = None) -> FastAPI:
    """Build and return a fully configured :class:`FastAPI` application.

    Parameters
    ----------
    cfg:
        The merged Hydra configuration.
    service:
        Pre-built service; built from *cfg* when omitted.

    Returns
    -------
    FastAPI
        Ready-to-run application instance.
    """
    # ── Logging ──────────────────────────────────────────────────────────
    setup_logging(cfg.logging)

    # ── App ──────────────────────────────────────────────────────────────
    app = FastAPI(
        title="Insurance Verifier",
        description="Insurance card extraction and eligibility verification",
        version="1.0.0",
        lifespan=_lifespan,
    )
    app.state.cfg = cfg

    # ── Service ──────────────────────────────────────────────────────────
    app.state.service = service or VerificationService.from_config(cfg)
    logger.info(
        "Service ready (extraction={primary}, adapter={adapter})",
        primary=cfg.extraction.primary,
        adapter=cfg.eligibility.default_adapter,
    )

    # ── CORS ─────────────────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cfg.server.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Custom middleware (outermost = first to run) ─────────────────────
    app.add_middleware(ExceptionHandlerMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    # ── Routes ───────────────────────────────────────────────────────────
    app.include_router(verification_router, prefix="/api/v1")

    return app
