"""Credence FastAPI application."""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from credence import __version__
from credence.api.auth import request_logging_middleware
from credence.api.errors import register_error_handlers
from credence.config import get_config
from credence.extraction.ocr import close_extractor
from credence.verification.scheduler import SweepScheduler
from credence.verification.service import VerificationService
from credence.verification.store import close_store, get_store

logger = logging.getLogger(__name__)


def _build_lifespan(service: VerificationService | None):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup / shutdown lifecycle handler."""
        config = get_config()

        if not config.demo_mode and not config.api_key:
            logger.critical(
                "CREDENCE_API_KEY is not set. Set it in .env or export it. Use CREDENCE_DEMO_MODE=true to skip."
            )
            sys.exit(1)
        if not config.demo_mode and not config.reviewer_api_key:
            logger.warning("CREDENCE_REVIEWER_API_KEY is not set; reviewer endpoints will refuse requests")

        owns_service = service is None
        if owns_service:
            store = get_store()
            store.init_schema()
            app.state.service = VerificationService.from_config(config, store)
        else:
            app.state.service = service

        recovered = app.state.service.recover_stalled()
        if recovered:
            logger.warning("Closed out %d request(s) left in progress by a previous run", recovered)

        scheduler = None
        if config.sweep_interval_seconds > 0:
            scheduler = SweepScheduler(app.state.service.run_maintenance, config.sweep_interval_seconds)
            scheduler.start()
        app.state.scheduler = scheduler

        logger.info(
            "Credence API starting - database=%s, ocr=%s, workers=%d",
            app.state.service.store.engine.url.render_as_string(hide_password=True),
            config.ocr_provider,
            config.pipeline_workers,
        )
        yield

        if scheduler is not None:
            scheduler.stop()
        if owns_service:
            app.state.service.shutdown(wait=True)
            close_extractor()
            close_store()
        app.state.service = None
        logger.info("Credence API shutdown - workers stopped, extractor and store closed")

    return lifespan


def create_app(service: VerificationService | None = None) -> FastAPI:
    """Build and configure the FastAPI application.

    Pass *service* to serve an existing :class:`VerificationService` (its
    owner stays responsible for shutting it down).
    """
    app = FastAPI(
        title="Credence API",
        description="Credential verification engine - document extraction, identity matching and review",
        version=__version__,
        lifespan=_build_lifespan(service),
    )

    config = get_config()

    # CORS - restricted to configured origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Subject-ID", "X-Reviewer-ID", "X-Request-ID"],
    )

    # Request logging and X-Request-ID middleware
    app.add_middleware(BaseHTTPMiddleware, dispatch=request_logging_middleware)

    register_error_handlers(app)

    # Import and include routers
    from credence.api.routes.health import router as health_router
    from credence.api.routes.jobs import router as jobs_router
    from credence.api.routes.review import router as review_router
    from credence.api.routes.verification import router as verification_router

    app.include_router(verification_router)
    app.include_router(review_router)
    app.include_router(jobs_router)
    app.include_router(health_router)

    return app


app = create_app()
