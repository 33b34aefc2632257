from __future__ import annotations

from contextlib import asynccontextmanager
import logging

from fastapi import Depends, FastAPI, Request
from fastapi.exception_handlers import (
    http_exception_handler,
    request_validation_exception_handler,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..config import Settings
from ..services.coverage_service import CoverageService
from .deps import create_default_service, get_service
from .routes.coverage import router as coverage_router
from .routes.data import router as data_router


def create_app(
    service: CoverageService | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Build the API around an explicitly owned coverage service.

    When no service is passed one is built from settings and closed on
    shutdown; a passed-in service stays owned by the caller.
    """
    owns_service = service is None
    coverage_service = service or create_default_service(settings)
    logger = logging.getLogger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if coverage_service.settings.scheduler_enabled:
            coverage_service.start()
        else:
            logger.info("Coverage scheduler disabled via settings")
        try:
            yield
        finally:
            coverage_service.stop()
            if owns_service:
                coverage_service.close()

    app = FastAPI(title="Coverage Sync", lifespan=lifespan)
    app.state.service = coverage_service

    @app.exception_handler(StarletteHTTPException)
    async def custom_http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ):
        logger.warning("HTTP error %s: %s", exc.status_code, exc.detail)
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        logger.warning("Validation error: %s", exc.errors())
        return await request_validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error")
        return JSONResponse(
            status_code=500, content={"detail": "Internal server error"}
        )

    @app.get("/api/health")
    def health(service: CoverageService = Depends(get_service)):
        return JSONResponse(status_code=200, content={"ok": True, **service.status()})

    app.include_router(coverage_router)
    app.include_router(data_router)
    return app
