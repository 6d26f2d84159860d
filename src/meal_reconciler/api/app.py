"""FastAPI application factory."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from meal_reconciler.api.analyses import router as analyses_router
from meal_reconciler.app_logging import configure_logging
from meal_reconciler.containers import AppContainer
from meal_reconciler.domain.errors import (
    AnalysisClosed,
    AnalysisNotFound,
    ConflictAlreadyResolved,
    ConflictNotFound,
    DuplicateAnalysis,
    InferenceUnavailable,
    InvalidTransition,
    ReconciliationError,
)

_ERROR_STATUS: dict[type[ReconciliationError], int] = {
    InferenceUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    AnalysisNotFound: status.HTTP_404_NOT_FOUND,
    ConflictNotFound: status.HTTP_404_NOT_FOUND,
    ConflictAlreadyResolved: status.HTTP_409_CONFLICT,
    AnalysisClosed: status.HTTP_409_CONFLICT,
    InvalidTransition: status.HTTP_409_CONFLICT,
    DuplicateAnalysis: status.HTTP_409_CONFLICT,
}


def error_status(exc: ReconciliationError) -> int:
    for error_type, code in _ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(container: AppContainer) -> FastAPI:
    """Create a FastAPI app configured with dependencies."""
    configure_logging()
    logger = logging.getLogger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await app.state.container.close_resources()

    app = FastAPI(lifespan=lifespan)
    app.state.container = container

    app.include_router(analyses_router)

    @app.exception_handler(ReconciliationError)
    async def reconciliation_error(
        request: Request, exc: ReconciliationError
    ) -> JSONResponse:
        code = error_status(exc)
        if code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=code,
            content={"detail": str(exc), "error": type(exc).__name__},
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Simple health check endpoint."""
        return {"status": "ok"}

    return app
