from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from assignment_review.api.router import api_router
from assignment_review.core.config import get_settings
from assignment_review.core.telemetry import (
    configure_logging,
    setup_api_telemetry,
    shutdown_api_telemetry,
)
from assignment_review.services.review import get_review_service
from assignment_review.services.verification import get_verification_workflow

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    try:
        yield
    finally:
        shutdown_api_telemetry(app)
        # Close the asyncpg pools only if the service was ever built.
        if get_review_service.cache_info().currsize:
            await get_review_service().close()
        get_verification_workflow.cache_clear()
        get_review_service.cache_clear()


configure_logging(settings)
app = FastAPI(title=settings.app_name, lifespan=lifespan)
setup_api_telemetry(app, settings)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)
