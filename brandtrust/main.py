from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from brandtrust.api.router import api_router
from brandtrust.core.config import get_settings
from brandtrust.core.telemetry import TelemetryRuntime, configure_logging, setup_api_telemetry, shutdown_telemetry
from brandtrust.services.repository import get_repository

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    logger.info("brandtrust api starting env=%s storage=%s", settings.environment, settings.storage_backend)
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_telemetry(_telemetry_runtime)
        await get_repository().close()
        get_repository.cache_clear()


configure_logging()
app = FastAPI(
    title=settings.app_name,
    description="Job trigger, evidence intake and brand score reads",
    lifespan=lifespan,
)
_telemetry_runtime = setup_api_telemetry(app, settings)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http %s %s status=%s module=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        request.headers.get("X-Module-Id", "-"),
        elapsed_ms,
    )
    return response


app.include_router(api_router)
