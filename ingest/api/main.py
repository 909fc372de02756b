"""Operations API exposing the ingestion jobs over HTTP."""

from contextlib import asynccontextmanager
import logging
import time
import uuid

from fastapi import FastAPI
from starlette.requests import Request

from ingest.api.dependencies import get_registry, get_snapshot_writer
from ingest.api.router import api_router
from ingest.core.config import Settings, get_settings
from ingest.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from ingest.services.repository import get_repository

REQUEST_ID_HEADER = "X-Request-Id"

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    registry = get_registry()
    logger.info("ingest api started sources=%s", len(registry.list_sources()))
    try:
        yield
    finally:
        shutdown_telemetry(app.state.telemetry)
        await get_repository().close()
        get_repository.cache_clear()
        get_snapshot_writer.cache_clear()


async def request_logging_middleware(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    response.headers[REQUEST_ID_HEADER] = request_id
    logger.info(
        "http request request_id=%s method=%s path=%s status=%s duration_ms=%.2f",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    application.middleware("http")(request_logging_middleware)
    application.include_router(api_router)
    application.state.telemetry = setup_telemetry(settings, application)
    return application


app = create_app()
