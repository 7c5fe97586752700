from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from audit_queue.api.router import api_router
from audit_queue.core.config import Settings, get_settings
from audit_queue.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from audit_queue.services.repository import get_repository

logger = logging.getLogger(__name__)


def create_app(settings: Settings) -> FastAPI:
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        logger.info("queue service starting environment=%s storage=%s", settings.environment, settings.storage_backend)
        try:
            yield
        finally:
            shutdown_telemetry(telemetry)
            # Work still running past its deadline loses its connections here.
            await get_repository().close()
            get_repository.cache_clear()

    application = FastAPI(title=settings.app_name, lifespan=lifespan)

    @application.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "%s %s -> %s in %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started) * 1000.0,
        )
        return response

    application.include_router(api_router)
    telemetry = setup_telemetry(settings, app=application)
    return application


app = create_app(get_settings())
