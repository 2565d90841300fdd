"""FastAPI application entrypoint.

Configures CORS, includes routers, maps engine errors to HTTP responses,
and exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .exceptions import ConfigurationError, StorageError, StorageVerificationError
from . import schemas
from . import state
from .routers import attribution as attribution_router
from .routers import indexes as indexes_router
from .routers import jobs as jobs_router
from .telemetry import capture_exception, init_observability
from .utils.env import load_env_file


def create_app() -> FastAPI:
    load_env_file()
    observability = init_observability()
    logger.info(f"[STARTUP] Observability: {observability}")

    app = FastAPI(
        title="journeyx API",
        description="""
        journeyx reconstructs customer journeys from raw pageview and
        conversion events and splits conversion value across touchpoints.

        This API provides endpoints for:
        - Single-conversion multi-touch attribution
        - Resumable bulk attribution and index building
        - Index lookups and attribution analysis
        """,
        version="1.0.0",
    )

    settings = get_settings()
    allowed_origins = [o.strip() for o in settings.BACKEND_CORS_ORIGINS.split(",") if o.strip()]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(attribution_router.router)
    app.include_router(indexes_router.router)
    app.include_router(jobs_router.router)

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        logger.error("[CONFIG] %s", exc.message)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": exc.to_user_message()},
        )

    @app.exception_handler(StorageVerificationError)
    async def storage_verification_handler(request: Request, exc: StorageVerificationError):
        logger.exception("[ATTRIBUTION] Storage verification failed for %s", exc.key, exc_info=exc)
        capture_exception(exc, extra={"storage_key": exc.key, "path": request.url.path})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": exc.to_user_message(), "storage_key": exc.key},
        )

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.warning("[KV] Request %s failed: %s", request.url.path, exc.message)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Key-value store is temporarily unavailable. Please retry."},
        )

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="""
        Reports whether the API is up and the key-value store answers a ping.
        Does not fail when the store is down so load balancers keep routing.
        """
    )
    async def health():
        kv = state.get_kv_client()
        kv_status = "unavailable"
        if kv is not None:
            try:
                if await kv.ping():
                    kv_status = "connected"
            except Exception as e:
                logger.warning(f"[HEALTH] Store ping failed: {e}")
        return schemas.HealthResponse(status="ok", kv_store=kv_status)

    @app.on_event("startup")
    async def startup_event():
        """Warm up the shared store connection."""
        if state.get_kv_client() is not None:
            logging.info("[STARTUP] Key-value store client initialized")
        else:
            logging.warning("[STARTUP] Key-value store unavailable - attribution endpoints return 503")
            logging.warning("[STARTUP] Check REDIS_URL environment variable - currently: " + str(settings.REDIS_URL))

    @app.on_event("shutdown")
    async def shutdown_event():
        await state.close()

    return app


app = create_app()
