import asyncio
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from locateme.db import SessionLocal, get_engine
from locateme.dependencies.services import build_device_service, build_position_store, build_refresh_scheduler, create_redis_client
from locateme.dependencies.settings import get_settings
from locateme.services.refresh_stats import RefreshStats

logger = logging.getLogger(__name__)

load_dotenv()


@asynccontextmanager
async def _lifespan(app: FastAPI):
    settings = get_settings()
    get_engine()
    redis_client = create_redis_client(settings)
    store = build_position_store(settings, SessionLocal)
    service = build_device_service(settings, store, redis_client, stats=RefreshStats())
    app.state.redis = redis_client
    app.state.device_service = service
    logger.info("Device service initialised (cache %s, redis at %s)", "on" if service.uses_cache else "off", settings.redis_url)

    scheduler = None
    if settings.use_device_cache and settings.enable_cache_auto_refresh:
        scheduler = build_refresh_scheduler(settings, service)
        scheduler.start()

    try:
        yield
    except asyncio.CancelledError:
        logger.info("Application shutdown requested (CancelledError). Exiting gracefully.")
    finally:
        if scheduler is not None:
            await scheduler.stop()
        await service.materializer.aclose()
        await redis_client.aclose()
        logger.info("Redis connection closed")


settings = get_settings()

tags_metadata = [
    {"name": "Devices", "description": "Sidebar device list, map positions and device routes."},
    {"name": "Performance", "description": "Sidebar cache freshness, statistics and manual refresh."},
    {"name": "Health", "description": "Process and dependency probes."},
]

app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    openapi_tags=tags_metadata,
    swagger_ui_parameters={"displayRequestDuration": True, "persistAuthorization": True},
    lifespan=_lifespan,
)


@app.get("/")
async def root():
    return {"message": settings.app_name}


app.add_middleware(
    GZipMiddleware,
    minimum_size=1000,  # Only compress responses > 1KB
    compresslevel=6,
)

cors_origins_env = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173")
cors_origins = [origin.strip() for origin in cors_origins_env.split(",")]

logger.info("CORS enabled for origins: %s", cors_origins)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# include routers
from .routers import devices, health, performance  # noqa: E402

app.include_router(devices.router)
app.include_router(health.router)
app.include_router(performance.router)


__all__ = ["app"]
