"""
BizSync Data Synchronization Service
Main FastAPI application
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware

from bizsync import __version__
from bizsync.api import health, n8n, sync
from bizsync.config import get_settings
from bizsync.utils.logger import log

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    try:
        from bizsync.models.base import init_db
        init_db()
        log.info("Database initialized")
    except Exception as e:
        log.error(f"Database initialization error: {str(e)}")

    service = sync.get_data_sync_service()
    if settings.scheduler_enabled:
        try:
            await service.initialize()
            log.info("Sync scheduler started successfully")
        except Exception as e:
            log.error(f"Sync scheduler startup error: {str(e)}")

    yield

    # Shutdown
    service.shutdown()
    log.info("Shutting down application")


app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    Multi-tenant data synchronization scheduler

    - Per business entity cron schedules for GA4 daily pulls, n8n webhook
      replay and retention cleanup
    - Sync job history with retry and exponential backoff
    - Failure alerts by email and Slack
    - Per business entity sync health
    """,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=500)

# Include routers
app.include_router(health.router)
app.include_router(sync.router)
app.include_router(n8n.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "bizsync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug
    )
