"""
Health check and status endpoints
"""
from fastapi import APIRouter, Depends

from bizsync import __version__
from bizsync.api.sync import get_data_sync_service
from bizsync.config import get_settings
from bizsync.utils.helpers import utc_now

settings = get_settings()

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": utc_now().isoformat(),
        "version": __version__
    }


@router.get("/status")
async def get_status(service=Depends(get_data_sync_service)):
    """Get system status"""
    return {
        "app_name": settings.app_name,
        "version": __version__,
        "environment": settings.environment,
        "scheduler": {
            "enabled": settings.scheduler_enabled,
            "initialized": service.is_initialized,
            "cron_jobs": len(service.live_cron_keys()),
            "timezone": settings.scheduler_timezone,
            "jobs": service.cron_scheduler.get_jobs()
        },
        "timestamp": utc_now().isoformat()
    }
