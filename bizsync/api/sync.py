"""
Data synchronization endpoints
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from bizsync.utils.logger import log
from bizsync.utils.retry import RetryPolicy

router = APIRouter(prefix="/sync", tags=["sync"])

# Lazy-init so importing the router does not build connectors or the scheduler
_data_sync = None


def get_data_sync_service():
    global _data_sync
    if _data_sync is None:
        from bizsync.services.data_sync_service import DataSyncService
        _data_sync = DataSyncService()
    return _data_sync


# ── Schemas ──────────────────────────────────────────────

class RetryConfigIn(BaseModel):
    max_retries: Optional[int] = None
    initial_delay: Optional[int] = None  # ms
    max_delay: Optional[int] = None  # ms
    backoff_multiplier: Optional[float] = None


class AlertingIn(BaseModel):
    enabled: Optional[bool] = None
    email_recipients: Optional[List[str]] = None


class SyncConfigUpdate(BaseModel):
    ga4_sync_enabled: Optional[bool] = None
    ga4_sync_schedule: Optional[str] = None
    n8n_sync_enabled: Optional[bool] = None
    n8n_sync_schedule: Optional[str] = None
    cleanup_sync_enabled: Optional[bool] = None
    cleanup_sync_schedule: Optional[str] = None
    retry_config: Optional[RetryConfigIn] = None
    alerting: Optional[AlertingIn] = None


class SyncConfigCreate(SyncConfigUpdate):
    business_entity_id: str


class ManualSyncRequest(BaseModel):
    job_type: str
    metadata: Dict[str, Any] = {}


def _config_options(body: SyncConfigUpdate) -> Dict[str, Any]:
    """Body as service kwargs, dropping unset fields at every level"""
    return body.model_dump(exclude_none=True, exclude={"business_entity_id"})


# ── Jobs ─────────────────────────────────────────────────

@router.get("/jobs")
def list_sync_jobs(
    business_entity_id: Optional[str] = Query(None),
    job_type: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service=Depends(get_data_sync_service),
):
    """List sync jobs, newest first"""
    page = service.get_sync_jobs(
        business_entity_id=business_entity_id,
        job_type=job_type,
        status=status,
        limit=limit,
        offset=offset,
    )
    return page.to_dict()


@router.get("/jobs/{job_id}")
def get_sync_job(job_id: str, service=Depends(get_data_sync_service)):
    job = service.get_sync_job_by_id(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Sync job {job_id} not found")
    return job


@router.post("/jobs/{job_id}/cancel")
def cancel_sync_job(job_id: str, service=Depends(get_data_sync_service)):
    """Cancel a pending sync job"""
    try:
        job = service.cancel_sync_job(job_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if job is None:
        raise HTTPException(status_code=404, detail=f"Sync job {job_id} not found")
    return job


@router.get("/stats/{business_entity_id}")
def get_sync_stats(business_entity_id: str, service=Depends(get_data_sync_service)):
    return service.get_sync_job_stats(business_entity_id).to_dict()


@router.get("/health/{business_entity_id}")
def get_sync_health(business_entity_id: str, service=Depends(get_data_sync_service)):
    return service.get_sync_health(business_entity_id).to_dict()


# ── Configs ──────────────────────────────────────────────

@router.post("/config", status_code=201)
async def create_sync_config(body: SyncConfigCreate, service=Depends(get_data_sync_service)):
    try:
        return service.create_sync_config(body.business_entity_id, **_config_options(body))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/config/{business_entity_id}")
def get_sync_config(business_entity_id: str, service=Depends(get_data_sync_service)):
    config = service.get_sync_config(business_entity_id)
    if config is None:
        raise HTTPException(status_code=404, detail=f"No sync config for {business_entity_id}")
    return {**config, "retry_delays_ms": RetryPolicy.from_dict(config["retry_config"]).schedule()}


@router.put("/config/{business_entity_id}")
async def update_sync_config(business_entity_id: str, body: SyncConfigUpdate, service=Depends(get_data_sync_service)):
    """Update a sync config; cron jobs are re-registered when schedules change"""
    try:
        config = service.update_sync_config(business_entity_id, **_config_options(body))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if config is None:
        raise HTTPException(status_code=404, detail=f"No sync config for {business_entity_id}")
    return config


# ── Control ──────────────────────────────────────────────

@router.post("/manual/{business_entity_id}")
async def trigger_manual_sync(
    business_entity_id: str,
    body: ManualSyncRequest,
    service=Depends(get_data_sync_service),
):
    """Run a sync now and wait for it to finish"""
    result = await service.trigger_manual_sync(business_entity_id, body.job_type, metadata=body.metadata)
    return result.to_dict()


@router.post("/retries/run")
async def run_due_retries(service=Depends(get_data_sync_service)):
    """Re-run pending jobs whose retry time has passed"""
    attempted = await service.process_due_retries()
    return {"attempted": attempted}


@router.get("/cron")
def list_cron_jobs(business_entity_id: Optional[str] = Query(None), service=Depends(get_data_sync_service)):
    return {
        "initialized": service.is_initialized,
        "cron_jobs": service.describe_cron_jobs(business_entity_id),
    }


@router.post("/initialize")
async def initialize_sync_service(service=Depends(get_data_sync_service)):
    try:
        await service.initialize()
    except Exception as e:
        log.error(f"Sync service initialization failed: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
    return {"initialized": True, "cron_jobs": service.live_cron_keys()}


@router.post("/shutdown")
async def shutdown_sync_service(service=Depends(get_data_sync_service)):
    service.shutdown()
    return {"initialized": False}
