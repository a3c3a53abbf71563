"""
n8n webhook and integration endpoints
"""
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel

from bizsync.api.sync import get_data_sync_service

router = APIRouter(prefix="/n8n", tags=["n8n"])


def get_n8n_service(sync_service=Depends(get_data_sync_service)):
    """Share the sync service's N8nService (same database session factory)"""
    return sync_service.n8n_service


class IntegrationCreate(BaseModel):
    business_entity_id: str
    webhook_url: str
    webhook_token: str


@router.post("/webhook/{integration_id}")
def receive_webhook(
    integration_id: str,
    payload: Dict[str, Any] = Body(...),
    service=Depends(get_n8n_service),
):
    """Receive a workflow event from n8n"""
    result = service.receive_webhook(integration_id, payload)
    if not result.get("success"):
        raise HTTPException(status_code=400, detail=result)
    return result


@router.post("/integrations", status_code=201)
def create_integration(body: IntegrationCreate, service=Depends(get_n8n_service)):
    return service.create_integration(body.business_entity_id, body.webhook_url, body.webhook_token)


@router.get("/integrations/{integration_id}")
def get_integration(integration_id: str, service=Depends(get_n8n_service)):
    integration = service.get_integration(integration_id)
    if integration is None:
        raise HTTPException(status_code=404, detail=f"n8n integration {integration_id} not found")
    return integration


@router.get("/integrations/{integration_id}/events")
def list_webhook_events(
    integration_id: str,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    service=Depends(get_n8n_service),
):
    return {"events": service.get_webhook_events(integration_id, limit=limit, offset=offset)}


@router.get("/integrations/{integration_id}/metrics")
def get_integration_metrics(integration_id: str, service=Depends(get_n8n_service)):
    if service.get_integration(integration_id) is None:
        raise HTTPException(status_code=404, detail=f"n8n integration {integration_id} not found")
    return service.calculate_metrics(integration_id)
