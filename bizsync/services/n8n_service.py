"""
n8n Webhook Service

Validates, stores and processes webhook events sent by n8n workflows, and
keeps per-integration statistics.

Validation is a pure function (`validate_and_normalize_payload`) so the live
webhook endpoint and the n8n realtime sync replay go through the same checks.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dateutil import parser as date_parser
from sqlalchemy import func

from bizsync.models.base import SessionLocal, session_scope
from bizsync.models.integrations import N8nIntegration, N8nWebhookEvent
from bizsync.utils.helpers import utc_now, elapsed_ms, safe_divide, isoformat_or_none
from bizsync.utils.logger import log


VALID_EVENT_TYPES = (
    "workflow_started", "workflow_completed", "workflow_failed", "workflow_cancelled",
    "node_started", "node_completed", "node_failed",
    "execution_started", "execution_completed", "execution_failed",
)

VALID_STATUSES = ("running", "completed", "failed", "cancelled", "waiting", "error")

# Status values sent by n8n's own execution payload
N8N_STATUS_MAP = {
    "success": "completed",
    "failed": "failed",
    "running": "running",
    "waiting": "waiting",
    "cancelled": "cancelled",
}

DEFAULT_WORKFLOW_NAME = "Lead Generation Workflow"

# Processing states for stored events
PROCESSING_PENDING = "pending"
PROCESSING_PROCESSED = "processed"
PROCESSING_FAILED = "failed"

METRICS_WINDOW = 1000


@dataclass
class WebhookValidationResult:
    """Outcome of payload validation. `payload` is set only when valid."""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    payload: Optional[Dict[str, Any]] = None


def parse_timestamp(value: Any) -> datetime:
    """
    Parse an ISO 8601 timestamp into a naive UTC datetime.

    Raises:
        ValueError: if the value is not an ISO 8601 string
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = date_parser.isoparse(value)
        except (TypeError, ValueError, OverflowError) as e:
            raise ValueError(f"Invalid ISO 8601 timestamp: {value!r}") from e
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _is_valid_timestamp(value: Any) -> bool:
    try:
        parse_timestamp(value)
        return True
    except ValueError:
        return False


def is_native_n8n_payload(payload: Dict[str, Any]) -> bool:
    """n8n's own execution format carries ExecutionID/Status/Timestamp"""
    return bool(payload.get("ExecutionID") and payload.get("Status") and payload.get("Timestamp"))


def convert_n8n_payload(actual: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Convert n8n's native execution payload into the webhook payload shape"""
    now = now or datetime.now(timezone.utc)
    status = N8N_STATUS_MAP.get(str(actual.get("Status", "")).lower(), "completed")

    return {
        "workflowId": f"workflow-{int(now.timestamp() * 1000)}",
        "workflowName": DEFAULT_WORKFLOW_NAME,
        "executionId": actual.get("ExecutionID"),
        "eventType": "workflow_completed",
        "status": status,
        "startTime": actual.get("Timestamp"),
        "inputData": {
            "leadsGenerated": actual.get("LeadsGenerated"),
            "industryBreakdown": actual.get("IndustryBreakdown"),
            **actual,
        },
        "outputData": {
            "executionId": actual.get("ExecutionID"),
            "status": actual.get("Status"),
            "timestamp": actual.get("Timestamp"),
            "leadsGenerated": actual.get("LeadsGenerated"),
            "industryBreakdown": actual.get("IndustryBreakdown"),
        },
    }


def validate_and_normalize_payload(payload: Any, now: Optional[datetime] = None) -> WebhookValidationResult:
    """
    Validate a webhook payload, converting n8n's native format first.

    Pure: no I/O. Missing optional inputData/outputData only produce warnings.
    """
    if not isinstance(payload, dict):
        return WebhookValidationResult(is_valid=False, errors=["Payload must be a JSON object"])

    errors: List[str] = []
    warnings: List[str] = []

    if is_native_n8n_payload(payload):
        payload = convert_n8n_payload(payload, now=now)
        warnings.append("Payload converted from n8n format")

    if not payload.get("workflowId"):
        errors.append("workflowId is required")

    if not payload.get("workflowName"):
        errors.append("workflowName is required")

    if not payload.get("executionId"):
        errors.append("executionId is required")

    event_type = payload.get("eventType")
    if not event_type:
        errors.append("eventType is required")
    elif event_type not in VALID_EVENT_TYPES:
        errors.append(f"Invalid eventType: {event_type}")

    status = payload.get("status")
    if not status:
        errors.append("status is required")
    elif status not in VALID_STATUSES:
        errors.append(f"Invalid status: {status}")

    if not payload.get("startTime"):
        errors.append("startTime is required")
    elif not _is_valid_timestamp(payload["startTime"]):
        errors.append("Invalid startTime format (must be ISO 8601)")

    if payload.get("endTime") and not _is_valid_timestamp(payload["endTime"]):
        errors.append("Invalid endTime format (must be ISO 8601)")

    if not payload.get("inputData"):
        warnings.append("inputData is missing (optional but recommended)")

    if not payload.get("outputData"):
        warnings.append("outputData is missing (optional but recommended)")

    is_valid = not errors
    return WebhookValidationResult(
        is_valid=is_valid,
        errors=errors,
        warnings=warnings,
        payload=dict(payload) if is_valid else None,
    )


def event_to_payload(event: N8nWebhookEvent) -> Dict[str, Any]:
    """Rebuild the webhook payload from a stored event (optional fields only when present)"""
    payload = {
        "workflowId": event.workflow_id,
        "workflowName": event.workflow_name,
        "executionId": event.execution_id,
        "eventType": event.event_type,
        "status": event.status,
        "startTime": isoformat_or_none(event.start_time),
        "inputData": event.input_data or {},
        "outputData": event.output_data or {},
        "metadata": event.event_metadata or {},
    }
    if event.end_time:
        payload["endTime"] = event.end_time.isoformat()
    if event.duration is not None:
        payload["duration"] = event.duration
    if event.error_message:
        payload["errorMessage"] = event.error_message
    return payload


def _apply_payload(event: N8nWebhookEvent, payload: Dict[str, Any]) -> None:
    start_time = parse_timestamp(payload["startTime"])
    end_time = parse_timestamp(payload["endTime"]) if payload.get("endTime") else None

    duration = payload.get("duration")
    if duration is None and end_time is not None:
        duration = elapsed_ms(start_time, end_time)

    event.workflow_id = payload["workflowId"]
    event.workflow_name = payload["workflowName"]
    event.execution_id = payload["executionId"]
    event.event_type = payload["eventType"]
    event.status = payload["status"]
    event.start_time = start_time
    event.end_time = end_time
    event.duration = duration
    event.input_data = payload.get("inputData") or {}
    event.output_data = payload.get("outputData") or {}
    event.error_message = payload.get("errorMessage")
    event.event_metadata = payload.get("metadata") or {}


class N8nService:
    """n8n webhook integration service"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    # ------------------------------------------------------------------
    # Webhook processing
    # ------------------------------------------------------------------

    def receive_webhook(self, integration_id: str, payload: Any) -> Dict[str, Any]:
        """
        Live webhook endpoint path.

        A valid payload is stored as a pending event and then processed
        immediately; if processing fails the event stays pending and is
        picked up by the next n8n realtime sync.
        """
        validation = validate_and_normalize_payload(payload)
        if not validation.is_valid:
            log.warning(f"Rejected n8n webhook for {integration_id}: {validation.errors}")
            return {"success": False, "errors": validation.errors, "warnings": validation.warnings}

        with session_scope(self.session_factory) as db:
            integration = db.query(N8nIntegration).filter(N8nIntegration.id == integration_id).first()
            if integration is None or not integration.is_active:
                return {
                    "success": False,
                    "errors": [f"No active n8n integration found: {integration_id}"],
                    "warnings": validation.warnings,
                }

            event = N8nWebhookEvent(
                n8n_integration_id=integration_id,
                processing_status=PROCESSING_PENDING,
            )
            _apply_payload(event, validation.payload)
            db.add(event)
            db.flush()
            event_id = event.id

        result = self.process_webhook_event(integration_id, validation.payload, event_id=event_id)
        result["warnings"] = validation.warnings
        return result

    def process_webhook_event(
        self,
        integration_id: str,
        payload: Dict[str, Any],
        event_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Validate and persist one webhook event as processed.

        With event_id the stored event is updated in place (replay of a
        pending event); without it a new event row is created. Never raises.

        Returns:
            {success, event_id, metrics} or {success: False, errors}
        """
        try:
            validation = validate_and_normalize_payload(payload)
            if not validation.is_valid:
                if event_id:
                    self._mark_failed(event_id, validation.errors)
                return {"success": False, "event_id": event_id, "errors": validation.errors}

            with session_scope(self.session_factory) as db:
                event = None
                if event_id:
                    event = db.query(N8nWebhookEvent).filter(N8nWebhookEvent.id == event_id).first()
                if event is None:
                    event = N8nWebhookEvent(n8n_integration_id=integration_id)
                    db.add(event)

                _apply_payload(event, validation.payload)
                event.processing_status = PROCESSING_PROCESSED
                event.processing_errors = None
                event.processed_at = utc_now()
                db.flush()
                stored_id = event.id

            self.update_integration_stats(integration_id)
            metrics = self.calculate_metrics(integration_id)

            return {"success": True, "event_id": stored_id, "metrics": metrics}

        except Exception as e:
            log.error(f"Error processing n8n webhook event: {str(e)}")
            return {"success": False, "event_id": event_id, "errors": [str(e)]}

    def _mark_failed(self, event_id: str, errors: List[str]) -> None:
        with session_scope(self.session_factory) as db:
            event = db.query(N8nWebhookEvent).filter(N8nWebhookEvent.id == event_id).first()
            if event:
                event.processing_status = PROCESSING_FAILED
                event.processing_errors = list(errors)
                event.processed_at = utc_now()

    def update_integration_stats(self, integration_id: str) -> None:
        """Refresh webhook count and last webhook time; clears the last error"""
        try:
            with session_scope(self.session_factory) as db:
                count, last_created = db.query(
                    func.count(N8nWebhookEvent.id),
                    func.max(N8nWebhookEvent.created_at)
                ).filter(N8nWebhookEvent.n8n_integration_id == integration_id).one()

                integration = db.query(N8nIntegration).filter(N8nIntegration.id == integration_id).first()
                if integration is None or count == 0:
                    return

                integration.webhook_count = count
                integration.last_webhook_at = last_created or utc_now()
                integration.last_error_at = None
                integration.error_message = None
        except Exception as e:
            log.error(f"Error updating integration stats for {integration_id}: {str(e)}")

    def calculate_metrics(self, integration_id: str) -> Dict[str, Any]:
        """Performance metrics over the most recent events of an integration"""
        with session_scope(self.session_factory) as db:
            events = db.query(N8nWebhookEvent).filter(
                N8nWebhookEvent.n8n_integration_id == integration_id
            ).order_by(N8nWebhookEvent.created_at.desc()).limit(METRICS_WINDOW).all()

            if not events:
                return {
                    "total_workflows": 0,
                    "successful_workflows": 0,
                    "failed_workflows": 0,
                    "average_execution_time": 0,
                    "total_time_saved": 0,
                    "success_rate": 0,
                    "last_execution_at": None,
                }

            total = len(events)
            successful = len([e for e in events if e.status == "completed"])
            failed = len([e for e in events if e.status == "failed"])

            completed_durations = [e.duration for e in events if e.status == "completed" and e.duration]
            total_time_saved = sum(completed_durations)

            return {
                "total_workflows": total,
                "successful_workflows": successful,
                "failed_workflows": failed,
                "average_execution_time": safe_divide(total_time_saved, len(completed_durations)),
                "total_time_saved": total_time_saved,
                "success_rate": successful / total * 100,
                "last_execution_at": isoformat_or_none(events[0].created_at),
            }

    # ------------------------------------------------------------------
    # Integrations and events
    # ------------------------------------------------------------------

    def get_integration(self, integration_id: str) -> Optional[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            integration = db.query(N8nIntegration).filter(N8nIntegration.id == integration_id).first()
            return integration.to_dict() if integration else None

    def get_integration_by_business_entity(self, business_entity_id: str) -> Optional[Dict[str, Any]]:
        """Active integration for a business entity, if any"""
        with session_scope(self.session_factory) as db:
            integration = db.query(N8nIntegration).filter(
                N8nIntegration.business_entity_id == business_entity_id,
                N8nIntegration.is_active == True  # noqa: E712
            ).first()
            return integration.to_dict() if integration else None

    def create_integration(self, business_entity_id: str, webhook_url: str, webhook_token: str) -> Dict[str, Any]:
        with session_scope(self.session_factory) as db:
            integration = N8nIntegration(
                business_entity_id=business_entity_id,
                webhook_url=webhook_url,
                webhook_token=webhook_token,
                is_active=True,
                webhook_count=0,
            )
            db.add(integration)
            db.flush()
            log.info(f"Created n8n integration {integration.id} for {business_entity_id}")
            return integration.to_dict()

    def update_integration(self, integration_id: str, **changes) -> Optional[Dict[str, Any]]:
        allowed = {"webhook_url", "webhook_token", "is_active"}
        with session_scope(self.session_factory) as db:
            integration = db.query(N8nIntegration).filter(N8nIntegration.id == integration_id).first()
            if integration is None:
                return None
            for key, value in changes.items():
                if key in allowed and value is not None:
                    setattr(integration, key, value)
            db.flush()
            return integration.to_dict()

    def get_pending_events(self, integration_id: str) -> List[Dict[str, Any]]:
        """Stored events not yet processed, oldest first, as replayable payloads"""
        with session_scope(self.session_factory) as db:
            events = db.query(N8nWebhookEvent).filter(
                N8nWebhookEvent.n8n_integration_id == integration_id,
                N8nWebhookEvent.processing_status == PROCESSING_PENDING
            ).order_by(N8nWebhookEvent.created_at.asc()).all()
            return [{"id": e.id, "payload": event_to_payload(e)} for e in events]

    def get_webhook_events(self, integration_id: str, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            events = db.query(N8nWebhookEvent).filter(
                N8nWebhookEvent.n8n_integration_id == integration_id
            ).order_by(N8nWebhookEvent.created_at.desc()).offset(offset).limit(limit).all()
            return [e.to_dict() for e in events]
