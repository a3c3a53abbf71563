"""
Alert Service
Notifies operators when a sync job fails for good, by email and Slack.

Each channel is retried with exponential backoff on transient errors. A
channel that is not configured is skipped with a warning.
"""
import smtplib
import asyncio
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Any, Awaitable, Callable, Dict, List, Optional
import aiohttp
from datetime import datetime
from dataclasses import dataclass, field

from bizsync.config import get_settings
from bizsync.utils.helpers import utc_now
from bizsync.utils.logger import log
from bizsync.utils.retry import calculate_backoff, is_retryable_error

settings = get_settings()

ALERT_COLOR = '#dc3545'

# Alert fields shown in the email table and as Slack fields
ALERT_FIELDS = (
    ('business_entity_id', 'Business entity'),
    ('job_type', 'Job type'),
    ('retry_count', 'Retries'),
    ('sync_job_id', 'Sync job'),
    ('timestamp', 'Failed at'),
)


class SlackDeliveryError(Exception):
    """Non-200 response from the Slack webhook"""

    def __init__(self, status: int):
        super().__init__(f"HTTP {status}")
        self.status = status


@dataclass
class DeliveryResult:
    """Outcome of delivering one alert on one channel"""
    channel: str
    success: bool = False
    attempts: int = 0
    total_delay_seconds: float = 0.0
    errors: List[str] = field(default_factory=list)

    @property
    def final_error(self) -> Optional[str]:
        return self.errors[-1] if self.errors else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'attempts': self.attempts,
            'total_delay_seconds': self.total_delay_seconds,
            'errors': self.errors[:5],
            'final_error': self.final_error,
        }


@dataclass
class SyncFailureAlert:
    """Alert raised when a sync job exhausts its retries"""
    business_entity_id: str
    job_type: str
    error: str
    retry_count: int
    timestamp: datetime = field(default_factory=utc_now)
    sync_job_id: Optional[str] = None
    email_recipients: List[str] = field(default_factory=list)

    @property
    def title(self) -> str:
        return f"Sync Failed: {self.job_type} for {self.business_entity_id}"

    @property
    def summary(self) -> str:
        return (
            f"The {self.job_type} sync for business entity {self.business_entity_id} "
            f"failed after {self.retry_count} retries."
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'business_entity_id': self.business_entity_id,
            'job_type': self.job_type,
            'error': self.error,
            'retry_count': self.retry_count,
            'timestamp': self.timestamp.isoformat(),
            'sync_job_id': self.sync_job_id,
        }

    def fields(self) -> List[tuple]:
        """(label, value) pairs for display, skipping empty values"""
        data = self.to_dict()
        return [(label, data[key]) for key, label in ALERT_FIELDS if data.get(key) is not None]


class AlertService:
    """Delivers sync failure alerts"""

    MAX_ATTEMPTS = 3
    BASE_DELAY = 2.0  # seconds
    MAX_DELAY = 30.0  # seconds

    def __init__(self):
        self.smtp_configured = all([
            settings.smtp_host,
            settings.smtp_user,
            settings.smtp_password
        ])
        self.slack_configured = bool(settings.slack_webhook_url)

        self.total_sent = 0
        self.total_failed = 0
        self.total_retries = 0

    async def send_sync_failure_alert(self, alert: SyncFailureAlert) -> Dict[str, Any]:
        """
        Send an alert to the tenant's email recipients and to Slack.

        Returns:
            {success: any channel delivered, results: {channel: delivery dict}}
        """
        log.warning(f"{alert.title} after {alert.retry_count} retries: {alert.error}")

        results: Dict[str, DeliveryResult] = {}
        if alert.email_recipients:
            results['email'] = await self.send_email_alert(alert)
        if self.slack_configured:
            results['slack'] = await self.send_slack_alert(alert)

        return {
            'success': any(r.success for r in results.values()),
            'results': {channel: r.to_dict() for channel, r in results.items()},
        }

    async def _deliver(
        self,
        channel: str,
        send_once: Callable[[], Awaitable[None]],
        is_retryable: Callable[[Exception], bool]
    ) -> DeliveryResult:
        result = DeliveryResult(channel=channel)

        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            result.attempts = attempt
            try:
                await send_once()
            except Exception as e:
                result.errors.append(f"{type(e).__name__}: {str(e)}")

                if attempt >= self.MAX_ATTEMPTS or not is_retryable(e):
                    self.total_failed += 1
                    log.error(f"{channel} alert failed after {attempt} attempts: {result.final_error}")
                    return result

                delay = calculate_backoff(attempt, base_delay=self.BASE_DELAY, max_delay=self.MAX_DELAY)
                result.total_delay_seconds += delay
                log.warning(f"{channel} alert attempt {attempt} failed, retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                continue

            result.success = True
            self.total_sent += 1
            self.total_retries += attempt - 1
            log.info(f"{channel} alert sent (attempt {attempt})")
            return result

        return result

    # ------------------------------------------------------------------
    # Email
    # ------------------------------------------------------------------

    async def send_email_alert(self, alert: SyncFailureAlert) -> DeliveryResult:
        if not self.smtp_configured:
            log.warning("Email not configured, skipping email alert")
            return DeliveryResult(channel='email', errors=["Email not configured"])

        msg = self._build_email(alert)

        async def send_once():
            # smtplib is blocking
            await asyncio.to_thread(self._deliver_email, msg)

        return await self._deliver('email', send_once, self._is_retryable_email_error)

    def _build_email(self, alert: SyncFailureAlert) -> MIMEMultipart:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = f"[SYNC FAILURE] {alert.title}"
        msg['From'] = settings.alert_email_from or settings.smtp_user
        msg['To'] = ", ".join(alert.email_recipients)

        text = f"{alert.summary}\n\nError: {alert.error}\n\n" + "\n".join(
            f"{label}: {value}" for label, value in alert.fields()
        )
        msg.attach(MIMEText(text, 'plain'))
        msg.attach(MIMEText(self._create_html_email(alert), 'html'))
        return msg

    def _deliver_email(self, msg: MIMEMultipart) -> None:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.send_message(msg)

    def _is_retryable_email_error(self, error: Exception) -> bool:
        # 4xx replies are temporary, 5xx are permanent
        if isinstance(error, smtplib.SMTPResponseException):
            return 400 <= error.smtp_code < 500
        return is_retryable_error(error)

    def _create_html_email(self, alert: SyncFailureAlert) -> str:
        rows = "".join(
            f"<tr><td><b>{label}</b></td><td>{value}</td></tr>" for label, value in alert.fields()
        )
        return (
            "<html><body style=\"font-family: Arial, sans-serif;\">"
            f"<div style=\"background:{ALERT_COLOR};color:#fff;padding:16px;\"><h2>{alert.title}</h2></div>"
            f"<p>{alert.summary}</p>"
            f"<pre style=\"background:#f8f9fa;padding:12px;\">{alert.error}</pre>"
            f"<table cellpadding=\"6\">{rows}</table>"
            f"<p style=\"font-size:12px;color:#6c757d;\">{settings.app_name}</p>"
            "</body></html>"
        )

    # ------------------------------------------------------------------
    # Slack
    # ------------------------------------------------------------------

    async def send_slack_alert(self, alert: SyncFailureAlert) -> DeliveryResult:
        if not self.slack_configured:
            log.warning("Slack not configured, skipping Slack alert")
            return DeliveryResult(channel='slack', errors=["Slack not configured"])

        payload = self._build_slack_payload(alert)

        async def send_once():
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30)) as session:
                async with session.post(settings.slack_webhook_url, json=payload) as response:
                    if response.status != 200:
                        raise SlackDeliveryError(response.status)

        return await self._deliver('slack', send_once, self._is_retryable_slack_error)

    def _build_slack_payload(self, alert: SyncFailureAlert) -> Dict[str, Any]:
        return {
            "attachments": [{
                "color": ALERT_COLOR,
                "title": alert.title,
                "text": f"{alert.summary}\n```{alert.error}```",
                "fields": [
                    {"title": label, "value": str(value), "short": True}
                    for label, value in alert.fields()
                ],
                "footer": settings.app_name,
            }]
        }

    def _is_retryable_slack_error(self, error: Exception) -> bool:
        # Rate limits and server errors; other 4xx will not succeed on retry
        if isinstance(error, SlackDeliveryError):
            return error.status == 429 or error.status >= 500
        if isinstance(error, (aiohttp.ClientError, asyncio.TimeoutError)):
            return True
        return is_retryable_error(error)

    def get_delivery_stats(self) -> Dict[str, Any]:
        """Delivery statistics for monitoring."""
        total = self.total_sent + self.total_failed
        return {
            "total_sent": self.total_sent,
            "total_failed": self.total_failed,
            "total_retries": self.total_retries,
            "success_rate": round(self.total_sent / total * 100, 2) if total else 0.0,
            "channels_configured": {
                "email": self.smtp_configured,
                "slack": self.slack_configured
            }
        }
