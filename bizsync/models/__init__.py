"""Database models for the BizSync platform"""

from bizsync.models.sync import (
    SyncJob,
    SyncConfig,
    SyncJobType,
    SyncJobStatus
)

from bizsync.models.integrations import (
    GoogleAnalyticsIntegration,
    N8nIntegration,
    N8nWebhookEvent
)

from bizsync.models.metric import (
    Metric,
    DataArchive
)
