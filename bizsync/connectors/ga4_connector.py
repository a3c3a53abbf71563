"""
Google Analytics 4 data connector
Fetches daily traffic metrics (sessions, users, pageviews) for a GA4 property

This is the GA4 client used by DataSyncService's daily sync.
"""
import asyncio
from datetime import date
from typing import Any, Dict, List, Optional

from dateutil import parser as date_parser
from google.analytics.data_v1beta import BetaAnalyticsDataClient
from google.analytics.data_v1beta.types import (
    DateRange,
    Dimension,
    Metric,
    RunReportRequest,
)
from google.oauth2 import service_account

from bizsync.config import get_settings
from bizsync.utils.logger import log

settings = get_settings()

# GA4 metric name -> key in the returned rows
BASIC_METRICS = {
    "sessions": "sessions",
    "totalUsers": "users",
    "screenPageViews": "pageviews",
}


class GA4ApiError(Exception):
    """Raised when the GA4 Data API cannot be reached or returns an error"""
    code = "GA4_API_ERROR"


class GA4Connector:
    """Connector for Google Analytics 4"""

    def __init__(self, credentials_path: Optional[str] = None, client: Optional[BetaAnalyticsDataClient] = None):
        self.name = "Google Analytics 4"
        self.credentials_path = credentials_path or settings.ga4_credentials_path
        self.client = client

    def connect(self) -> BetaAnalyticsDataClient:
        """Build the Data API client from the service account file"""
        if self.client is not None:
            return self.client
        try:
            credentials = service_account.Credentials.from_service_account_file(
                self.credentials_path
            )
            self.client = BetaAnalyticsDataClient(credentials=credentials)
            log.info("Connected to Google Analytics 4")
            return self.client
        except Exception as e:
            log.error(f"Failed to connect to GA4: {str(e)}")
            raise GA4ApiError(f"Failed to connect to GA4: {str(e)}") from e

    async def get_basic_metrics(
        self,
        property_id: str,
        start_date: date,
        end_date: date
    ) -> List[Dict[str, Any]]:
        """
        Fetch daily sessions, users and pageviews for a property.

        Returns:
            One dict per day: {date, sessions, users, pageviews}. A metric
            missing from the response is None.
        """
        client = self.connect()

        request = RunReportRequest(
            property=f"properties/{property_id}",
            date_ranges=[DateRange(
                start_date=start_date.strftime("%Y-%m-%d"),
                end_date=end_date.strftime("%Y-%m-%d")
            )],
            dimensions=[Dimension(name="date")],
            metrics=[Metric(name=name) for name in BASIC_METRICS],
        )

        try:
            # The Data API client is blocking
            response = await asyncio.to_thread(client.run_report, request)
        except Exception as e:
            log.error(f"GA4 report failed for property {property_id}: {str(e)}")
            raise GA4ApiError(str(e)) from e

        return self._parse_rows(response)

    def _parse_rows(self, response) -> List[Dict[str, Any]]:
        header_names = [h.name for h in response.metric_headers] or list(BASIC_METRICS)

        rows = []
        for row in response.rows:
            # GA4 returns dates as YYYYMMDD
            day = date_parser.parse(row.dimension_values[0].value).date()
            item: Dict[str, Any] = {key: None for key in BASIC_METRICS.values()}
            item["date"] = day

            for header, value in zip(header_names, row.metric_values):
                key = BASIC_METRICS.get(header)
                if key is None or value.value in (None, ""):
                    continue
                item[key] = int(float(value.value))

            rows.append(item)

        log.info(f"Fetched {len(rows)} GA4 daily rows")
        return rows
