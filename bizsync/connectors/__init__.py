"""Data Connectors for the BizSync platform"""

from bizsync.connectors.ga4_connector import GA4Connector, GA4ApiError

__all__ = [
    "GA4Connector",
    "GA4ApiError"
]
