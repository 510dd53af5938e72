"""Resource API client and models used by the check manager."""

from trapmetrics.api.client import APIClient, check_uuid_from_submission_url
from trapmetrics.api.models import Broker, BrokerDetail, Check, CheckBundle, CheckBundleMetric

__all__ = [
    "APIClient",
    "Broker",
    "BrokerDetail",
    "Check",
    "CheckBundle",
    "CheckBundleMetric",
    "check_uuid_from_submission_url",
]
