"""
Business metrics for completed collections.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

NAMESPACE = "ISBLeaseCosts"
SERVICE_DIMENSION = "LeaseCostCollection"


class CloudWatchMetrics:
    """Publishes per-collection metrics. Never raises: metrics are best-effort."""

    def __init__(self, client: Any, namespace: str = NAMESPACE):
        self.client = client
        self.namespace = namespace

    def record_collection(
        self,
        account_id: str,
        total_cost: float,
        resource_count: int,
        duration_seconds: float,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """Publish TotalCost, ResourceCount and ProcessingDuration.

        Returns:
            True if the metrics were accepted
        """
        timestamp = timestamp or datetime.now(timezone.utc)
        dimensions = [
            {"Name": "AccountId", "Value": account_id},
            {"Name": "Service", "Value": SERVICE_DIMENSION},
        ]
        # USD is not a CloudWatch unit
        data = [
            ("TotalCost", total_cost, "None"),
            ("ResourceCount", resource_count, "Count"),
            ("ProcessingDuration", duration_seconds, "Seconds"),
        ]
        try:
            self.client.put_metric_data(
                Namespace=self.namespace,
                MetricData=[
                    {
                        "MetricName": name,
                        "Value": value,
                        "Unit": unit,
                        "Timestamp": timestamp,
                        "Dimensions": dimensions,
                    }
                    for name, value, unit in data
                ],
            )
        except Exception as e:
            logger.error("Failed to emit CloudWatch metrics", extra={"accountId": account_id, "error": str(e)})
            return False
        return True
