"""
Tests for collection metrics.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

from lease_costs.aws.metrics import CloudWatchMetrics

TIMESTAMP = datetime(2026, 2, 3, 15, 0, tzinfo=timezone.utc)


class TestCloudWatchMetrics:
    """Test metric publication."""

    def test_publishes_three_metrics(self):
        """Test names, units and dimensions."""
        client = MagicMock()
        assert CloudWatchMetrics(client).record_collection("123456789012", 150.0, 4, 2.5, timestamp=TIMESTAMP)

        kwargs = client.put_metric_data.call_args.kwargs
        assert kwargs["Namespace"] == "ISBLeaseCosts"
        data = {m["MetricName"]: m for m in kwargs["MetricData"]}
        assert (data["TotalCost"]["Value"], data["TotalCost"]["Unit"]) == (150.0, "None")
        assert (data["ResourceCount"]["Value"], data["ResourceCount"]["Unit"]) == (4, "Count")
        assert (data["ProcessingDuration"]["Value"], data["ProcessingDuration"]["Unit"]) == (2.5, "Seconds")
        assert data["TotalCost"]["Dimensions"] == [
            {"Name": "AccountId", "Value": "123456789012"},
            {"Name": "Service", "Value": "LeaseCostCollection"},
        ]
        assert data["TotalCost"]["Timestamp"] == TIMESTAMP

    def test_failure_is_swallowed(self):
        """Test that a metrics outage never fails a collection."""
        client = MagicMock()
        client.put_metric_data.side_effect = RuntimeError("throttled")
        assert CloudWatchMetrics(client, namespace="Test").record_collection("123456789012", 1.0, 0, 0.1) is False
