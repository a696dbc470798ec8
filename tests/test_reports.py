"""
Tests for report rendering, storage and the completion event.
"""

import base64
import hashlib
import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from lease_costs.aws.reports import (
    EVENT_SOURCE,
    EventPublisher,
    S3ReportStore,
    render_csv,
    validate_report_key,
)
from lease_costs.core.cost_aggregation import CostReport, ResourceCost, ServiceCost
from lease_costs.core.errors import EventEmissionError, SchemaValidationError
from lease_costs.core.schemas import LeaseCostsGenerated

LEASE_UUID = "550e8400-e29b-41d4-a716-446655440000"
KEY = f"{LEASE_UUID}.csv"
NOW = datetime(2026, 2, 3, 15, 0, tzinfo=timezone.utc)


def report(resources=None):
    return CostReport(
        account_id="123456789012",
        start_date="2026-01-15",
        end_date="2026-02-03",
        total_cost=150.0,
        total_cents=15000,
        costs_by_service=(
            ServiceCost("Amazon EC2", 100.0, 10000),
            ServiceCost("Amazon S3, Standard", 50.0, 5000),
        ),
        costs_by_resource=resources,
    )


def completion_event(report_url="https://bucket.s3.amazonaws.com/report.csv?X-Amz-Signature=abc"):
    return LeaseCostsGenerated(
        lease_id=LEASE_UUID,
        user_email="user@example.com",
        account_id="123456789012",
        total_cost=150.0,
        start_date="2026-01-15",
        end_date="2026-02-03",
        report_url=report_url,
        url_expires_at="2026-02-09T14:55:00.000Z",
    )


class TestRenderCsv:
    """Test CSV layouts."""

    def test_service_layout(self):
        """Test the per-service layout with quoting."""
        assert render_csv(report()) == (
            "Service,Cost\n"
            "Amazon EC2,100.00\n"
            '"Amazon S3, Standard",50.00\n'
        )

    def test_resource_layout(self):
        """Test the per-resource layout keeps sub-cent precision."""
        resources = (
            ResourceCost("i-abc", "i-abc", "Amazon EC2", "us-east-1", 99.9999, 10000),
            ResourceCost("unattributed", "Unattributed", "Amazon S3", "global", 50.0, 5000),
        )
        assert render_csv(report(resources)) == (
            "Resource Name,Service,Region,Cost\n"
            "i-abc,Amazon EC2,us-east-1,99.9999\n"
            "Unattributed,Amazon S3,global,50\n"
        )

    def test_empty_resource_breakdown(self):
        assert render_csv(report(resources=())) == "Resource Name,Service,Region,Cost\n"


class TestReportKey:
    """Test report key validation."""

    def test_valid(self):
        validate_report_key(KEY)

    @pytest.mark.parametrize("key", ["", "  ", "report.csv", f"../{KEY}", f"reports/{KEY}", f"{LEASE_UUID}.txt"])
    def test_invalid(self, key):
        with pytest.raises(ValueError):
            validate_report_key(key)


class TestS3ReportStore:
    """Test upload and presigning."""

    def test_upload_with_checksum(self):
        """Test encryption, content type and a matching SHA-256."""
        client = MagicMock()
        client.put_object.return_value = {"ETag": '"abc"'}
        body = "Service,Cost\nAmazon EC2,100.00\n"

        result = S3ReportStore(client, "reports-bucket").upload(KEY, body)

        kwargs = client.put_object.call_args.kwargs
        expected = base64.b64encode(hashlib.sha256(body.encode()).digest()).decode()
        assert kwargs["Bucket"] == "reports-bucket"
        assert kwargs["Key"] == KEY
        assert kwargs["Body"] == body.encode()
        assert kwargs["ContentType"] == "text/csv"
        assert kwargs["ServerSideEncryption"] == "AES256"
        assert kwargs["ChecksumSHA256"] == expected
        assert result.etag == '"abc"'
        assert result.checksum == expected

    def test_upload_without_etag(self):
        client = MagicMock()
        client.put_object.return_value = {}
        with pytest.raises(ValueError, match="no ETag"):
            S3ReportStore(client, "b").upload(KEY, "x")

    def test_upload_rejects_bad_key(self):
        client = MagicMock()
        with pytest.raises(ValueError):
            S3ReportStore(client, "b").upload("../etc/passwd", "x")
        client.put_object.assert_not_called()

    def test_presign_expiry(self):
        """Test that the advertised expiry is 7 days minus the skew buffer."""
        client = MagicMock()
        client.generate_presigned_url.return_value = "https://signed"
        store = S3ReportStore(client, "b", clock=NOW.timestamp)

        url, expires_at = store.presign(KEY, 7)

        assert url == "https://signed"
        assert expires_at == datetime(2026, 2, 10, 14, 55, tzinfo=timezone.utc)
        client.generate_presigned_url.assert_called_once_with(
            "get_object",
            Params={"Bucket": "b", "Key": KEY, "ResponseContentType": "text/csv"},
            ExpiresIn=7 * 86400 - 300,
        )

    @pytest.mark.parametrize("days", [0, 8])
    def test_presign_expiry_bounds(self, days):
        with pytest.raises(ValueError, match="expiry_days"):
            S3ReportStore(MagicMock(), "b").presign(KEY, days)


class TestEventPublisher:
    """Test completion event emission."""

    def test_publish(self):
        """Test the entry's source, type and detail."""
        client = MagicMock()
        client.put_events.return_value = {"FailedEntryCount": 0, "Entries": [{"EventId": "1"}]}

        EventPublisher(client, "isb-events").publish(completion_event())

        entry = client.put_events.call_args.kwargs["Entries"][0]
        assert entry["EventBusName"] == "isb-events"
        assert entry["Source"] == EVENT_SOURCE
        assert entry["DetailType"] == "LeaseCostsGenerated"
        assert json.loads(entry["Detail"])["totalCost"] == 150.0

    def test_failed_entry(self):
        """Test that a rejected entry raises with the event context."""
        client = MagicMock()
        client.put_events.return_value = {
            "FailedEntryCount": 1,
            "Entries": [{"ErrorCode": "InternalFailure", "ErrorMessage": "boom"}],
        }
        with pytest.raises(EventEmissionError) as excinfo:
            EventPublisher(client, "bus").publish(completion_event())
        message = str(excinfo.value)
        assert LEASE_UUID in message
        assert "totalCost=$150.00" in message
        assert "InternalFailure: boom" in message

    def test_invalid_detail_not_sent(self):
        client = MagicMock()
        with pytest.raises(SchemaValidationError):
            EventPublisher(client, "bus").publish(completion_event(report_url="ftp://x/y.csv"))
        client.put_events.assert_not_called()
