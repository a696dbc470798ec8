"""
Report rendering, storage and the completion event.
"""

import base64
import csv
import hashlib
import io
import json
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Tuple

from ..core.cost_aggregation import CostReport
from ..core.errors import EventEmissionError
from ..core.schemas import LEASE_COSTS_GENERATED, LeaseCostsGenerated

logger = logging.getLogger(__name__)

EVENT_SOURCE = "isb-costs"
CLOCK_SKEW_BUFFER_SECONDS = 5 * 60
MIN_URL_EXPIRY_DAYS = 1
MAX_URL_EXPIRY_DAYS = 7     # SigV4 presigned URL ceiling

_REPORT_KEY_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\.csv$", re.IGNORECASE
)


def _format_resource_cost(cost: float) -> str:
    return f"{cost:.10f}".rstrip("0").rstrip(".") or "0"


def render_csv(report: CostReport) -> str:
    """Render a report as CSV: per resource when a breakdown exists, else per service."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")

    if report.costs_by_resource is not None:
        writer.writerow(["Resource Name", "Service", "Region", "Cost"])
        for resource in report.costs_by_resource:
            writer.writerow([
                resource.resource_name,
                resource.service_name,
                resource.region,
                _format_resource_cost(resource.cost),
            ])
    else:
        writer.writerow(["Service", "Cost"])
        for service in report.costs_by_service:
            writer.writerow([service.service_name, f"{service.cost:.2f}"])

    return buffer.getvalue()


def validate_report_key(key: str) -> None:
    """Only ``<uuid>.csv`` keys at the bucket root are accepted.

    Raises:
        ValueError: On an empty, malformed or path-like key
    """
    if not key or not key.strip():
        raise ValueError("Report key cannot be empty")
    if not _REPORT_KEY_PATTERN.match(key):
        raise ValueError(f"Invalid report key format: {key}. Expected format: <uuid>.csv")


def sha256_checksum(body: str) -> str:
    """Base64 SHA-256 digest, the form S3 expects for ChecksumSHA256."""
    return base64.b64encode(hashlib.sha256(body.encode("utf-8")).digest()).decode("ascii")


@dataclass(frozen=True)
class UploadResult:
    etag: str
    checksum: str


class S3ReportStore:
    """Stores reports in one bucket and hands out time-limited download links."""

    def __init__(self, client: Any, bucket: str, clock: Callable[[], float] = time.time):
        self.client = client
        self.bucket = bucket
        self.clock = clock

    def upload(self, key: str, body: str) -> UploadResult:
        """Upload a CSV report with an integrity checksum.

        Raises:
            ValueError: If the key is invalid or S3 returns no ETag
        """
        validate_report_key(key)
        checksum = sha256_checksum(body)
        response = self.client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=body.encode("utf-8"),
            ContentType="text/csv",
            ServerSideEncryption="AES256",
            ChecksumSHA256=checksum,
        )
        etag = response.get("ETag")
        if not etag:
            raise ValueError(
                f"S3 upload succeeded but no ETag returned for s3://{self.bucket}/{key}. Checksum: {checksum}"
            )
        logger.info("Uploaded report", extra={"bucket": self.bucket, "key": key, "etag": etag})
        return UploadResult(etag=etag, checksum=checksum)

    def presign(self, key: str, expiry_days: int) -> Tuple[str, datetime]:
        """Presigned GET URL and the instant it stops working.

        The lifetime is shortened by a small buffer so the advertised expiry
        is never later than the real one.
        """
        validate_report_key(key)
        if not MIN_URL_EXPIRY_DAYS <= expiry_days <= MAX_URL_EXPIRY_DAYS:
            raise ValueError(
                f"expiry_days must be between {MIN_URL_EXPIRY_DAYS} and {MAX_URL_EXPIRY_DAYS}, got {expiry_days}"
            )
        expires_in = int(timedelta(days=expiry_days).total_seconds()) - CLOCK_SKEW_BUFFER_SECONDS
        expires_at = datetime.fromtimestamp(self.clock(), tz=timezone.utc) + timedelta(seconds=expires_in)
        url = self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key, "ResponseContentType": "text/csv"},
            ExpiresIn=expires_in,
        )
        return url, expires_at


class EventPublisher:
    """Emits LeaseCostsGenerated to the event bus."""

    def __init__(self, client: Any, bus_name: str):
        self.client = client
        self.bus_name = bus_name

    def publish(self, detail: LeaseCostsGenerated) -> None:
        """Validate and emit a completion event.

        Raises:
            SchemaValidationError: If the detail violates the published schema
            EventEmissionError: If the bus reports a failed entry
        """
        detail.validate()
        response = self.client.put_events(
            Entries=[
                {
                    "EventBusName": self.bus_name,
                    "Source": EVENT_SOURCE,
                    "DetailType": LEASE_COSTS_GENERATED,
                    "Detail": json.dumps(detail.to_dict()),
                }
            ]
        )

        if response.get("FailedEntryCount", 0) > 0:
            errors = "; ".join(
                f"{entry.get('ErrorCode')}: {entry.get('ErrorMessage')}"
                for entry in response.get("Entries", [])
                if entry.get("ErrorCode")
            )
            raise EventEmissionError(
                f"Failed to emit {LEASE_COSTS_GENERATED} event: "
                f"leaseId={detail.lease_id}, accountId={detail.account_id}, "
                f"totalCost=${detail.total_cost:.2f}, reportUrl={detail.report_url}. "
                f"EventBridge error: {errors}"
            )
        logger.info("Emitted completion event", extra={"leaseId": detail.lease_id, "accountId": detail.account_id})
