"""
Event and payload schemas.

Four kinds of boundary data with different strictness:

1. Inbound termination signal - full event envelope, validated before any
   side effect.
2. Deferred trigger payload - internal and strict; unknown fields rejected
   because both producer and consumer live in this package.
3. Completion event - public contract. Changes must stay backward
   compatible: add optional fields only, never remove, rename or retype.
   The event may be delivered more than once for the same lease; consumers
   must deduplicate on ``leaseId``.
4. Lease-metadata API response - permissive; unknown fields are kept.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlparse

from .billing_window import parse_timestamp
from .errors import InvalidTimestamp, SchemaValidationError

UUID_V4_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
ACCOUNT_ID_PATTERN = re.compile(r"^\d{12}$")
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
STRICT_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*[a-zA-Z]")
NON_PRINTABLE_ASCII = re.compile(r"[^\x20-\x7e]")

UUID_V4_MAX_LENGTH = 36
EMAIL_MAX_LENGTH = 254
SOURCE_MAX_LENGTH = 256
REASON_TYPE_MAX_LENGTH = 128
TIMESTAMP_MAX_LENGTH = 30
TRIGGER_NAME_MAX_LENGTH = 64
URL_MAX_LENGTH = 2048
LEASE_STATUS_MAX_LENGTH = 64

LEASE_TERMINATED = "LeaseTerminated"
LEASE_COSTS_GENERATED = "LeaseCostsGenerated"
CURRENCY = "USD"


def sanitize_for_log(value: Any) -> str:
    """Strip ANSI escape codes and non-printable characters before logging."""
    text = ANSI_ESCAPE_PATTERN.sub("", str(value))
    return NON_PRINTABLE_ASCII.sub("", text)


def is_uuid_v4(value: Any) -> bool:
    return isinstance(value, str) and len(value) <= UUID_V4_MAX_LENGTH and bool(UUID_V4_PATTERN.match(value))


class _Checker:
    """Collects validation problems so a single error lists all of them."""

    def __init__(self):
        self.problems: List[str] = []

    def fail(self, path: str, message: str) -> None:
        self.problems.append(f"{path}: {message}")

    def string(self, data: Mapping, key: str, path: str, max_length: int) -> Optional[str]:
        value = data.get(key)
        if not isinstance(value, str):
            self.fail(path, "required string")
            return None
        if len(value) > max_length:
            self.fail(path, f"must not exceed {max_length} characters")
            return None
        return value

    def uuid_v4(self, data: Mapping, key: str, path: str) -> Optional[str]:
        value = self.string(data, key, path, UUID_V4_MAX_LENGTH)
        if value is not None and not UUID_V4_PATTERN.match(value):
            self.fail(path, "must be a valid UUID v4 (xxxxxxxx-xxxx-4xxx-yxxx-xxxxxxxxxxxx)")
            return None
        return value

    def account_id(self, data: Mapping, key: str, path: str) -> Optional[str]:
        value = self.string(data, key, path, 12)
        if value is not None and not ACCOUNT_ID_PATTERN.match(value):
            self.fail(path, "AWS account ID must be exactly 12 digits")
            return None
        return value

    def email(self, data: Mapping, key: str, path: str) -> Optional[str]:
        value = self.string(data, key, path, EMAIL_MAX_LENGTH)
        if value is None:
            return None
        if ANSI_ESCAPE_PATTERN.search(value):
            self.fail(path, "email contains ANSI escape codes")
            return None
        if NON_PRINTABLE_ASCII.search(value):
            self.fail(path, "email contains non-ASCII characters")
            return None
        if not STRICT_EMAIL_PATTERN.match(value):
            self.fail(path, "email format validation failed")
            return None
        return value

    def timestamp(self, data: Mapping, key: str, path: str) -> Optional[str]:
        value = self.string(data, key, path, TIMESTAMP_MAX_LENGTH)
        if value is None:
            return None
        try:
            parse_timestamp(value)
        except InvalidTimestamp:
            self.fail(path, "must be an ISO-8601 timestamp")
            return None
        return value

    def date(self, data: Mapping, key: str, path: str) -> Optional[str]:
        value = self.string(data, key, path, 10)
        if value is not None and not DATE_PATTERN.match(value):
            self.fail(path, "must be a YYYY-MM-DD date")
            return None
        return value

    def mapping(self, data: Mapping, key: str, path: str) -> Optional[Mapping]:
        value = data.get(key)
        if not isinstance(value, Mapping):
            self.fail(path, "required object")
            return None
        return value

    def no_unknown_keys(self, data: Mapping, allowed, path: str) -> None:
        unknown = set(data.keys()) - set(allowed)
        if unknown:
            self.fail(path, f"unknown keys {sorted(unknown)}")

    def raise_if_failed(self, schema: str) -> None:
        if self.problems:
            raise SchemaValidationError(schema, self.problems)


@dataclass(frozen=True)
class LeaseId:
    """Composite lease identity: the owning user and the lease UUID."""
    user_email: str
    uuid: str


@dataclass(frozen=True)
class TerminationSignal:
    """Validated LeaseTerminated event."""
    lease_id: LeaseId
    account_id: str
    source: str
    reason_type: Optional[str] = None


def parse_termination_signal(event: Any) -> TerminationSignal:
    """Validate a LeaseTerminated event envelope.

    Raises:
        SchemaValidationError: If the envelope or its detail is malformed
    """
    check = _Checker()
    if not isinstance(event, Mapping):
        check.fail("event", "required object")
        check.raise_if_failed("LeaseTerminated event")

    if event.get("detail-type") != LEASE_TERMINATED:
        check.fail("detail-type", f"must be '{LEASE_TERMINATED}'")
    source = check.string(event, "source", "source", SOURCE_MAX_LENGTH)

    detail = check.mapping(event, "detail", "detail")
    user_email = uuid = account_id = reason_type = None
    if detail is not None:
        lease_id = check.mapping(detail, "leaseId", "detail.leaseId")
        if lease_id is not None:
            user_email = check.email(lease_id, "userEmail", "detail.leaseId.userEmail")
            uuid = check.uuid_v4(lease_id, "uuid", "detail.leaseId.uuid")
        account_id = check.account_id(detail, "accountId", "detail.accountId")
        reason = detail.get("reason")
        if reason is not None:
            if not isinstance(reason, Mapping):
                check.fail("detail.reason", "must be an object")
            else:
                reason_type = check.string(reason, "type", "detail.reason.type", REASON_TYPE_MAX_LENGTH)

    check.raise_if_failed("LeaseTerminated event")
    return TerminationSignal(
        lease_id=LeaseId(user_email=user_email, uuid=uuid),
        account_id=account_id,
        source=source,
        reason_type=reason_type,
    )


@dataclass(frozen=True)
class DeferredTriggerPayload:
    """Context the deferred invocation needs to resume a lease's collection."""
    lease_id: str
    user_email: str
    account_id: str
    lease_end_timestamp: str
    trigger_name: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "leaseId": self.lease_id,
            "userEmail": self.user_email,
            "accountId": self.account_id,
            "leaseEndTimestamp": self.lease_end_timestamp,
            "triggerName": self.trigger_name,
        }


_PAYLOAD_KEYS = ("leaseId", "userEmail", "accountId", "leaseEndTimestamp", "triggerName")


def parse_trigger_payload(data: Any) -> DeferredTriggerPayload:
    """Validate the strict internal payload carried by a deferred trigger.

    Raises:
        SchemaValidationError: On missing, malformed or unknown fields
    """
    check = _Checker()
    if not isinstance(data, Mapping):
        check.fail("payload", "required object")
        check.raise_if_failed("trigger payload")

    check.no_unknown_keys(data, _PAYLOAD_KEYS, "payload")
    lease_id = check.uuid_v4(data, "leaseId", "leaseId")
    user_email = check.email(data, "userEmail", "userEmail")
    account_id = check.account_id(data, "accountId", "accountId")
    lease_end = check.timestamp(data, "leaseEndTimestamp", "leaseEndTimestamp")
    trigger_name = check.string(data, "triggerName", "triggerName", TRIGGER_NAME_MAX_LENGTH)

    check.raise_if_failed("trigger payload")
    return DeferredTriggerPayload(
        lease_id=lease_id,
        user_email=user_email,
        account_id=account_id,
        lease_end_timestamp=lease_end,
        trigger_name=trigger_name,
    )


@dataclass(frozen=True)
class LeaseDetails:
    """Lease metadata returned by the lease API. Unknown fields are kept in ``extra``."""
    start_date: str
    expiration_date: str
    aws_account_id: str
    status: str
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_api(cls, data: Any) -> "LeaseDetails":
        """Validate a lease-metadata response body.

        Raises:
            SchemaValidationError: If a required field is missing or malformed
        """
        check = _Checker()
        if not isinstance(data, Mapping):
            check.fail("lease", "required object")
            check.raise_if_failed("lease details")

        start_date = check.timestamp(data, "startDate", "startDate")
        expiration_date = check.timestamp(data, "expirationDate", "expirationDate")
        account_id = check.account_id(data, "awsAccountId", "awsAccountId")
        status = check.string(data, "status", "status", LEASE_STATUS_MAX_LENGTH)
        check.raise_if_failed("lease details")

        known = {"startDate", "expirationDate", "awsAccountId", "status"}
        return cls(
            start_date=start_date,
            expiration_date=expiration_date,
            aws_account_id=account_id,
            status=status,
            extra={k: v for k, v in data.items() if k not in known},
        )


@dataclass(frozen=True)
class LeaseCostsGenerated:
    """Detail of the outbound completion event.

    Public contract: only additive, optional-field changes are allowed.
    Emission is at-least-once; deduplicate on ``lease_id``.
    """
    lease_id: str
    user_email: str
    account_id: str
    total_cost: float
    start_date: str
    end_date: str
    report_url: str
    url_expires_at: str
    currency: str = CURRENCY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leaseId": self.lease_id,
            "userEmail": self.user_email,
            "accountId": self.account_id,
            "totalCost": self.total_cost,
            "currency": self.currency,
            "startDate": self.start_date,
            "endDate": self.end_date,
            "reportUrl": self.report_url,
            "urlExpiresAt": self.url_expires_at,
        }

    def validate(self) -> "LeaseCostsGenerated":
        """Check the detail against the published schema before emitting it.

        Raises:
            SchemaValidationError: If any field violates the contract
        """
        data = self.to_dict()
        check = _Checker()
        check.uuid_v4(data, "leaseId", "leaseId")
        check.email(data, "userEmail", "userEmail")
        check.account_id(data, "accountId", "accountId")

        total_cost = data["totalCost"]
        if isinstance(total_cost, bool) or not isinstance(total_cost, (int, float)) or total_cost < 0:
            check.fail("totalCost", "must be a non-negative number")
        if data["currency"] != CURRENCY:
            check.fail("currency", f"must be '{CURRENCY}'")

        check.date(data, "startDate", "startDate")
        check.date(data, "endDate", "endDate")

        url = check.string(data, "reportUrl", "reportUrl", URL_MAX_LENGTH)
        if url is not None:
            parsed = urlparse(url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                check.fail("reportUrl", "must be an absolute http(s) URL")
        check.timestamp(data, "urlExpiresAt", "urlExpiresAt")

        check.raise_if_failed("LeaseCostsGenerated detail")
        return self
