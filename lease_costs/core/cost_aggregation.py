"""
Cost aggregation over the billing API.

Pages through Cost Explorer under a rate limit and a page cap, accumulating
amounts as integer cents so that hundreds of additions never drift.

Safety valves, in the order they are checked before each page:
1. Page cap - a continuation-token chain that never ends must not loop forever
2. Time budget - stop before the caller's execution budget runs out

Both raise: a truncated total would look like a real one, so no partial
report is ever returned.
"""

import logging
import re
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from functools import partial
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .errors import CollectionTimeout, PaginationLimitExceeded
from .money import cents_to_dollars, sum_cents, to_cents
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 100
DEFAULT_RATE_LIMIT_DELAY = 0.2          # seconds; Cost Explorer allows ~5 requests/second
DEFAULT_TIME_BUDGET_FRACTION = 0.9
DEFAULT_RESOURCE_LOOKBACK_DAYS = 14     # resource-level data is only kept this long

COST_METRIC = "UnblendedCost"
EXCLUDED_RECORD_TYPES = ("Credit", "Refund")

UNATTRIBUTED_RESOURCE_ID = "unattributed"
UNATTRIBUTED_RESOURCE_NAME = "Unattributed"
GLOBAL_REGION = "global"
UNKNOWN_SERVICE = "Unknown"

MAX_SERVICE_NAME_LENGTH = 256
MAX_RESOURCE_NAME_LENGTH = 2048
_TRUNCATION_SUFFIX = "...[truncated]"
_REGION_PATTERN = re.compile(r"^([a-z]{2}(-[a-z]+)+-\d+|global)$")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1a\x1c-\x1f\x7f-\x9f]")
_ANSI_ESCAPES = re.compile(r"\x1b(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")


@dataclass(frozen=True)
class ServiceCost:
    """Cost of one service over the billing window."""
    service_name: str
    cost: float
    cents: int


@dataclass(frozen=True)
class ResourceCost:
    """Cost of one resource over the (possibly shorter) resource window."""
    resource_id: str
    resource_name: str
    service_name: str
    region: str
    cost: float
    cents: int


@dataclass(frozen=True)
class CostReport:
    """Immutable cost report for one account and billing window."""
    account_id: str
    start_date: str
    end_date: str
    total_cost: float
    total_cents: int
    costs_by_service: Tuple[ServiceCost, ...]
    costs_by_resource: Optional[Tuple[ResourceCost, ...]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "accountId": self.account_id,
            "startDate": self.start_date,
            "endDate": self.end_date,
            "totalCost": self.total_cost,
            "costsByService": [
                {"serviceName": s.service_name, "cost": s.cost} for s in self.costs_by_service
            ],
        }
        if self.costs_by_resource is not None:
            data["costsByResource"] = [
                {
                    "resourceId": r.resource_id,
                    "resourceName": r.resource_name,
                    "serviceName": r.service_name,
                    "region": r.region,
                    "cost": r.cost,
                }
                for r in self.costs_by_resource
            ]
        return data


def sanitize_service_name(raw: str) -> str:
    """Cap length and strip control characters from a service name."""
    if len(raw) > MAX_SERVICE_NAME_LENGTH:
        logger.warning("Service name exceeds max length (%d), truncating", len(raw))
        raw = raw[:MAX_SERVICE_NAME_LENGTH]
    return _CONTROL_CHARS.sub("", _ANSI_ESCAPES.sub("", raw))


def sanitize_resource_name(raw: str) -> str:
    """Cap length and strip ANSI sequences and control characters."""
    if len(raw) > MAX_RESOURCE_NAME_LENGTH:
        logger.warning("Resource name exceeds max length (%d), truncating", len(raw))
        raw = raw[:MAX_RESOURCE_NAME_LENGTH - len(_TRUNCATION_SUFFIX)] + _TRUNCATION_SUFFIX
    return _CONTROL_CHARS.sub("", _ANSI_ESCAPES.sub("", raw))


def sanitize_region(raw: str) -> str:
    """Return a valid region code, or "global" for anything else."""
    trimmed = (raw or "").strip()
    if _REGION_PATTERN.match(trimmed):
        return trimmed
    if trimmed:
        logger.warning("Invalid region format %r, defaulting to %r", trimmed, GLOBAL_REGION)
    return GLOBAL_REGION


def resource_display_name(resource_id: str) -> str:
    """Short name for a resource: the last path or ARN segment."""
    for separator in ("/", ":"):
        if separator in resource_id:
            tail = resource_id.rsplit(separator, 1)[-1]
            if tail:
                return tail
    return resource_id


def _account_filter(account_id: str, service_names: Optional[List[str]] = None) -> Dict[str, Any]:
    clauses: List[Dict[str, Any]] = [
        {"Dimensions": {"Key": "LINKED_ACCOUNT", "Values": [account_id]}},
        {"Not": {"Dimensions": {"Key": "RECORD_TYPE", "Values": list(EXCLUDED_RECORD_TYPES)}}},
    ]
    if service_names is not None:
        clauses.append({"Dimensions": {"Key": "SERVICE", "Values": list(service_names)}})
    return {"And": clauses}


def _iter_groups(response: Dict[str, Any]) -> Iterator[Tuple[List[str], str]]:
    for result in response.get("ResultsByTime") or []:
        for group in result.get("Groups") or []:
            keys = group.get("Keys") or []
            amount = ((group.get("Metrics") or {}).get(COST_METRIC) or {}).get("Amount", "0")
            yield keys, amount


class _Paginator:
    """Serial page fetching with shared page cap, time budget and rate limit.

    The rate limit spans the whole run: every request after the first one,
    whichever query it belongs to, waits ``rate_limit_delay`` first.
    """

    def __init__(
        self,
        max_pages: int,
        rate_limit_delay: float,
        deadline: Optional[float],
        retry_policy: RetryPolicy,
        sleep: Callable[[float], None],
        clock: Callable[[], float],
    ):
        self.max_pages = max_pages
        self.rate_limit_delay = rate_limit_delay
        self.deadline = deadline
        self.retry_policy = retry_policy
        self.sleep = sleep
        self.clock = clock
        self.total_pages = 0

    def pages(self, fetch: Callable[[Optional[str]], Dict[str, Any]], description: str) -> Iterator[Dict[str, Any]]:
        next_token: Optional[str] = None
        pages = 0
        while True:
            if pages >= self.max_pages:
                logger.warning(
                    "Pagination stopped at page cap (%d) for %s; refusing to report a partial total",
                    self.max_pages, description,
                )
                raise PaginationLimitExceeded(
                    f"{description}: billing API still paginating after {self.max_pages} pages",
                    pages_fetched=pages,
                )
            if self.deadline is not None and self.clock() >= self.deadline:
                logger.warning("Execution budget nearly spent after %d pages for %s", pages, description)
                raise CollectionTimeout(
                    f"{description}: execution budget nearly spent after {pages} pages",
                    pages_fetched=pages,
                )

            if self.total_pages:
                self.sleep(self.rate_limit_delay)
            response = call_with_retry(
                partial(fetch, next_token),
                policy=self.retry_policy,
                sleep=self.sleep,
                description=description,
            )
            pages += 1
            self.total_pages += 1
            yield response

            next_token = response.get("NextPageToken")
            if not next_token:
                return


def _sorted_by_cost(items):
    # sorted() is stable, so ties keep first-seen order
    return tuple(sorted(items, key=lambda item: -item.cents))


def collect_costs(
    account_id: str,
    start_date: str,
    end_date: str,
    client: Any,
    max_pages: int = DEFAULT_MAX_PAGES,
    rate_limit_delay: float = DEFAULT_RATE_LIMIT_DELAY,
    time_budget: Optional[float] = None,
    time_budget_fraction: float = DEFAULT_TIME_BUDGET_FRACTION,
    include_resources: bool = False,
    resource_lookback_days: int = DEFAULT_RESOURCE_LOOKBACK_DAYS,
    retry_policy: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    today: Optional[date] = None,
) -> CostReport:
    """Query and aggregate an account's costs over a billing window.

    Args:
        account_id: 12-digit account to report on
        start_date: Inclusive window start, YYYY-MM-DD
        end_date: Exclusive window end, YYYY-MM-DD
        client: boto3 Cost Explorer client
        max_pages: Page cap per query
        rate_limit_delay: Seconds to wait between successive requests of the run
        time_budget: Seconds the caller has left; None disables the time cap
        time_budget_fraction: Share of the budget that may be used
        include_resources: Also build a per-resource breakdown
        resource_lookback_days: How far back resource-level data exists
        retry_policy: Attempt budget for each page request
        sleep: Blocking sleep (rate limit and backoff)
        clock: Monotonic clock in seconds
        today: Current UTC date, for the resource lookback window

    Returns:
        CostReport sorted by cost descending

    Raises:
        PaginationLimitExceeded: If a query exceeds the page cap
        CollectionTimeout: If the time budget is nearly spent
        botocore.exceptions.ClientError: On non-retryable or exhausted API errors
        ValueError: If the API returns a malformed amount
    """
    started = clock()
    deadline = started + time_budget * time_budget_fraction if time_budget is not None else None
    paginator = _Paginator(max_pages, rate_limit_delay, deadline, retry_policy, sleep, clock)

    def fetch_services(token: Optional[str]) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "TimePeriod": {"Start": start_date, "End": end_date},
            "Granularity": "DAILY",
            "Metrics": [COST_METRIC],
            "GroupBy": [{"Type": "DIMENSION", "Key": "SERVICE"}],
            "Filter": _account_filter(account_id),
        }
        if token:
            kwargs["NextPageToken"] = token
        return client.get_cost_and_usage(**kwargs)

    service_cents: Dict[str, int] = {}
    # sanitised name -> names as the API reported them, for follow-up filters
    raw_service_names: Dict[str, List[str]] = {}
    for response in paginator.pages(fetch_services, f"cost query for account {account_id}"):
        for keys, amount in _iter_groups(response):
            service = sanitize_service_name(keys[0]) if keys else UNKNOWN_SERVICE
            service_cents[service] = service_cents.get(service, 0) + to_cents(amount)
            if keys and keys[0] not in raw_service_names.setdefault(service, []):
                raw_service_names[service].append(keys[0])

    costs_by_service = _sorted_by_cost(
        ServiceCost(service_name=name, cost=cents_to_dollars(cents), cents=cents)
        for name, cents in service_cents.items()
    )
    total_cents = sum_cents(service_cents.values())

    costs_by_resource = None
    if include_resources:
        today = today or datetime.now(timezone.utc).date()
        costs_by_resource = _collect_resource_costs(
            account_id, start_date, end_date, client, service_cents,
            raw_service_names, paginator, today, resource_lookback_days,
        )

    logger.info(
        "Aggregated costs",
        extra={
            "accountId": account_id,
            "startDate": start_date,
            "endDate": end_date,
            "totalCost": cents_to_dollars(total_cents),
            "serviceCount": len(costs_by_service),
            "pages": paginator.total_pages,
            "elapsedSeconds": round(clock() - started, 3),
        },
    )

    return CostReport(
        account_id=account_id,
        start_date=start_date,
        end_date=end_date,
        total_cost=cents_to_dollars(total_cents),
        total_cents=total_cents,
        costs_by_service=costs_by_service,
        costs_by_resource=costs_by_resource,
    )


def _collect_resource_costs(
    account_id: str,
    start_date: str,
    end_date: str,
    client: Any,
    service_cents: Dict[str, int],
    raw_service_names: Dict[str, List[str]],
    paginator: _Paginator,
    today: date,
    lookback_days: int,
) -> Tuple[ResourceCost, ...]:
    """Per-resource breakdown that reconciles with the per-service totals.

    Resource data only covers the last ``lookback_days``; whatever the
    resource rows do not account for is attributed to an "unattributed"
    row per service. Resource rows that add up to more than their service
    (rounding each one to cents can do that) are trimmed back, smallest
    first, so the breakdown never exceeds the service total.
    """
    earliest = (today - timedelta(days=lookback_days)).isoformat()
    resource_start = max(start_date, earliest)

    rows: List[ResourceCost] = []
    for service, service_total in service_cents.items():
        resource_cents: Dict[Tuple[str, str], int] = {}

        raw_names = raw_service_names.get(service)
        if resource_start < end_date and raw_names:
            def fetch_resources(token: Optional[str], raw_names=raw_names) -> Dict[str, Any]:
                kwargs: Dict[str, Any] = {
                    "TimePeriod": {"Start": resource_start, "End": end_date},
                    "Granularity": "DAILY",
                    "Metrics": [COST_METRIC],
                    "GroupBy": [
                        {"Type": "DIMENSION", "Key": "RESOURCE_ID"},
                        {"Type": "DIMENSION", "Key": "REGION"},
                    ],
                    "Filter": _account_filter(account_id, raw_names),
                }
                if token:
                    kwargs["NextPageToken"] = token
                return client.get_cost_and_usage_with_resources(**kwargs)

            description = f"resource cost query for {service} in account {account_id}"
            for response in paginator.pages(fetch_resources, description):
                for keys, amount in _iter_groups(response):
                    resource_id = sanitize_resource_name(keys[0]) if keys else ""
                    region = sanitize_region(keys[1]) if len(keys) > 1 else GLOBAL_REGION
                    if not resource_id:
                        continue
                    key = (resource_id, region)
                    resource_cents[key] = resource_cents.get(key, 0) + to_cents(amount)

        overshoot = sum_cents(resource_cents.values()) - service_total
        if overshoot > 0:
            logger.warning(
                "Resource costs for %s exceed the service total by %d cents; trimming", service, overshoot,
            )
            # smallest rows first; among equal rows the last seen gives way
            for key in sorted(reversed(list(resource_cents)), key=resource_cents.__getitem__):
                taken = min(overshoot, resource_cents[key])
                resource_cents[key] -= taken
                overshoot -= taken
                if not overshoot:
                    break

        for (resource_id, region), cents in resource_cents.items():
            rows.append(ResourceCost(
                resource_id=resource_id,
                resource_name=resource_display_name(resource_id),
                service_name=service,
                region=region,
                cost=cents_to_dollars(cents),
                cents=cents,
            ))

        remainder = service_total - sum_cents(resource_cents.values())
        if not resource_cents or remainder > 0:
            unattributed = service_total if not resource_cents else remainder
            rows.append(ResourceCost(
                resource_id=UNATTRIBUTED_RESOURCE_ID,
                resource_name=UNATTRIBUTED_RESOURCE_NAME,
                service_name=service,
                region=GLOBAL_REGION,
                cost=cents_to_dollars(unattributed),
                cents=unattributed,
            ))

    return _sorted_by_cost(rows)
