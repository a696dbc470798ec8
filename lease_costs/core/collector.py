"""
Cost collection for one terminated lease.

Runs when a deferred trigger fires. Stages run in order and each failure is
reported with the stage it happened in. Nothing is emitted and the trigger is
left in place unless every stage up to the completion event succeeds, so a
failed run can be retried by the scheduler or picked up by the reaper.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .billing_window import BillingWindow, compute_billing_window, parse_timestamp
from .cost_aggregation import CostReport, collect_costs
from .errors import CollectionFailed, TriggerNotFound, ValidationError
from .retry import RetryPolicy
from .schemas import LeaseCostsGenerated, parse_trigger_payload

logger = logging.getLogger(__name__)

STAGE_LEASE_LOOKUP = "lease_lookup"
STAGE_LEASE_DATES = "lease_dates"
STAGE_ASSUME_ROLE = "assume_role"
STAGE_BILLING_WINDOW = "billing_window"
STAGE_COST_QUERY = "cost_query"
STAGE_RENDER = "render_report"
STAGE_UPLOAD = "upload_report"
STAGE_PRESIGN = "presign_url"
STAGE_EMIT = "emit_event"


@dataclass(frozen=True)
class CollectionResult:
    """Outcome of a successful collection."""
    lease_id: str
    account_id: str
    window: BillingWindow
    report: CostReport
    report_key: str
    report_url: str
    url_expires_at: str
    trigger_deleted: bool
    elapsed_seconds: float


class CostCollector:
    """Wires the collection stages to their collaborators."""

    def __init__(
        self,
        lease_api: Any,
        credential_provider: Callable[[], Any],
        billing_client_factory: Callable[[Any], Any],
        report_store: Any,
        event_publisher: Any,
        trigger_backend: Any,
        settings: Any,
        render: Callable[[CostReport], str],
        metrics: Any = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            lease_api: Object with ``get_lease(user_email, lease_uuid)``
            credential_provider: Returns temporary credentials for the billing role
            billing_client_factory: Builds a billing API client from credentials
            report_store: Object with ``upload(key, body)`` and ``presign(key, expiry_days)``
            event_publisher: Object with ``publish(LeaseCostsGenerated)``
            trigger_backend: Object with ``delete(name)``
            settings: CollectorSettings
            render: Turns a CostReport into the stored report body
            metrics: Optional object with ``record_collection(...)``
            clock: Monotonic clock in seconds
            sleep: Blocking sleep for rate limiting and backoff
        """
        self.lease_api = lease_api
        self.credential_provider = credential_provider
        self.billing_client_factory = billing_client_factory
        self.report_store = report_store
        self.event_publisher = event_publisher
        self.trigger_backend = trigger_backend
        self.settings = settings
        self.render = render
        self.metrics = metrics
        self.clock = clock
        self.sleep = sleep

    def run(self, payload: Any, time_budget: Optional[float] = None) -> CollectionResult:
        """Collect, store and announce the costs of one lease.

        Args:
            payload: Deferred trigger payload (camelCase dict)
            time_budget: Seconds left in the invocation; None disables the time cap

        Returns:
            CollectionResult

        Raises:
            SchemaValidationError: If the payload is malformed (nothing is touched)
            CollectionFailed: If any later stage fails
        """
        started = self.clock()
        trigger = parse_trigger_payload(payload)
        lease_id, account_id = trigger.lease_id, trigger.account_id
        context = {"leaseId": lease_id, "accountId": account_id, "scheduleName": trigger.trigger_name}

        def elapsed() -> float:
            return round(self.clock() - started, 3)

        def remaining_budget() -> Optional[float]:
            if time_budget is None:
                return None
            return max(time_budget - (self.clock() - started), 0.0)

        stage = STAGE_LEASE_LOOKUP
        logger.info("Starting cost collection", extra=dict(context, elapsedSeconds=0))
        try:
            details = self.lease_api.get_lease(trigger.user_email, lease_id)
            logger.info("Retrieved lease details", extra=dict(context, elapsedSeconds=elapsed()))

            stage = STAGE_LEASE_DATES
            lease_start = parse_timestamp(details.start_date)
            lease_end = parse_timestamp(trigger.lease_end_timestamp)
            if lease_start >= lease_end:
                raise ValidationError(
                    f"Invalid lease dates: startDate ({details.start_date}) must be before "
                    f"leaseEndTimestamp ({trigger.lease_end_timestamp})"
                )

            stage = STAGE_ASSUME_ROLE
            credentials = self.credential_provider()
            logger.info("Assumed billing role", extra=dict(context, elapsedSeconds=elapsed()))

            stage = STAGE_BILLING_WINDOW
            window = compute_billing_window(
                details.start_date, trigger.lease_end_timestamp, self.settings.billing_padding_hours
            )
            logger.info(
                "Calculated billing window",
                extra=dict(
                    context,
                    billingStartDate=window.start_date,
                    billingEndDate=window.end_date,
                    paddingHours=self.settings.billing_padding_hours,
                ),
            )

            stage = STAGE_COST_QUERY
            report = collect_costs(
                account_id,
                window.start_date,
                window.end_date,
                self.billing_client_factory(credentials),
                max_pages=self.settings.max_pages,
                rate_limit_delay=self.settings.rate_limit_delay_ms / 1000,
                time_budget=remaining_budget(),
                time_budget_fraction=self.settings.time_budget_fraction,
                include_resources=self.settings.include_resources,
                resource_lookback_days=self.settings.resource_lookback_days,
                retry_policy=RetryPolicy(max_attempts=self.settings.max_retry_attempts),
                sleep=self.sleep,
                clock=self.clock,
            )
            resource_count = len(report.costs_by_resource or ())
            logger.info(
                "Completed cost query",
                extra=dict(context, elapsedSeconds=elapsed(), totalCost=report.total_cost, resourceCount=resource_count),
            )

            stage = STAGE_RENDER
            body = self.render(report)

            stage = STAGE_UPLOAD
            key = f"{lease_id}.csv"
            self.report_store.upload(key, body)

            stage = STAGE_PRESIGN
            url, expires_at = self.report_store.presign(key, self.settings.presigned_url_expiry_days)
            url_expires_at = expires_at.isoformat(timespec="milliseconds").replace("+00:00", "Z")

            stage = STAGE_EMIT
            self.event_publisher.publish(LeaseCostsGenerated(
                lease_id=lease_id,
                user_email=trigger.user_email,
                account_id=account_id,
                total_cost=report.total_cost,
                start_date=window.start_date,
                end_date=window.end_date,
                report_url=url,
                url_expires_at=url_expires_at,
            ))
            logger.info("Emitted completion event", extra=dict(context, elapsedSeconds=elapsed()))
        except Exception as e:
            logger.error(
                "Cost collection failed",
                extra=dict(context, stage=stage, elapsedSeconds=elapsed(), error=str(e)),
            )
            raise CollectionFailed(stage, lease_id, account_id, e) from e

        if self.metrics is not None:
            self.metrics.record_collection(account_id, report.total_cost, resource_count, elapsed())

        trigger_deleted = self._delete_trigger(trigger.trigger_name, context)
        logger.info("Cost collection completed", extra=dict(context, elapsedSeconds=elapsed()))

        return CollectionResult(
            lease_id=lease_id,
            account_id=account_id,
            window=window,
            report=report,
            report_key=key,
            report_url=url,
            url_expires_at=url_expires_at,
            trigger_deleted=trigger_deleted,
            elapsed_seconds=elapsed(),
        )

    def _delete_trigger(self, name: str, context: dict) -> bool:
        """Best-effort: the trigger auto-deletes and the reaper sweeps leftovers."""
        try:
            self.trigger_backend.delete(name)
        except TriggerNotFound:
            logger.info("Schedule already deleted (auto-deleted after execution)", extra=context)
            return True
        except Exception as e:
            logger.error("Failed to delete schedule", extra=dict(context, error=str(e)))
            return False
        logger.info("Deleted schedule", extra=context)
        return True
