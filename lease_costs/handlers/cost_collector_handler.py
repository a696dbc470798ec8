"""
Lambda entry point: deferred trigger fired -> cost report and completion event.
"""

from typing import Any, Dict, Optional

from ..aws.clients import get_client, get_cost_explorer_client
from ..aws.credentials import assume_role
from ..aws.lease_api import LeaseApiClient, ServiceTokenProvider
from ..aws.metrics import CloudWatchMetrics
from ..aws.reports import EventPublisher, S3ReportStore, render_csv
from ..aws.scheduler import SchedulerBackend
from ..config.loader import CollectorSettings, configure_logging, load_settings
from ..core.collector import CostCollector
from ..core.retry import RetryPolicy

COMPONENT = "Cost Collector Lambda"
REQUIRED_SETTINGS = (
    "cost_explorer_role_arn",
    "s3_bucket_name",
    "event_bus_name",
    "scheduler_group",
    "lease_api_base_url",
    "lease_api_jwt_secret_path",
)

# Warm execution contexts keep the signing secret and token between invocations
_token_providers: Dict[str, ServiceTokenProvider] = {}


def _token_provider(secret_path: str) -> ServiceTokenProvider:
    if secret_path not in _token_providers:
        _token_providers[secret_path] = ServiceTokenProvider(get_client("secretsmanager"), secret_path)
    return _token_providers[secret_path]


def build_collector(settings: CollectorSettings) -> CostCollector:
    """Wire a CostCollector to the real AWS collaborators."""
    retry_policy = RetryPolicy(max_attempts=settings.max_retry_attempts)
    role_arn = settings.cost_explorer_role_arn

    def credential_provider():
        return assume_role(
            role_arn,
            get_client("sts"),
            duration_seconds=settings.credential_duration_seconds,
            retry_policy=retry_policy,
        )

    def billing_client_factory(credentials):
        return get_cost_explorer_client(credentials=credentials, role_arn=role_arn)

    return CostCollector(
        lease_api=LeaseApiClient(
            settings.lease_api_base_url,
            _token_provider(settings.lease_api_jwt_secret_path),
            retry_policy=retry_policy,
        ),
        credential_provider=credential_provider,
        billing_client_factory=billing_client_factory,
        report_store=S3ReportStore(get_client("s3"), settings.s3_bucket_name),
        event_publisher=EventPublisher(get_client("events"), settings.event_bus_name),
        trigger_backend=SchedulerBackend(get_client("scheduler"), settings.scheduler_group),
        settings=settings,
        render=render_csv,
        metrics=CloudWatchMetrics(get_client("cloudwatch")),
    )


def _time_budget(context: Any) -> Optional[float]:
    get_remaining = getattr(context, "get_remaining_time_in_millis", None)
    if get_remaining is None:
        return None
    return get_remaining() / 1000


def handler(event: Any, context: Any = None) -> Dict[str, Any]:
    settings = load_settings()
    configure_logging(settings.log_level)
    settings.require(*REQUIRED_SETTINGS, component=COMPONENT)

    result = build_collector(settings).run(event, time_budget=_time_budget(context))
    return {
        "leaseId": result.lease_id,
        "accountId": result.account_id,
        "totalCost": result.report.total_cost,
        "reportKey": result.report_key,
        "startDate": result.window.start_date,
        "endDate": result.window.end_date,
    }
