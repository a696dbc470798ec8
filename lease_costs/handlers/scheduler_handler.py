"""
Lambda entry point: LeaseTerminated event -> deferred collection trigger.
"""

from typing import Any, Dict

from ..aws.clients import get_client
from ..aws.scheduler import SchedulerBackend, TriggerTarget
from ..config.loader import configure_logging, load_settings
from ..core.scheduling import ScheduleLifecycleManager

COMPONENT = "Scheduler Lambda"


def handler(event: Any, context: Any = None) -> Dict[str, Any]:
    settings = load_settings()
    configure_logging(settings.log_level)
    settings.require("scheduler_group", "scheduler_role_arn", "cost_collector_lambda_arn", component=COMPONENT)

    manager = ScheduleLifecycleManager(
        backend=SchedulerBackend(get_client("scheduler"), settings.scheduler_group),
        target=TriggerTarget(arn=settings.cost_collector_lambda_arn, role_arn=settings.scheduler_role_arn),
        delay_hours=settings.delay_hours,
        jitter_max_minutes=settings.jitter_max_minutes,
        flexible_window_minutes=settings.flexible_window_minutes,
    )
    scheduled = manager.on_termination_signal(event)
    return {
        "scheduleName": scheduled.trigger.name,
        "scheduleTime": scheduled.trigger.fire_time.isoformat(),
        "created": scheduled.created,
    }
