"""
Lambda entry point: daily sweep of orphaned collection triggers.
"""

from typing import Any, Dict

from ..aws.clients import get_client
from ..aws.scheduler import SchedulerBackend
from ..config.loader import configure_logging, load_settings
from ..core.reaper import OrphanScheduleReaper


def handler(event: Any = None, context: Any = None) -> Dict[str, int]:
    settings = load_settings()
    configure_logging(settings.log_level)
    settings.require("scheduler_group", component="Cleanup Lambda")

    reaper = OrphanScheduleReaper(
        SchedulerBackend(get_client("scheduler"), settings.scheduler_group),
        threshold_hours=settings.reaper_threshold_hours,
    )
    return reaper.sweep().to_dict()
