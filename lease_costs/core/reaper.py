"""
Orphan schedule reaping.

Triggers are created with auto-delete and the collector deletes its own
trigger as well, but either can fail. A periodic sweep deletes any trigger
whose fire time is further in the past than the threshold. This is a
best-effort maintenance pass: individual failures are counted, never raised.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List

from .errors import TriggerNotFound
from .triggers import Trigger, TriggerState, observe_state, parse_schedule_expression

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_HOURS = 72
DELETED_SAMPLE_SIZE = 5


@dataclass
class ReapSummary:
    """Counters for one sweep."""
    scanned: int = 0
    stale: int = 0
    deleted: int = 0
    already_gone: int = 0
    failed: int = 0
    skipped: int = 0
    deleted_names: List[str] = field(default_factory=list)
    failed_names: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "stale": self.stale,
            "deleted": self.deleted,
            "alreadyGone": self.already_gone,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class OrphanScheduleReaper:
    """Deletes triggers that outlived the collection they were meant to start."""

    def __init__(
        self,
        backend: Any,
        threshold_hours: int = DEFAULT_THRESHOLD_HOURS,
        clock: Callable[[], float] = time.time,
        dry_run: bool = False,
    ):
        self.backend = backend
        self.threshold = timedelta(hours=threshold_hours)
        self.clock = clock
        self.dry_run = dry_run

    def sweep(self) -> ReapSummary:
        """List every trigger in the group and delete the orphaned ones."""
        summary = ReapSummary()
        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        logger.info(
            "Starting cleanup of stale schedules",
            extra={"maxAgeHours": self.threshold.total_seconds() / 3600, "dryRun": self.dry_run},
        )

        for listed in self.backend.list_triggers():
            summary.scanned += 1
            if listed.expression is None:
                if listed.gone:
                    summary.already_gone += 1
                else:
                    summary.skipped += 1
                continue

            fire_time = parse_schedule_expression(listed.expression)
            if fire_time is None:
                logger.warning(
                    "Could not parse schedule time",
                    extra={"scheduleName": listed.name, "scheduleExpression": listed.expression},
                )
                summary.skipped += 1
                continue

            trigger = Trigger(
                name=listed.name,
                fire_time=fire_time,
                state=observe_state(fire_time, now, self.threshold),
            )
            if trigger.state is not TriggerState.ORPHANED:
                continue

            summary.stale += 1
            if not self.dry_run:
                self._delete(trigger, summary)

        self._log_summary(summary)
        return summary

    def _delete(self, trigger: Trigger, summary: ReapSummary) -> None:
        try:
            self.backend.delete(trigger.name)
        except TriggerNotFound:
            logger.info("Schedule already deleted (concurrent cleanup)", extra={"scheduleName": trigger.name})
            summary.already_gone += 1
            return
        except Exception as e:
            logger.error("Failed to delete schedule", extra={"scheduleName": trigger.name, "error": str(e)})
            summary.failed += 1
            summary.failed_names.append(trigger.name)
            return

        summary.deleted += 1
        summary.deleted_names.append(trigger.name)

    def _log_summary(self, summary: ReapSummary) -> None:
        logger.info("Cleanup completed", extra=summary.to_dict())
        if summary.failed_names:
            logger.error(
                "Failed to delete schedules",
                extra={"failedCount": summary.failed, "scheduleNames": ", ".join(summary.failed_names)},
            )
        if summary.deleted_names:
            sample = summary.deleted_names[:DELETED_SAMPLE_SIZE]
            logger.info(
                "Sample of deleted schedules",
                extra={"sampleSize": len(sample), "totalDeleted": summary.deleted, "scheduleNames": ", ".join(sample)},
            )
