"""
EventBridge Scheduler backend for deferred triggers.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator, Mapping, Optional

from botocore.exceptions import ClientError

from ..core.errors import TriggerAlreadyExists, TriggerNotFound
from ..core.triggers import format_schedule_expression

logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 100   # API maximum


@dataclass(frozen=True)
class TriggerTarget:
    """Where a fired trigger delivers its payload."""
    arn: str
    role_arn: str
    max_retry_attempts: int = 3
    max_event_age_seconds: int = 3600


@dataclass(frozen=True)
class TriggerSummary:
    """A trigger listed from the backend.

    ``expression`` is None when the trigger vanished mid-listing (``gone``)
    or could not be fetched.
    """
    name: str
    expression: Optional[str]
    gone: bool = False


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


class SchedulerBackend:
    """One-shot triggers in a single schedule group."""

    def __init__(self, client: Any, group: str):
        self.client = client
        self.group = group

    def create(
        self,
        name: str,
        fire_time: datetime,
        target: TriggerTarget,
        payload: Mapping[str, Any],
        flexible_window_minutes: int = 5,
    ) -> None:
        """Register a one-shot trigger that deletes itself after running.

        Raises:
            TriggerAlreadyExists: If a trigger with ``name`` already exists
        """
        try:
            self.client.create_schedule(
                Name=name,
                GroupName=self.group,
                ScheduleExpression=format_schedule_expression(fire_time),
                ScheduleExpressionTimezone="UTC",
                FlexibleTimeWindow={
                    "Mode": "FLEXIBLE",
                    "MaximumWindowInMinutes": flexible_window_minutes,
                },
                Target={
                    "Arn": target.arn,
                    "RoleArn": target.role_arn,
                    "Input": json.dumps(dict(payload)),
                    "RetryPolicy": {
                        "MaximumRetryAttempts": target.max_retry_attempts,
                        "MaximumEventAgeInSeconds": target.max_event_age_seconds,
                    },
                },
                ActionAfterCompletion="DELETE",
            )
        except ClientError as e:
            if _error_code(e) == "ConflictException":
                raise TriggerAlreadyExists(f"Trigger already exists: {name}") from e
            raise

    def delete(self, name: str) -> None:
        """Delete a trigger.

        Raises:
            TriggerNotFound: If the trigger is already gone
        """
        try:
            self.client.delete_schedule(Name=name, GroupName=self.group)
        except ClientError as e:
            if _error_code(e) == "ResourceNotFoundException":
                raise TriggerNotFound(f"Trigger not found: {name}") from e
            raise

    def get_expression(self, name: str) -> str:
        """Fetch a trigger's schedule expression.

        Raises:
            TriggerNotFound: If the trigger is already gone
        """
        try:
            response = self.client.get_schedule(Name=name, GroupName=self.group)
        except ClientError as e:
            if _error_code(e) == "ResourceNotFoundException":
                raise TriggerNotFound(f"Trigger not found: {name}") from e
            raise
        return response.get("ScheduleExpression", "")

    def list_names(self) -> Iterator[str]:
        """Names of every trigger in the group, following continuation tokens."""
        next_token = None
        while True:
            kwargs = {"GroupName": self.group, "MaxResults": LIST_PAGE_SIZE}
            if next_token:
                kwargs["NextToken"] = next_token
            response = self.client.list_schedules(**kwargs)
            for schedule in response.get("Schedules", []):
                name = schedule.get("Name")
                if name:
                    yield name
                else:
                    logger.warning("Schedule has no name, skipping")
            next_token = response.get("NextToken")
            if not next_token:
                break

    def list_triggers(self) -> Iterator[TriggerSummary]:
        """Every trigger in the group with its schedule expression.

        The listing API omits expressions, so each trigger is fetched. A
        failed fetch is logged and reported without an expression rather than
        ending the listing.
        """
        # the listing is read in full first; deleting while a listing
        # token is open can skip entries
        names = list(self.list_names())
        for name in names:
            try:
                expression = self.get_expression(name)
            except TriggerNotFound:
                logger.info("Schedule no longer exists (concurrent deletion)", extra={"scheduleName": name})
                yield TriggerSummary(name=name, expression=None, gone=True)
                continue
            except ClientError as e:
                logger.error("Failed to get schedule", extra={"scheduleName": name, "error": str(e)})
                yield TriggerSummary(name=name, expression=None)
                continue
            yield TriggerSummary(name=name, expression=expression)
