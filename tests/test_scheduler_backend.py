"""
Tests for the EventBridge Scheduler backend.
"""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from lease_costs.aws.scheduler import SchedulerBackend, TriggerTarget
from lease_costs.core.errors import TriggerAlreadyExists, TriggerNotFound

TARGET = TriggerTarget(
    arn="arn:aws:lambda:us-east-1:123456789012:function:cost-collector",
    role_arn="arn:aws:iam::123456789012:role/SchedulerRole",
)


def client_error(code, operation="Operation"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class TestCreate:
    """Test one-shot trigger registration."""

    def test_request_shape(self):
        """Test the expression, window, target and auto-delete."""
        client = MagicMock()
        backend = SchedulerBackend(client, "isb-lease-costs")
        fire_time = datetime(2026, 2, 3, 15, 1, 30, 500000, tzinfo=timezone.utc)

        backend.create("lease-costs-x", fire_time, TARGET, {"leaseId": "x"}, flexible_window_minutes=10)

        kwargs = client.create_schedule.call_args.kwargs
        assert kwargs["Name"] == "lease-costs-x"
        assert kwargs["GroupName"] == "isb-lease-costs"
        assert kwargs["ScheduleExpression"] == "at(2026-02-03T15:01:30)"
        assert kwargs["ScheduleExpressionTimezone"] == "UTC"
        assert kwargs["FlexibleTimeWindow"] == {"Mode": "FLEXIBLE", "MaximumWindowInMinutes": 10}
        assert kwargs["ActionAfterCompletion"] == "DELETE"
        assert kwargs["Target"]["Arn"] == TARGET.arn
        assert kwargs["Target"]["RoleArn"] == TARGET.role_arn
        assert json.loads(kwargs["Target"]["Input"]) == {"leaseId": "x"}

    def test_conflict_maps_to_already_exists(self):
        client = MagicMock()
        client.create_schedule.side_effect = client_error("ConflictException")
        with pytest.raises(TriggerAlreadyExists):
            SchedulerBackend(client, "g").create("n", datetime.now(timezone.utc), TARGET, {})

    def test_other_errors_propagate(self):
        client = MagicMock()
        client.create_schedule.side_effect = client_error("AccessDeniedException")
        with pytest.raises(ClientError):
            SchedulerBackend(client, "g").create("n", datetime.now(timezone.utc), TARGET, {})


class TestDelete:
    """Test trigger deletion."""

    def test_delete(self):
        client = MagicMock()
        SchedulerBackend(client, "g").delete("n")
        client.delete_schedule.assert_called_once_with(Name="n", GroupName="g")

    def test_missing_maps_to_not_found(self):
        client = MagicMock()
        client.delete_schedule.side_effect = client_error("ResourceNotFoundException")
        with pytest.raises(TriggerNotFound):
            SchedulerBackend(client, "g").delete("n")


class TestListing:
    """Test paginated listing."""

    def test_follows_next_token(self):
        """Test that every page is read."""
        client = MagicMock()
        client.list_schedules.side_effect = [
            {"Schedules": [{"Name": "a"}, {"Name": "b"}], "NextToken": "t1"},
            {"Schedules": [{"Name": "c"}, {}]},
        ]

        names = list(SchedulerBackend(client, "g").list_names())

        assert names == ["a", "b", "c"]
        second = client.list_schedules.call_args_list[1].kwargs
        assert second == {"GroupName": "g", "MaxResults": 100, "NextToken": "t1"}

    def test_list_triggers_fetches_expressions(self):
        """Test that vanished and unreadable triggers are still reported."""
        client = MagicMock()
        client.list_schedules.return_value = {"Schedules": [{"Name": "a"}, {"Name": "b"}, {"Name": "c"}]}
        client.get_schedule.side_effect = [
            {"ScheduleExpression": "at(2026-02-03T15:01:30)"},
            client_error("ResourceNotFoundException"),
            client_error("InternalServerException"),
        ]

        triggers = list(SchedulerBackend(client, "g").list_triggers())

        assert [(t.name, t.expression, t.gone) for t in triggers] == [
            ("a", "at(2026-02-03T15:01:30)", False),
            ("b", None, True),
            ("c", None, False),
        ]

    def test_list_triggers_reads_full_listing_before_fetching(self):
        """Test that every listing page is read before any schedule is fetched."""
        client = MagicMock()
        client.list_schedules.side_effect = [
            {"Schedules": [{"Name": "a"}], "NextToken": "t1"},
            {"Schedules": [{"Name": "b"}]},
        ]
        client.get_schedule.return_value = {"ScheduleExpression": "at(2026-02-03T15:01:30)"}

        triggers = SchedulerBackend(client, "g").list_triggers()
        first = next(triggers)

        assert first.name == "a"
        assert client.list_schedules.call_count == 2
        called = [name for name, _, _ in client.mock_calls]
        assert called == ["list_schedules", "list_schedules", "get_schedule"]
        assert [t.name for t in triggers] == ["b"]
