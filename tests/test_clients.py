"""
Tests for the client cache and role assumption.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, Mock, patch

import pytest
from botocore.exceptions import ClientError

from lease_costs.aws.clients import (
    ClientCache,
    calculate_expiration,
    generate_cache_key,
    get_client,
)
from lease_costs.aws.credentials import AssumedCredentials, assume_role, session_name
from lease_costs.core.errors import CredentialError
from lease_costs.core.retry import RetryPolicy

ROLE_ARN = "arn:aws:iam::123456789012:role/CostExplorerRole"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestClientCache:
    """Test expiry-checked client caching."""

    def test_reuses_valid_entry(self):
        """Test that a valid entry is returned without calling the factory."""
        clock = FakeClock()
        cache = ClientCache(clock=clock)
        factory = Mock(side_effect=[object(), object()])

        first = cache.get_or_create("ce:us-east-1", factory, expires_at=clock.now + 60)
        second = cache.get_or_create("ce:us-east-1", factory, expires_at=clock.now + 60)

        assert first is second
        assert factory.call_count == 1

    def test_expired_entry_is_replaced(self):
        """Test that every read re-checks expiry."""
        clock = FakeClock()
        cache = ClientCache(clock=clock)
        factory = Mock(side_effect=["old", "new"])

        assert cache.get_or_create("k", factory, expires_at=clock.now + 60) == "old"
        clock.now += 61
        assert cache.get_or_create("k", factory, expires_at=clock.now + 60) == "new"
        assert len(cache) == 1

    def test_entry_invalid_exactly_at_expiry(self):
        """Test that expires_at itself is already invalid."""
        clock = FakeClock()
        cache = ClientCache(clock=clock)
        factory = Mock(side_effect=["old", "new"])
        cache.get_or_create("k", factory, expires_at=clock.now + 10)
        clock.now += 10
        assert cache.get_or_create("k", factory, expires_at=clock.now + 10) == "new"

    def test_clear(self):
        """Test that clear drops every entry."""
        cache = ClientCache(clock=FakeClock())
        cache.get_or_create("a", object, expires_at=2e9)
        cache.get_or_create("b", object, expires_at=2e9)
        cache.clear()
        assert len(cache) == 0


class TestCacheKeys:
    """Test cache key construction."""

    def test_defaults(self):
        """Test placeholders for missing parts."""
        assert generate_cache_key("ce") == "ce:default:none:none"

    def test_identity_is_part_of_key(self):
        """Test that different roles get different clients."""
        assert generate_cache_key("ce", "us-east-1", ROLE_ARN) != generate_cache_key("ce", "us-east-1", None)

    def test_extra_options_are_hashed(self):
        """Test that option values never appear in the key."""
        key = generate_cache_key("s3", extra={"endpoint_url": "https://secret.example.com"})
        assert "secret" not in key
        assert len(key.rsplit(":", 1)[-1]) == 16
        assert key == generate_cache_key("s3", extra={"endpoint_url": "https://secret.example.com"})


class TestExpiration:
    """Test cache entry lifetimes."""

    def test_credentials_expiry_minus_buffer(self):
        """Test that entries expire five minutes before their credentials."""
        expiration = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        credentials = AssumedCredentials("AKIA", "secret", "token", expiration)
        assert calculate_expiration(credentials, now=0) == expiration.timestamp() - 300

    def test_default_ttl_without_credentials(self):
        """Test the one hour default."""
        assert calculate_expiration(None, now=1000.0) == 1000.0 + 3600


class TestGetClient:
    """Test boto3 client construction."""

    @patch("lease_costs.aws.clients.boto3.session.Session")
    def test_cost_explorer_defaults_to_us_east_1(self, mock_session):
        """Test the Cost Explorer region and disabled botocore retries."""
        cache = ClientCache(clock=FakeClock())
        get_client("ce", cache=cache)

        kwargs = mock_session.return_value.client.call_args.kwargs
        assert mock_session.return_value.client.call_args.args == ("ce",)
        assert kwargs["region_name"] == "us-east-1"
        assert kwargs["config"].retries == {"mode": "standard", "total_max_attempts": 1}

    @patch("lease_costs.aws.clients.boto3.session.Session")
    def test_credentials_are_passed_through(self, mock_session):
        """Test that assumed credentials reach the client."""
        cache = ClientCache(clock=FakeClock())
        credentials = AssumedCredentials("AKIA", "secret", "token", None)
        get_client("ce", cache=cache, credentials=credentials, role_arn=ROLE_ARN)

        kwargs = mock_session.return_value.client.call_args.kwargs
        assert kwargs["aws_access_key_id"] == "AKIA"
        assert kwargs["aws_secret_access_key"] == "secret"
        assert kwargs["aws_session_token"] == "token"

    @patch("lease_costs.aws.clients.boto3.session.Session")
    def test_cached_between_calls(self, mock_session):
        """Test that a second call reuses the client."""
        cache = ClientCache(clock=FakeClock())
        assert get_client("scheduler", cache=cache) is get_client("scheduler", cache=cache)
        assert mock_session.return_value.client.call_count == 1

    @patch("lease_costs.aws.clients.boto3.session.Session")
    def test_profile_selects_session(self, mock_session):
        """Test that a named profile is used for CLI access."""
        get_client("ce", cache=ClientCache(clock=FakeClock()), profile="billing")
        mock_session.assert_called_once_with(profile_name="billing")


class TestAssumeRole:
    """Test cross-account role assumption."""

    def _sts(self, response):
        sts = MagicMock()
        sts.assume_role.return_value = response
        return sts

    def test_returns_credentials(self):
        """Test a successful assumption."""
        expiration = datetime.now(timezone.utc) + timedelta(hours=2)
        sts = self._sts({"Credentials": {
            "AccessKeyId": "AKIA", "SecretAccessKey": "secret", "SessionToken": "token", "Expiration": expiration,
        }})

        credentials = assume_role(ROLE_ARN, sts, clock=lambda: 1700000000.5)

        assert credentials.access_key_id == "AKIA"
        assert credentials.expiration == expiration
        sts.assume_role.assert_called_once_with(
            RoleArn=ROLE_ARN, RoleSessionName="lease-costs-1700000000500", DurationSeconds=7200,
        )

    def test_secrets_not_in_repr(self):
        """Test that secret material stays out of repr."""
        credentials = AssumedCredentials("AKIA", "very-secret", "very-token", None)
        assert "very-secret" not in repr(credentials)
        assert "very-token" not in repr(credentials)

    @pytest.mark.parametrize("duration", [899, 43201, 0])
    def test_duration_out_of_range(self, duration):
        """Test that durations outside STS limits are rejected before any call."""
        sts = MagicMock()
        with pytest.raises(ValueError, match="Invalid credential duration"):
            assume_role(ROLE_ARN, sts, duration_seconds=duration)
        sts.assume_role.assert_not_called()

    @pytest.mark.parametrize("duration", [900, 43200])
    def test_duration_bounds_inclusive(self, duration):
        """Test that the limits themselves are accepted."""
        sts = self._sts({"Credentials": {"AccessKeyId": "AKIA", "SecretAccessKey": "secret"}})
        assume_role(ROLE_ARN, sts, duration_seconds=duration)
        assert sts.assume_role.call_args.kwargs["DurationSeconds"] == duration

    def test_missing_credentials(self):
        """Test a response without credentials."""
        with pytest.raises(CredentialError, match="no credentials"):
            assume_role(ROLE_ARN, self._sts({}))

    def test_missing_key_material(self):
        """Test a response with partial credentials."""
        with pytest.raises(CredentialError, match="missing AccessKeyId"):
            assume_role(ROLE_ARN, self._sts({"Credentials": {"AccessKeyId": "AKIA"}}))

    def test_throttling_is_retried(self):
        """Test that STS throttling goes through the retry driver."""
        sts = MagicMock()
        throttled = ClientError(
            {"Error": {"Code": "Throttling"}, "ResponseMetadata": {"HTTPStatusCode": 400}}, "AssumeRole"
        )
        sts.assume_role.side_effect = [
            throttled,
            {"Credentials": {"AccessKeyId": "AKIA", "SecretAccessKey": "secret"}},
        ]
        sleep = Mock()
        credentials = assume_role(ROLE_ARN, sts, retry_policy=RetryPolicy(max_attempts=3), sleep=sleep)
        assert credentials.access_key_id == "AKIA"
        sleep.assert_called_once_with(1.0)

    def test_access_denied_not_retried(self):
        """Test that a denied assumption costs one call."""
        sts = MagicMock()
        sts.assume_role.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied"}, "ResponseMetadata": {"HTTPStatusCode": 403}}, "AssumeRole"
        )
        with pytest.raises(ClientError):
            assume_role(ROLE_ARN, sts, sleep=Mock())
        assert sts.assume_role.call_count == 1


def test_session_name_format():
    """Test the CloudTrail-visible session name."""
    assert session_name("lease-costs", clock=lambda: 1.5) == "lease-costs-1500"
