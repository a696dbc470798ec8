"""
Tests for billing window calculation.
"""

from datetime import datetime, timezone

import pytest

from lease_costs.core.billing_window import (
    BillingWindow,
    compute_billing_window,
    format_date,
    parse_timestamp,
)
from lease_costs.core.errors import InvalidTimestamp


class TestParseTimestamp:
    """Test ISO-8601 parsing."""

    def test_trailing_z_is_utc(self):
        """Test that a trailing Z is read as UTC."""
        parsed = parse_timestamp("2026-01-15T10:00:00Z")
        assert parsed == datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)

    def test_offset_is_converted_to_utc(self):
        """Test that explicit offsets are normalised to UTC."""
        parsed = parse_timestamp("2026-01-15T12:00:00+02:00")
        assert parsed == datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)

    def test_naive_timestamp_is_utc(self):
        """Test that timestamps without a zone are taken as UTC."""
        parsed = parse_timestamp("2026-01-15T10:00:00")
        assert parsed.tzinfo == timezone.utc
        assert parsed.hour == 10

    def test_millisecond_fraction(self):
        """Test fractional seconds of any length."""
        assert parse_timestamp("2026-01-15T10:00:00.123Z").microsecond == 123000
        assert parse_timestamp("2026-01-15T10:00:00.1234567Z").microsecond == 123456

    @pytest.mark.parametrize("value", ["", "not-a-date", "2026-13-45T00:00:00Z", None, 12345])
    def test_unparseable_raises(self, value):
        """Test that garbage input raises InvalidTimestamp."""
        with pytest.raises(InvalidTimestamp):
            parse_timestamp(value)


class TestComputeBillingWindow:
    """Test the padded, day-aligned window."""

    def test_reference_example(self):
        """Test start floored and padded end rounded up to midnight."""
        window = compute_billing_window("2026-01-15T10:00:00Z", "2026-02-02T15:00:00Z", 8)
        assert window == BillingWindow(start_date="2026-01-15", end_date="2026-02-03")

    def test_padding_crosses_day_boundary_backwards(self):
        """Test padding that pushes the start into the previous day."""
        window = compute_billing_window("2026-01-15T03:00:00Z", "2026-01-16T12:00:00Z", 8)
        assert window.start_date == "2026-01-14"

    def test_padding_crosses_day_boundary_forwards(self):
        """Test padding that pushes the end into the next day."""
        window = compute_billing_window("2026-01-15T10:00:00Z", "2026-01-16T20:00:00Z", 8)
        assert window.end_date == "2026-01-18"

    def test_zero_padding(self):
        """Test a same-day lease without padding."""
        window = compute_billing_window("2026-01-15T10:00:00Z", "2026-01-15T11:00:00Z", 0)
        assert window == BillingWindow(start_date="2026-01-15", end_date="2026-01-16")

    def test_end_at_exact_midnight_stays_on_boundary(self):
        """Test that an end already on a day boundary is not moved."""
        window = compute_billing_window("2026-01-15T10:00:00Z", "2026-01-17T00:00:00Z", 0)
        assert window.end_date == "2026-01-17"

    def test_end_just_after_midnight_rounds_up(self):
        """Test that one millisecond past midnight moves the end a full day."""
        window = compute_billing_window("2026-01-15T10:00:00Z", "2026-01-17T00:00:00.001Z", 0)
        assert window.end_date == "2026-01-18"

    def test_window_covers_padded_interval(self):
        """Test that the window always contains the padded lease interval."""
        cases = [
            ("2026-03-01T00:00:00Z", "2026-03-01T00:30:00Z", 0),
            ("2026-03-01T23:59:59Z", "2026-03-02T00:00:01Z", 1),
            ("2026-02-28T12:00:00Z", "2026-03-01T12:00:00Z", 168),
        ]
        for start, end, padding in cases:
            window = compute_billing_window(start, end, padding)
            assert window.start_date < window.end_date
            padded_start = parse_timestamp(start).timestamp() - padding * 3600
            padded_end = parse_timestamp(end).timestamp() + padding * 3600
            assert parse_timestamp(window.start_date + "T00:00:00Z").timestamp() <= padded_start
            assert parse_timestamp(window.end_date + "T00:00:00Z").timestamp() >= padded_end

    def test_naive_and_zulu_inputs_agree(self):
        """Test that naive timestamps behave as UTC."""
        assert compute_billing_window("2026-01-15T10:00:00", "2026-01-20T10:00:00", 8) == \
            compute_billing_window("2026-01-15T10:00:00Z", "2026-01-20T10:00:00Z", 8)

    def test_invalid_timestamp(self):
        """Test that an unparseable timestamp raises InvalidTimestamp."""
        with pytest.raises(InvalidTimestamp):
            compute_billing_window("yesterday", "2026-01-20T10:00:00Z", 8)

    def test_negative_padding_rejected(self):
        """Test that negative padding is rejected."""
        with pytest.raises(ValueError, match="padding_hours"):
            compute_billing_window("2026-01-15T10:00:00Z", "2026-01-20T10:00:00Z", -1)

    @pytest.mark.parametrize("start,end", [
        ("2026-01-20T10:00:00Z", "2026-01-15T10:00:00Z"),
        ("2026-01-15T00:00:00Z", "2026-01-15T00:00:00Z"),
        ("2026-01-15T10:00:00Z", "2026-01-15T10:00:00Z"),
    ])
    def test_lease_must_end_after_it_starts(self, start, end):
        """Test that reversed or zero-length leases are rejected."""
        with pytest.raises(ValueError, match="lease_start must be before lease_end"):
            compute_billing_window(start, end, 8)


def test_format_date_uses_utc():
    """Test that format_date converts to UTC before formatting."""
    moment = parse_timestamp("2026-01-15T23:30:00-02:00")
    assert format_date(moment) == "2026-01-16"
