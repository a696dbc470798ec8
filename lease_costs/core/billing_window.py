"""
Billing window calculation.

Turns a lease's start and end timestamps into the padded, day-aligned date
range queried against the billing API.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .errors import InvalidTimestamp

MS_PER_DAY = 24 * 60 * 60 * 1000
MS_PER_HOUR = 60 * 60 * 1000

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_FRACTION = re.compile(r"\.(\d+)")


@dataclass(frozen=True)
class BillingWindow:
    """Half-open UTC date range: start_date inclusive, end_date exclusive."""
    start_date: str
    end_date: str


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts a trailing "Z" and any number of fractional-second digits.
    Naive timestamps are taken to be UTC.

    Raises:
        InvalidTimestamp: If the value cannot be parsed
    """
    if not isinstance(value, str) or not value.strip():
        raise InvalidTimestamp(f"Invalid timestamp: {value!r}")

    text = value.strip()
    if text[-1] in "Zz":
        text = text[:-1] + "+00:00"
    # fromisoformat only takes 3 or 6 fractional digits before Python 3.11
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise InvalidTimestamp(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_date(moment: datetime) -> str:
    """Format a datetime as a YYYY-MM-DD string in UTC."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d")


def _to_epoch_ms(moment: datetime) -> int:
    return (moment - _EPOCH) // timedelta(milliseconds=1)


def _from_epoch_ms(ms: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=ms)


def compute_billing_window(lease_start: str, lease_end: str, padding_hours: float) -> BillingWindow:
    """Compute the billing query range for a lease.

    The lease interval is widened by ``padding_hours`` on both sides. The
    padded start is floored to 00:00 UTC of its day and the padded end is
    rounded up to a 00:00 UTC boundary; the end date is exclusive.

    Example:
        >>> compute_billing_window("2026-01-15T10:00:00Z", "2026-02-02T15:00:00Z", 8)
        BillingWindow(start_date='2026-01-15', end_date='2026-02-03')

    Args:
        lease_start: ISO-8601 timestamp the lease started
        lease_end: ISO-8601 timestamp the lease ended
        padding_hours: Hours added on both ends of the interval

    Returns:
        BillingWindow with YYYY-MM-DD dates

    Raises:
        InvalidTimestamp: If either timestamp is unparseable
        ValueError: If padding_hours is negative or the lease does not end
            after it starts
    """
    start_ms = _to_epoch_ms(parse_timestamp(lease_start))
    end_ms = _to_epoch_ms(parse_timestamp(lease_end))
    if start_ms >= end_ms:
        raise ValueError(f"lease_start must be before lease_end, got {lease_start} and {lease_end}")

    if padding_hours < 0:
        raise ValueError(f"padding_hours must be >= 0, got {padding_hours}")
    padding_ms = int(round(padding_hours * MS_PER_HOUR))

    padded_start_ms = start_ms - padding_ms
    padded_end_ms = end_ms + padding_ms

    window_start_ms = padded_start_ms - (padded_start_ms % MS_PER_DAY)
    window_end_ms = -(-padded_end_ms // MS_PER_DAY) * MS_PER_DAY

    return BillingWindow(
        start_date=format_date(_from_epoch_ms(window_start_ms)),
        end_date=format_date(_from_epoch_ms(window_end_ms)),
    )
