"""
Deferred trigger lifecycle.

A trigger moves IDLE -> PENDING -> FIRED -> DELETED. ORPHANED is reached only
by timeout: a trigger whose fire time lies further in the past than the sweep
threshold. Each cleanup layer (scheduler auto-delete, the collector's own
deletion, the reaper) is a transition attempt guarded by the observed state.
"""

import re
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from .errors import InvalidTransition

TRIGGER_NAME_PREFIX = "lease-costs-"
TRIGGER_NAME_MAX_LENGTH = 64

_DISALLOWED_NAME_CHARS = re.compile(r"[^.\-_A-Za-z0-9]")
_SEPARATOR_RUNS = re.compile(r"-+")
_AT_EXPRESSION = re.compile(r"^at\(([^)]+)\)$")


class TriggerState(Enum):
    """Observed state of a deferred trigger."""
    IDLE = "idle"
    PENDING = "pending"
    FIRED = "fired"
    DELETED = "deleted"
    ORPHANED = "orphaned"


ALLOWED_TRANSITIONS = {
    TriggerState.IDLE: frozenset({TriggerState.PENDING}),
    TriggerState.PENDING: frozenset({TriggerState.FIRED, TriggerState.DELETED, TriggerState.ORPHANED}),
    TriggerState.FIRED: frozenset({TriggerState.DELETED, TriggerState.ORPHANED}),
    TriggerState.ORPHANED: frozenset({TriggerState.DELETED}),
    TriggerState.DELETED: frozenset(),
}


@dataclass(frozen=True)
class Trigger:
    """A registered one-shot trigger as seen by this package."""
    name: str
    fire_time: Optional[datetime] = None
    state: TriggerState = TriggerState.IDLE

    def can_transition(self, target: TriggerState) -> bool:
        return target in ALLOWED_TRANSITIONS[self.state]

    def transition(self, target: TriggerState) -> "Trigger":
        """Return a copy of the trigger in ``target`` state.

        Raises:
            InvalidTransition: If the lifecycle does not allow the move
        """
        if not self.can_transition(target):
            raise InvalidTransition(
                f"Trigger {self.name}: cannot move from {self.state.value} to {target.value}"
            )
        return replace(self, state=target)


def observe_state(fire_time: datetime, now: datetime, threshold: timedelta) -> TriggerState:
    """Infer the state of a trigger that still exists in the backend."""
    if now < fire_time:
        return TriggerState.PENDING
    if now - fire_time > threshold:
        return TriggerState.ORPHANED
    return TriggerState.FIRED


def sanitize_trigger_name(name: str) -> str:
    """Replace characters outside [.-_A-Za-z0-9], collapsing runs to one '-'."""
    return _SEPARATOR_RUNS.sub("-", _DISALLOWED_NAME_CHARS.sub("-", name))


def trigger_name_for(lease_uuid: str, prefix: str = TRIGGER_NAME_PREFIX) -> str:
    """Deterministic trigger name for a lease; re-creation is naturally idempotent."""
    return sanitize_trigger_name(f"{prefix}{lease_uuid}")


def format_schedule_expression(moment: datetime) -> str:
    """Format a one-shot schedule expression, e.g. ``at(2026-02-05T14:30:00)`` in UTC."""
    utc = moment.astimezone(timezone.utc)
    return f"at({utc.strftime('%Y-%m-%dT%H:%M:%S')})"


def parse_schedule_expression(expression: Optional[str]) -> Optional[datetime]:
    """Parse an ``at(...)`` expression back to an aware UTC datetime.

    Returns None for recurring expressions or anything unparseable.
    """
    if not expression:
        return None
    match = _AT_EXPRESSION.match(expression.strip())
    if not match:
        return None
    try:
        parsed = datetime.strptime(match.group(1), "%Y-%m-%dT%H:%M:%S")
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)
