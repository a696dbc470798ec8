"""
Schedule lifecycle: turn a lease termination into a deferred trigger.

The trigger fires ``delay_hours`` plus a random jitter after termination, so
billing data has settled and leases terminated together do not all collect at
the same moment. Its name is derived from the lease UUID, which makes a
repeated termination signal for the same lease a harmless no-op.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from .errors import SchemaValidationError, TriggerAlreadyExists
from .schemas import (
    DeferredTriggerPayload,
    TerminationSignal,
    is_uuid_v4,
    parse_termination_signal,
    sanitize_for_log,
)
from .triggers import (
    TRIGGER_NAME_MAX_LENGTH,
    TRIGGER_NAME_PREFIX,
    Trigger,
    TriggerState,
    trigger_name_for,
)

logger = logging.getLogger(__name__)

DEFAULT_DELAY_HOURS = 24
DEFAULT_JITTER_MAX_MINUTES = 30
DEFAULT_FLEXIBLE_WINDOW_MINUTES = 5


def random_jitter_ms(max_minutes: int, randbelow: Callable[[int], int] = secrets.randbelow) -> int:
    """Uniform jitter in [0, max_minutes] from a cryptographically strong source."""
    max_ms = max_minutes * 60 * 1000
    if max_ms <= 0:
        return 0
    return randbelow(max_ms + 1)


def validate_lease_uuid(uuid: str, prefix: str = TRIGGER_NAME_PREFIX) -> None:
    """Reject anything but a UUID v4, and names the backend would refuse.

    Raises:
        SchemaValidationError: If the UUID is malformed or the derived name too long
    """
    if not is_uuid_v4(uuid):
        raise SchemaValidationError(
            "lease UUID",
            [f"{sanitize_for_log(uuid)!r} is not a UUID v4 (xxxxxxxx-xxxx-4xxx-yxxx-xxxxxxxxxxxx)"],
        )
    name = f"{prefix}{uuid}"
    if len(name) > TRIGGER_NAME_MAX_LENGTH:
        raise SchemaValidationError(
            "lease UUID",
            [f"trigger name {sanitize_for_log(name)!r} exceeds {TRIGGER_NAME_MAX_LENGTH} characters"],
        )


@dataclass(frozen=True)
class ScheduledTrigger:
    """Result of handling one termination signal."""
    trigger: Trigger
    payload: DeferredTriggerPayload
    jitter_ms: int
    created: bool


class ScheduleLifecycleManager:
    """Registers one deferred collection trigger per terminated lease."""

    def __init__(
        self,
        backend: Any,
        target: Any,
        delay_hours: int = DEFAULT_DELAY_HOURS,
        jitter_max_minutes: int = DEFAULT_JITTER_MAX_MINUTES,
        flexible_window_minutes: int = DEFAULT_FLEXIBLE_WINDOW_MINUTES,
        name_prefix: str = TRIGGER_NAME_PREFIX,
        clock: Callable[[], float] = time.time,
        jitter: Callable[[int], int] = random_jitter_ms,
    ):
        """
        Args:
            backend: Scheduler backend with ``create(name, fire_time, target, payload, flexible_window_minutes)``
            target: TriggerTarget the fired trigger invokes
            delay_hours: Wait between termination and collection
            jitter_max_minutes: Upper bound of the random offset
            flexible_window_minutes: Scheduling slack granted to the backend
            name_prefix: Prefix of derived trigger names
            clock: Epoch-seconds clock
            jitter: Maps jitter_max_minutes to a jitter in milliseconds
        """
        self.backend = backend
        self.target = target
        self.delay_hours = delay_hours
        self.jitter_max_minutes = jitter_max_minutes
        self.flexible_window_minutes = flexible_window_minutes
        self.name_prefix = name_prefix
        self.clock = clock
        self.jitter = jitter

    def on_termination_signal(self, event: Any) -> ScheduledTrigger:
        """Validate a LeaseTerminated event and register its deferred trigger.

        Raises:
            SchemaValidationError: If the event is malformed (nothing is created)
        """
        signal = parse_termination_signal(event)
        return self.schedule(signal)

    def schedule(self, signal: TerminationSignal) -> ScheduledTrigger:
        validate_lease_uuid(signal.lease_id.uuid, self.name_prefix)

        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        jitter_ms = self.jitter(self.jitter_max_minutes)
        fire_time = now + timedelta(hours=self.delay_hours, milliseconds=jitter_ms)

        name = trigger_name_for(signal.lease_id.uuid, self.name_prefix)
        payload = DeferredTriggerPayload(
            lease_id=signal.lease_id.uuid,
            user_email=signal.lease_id.user_email,
            account_id=signal.account_id,
            lease_end_timestamp=now.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            trigger_name=name,
        )
        trigger = Trigger(name=name, fire_time=fire_time)
        log_context = {
            "leaseId": signal.lease_id.uuid,
            "accountId": signal.account_id,
            "scheduleName": name,
        }

        try:
            self.backend.create(
                name,
                fire_time,
                self.target,
                payload.to_dict(),
                flexible_window_minutes=self.flexible_window_minutes,
            )
        except TriggerAlreadyExists:
            logger.info("Schedule already exists (idempotent handling)", extra=log_context)
            return ScheduledTrigger(
                trigger=trigger.transition(TriggerState.PENDING),
                payload=payload,
                jitter_ms=jitter_ms,
                created=False,
            )

        logger.info(
            "Created schedule",
            extra=dict(
                log_context,
                scheduleTime=fire_time.isoformat(),
                delayHours=self.delay_hours,
                jitterMinutes=round(jitter_ms / 60000),
            ),
        )
        return ScheduledTrigger(
            trigger=trigger.transition(TriggerState.PENDING),
            payload=payload,
            jitter_ms=jitter_ms,
            created=True,
        )
