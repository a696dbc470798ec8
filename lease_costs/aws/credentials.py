"""
Cross-account role assumption.

Default duration is two hours: a collection run takes minutes, but
throttling backoff and clock skew between services eat into the margin, and
an expired session mid-pagination fails the whole run.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ..core.errors import CredentialError
from ..core.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

MIN_DURATION_SECONDS = 900       # STS minimum
MAX_DURATION_SECONDS = 43200     # STS maximum for standard roles
DEFAULT_DURATION_SECONDS = 7200
SESSION_NAME_PREFIX = "lease-costs"


@dataclass(frozen=True)
class AssumedCredentials:
    """Temporary credentials. Secret material never appears in repr or logs."""
    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: Optional[str] = field(default=None, repr=False)
    expiration: Optional[datetime] = None

    def as_client_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``boto3.session.Session.client``."""
        return {
            "aws_access_key_id": self.access_key_id,
            "aws_secret_access_key": self.secret_access_key,
            "aws_session_token": self.session_token,
        }


def session_name(prefix: str = SESSION_NAME_PREFIX, clock: Callable[[], float] = time.time) -> str:
    """Role session name ``<prefix>-<epoch-ms>``, visible in CloudTrail."""
    return f"{prefix}-{int(clock() * 1000)}"


def assume_role(
    role_arn: str,
    sts_client: Any,
    duration_seconds: int = DEFAULT_DURATION_SECONDS,
    session_prefix: str = SESSION_NAME_PREFIX,
    retry_policy: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.time,
) -> AssumedCredentials:
    """Assume an IAM role and return its temporary credentials.

    Args:
        role_arn: ARN of the role to assume
        sts_client: boto3 STS client
        duration_seconds: Credential lifetime, 900-43200 seconds
        session_prefix: Prefix of the role session name
        retry_policy: Attempt budget for the STS call
        sleep: Blocking sleep used between attempts
        clock: Epoch-seconds clock used for the session name

    Returns:
        AssumedCredentials

    Raises:
        ValueError: If duration_seconds is outside the STS limits
        CredentialError: If STS returns no credentials or no key material
    """
    if not MIN_DURATION_SECONDS <= duration_seconds <= MAX_DURATION_SECONDS:
        raise ValueError(
            f"Invalid credential duration: {duration_seconds} seconds. "
            f"Must be between {MIN_DURATION_SECONDS} and {MAX_DURATION_SECONDS}"
        )

    name = session_name(session_prefix, clock)
    response = call_with_retry(
        lambda: sts_client.assume_role(
            RoleArn=role_arn,
            RoleSessionName=name,
            DurationSeconds=duration_seconds,
        ),
        policy=retry_policy,
        sleep=sleep,
        description=f"AssumeRole {role_arn}",
    )

    credentials = response.get("Credentials")
    if not credentials:
        raise CredentialError(f"Failed to assume role {role_arn}: no credentials returned")

    access_key_id = credentials.get("AccessKeyId")
    secret_access_key = credentials.get("SecretAccessKey")
    if not access_key_id or not secret_access_key:
        raise CredentialError(
            f"Failed to assume role {role_arn}: missing AccessKeyId or SecretAccessKey"
        )

    logger.info("Assumed role", extra={"roleArn": role_arn, "roleSessionName": name})
    return AssumedCredentials(
        access_key_id=access_key_id,
        secret_access_key=secret_access_key,
        session_token=credentials.get("SessionToken"),
        expiration=credentials.get("Expiration"),
    )
