"""
Client for the lease-metadata API.

Requests are authenticated with a short-lived HS256 service token signed
with a secret held in Secrets Manager. The secret and token are cached for
the lifetime of the execution context and dropped on 401/403, since that is
how a rotated secret shows up.
"""

import base64
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import httpx

from ..core.errors import LeaseNotFound, NonRetryableError, RetryableError
from ..core.retry import RetryDecision, RetryPolicy, call_with_retry, classify_status
from ..core.schemas import LeaseDetails

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 5.0
TOKEN_TTL_SECONDS = 3600
TOKEN_REFRESH_MARGIN_SECONDS = 60

SERVICE_IDENTITY = {"email": "ndx+costs@dsit.gov.uk", "roles": ["Admin"]}


def encode_lease_key(user_email: str, uuid: str) -> str:
    """Composite lease key: base64 of ``{"userEmail": ..., "uuid": ...}``."""
    composite = json.dumps({"userEmail": user_email, "uuid": uuid}, separators=(",", ":"))
    return base64.b64encode(composite.encode("utf-8")).decode("ascii")


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def sign_jwt(payload: Dict[str, Any], secret: str, expires_in: int = TOKEN_TTL_SECONDS, now: Optional[int] = None) -> str:
    """Sign a compact HS256 JWT. ``iat`` and ``exp`` always override the payload's."""
    issued_at = int(time.time()) if now is None else now
    header = {"alg": "HS256", "typ": "JWT"}
    claims = dict(payload, iat=issued_at, exp=issued_at + expires_in)

    signing_input = ".".join(
        _b64url(json.dumps(part, separators=(",", ":")).encode("utf-8")) for part in (header, claims)
    )
    signature = hmac.new(secret.encode("utf-8"), signing_input.encode("ascii"), hashlib.sha256).digest()
    return f"{signing_input}.{_b64url(signature)}"


class ServiceTokenProvider:
    """Caches the signing secret and re-signs the token shortly before it expires."""

    def __init__(
        self,
        secrets_client: Any,
        secret_path: str,
        clock: Callable[[], float] = time.time,
        ttl_seconds: int = TOKEN_TTL_SECONDS,
    ):
        self.secrets_client = secrets_client
        self.secret_path = secret_path
        self.clock = clock
        self.ttl_seconds = ttl_seconds
        self._secret: Optional[str] = None
        self._token: Optional[str] = None
        self._token_expiry = 0

    def _fetch_secret(self) -> str:
        response = self.secrets_client.get_secret_value(SecretId=self.secret_path)
        secret = response.get("SecretString")
        if not secret:
            raise NonRetryableError("JWT secret is empty")
        return secret

    def token(self) -> str:
        if self._secret is None:
            self._secret = self._fetch_secret()

        now = int(self.clock())
        if self._token is None or now >= self._token_expiry - TOKEN_REFRESH_MARGIN_SECONDS:
            self._token = sign_jwt({"user": SERVICE_IDENTITY}, self._secret, self.ttl_seconds, now=now)
            self._token_expiry = now + self.ttl_seconds
        return self._token

    def invalidate(self) -> None:
        self._secret = None
        self._token = None
        self._token_expiry = 0


class LeaseApiClient:
    """Reads lease records from the lease-metadata API."""

    def __init__(
        self,
        base_url: str,
        token_provider: ServiceTokenProvider,
        http_client: Optional[httpx.Client] = None,
        retry_policy: RetryPolicy = RetryPolicy(),
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self.http_client = http_client or httpx.Client(timeout=REQUEST_TIMEOUT_SECONDS)
        self.retry_policy = retry_policy
        self.sleep = sleep

    def _request_once(self, lease_key: str) -> LeaseDetails:
        url = f"{self.base_url}/leases/{quote(lease_key, safe='')}"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.token_provider.token()}",
        }
        response = self.http_client.get(url, headers=headers, timeout=REQUEST_TIMEOUT_SECONDS)
        status = response.status_code

        if status in (401, 403):
            self.token_provider.invalidate()
            raise NonRetryableError(f"Lease API error: {status} - {response.reason_phrase}", status_code=status)
        if status == 404:
            raise LeaseNotFound(f"Lease not found: {lease_key}", status_code=status)
        if status != 200:
            message = f"Lease API error: {status} - {response.text[:500]}"
            if classify_status(status) is RetryDecision.RETRYABLE:
                raise RetryableError(message, status_code=status)
            raise NonRetryableError(message, status_code=status)

        try:
            body = response.json()
        except ValueError as e:
            raise NonRetryableError(f"Lease API returned invalid JSON: {e}", status_code=status) from e

        # JSend envelope: {"status": "success", "data": {...}}
        data = body.get("data") if isinstance(body, dict) and isinstance(body.get("data"), dict) else body
        return LeaseDetails.from_api(data)

    def get_lease_details(self, lease_key: str) -> LeaseDetails:
        """Fetch and validate a lease record.

        Args:
            lease_key: Composite key from ``encode_lease_key``

        Returns:
            LeaseDetails

        Raises:
            LeaseNotFound: If the API has no such lease
            NonRetryableError: On auth failures, other 4xx or an unreadable body
            RetryableError: If 429/5xx persists past the attempt budget
            SchemaValidationError: If the record is malformed
        """
        details = call_with_retry(
            lambda: self._request_once(lease_key),
            policy=self.retry_policy,
            sleep=self.sleep,
            description=f"lease lookup {lease_key}",
        )
        logger.info(
            "Fetched lease details",
            extra={"accountId": details.aws_account_id, "leaseStatus": details.status},
        )
        return details

    def get_lease(self, user_email: str, lease_uuid: str) -> LeaseDetails:
        """Look up a lease by its owner and UUID."""
        return self.get_lease_details(encode_lease_key(user_email, lease_uuid))

    def close(self) -> None:
        self.http_client.close()
