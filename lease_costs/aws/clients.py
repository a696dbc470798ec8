"""
Cached boto3 clients.

Clients are reused across invocations in a warm execution context. The cache
key identifies the client kind, region and identity; it never contains
secret material. Entries expire five minutes before their credentials do, and
every read re-checks expiry, because handing out a client with stale
credentials is a correctness bug.

Invocations run one at a time per execution context, so the cache needs no
locking.
"""

import hashlib
import json
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import boto3
from botocore.config import Config

from .credentials import AssumedCredentials

CREDENTIAL_EXPIRATION_BUFFER_SECONDS = 5 * 60
DEFAULT_CLIENT_TTL_SECONDS = 60 * 60

# Cost Explorer is a global service served from us-east-1
COST_EXPLORER_REGION = "us-east-1"

_BASE_CONFIG = Config(
    connect_timeout=3,
    read_timeout=10,
    max_pool_connections=50,
)

# Calls to these services go through call_with_retry; botocore's own retries
# would multiply the attempt count.
_SELF_RETRIED_SERVICES = frozenset({"ce", "sts"})


@dataclass(frozen=True)
class CachedClient:
    """A client handle and the epoch-seconds instant it stops being valid."""
    client: Any
    expires_at: float


class ClientCache:
    """Map of cache key to client, with expiry checked on every read."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._entries: Dict[str, CachedClient] = {}

    def is_valid(self, entry: Optional[CachedClient]) -> bool:
        return entry is not None and self.clock() < entry.expires_at

    def get_or_create(self, key: str, factory: Callable[[], Any], expires_at: float) -> Any:
        """Return the cached client for ``key``, replacing it if missing or expired."""
        entry = self._entries.get(key)
        if self.is_valid(entry):
            return entry.client

        client = factory()
        self._entries[key] = CachedClient(client=client, expires_at=expires_at)
        return client

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def generate_cache_key(
    kind: str,
    region: Optional[str] = None,
    role_arn: Optional[str] = None,
    profile: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> str:
    """Build ``kind:region:role:profile[:options-digest]``."""
    parts = [kind, region or "default", role_arn or "none", profile or "none"]
    if extra:
        encoded = json.dumps(extra, sort_keys=True, default=str).encode("utf-8")
        parts.append(hashlib.sha256(encoded).hexdigest()[:16])
    return ":".join(parts)


def calculate_expiration(credentials: Optional[AssumedCredentials], now: float) -> float:
    """Expiry for a cache entry built with ``credentials``, in epoch seconds."""
    expiration = credentials.expiration if credentials else None
    if isinstance(expiration, datetime):
        return expiration.timestamp() - CREDENTIAL_EXPIRATION_BUFFER_SECONDS
    return now + DEFAULT_CLIENT_TTL_SECONDS


def _client_config(kind: str) -> Config:
    if kind in _SELF_RETRIED_SERVICES:
        return _BASE_CONFIG.merge(Config(retries={"mode": "standard", "total_max_attempts": 1}))
    return _BASE_CONFIG


def get_client(
    kind: str,
    cache: Optional["ClientCache"] = None,
    region: Optional[str] = None,
    credentials: Optional[AssumedCredentials] = None,
    role_arn: Optional[str] = None,
    profile: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Any:
    """Get or create a cached boto3 client.

    Args:
        kind: boto3 service name ("ce", "sts", "s3", "events", "scheduler", ...)
        cache: Cache to use; defaults to the execution context's cache
        region: AWS region; Cost Explorer defaults to us-east-1
        credentials: Temporary credentials, e.g. from assume_role
        role_arn: Role the credentials belong to, used as the identity in the key
        profile: Named local profile (CLI use)
        extra: Additional keyword arguments for ``Session.client``

    Returns:
        A boto3 client
    """
    cache = cache if cache is not None else default_cache
    if kind == "ce" and not region:
        region = COST_EXPLORER_REGION

    key = generate_cache_key(kind, region, role_arn, profile, extra)
    expires_at = calculate_expiration(credentials, cache.clock())

    def factory():
        session = boto3.session.Session(profile_name=profile) if profile else boto3.session.Session()
        kwargs: Dict[str, Any] = {"config": _client_config(kind)}
        if region:
            kwargs["region_name"] = region
        if credentials is not None:
            kwargs.update(credentials.as_client_kwargs())
        if extra:
            kwargs.update(extra)
        return session.client(kind, **kwargs)

    return cache.get_or_create(key, factory, expires_at)


# Owned by the warm execution context; tests construct their own ClientCache.
default_cache = ClientCache()


def get_cost_explorer_client(
    cache: Optional[ClientCache] = None,
    credentials: Optional[AssumedCredentials] = None,
    role_arn: Optional[str] = None,
    profile: Optional[str] = None,
) -> Any:
    """Cost Explorer client: assumed-role credentials in Lambda, a named profile on the CLI."""
    return get_client("ce", cache=cache, credentials=credentials, role_arn=role_arn, profile=profile)
