"""
AWS adapters for lease costs.

Thin wrappers around boto3 and the lease-metadata API.
"""

from .clients import ClientCache, get_client, get_cost_explorer_client
from .credentials import AssumedCredentials, assume_role
from .scheduler import SchedulerBackend, TriggerTarget

__all__ = [
    "AssumedCredentials",
    "ClientCache",
    "SchedulerBackend",
    "TriggerTarget",
    "assume_role",
    "get_client",
    "get_cost_explorer_client",
]
