"""
Exception hierarchy for lease cost collection.

Validation errors are raised before any side effect. External service errors
carry enough information for the retry classifier to decide whether another
attempt is worthwhile.
"""

from typing import Optional


class LeaseCostsError(Exception):
    """Base exception for all lease cost errors."""


class ValidationError(LeaseCostsError):
    """Malformed input: never retried, raised before any side effect."""


class SchemaValidationError(ValidationError):
    """An event or payload does not match its schema."""

    def __init__(self, schema: str, problems):
        self.schema = schema
        self.problems = list(problems)
        super().__init__(f"Invalid {schema}: {'; '.join(self.problems)}")


class InvalidTimestamp(ValidationError):
    """A timestamp could not be parsed as ISO-8601."""


class InvalidTransition(ValidationError):
    """A trigger state transition that the lifecycle does not allow."""


class ExternalServiceError(LeaseCostsError):
    """Failure reported by a collaborator RPC."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RetryableError(ExternalServiceError):
    """Transient failure (429, 5xx, throttling)."""


class NonRetryableError(ExternalServiceError):
    """Permanent failure (4xx other than 429, bad response body)."""


class LeaseNotFound(NonRetryableError):
    """The lease-metadata API has no record of the lease."""


class CredentialError(LeaseCostsError):
    """Role assumption returned no usable credentials."""


class CollectionAborted(LeaseCostsError):
    """Pagination safety valve tripped; the report would be incomplete."""

    def __init__(self, message: str, pages_fetched: int):
        super().__init__(message)
        self.pages_fetched = pages_fetched


class PaginationLimitExceeded(CollectionAborted):
    """The billing API kept returning continuation tokens past the page cap."""


class CollectionTimeout(CollectionAborted):
    """The caller's execution budget is nearly spent."""


class TriggerAlreadyExists(LeaseCostsError):
    """A trigger with the same name is already registered."""


class TriggerNotFound(LeaseCostsError):
    """The trigger is already gone."""


class EventEmissionError(LeaseCostsError):
    """The event bus rejected the completion event."""


class CollectionFailed(LeaseCostsError):
    """A cost collection run failed after its payload was accepted.

    Carries the stage reached so the failure can be diagnosed without
    re-running the collection.
    """

    def __init__(self, stage: str, lease_id: str, account_id: str, cause: Exception):
        self.stage = stage
        self.lease_id = lease_id
        self.account_id = account_id
        self.cause = cause
        super().__init__(
            f"Cost collection failed at stage '{stage}' "
            f"(leaseId={lease_id}, accountId={account_id}): {cause}"
        )
