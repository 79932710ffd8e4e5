"""
Error taxonomy for the sync engine and the policy table that decides what
each kind of failure does to the surrounding work (retry, fail the item,
fail the job, or reject the request).
"""

from enum import Enum


class CatalogSyncError(Exception):
    """Base class for all sync engine errors."""

    pass


class ValidationError(CatalogSyncError):
    """Bad input. Rejected immediately and never retried."""

    pass


class TransientPlatformError(CatalogSyncError):
    """Network, timeout, rate limit or 5xx failure from an external catalog."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class OperationTimeoutError(TransientPlatformError):
    """Raised by with_timeout when an operation exceeds its deadline."""

    def __init__(self, operation: str, seconds: float):
        super().__init__(f"{operation} timed out after {seconds}s")
        self.operation = operation
        self.seconds = seconds


class PlatformAPIError(CatalogSyncError):
    """Permanent (4xx-class) rejection from an external catalog."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class SignatureVerificationError(CatalogSyncError):
    """Webhook signature did not match the shared secret."""

    pass


class UnresolvedMappingError(CatalogSyncError):
    """An event or job references a SKU / variant with no known mapping."""

    def __init__(self, key: str, message: str | None = None):
        super().__init__(message or f"No mapping found for {key}")
        self.key = key


class FatalSetupError(CatalogSyncError):
    """A job could not resolve its SKU set, price rules or exchange rate."""

    pass


class JobNotFoundError(CatalogSyncError):
    """Requested sync job does not exist."""

    def __init__(self, job_id: str):
        super().__init__(f"Sync job not found: {job_id}")
        self.job_id = job_id


class ErrorAction(str, Enum):
    """
    What the owning unit of work does with an error.

    REJECT applies at a request boundary. Inside a running job the same error
    only fails the item that raised it.
    """

    RETRY = "retry"
    ITEM_FAILURE = "item_failure"
    JOB_FAILURE = "job_failure"
    REJECT = "reject"

    def within_job(self) -> "ErrorAction":
        return ErrorAction.ITEM_FAILURE if self is ErrorAction.REJECT else self


ERROR_POLICY: dict[type[BaseException], ErrorAction] = {
    ValidationError: ErrorAction.REJECT,
    SignatureVerificationError: ErrorAction.REJECT,
    TransientPlatformError: ErrorAction.RETRY,
    TimeoutError: ErrorAction.RETRY,
    PlatformAPIError: ErrorAction.ITEM_FAILURE,
    UnresolvedMappingError: ErrorAction.ITEM_FAILURE,
    JobNotFoundError: ErrorAction.REJECT,
    FatalSetupError: ErrorAction.JOB_FAILURE,
}


def registered_action(exc: BaseException) -> ErrorAction | None:
    """The action registered for the nearest class in exc's hierarchy, if any."""
    for klass in type(exc).__mro__:
        action = ERROR_POLICY.get(klass)
        if action is not None:
            return action
    return None


def policy_for(exc: BaseException) -> ErrorAction:
    """
    Resolve the action for an exception by walking its class hierarchy.

    Args:
        exc: The raised exception

    Returns:
        The most specific ErrorAction registered, ITEM_FAILURE for anything unknown
    """
    return registered_action(exc) or ErrorAction.ITEM_FAILURE
