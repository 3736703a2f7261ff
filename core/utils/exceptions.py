# Exception hierarchy for the settlement engine
#
# Transient errors may succeed on retry (stale versions, busy locks, storage
# outages); permanent ones never will. Validation failures are not exceptions:
# the validator returns them as Rejected outcomes.

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class SettlementEngineException(Exception):
    """Root of every error raised by the ledger, settlement and audit layers"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 correlation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.correlation_id = correlation_id
        self.timestamp = datetime.now(timezone.utc)


class TransientError(SettlementEngineException):
    """Worth retrying while ``retry_count`` is below ``max_retries``"""

    def __init__(self, message: str, retry_count: int = 0, max_retries: int = 3, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_count = retry_count
        self.max_retries = max_retries

    @property
    def retryable(self) -> bool:
        return self.retry_count < self.max_retries


class PermanentError(SettlementEngineException):
    """Never retried automatically"""


# --- Concurrency ---

class ConcurrencyConflict(TransientError):
    """Another writer got to the record first"""


class VersionConflictError(ConcurrencyConflict):
    """Compare-and-swap write rejected: the record's version moved on"""

    def __init__(self, message: str, record_type: str, record_key: str,
                 expected_version: Optional[int], actual_version: Optional[int], **kwargs):
        super().__init__(message, **kwargs)
        self.record_type = record_type
        self.record_key = record_key
        self.expected_version = expected_version
        self.actual_version = actual_version


class LockAcquisitionError(ConcurrencyConflict):
    """The issuer's write lock was not free within the timeout"""

    def __init__(self, message: str, issuer_id: str, timeout_seconds: float, **kwargs):
        super().__init__(message, **kwargs)
        self.issuer_id = issuer_id
        self.timeout_seconds = timeout_seconds


# --- Storage ---

class StorageFailure(TransientError):
    """The ledger store could not complete ``operation``"""

    def __init__(self, message: str, operation: str, **kwargs):
        super().__init__(message, **kwargs)
        self.operation = operation


class DatabaseError(StorageFailure):
    def __init__(self, message: str, operation: str, table: Optional[str] = None, **kwargs):
        super().__init__(message, operation, **kwargs)
        self.table = table


class RedisError(StorageFailure):
    def __init__(self, message: str, operation: str, key: Optional[str] = None, **kwargs):
        super().__init__(message, operation, **kwargs)
        self.key = key


# --- Ledger records ---

class RecordNotFoundError(PermanentError):
    def __init__(self, message: str, record_type: str, record_key: str, **kwargs):
        super().__init__(message, **kwargs)
        self.record_type = record_type
        self.record_key = record_key


class DuplicateRecordError(PermanentError):
    """Provisioning a cash account, issuer or transaction id that already exists"""

    def __init__(self, message: str, record_type: str, record_key: str, **kwargs):
        super().__init__(message, **kwargs)
        self.record_type = record_type
        self.record_key = record_key


class InvariantViolation(PermanentError):
    """A write would break a ledger invariant (negative balance, supply out of bounds, ...)"""

    def __init__(self, message: str, invariant: str, observed: Any = None, **kwargs):
        super().__init__(message, **kwargs)
        self.invariant = invariant
        self.observed = observed


class ConfigurationError(PermanentError):
    def __init__(self, message: str, config_field: str, config_value: Any, **kwargs):
        super().__init__(message, **kwargs)
        self.config_field = config_field
        self.config_value = config_value


def is_retryable_error(error: Exception) -> bool:
    return isinstance(error, TransientError) and error.retryable


def get_retry_delay(error: Exception, base_delay: float = 0.01) -> float:
    """Back-off before the next attempt: ``base_delay * 2 ** retry_count``, 0 for permanent errors."""
    if not isinstance(error, TransientError):
        return 0.0
    return base_delay * (2 ** error.retry_count)


def create_error_context(error: Exception, operation: str,
                         additional_context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Flatten an exception into structured log fields."""
    context: Dict[str, Any] = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "operation": operation,
        "retryable": is_retryable_error(error),
    }

    if isinstance(error, SettlementEngineException):
        context["error_timestamp"] = error.timestamp.isoformat()
        if error.correlation_id:
            context["correlation_id"] = error.correlation_id
        if error.details:
            context["error_details"] = error.details

    if isinstance(error, TransientError):
        context["retry_count"] = error.retry_count
        context["next_retry_delay"] = get_retry_delay(error)
    if isinstance(error, VersionConflictError):
        context.update(record_type=error.record_type, record_key=error.record_key,
                       expected_version=error.expected_version, actual_version=error.actual_version)
    if isinstance(error, StorageFailure):
        context["storage_operation"] = error.operation
    if isinstance(error, InvariantViolation):
        context["invariant"] = error.invariant

    if additional_context:
        context.update(additional_context)
    return context
