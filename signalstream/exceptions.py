"""
Exception hierarchy for the streaming engine.

Hierarchy:

    StreamingError (base)
    ├── OperationalError   - transient/retryable (broker, network, timeouts)
    │   ├── BrokerConnectionError
    │   ├── SyncTimeoutError
    │   ├── DealHistoryError
    │   ├── QuotaExceededError
    │   └── CircuitOpenError
    ├── ConfigurationError - missing credentials, disabled account; never retried
    ├── DataError          - bad broker payload, skip the position
    │   └── InvalidPositionError
    ├── IntegrityError     - lock/mapping/signal inconsistency, log as error
    │   ├── MissingSignalMappingError
    │   └── MissingSignalError
    └── SessionConflictError

Rules:
    - OperationalError: report to the health tracker, reconnect with backoff
    - QuotaExceededError: count the failure, do not retry or write audit logs
    - ConfigurationError: fail the start attempt, report, do not retry
    - DataError / IntegrityError: log with position context, continue batch
"""
from typing import Optional


class StreamingError(Exception):
    """Base exception for all streaming engine errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(StreamingError):
    """Transient error talking to the broker or its REST surface."""
    pass


class BrokerConnectionError(OperationalError):
    """Terminal could not be deployed, connected or subscribed."""
    pass


class SyncTimeoutError(OperationalError):
    """Initial synchronization did not finish within the configured timeout."""
    pass


class DealHistoryError(OperationalError):
    """Deal-history lookup failed or returned no matching close deal."""
    pass


class QuotaExceededError(OperationalError):
    """Broker or persistence quota exhausted.

    Treatment: count as a failure, but short-circuit retries and audit writes
    so the exhausted quota is not consumed further.
    """
    pass


class CircuitOpenError(OperationalError):
    """Circuit breaker is open - reconnects need a manual reset."""
    pass


# ============ CONFIGURATION (fatal for a start attempt) ============

class ConfigurationError(StreamingError):
    """Credentials or account settings are missing or disabled."""
    pass


# ============ DATA (bad broker payload) ============

class DataError(StreamingError):
    """Bad data from the broker. Skip the position, continue the batch."""
    pass


class InvalidPositionError(DataError):
    """Position payload cannot be turned into a signal (e.g. zero entry price)."""
    pass


# ============ INTEGRITY (real bug or data loss) ============

class IntegrityError(StreamingError):
    """A lock or mapping references a record that does not exist."""
    pass


class MissingSignalMappingError(IntegrityError):
    """Closed position was never tracked by a signal mapping."""
    pass


class MissingSignalError(IntegrityError):
    """Signal mapping points at a signal that cannot be found."""
    pass


class SessionConflictError(StreamingError):
    """Another live streaming session already owns this account."""
    pass


_QUOTA_MARKERS = (
    "resource_exhausted",
    "resource-exhausted",
    "quota exceeded",
    "subscription quota",
    "too many requests",
    "toomanyrequests",
)


def is_quota_error(error: Optional[BaseException]) -> bool:
    """Detect quota exhaustion by exception type, code or message pattern."""
    if error is None:
        return False
    if isinstance(error, QuotaExceededError):
        return True
    if type(error).__name__ in ("TooManyRequestsError", "TooManyRequestsException"):
        return True
    code = getattr(error, "code", None) or getattr(error, "status", None)
    if code in (429, "429", "resource-exhausted", "RESOURCE_EXHAUSTED"):
        return True
    text = str(error).lower()
    return any(marker in text for marker in _QUOTA_MARKERS)
