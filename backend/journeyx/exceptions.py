"""
Attribution Engine Exceptions
=============================

Custom exception types for the attribution engine.

WHY THIS FILE EXISTS
--------------------
Most failures in the engine are local and degrade to partial results
(a lookup that times out simply contributes no pageviews). A few are not:

- Missing or invalid configuration
- A permanent write that cannot be read back (silent data loss in the store)
- A batch request that cannot be interpreted

These exceptions let callers tell the two groups apart.

RELATED FILES
-------------
- journeyx/services/kv_client.py: Raises KVTimeoutError, StorageVerificationError
- journeyx/services/records.py: Raises RecordParseError
- journeyx/services/batch_attribution.py: Raises InvalidBatchRequestError
- journeyx/routers/attribution.py: Maps these to HTTP status codes
"""

from typing import Optional


class JourneyxError(Exception):
    """
    Base exception for all attribution engine errors.

    USAGE:
        try:
            result = await service.attribute(conversion)
        except JourneyxError as e:
            return {"error": e.to_user_message()}
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_user_message(self) -> str:
        """Return a string suitable for an API response body."""
        return self.message


class ConfigurationError(JourneyxError):
    """Required configuration is missing or malformed (e.g. no REDIS_URL)."""


class StorageError(JourneyxError):
    """Base class for key-value store failures."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class KVTimeoutError(StorageError):
    """
    A single store call exceeded its per-call timeout.

    Treated as transient: lookups catch it and continue with no data.
    """

    def __init__(self, operation: str, key: Optional[str], timeout: float):
        super().__init__(f"{operation} timed out after {timeout:.2f}s", key=key)
        self.operation = operation
        self.timeout = timeout


class StorageVerificationError(StorageError):
    """
    A write reported success but the read-back found nothing.

    WHAT:
        Raised after a permanent attribution write whose verification read
        returns no value.

    WHY:
        This is the one storage condition that must surface loudly: a batch
        job that keeps going would report results that are not in the store.
    """

    def __init__(self, key: str):
        super().__init__(f"Write to '{key}' could not be verified by read-back", key=key)

    def to_user_message(self) -> str:
        return "Attribution result could not be persisted. Please retry."


class RecordParseError(JourneyxError):
    """A stored value could not be decoded into a usable record."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class InvalidBatchRequestError(JourneyxError):
    """A batch job request is missing required parameters."""
