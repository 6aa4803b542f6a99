"""
PerpFlow — Error Hierarchy
────────────────────────────
Every failure the core can surface, classified so handlers and logs
can tell a dead backend from a bad payload from a failed recompute.

Read paths swallow StorageError subclasses and degrade to empty/stale.
Write paths let them propagate so the caller can retry the whole batch.
"""

from typing import Any, Dict, Optional


class SignalEngineError(Exception):
    """Base class for everything raised by signal_engine."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def as_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "message":    self.message,
            "details":    self.details,
        }


# ── Storage ──────────────────────────────────────────────────

class StorageError(SignalEngineError):
    """Anything that went wrong talking to Redis."""

    def __init__(self, message: str, *, operation: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.operation = operation
        if operation is not None:
            self.details["operation"] = operation


class StorageUnavailable(StorageError):
    """Backend unreachable, not connected, or misconfigured."""


class StorageTimeout(StorageError):
    """Backend did not answer within the socket timeout."""


class MalformedCachedPayload(StorageError):
    """Stored value exists but is not the JSON shape we wrote. Read as a miss."""

    def __init__(self, message: str, *, key: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.key = key
        if key is not None:
            self.details["key"] = key


# ── Compute ──────────────────────────────────────────────────

class ComputeProducerError(SignalEngineError):
    """
    The external pattern producer failed.

    classification is one of:
      http_error          non-2xx status, body kept verbatim
      timeout             no answer in time
      unreachable         connection refused / DNS / TLS
      malformed_response  2xx but the body is not usable
      exception           the producer raised something unexpected
    """

    def __init__(
        self,
        message: str,
        *,
        classification: str = "http_error",
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.classification = classification
        self.status_code = status_code
        self.body = body
        self.details["classification"] = classification
        if status_code is not None:
            self.details["status_code"] = status_code
        if body is not None:
            self.details["body"] = body


# ── Input ────────────────────────────────────────────────────

class InvalidInput(SignalEngineError):
    """Caller handed us something unusable (non-list batch, unknown timeframe)."""
