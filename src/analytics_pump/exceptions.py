# src/analytics_pump/exceptions.py

"""
Shared custom exceptions for the analytics pump.

Centralizing exception definitions in a separate module prevents circular
import errors between other modules that need to raise or catch them.

Exception Hierarchy:
- AnalyticsPumpError (base)
  - RetryableError (can be retried)
    - SinkWriteError
    - SinkThrottlingError
    - SinkTimeoutError
    - BatchWriteError
  - NonRetryableError (should not be retried)
    - ValidationError
      - InvalidRecordError
      - InvalidConfigurationError
    - ConfigurationError
    - SinkAccessDeniedError
    - AveragingError
    - PurgeCancelledError
"""

from typing import Any, Dict, List, Optional


class AnalyticsPumpError(Exception):
    """Base exception for all analytics pump errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = dict(context) if context else {}
        self.correlation_id = correlation_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "correlation_id": self.correlation_id,
            "retryable": isinstance(self, RetryableError),
        }


class RetryableError(AnalyticsPumpError):
    """Base class for errors that can be retried."""

    pass


class NonRetryableError(AnalyticsPumpError):
    """Base class for errors that should not be retried."""

    pass


# === Validation Errors ===


class ValidationError(NonRetryableError):
    """Base class for validation errors."""

    pass


class InvalidRecordError(ValidationError):
    """Raised when an inbound record cannot be parsed."""

    def __init__(self, message: str, **kwargs):
        if "error_code" not in kwargs:
            kwargs["error_code"] = "INVALID_RECORD"
        super().__init__(message, **kwargs)


class InvalidConfigurationError(ValidationError):
    """Raised when a single configuration value is invalid."""

    def __init__(self, config_field: str, value: Any = None, **kwargs):
        message = f"Invalid configuration: {config_field}"
        context = {
            "config_field": config_field,
            "value": str(value) if value is not None else None,
        }
        super().__init__(
            message, error_code="INVALID_CONFIGURATION", context=context, **kwargs
        )


# === Configuration Errors ===


class ConfigurationError(NonRetryableError):
    """Raised when there's an error in the application configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIGURATION_ERROR", **kwargs)


# === Processing Errors ===


class ProcessingError(AnalyticsPumpError):
    """Base class for errors raised by the aggregation and batching engine."""

    pass


class AveragingError(ProcessingError, NonRetryableError):
    """Raised when an average is requested for a counter without hits."""

    def __init__(self, dimension: str, key: str, **kwargs):
        message = f"Cannot average counter with zero hits: {dimension}/{key}"
        context = {"dimension": dimension, "key": key}
        super().__init__(
            message, error_code="AVERAGE_WITHOUT_HITS", context=context, **kwargs
        )


class PurgeCancelledError(ProcessingError, NonRetryableError):
    """Raised when a purge cycle is cancelled before any batch was attempted."""

    def __init__(self, pending_jobs: int, **kwargs):
        message = f"Purge cycle cancelled with {pending_jobs} batches pending"
        context = {"pending_jobs": pending_jobs}
        super().__init__(
            message, error_code="PURGE_CANCELLED", context=context, **kwargs
        )


# === Sink Errors ===


class SinkError(AnalyticsPumpError):
    """Base class for downstream storage errors."""

    pass


class SinkWriteError(SinkError, RetryableError):
    """Raised when a sink rejects a batch for a reason worth retrying."""

    def __init__(self, target: str, reason: str, **kwargs):
        message = f"Write to {target} failed: {reason}"
        context = {}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        context.update({"target": target, "reason": reason})
        kwargs.setdefault("error_code", "SINK_WRITE_FAILED")
        super().__init__(message, context=context, **kwargs)


class SinkThrottlingError(SinkError, RetryableError):
    """Raised when the sink is throttling requests."""

    def __init__(self, operation: str, **kwargs):
        message = f"Sink operation throttled: {operation}"
        context = {}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        context.update({"operation": operation})
        kwargs.setdefault("error_code", "SINK_THROTTLING")
        super().__init__(message, context=context, **kwargs)


class SinkTimeoutError(SinkError, RetryableError):
    """Raised when a sink operation times out."""

    def __init__(self, operation: str, timeout_seconds: Optional[float] = None, **kwargs):
        if timeout_seconds is None:
            message = f"Sink operation timed out: {operation}"
        else:
            message = f"Sink operation timed out after {timeout_seconds}s: {operation}"
        context = {}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        context.update({"operation": operation, "timeout_seconds": timeout_seconds})
        kwargs.setdefault("error_code", "SINK_TIMEOUT")
        super().__init__(message, context=context, **kwargs)


class SinkAccessDeniedError(SinkError, NonRetryableError):
    """Raised when the sink refuses access to a target."""

    def __init__(self, target: str, **kwargs):
        message = f"Access denied to sink target: {target}"
        context = {}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        context.update({"target": target})
        super().__init__(
            message, error_code="SINK_ACCESS_DENIED", context=context, **kwargs
        )


class BatchWriteError(SinkError, RetryableError):
    """
    Raised after a fan-out when one or more batches failed to write.

    Batches that succeeded stay written; `failures` lists the ones that did
    not so the caller can decide what to retry.
    """

    def __init__(self, failures: List[Dict[str, Any]], total_jobs: int, **kwargs):
        message = f"{len(failures)} of {total_jobs} batch writes failed"
        context = {
            "failed_jobs": len(failures),
            "total_jobs": total_jobs,
            "failures": failures,
        }
        super().__init__(
            message, error_code="BATCH_WRITE_FAILED", context=context, **kwargs
        )
        self.failures = failures

    @property
    def failed_targets(self) -> List[str]:
        return sorted({f["target"] for f in self.failures})

    @property
    def failed_orgs(self) -> List[str]:
        return sorted({f["org_id"] for f in self.failures if f.get("org_id")})


# === Queue Errors ===


class RequeueError(RetryableError):
    """Raised when records could not be sent back to the retry queue."""

    def __init__(self, queue: str, reason: str, **kwargs):
        message = f"Failed to requeue records to {queue}: {reason}"
        context = {}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        context.update({"queue": queue, "reason": reason})
        kwargs.setdefault("error_code", "REQUEUE_FAILED")
        super().__init__(message, context=context, **kwargs)


# === Utility Functions ===


def is_retryable_error(error: Exception) -> bool:
    """Check if an error is retryable."""
    return isinstance(error, RetryableError)


def get_error_context(error: Exception) -> Dict[str, Any]:
    """Extract error context for logging."""
    if isinstance(error, AnalyticsPumpError):
        return error.to_dict()
    else:
        return {
            "error_type": error.__class__.__name__,
            "message": str(error),
            "retryable": False,
        }
