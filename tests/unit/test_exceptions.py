# tests/unit/test_exceptions.py

import json

import pytest

from analytics_pump.exceptions import (
    AnalyticsPumpError,
    AveragingError,
    BatchWriteError,
    ConfigurationError,
    InvalidConfigurationError,
    InvalidRecordError,
    NonRetryableError,
    ProcessingError,
    PurgeCancelledError,
    RequeueError,
    RetryableError,
    SinkAccessDeniedError,
    SinkError,
    SinkThrottlingError,
    SinkTimeoutError,
    SinkWriteError,
    ValidationError,
    get_error_context,
    is_retryable_error,
)


class TestAnalyticsPumpError:
    """Test the base AnalyticsPumpError class."""

    def test_basic_initialization(self):
        error = AnalyticsPumpError("Test message")
        assert str(error) == "Test message"
        assert error.message == "Test message"
        assert error.error_code == "AnalyticsPumpError"
        assert error.context == {}
        assert error.correlation_id is None

    def test_full_initialization(self):
        """Test error initialization with all parameters."""
        context = {"key": "value"}
        error = AnalyticsPumpError(
            "Test message",
            error_code="CUSTOM_CODE",
            context=context,
            correlation_id="test-123",
        )
        assert error.error_code == "CUSTOM_CODE"
        assert error.context == context
        assert error.context is not context
        assert error.correlation_id == "test-123"

    def test_to_dict_is_json_serializable(self):
        error = AnalyticsPumpError("boom", context={"target": "tyk_analytics"})
        result = error.to_dict()
        assert result == {
            "error_type": "AnalyticsPumpError",
            "error_code": "AnalyticsPumpError",
            "message": "boom",
            "context": {"target": "tyk_analytics"},
            "correlation_id": None,
            "retryable": False,
        }
        json.dumps(result)


class TestHierarchy:
    @pytest.mark.parametrize(
        "error, retryable",
        [
            (SinkWriteError("tyk_analytics", "conflict"), True),
            (SinkThrottlingError("PutObject"), True),
            (SinkTimeoutError("PutObject", timeout_seconds=30), True),
            (BatchWriteError(failures=[], total_jobs=0), True),
            (RequeueError("retry-queue", "throttled"), True),
            (SinkAccessDeniedError("s3://bucket/key"), False),
            (ConfigurationError("bad"), False),
            (InvalidRecordError("bad record"), False),
            (InvalidConfigurationError("MAX_WRITE_WORKERS", 0), False),
            (AveragingError("apiid", "api-1"), False),
            (PurgeCancelledError(pending_jobs=3), False),
        ],
    )
    def test_retryability(self, error, retryable):
        assert is_retryable_error(error) is retryable
        assert isinstance(error, RetryableError if retryable else NonRetryableError)

    def test_sink_errors_share_base(self):
        assert issubclass(SinkWriteError, SinkError)
        assert issubclass(SinkAccessDeniedError, SinkError)
        assert issubclass(BatchWriteError, SinkError)

    def test_processing_errors_share_base(self):
        assert issubclass(AveragingError, ProcessingError)
        assert issubclass(PurgeCancelledError, ProcessingError)

    def test_validation_errors(self):
        assert issubclass(InvalidRecordError, ValidationError)
        assert issubclass(InvalidConfigurationError, ValidationError)


class TestConcreteErrors:
    def test_sink_write_error_merges_context(self):
        error = SinkWriteError(
            "s3://bucket/key",
            "InternalError",
            error_code="S3_UPLOAD_ERROR",
            context={"aws_error_code": "InternalError"},
        )
        assert error.error_code == "S3_UPLOAD_ERROR"
        assert error.context == {
            "aws_error_code": "InternalError",
            "target": "s3://bucket/key",
            "reason": "InternalError",
        }
        assert "s3://bucket/key" in error.message

    def test_sink_timeout_message_includes_timeout(self):
        error = SinkTimeoutError("PutObject", timeout_seconds=30)
        assert "after 30s" in error.message
        assert error.error_code == "SINK_TIMEOUT"
        assert error.context["timeout_seconds"] == 30

    def test_averaging_error_names_entry(self):
        error = AveragingError("endpoints", "/users")
        assert error.error_code == "AVERAGE_WITHOUT_HITS"
        assert error.context == {"dimension": "endpoints", "key": "/users"}

    def test_invalid_configuration_error(self):
        error = InvalidConfigurationError("AGGREGATION_MINUTES", 90)
        assert error.error_code == "INVALID_CONFIGURATION"
        assert error.context == {"config_field": "AGGREGATION_MINUTES", "value": "90"}

    def test_batch_write_error_lists_failed_targets_and_orgs(self):
        failures = [
            {"target": "tyk_aggregated", "org_id": "org-b", "records": 2},
            {"target": "tyk_aggregated", "org_id": "org-a", "records": 1},
            {"target": "tyk_analytics_20240315", "org_id": None, "records": 5},
        ]
        error = BatchWriteError(failures=failures, total_jobs=7)

        assert error.message == "3 of 7 batch writes failed"
        assert error.failures == failures
        assert error.failed_targets == ["tyk_aggregated", "tyk_analytics_20240315"]
        assert error.failed_orgs == ["org-a", "org-b"]
        assert error.context["failed_jobs"] == 3

    def test_requeue_error_merges_context(self):
        error = RequeueError("retry-queue", "boom", context={"sent_messages": 1})
        assert error.error_code == "REQUEUE_FAILED"
        assert error.context == {
            "sent_messages": 1,
            "queue": "retry-queue",
            "reason": "boom",
        }


def test_get_error_context_for_foreign_exception():
    result = get_error_context(KeyError("missing"))
    assert result == {
        "error_type": "KeyError",
        "message": "'missing'",
        "retryable": False,
    }


def test_get_error_context_for_pump_error():
    error = SinkThrottlingError("PutObject", correlation_id="abc")
    result = get_error_context(error)
    assert result["error_code"] == "SINK_THROTTLING"
    assert result["retryable"] is True
    assert result["correlation_id"] == "abc"
