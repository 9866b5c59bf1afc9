"""
Shared fixtures for unit tests.
"""

from __future__ import annotations

import json
import os
import types
import uuid
from datetime import datetime, timezone

import pytest

from analytics_pump.batching import OversizedRecordPolicy
from analytics_pump.config import AppConfig
from analytics_pump.schemas import AnalyticsRecord, UptimeRecord

BASE_TS = datetime(2024, 3, 15, 10, 42, 17, tzinfo=timezone.utc)


@pytest.fixture(scope="session", autouse=True)
def _env_vars():
    """
    Ensures a deterministic environment for every test run.
    Overwrite *only* the variables needed by the handler.
    """
    original = os.environ.copy()
    os.environ.setdefault("SERVICE_NAME", "analytics-pump-test")
    os.environ.setdefault("ENVIRONMENT", "test")
    os.environ.setdefault("DISTRIBUTION_BUCKET_NAME", "test-dist-bucket")
    os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")
    os.environ.setdefault("POWERTOOLS_SERVICE_NAME", "analytics-pump-test")
    os.environ.setdefault("POWERTOOLS_METRICS_NAMESPACE", "AnalyticsPump")
    os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "1")
    os.environ.setdefault("POWERTOOLS_LOG_LEVEL", "INFO")
    yield
    os.environ.clear()
    os.environ.update(original)


# ---------- Record factories ---------- #
@pytest.fixture
def make_record():
    """Builds an AnalyticsRecord with sensible defaults; keyword args override."""

    def _make(**overrides) -> AnalyticsRecord:
        data = {
            "method": "GET",
            "path": "/users",
            "response_code": 200,
            "api_key": "key-1",
            "timestamp": BASE_TS,
            "api_version": "v1",
            "api_name": "Users API",
            "api_id": "api-1",
            "org_id": "org-1",
            "request_time": 100,
            "latency": {"total": 100, "upstream": 80},
        }
        data.update(overrides)
        return AnalyticsRecord.model_validate(data)

    return _make


@pytest.fixture
def make_uptime_record():
    def _make(**overrides) -> UptimeRecord:
        data = {
            "url": "https://example.com/health",
            "request_time": 50,
            "response_code": 200,
            "timestamp": BASE_TS,
            "api_id": "api-1",
            "org_id": "org-1",
        }
        data.update(overrides)
        return UptimeRecord.model_validate(data)

    return _make


@pytest.fixture
def make_config():
    """Builds an AppConfig without touching the environment."""

    def _make(**overrides) -> AppConfig:
        values = dict(
            service_name="analytics-pump-test",
            environment="test",
            distribution_bucket="test-dist-bucket",
            log_level="INFO",
            pump_modes=("raw", "aggregate"),
            track_all_paths=False,
            ignore_tag_prefix_list=(),
            aggregation_minutes=0,
            ignore_aggregations=(),
            keep_error_list=False,
            tag_alert_threshold=1000,
            max_insert_batch_size_bytes=10 * 1_048_576,
            max_document_size_bytes=10 * 1_048_576,
            max_batch_records=1000,
            oversized_record_policy=OversizedRecordPolicy.REDACT,
            table_sharding=False,
            sort_before_sharding=False,
            raw_table_name="tyk_analytics",
            aggregate_table_name="tyk_aggregated",
            uptime_table_name="tyk_uptime_analytics",
            s3_key_prefix="analytics",
            kms_key_id=None,
            max_write_workers=4,
            timeout_guard_threshold_seconds=10,
            retry_queue_url=None,
            max_requeue_attempts=5,
        )
        values.update(overrides)
        return AppConfig(**values)

    return _make


# ---------- Minimal, realistic dummy events ---------- #
def _sqs_message(body, message_id: str | None = None) -> dict:
    return {
        "messageId": message_id or str(uuid.uuid4()),
        "receiptHandle": "ignore",
        "body": body if isinstance(body, str) else json.dumps(body, default=str),
        "attributes": {},
        "messageAttributes": {},
        "md5OfBody": "dummy",
        "eventSource": "aws:sqs",
        "eventSourceARN": "arn:aws:sqs:eu-west-1:000000000000:dummy",
        "awsRegion": "eu-west-1",
    }


@pytest.fixture
def make_sqs_message():
    """Wraps a body (JSON-encoded unless already a string) in an SQS record."""
    return _sqs_message


@pytest.fixture
def sqs_event() -> dict:
    """One SQS record that wraps a list of two analytics records."""
    records = [
        {
            "path": "/users",
            "response_code": 200,
            "timestamp": BASE_TS.isoformat(),
            "api_id": "api-1",
            "org_id": "org-1",
            "request_time": 100,
        },
        {
            "path": "/users",
            "response_code": 500,
            "timestamp": BASE_TS.isoformat(),
            "api_id": "api-1",
            "org_id": "org-1",
            "request_time": 300,
        },
    ]
    return {"Records": [_sqs_message(records, message_id="msg-1")]}


@pytest.fixture
def lambda_context():
    """A *very* small stand-in for the LambdaContext object."""
    return types.SimpleNamespace(
        function_name="analytics-pump-test",
        function_version="$LATEST",
        memory_limit_in_mb=128,
        tenant_id=None,
        aws_request_id="req-" + uuid.uuid4().hex,
        invoked_function_arn="arn:aws:lambda:eu-west-1:000000000000:function:dummy",
        get_remaining_time_in_millis=lambda: 30000,
    )
