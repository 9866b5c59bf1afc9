# tests/unit/test_clients.py

"""
Unit tests for the S3Sink in src/analytics_pump/clients.py.

These tests ensure that the sink hands the expected arguments to the
underlying boto3 client and translates boto errors into sink errors.
"""

import gzip
import hashlib
import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError

from analytics_pump.clients import S3Sink, SQSRequeuer, encode_batch, serialize_record
from analytics_pump.exceptions import (
    RequeueError,
    SinkAccessDeniedError,
    SinkThrottlingError,
    SinkTimeoutError,
    SinkWriteError,
)
from analytics_pump.models import Counter, DimensionRow


# -----------------------------------------------------------------------------
# Fixtures for setting up sinks with mock dependencies
# -----------------------------------------------------------------------------


@pytest.fixture
def mock_boto_s3_client() -> MagicMock:
    """Yields a MagicMock for the boto3 S3 client."""
    return MagicMock()


@pytest.fixture
def s3_sink(mock_boto_s3_client: MagicMock) -> S3Sink:
    """Yields an S3Sink without KMS."""
    return S3Sink(s3_client=mock_boto_s3_client, bucket="test-bucket", key_prefix="analytics/")


@pytest.fixture
def s3_sink_with_kms(mock_boto_s3_client: MagicMock) -> S3Sink:
    """Yields an S3Sink with KMS enabled."""
    return S3Sink(
        s3_client=mock_boto_s3_client,
        bucket="test-bucket",
        key_prefix="analytics",
        kms_key_id="test-kms-key",
    )


def _client_error(code: str, message: str = "boom") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, "PutObject")


# -----------------------------------------------------------------------------
# Serialization
# -----------------------------------------------------------------------------


def test_encode_batch_writes_json_lines(make_record):
    # ARRANGE
    row = DimensionRow(
        id="abc",
        org_id="org-1",
        timestamp=1710496800,
        dimension="apiid",
        dimension_value="api-1",
        counter=Counter(hits=1),
        codes={"200": 1},
    )
    record = make_record()

    # ACT
    lines = gzip.decompress(encode_batch([record, row])).decode().split("\n")

    # ASSERT
    assert len(lines) == 2
    assert json.loads(lines[0])["org_id"] == "org-1"
    assert json.loads(lines[0])["latency"] == {"total": 100, "upstream": 80}
    decoded_row = json.loads(lines[1])
    assert decoded_row["dimension"] == "apiid"
    assert decoded_row["counter"]["hits"] == 1
    assert decoded_row["code"] == {"200": 1}


def test_serialize_record_falls_back_to_json():
    assert serialize_record({"a": 1}) == '{"a":1}'


# -----------------------------------------------------------------------------
# Writes
# -----------------------------------------------------------------------------


def test_write_puts_gzipped_object_under_target_prefix(
    s3_sink: S3Sink, mock_boto_s3_client: MagicMock, make_record
):
    # Arrange
    records = [make_record(), make_record(path="/orders")]

    # Act
    s3_sink.write("tyk_analytics_20240315", records)

    # Assert
    mock_boto_s3_client.put_object.assert_called_once()
    kwargs = mock_boto_s3_client.put_object.call_args.kwargs
    assert kwargs["Bucket"] == "test-bucket"
    assert kwargs["Key"].startswith("analytics/tyk_analytics_20240315/")
    assert kwargs["Key"].endswith(".jsonl.gz")
    assert kwargs["ContentEncoding"] == "gzip"
    assert kwargs["ContentType"] == "application/x-ndjson"
    assert kwargs["Metadata"] == {
        "content-sha256": hashlib.sha256(kwargs["Body"]).hexdigest(),
        "record-count": "2",
    }
    assert "ServerSideEncryption" not in kwargs
    assert len(gzip.decompress(kwargs["Body"]).decode().split("\n")) == 2


def test_write_with_kms(
    s3_sink_with_kms: S3Sink, mock_boto_s3_client: MagicMock, make_record
):
    s3_sink_with_kms.write("tyk_analytics", [make_record()])

    kwargs = mock_boto_s3_client.put_object.call_args.kwargs
    assert kwargs["ServerSideEncryption"] == "aws:kms"
    assert kwargs["SSEKMSKeyId"] == "test-kms-key"


def test_each_write_uses_a_new_key(s3_sink: S3Sink, mock_boto_s3_client: MagicMock):
    s3_sink.write("tyk_aggregated", [{"a": 1}])
    s3_sink.write("tyk_aggregated", [{"a": 1}])

    keys = [c.kwargs["Key"] for c in mock_boto_s3_client.put_object.call_args_list]
    assert keys[0] != keys[1]


def test_target_prefix_without_key_prefix(mock_boto_s3_client: MagicMock):
    sink = S3Sink(s3_client=mock_boto_s3_client, bucket="b")
    assert sink.target_prefix("tyk_analytics") == "tyk_analytics"


def test_ensure_target_makes_no_calls(s3_sink: S3Sink, mock_boto_s3_client: MagicMock):
    s3_sink.ensure_target("tyk_analytics_20240315")
    mock_boto_s3_client.put_object.assert_not_called()


# -----------------------------------------------------------------------------
# Error mapping
# -----------------------------------------------------------------------------


@pytest.mark.parametrize(
    "code, expected",
    [
        ("AccessDenied", SinkAccessDeniedError),
        ("Throttling", SinkThrottlingError),
        ("SlowDown", SinkThrottlingError),
        ("RequestLimitExceeded", SinkThrottlingError),
        ("RequestTimeout", SinkTimeoutError),
        ("InternalError", SinkWriteError),
    ],
)
def test_client_errors_are_mapped(
    s3_sink: S3Sink, mock_boto_s3_client: MagicMock, code, expected
):
    # Arrange
    mock_boto_s3_client.put_object.side_effect = _client_error(code)

    # Act & Assert
    with pytest.raises(expected) as exc_info:
        s3_sink.write("tyk_analytics", [{"a": 1}])

    assert exc_info.value.context["aws_error_code"] == code
    assert exc_info.value.context["bucket"] == "test-bucket"


def test_read_timeout_is_mapped(s3_sink: S3Sink, mock_boto_s3_client: MagicMock):
    mock_boto_s3_client.put_object.side_effect = ReadTimeoutError(endpoint_url="https://s3")

    with pytest.raises(SinkTimeoutError) as exc_info:
        s3_sink.write("tyk_analytics", [{"a": 1}])

    assert exc_info.value.error_code == "S3_UPLOAD_READ_TIMEOUT"


def test_connection_error_is_mapped(s3_sink: S3Sink, mock_boto_s3_client: MagicMock):
    mock_boto_s3_client.put_object.side_effect = EndpointConnectionError(
        endpoint_url="https://s3"
    )

    with pytest.raises(SinkTimeoutError) as exc_info:
        s3_sink.write("tyk_analytics", [{"a": 1}])

    assert exc_info.value.error_code == "S3_UPLOAD_CONNECTION_ERROR"


# -----------------------------------------------------------------------------
# Requeuer
# -----------------------------------------------------------------------------


@pytest.fixture
def mock_boto_sqs_client() -> MagicMock:
    client = MagicMock()
    client.get_queue_url.return_value = {"QueueUrl": "https://sqs/queue"}
    return client


def test_requeue_sends_mode_tagged_messages(mock_boto_sqs_client: MagicMock, make_record):
    # ARRANGE
    requeuer = SQSRequeuer(sqs_client=mock_boto_sqs_client)
    records = [make_record(), make_record(path="/orders")]

    # ACT
    sent = requeuer.requeue("https://sqs/queue", "analytics", ["raw"], records, attempt=2)

    # ASSERT
    assert sent == 1
    kwargs = mock_boto_sqs_client.send_message.call_args.kwargs
    assert kwargs["QueueUrl"] == "https://sqs/queue"
    assert "MessageGroupId" not in kwargs
    body = json.loads(kwargs["MessageBody"])
    assert body["kind"] == "analytics"
    assert body["modes"] == ["raw"]
    assert body["attempt"] == 2
    assert [r["path"] for r in body["records"]] == ["/users", "/orders"]


def test_requeue_splits_bodies_by_size(mock_boto_sqs_client: MagicMock, make_record):
    requeuer = SQSRequeuer(sqs_client=mock_boto_sqs_client, max_message_bytes=3000)
    records = [make_record(raw_request="x" * 1500) for _ in range(3)]

    bodies = requeuer.encode_messages("analytics", ["raw"], records, attempt=1)

    assert len(bodies) == 3
    assert all(len(json.loads(b)["records"]) == 1 for b in bodies)


def test_requeue_to_fifo_queue_sets_group_and_dedup_ids(
    mock_boto_sqs_client: MagicMock, make_uptime_record
):
    requeuer = SQSRequeuer(sqs_client=mock_boto_sqs_client)

    requeuer.requeue("https://sqs/queue.fifo", "uptime", ["uptime"], [make_uptime_record()], 1)

    kwargs = mock_boto_sqs_client.send_message.call_args.kwargs
    assert kwargs["MessageGroupId"] == "uptime"
    assert kwargs["MessageDeduplicationId"] == hashlib.sha256(
        kwargs["MessageBody"].encode("utf-8")
    ).hexdigest()


def test_requeue_maps_client_errors(mock_boto_sqs_client: MagicMock, make_record):
    mock_boto_sqs_client.send_message.side_effect = _client_error("ThrottlingException")
    requeuer = SQSRequeuer(sqs_client=mock_boto_sqs_client)

    with pytest.raises(RequeueError) as exc_info:
        requeuer.requeue("https://sqs/queue", "analytics", ["raw"], [make_record()], 1)

    assert exc_info.value.context["aws_error_code"] == "ThrottlingException"
    assert exc_info.value.context["sent_messages"] == 0


def test_queue_url_is_resolved_once_per_arn(mock_boto_sqs_client: MagicMock):
    requeuer = SQSRequeuer(sqs_client=mock_boto_sqs_client)
    arn = "arn:aws:sqs:eu-west-1:123456789012:analytics"

    assert requeuer.queue_url_for_arn(arn) == "https://sqs/queue"
    assert requeuer.queue_url_for_arn(arn) == "https://sqs/queue"

    mock_boto_sqs_client.get_queue_url.assert_called_once_with(
        QueueName="analytics", QueueOwnerAWSAccountId="123456789012"
    )


def test_queue_url_rejects_non_sqs_arn(mock_boto_sqs_client: MagicMock):
    requeuer = SQSRequeuer(sqs_client=mock_boto_sqs_client)

    with pytest.raises(RequeueError):
        requeuer.queue_url_for_arn("arn:aws:s3:::bucket")

    mock_boto_sqs_client.get_queue_url.assert_not_called()
