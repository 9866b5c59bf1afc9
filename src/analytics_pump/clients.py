# src/analytics_pump/clients.py

"""
S3-backed sink for raw and aggregated analytics batches, and the SQS
requeuer that sends unwritten records back for another attempt.

Each batch becomes one gzipped JSON-lines object under
``<prefix>/<target>/``, so a day-sharded target maps onto a day-qualified key
prefix. boto3 errors are translated into the pump's exception hierarchy so
the dispatcher can tell retryable failures from permanent ones.
"""

import gzip
import hashlib
import json
import logging
import uuid
from typing import TYPE_CHECKING, Any, Sequence

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from pydantic import BaseModel

from .exceptions import (
    RequeueError,
    SinkAccessDeniedError,
    SinkThrottlingError,
    SinkTimeoutError,
    SinkWriteError,
)

if TYPE_CHECKING:
    from mypy_boto3_s3.client import S3Client as S3ClientType
    from mypy_boto3_sqs.client import SQSClient as SQSClientType

logger = logging.getLogger(__name__)

_THROTTLING_CODES = ("Throttling", "ThrottlingException", "RequestLimitExceeded", "SlowDown")
_TIMEOUT_CODES = ("RequestTimeout", "RequestTimeoutException")

# SQS caps a message body at 256 KiB; leave room for attributes.
REQUEUE_MAX_MESSAGE_BYTES = 240 * 1024


def serialize_record(record: Any) -> str:
    if isinstance(record, BaseModel):
        return record.model_dump_json()
    if hasattr(record, "to_dict"):
        return json.dumps(record.to_dict(), default=str, separators=(",", ":"))
    return json.dumps(record, default=str, separators=(",", ":"))


def encode_batch(records: Sequence[Any]) -> bytes:
    """Gzipped JSON lines, one record per line."""
    lines = "\n".join(serialize_record(record) for record in records)
    return gzip.compress(lines.encode("utf-8"), mtime=0)


class S3Sink:
    """
    A `Sink` that writes every batch as a separate S3 object.
    """

    def __init__(
        self,
        s3_client: "S3ClientType",
        bucket: str,
        key_prefix: str = "",
        kms_key_id: str | None = None,
    ):
        """
        Initializes the S3Sink.

        Args:
            s3_client: A typed boto3 S3 client.
            bucket: Destination bucket for every batch.
            key_prefix: Prefix placed before the target name.
            kms_key_id: Optional KMS key ID for server-side encryption.
        """
        self._client = s3_client
        self._bucket = bucket
        self._key_prefix = key_prefix.strip("/")
        self._kms_key_id = kms_key_id
        if self._kms_key_id:
            logger.debug(
                "S3Sink initialized with SSE-KMS enabled.",
                extra={"kms_key_id": self._kms_key_id},
            )

    def target_prefix(self, target: str) -> str:
        if self._key_prefix:
            return f"{self._key_prefix}/{target}"
        return target

    def ensure_target(self, target: str) -> None:
        # S3 prefixes exist implicitly once an object is written under them.
        logger.debug(
            "Using S3 prefix as storage target.",
            extra={"bucket": self._bucket, "prefix": self.target_prefix(target)},
        )

    def write(self, target: str, records: Sequence[Any]) -> None:
        body = encode_batch(records)
        key = f"{self.target_prefix(target)}/{uuid.uuid4().hex}.jsonl.gz"
        self.put_batch(key, body, record_count=len(records))

    def put_batch(self, key: str, body: bytes, record_count: int) -> None:
        """Uploads one encoded batch, mapping boto errors onto sink errors."""
        content_hash = hashlib.sha256(body).hexdigest()
        extra_args: dict[str, Any] = {
            "Metadata": {
                "content-sha256": content_hash,
                "record-count": str(record_count),
            },
            "ContentEncoding": "gzip",
            "ContentType": "application/x-ndjson",
        }
        if self._kms_key_id:
            extra_args.update(
                {"ServerSideEncryption": "aws:kms", "SSEKMSKeyId": self._kms_key_id}
            )
        logger.info(
            "Uploading batch",
            extra={
                "bucket": self._bucket,
                "key": key,
                "records": record_count,
                "kms_enabled": bool(self._kms_key_id),
            },
        )

        try:
            self._client.put_object(
                Bucket=self._bucket, Key=key, Body=body, **extra_args
            )
            logger.debug(
                "Upload (PUT) completed successfully",
                extra={"bucket": self._bucket, "key": key},
            )
        except ClientError as e:
            error_code = e.response["Error"]["Code"]
            error_message = e.response["Error"]["Message"]
            context = {
                "bucket": self._bucket,
                "key": key,
                "aws_error_code": error_code,
                "aws_error_message": error_message,
            }

            # Map boto3 error codes to our specific exception types
            if error_code == "AccessDenied":
                raise SinkAccessDeniedError(
                    target=f"s3://{self._bucket}/{key}", context=context
                ) from e
            elif error_code in _THROTTLING_CODES:
                raise SinkThrottlingError(
                    "PutObject",
                    error_code="S3_UPLOAD_THROTTLING",
                    context=context,
                ) from e
            elif error_code in _TIMEOUT_CODES:
                raise SinkTimeoutError(
                    "PutObject",
                    error_code="S3_UPLOAD_TIMEOUT",
                    context=context,
                ) from e
            else:
                raise SinkWriteError(
                    f"s3://{self._bucket}/{key}",
                    error_message,
                    error_code="S3_UPLOAD_ERROR",
                    context=context,
                ) from e
        except ReadTimeoutError as e:
            raise SinkTimeoutError(
                "PutObject",
                error_code="S3_UPLOAD_READ_TIMEOUT",
                context={"bucket": self._bucket, "key": key, "timeout_error": str(e)},
            ) from e
        except EndpointConnectionError as e:
            raise SinkTimeoutError(
                "PutObject",
                error_code="S3_UPLOAD_CONNECTION_ERROR",
                context={
                    "bucket": self._bucket,
                    "key": key,
                    "connection_error": str(e),
                },
            ) from e


def _jsonable(record: Any) -> Any:
    if isinstance(record, BaseModel):
        return record.model_dump(mode="json")
    if hasattr(record, "to_dict"):
        return json.loads(json.dumps(record.to_dict(), default=str))
    return record


class SQSRequeuer:
    """
    Sends records back to a queue as new messages that name the pump modes
    still owed to them, so a redelivery never repeats a mode that already
    wrote its output.
    """

    def __init__(
        self,
        sqs_client: "SQSClientType",
        max_message_bytes: int = REQUEUE_MAX_MESSAGE_BYTES,
    ):
        self._client = sqs_client
        self._max_message_bytes = max_message_bytes
        self._queue_urls: dict[str, str] = {}

    def queue_url_for_arn(self, queue_arn: str) -> str:
        """Resolves (and caches) the URL of the queue behind *queue_arn*."""
        if queue_arn in self._queue_urls:
            return self._queue_urls[queue_arn]

        parts = queue_arn.split(":")
        if len(parts) != 6 or parts[2] != "sqs":
            raise RequeueError(queue_arn, "not an SQS queue ARN")
        try:
            response = self._client.get_queue_url(
                QueueName=parts[5], QueueOwnerAWSAccountId=parts[4]
            )
        except ClientError as e:
            raise RequeueError(
                queue_arn,
                e.response["Error"]["Message"],
                context={"aws_error_code": e.response["Error"]["Code"]},
            ) from e
        except BotoCoreError as e:
            raise RequeueError(queue_arn, str(e)) from e

        self._queue_urls[queue_arn] = response["QueueUrl"]
        return response["QueueUrl"]

    def encode_messages(
        self, kind: str, modes: Sequence[str], records: Sequence[Any], attempt: int
    ) -> list[str]:
        """Splits *records* into message bodies that fit the size limit."""
        header = {"kind": kind, "modes": list(modes), "attempt": attempt}
        overhead = len(json.dumps({**header, "records": []}))

        bodies: list[str] = []
        chunk: list[Any] = []
        chunk_bytes = 0
        for record in records:
            item = _jsonable(record)
            item_bytes = len(json.dumps(item, default=str).encode("utf-8")) + 2
            if chunk and overhead + chunk_bytes + item_bytes > self._max_message_bytes:
                bodies.append(json.dumps({**header, "records": chunk}, default=str))
                chunk, chunk_bytes = [], 0
            chunk.append(item)
            chunk_bytes += item_bytes

        if chunk:
            bodies.append(json.dumps({**header, "records": chunk}, default=str))
        return bodies

    def requeue(
        self,
        queue_url: str,
        kind: str,
        modes: Sequence[str],
        records: Sequence[Any],
        attempt: int,
    ) -> int:
        """Sends *records* to *queue_url*; returns the number of messages sent."""
        bodies = self.encode_messages(kind, modes, records, attempt)
        logger.info(
            "Requeueing records",
            extra={
                "queue_url": queue_url,
                "kind": kind,
                "modes": list(modes),
                "records": len(records),
                "messages": len(bodies),
                "attempt": attempt,
            },
        )

        for sent, body in enumerate(bodies):
            params: dict[str, Any] = {"QueueUrl": queue_url, "MessageBody": body}
            if queue_url.endswith(".fifo"):
                params["MessageGroupId"] = kind
                params["MessageDeduplicationId"] = hashlib.sha256(
                    body.encode("utf-8")
                ).hexdigest()
            try:
                self._client.send_message(**params)
            except ClientError as e:
                raise RequeueError(
                    queue_url,
                    e.response["Error"]["Message"],
                    context={
                        "aws_error_code": e.response["Error"]["Code"],
                        "sent_messages": sent,
                    },
                ) from e
            except BotoCoreError as e:
                raise RequeueError(
                    queue_url, str(e), context={"sent_messages": sent}
                ) from e
        return len(bodies)
