"""
The Lambda Adapter & Orchestrator for the analytics pump.

This module is the main entry point for the AWS Lambda function. It is
responsible for:
1.  Initializing and configuring AWS Lambda Powertools (Logger, Tracer and
    Metrics).
2.  Parsing and validating incoming SQS messages carrying gateway analytics
    or uptime records.
3.  Running one purge cycle per pump mode against the S3 sink.
4.  Guarding the purge against the Lambda timeout through a cancellation event.
5.  Sending records whose write failed back to the queue, tagged with the one
    mode that still has to write them. Whole messages are only handed back to
    SQS as partial batch failures when no mode has written any of their
    records, so a redelivery never writes the same output twice.
"""

import json
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, cast

import boto3
import pydantic
from aws_lambda_powertools import Logger, Metrics, Tracer
from aws_lambda_powertools.metrics import MetricUnit
from aws_lambda_powertools.utilities.batch.types import (
    PartialItemFailures,
    PartialItemFailureResponse,
)
from aws_lambda_powertools.utilities.typing import LambdaContext

from .clients import S3Sink, SQSRequeuer
from .config import get_config
from .exceptions import (
    AnalyticsPumpError,
    InvalidRecordError,
    PurgeCancelledError,
    get_error_context,
    is_retryable_error,
)
from .pipeline import PumpMode, PurgeResult, run_purge_cycle
from .schemas import AnalyticsRecord, UptimeRecord

# --- Global & Reusable Components ---
CONFIG = get_config()

logger = Logger(service=CONFIG.service_name, level=CONFIG.log_level)
tracer = Tracer(service=CONFIG.service_name)
metrics = Metrics(
    namespace="AnalyticsPump",
    service=CONFIG.service_name,
)

s3_boto_client = boto3.client("s3")
sink = S3Sink(
    s3_client=s3_boto_client,
    bucket=CONFIG.distribution_bucket,
    key_prefix=CONFIG.s3_key_prefix,
    kms_key_id=CONFIG.kms_key_id,
)
sqs_boto_client = boto3.client("sqs")
requeuer = SQSRequeuer(sqs_client=sqs_boto_client)

ANALYTICS_KIND = "analytics"
UPTIME_KIND = "uptime"
_RECORD_MODELS: dict[str, type[pydantic.BaseModel]] = {
    ANALYTICS_KIND: AnalyticsRecord,
    UPTIME_KIND: UptimeRecord,
}
_KIND_MODES: dict[str, frozenset[str]] = {
    ANALYTICS_KIND: frozenset({PumpMode.RAW.value, PumpMode.AGGREGATE.value}),
    UPTIME_KIND: frozenset({PumpMode.UPTIME.value}),
}


@dataclass(frozen=True)
class InboundMessage:
    kind: str
    records: list[Any]
    # None means every mode enabled for the kind
    modes: frozenset[str] | None = None
    attempt: int = 0


@dataclass
class InboundBatch:
    """Validated records of one invocation and the messages they came from."""

    analytics: list[AnalyticsRecord] = field(default_factory=list)
    uptime: list[UptimeRecord] = field(default_factory=list)
    failed_message_ids: set[str] = field(default_factory=set)
    # id(record) -> SQS message id; records stay referenced by the lists above.
    record_to_message_id: dict[int, str] = field(default_factory=dict)
    message_modes: dict[str, frozenset[str]] = field(default_factory=dict)
    message_attempts: dict[str, int] = field(default_factory=dict)

    def add(self, message: InboundMessage, message_id: str) -> None:
        target = self.analytics if message.kind == ANALYTICS_KIND else self.uptime
        target.extend(message.records)
        for record in message.records:
            self.record_to_message_id[id(record)] = message_id
        if message.modes is not None:
            self.message_modes[message_id] = message.modes
        if message.attempt:
            self.message_attempts[message_id] = message.attempt

    def message_ids_for(self, records: Iterable[Any]) -> set[str]:
        return {
            self.record_to_message_id[id(r)]
            for r in records
            if id(r) in self.record_to_message_id
        }

    def records_for(self, mode: PumpMode) -> list[Any]:
        """Records owed to *mode*, honouring any mode restriction on their message."""
        source: list[Any] = self.uptime if mode is PumpMode.UPTIME else self.analytics
        selected = []
        for record in source:
            modes = self.message_modes.get(self.record_to_message_id.get(id(record), ""))
            if modes is None or mode.value in modes:
                selected.append(record)
        return selected

    def next_attempt(self, records: Iterable[Any]) -> int:
        attempts = [self.message_attempts.get(mid, 0) for mid in self.message_ids_for(records)]
        return max(attempts, default=0) + 1


@dataclass
class ModeOutcome:
    """What one purge left behind: records to retry and messages it wrote."""

    retry_records: list[Any] = field(default_factory=list)
    written_message_ids: set[str] = field(default_factory=set)


def build_partial_failure_response(
    failed_message_ids: set[str],
) -> PartialItemFailureResponse:
    """
    Given a set of SQS message IDs, return the structure that the
    Lambda partial batch response API expects.
    """
    failures = [
        cast(PartialItemFailures, {"itemIdentifier": mid})
        for mid in sorted(failed_message_ids)
    ]
    response = cast(PartialItemFailureResponse, {"batchItemFailures": failures})
    return response


def parse_message_body(body: str) -> InboundMessage:
    """
    Validates one message body.

    A body is either a JSON list of analytics records or an object with a
    `records` list, an optional `kind`, and, on requeued messages, the
    `modes` still owed to the records and the `attempt` number.
    """
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, TypeError) as e:
        raise InvalidRecordError(f"Message body is not valid JSON: {e}") from e

    if isinstance(payload, list):
        return InboundMessage(
            kind=ANALYTICS_KIND,
            records=[AnalyticsRecord.model_validate(r) for r in payload],
        )
    if not isinstance(payload, dict):
        raise InvalidRecordError("Message body must be a JSON list or object.")

    kind = str(payload.get("kind", ANALYTICS_KIND)).lower()
    model = _RECORD_MODELS.get(kind)
    if model is None:
        raise InvalidRecordError(
            f"Unknown record kind '{kind}'", context={"kind": kind}
        )
    raw_records = payload.get("records")
    if not isinstance(raw_records, list):
        raise InvalidRecordError("'records' list is missing.")

    modes = payload.get("modes")
    if modes is not None:
        if not isinstance(modes, list) or not set(modes) <= _KIND_MODES[kind]:
            raise InvalidRecordError(
                f"Invalid modes for '{kind}' records: {modes}",
                context={"kind": kind, "modes": modes},
            )
        modes = frozenset(modes)

    attempt = payload.get("attempt", 0)
    if not isinstance(attempt, int) or isinstance(attempt, bool) or attempt < 0:
        raise InvalidRecordError(f"Invalid attempt number: {attempt!r}")

    return InboundMessage(
        kind=kind,
        records=[model.model_validate(r) for r in raw_records],
        modes=modes,
        attempt=attempt,
    )


def _parse_sqs_records(sqs_records: list[dict]) -> InboundBatch:
    batch = InboundBatch()
    for sqs_record in sqs_records:
        message_id = sqs_record["messageId"]
        try:
            message = parse_message_body(sqs_record.get("body", ""))
        except InvalidRecordError as e:
            metrics.add_metric(name="InvalidMessages", unit=MetricUnit.Count, value=1)
            logger.warning(
                "Failed to parse SQS message body.",
                extra={"messageId": message_id, "error": str(e)},
            )
            batch.failed_message_ids.add(message_id)
            continue
        except pydantic.ValidationError as e:
            metrics.add_metric(name="InvalidMessages", unit=MetricUnit.Count, value=1)
            logger.warning(
                "Invalid analytics record failed validation.",
                extra={
                    "messageId": message_id,
                    "validation_errors": e.errors(include_url=False),
                },
            )
            batch.failed_message_ids.add(message_id)
            continue

        batch.add(message, message_id)
    return batch


def _start_timeout_guard(
    context: LambdaContext, cancel_event: threading.Event
) -> threading.Timer | None:
    """Arms a timer that cancels the purge shortly before the Lambda times out."""
    remaining_ms = context.get_remaining_time_in_millis()
    delay_ms = remaining_ms - CONFIG.timeout_guard_threshold_ms
    if delay_ms <= 0:
        logger.warning(
            "Not enough time left to start a purge.",
            extra={"remaining_ms": remaining_ms},
        )
        cancel_event.set()
        return None

    timer = threading.Timer(delay_ms / 1000, cancel_event.set)
    timer.daemon = True
    timer.start()
    return timer


def _mode_metric(mode: PumpMode, name: str) -> str:
    return f"{mode.value.title()}{name}"


def _record_purge_metrics(result: PurgeResult) -> None:
    counts = {
        "RecordsWritten": result.records_written,
        "DroppedRecords": result.plan.dropped,
        "RedactedRecords": result.plan.redacted,
        "SkippedRecordsWithoutOrg": result.plan.skipped_missing_org,
        "FailedBatches": len(result.report.failed),
        "CancelledBatches": len(result.report.cancelled),
    }
    for name, value in counts.items():
        metrics.add_metric(
            name=_mode_metric(result.mode, name), unit=MetricUnit.Count, value=value
        )


def _written_message_ids(
    result: PurgeResult, batch: InboundBatch, contributing_ids: set[str]
) -> set[str]:
    """Messages with at least one record in a batch that was written."""
    written: set[str] = set()
    for job in result.report.succeeded:
        sources = job.source_records
        if any(id(r) not in batch.record_to_message_id for r in sources):
            return set(contributing_ids)
        written.update(batch.message_ids_for(sources))
    return written


def _retry_records_for_result(result: PurgeResult) -> list[Any]:
    """Source records of failed (retryable) and cancelled jobs, without repeats."""
    jobs_to_retry = list(result.report.cancelled)
    for failure in result.report.failed:
        if is_retryable_error(failure.error):
            jobs_to_retry.append(failure.job)
        else:
            logger.error(
                "Non-retryable batch write failure; records will not be retried.",
                extra=failure.to_dict(),
            )

    if result.mode is not PumpMode.RAW:
        # a rollup retry rewrites every row of the organization
        written_orgs = {(job.target, job.org_id) for job in result.report.succeeded}
        partly_written = [
            job for job in jobs_to_retry if (job.target, job.org_id) in written_orgs
        ]
        for job in partly_written:
            metrics.add_metric(
                name=_mode_metric(result.mode, "AbandonedBatches"),
                unit=MetricUnit.Count,
                value=1,
            )
            logger.error(
                "Rollup rows of an organization were partly written; not retrying them.",
                extra=job.describe(),
            )
        skipped = {id(job) for job in partly_written}
        jobs_to_retry = [job for job in jobs_to_retry if id(job) not in skipped]

    records: list[Any] = []
    seen: set[int] = set()
    for job in jobs_to_retry:
        for record in job.source_records:
            if id(record) not in seen:
                seen.add(id(record))
                records.append(record)
    return records


@tracer.capture_method
def _purge_mode(
    mode: PumpMode,
    records: list[Any],
    batch: InboundBatch,
    cancel_event: threading.Event,
) -> ModeOutcome:
    """Runs one purge cycle and reports what is left to retry."""
    contributing_ids = batch.message_ids_for(records)
    try:
        result = run_purge_cycle(
            records, sink, CONFIG, mode=mode, cancel_event=cancel_event
        )
    except PurgeCancelledError as e:
        metrics.add_metric(
            name=_mode_metric(mode, "CancelledPurges"), unit=MetricUnit.Count, value=1
        )
        logger.warning(
            f"Purge cancelled before writing: {e}",
            extra={"mode": mode.value, "error": get_error_context(e)},
        )
        return ModeOutcome(retry_records=list(records))
    except AnalyticsPumpError as e:
        error_details = get_error_context(e)
        retryable = error_details["retryable"]
        metrics.add_metric(
            name="RetryableAppErrors" if retryable else "NonRetryableAppErrors",
            unit=MetricUnit.Count,
            value=1,
        )
        log_level = logger.warning if retryable else logger.error
        log_level(
            f"Application error during purge: {e}",
            extra={
                "mode": mode.value,
                "error_type": error_details.get("error_type"),
                "retryable": retryable,
                "records_count": len(records),
            },
        )
        return ModeOutcome(retry_records=list(records) if retryable else [])

    _record_purge_metrics(result)
    outcome = ModeOutcome(
        written_message_ids=_written_message_ids(result, batch, contributing_ids)
    )
    if result.ok:
        return outcome

    outcome.retry_records = _retry_records_for_result(result)
    logger.warning(
        "Purge partially completed - some records will be retried",
        extra={**result.summary(), "retry_records": len(outcome.retry_records)},
    )
    return outcome


def _fall_back_to_redelivery(
    mode: PumpMode, message_ids: set[str], written_message_ids: set[str]
) -> set[str]:
    """
    Hands messages back to SQS when nothing of them was written yet; messages
    another write already covered are logged and dropped.
    """
    abandoned = message_ids & written_message_ids
    if abandoned:
        metrics.add_metric(
            name=_mode_metric(mode, "AbandonedMessages"),
            unit=MetricUnit.Count,
            value=len(abandoned),
        )
        logger.error(
            "Records could not be retried without rewriting data; dropping them.",
            extra={"mode": mode.value, "messages": sorted(abandoned)},
        )
    return message_ids - written_message_ids


def _requeue_mode(
    mode: PumpMode,
    records: list[Any],
    batch: InboundBatch,
    written_message_ids: set[str],
    source_queue_arn: str,
) -> set[str]:
    """
    Requeues *records* for *mode* only. Returns the message IDs that must be
    redelivered whole instead.
    """
    message_ids = batch.message_ids_for(records)
    attempt = batch.next_attempt(records)
    if attempt > CONFIG.max_requeue_attempts:
        logger.warning(
            "Requeue attempts exhausted.",
            extra={"mode": mode.value, "attempt": attempt, "records": len(records)},
        )
        return _fall_back_to_redelivery(mode, message_ids, written_message_ids)

    kind = UPTIME_KIND if mode is PumpMode.UPTIME else ANALYTICS_KIND
    try:
        queue_url = CONFIG.retry_queue_url or requeuer.queue_url_for_arn(
            source_queue_arn
        )
        requeuer.requeue(queue_url, kind, [mode.value], records, attempt)
    except AnalyticsPumpError as e:
        logger.error(
            f"Failed to requeue records: {e}",
            extra={"mode": mode.value, "error": get_error_context(e)},
        )
        return _fall_back_to_redelivery(mode, message_ids, written_message_ids)

    metrics.add_metric(
        name=_mode_metric(mode, "RequeuedRecords"),
        unit=MetricUnit.Count,
        value=len(records),
    )
    return set()


def _modes_for(batch: InboundBatch) -> list[tuple[PumpMode, list[Any]]]:
    runs: list[tuple[PumpMode, list[Any]]] = []
    for mode in (PumpMode.RAW, PumpMode.AGGREGATE):
        if mode.value in CONFIG.pump_modes:
            records = batch.records_for(mode)
            if records:
                runs.append((mode, records))
    if batch.uptime:
        if PumpMode.UPTIME.value in CONFIG.pump_modes:
            runs.append((PumpMode.UPTIME, batch.records_for(PumpMode.UPTIME)))
        else:
            metrics.add_metric(
                name="IgnoredUptimeRecords",
                unit=MetricUnit.Count,
                value=len(batch.uptime),
            )
            logger.warning(
                "Received uptime records but uptime mode is disabled.",
                extra={"records": len(batch.uptime)},
            )
    return runs


@logger.inject_lambda_context()
@tracer.capture_lambda_handler
@metrics.log_metrics(capture_cold_start_metric=True)
def handler(event: dict, context: LambdaContext) -> PartialItemFailureResponse:
    """Main Lambda handler for SQS events."""
    metrics.add_dimension("environment", CONFIG.environment)

    sqs_records: list[dict] = event.get("Records", [])
    if not sqs_records:
        logger.warning("Event did not contain any SQS records. Exiting gracefully.")
        return {"batchItemFailures": []}

    logger.info(
        "Starting SQS batch processing",
        extra={
            "sqs_messages": len(sqs_records),
            "pump_modes": list(CONFIG.pump_modes),
            "request_id": context.aws_request_id,
        },
    )

    # --- 1. Parse and validate every message ---
    batch = _parse_sqs_records(sqs_records)
    failed_message_ids = set(batch.failed_message_ids)
    metrics.add_metric(
        name="ReceivedRecords",
        unit=MetricUnit.Count,
        value=len(batch.analytics) + len(batch.uptime),
    )

    runs = _modes_for(batch)
    if not runs:
        logger.info("No records to purge after validation.")
        return build_partial_failure_response(failed_message_ids)

    # --- 2. Purge once per enabled mode, under the timeout guard ---
    cancel_event = threading.Event()
    timer = _start_timeout_guard(context, cancel_event)
    outcomes: list[tuple[PumpMode, ModeOutcome]] = []
    try:
        for mode, records in runs:
            try:
                outcome = _purge_mode(mode, records, batch, cancel_event)
            except Exception:
                logger.exception(
                    "A non-recoverable error occurred during the purge.",
                    extra={"mode": mode.value},
                )
                outcome = ModeOutcome(retry_records=list(records))
            outcomes.append((mode, outcome))
    finally:
        if timer is not None:
            timer.cancel()

    # --- 3. Send unwritten records back, one mode per message ---
    written_message_ids: set[str] = set()
    for _, outcome in outcomes:
        written_message_ids.update(outcome.written_message_ids)

    source_queue_arn = sqs_records[0].get("eventSourceARN", "")
    for mode, outcome in outcomes:
        if outcome.retry_records:
            failed_message_ids.update(
                _requeue_mode(
                    mode,
                    outcome.retry_records,
                    batch,
                    written_message_ids,
                    source_queue_arn,
                )
            )

    # --- 4. Return the final result ---
    if failed_message_ids:
        metrics.add_metric(
            name="RetriedMessages", unit=MetricUnit.Count, value=len(failed_message_ids)
        )
        return build_partial_failure_response(failed_message_ids)

    return {"batchItemFailures": []}
