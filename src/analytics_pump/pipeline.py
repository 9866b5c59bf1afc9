# src/analytics_pump/pipeline.py

"""
Purge-cycle orchestration.

One purge cycle takes the records drained from the upstream queue and turns
them into write jobs for a sink:

- raw:       records -> [day shards] -> byte-budget batches
- aggregate: records -> [day shards] -> aggregation pass -> finalization
             -> dimension rows -> byte-budget batches (per organization)
- uptime:    like aggregate, with the uptime pass

Planning is pure and happens up front. Day targets are then created in order,
and finally every job is handed to `dispatch` for concurrent writing.
"""

import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Sequence

from .aggregate import (
    AggregationStats,
    aggregate_records,
    aggregate_uptime_records,
    discard_aggregations,
    warn_on_tag_explosion,
)
from .batching import batch_records
from .config import AppConfig
from .dispatch import DispatchReport, Sink, WriteJob, dispatch
from .exceptions import PurgeCancelledError
from .finalize import dimension_rows, finalize_bucket
from .models import AggregateBucket
from .sharding import partition_by_day, shard_table_name, sort_by_timestamp

logger = logging.getLogger(__name__)


class PumpMode(str, enum.Enum):
    RAW = "raw"
    AGGREGATE = "aggregate"
    UPTIME = "uptime"


@dataclass(slots=True)
class WritePlan:
    jobs: list[WriteJob] = field(default_factory=list)
    new_targets: list[str] = field(default_factory=list)
    dropped: int = 0
    redacted: int = 0
    skipped_missing_org: int = 0
    network_pulses: int = 0


@dataclass(slots=True)
class PurgeResult:
    mode: PumpMode
    records_in: int
    plan: WritePlan
    report: DispatchReport

    @property
    def records_written(self) -> int:
        return self.report.records_written

    @property
    def ok(self) -> bool:
        return self.report.ok

    def raise_for_failures(self) -> None:
        self.report.raise_for_failures()

    def summary(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "records_in": self.records_in,
            "jobs": len(self.plan.jobs),
            "records_written": self.records_written,
            "failed_jobs": len(self.report.failed),
            "cancelled_jobs": len(self.report.cancelled),
            "dropped": self.plan.dropped,
            "redacted": self.plan.redacted,
            "skipped_missing_org": self.plan.skipped_missing_org,
        }


# --- Planning helpers ---


def _runs(
    records: Sequence[Any], config: AppConfig, base_table: str
) -> Iterator[tuple[Sequence[Any], str, str | None, bool]]:
    """Yields (records, target, day_key, is_new_target) for each write run."""
    if not config.table_sharding:
        yield records, base_table, None, False
        return

    for shard in partition_by_day(records):
        yield (
            shard.slice(records),
            shard_table_name(base_table, shard.day_key),
            shard.day_key,
            shard.is_new_day,
        )


def _prepare(records: Sequence[Any], config: AppConfig) -> list[Any]:
    if config.table_sharding and config.sort_before_sharding:
        return sort_by_timestamp(records)
    return list(records)


def _add_batches(
    plan: WritePlan,
    records: Sequence[Any],
    target: str,
    config: AppConfig,
    org_id: str | None = None,
    shard: str | None = None,
    sources: Sequence[Any] | None = None,
) -> None:
    """
    Batches *records* into jobs for *target*. Rollup rows pass the raw
    *sources* they were built from; raw batches resolve their own.
    """
    result = batch_records(
        records,
        max_batch_bytes=config.max_insert_batch_size_bytes,
        max_record_bytes=config.max_document_size_bytes,
        policy=config.oversized_record_policy,
        max_batch_records=config.max_batch_records,
    )
    plan.dropped += result.dropped
    plan.redacted += result.redacted
    for batch in result.batches:
        if sources is not None:
            batch_sources: list[Any] | None = list(sources)
        elif result.originals:
            batch_sources = result.sources_of(batch)
        else:
            batch_sources = None
        plan.jobs.append(
            WriteJob(
                target=target,
                records=batch,
                org_id=org_id,
                shard=shard,
                sources=batch_sources,
            )
        )


def plan_raw_writes(records: Sequence[Any], config: AppConfig) -> WritePlan:
    plan = WritePlan()
    http_records = [r for r in records if not r.is_network_pulse]
    plan.network_pulses = len(records) - len(http_records)

    prepared = _prepare(http_records, config)
    for run, target, day, is_new in _runs(prepared, config, config.raw_table_name):
        if is_new:
            plan.new_targets.append(target)
        _add_batches(plan, run, target, config, shard=day)
    return plan


def _plan_rollups(
    records: Sequence[Any],
    config: AppConfig,
    base_table: str,
    aggregate_run: Callable[[Sequence[Any], AggregationStats], dict[str, AggregateBucket]],
) -> WritePlan:
    plan = WritePlan()
    prepared = _prepare(records, config)

    for run, target, day, is_new in _runs(prepared, config, base_table):
        stats = AggregationStats()
        buckets = aggregate_run(run, stats)
        plan.skipped_missing_org += stats.skipped_missing_org
        if not buckets:
            continue
        if is_new:
            plan.new_targets.append(target)

        for org_id, bucket in buckets.items():
            if config.ignore_aggregations:
                discard_aggregations(bucket, config.ignore_aggregations)
            warn_on_tag_explosion(bucket, config.tag_alert_threshold)
            finalize_bucket(bucket, keep_error_list=config.keep_error_list)
            _add_batches(
                plan,
                dimension_rows(bucket),
                target,
                config,
                org_id=org_id,
                shard=day,
                sources=[r for r in run if r.org_id == org_id],
            )
    return plan


def plan_aggregate_writes(records: Sequence[Any], config: AppConfig) -> WritePlan:
    return _plan_rollups(
        records,
        config,
        config.aggregate_table_name,
        lambda run, stats: aggregate_records(
            run,
            track_all_paths=config.track_all_paths,
            ignore_tag_prefixes=config.ignore_tag_prefix_list,
            minute_granularity=config.aggregation_minutes,
            stats=stats,
        ),
    )


def plan_uptime_writes(records: Sequence[Any], config: AppConfig) -> WritePlan:
    return _plan_rollups(
        records,
        config,
        config.uptime_table_name,
        lambda run, stats: aggregate_uptime_records(
            run, minute_granularity=config.aggregation_minutes, stats=stats
        ),
    )


PLANNERS: dict[PumpMode, Callable[[Sequence[Any], AppConfig], WritePlan]] = {
    PumpMode.RAW: plan_raw_writes,
    PumpMode.AGGREGATE: plan_aggregate_writes,
    PumpMode.UPTIME: plan_uptime_writes,
}


# --- High-Level Orchestrator ---
def run_purge_cycle(
    records: Sequence[Any],
    sink: Sink,
    config: AppConfig,
    mode: PumpMode = PumpMode.RAW,
    cancel_event: threading.Event | None = None,
) -> PurgeResult:
    """
    Plans and writes one purge cycle of *records* in the given *mode*.

    Write failures are reported on the returned `PurgeResult`, not raised;
    errors while creating day targets propagate, since nothing can be
    written into a target that does not exist.
    """
    mode = PumpMode(mode)
    logger.debug(f"Attempting to write {len(records)} records...", extra={"mode": mode.value})

    plan = PLANNERS[mode](records, config)

    if cancel_event is not None and cancel_event.is_set():
        raise PurgeCancelledError(pending_jobs=len(plan.jobs))

    for target in plan.new_targets:
        logger.debug("Ensuring storage target exists.", extra={"target": target})
        sink.ensure_target(target)

    report = dispatch(
        plan.jobs,
        sink,
        max_workers=config.max_write_workers,
        cancel_event=cancel_event,
    )
    result = PurgeResult(mode=mode, records_in=len(records), plan=plan, report=report)

    log = logger.info if result.ok else logger.warning
    log(f"Purged {len(records)} records...", extra=result.summary())
    return result
