# src/analytics_pump/aggregate.py

"""
Aggregation pass: folds raw gateway records into per-organization buckets.

Every dimension is declared up front in `ANALYTICS_DIMENSION_TABLE` as a
`DimensionDescriptor`: a name plus a function that returns the entries a
record contributes to that dimension. `aggregate_records` walks the table in a
fixed loop for each record, so the set of tracked dimensions is static and can
be tested one descriptor at a time.

The pass is pure and single-threaded. It never keeps state between calls; each
call returns a fresh mapping of organization id to `AggregateBucket`.
"""

import base64
import logging
from collections import Counter as Tally
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Sequence

from .models import (
    ANALYTICS_DIMENSIONS,
    UPTIME_DIMENSIONS,
    AggregateBucket,
    Counter,
    DimensionTable,
    TimeID,
)
from .schemas import AnalyticsRecord, UptimeRecord, as_utc

logger = logging.getLogger(__name__)

# Tags the gateway adds for every key; never useful as a breakdown.
GATEWAY_KEY_TAG_PREFIX = "key-"

COMMON_TAGS_COUNT = 5

_DIMENSION_ALIASES = {
    "keyendpoint": "keyendpoints",
    "oauthendpoint": "oauthendpoints",
    "apiendpoint": "apiendpoints",
}


@dataclass(frozen=True, slots=True)
class AggregationOptions:
    track_all_paths: bool = False
    ignore_tag_prefixes: tuple[str, ...] = ()
    minute_granularity: int = 0


@dataclass(slots=True)
class AggregationStats:
    records_seen: int = 0
    records_aggregated: int = 0
    skipped_missing_org: int = 0


@dataclass(frozen=True, slots=True)
class DimensionEntry:
    key: str
    identifier: str
    human_identifier: str = ""


@dataclass(frozen=True, slots=True)
class DimensionDescriptor:
    name: str
    extract: Callable[[AnalyticsRecord, AggregationOptions], Iterable[DimensionEntry]]
    errors_only: bool = False


# --- Key helpers ---


def hash_key(value: str) -> str:
    """Unpadded base64, used to keep composite keys free of separators."""
    return base64.b64encode(value.encode("utf-8")).decode("ascii").rstrip("=")


def escape_path(path: str) -> str:
    """Dots are path separators for document stores; store them escaped."""
    return path.replace(".", "\\u2e")


def trim_tag(tag: str) -> str:
    return tag.strip().replace(".", "")


def is_ignored_tag(tag: str, ignore_prefixes: Sequence[str]) -> bool:
    if tag.startswith(GATEWAY_KEY_TAG_PREFIX):
        return True
    return any(tag.startswith(prefix) for prefix in ignore_prefixes)


def bucket_timestamp(ts: datetime, minute_granularity: int = 0) -> datetime:
    """
    Truncates *ts* to its hour, or to the lower multiple of
    *minute_granularity* minutes when that is between 1 and 59. Buckets are
    always cut on UTC boundaries.
    """
    ts = as_utc(ts)
    if minute_granularity <= 0 or minute_granularity >= 60:
        return ts.replace(minute=0, second=0, microsecond=0)
    minute = ts.minute - ts.minute % minute_granularity
    return ts.replace(minute=minute, second=0, microsecond=0)


def _tracks_path(record: AnalyticsRecord, options: AggregationOptions) -> bool:
    return options.track_all_paths or record.track_path


# --- Dimension extractors ---


def _api_ids(record, options):
    if record.api_id:
        yield DimensionEntry(record.api_id, record.api_id, record.api_name)


def _errors(record, options):
    code = str(record.response_code)
    yield DimensionEntry(code, code)


def _versions(record, options):
    if record.api_version:
        key = hash_key(f"{record.api_id}:{record.api_version}")
        yield DimensionEntry(key, record.api_version, record.api_version)


def _api_keys(record, options):
    if record.api_key:
        yield DimensionEntry(record.api_key, record.api_key, record.alias)


def _oauth_ids(record, options):
    if record.oauth_id:
        yield DimensionEntry(record.oauth_id, record.oauth_id)


def _geo(record, options):
    code = record.country_code
    if code:
        yield DimensionEntry(code, code, code)


def _tags(record, options):
    for tag in record.tags:
        trimmed = trim_tag(tag)
        if not trimmed or is_ignored_tag(tag, options.ignore_tag_prefixes):
            continue
        yield DimensionEntry(trimmed, trimmed, trimmed)


def _endpoints(record, options):
    if _tracks_path(record, options):
        yield DimensionEntry(escape_path(record.path), record.path, record.path)


def _key_endpoints(record, options):
    if record.api_key and _tracks_path(record, options):
        path_key = hash_key(f"{record.api_id}:{record.path}")
        yield DimensionEntry(f"{record.api_key}.{path_key}", path_key, path_key)


def _oauth_endpoints(record, options):
    if record.oauth_id and _tracks_path(record, options):
        path_key = hash_key(f"{record.api_id}:{record.path}")
        yield DimensionEntry(f"{record.oauth_id}.{path_key}", path_key, path_key)


def _api_endpoints(record, options):
    if _tracks_path(record, options):
        raw = f"{record.api_id}:{record.api_version}:{record.path}"
        key = raw.encode("utf-8").hex()
        yield DimensionEntry(key, key, record.path)


ANALYTICS_DIMENSION_TABLE: tuple[DimensionDescriptor, ...] = (
    DimensionDescriptor("apiid", _api_ids),
    DimensionDescriptor("errors", _errors, errors_only=True),
    DimensionDescriptor("versions", _versions),
    DimensionDescriptor("apikeys", _api_keys),
    DimensionDescriptor("oauthids", _oauth_ids),
    DimensionDescriptor("geo", _geo),
    DimensionDescriptor("tags", _tags),
    DimensionDescriptor("endpoints", _endpoints),
    DimensionDescriptor("keyendpoints", _key_endpoints),
    DimensionDescriptor("oauthendpoints", _oauth_endpoints),
    DimensionDescriptor("apiendpoints", _api_endpoints),
)


# --- Counter construction ---


def record_counter(record: AnalyticsRecord) -> Counter:
    """Builds the single-hit counter a raw record contributes everywhere."""
    counter = Counter(
        hits=1,
        request_time=float(record.request_time),
        total_request_time=float(record.request_time),
        last_time=record.timestamp,
        max_upstream_latency=record.latency.upstream,
        min_upstream_latency=record.latency.upstream,
        total_upstream_latency=record.latency.upstream,
        max_latency=record.latency.total,
        min_latency=record.latency.total,
        total_latency=record.latency.total,
    )
    if record.response_code >= 400:
        counter.error_total = 1
        counter.error_map[str(record.response_code)] = 1
    if 200 <= record.response_code < 300:
        counter.success = 1
    return counter


def _pulse_counter(record: AnalyticsRecord) -> Counter:
    return Counter(
        last_time=record.timestamp,
        open_connections=record.network.open_connections,
        closed_connections=record.network.closed_connections,
        bytes_in=record.network.bytes_in,
        bytes_out=record.network.bytes_out,
    )


def increment_or_set(table: DimensionTable, entry: DimensionEntry, counter: Counter) -> Counter:
    """Creates the entry from a copy of *counter* on first sight, merges otherwise."""
    existing = table.get(entry.key)
    if existing is None:
        existing = counter.copy()
        existing.identifier = entry.identifier
        existing.human_identifier = entry.human_identifier
        table[entry.key] = existing
        return existing

    existing.merge(counter)
    if not existing.identifier:
        existing.identifier = entry.identifier
    if entry.human_identifier:
        existing.human_identifier = entry.human_identifier
    return existing


def _new_bucket(
    org_id: str,
    ts: datetime,
    expire_at: datetime | None,
    minute_granularity: int,
    dimension_names: tuple[str, ...],
) -> AggregateBucket:
    bucket_ts = bucket_timestamp(ts, minute_granularity)
    granular = 0 < minute_granularity < 60
    return AggregateBucket.empty(
        org_id=org_id,
        timestamp=bucket_ts,
        time_id=TimeID.from_timestamp(bucket_ts, with_minute=granular),
        dimension_names=dimension_names,
        expire_at=expire_at,
    )


# --- Aggregation passes ---


def aggregate_records(
    records: Iterable[AnalyticsRecord],
    track_all_paths: bool = False,
    ignore_tag_prefixes: Sequence[str] = (),
    minute_granularity: int = 0,
    stats: AggregationStats | None = None,
) -> dict[str, AggregateBucket]:
    """
    Folds *records* into one `AggregateBucket` per organization.

    Records without an organization id are skipped and counted. The bucket of
    an organization takes its time window from the first record seen for it.
    """
    options = AggregationOptions(
        track_all_paths=track_all_paths,
        ignore_tag_prefixes=tuple(ignore_tag_prefixes),
        minute_granularity=minute_granularity,
    )
    stats = stats if stats is not None else AggregationStats()
    buckets: dict[str, AggregateBucket] = {}

    for record in records:
        stats.records_seen += 1
        if not record.org_id:
            stats.skipped_missing_org += 1
            continue

        bucket = buckets.get(record.org_id)
        if bucket is None:
            bucket = _new_bucket(
                record.org_id,
                record.timestamp,
                record.expire_at,
                options.minute_granularity,
                ANALYTICS_DIMENSIONS,
            )
            buckets[record.org_id] = bucket

        _fold_record(bucket, record, options)
        stats.records_aggregated += 1

    if stats.skipped_missing_org:
        logger.warning(
            "Skipped records without an organization id.",
            extra={"skipped": stats.skipped_missing_org, "seen": stats.records_seen},
        )
    logger.debug(
        "Aggregation pass complete.",
        extra={"organizations": len(buckets), "records": stats.records_aggregated},
    )
    return buckets


def _fold_record(
    bucket: AggregateBucket, record: AnalyticsRecord, options: AggregationOptions
) -> None:
    bucket.last_time = record.timestamp

    if record.is_network_pulse:
        bucket.total.merge(_pulse_counter(record))
        # the API entry only tracks traffic volume for pulses
        traffic = Counter(
            bytes_in=record.network.bytes_in, bytes_out=record.network.bytes_out
        )
        for entry in _api_ids(record, options):
            increment_or_set(bucket.table("apiid"), entry, traffic)
        return

    counter = record_counter(record)
    bucket.total.merge(counter, min_from_success_only=True)

    for descriptor in ANALYTICS_DIMENSION_TABLE:
        if descriptor.errors_only and counter.error_total == 0:
            continue
        table = bucket.table(descriptor.name)
        for entry in descriptor.extract(record, options):
            increment_or_set(table, entry, counter)


def uptime_counter(record: UptimeRecord) -> Counter:
    counter = Counter(
        hits=1,
        request_time=float(record.request_time),
        total_request_time=float(record.request_time),
        last_time=record.timestamp,
        error_map={str(record.response_code): 1},
    )
    if record.response_code >= 400:
        counter.error_total = 1
    if 200 <= record.response_code < 300:
        counter.success = 1
    return counter


def aggregate_uptime_records(
    records: Iterable[UptimeRecord],
    minute_granularity: int = 0,
    stats: AggregationStats | None = None,
) -> dict[str, AggregateBucket]:
    """Uptime variant of the pass: total, `url` and `errors` dimensions only."""
    stats = stats if stats is not None else AggregationStats()
    buckets: dict[str, AggregateBucket] = {}

    for record in records:
        stats.records_seen += 1
        if not record.org_id:
            stats.skipped_missing_org += 1
            continue

        bucket = buckets.get(record.org_id)
        if bucket is None:
            bucket = _new_bucket(
                record.org_id,
                record.timestamp,
                record.expire_at,
                minute_granularity,
                UPTIME_DIMENSIONS,
            )
            buckets[record.org_id] = bucket

        bucket.last_time = record.timestamp
        stats.records_aggregated += 1

        if record.response_code == -1:
            # failed check without a response: register the URL only
            if record.url:
                increment_or_set(
                    bucket.table("url"),
                    DimensionEntry(record.url, record.url),
                    Counter(last_time=record.timestamp),
                )
            continue

        counter = uptime_counter(record)
        bucket.total.merge(counter)
        if record.url:
            increment_or_set(
                bucket.table("url"), DimensionEntry(record.url, record.url), counter
            )
        if counter.error_total > 0:
            code = str(record.response_code)
            increment_or_set(bucket.table("errors"), DimensionEntry(code, code), counter)

    if stats.skipped_missing_org:
        logger.warning(
            "Skipped uptime records without an organization id.",
            extra={"skipped": stats.skipped_missing_org},
        )
    return buckets


# --- Post-aggregation helpers ---


def discard_aggregations(bucket: AggregateBucket, names: Iterable[str]) -> None:
    """Empties the named dimension tables so they are never stored."""
    for name in names:
        normalized = name.lower()
        normalized = _DIMENSION_ALIASES.get(normalized, normalized)
        if normalized in bucket.dimensions:
            bucket.dimensions[normalized] = {}
        else:
            logger.warning(
                "Invalid field in the ignore list. Skipping.", extra={"field": name}
            )


def common_tag_prefixes(tags: Sequence[str]) -> list[str]:
    """Shared prefixes of every pair of tags, most frequent first."""
    if len(tags) <= 1:
        return list(tags)

    counts: Tally[str] = Tally()
    for i, first in enumerate(tags[:-1]):
        for second in tags[i + 1 :]:
            length = 0
            for a, b in zip(first, second):
                if a != b:
                    break
                length += 1
            if length:
                counts[first[:length]] += 1
    return [prefix for prefix, _ in counts.most_common()]


def warn_on_tag_explosion(bucket: AggregateBucket, threshold: int) -> bool:
    """Logs a warning when a bucket tracks more tags than *threshold*."""
    tags = list(bucket.dimensions.get("tags", {}))
    if len(tags) <= threshold:
        return False

    prefixes = common_tag_prefixes(tags)[:COMMON_TAGS_COUNT]
    logger.warning(
        f"Found more than {threshold} tag entries per document, which may cause "
        "performance issues with aggregate logs. You can ignore these tags "
        "using the ignore tag prefix list.",
        extra={"org_id": bucket.org_id, "tag_count": len(tags), "common_prefixes": prefixes},
    )
    return True
