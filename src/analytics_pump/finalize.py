# src/analytics_pump/finalize.py

"""
Average finalization for completed aggregate buckets.

Per-record averages computed during accumulation are only provisional; the
correct mean comes from the fully summed totals. `finalize_bucket` therefore
runs as a separate pass once a bucket will receive no more records.
"""

import logging

from .exceptions import AveragingError
from .models import STATUS_CODE_SLOTS, AggregateBucket, Counter, DimensionRow, ErrorData

logger = logging.getLogger(__name__)


def mean(total: float, hits: int, dimension: str = "", key: str = "") -> float:
    if hits <= 0:
        raise AveragingError(dimension=dimension or "total", key=key)
    return total / hits


def process_status_codes(error_map: dict[str, int]) -> dict[str, int]:
    """
    Spreads a status-code tally over the fixed histogram slots.

    Codes with their own slot (e.g. "404") land there; any other code falls
    into its class slot ("4x"). Codes with no matching class are ignored.
    """
    histogram = dict.fromkeys(STATUS_CODE_SLOTS, 0)
    for code, count in error_map.items():
        if code in histogram:
            histogram[code] += count
            continue
        class_slot = f"{code[:1]}x"
        if code and class_slot in histogram:
            histogram[class_slot] += count
    return histogram


def sorted_error_list(error_map: dict[str, int]) -> list[ErrorData]:
    return [ErrorData(code=code, count=error_map[code]) for code in sorted(error_map)]


def finalize_counter(
    counter: Counter, dimension: str = "", key: str = "", keep_error_list: bool = False
) -> Counter:
    if counter.hits > 0:
        counter.request_time = mean(counter.total_request_time, counter.hits, dimension, key)
        counter.latency = mean(counter.total_latency, counter.hits, dimension, key)
        counter.upstream_latency = mean(
            counter.total_upstream_latency, counter.hits, dimension, key
        )

    counter.error_list = sorted_error_list(counter.error_map) if keep_error_list else []
    counter.status_code_histogram = process_status_codes(counter.error_map)
    counter.error_map = {}
    return counter


def finalize_bucket(bucket: AggregateBucket, keep_error_list: bool = False) -> AggregateBucket:
    """
    Derives every average in *bucket* from its totals and expands the raw
    status-code tallies into histograms. Mutates and returns *bucket*.

    Entries without hits keep whatever average they already had.
    """
    for dimension, key, counter in bucket.counters():
        finalize_counter(counter, dimension, key, keep_error_list)
    return bucket


def dimension_row_id(timestamp: int, org_id: str, dimension: str, value: str) -> str:
    return f"{timestamp}{org_id}{dimension}{value}".encode("utf-8").hex()


def dimension_rows(bucket: AggregateBucket) -> list[DimensionRow]:
    """
    Flattens a finalized bucket into one row per dimension entry plus a
    `total` row. Row ids are deterministic so sinks can upsert on them.
    """
    ts = int(bucket.timestamp.timestamp())
    rows = [
        DimensionRow(
            id=dimension_row_id(ts, bucket.org_id, dimension, key),
            org_id=bucket.org_id,
            timestamp=ts,
            dimension=dimension,
            dimension_value=key,
            counter=counter,
            codes=dict(counter.status_code_histogram),
        )
        for dimension, key, counter in bucket.counters()
    ]
    logger.debug(
        "Flattened aggregate bucket.",
        extra={"org_id": bucket.org_id, "rows": len(rows)},
    )
    return rows
