# src/analytics_pump/sharding.py

"""
Date-shard partitioning for sinks that keep one table or collection per day.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Sequence

from .schemas import as_utc

logger = logging.getLogger(__name__)

DAY_KEY_FORMAT = "%Y%m%d"


@dataclass(frozen=True, slots=True)
class DayShard:
    """
    A contiguous run ``records[start:end]`` sharing one calendar day.

    `is_new_day` is set on the first run produced for a day key in one
    partitioning call; the consumer must make sure the day's storage target
    exists before writing that run.
    """

    day_key: str
    start: int
    end: int
    is_new_day: bool

    def __len__(self) -> int:
        return self.end - self.start

    def slice(self, records: Sequence[Any]) -> Sequence[Any]:
        return records[self.start : self.end]


def _timestamp_attr(record: Any) -> datetime:
    return record.timestamp


def day_key(ts: datetime) -> str:
    """Calendar day of *ts* in UTC, as YYYYMMDD."""
    return as_utc(ts).strftime(DAY_KEY_FORMAT)


def shard_table_name(base: str, key: str) -> str:
    return f"{base}_{key}"


def sort_by_timestamp(
    records: Sequence[Any], timestamp_of: Callable[[Any], datetime] = _timestamp_attr
) -> list[Any]:
    """Stable sort so that records of the same day become contiguous."""
    return sorted(records, key=lambda record: as_utc(timestamp_of(record)))


def partition_by_day(
    records: Sequence[Any],
    timestamp_of: Callable[[Any], datetime] = _timestamp_attr,
) -> list[DayShard]:
    """
    Splits *records* into contiguous same-day runs in one left-to-right scan.

    Input is expected to be ordered by timestamp. Out-of-order input is still
    partitioned correctly, but a day that appears in several separate runs
    yields several shards for the same day key.
    """
    shards: list[DayShard] = []
    if not records:
        return shards

    seen_days: set[str] = set()
    start = 0
    current_day = day_key(timestamp_of(records[0]))

    for index in range(1, len(records) + 1):
        if index < len(records):
            next_day = day_key(timestamp_of(records[index]))
            if next_day == current_day:
                continue
        else:
            next_day = current_day

        shards.append(
            DayShard(
                day_key=current_day,
                start=start,
                end=index,
                is_new_day=current_day not in seen_days,
            )
        )
        seen_days.add(current_day)
        start = index
        current_day = next_day

    if len(shards) > len(seen_days):
        logger.info(
            "Records are not ordered by day; shards are fragmented.",
            extra={"shards": len(shards), "days": len(seen_days)},
        )
    return shards
