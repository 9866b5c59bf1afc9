"""
In-memory shapes produced by the aggregation engine.

A `Counter` is a plain additive accumulator. Dimension tables map a dimension
key to its `Counter`; an `AggregateBucket` owns one table per tracked
dimension plus the `total` counter for one organization and time bucket.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any

# Fixed histogram slots used by SQL-shaped sinks, in column order.
STATUS_CODE_SLOTS: tuple[str, ...] = (
    "1x",
    "200",
    "201",
    "2x",
    "301",
    "302",
    "303",
    "304",
    "3x",
    "400",
    "401",
    "403",
    "404",
    "429",
    "4x",
    "500",
    "501",
    "502",
    "503",
    "504",
    "5x",
)


@dataclass(slots=True)
class ErrorData:
    code: str
    count: int


@dataclass(slots=True)
class Counter:
    hits: int = 0
    success: int = 0
    error_total: int = 0
    request_time: float = 0.0
    total_request_time: float = 0.0
    identifier: str = ""
    human_identifier: str = ""
    last_time: datetime | None = None

    open_connections: int = 0
    closed_connections: int = 0
    bytes_in: int = 0
    bytes_out: int = 0

    max_upstream_latency: int = 0
    min_upstream_latency: int = 0
    total_upstream_latency: int = 0
    upstream_latency: float = 0.0

    max_latency: int = 0
    min_latency: int = 0
    total_latency: int = 0
    latency: float = 0.0

    error_map: dict[str, int] = field(default_factory=dict)
    error_list: list[ErrorData] = field(default_factory=list)
    status_code_histogram: dict[str, int] = field(default_factory=dict)

    def copy(self) -> Counter:
        """Returns an independent copy; the error map is not shared."""
        duplicate = Counter(
            **{
                f.name: getattr(self, f.name)
                for f in fields(self)
                if f.name not in ("error_map", "error_list", "status_code_histogram")
            }
        )
        duplicate.error_map = dict(self.error_map)
        duplicate.error_list = [ErrorData(e.code, e.count) for e in self.error_list]
        duplicate.status_code_histogram = dict(self.status_code_histogram)
        return duplicate

    def merge(self, other: Counter, min_from_success_only: bool = False) -> None:
        """
        Adds `other` into this counter in place.

        Minimum latencies follow error-free contributions, or only all-2xx
        ones when *min_from_success_only* is set (the rule for a bucket Total).
        """
        had_hits = self.hits > 0
        self.hits += other.hits
        self.success += other.success
        self.error_total += other.error_total
        for code, count in other.error_map.items():
            self.error_map[code] = self.error_map.get(code, 0) + count
        self.total_request_time += other.total_request_time
        if self.hits > 0:
            self.request_time = self.total_request_time / self.hits

        self.max_latency = max(self.max_latency, other.max_latency)
        self.max_upstream_latency = max(
            self.max_upstream_latency, other.max_upstream_latency
        )
        if min_from_success_only:
            clean = other.success == other.hits
        else:
            clean = other.error_total == 0
        # min latency only follows clean contributions once seeded
        if other.hits > 0:
            if not had_hits:
                self.min_latency = other.min_latency
                self.min_upstream_latency = other.min_upstream_latency
            elif clean:
                if self.min_latency > other.min_latency:
                    self.min_latency = other.min_latency
                if self.min_upstream_latency > other.min_upstream_latency:
                    self.min_upstream_latency = other.min_upstream_latency
        self.total_latency += other.total_latency
        self.total_upstream_latency += other.total_upstream_latency

        self.open_connections += other.open_connections
        self.closed_connections += other.closed_connections
        self.bytes_in += other.bytes_in
        self.bytes_out += other.bytes_out

        if other.last_time is not None and (
            self.last_time is None or other.last_time > self.last_time
        ):
            self.last_time = other.last_time

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


DimensionTable = dict[str, Counter]


@dataclass(slots=True)
class TimeID:
    year: int
    month: int
    day: int
    hour: int
    minute: int | None = None

    @classmethod
    def from_timestamp(cls, ts: datetime, with_minute: bool = False) -> TimeID:
        return cls(
            year=ts.year,
            month=ts.month,
            day=ts.day,
            hour=ts.hour,
            minute=ts.minute if with_minute else None,
        )


# Dimension names tracked for API traffic, in flattening order.
ANALYTICS_DIMENSIONS: tuple[str, ...] = (
    "apiid",
    "errors",
    "versions",
    "apikeys",
    "oauthids",
    "geo",
    "tags",
    "endpoints",
    "keyendpoints",
    "oauthendpoints",
    "apiendpoints",
)

UPTIME_DIMENSIONS: tuple[str, ...] = ("url", "errors")


@dataclass(slots=True)
class AggregateBucket:
    org_id: str
    timestamp: datetime
    time_id: TimeID
    expire_at: datetime | None = None
    last_time: datetime | None = None
    total: Counter = field(default_factory=Counter)
    dimensions: dict[str, DimensionTable] = field(default_factory=dict)

    @classmethod
    def empty(
        cls,
        org_id: str,
        timestamp: datetime,
        time_id: TimeID,
        dimension_names: tuple[str, ...] = ANALYTICS_DIMENSIONS,
        expire_at: datetime | None = None,
    ) -> AggregateBucket:
        return cls(
            org_id=org_id,
            timestamp=timestamp,
            time_id=time_id,
            expire_at=expire_at,
            dimensions={name: {} for name in dimension_names},
        )

    def table(self, name: str) -> DimensionTable:
        return self.dimensions[name]

    def counters(self):
        """Yields (dimension, key, counter) for every entry, total last."""
        for name, table in self.dimensions.items():
            for key, counter in table.items():
                yield name, key, counter
        yield "", "total", self.total


@dataclass(slots=True)
class DimensionRow:
    """One flattened (dimension, value) row of a finalized bucket."""

    id: str
    org_id: str
    timestamp: int
    dimension: str
    dimension_value: str
    counter: Counter
    codes: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "timestamp": self.timestamp,
            "dimension": self.dimension,
            "dimension_value": self.dimension_value,
            "counter": self.counter.to_dict(),
            "code": dict(self.codes),
        }
