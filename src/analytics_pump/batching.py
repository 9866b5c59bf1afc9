# src/analytics_pump/batching.py

"""
Byte-budget batching for bulk writes.

`batch_records` packs an ordered list of records into consecutive batches
whose estimated size stays within a per-write ceiling. Records that are too
large to store on their own are handled by an explicit, per-sink
`OversizedRecordPolicy`: either dropped or kept with their raw payload
replaced by a placeholder.
"""

import base64
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from .schemas import AnalyticsRecord

logger = logging.getLogger(__name__)

# Allowance for everything except the raw request/response payloads.
RECORD_OVERHEAD_BYTES = 1024

OVERSIZED_PLACEHOLDER = base64.b64encode(
    b"Document too large, not writing raw request and raw response!"
).decode("ascii")


class OversizedRecordPolicy(str, enum.Enum):
    DROP = "drop"
    REDACT = "redact"


@dataclass(slots=True)
class BatchingResult:
    batches: list[list[Any]] = field(default_factory=list)
    dropped: int = 0
    redacted: int = 0
    # id(redacted copy) -> record it replaced
    originals: dict[int, Any] = field(default_factory=dict)

    @property
    def record_count(self) -> int:
        return sum(len(batch) for batch in self.batches)

    def __len__(self) -> int:
        return len(self.batches)

    def sources_of(self, batch: Sequence[Any]) -> list[Any]:
        """The input records behind *batch*, with redacted copies resolved."""
        return [self.originals.get(id(record), record) for record in batch]


def estimate_size(record: Any) -> int:
    """Raw records are sized by their payloads; everything else is flat."""
    if isinstance(record, AnalyticsRecord):
        return (
            len(record.raw_request.encode("utf-8"))
            + len(record.raw_response.encode("utf-8"))
            + RECORD_OVERHEAD_BYTES
        )
    return RECORD_OVERHEAD_BYTES


def redact_payload(record: AnalyticsRecord) -> AnalyticsRecord:
    return record.model_copy(
        update={"raw_request": "", "raw_response": OVERSIZED_PLACEHOLDER}
    )


def batch_records(
    records: Sequence[Any],
    max_batch_bytes: int,
    max_record_bytes: int,
    policy: OversizedRecordPolicy = OversizedRecordPolicy.REDACT,
    max_batch_records: int | None = None,
    size_of: Callable[[Any], int] = estimate_size,
) -> BatchingResult:
    """
    Greedily packs *records* into batches of at most *max_batch_bytes*.

    A record that would push the running total over the ceiling seals the
    current batch and starts the next one; a record larger than the ceiling
    therefore ends up alone in its batch, never split. When
    *max_batch_records* is set, a batch is also sealed once it holds that
    many records.
    """
    if max_batch_bytes < 1 or max_record_bytes < 1:
        raise ValueError("Batch and record byte limits must be positive.")
    policy = OversizedRecordPolicy(policy)

    result = BatchingResult()
    current: list[Any] = []
    running_total = 0

    for record in records:
        size = size_of(record)

        if size > max_record_bytes:
            if policy is OversizedRecordPolicy.DROP or not isinstance(
                record, AnalyticsRecord
            ):
                logger.warning(
                    "Document too large, skipping!",
                    extra={"size_bytes": size, "limit_bytes": max_record_bytes},
                )
                result.dropped += 1
                continue

            logger.warning(
                "Document too large, not writing raw request and raw response!",
                extra={"size_bytes": size, "limit_bytes": max_record_bytes},
            )
            redacted = redact_payload(record)
            result.originals[id(redacted)] = record
            record = redacted
            size = size_of(record)
            result.redacted += 1

        full = max_batch_records is not None and len(current) >= max_batch_records
        if current and (running_total + size > max_batch_bytes or full):
            logger.debug(
                "Created new chunk entry",
                extra={"records": len(current), "size_bytes": running_total},
            )
            result.batches.append(current)
            current = []
            running_total = 0

        current.append(record)
        running_total += size

    if current:
        result.batches.append(current)

    logger.debug(
        "Batching complete.",
        extra={
            "batches": len(result.batches),
            "dropped": result.dropped,
            "redacted": result.redacted,
        },
    )
    return result
