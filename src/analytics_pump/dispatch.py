# src/analytics_pump/dispatch.py

"""
Concurrent fan-out of prepared batches to a storage sink.

Each `WriteJob` is written by exactly one worker task. All tasks are submitted
together and `dispatch` waits for every one of them before returning a
`DispatchReport`. A failing batch never cancels its siblings, and batches that
succeeded stay written. A cancellation event is checked before each write
starts, so a cancelled purge stops scheduling new writes without interrupting
one that is already in flight.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from .exceptions import BatchWriteError, get_error_context

logger = logging.getLogger(__name__)


class Sink(Protocol):
    """Contract every storage adapter satisfies."""

    def ensure_target(self, target: str) -> None:
        """Creates the table/collection/prefix named *target* if absent."""
        ...

    def write(self, target: str, records: Sequence[Any]) -> None:
        """Writes one batch; raises on failure."""
        ...


@dataclass(slots=True)
class WriteJob:
    target: str
    records: list[Any]
    org_id: str | None = None
    shard: str | None = None
    # input records the batch was built from, when they differ from `records`
    sources: list[Any] | None = None

    @property
    def source_records(self) -> list[Any]:
        return self.records if self.sources is None else self.sources

    def describe(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "org_id": self.org_id,
            "shard": self.shard,
            "records": len(self.records),
        }


@dataclass(slots=True)
class JobFailure:
    job: WriteJob
    error: Exception

    def to_dict(self) -> dict[str, Any]:
        details = self.job.describe()
        details["error"] = get_error_context(self.error)
        return details


@dataclass(slots=True)
class DispatchReport:
    succeeded: list[WriteJob] = field(default_factory=list)
    failed: list[JobFailure] = field(default_factory=list)
    cancelled: list[WriteJob] = field(default_factory=list)

    @property
    def total_jobs(self) -> int:
        return len(self.succeeded) + len(self.failed) + len(self.cancelled)

    @property
    def records_written(self) -> int:
        return sum(len(job.records) for job in self.succeeded)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled

    def raise_for_failures(self) -> None:
        if self.failed:
            raise BatchWriteError(
                failures=[failure.to_dict() for failure in self.failed],
                total_jobs=self.total_jobs,
            )


class _Cancelled(Exception):
    pass


def _run_job(sink: Sink, job: WriteJob, cancel_event: threading.Event | None) -> WriteJob:
    if cancel_event is not None and cancel_event.is_set():
        raise _Cancelled()

    logger.debug("Attempt to purge records", extra=job.describe())
    sink.write(job.target, job.records)
    logger.info("Completed purging the records", extra=job.describe())
    return job


def dispatch(
    jobs: Sequence[WriteJob],
    sink: Sink,
    max_workers: int = 8,
    cancel_event: threading.Event | None = None,
) -> DispatchReport:
    """
    Writes every job through *sink* concurrently and collects the outcome.

    This never raises for a failed write; call
    `DispatchReport.raise_for_failures` to surface them.
    """
    report = DispatchReport()
    if not jobs:
        return report

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(jobs)))) as executor:
        future_to_job = {
            executor.submit(_run_job, sink, job, cancel_event): job for job in jobs
        }
        for future in as_completed(future_to_job):
            job = future_to_job[future]
            try:
                future.result()
            except _Cancelled:
                report.cancelled.append(job)
            except Exception as e:
                logger.error(
                    f"Problem writing batch: {e}",
                    extra={**job.describe(), "error": get_error_context(e)},
                )
                report.failed.append(JobFailure(job=job, error=e))
            else:
                report.succeeded.append(job)

    if report.cancelled:
        logger.warning(
            "Purge cancelled before all batches were written.",
            extra={"cancelled_jobs": len(report.cancelled)},
        )
    logger.info(
        "Dispatch finished.",
        extra={
            "succeeded": len(report.succeeded),
            "failed": len(report.failed),
            "cancelled": len(report.cancelled),
            "records_written": report.records_written,
        },
    )
    return report
