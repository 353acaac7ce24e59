"""
ChunkedWriter -- SAVEPOINT-per-chunk batch persistence.

Contract:
    Splits a stream of records into fixed-size chunks and hands each chunk
    to a write callback inside its own SAVEPOINT.  A failing chunk is rolled
    back and its record keys reported as failed; later chunks still run.

Architecture: billing_batch/.  Used by the billing run orchestrator for
    feed ingestion and available to any bulk writer.

Invariants enforced:
    - One chunk failure never aborts the run.
    - With ``commit_each_chunk`` the outer transaction is committed after
      every successful chunk, so an interrupted run keeps completed chunks.
      Writes are upserts keyed by vendor ids, so re-running is idempotent.
    - Per-row outcomes returned by the callback are kept as-is; a chunk
      that raises gets one FAILED outcome per record key.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from itertools import islice
from typing import Any, TypeVar

from sqlalchemy.orm import Session

from billing_kernel.domain.types import RowOutcome, RowStatus
from billing_kernel.exceptions import BillingError
from billing_kernel.logging_config import get_logger

logger = get_logger("batch.chunked_writer")

T = TypeVar("T")

UNHANDLED = "UNHANDLED_EXCEPTION"


def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    if size < 1:
        raise ValueError(f"chunk size must be positive, got {size}")
    iterator = iter(items)
    while True:
        chunk = list(islice(iterator, size))
        if not chunk:
            return
        yield chunk


@dataclass(frozen=True)
class ChunkReport:
    index: int
    size: int
    succeeded: bool
    duration_ms: int
    error_code: str | None = None
    error_message: str | None = None


@dataclass
class ChunkedRunResult:
    chunks: list[ChunkReport] = field(default_factory=list)
    outcomes: list[RowOutcome] = field(default_factory=list)

    @property
    def failed_keys(self) -> list[str]:
        return [o.key for o in self.outcomes if o.status is RowStatus.FAILED]

    @property
    def failed_chunks(self) -> list[ChunkReport]:
        return [c for c in self.chunks if not c.succeeded]


class ChunkedWriter:
    """
    Non-goals:
        - Does NOT retry failed chunks -- the next scheduled run does.
        - Commits only when ``commit_each_chunk`` is set; by default the
          caller owns the outer transaction.
    """

    def __init__(self, session: Session, chunk_size: int = 500, commit_each_chunk: bool = False):
        self._session = session
        self._chunk_size = chunk_size
        self._commit = commit_each_chunk

    def run(
        self,
        records: Iterable[T],
        key: Callable[[T], str],
        write: Callable[[Sequence[T]], Sequence[RowOutcome] | None],
        label: str = "records",
    ) -> ChunkedRunResult:
        result = ChunkedRunResult()
        for index, chunk in enumerate(chunked(records, self._chunk_size)):
            started = time.monotonic()
            keys = [key(r) for r in chunk]
            savepoint = self._session.begin_nested()
            try:
                outcomes = write(chunk)
                savepoint.commit()
            except Exception as exc:
                savepoint.rollback()
                code = exc.code if isinstance(exc, BillingError) else UNHANDLED
                duration = int((time.monotonic() - started) * 1000)
                result.chunks.append(ChunkReport(index, len(chunk), False, duration, code, str(exc)))
                result.outcomes.extend(RowOutcome.failed(k, code, str(exc)) for k in keys)
                logger.error(
                    "chunk_failed",
                    extra={
                        "label": label,
                        "chunk": index,
                        "size": len(chunk),
                        "error_code": code,
                        "error": str(exc),
                        "failed_keys": keys,
                    },
                )
                continue

            if self._commit:
                self._session.commit()
            duration = int((time.monotonic() - started) * 1000)
            result.chunks.append(ChunkReport(index, len(chunk), True, duration))
            if outcomes is None:
                result.outcomes.extend(RowOutcome.succeeded(k) for k in keys)
            else:
                result.outcomes.extend(outcomes)
            logger.debug(
                "chunk_written",
                extra={"label": label, "chunk": index, "size": len(chunk), "duration_ms": duration},
            )

        logger.info(
            "chunked_run_completed",
            extra={
                "label": label,
                "chunks": len(result.chunks),
                "failed_chunks": len(result.failed_chunks),
                "failed_records": len(result.failed_keys),
            },
        )
        return result


def outcome_summary(outcomes: Iterable[RowOutcome]) -> dict[str, Any]:
    counts = {status.value: 0 for status in RowStatus}
    for outcome in outcomes:
        counts[outcome.status.value] += 1
    return counts
