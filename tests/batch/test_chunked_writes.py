"""Tests for ChunkedWriter -- SAVEPOINT-per-chunk persistence."""

from datetime import date

import pytest
from sqlalchemy import select

from billing_batch.chunked_writer import UNHANDLED, ChunkedWriter, chunked, outcome_summary
from billing_kernel.domain.types import RowOutcome, RowStatus
from billing_kernel.exceptions import TransientIOError
from billing_kernel.models.vendor_invoice import VendorInvoice


def _writer_for(session, test_actor_id, fail_on=None, error=None):
    def write(chunk):
        for vi_id in chunk:
            session.add(
                VendorInvoice(
                    id=vi_id,
                    invoice_type="Shipping",
                    invoice_date=date(2025, 3, 5),
                    created_by_id=test_actor_id,
                )
            )
        session.flush()
        if fail_on in chunk:
            raise error
        return None

    return write


def _stored(session):
    return sorted(session.execute(select(VendorInvoice.id)).scalars())


class TestChunked:
    def test_splits_into_fixed_sizes(self):
        assert list(chunked(range(5), 2)) == [[0, 1], [2, 3], [4]]
        assert list(chunked([], 3)) == []

    def test_size_must_be_positive(self):
        with pytest.raises(ValueError):
            list(chunked([1], 0))


class TestChunkedWriter:
    def test_all_chunks_written(self, session, test_actor_id):
        writer = ChunkedWriter(session, chunk_size=2)

        result = writer.run(["A", "B", "C"], key=str, write=_writer_for(session, test_actor_id))

        assert [c.size for c in result.chunks] == [2, 1]
        assert result.failed_keys == []
        assert _stored(session) == ["A", "B", "C"]

    def test_failing_chunk_is_rolled_back_alone(self, session, test_actor_id, captured_logs):
        writer = ChunkedWriter(session, chunk_size=2)
        write = _writer_for(session, test_actor_id, fail_on="C", error=TransientIOError("write", "lost"))

        result = writer.run(["A", "B", "C", "D", "E"], key=str, write=write, label="invoices")

        assert _stored(session) == ["A", "B", "E"]
        assert result.failed_keys == ["C", "D"]
        assert result.failed_chunks[0].error_code == "TRANSIENT_IO"
        failed = [r for r in captured_logs() if r["message"] == "chunk_failed"]
        assert failed[0]["failed_keys"] == ["C", "D"]
        assert failed[0]["label"] == "invoices"

    def test_unexpected_errors_are_contained(self, session, test_actor_id):
        writer = ChunkedWriter(session, chunk_size=1)
        write = _writer_for(session, test_actor_id, fail_on="A", error=RuntimeError("bug"))

        result = writer.run(["A", "B"], key=str, write=write)

        assert result.failed_chunks[0].error_code == UNHANDLED
        assert _stored(session) == ["B"]

    def test_callback_outcomes_are_kept(self, session):
        writer = ChunkedWriter(session, chunk_size=10)

        result = writer.run(
            ["A", "B"],
            key=str,
            write=lambda chunk: [RowOutcome.skipped(k, "seen") for k in chunk],
        )

        assert [o.status for o in result.outcomes] == [RowStatus.SKIPPED, RowStatus.SKIPPED]

    def test_commit_each_chunk(self, session_factory, test_actor_id):
        session = session_factory()
        try:
            writer = ChunkedWriter(session, chunk_size=1, commit_each_chunk=True)
            writer.run(["A", "B"], key=str, write=_writer_for(session, test_actor_id))
            session.rollback()
            assert _stored(session) == ["A", "B"]
        finally:
            session.close()


def test_outcome_summary():
    outcomes = [RowOutcome.succeeded("a"), RowOutcome.failed("b", "X", "bad"), RowOutcome.succeeded("c")]

    assert outcome_summary(outcomes) == {"succeeded": 2, "failed": 1, "skipped": 0}
