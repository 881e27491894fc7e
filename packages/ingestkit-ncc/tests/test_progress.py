"""Unit tests for ingestkit_ncc.progress -- the resumability ledger."""

from __future__ import annotations

import pytest

from ingestkit_ncc.models import FileStatus
from ingestkit_ncc.progress import ProgressTracker

PATHS = ["xml/A.xml", "xml/B.xml", "xml/C.xml"]


@pytest.fixture
def tracker(store) -> ProgressTracker:
    return ProgressTracker(store)


class TestSeed:
    def test_one_pending_row_per_path(self, tracker):
        assert tracker.seed("run-1", PATHS) == 3
        rows = tracker.select_pending("run-1")
        assert [r.file_path for r in rows] == PATHS
        assert [r.seq for r in rows] == [0, 1, 2]
        assert all(r.status == FileStatus.PENDING for r in rows)

    def test_seed_is_once_per_run(self, tracker):
        tracker.seed("run-1", PATHS)
        assert tracker.seed("run-1", ["xml/D.xml"]) == 0
        assert tracker.summary("run-1").total == 3

    def test_has_rows(self, tracker):
        assert tracker.has_rows("run-1") is False
        tracker.seed("run-1", PATHS)
        assert tracker.has_rows("run-1") is True
        assert tracker.has_rows("run-2") is False


class TestTransitions:
    def test_select_pending_limit_in_seq_order(self, tracker):
        tracker.seed("run-1", PATHS)
        assert [r.file_path for r in tracker.select_pending("run-1", limit=2)] == PATHS[:2]

    def test_completed_and_error(self, tracker):
        tracker.seed("run-1", PATHS)
        a, b, _ = tracker.select_pending("run-1")
        tracker.mark_completed(tracker.mark_processing(a), nodes_created=4)
        tracker.mark_error(tracker.mark_processing(b), "bad xml")

        summary = tracker.summary("run-1")
        assert (summary.total, summary.completed, summary.error, summary.pending) == (3, 1, 1, 1)
        assert summary.processed + summary.pending + summary.error == summary.total

        errors = tracker.file_errors("run-1")
        assert [(e.file_path, e.error_message) for e in errors] == [("xml/B.xml", "bad xml")]
        assert errors[0].processed_at is not None

    def test_processing_counts_as_pending(self, tracker):
        tracker.seed("run-1", PATHS)
        tracker.mark_processing(tracker.select_pending("run-1", limit=1)[0])
        summary = tracker.summary("run-1")
        assert summary.processing == 1
        assert summary.pending == 3
        assert [r.file_path for r in tracker.select_pending("run-1")] == PATHS[1:]

    def test_reset_stale_processing(self, tracker):
        tracker.seed("run-1", PATHS)
        tracker.mark_processing(tracker.select_pending("run-1", limit=1)[0])
        assert tracker.reset_stale_processing("run-1") == 1
        assert [r.file_path for r in tracker.select_pending("run-1")] == PATHS
        assert tracker.reset_stale_processing("run-1") == 0

    def test_empty_summary(self, tracker):
        summary = tracker.summary("unknown")
        assert summary.total == 0
        assert summary.pending == 0
