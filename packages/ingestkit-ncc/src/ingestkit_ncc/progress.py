"""ProgressTracker -- the per-file resumability ledger.

Rows are seeded once per run and are never added or removed afterwards, so
they stay a complete partition of the run's file set across every
invocation.  Only the status of each row changes.
"""

from __future__ import annotations

import logging

from ingestkit_ncc.errors import ErrorCode
from ingestkit_ncc.idempotency import stable_id
from ingestkit_ncc.models import (
    FileError,
    FileStatus,
    ParseProgress,
    ProgressSummary,
    utc_now,
)
from ingestkit_ncc.protocols import IngestStore

logger = logging.getLogger("ingestkit_ncc")


class ProgressTracker:
    """Ledger operations over an ``IngestStore``."""

    def __init__(self, store: IngestStore) -> None:
        self._store = store

    def has_rows(self, run_id: str) -> bool:
        return bool(self._store.list_progress(run_id, limit=1))

    def seed(self, run_id: str, paths: list[str]) -> int:
        """Create one pending row per path unless the run already has rows.

        Returns the number of rows created.
        """
        if self.has_rows(run_id):
            return 0
        rows = [
            ParseProgress(
                id=stable_id(run_id, "progress", path),
                run_id=run_id,
                seq=seq,
                file_path=path,
            )
            for seq, path in enumerate(paths)
        ]
        self._store.insert_progress(rows)
        logger.info("ingestkit_ncc | run=%s | seeded files=%d", run_id, len(rows))
        return len(rows)

    def select_pending(self, run_id: str, limit: int | None = None) -> list[ParseProgress]:
        return self._store.list_progress(run_id, status=FileStatus.PENDING, limit=limit)

    def reset_stale_processing(self, run_id: str) -> int:
        """Return rows left ``processing`` by an aborted invocation to pending."""
        stale = self._store.list_progress(run_id, status=FileStatus.PROCESSING)
        for row in stale:
            self._store.save_progress(row.model_copy(update={"status": FileStatus.PENDING}))
        if stale:
            logger.warning(
                "ingestkit_ncc | run=%s | code=%s | reset=%d",
                run_id,
                ErrorCode.W_STALE_PROCESSING_RESET.value,
                len(stale),
            )
        return len(stale)

    def mark_processing(self, row: ParseProgress) -> ParseProgress:
        updated = row.model_copy(update={"status": FileStatus.PROCESSING})
        self._store.save_progress(updated)
        return updated

    def mark_completed(self, row: ParseProgress, nodes_created: int) -> ParseProgress:
        updated = row.model_copy(
            update={
                "status": FileStatus.COMPLETED,
                "nodes_created": nodes_created,
                "error_message": None,
                "processed_at": utc_now(),
            }
        )
        self._store.save_progress(updated)
        return updated

    def mark_error(self, row: ParseProgress, message: str) -> ParseProgress:
        updated = row.model_copy(
            update={
                "status": FileStatus.ERROR,
                "nodes_created": 0,
                "error_message": message,
                "processed_at": utc_now(),
            }
        )
        self._store.save_progress(updated)
        return updated

    def summary(self, run_id: str) -> ProgressSummary:
        counts = self._store.count_progress(run_id)
        processing = counts.get(FileStatus.PROCESSING.value, 0)
        return ProgressSummary(
            run_id=run_id,
            total=sum(counts.values()),
            pending=counts.get(FileStatus.PENDING.value, 0) + processing,
            processing=processing,
            completed=counts.get(FileStatus.COMPLETED.value, 0),
            error=counts.get(FileStatus.ERROR.value, 0),
        )

    def file_errors(self, run_id: str) -> list[FileError]:
        return [
            FileError(
                file_path=row.file_path,
                error_message=row.error_message,
                processed_at=row.processed_at,
            )
            for row in self._store.list_progress(run_id, status=FileStatus.ERROR)
        ]
