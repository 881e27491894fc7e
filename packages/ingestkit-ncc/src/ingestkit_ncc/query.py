"""Read-only views over runs, the ledger and ingested documents."""

from __future__ import annotations

from ingestkit_ncc.errors import RunNotFoundError
from ingestkit_ncc.models import (
    DocumentGraph,
    FileError,
    IngestRun,
    Node,
    ProgressSummary,
)
from ingestkit_ncc.progress import ProgressTracker
from ingestkit_ncc.protocols import IngestStore


def get_run_status(store: IngestStore, run_id: str) -> IngestRun:
    """Raises ``RunNotFoundError`` for an unknown id."""
    run = store.get_run(run_id)
    if run is None:
        raise RunNotFoundError(f"Run {run_id} not found", run_id=run_id)
    return run


def list_runs(store: IngestStore, edition_id: str, volume: str | None = None) -> list[IngestRun]:
    return store.list_runs(edition_id, volume)


def progress_summary(store: IngestStore, run_id: str) -> ProgressSummary:
    return ProgressTracker(store).summary(run_id)


def file_errors(store: IngestStore, run_id: str) -> list[FileError]:
    return ProgressTracker(store).file_errors(run_id)


def list_nodes(store: IngestStore, run_id: str) -> list[Node]:
    return store.list_nodes(run_id)


def document_graph(store: IngestStore, document_id: str) -> DocumentGraph | None:
    """A document with its ordered blocks, outgoing references and placements."""
    document = store.get_document(document_id)
    if document is None:
        return None
    return DocumentGraph(
        document=document,
        blocks=store.list_blocks(document_id),
        references=store.list_references(document.run_id, document_id),
        placements=store.list_placements(document.run_id, document_id),
    )
