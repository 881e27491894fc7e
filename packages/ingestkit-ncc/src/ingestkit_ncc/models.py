"""Pydantic models and enumerations for the ingestkit-ncc pipeline.

Persisted entities (``IngestRun``, ``XmlObject``, ``Document``, ``Block``,
``Node``, ``Asset``, ``AssetPlacement``, ``Reference``, ``ParseProgress``,
``Edition``, ``UploadRecord``) mirror the rows written by an
``IngestStore``.  The remaining models are in-flight working types passed
between pipeline stages.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class RunStatus(str, Enum):
    """Lifecycle of an IngestRun.

    ``partial`` is only used by the chunked invocation style to signal
    that pending files remain.  ``done`` and ``failed`` are terminal.
    """

    QUEUED = "queued"
    RUNNING = "running"
    PARTIAL = "partial"
    DONE = "done"
    FAILED = "failed"


IN_FLIGHT_STATUSES = (RunStatus.QUEUED, RunStatus.RUNNING, RunStatus.PARTIAL)


class FileStatus(str, Enum):
    """Per-file status in the ParseProgress ledger."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class EditionStatus(str, Enum):
    """Forward-only lifecycle of the owning edition."""

    DRAFT = "draft"
    UPLOADED = "uploaded"
    PARSED = "parsed"
    INDEXED = "indexed"
    PUBLISHED = "published"
    ARCHIVED = "archived"


EDITION_STATUS_ORDER = [
    EditionStatus.DRAFT,
    EditionStatus.UPLOADED,
    EditionStatus.PARSED,
    EditionStatus.INDEXED,
    EditionStatus.PUBLISHED,
    EditionStatus.ARCHIVED,
]


def advance_edition_status(
    current: EditionStatus, target: EditionStatus
) -> EditionStatus:
    """Move forward to *target*; never move an edition backwards."""
    if EDITION_STATUS_ORDER.index(target) > EDITION_STATUS_ORDER.index(current):
        return target
    return current


class NodeType(str, Enum):
    """Closed set of hierarchy node variants."""

    VOLUME = "Volume"
    SECTION = "Section"
    PART = "Part"
    CLAUSE = "Clause"
    SUBCLAUSE = "Subclause"
    DEFINITION = "Definition"
    SPECIFICATION = "Specification"


class BlockType(str, Enum):
    HEADING = "heading"
    PARAGRAPH = "paragraph"
    LIST = "list"
    NOTE = "note"
    TABLE = "table"
    IMAGE = "image"


class ReferenceKind(str, Enum):
    """``xref`` is a hyperlink-style pointer, ``conref`` a transclusion."""

    XREF = "xref"
    CONREF = "conref"


class StopReason(str, Enum):
    TIME_BUDGET = "time_budget"
    EXHAUSTED = "exhausted"


class MessageAction(str, Enum):
    ACK = "ack"
    RETRY = "retry"


# ---------------------------------------------------------------------------
# External grouping (owned by surrounding functionality)
# ---------------------------------------------------------------------------


class Edition(BaseModel):
    """The code edition a run belongs to; only the fields ingestion touches."""

    id: str
    name: str | None = None
    status: EditionStatus = EditionStatus.DRAFT
    source_archive_key: str | None = None
    node_count: int = 0
    document_count: int = 0
    updated_at: datetime = Field(default_factory=utc_now)


class UploadRecord(BaseModel):
    """Structured metadata persisted together with an upload confirmation."""

    id: str
    edition_id: str
    volume: str
    archive_key: str
    size_bytes: int
    confirmed_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Persisted entities
# ---------------------------------------------------------------------------


class IngestRun(BaseModel):
    """One attempt to ingest one archive for one (edition, volume) pair."""

    id: str
    edition_id: str
    volume: str
    archive_key: str
    status: RunStatus = RunStatus.QUEUED
    error: str | None = None
    failure_stage: str | None = None
    warnings: list[str] = []
    files_total: int = 0
    files_processed: int = 0
    current_file: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None


class XmlObject(BaseModel):
    """One XML entry from the archive.  Immutable once created."""

    id: str
    run_id: str
    basename: str
    path: str
    root_tag: str
    outputclass: str | None = None
    checksum: str
    raw_content: str | None = None


class Document(BaseModel):
    """A clause or specification extracted from one document-bearing XmlObject."""

    id: str
    run_id: str
    xml_object_id: str
    basename: str
    doc_type: str
    reference_code: str | None = None
    title: str | None = None
    archive_num: str | None = None
    jurisdiction: str | None = None


class Block(BaseModel):
    """An ordered content unit of a Document."""

    id: str
    run_id: str
    document_id: str
    ordinal: int
    block_type: BlockType
    text: str = ""
    payload: dict[str, Any] | None = None


class Node(BaseModel):
    """One entry of the clause/part/section tree."""

    id: str
    run_id: str
    edition_id: str
    document_id: str | None = None
    node_type: NodeType
    reference: str | None = None
    title: str | None = None
    text: str | None = None
    parent_id: str | None = None
    sort_order: int
    path: str
    depth: int
    content_hash: str
    meta: dict[str, Any] = {}


class Asset(BaseModel):
    """One uploaded binary (image or PDF)."""

    id: str
    run_id: str
    filename: str
    storage_key: str
    content_type: str
    size_bytes: int = 0
    width: int | None = None
    height: int | None = None


class AssetPlacement(BaseModel):
    id: str
    run_id: str
    asset_id: str
    document_id: str
    block_id: str | None = None
    caption: str | None = None


class Reference(BaseModel):
    """Directed edge from a source Document to a target Document.

    ``target_document_id`` is None when the target basename was not
    ingested in the same run; the raw basename is always retained.
    """

    id: str
    run_id: str
    source_document_id: str
    source_block_id: str | None = None
    kind: ReferenceKind
    target_basename: str
    target_document_id: str | None = None


class ParseProgress(BaseModel):
    """Per-file row of the resumability ledger."""

    id: str
    run_id: str
    seq: int
    file_path: str
    status: FileStatus = FileStatus.PENDING
    nodes_created: int = 0
    error_message: str | None = None
    processed_at: datetime | None = None


# ---------------------------------------------------------------------------
# Working types
# ---------------------------------------------------------------------------


class ArchiveEntry(BaseModel):
    """One file entry read from the archive."""

    path: str
    data: bytes

    @property
    def basename(self) -> str:
        return self.path.rsplit("/", 1)[-1]


class ArchiveLayout(BaseModel):
    """Folder roots discovered inside an archive (trailing slash included)."""

    source_folder: str
    asset_folder: str | None = None


class ClassifiedEntry(BaseModel):
    path: str
    basename: str
    root_tag: str
    outputclass: str | None = None
    checksum: str
    document_bearing: bool


class ExtractedBlock(BaseModel):
    """A block before identifiers are assigned."""

    block_type: BlockType
    text: str = ""
    payload: dict[str, Any] | None = None
    ref_targets: list[str] = []


class ExtractedDocument(BaseModel):
    """Output of ``extract_document()`` for one document-bearing entry."""

    basename: str
    doc_type: str
    outputclass: str | None = None
    reference_code: str | None = None
    title: str | None = None
    archive_num: str | None = None
    jurisdiction: str | None = None
    blocks: list[ExtractedBlock] = []


class RawReference(BaseModel):
    kind: ReferenceKind
    target_basename: str
    raw_target: str


class ProgressSummary(BaseModel):
    """Aggregate ledger counts for one run.

    ``processing`` rows are counted within ``pending`` so that
    ``processed + pending + error == total`` holds at every observation.
    """

    run_id: str
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    error: int = 0

    @property
    def processed(self) -> int:
        return self.completed

    @property
    def remaining(self) -> int:
        return self.pending


class FileError(BaseModel):
    file_path: str
    error_message: str | None = None
    processed_at: datetime | None = None


class JobHandle(BaseModel):
    """Typed handle returned by the find-or-create job lease."""

    run: IngestRun
    created: bool = False

    @property
    def run_id(self) -> str:
        return self.run.id


class BatchContinue(BaseModel):
    """The batch ran to its size limit and pending files remain."""

    kind: Literal["continue"] = "continue"
    files_processed: int = 0
    files_errored: int = 0
    nodes_created: int = 0


class BatchStop(BaseModel):
    """The batch stopped: time budget exhausted, or no pending files left."""

    kind: Literal["stop"] = "stop"
    reason: StopReason
    files_processed: int = 0
    files_errored: int = 0
    nodes_created: int = 0


BatchOutcome = Union[BatchContinue, BatchStop]


class ChunkResult(BaseModel):
    """Result of one chunked invocation."""

    run_id: str
    status: RunStatus
    files_processed: int
    files_total: int
    nodes_created_this_chunk: int = 0
    stop_reason: StopReason | None = None


class ProcessingResult(BaseModel):
    """Final result of a queue-worker style run."""

    run_id: str
    status: RunStatus
    skipped: bool = False
    files_total: int = 0
    files_completed: int = 0
    files_errored: int = 0
    documents_created: int = 0
    nodes_created: int = 0
    assets_uploaded: int = 0
    warnings: list[str] = []
    processing_time_seconds: float = 0.0
    parser_version: str
    tenant_id: str | None = None


class DocumentGraph(BaseModel):
    """A document with its ordered blocks and outgoing edges."""

    document: Document
    blocks: list[Block] = []
    references: list[Reference] = []
    placements: list[AssetPlacement] = []


class EnqueueResult(BaseModel):
    run_id: str
    volume: str
    success: bool
    error: str | None = None
