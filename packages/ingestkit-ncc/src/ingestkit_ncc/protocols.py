"""Backend protocols for the ingestkit-ncc pipeline.

Defines the structural-subtyping interfaces concrete backends must satisfy.
All protocols are ``@runtime_checkable`` so callers can optionally verify
conformance with ``isinstance`` checks.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ingestkit_ncc.models import (
        Asset,
        AssetPlacement,
        Block,
        Document,
        Edition,
        FileStatus,
        IngestRun,
        Node,
        ParseProgress,
        Reference,
        RunStatus,
        UploadRecord,
        XmlObject,
    )


@runtime_checkable
class ObjectStore(Protocol):
    """Durable object storage for source archives and extracted assets."""

    def get_bytes(self, key: str) -> bytes:
        """Return the object stored under *key*.  Raises ``StorageError``."""
        ...

    def put_bytes(self, key: str, data: bytes, content_type: str) -> None:
        """Store *data* under *key*.  Raises ``StorageError``."""
        ...

    def exists(self, key: str) -> bool:
        ...

    def presigned_get_url(self, key: str, expires_seconds: int) -> str:
        """Return a time-limited URL for reading *key*."""
        ...


@runtime_checkable
class Enqueuer(Protocol):
    """Outbound trigger for asynchronous processing of a run."""

    def enqueue(self, ingest_run_id: str) -> None:
        """Submit the run.  Raises ``EnqueueError`` on failure."""
        ...


@runtime_checkable
class QueueMessage(Protocol):
    """One delivered queue message carrying ``{"ingestRunId": ...}``."""

    @property
    def body(self) -> Any:
        ...

    def ack(self) -> None:
        ...

    def retry(self) -> None:
        ...


@runtime_checkable
class IngestStore(Protocol):
    """Relational persistence for runs, outputs and the progress ledger."""

    def transaction(self) -> AbstractContextManager[None]:
        """Group writes atomically; nested use joins the outer transaction."""
        ...

    # --- Editions and uploads ---

    def get_edition(self, edition_id: str) -> Edition | None:
        ...

    def save_edition(self, edition: Edition) -> None:
        ...

    def save_upload(self, record: UploadRecord) -> None:
        ...

    def latest_upload(self, edition_id: str, volume: str) -> UploadRecord | None:
        ...

    # --- Runs ---

    def save_run(self, run: IngestRun) -> None:
        """Insert or replace a run row."""
        ...

    def get_run(self, run_id: str) -> IngestRun | None:
        ...

    def list_runs(
        self,
        edition_id: str,
        volume: str | None = None,
        statuses: list[RunStatus] | None = None,
    ) -> list[IngestRun]:
        """Runs of an edition, oldest first."""
        ...

    # --- Run outputs ---

    def insert_xml_objects(self, objects: list[XmlObject]) -> None:
        ...

    def list_xml_objects(self, run_id: str) -> list[XmlObject]:
        ...

    def insert_documents(self, documents: list[Document]) -> None:
        ...

    def list_documents(self, run_id: str) -> list[Document]:
        ...

    def get_document(self, document_id: str) -> Document | None:
        ...

    def insert_blocks(self, blocks: list[Block]) -> None:
        ...

    def list_blocks(self, document_id: str) -> list[Block]:
        """Blocks of a document ordered by ordinal."""
        ...

    def insert_nodes(self, nodes: list[Node]) -> None:
        ...

    def list_nodes(self, run_id: str) -> list[Node]:
        """Nodes of a run ordered by sort order."""
        ...

    def max_sort_order(self, run_id: str) -> int | None:
        ...

    def insert_assets(self, assets: list[Asset]) -> None:
        ...

    def list_assets(self, run_id: str) -> list[Asset]:
        ...

    def insert_placements(self, placements: list[AssetPlacement]) -> None:
        ...

    def list_placements(
        self, run_id: str, document_id: str | None = None
    ) -> list[AssetPlacement]:
        ...

    def insert_references(self, references: list[Reference]) -> None:
        ...

    def list_references(
        self, run_id: str, source_document_id: str | None = None
    ) -> list[Reference]:
        ...

    def set_reference_target(self, reference_id: str, target_document_id: str) -> None:
        ...

    def count_outputs(self, run_id: str) -> dict[str, int]:
        """Row counts per output kind for a run."""
        ...

    def delete_for_run(self, kind: str, run_id: str) -> int:
        """Delete every row of one output kind for a run; returns the count."""
        ...

    # --- Progress ledger ---

    def insert_progress(self, rows: list[ParseProgress]) -> None:
        ...

    def list_progress(
        self,
        run_id: str,
        status: FileStatus | None = None,
        limit: int | None = None,
    ) -> list[ParseProgress]:
        """Ledger rows ordered by seed order."""
        ...

    def save_progress(self, row: ParseProgress) -> None:
        ...

    def count_progress(self, run_id: str) -> dict[str, int]:
        """Row count per ``FileStatus`` value for a run."""
        ...
