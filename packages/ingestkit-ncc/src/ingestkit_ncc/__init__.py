"""ingestkit-ncc -- building-code XML archive ingestion.

Public API re-exports for convenient access.
"""

from ingestkit_ncc.config import NCCIngestConfig
from ingestkit_ncc.enqueue import HttpEnqueuer, RunSubmitter
from ingestkit_ncc.errors import (
    ArchiveStructureError,
    EnqueueError,
    ErrorCode,
    FileParseError,
    IngestError,
    IngestException,
    RunConflictError,
    RunNotFoundError,
    StorageError,
)
from ingestkit_ncc.models import (
    ChunkResult,
    EditionStatus,
    IngestRun,
    MessageAction,
    NodeType,
    ProcessingResult,
    ProgressSummary,
    RunStatus,
)
from ingestkit_ncc.orchestrator import RunOrchestrator
from ingestkit_ncc.progress import ProgressTracker
from ingestkit_ncc.uploads import confirm_upload
from ingestkit_ncc.worker import IngestWorker

__all__ = [
    "RunOrchestrator",
    "ProgressTracker",
    "IngestWorker",
    "RunSubmitter",
    "HttpEnqueuer",
    "confirm_upload",
    "NCCIngestConfig",
    "ErrorCode",
    "IngestError",
    "IngestException",
    "ArchiveStructureError",
    "FileParseError",
    "StorageError",
    "EnqueueError",
    "RunNotFoundError",
    "RunConflictError",
    "IngestRun",
    "RunStatus",
    "EditionStatus",
    "NodeType",
    "MessageAction",
    "ChunkResult",
    "ProcessingResult",
    "ProgressSummary",
]
