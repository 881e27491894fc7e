"""Error codes, structured error model, and raisable exceptions.

``ErrorCode`` contains every error/warning code the ingestion pipeline can
emit.  ``IngestError`` is the Pydantic data model persisted and returned in
results; ``IngestException`` and its subclasses wrap an ``IngestError`` so
errors can travel through ``raise``/``except`` control flow.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Error codes for building-code archive ingestion.

    Values equal their names so they are stable strings suitable for
    metrics and alerting.  ``E_`` prefix = fatal, ``W_`` prefix = warning.
    """

    # Archive
    E_ARCHIVE_UNREADABLE = "E_ARCHIVE_UNREADABLE"
    E_ARCHIVE_NO_SOURCE_FOLDER = "E_ARCHIVE_NO_SOURCE_FOLDER"

    # Parse
    E_PARSE_CORRUPT = "E_PARSE_CORRUPT"
    E_PARSE_EMPTY = "E_PARSE_EMPTY"

    # Security
    E_SECURITY_TOO_LARGE = "E_SECURITY_TOO_LARGE"
    E_SECURITY_ENTITY_DECLARATION = "E_SECURITY_ENTITY_DECLARATION"
    E_SECURITY_DEPTH_BOMB = "E_SECURITY_DEPTH_BOMB"

    # Storage / queue
    E_STORAGE_GET = "E_STORAGE_GET"
    E_STORAGE_PUT = "E_STORAGE_PUT"
    E_ENQUEUE_FAILED = "E_ENQUEUE_FAILED"

    # Run state
    E_RUN_NOT_FOUND = "E_RUN_NOT_FOUND"
    E_RUN_CONFLICT = "E_RUN_CONFLICT"

    # Warnings (non-fatal)
    W_REFERENCE_UNRESOLVED = "W_REFERENCE_UNRESOLVED"
    W_ASSET_UNRESOLVED = "W_ASSET_UNRESOLVED"
    W_ASSET_UPLOAD_FAILED = "W_ASSET_UPLOAD_FAILED"
    W_STALE_PROCESSING_RESET = "W_STALE_PROCESSING_RESET"


class IngestError(BaseModel):
    """Structured error with code, message, and ingestion context.

    This is a data structure, not a Python exception.  Use one of the
    ``IngestException`` subclasses to raise.
    """

    code: str
    message: str
    stage: str | None = None
    recoverable: bool = False
    file_path: str | None = None
    run_id: str | None = None


class IngestException(Exception):
    """Raisable exception wrapping an ``IngestError`` data model.

    Subclasses pin a ``default_code`` so call sites only pass the message
    and whatever context they have.
    """

    default_code: ErrorCode = ErrorCode.E_PARSE_CORRUPT
    default_stage: str | None = None

    def __init__(self, message: str, **kwargs: object) -> None:
        kwargs.setdefault("code", self.default_code)
        kwargs.setdefault("stage", self.default_stage)
        self.error = IngestError(message=message, **kwargs)  # type: ignore[arg-type]
        super().__init__(message)

    @property
    def code(self) -> str:
        return self.error.code

    @property
    def message(self) -> str:
        return self.error.message

    @property
    def stage(self) -> str | None:
        return self.error.stage

    @property
    def recoverable(self) -> bool:
        return self.error.recoverable


class ArchiveStructureError(IngestException):
    """The archive is unreadable or has no source-document folder.  Fatal."""

    default_code = ErrorCode.E_ARCHIVE_NO_SOURCE_FOLDER
    default_stage = "archive"


class FileParseError(IngestException):
    """One archive entry could not be parsed.  Recorded per file."""

    default_code = ErrorCode.E_PARSE_CORRUPT
    default_stage = "extract"


class StorageError(IngestException):
    """Object storage read or write failed."""

    default_code = ErrorCode.E_STORAGE_GET
    default_stage = "storage"


class EnqueueError(IngestException):
    """The enqueue call for a run failed.  Fatal at run-creation time."""

    default_code = ErrorCode.E_ENQUEUE_FAILED
    default_stage = "enqueue"


class RunNotFoundError(IngestException):
    """No IngestRun exists for the given id."""

    default_code = ErrorCode.E_RUN_NOT_FOUND
    default_stage = "run"


class RunConflictError(IngestException):
    """A run state transition was attempted from a disallowed state."""

    default_code = ErrorCode.E_RUN_CONFLICT
    default_stage = "run"
