"""Concrete backend implementations for ingestkit-ncc.

``SQLiteIngestStore`` and ``FileSystemObjectStore`` need only the standard
library and suit local runs and tests.  ``MinioObjectStore`` targets any
S3-compatible service.
"""

from __future__ import annotations

from ingestkit_ncc.backends.filesystem import FileSystemObjectStore
from ingestkit_ncc.backends.minio import MinioObjectStore
from ingestkit_ncc.backends.sqlite import SQLiteIngestStore

__all__ = [
    "FileSystemObjectStore",
    "MinioObjectStore",
    "SQLiteIngestStore",
]
