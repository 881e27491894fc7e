"""Filesystem-based ObjectStore implementation.

Persists objects as plain files under a base directory:
    {base_path}/{key}             -- object bytes
    {base_path}/{key}.meta.json   -- content type and size

Implements the ObjectStore protocol via structural subtyping.  Intended for
local development and tests.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel

from ingestkit_ncc.errors import ErrorCode, StorageError

logger = logging.getLogger("ingestkit_ncc")

_META_SUFFIX = ".meta.json"


class _ObjectMeta(BaseModel):
    """Sidecar metadata for a stored object.  Not part of the public API."""

    content_type: str
    size_bytes: int


class FileSystemObjectStore:
    """Directory-backed object store.

    Keys are ``/``-separated relative paths; ``..`` segments and absolute
    keys are rejected.
    """

    def __init__(self, base_path: str) -> None:
        """Initialize the store.

        Args:
            base_path: Root directory for object storage.
                Created if it does not exist.
        """
        self._base_path = Path(base_path)
        self._base_path.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        parts = [p for p in key.split("/") if p]
        if not parts or key.startswith("/") or any(p == ".." for p in parts):
            raise StorageError(f"Invalid object key: {key!r}")
        return self._base_path.joinpath(*parts)

    def get_bytes(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StorageError(
                f"Failed to read object '{key}': {exc}",
                code=ErrorCode.E_STORAGE_GET,
            ) from exc

    def put_bytes(self, key: str, data: bytes, content_type: str) -> None:
        path = self._path_for(key)
        meta = _ObjectMeta(content_type=content_type, size_bytes=len(data))
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            path.with_name(path.name + _META_SUFFIX).write_text(meta.model_dump_json())
        except OSError as exc:
            raise StorageError(
                f"Failed to write object '{key}': {exc}",
                code=ErrorCode.E_STORAGE_PUT,
            ) from exc
        logger.debug("ingestkit_ncc | stored key=%s | bytes=%d", key, len(data))

    def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    def content_type(self, key: str) -> str | None:
        """Content type recorded at upload, or None if unknown."""
        path = self._path_for(key)
        meta_path = path.with_name(path.name + _META_SUFFIX)
        if not meta_path.is_file():
            return None
        return _ObjectMeta.model_validate_json(meta_path.read_text()).content_type

    def presigned_get_url(self, key: str, expires_seconds: int) -> str:
        """``file://`` URL of the object; local files do not expire."""
        path = self._path_for(key)
        if not path.is_file():
            raise StorageError(
                f"Object '{key}' does not exist",
                code=ErrorCode.E_STORAGE_GET,
            )
        return path.resolve().as_uri()
