"""Shared test fixtures for ingestkit-ncc tests."""

from __future__ import annotations

import io
import zipfile
from pathlib import Path

import pytest
from PIL import Image

from ingestkit_ncc.backends.filesystem import FileSystemObjectStore
from ingestkit_ncc.backends.sqlite import SQLiteIngestStore
from ingestkit_ncc.config import NCCIngestConfig
from ingestkit_ncc.orchestrator import RunOrchestrator
from ingestkit_ncc.uploads import confirm_upload

MINIMAL_CLAUSE = (
    "<clause><sptc>A1G1</sptc><title>Sample</title>"
    "<subclause><num>1</num><p>Hello.</p></subclause></clause>"
)


def clause_xml(code: str, title: str = "Title", body: str = "<p>Body text.</p>") -> str:
    """A small document-bearing clause."""
    return (
        f'<?xml version="1.0" encoding="UTF-8"?>\n'
        f"<clause id=\"{code.lower()}\"><sptc>{code}</sptc><title>{title}</title>"
        f"{body}</clause>"
    )


def build_zip(files: dict[str, str | bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for path, content in files.items():
            data = content.encode("utf-8") if isinstance(content, str) else content
            zf.writestr(path, data)
    return buf.getvalue()


def png_bytes(width: int = 4, height: int = 3) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color=(200, 10, 10)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def default_config() -> NCCIngestConfig:
    """Return a default NCCIngestConfig."""
    return NCCIngestConfig()


@pytest.fixture
def store() -> SQLiteIngestStore:
    """Fresh in-memory SQLite store."""
    db = SQLiteIngestStore(":memory:")
    yield db
    db.close()


@pytest.fixture
def object_store(tmp_path: Path) -> FileSystemObjectStore:
    return FileSystemObjectStore(str(tmp_path / "objects"))


@pytest.fixture
def make_zip():
    """Factory fixture building ZIP bytes from ``{path: content}``."""
    return build_zip


@pytest.fixture
def upload_archive(store, object_store):
    """Factory fixture: store an archive and confirm its upload.

    Returns the queued IngestRun.
    """

    def _upload(
        files: dict[str, str | bytes],
        edition_id: str = "ed-2022",
        volume: str = "vol1",
        key: str | None = None,
    ):
        data = build_zip(files)
        key = key or f"ncc/raw/{edition_id}/{volume}/archive.zip"
        object_store.put_bytes(key, data, "application/zip")
        return confirm_upload(store, edition_id, volume, key, len(data))

    return _upload


@pytest.fixture
def make_orchestrator(store, object_store):
    """Factory fixture for an orchestrator with config overrides."""

    def _make(clock=None, **overrides) -> RunOrchestrator:
        config = NCCIngestConfig(**overrides)
        if clock is None:
            return RunOrchestrator(store, object_store, config)
        return RunOrchestrator(store, object_store, config, clock=clock)

    return _make


@pytest.fixture
def ten_clause_archive() -> dict[str, str]:
    """Ten document-bearing files; the fifth is unparseable."""
    files: dict[str, str] = {}
    for i in range(10):
        code = f"A{i}G1"
        if i == 4:
            files[f"NCC/xml/{code}.xml"] = "<clause><sptc>broken</sptc><title>Bad"
        else:
            files[f"NCC/xml/{code}.xml"] = clause_xml(
                code,
                title=f"Clause {i}",
                body=f"<subclause><num>1</num><p>Text {i}.</p></subclause>",
            )
    return files
