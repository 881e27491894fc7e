"""Deterministic checksums and identifiers.

Every row a run produces gets a UUIDv5 derived from the run id and a stable
per-entity key, so a retried run or a run executed in several chunks writes
exactly the same identifiers as a single uninterrupted pass.
"""

from __future__ import annotations

import hashlib
import uuid


def content_checksum(data: bytes) -> str:
    """SHA-256 hex digest of raw entry bytes."""
    return hashlib.sha256(data).hexdigest()


def stable_id(run_id: str, kind: str, key: str | int) -> str:
    """Deterministic identifier for an entity produced by *run_id*.

    Parameters
    ----------
    run_id:
        The owning IngestRun id.
    kind:
        Entity kind (``"document"``, ``"block"``, ``"node"``, ...).
    key:
        A key unique for that kind within the run (basename, ordinal, ...).
    """
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{run_id}:{kind}:{key}"))


def node_content_hash(
    reference: str | None,
    title: str | None,
    text: str | None,
    text_prefix: int = 200,
) -> str:
    """Change-detection hash over ``(reference, title, text[:text_prefix])``."""
    parts = [reference or "", title or "", (text or "")[:text_prefix]]
    return hashlib.sha256("|".join(parts).encode()).hexdigest()
