"""ReferenceResolver -- cross-document pointers between source entries.

Two attribute syntaxes point at other entries: ``href`` (a cross-reference)
and ``conref`` (content transclusion).  Targets are reduced to basenames and
resolved against the Documents ingested in the same run only.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping

from ingestkit_ncc.errors import ErrorCode
from ingestkit_ncc.idempotency import stable_id
from ingestkit_ncc.models import RawReference, Reference, ReferenceKind

logger = logging.getLogger("ingestkit_ncc")

_REFERENCE_RE = re.compile(
    r"\b(href|conref)\s*=\s*[\"']([^\"']*\.xml[^\"']*)[\"']",
    re.IGNORECASE,
)


def target_basename(raw: str) -> str:
    """Strip fragment, query and path prefix from a pointer target."""
    target = raw.split("#", 1)[0].split("?", 1)[0]
    return target.replace("\\", "/").rsplit("/", 1)[-1].strip()


def extract_references(text: str) -> list[RawReference]:
    """Scan raw XML text for pointers to other ``.xml`` entries.

    Returns references in document order with ``(kind, basename)``
    duplicates removed.
    """
    found: list[RawReference] = []
    seen: set[tuple[ReferenceKind, str]] = set()
    for match in _REFERENCE_RE.finditer(text):
        kind = (
            ReferenceKind.CONREF
            if match.group(1).lower() == "conref"
            else ReferenceKind.XREF
        )
        raw_target = match.group(2)
        basename = target_basename(raw_target)
        if not basename.lower().endswith(".xml"):
            continue
        if (kind, basename) in seen:
            continue
        seen.add((kind, basename))
        found.append(
            RawReference(kind=kind, target_basename=basename, raw_target=raw_target)
        )
    return found


def resolve_references(
    raw: list[RawReference],
    *,
    source_document_id: str,
    run_id: str,
    document_ids: Mapping[str, str],
    block_refs: Iterable[tuple[str, list[str]]] = (),
) -> list[Reference]:
    """Turn raw pointers into Reference rows.

    Parameters
    ----------
    raw:
        Output of :func:`extract_references` for the source entry.
    source_document_id:
        The Document the pointers were found in.
    run_id:
        The owning run; used for deterministic reference ids.
    document_ids:
        Basename -> Document id for every Document ingested in the run so
        far.  Targets missing from the map are kept with a null target.
    block_refs:
        ``(block_id, target_basenames)`` pairs in ordinal order; a
        reference is attributed to the first block naming its target.
    """
    block_refs = list(block_refs)
    references: list[Reference] = []

    for raw_ref in raw:
        target_id = document_ids.get(raw_ref.target_basename)
        if target_id is None:
            logger.debug(
                "ingestkit_ncc | run=%s | code=%s | target=%s",
                run_id,
                ErrorCode.W_REFERENCE_UNRESOLVED.value,
                raw_ref.target_basename,
            )

        block_id = next(
            (bid for bid, targets in block_refs if raw_ref.target_basename in targets),
            None,
        )
        references.append(
            Reference(
                id=stable_id(
                    run_id,
                    "reference",
                    f"{source_document_id}:{raw_ref.kind.value}:{raw_ref.target_basename}",
                ),
                run_id=run_id,
                source_document_id=source_document_id,
                source_block_id=block_id,
                kind=raw_ref.kind,
                target_basename=raw_ref.target_basename,
                target_document_id=target_id,
            )
        )

    return references


def resolve_pending(
    references: Iterable[Reference], document_ids: Mapping[str, str]
) -> list[Reference]:
    """Return copies of unresolved references whose target is now known.

    Used at finalization, once every Document of the run exists, to fill in
    targets that were ingested after the referencing file.
    """
    updated: list[Reference] = []
    for ref in references:
        if ref.target_document_id is not None:
            continue
        target_id = document_ids.get(ref.target_basename)
        if target_id is not None:
            updated.append(ref.model_copy(update={"target_document_id": target_id}))
    return updated
