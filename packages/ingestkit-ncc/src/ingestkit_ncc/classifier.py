"""XmlClassifier -- cheap root-tag classification of source entries.

Only the first open tag is inspected, with a regular expression, so the
classifier never pays for a full parse of every entry in the archive.
"""

from __future__ import annotations

import logging
import re

from ingestkit_ncc.archive import entries_under
from ingestkit_ncc.config import NCCIngestConfig
from ingestkit_ncc.idempotency import content_checksum
from ingestkit_ncc.models import ArchiveEntry, ArchiveLayout, ClassifiedEntry

logger = logging.getLogger("ingestkit_ncc")

# Processing instructions, comments and declarations are skipped.
_PROLOG_RE = re.compile(r"<\?.*?\?>|<!--.*?-->|<!DOCTYPE[^>]*>", re.DOTALL)
_OPEN_TAG_RE = re.compile(r"<([A-Za-z0-9:_-]+)([^>]*)>")
_OUTPUTCLASS_RE = re.compile(r"\boutputclass\s*=\s*[\"']([^\"']+)[\"']")


def extract_root_tag(text: str) -> tuple[str | None, str | None]:
    """Return ``(root_tag, outputclass)`` for the first open tag in *text*.

    The namespace prefix is stripped from the tag.  Either value is None
    when absent.
    """
    body = _PROLOG_RE.sub("", text)
    match = _OPEN_TAG_RE.search(body)
    if match is None:
        return None, None
    tag = match.group(1).split(":")[-1]
    oc = _OUTPUTCLASS_RE.search(match.group(2))
    return tag, oc.group(1) if oc else None


def decode_entry(data: bytes) -> str:
    """Decode entry bytes as UTF-8, tolerating a BOM and bad bytes."""
    return data.decode("utf-8-sig", errors="replace")


def classify_entries(
    entries: list[ArchiveEntry],
    layout: ArchiveLayout,
    config: NCCIngestConfig,
) -> list[ClassifiedEntry]:
    """Classify every ``.xml`` entry under the source folder.

    Entries keep archive order.  A basename seen twice keeps its first
    occurrence, since basenames identify XmlObjects within a run.
    """
    document_tags = {t.lower() for t in config.document_root_tags}
    seen: set[str] = set()
    classified: list[ClassifiedEntry] = []

    for entry in entries_under(entries, layout.source_folder, [".xml"]):
        basename = entry.basename
        if basename in seen:
            logger.warning(
                "ingestkit_ncc | duplicate basename=%s | path=%s | skipped",
                basename,
                entry.path,
            )
            continue
        seen.add(basename)

        root_tag, outputclass = extract_root_tag(decode_entry(entry.data))
        classified.append(
            ClassifiedEntry(
                path=entry.path,
                basename=basename,
                root_tag=root_tag or "",
                outputclass=outputclass,
                checksum=content_checksum(entry.data),
                document_bearing=(root_tag or "").lower() in document_tags,
            )
        )

    bearing = sum(1 for c in classified if c.document_bearing)
    logger.info(
        "ingestkit_ncc | classified=%d | document_bearing=%d",
        len(classified),
        bearing,
    )
    return classified
