"""DocumentExtractor -- structured fields and ordered blocks from one entry.

The body walk dispatches on a closed set of element kinds (paragraph, list,
note, table, image, figure, container) rather than inspecting arbitrary
shapes, so every emitted block has one of the ``BlockType`` variants.
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET

from ingestkit_ncc.config import NCCIngestConfig
from ingestkit_ncc.errors import ErrorCode, FileParseError
from ingestkit_ncc.models import (
    ArchiveEntry,
    BlockType,
    ExtractedBlock,
    ExtractedDocument,
)
from ingestkit_ncc.references import target_basename
from ingestkit_ncc.security import EntrySecurityScanner

logger = logging.getLogger("ingestkit_ncc")

_JURISDICTION_RE = re.compile(r"-([A-Z]{2,3})\.xml$")
_WHITESPACE_RE = re.compile(r"\s+")

PARAGRAPH_TAGS = frozenset({"p", "shortdesc"})
LIST_TAGS = frozenset({"ol", "ul", "sl"})
LIST_ITEM_TAGS = frozenset({"li", "sli"})
NOTE_TAGS = frozenset({"note", "callout"})
TABLE_TAGS = frozenset({"table", "simpletable"})
IMAGE_TAGS = frozenset({"image-reference", "image"})
ROW_TAGS = frozenset({"row", "tr", "strow", "sthead"})
CELL_TAGS = frozenset({"entry", "td", "th", "stentry"})
HEADER_TAGS = frozenset({"thead", "sthead"})

# Fields pulled into Document columns, never body blocks.
METADATA_TAGS = frozenset(
    {"sptc", "archive-num", "num", "prolog", "titlealts", "applicability"}
)
# Cross-document inclusion handled by the hierarchy builder.
INCLUSION_TAGS = frozenset({"clauseref", "subtopic"})


def local_name(tag: object) -> str:
    """Element tag without ``{namespace}`` or ``prefix:``."""
    if not isinstance(tag, str):
        return ""
    if "}" in tag:
        tag = tag.rsplit("}", 1)[1]
    return tag.split(":")[-1]


def collapse(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def element_text(element: ET.Element) -> str:
    """All descendant text, tags dropped and whitespace collapsed."""
    return collapse("".join(element.itertext()))


def find_first(element: ET.Element, name: str) -> ET.Element | None:
    for candidate in element.iter():
        if local_name(candidate.tag) == name:
            return candidate
    return None


def find_child(element: ET.Element, name: str) -> ET.Element | None:
    for child in element:
        if local_name(child.tag) == name:
            return child
    return None


def infer_jurisdiction(basename: str) -> str | None:
    """``"A1G1-NSW.xml"`` -> ``"NSW"``; None means national."""
    match = _JURISDICTION_RE.search(basename)
    return match.group(1) if match else None


def parse_entry(
    entry: ArchiveEntry,
    config: NCCIngestConfig,
    scanner: EntrySecurityScanner | None = None,
) -> ET.Element:
    """Security-scan and parse an entry, returning its root element.

    Raises
    ------
    FileParseError
        If the scan finds a fatal problem or the XML cannot be parsed.
    """
    (scanner or EntrySecurityScanner(config)).check(entry.path, entry.data)
    try:
        return ET.fromstring(entry.data)  # noqa: S314
    except ET.ParseError as exc:
        raise FileParseError(
            f"Invalid XML: {exc}",
            code=ErrorCode.E_PARSE_CORRUPT,
            file_path=entry.path,
        ) from exc


def extract_document(
    entry: ArchiveEntry,
    config: NCCIngestConfig,
    scanner: EntrySecurityScanner | None = None,
) -> ExtractedDocument:
    """Parse *entry* and extract its fields and block sequence."""
    root = parse_entry(entry, config, scanner)
    return extract_from_element(root, entry.basename)


def extract_from_element(root: ET.Element, basename: str) -> ExtractedDocument:
    """Extract fields and blocks from an already-parsed root element."""
    title_elem = find_child(root, "title")
    if title_elem is None:
        title_elem = find_first(root, "title")

    sptc = find_first(root, "sptc")
    reference_code = element_text(sptc) if sptc is not None else None
    if not reference_code:
        reference_code = root.get("id") or None

    archive_elem = find_first(root, "archive-num")
    archive_num = element_text(archive_elem) if archive_elem is not None else None

    title = element_text(title_elem) if title_elem is not None else None

    blocks: list[ExtractedBlock] = []
    if title:
        blocks.append(ExtractedBlock(block_type=BlockType.HEADING, text=title))

    _walk(root, blocks, skip=title_elem)

    return ExtractedDocument(
        basename=basename,
        doc_type=local_name(root.tag),
        outputclass=root.get("outputclass"),
        reference_code=reference_code,
        title=title or None,
        archive_num=archive_num or None,
        jurisdiction=infer_jurisdiction(basename),
        blocks=blocks,
    )


def _walk(
    element: ET.Element, blocks: list[ExtractedBlock], skip: ET.Element | None
) -> None:
    for child in element:
        if child is skip:
            continue
        tag = local_name(child.tag)
        if not tag or tag in METADATA_TAGS or tag in INCLUSION_TAGS:
            continue

        if tag == "title":
            text = element_text(child)
            if text:
                blocks.append(
                    ExtractedBlock(
                        block_type=BlockType.HEADING,
                        text=text,
                        ref_targets=_ref_targets(child),
                    )
                )
        elif tag in PARAGRAPH_TAGS:
            _emit_paragraph(child, blocks)
        elif tag in LIST_TAGS:
            _emit_list(child, tag, blocks)
        elif tag in NOTE_TAGS:
            _emit_note(child, blocks)
        elif tag in TABLE_TAGS:
            blocks.append(_table_block(child))
        elif tag in IMAGE_TAGS:
            blocks.append(_image_block(child))
        elif tag == "fig":
            _emit_figure(child, blocks)
        else:
            _walk(child, blocks, skip)


def _emit_paragraph(element: ET.Element, blocks: list[ExtractedBlock]) -> None:
    text = element_text(element)
    if text:
        blocks.append(
            ExtractedBlock(
                block_type=BlockType.PARAGRAPH,
                text=text,
                ref_targets=_ref_targets(element),
            )
        )
    for image in _images(element):
        blocks.append(_image_block(image))


def _images(element: ET.Element) -> list[ET.Element]:
    """Outermost image elements below *element*."""
    found: list[ET.Element] = []
    for child in element:
        if local_name(child.tag) in IMAGE_TAGS:
            found.append(child)
        else:
            found.extend(_images(child))
    return found


def _emit_list(
    element: ET.Element, tag: str, blocks: list[ExtractedBlock]
) -> None:
    items = [
        element_text(li)
        for li in element
        if local_name(li.tag) in LIST_ITEM_TAGS
    ]
    items = [item for item in items if item]
    if not items:
        return
    blocks.append(
        ExtractedBlock(
            block_type=BlockType.LIST,
            text="\n".join(items),
            payload={"ordered": tag == "ol", "items": items},
            ref_targets=_ref_targets(element),
        )
    )


def _emit_note(element: ET.Element, blocks: list[ExtractedBlock]) -> None:
    text = element_text(element)
    if not text:
        return
    label = (element.get("type") or "note").strip().capitalize()
    blocks.append(
        ExtractedBlock(
            block_type=BlockType.NOTE,
            text=f"{label}: {text}",
            payload={"note_type": label.lower()},
            ref_targets=_ref_targets(element),
        )
    )


def _emit_figure(element: ET.Element, blocks: list[ExtractedBlock]) -> None:
    title = find_child(element, "title")
    caption = element_text(title) if title is not None else None
    for image in _images(element):
        blocks.append(_image_block(image, caption=caption or None))


def _row_cells(row: ET.Element) -> list[str]:
    return [element_text(c) for c in row if local_name(c.tag) in CELL_TAGS]


def _table_block(element: ET.Element) -> ExtractedBlock:
    header: list[str] | None = None
    header_rows: set[int] = set()

    for section in element.iter():
        if local_name(section.tag) not in HEADER_TAGS:
            continue
        rows = [r for r in section.iter() if local_name(r.tag) in ROW_TAGS]
        header_rows.update(id(r) for r in rows)
        if header is None and rows:
            header = _row_cells(rows[0])

    rows: list[list[str]] = []
    for row in element.iter():
        if local_name(row.tag) not in ROW_TAGS or id(row) in header_rows:
            continue
        if header is None and not rows and all(
            local_name(c.tag) == "th" for c in row
        ) and len(row):
            header = _row_cells(row)
            continue
        rows.append(_row_cells(row))

    title = find_child(element, "title")
    caption = element_text(title) if title is not None else None

    lines = []
    if header:
        lines.append(" | ".join(header))
    lines.extend(" | ".join(r) for r in rows)

    return ExtractedBlock(
        block_type=BlockType.TABLE,
        text="\n".join(lines),
        payload={"header": header, "rows": rows, "caption": caption or None},
        ref_targets=_ref_targets(element),
    )


def _image_block(
    element: ET.Element, caption: str | None = None
) -> ExtractedBlock:
    ref = (
        element.get("conref")
        or element.get("href")
        or element.get("src")
        or element_text(element)
    )
    descriptor = target_basename(ref) if ref else None
    alt = element.get("alt") or ""
    return ExtractedBlock(
        block_type=BlockType.IMAGE,
        text=caption or alt,
        payload={
            "descriptor": descriptor or None,
            "ref": ref or None,
            "caption": caption,
        },
        ref_targets=_ref_targets(element),
    )


def _ref_targets(element: ET.Element) -> list[str]:
    """``.xml`` basenames named by href/conref attributes in the subtree."""
    targets: list[str] = []
    for node in element.iter():
        for attr in ("href", "conref"):
            value = node.get(attr)
            if not value or ".xml" not in value.lower():
                continue
            name = target_basename(value)
            if name and name not in targets:
                targets.append(name)
    return targets
