"""HierarchyBuilder -- the clause/part/section tree of a document.

Nodes are emitted depth-first.  ``sort_order`` comes from a counter that
only ever increments, so siblings (and the whole run) are ordered in
document order and no value is reused.
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from collections.abc import Callable

from ingestkit_ncc.config import NCCIngestConfig
from ingestkit_ncc.extractor import (
    INCLUSION_TAGS,
    NOTE_TAGS,
    PARAGRAPH_TAGS,
    element_text,
    find_child,
    find_first,
    local_name,
)
from ingestkit_ncc.idempotency import node_content_hash, stable_id
from ingestkit_ncc.models import Node, NodeType
from ingestkit_ncc.references import target_basename

logger = logging.getLogger("ingestkit_ncc")

# Elements that open a child node when nested inside another node.
NESTED_NODE_TAGS = frozenset({"subclause", "clause", "part", "section"})

# Node types allowed to pull in other documents as synthetic children.
INCLUDING_TYPES = frozenset(
    {NodeType.PART, NodeType.SPECIFICATION, NodeType.SECTION, NodeType.VOLUME}
)

_CLASS_SPLIT_RE = re.compile(r"[\s,;]+")


def classify_node_type(tag: str, outputclass: str | None = None) -> NodeType:
    """Map an element to its node variant; ``outputclass`` wins over the tag."""
    for value in (outputclass, tag):
        if not value:
            continue
        key = value.strip().lower()
        if key == "specification":
            return NodeType.SPECIFICATION
        if key == "part":
            return NodeType.PART
        if key == "section":
            return NodeType.SECTION
        if key in ("definition", "definitions"):
            return NodeType.DEFINITION
        if key == "volume":
            return NodeType.VOLUME
        if key == "subclause":
            return NodeType.SUBCLAUSE
        if key == "clause":
            return NodeType.CLAUSE
    return NodeType.CLAUSE


def building_classes(element: ET.Element) -> list[str]:
    """Building-class applicability declared on an element."""
    raw = element.get("building-class") or element.get("applies-to")
    if raw is None:
        applicability = find_child(element, "applicability")
        if applicability is not None:
            raw = element_text(applicability)
    if not raw:
        return []
    return [part for part in _CLASS_SPLIT_RE.split(raw) if part]


class HierarchyBuilder:
    """Build the Node forest for one run, one document at a time.

    Parameters
    ----------
    run_id, edition_id, volume:
        Scope written onto every Node.
    config:
        Supplies the text prefix length used for content hashes.
    """

    def __init__(
        self,
        run_id: str,
        edition_id: str,
        volume: str,
        config: NCCIngestConfig,
    ) -> None:
        self.run_id = run_id
        self.edition_id = edition_id
        self.volume = volume
        self.config = config
        self._counter = 0

    def build(
        self,
        root: ET.Element,
        *,
        basename: str,
        document_id: str | None,
        start_sort_order: int,
        lookup: Callable[[str], ET.Element | None] | None = None,
    ) -> list[Node]:
        """Emit the nodes of one document.

        Parameters
        ----------
        root:
            Parsed root element of the document.
        basename:
            Entry basename, recorded in ``meta.source_file``.
        document_id:
            Document every emitted node links to.
        start_sort_order:
            First sort-order value to assign; the run's next free value.
        lookup:
            Basename -> parsed root element, used to pull cross-document
            clause references in as synthetic children.
        """
        nodes: list[Node] = []
        self._counter = start_sort_order
        self._emit(
            root,
            parent=None,
            nodes=nodes,
            basename=basename,
            document_id=document_id,
            lookup=lookup,
            visited={basename},
            synthetic=False,
        )
        return nodes

    # ------------------------------------------------------------------

    def _emit(
        self,
        element: ET.Element,
        *,
        parent: Node | None,
        nodes: list[Node],
        basename: str,
        document_id: str | None,
        lookup: Callable[[str], ET.Element | None] | None,
        visited: set[str],
        synthetic: bool,
    ) -> None:
        tag = local_name(element.tag)
        outputclass = element.get("outputclass")
        node_type = classify_node_type(tag, outputclass)

        reference = self._reference(element, is_root=parent is None)
        title_elem = find_child(element, "title")
        title = element_text(title_elem) if title_elem is not None else None
        text = " ".join(self._own_text(element)) or None

        segment = reference or node_type.value
        path = f"/{segment}" if parent is None else f"{parent.path}/{segment}"
        depth = 0 if parent is None else parent.depth + 1

        sort_order = self._counter
        self._counter += 1

        meta: dict = {
            "source_volume": self.volume,
            "source_file": basename,
            "outputclass": outputclass,
            "building_classes": building_classes(element),
        }
        if synthetic:
            meta["synthetic"] = True

        node = Node(
            id=stable_id(self.run_id, "node", sort_order),
            run_id=self.run_id,
            edition_id=self.edition_id,
            document_id=document_id,
            node_type=node_type,
            reference=reference,
            title=title or None,
            text=text,
            parent_id=parent.id if parent is not None else None,
            sort_order=sort_order,
            path=path,
            depth=depth,
            content_hash=node_content_hash(
                reference, title, text, self.config.node_hash_text_prefix
            ),
            meta=meta,
        )
        nodes.append(node)

        for child in self._child_elements(element):
            child_tag = local_name(child.tag)
            if child_tag in INCLUSION_TAGS:
                if node_type not in INCLUDING_TYPES:
                    continue
                self._include(
                    child,
                    parent=node,
                    nodes=nodes,
                    document_id=document_id,
                    lookup=lookup,
                    visited=visited,
                )
            else:
                self._emit(
                    child,
                    parent=node,
                    nodes=nodes,
                    basename=basename,
                    document_id=document_id,
                    lookup=lookup,
                    visited=visited,
                    synthetic=synthetic,
                )

    def _include(
        self,
        element: ET.Element,
        *,
        parent: Node,
        nodes: list[Node],
        document_id: str | None,
        lookup: Callable[[str], ET.Element | None] | None,
        visited: set[str],
    ) -> None:
        raw = element.get("href") or element.get("conref")
        if not raw or ".xml" not in raw.lower() or lookup is None:
            return
        target = target_basename(raw)
        if target in visited:
            logger.debug(
                "ingestkit_ncc | run=%s | inclusion cycle at %s | skipped",
                self.run_id,
                target,
            )
            return
        target_root = lookup(target)
        if target_root is None:
            logger.debug(
                "ingestkit_ncc | run=%s | inclusion target %s not in run",
                self.run_id,
                target,
            )
            return
        self._emit(
            target_root,
            parent=parent,
            nodes=nodes,
            basename=target,
            document_id=document_id,
            lookup=lookup,
            visited=visited | {target},
            synthetic=True,
        )

    # ------------------------------------------------------------------

    @staticmethod
    def _reference(element: ET.Element, *, is_root: bool) -> str | None:
        for field in ("sptc", "num"):
            child = find_child(element, field)
            if child is not None and element_text(child):
                return element_text(child)
        if is_root:
            sptc = find_first(element, "sptc")
            if sptc is not None and element_text(sptc):
                return element_text(sptc)
        return element.get("id") or None

    @staticmethod
    def _child_elements(element: ET.Element) -> list[ET.Element]:
        """Nested node or inclusion elements, looking through containers."""
        found: list[ET.Element] = []
        for child in element:
            tag = local_name(child.tag)
            if tag in NESTED_NODE_TAGS or tag in INCLUSION_TAGS:
                found.append(child)
            elif tag in PARAGRAPH_TAGS or tag in NOTE_TAGS or tag == "title":
                continue
            else:
                found.extend(HierarchyBuilder._child_elements(child))
        return found

    @staticmethod
    def _own_text(element: ET.Element) -> list[str]:
        """Paragraph text of *element*, excluding nested nodes."""
        parts: list[str] = []
        for child in element:
            tag = local_name(child.tag)
            if tag in NESTED_NODE_TAGS or tag in INCLUSION_TAGS:
                continue
            if tag in PARAGRAPH_TAGS:
                text = element_text(child)
                if text:
                    parts.append(text)
            else:
                parts.extend(HierarchyBuilder._own_text(child))
        return parts
