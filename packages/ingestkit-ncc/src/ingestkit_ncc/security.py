"""Pre-flight security scanner for XML archive entries.

Rejects dangerous or oversized entries before extraction begins.  Works on
in-memory bytes read from the archive rather than files on disk.  Checks
emptiness, size, entity declarations (billion laughs / XXE prevention), XML
validity, and nesting depth.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET

from ingestkit_ncc.config import NCCIngestConfig
from ingestkit_ncc.errors import ErrorCode, FileParseError, IngestError

logger = logging.getLogger("ingestkit_ncc")


class EntrySecurityScanner:
    """Run pre-flight checks on one XML entry.

    Returns a list of errors.  Fatal errors (``E_*`` codes) mean the entry
    must not be processed further.
    """

    def __init__(self, config: NCCIngestConfig) -> None:
        self.config = config

    def scan(self, path: str, data: bytes) -> list[IngestError]:
        errors: list[IngestError] = []

        # --- 1. Empty entry ---
        if not data.strip():
            errors.append(
                IngestError(
                    code=ErrorCode.E_PARSE_EMPTY,
                    message=f"Entry is empty: {path}",
                    stage="security",
                    file_path=path,
                )
            )
            return errors

        # --- 2. Size limit ---
        max_bytes = self.config.max_entry_size_mb * 1024 * 1024
        if len(data) > max_bytes:
            errors.append(
                IngestError(
                    code=ErrorCode.E_SECURITY_TOO_LARGE,
                    message=(
                        f"Entry size {len(data)} bytes exceeds limit of "
                        f"{max_bytes} bytes ({self.config.max_entry_size_mb} MB)"
                    ),
                    stage="security",
                    file_path=path,
                )
            )
            return errors

        # --- 3. Entity declarations ---
        raw_upper = data.upper()
        if b"<!ENTITY" in raw_upper:
            errors.append(
                IngestError(
                    code=ErrorCode.E_SECURITY_ENTITY_DECLARATION,
                    message="Entry contains <!ENTITY declaration",
                    stage="security",
                    file_path=path,
                )
            )
            return errors

        doctype_pos = raw_upper.find(b"<!DOCTYPE")
        if doctype_pos != -1:
            bracket_pos = data.find(b"[", doctype_pos)
            close_pos = data.find(b">", doctype_pos)
            if bracket_pos != -1 and (close_pos == -1 or bracket_pos < close_pos):
                errors.append(
                    IngestError(
                        code=ErrorCode.E_SECURITY_ENTITY_DECLARATION,
                        message="Entry contains <!DOCTYPE with internal subset",
                        stage="security",
                        file_path=path,
                    )
                )
                return errors

        # --- 4. XML validity ---
        try:
            root = ET.fromstring(data)  # noqa: S314
        except ET.ParseError as exc:
            errors.append(
                IngestError(
                    code=ErrorCode.E_PARSE_CORRUPT,
                    message=f"Invalid XML: {exc}",
                    stage="security",
                    file_path=path,
                )
            )
            return errors

        # --- 5. Depth ---
        depth = measure_depth(root)
        if depth > self.config.max_depth:
            errors.append(
                IngestError(
                    code=ErrorCode.E_SECURITY_DEPTH_BOMB,
                    message=(
                        f"XML nesting depth {depth} exceeds limit of "
                        f"{self.config.max_depth}"
                    ),
                    stage="security",
                    file_path=path,
                )
            )

        return errors

    def check(self, path: str, data: bytes) -> None:
        """Raise ``FileParseError`` for the first fatal scan result."""
        for error in self.scan(path, data):
            if error.code.startswith("E_"):
                logger.warning(
                    "ingestkit_ncc | file=%s | code=%s | %s",
                    path,
                    error.code,
                    error.message,
                )
                raise FileParseError(
                    error.message, code=error.code, stage=error.stage, file_path=path
                )


def measure_depth(element: ET.Element) -> int:
    """Maximum nesting depth of an element tree (root = 1)."""
    deepest = 0
    stack = [(element, 1)]
    while stack:
        node, depth = stack.pop()
        deepest = max(deepest, depth)
        stack.extend((child, depth + 1) for child in node)
    return deepest
