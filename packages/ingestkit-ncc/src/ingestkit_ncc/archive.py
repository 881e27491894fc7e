"""ArchiveReader -- open a ZIP byte stream and locate its folders.

The source archive holds one folder of XML source files and, optionally,
one folder of binary assets.  Folder roots are found by counting how many
relevant entries sit under each candidate root and taking the largest.
"""

from __future__ import annotations

import io
import logging
import zipfile

from ingestkit_ncc.config import NCCIngestConfig
from ingestkit_ncc.errors import ArchiveStructureError, ErrorCode
from ingestkit_ncc.models import ArchiveEntry, ArchiveLayout

logger = logging.getLogger("ingestkit_ncc")


def read_archive(data: bytes, config: NCCIngestConfig) -> list[ArchiveEntry]:
    """Return every regular, non-hidden file entry of a ZIP archive.

    Raises
    ------
    ArchiveStructureError
        With ``E_ARCHIVE_UNREADABLE`` if *data* is not a readable ZIP.
    """
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, ValueError) as exc:
        raise ArchiveStructureError(
            f"Archive is not a readable ZIP: {exc}",
            code=ErrorCode.E_ARCHIVE_UNREADABLE,
        ) from exc

    entries: list[ArchiveEntry] = []
    skipped = 0
    with zf:
        for info in zf.infolist():
            if info.is_dir():
                continue
            path = info.filename.replace("\\", "/")
            if is_hidden_path(path, config.hidden_path_prefixes):
                skipped += 1
                continue
            try:
                entries.append(ArchiveEntry(path=path, data=zf.read(info)))
            except (zipfile.BadZipFile, OSError) as exc:
                raise ArchiveStructureError(
                    f"Failed to read archive entry {path}: {exc}",
                    code=ErrorCode.E_ARCHIVE_UNREADABLE,
                ) from exc

    logger.debug(
        "ingestkit_ncc | archive entries=%d | hidden_skipped=%d",
        len(entries),
        skipped,
    )
    return entries


def is_hidden_path(path: str, hidden_prefixes: list[str]) -> bool:
    """True if any path segment starts with a hidden/system prefix."""
    for segment in path.split("/"):
        if not segment:
            continue
        if any(segment.startswith(prefix) for prefix in hidden_prefixes):
            return True
    return False


def has_extension(path: str, extensions: list[str]) -> bool:
    lower = path.lower()
    return any(lower.endswith(ext) for ext in extensions)


def find_best_folder(paths: list[str], folder_names: list[str]) -> str | None:
    """Pick the folder root holding the most entries.

    Every path segment equal (case-insensitively) to one of *folder_names*
    credits the root ending at that segment.  Ties keep the root seen
    first.  Returned roots carry a trailing ``/``.
    """
    wanted = {name.lower() for name in folder_names}
    counts: dict[str, int] = {}

    for path in paths:
        segments = [s for s in path.split("/") if s]
        # The last segment is the file itself.
        for i, segment in enumerate(segments[:-1]):
            if segment.lower() not in wanted:
                continue
            root = "/".join(segments[: i + 1]) + "/"
            counts[root] = counts.get(root, 0) + 1

    best: str | None = None
    best_count = -1
    for root, count in counts.items():
        if count > best_count:
            best = root
            best_count = count
    return best


def locate_layout(
    entries: list[ArchiveEntry], config: NCCIngestConfig
) -> ArchiveLayout:
    """Find the source-document folder and the optional asset folder.

    Raises
    ------
    ArchiveStructureError
        If no source-document folder root exists.
    """
    paths = [e.path for e in entries]
    xml_paths = [p for p in paths if has_extension(p, [".xml"])]
    source_folder = find_best_folder(xml_paths, config.source_folder_names)
    if source_folder is None:
        raise ArchiveStructureError(
            "Archive has no source-document folder "
            f"(looked for {', '.join(config.source_folder_names)})",
            code=ErrorCode.E_ARCHIVE_NO_SOURCE_FOLDER,
        )

    asset_paths = [p for p in paths if has_extension(p, config.asset_extensions)]
    asset_folder = find_best_folder(asset_paths, config.asset_folder_names)

    logger.info(
        "ingestkit_ncc | layout source=%s | assets=%s",
        source_folder,
        asset_folder or "-",
    )
    return ArchiveLayout(source_folder=source_folder, asset_folder=asset_folder)


def entries_under(
    entries: list[ArchiveEntry], folder: str, extensions: list[str]
) -> list[ArchiveEntry]:
    """Entries below *folder* whose name ends in one of *extensions*."""
    return [
        e
        for e in entries
        if e.path.startswith(folder) and has_extension(e.path, extensions)
    ]
