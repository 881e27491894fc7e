"""AssetUploader -- binary assets from the archive into object storage.

Each asset lands under a deterministic key built from the edition, volume
and filename, so uploads are safe to repeat.  Uploads run in a thread pool
since every one targets a distinct key.  Image placeholder blocks are
patched with the asset they name once blocks exist.
"""

from __future__ import annotations

import io
import logging
import re
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed

from PIL import Image, UnidentifiedImageError

from ingestkit_ncc.archive import entries_under
from ingestkit_ncc.config import NCCIngestConfig
from ingestkit_ncc.errors import ErrorCode, IngestException
from ingestkit_ncc.idempotency import stable_id
from ingestkit_ncc.models import (
    ArchiveEntry,
    ArchiveLayout,
    Asset,
    AssetPlacement,
    Block,
    BlockType,
    IngestRun,
)
from ingestkit_ncc.protocols import ObjectStore

logger = logging.getLogger("ingestkit_ncc")

CONTENT_TYPES: dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".svg": "image/svg+xml",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".pdf": "application/pdf",
}

_RASTER_TYPES = frozenset({"image/jpeg", "image/png", "image/webp", "image/gif"})

IMAGE_FILENAME_RE = re.compile(
    r"([A-Za-z0-9._-]+\.(?:jpg|jpeg|png|svg|webp|gif|pdf))", re.IGNORECASE
)


def asset_key(prefix: str, edition_id: str, volume: str, filename: str) -> str:
    return f"{prefix}/{edition_id}/{volume}/assets/{filename}"


def content_type_for(filename: str) -> str:
    lower = filename.lower()
    for ext, content_type in CONTENT_TYPES.items():
        if lower.endswith(ext):
            return content_type
    return "application/octet-stream"


def measure_image(data: bytes, content_type: str) -> tuple[int | None, int | None]:
    """Pixel ``(width, height)`` of a raster image, else ``(None, None)``."""
    if content_type not in _RASTER_TYPES:
        return None, None
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.size
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logger.debug("ingestkit_ncc | image size unreadable: %s", exc)
        return None, None


def _stem(filename: str) -> str:
    return filename.rsplit(".", 1)[0].lower()


class AssetUploader:
    """Upload the asset folder of an archive and register Asset rows.

    Parameters
    ----------
    object_store:
        Destination for asset bytes.
    config:
        Supplies the key prefix, extension set and worker count.
    """

    def __init__(self, object_store: ObjectStore, config: NCCIngestConfig) -> None:
        self._store = object_store
        self._config = config

    def upload_all(
        self,
        entries: list[ArchiveEntry],
        layout: ArchiveLayout,
        run: IngestRun,
    ) -> tuple[list[Asset], list[str]]:
        """Upload every asset entry; return ``(assets, warnings)``.

        A failed upload is logged and reported as a warning; the asset is
        skipped and the run continues.
        """
        if layout.asset_folder is None:
            return [], []

        candidates: dict[str, ArchiveEntry] = {}
        for entry in entries_under(
            entries, layout.asset_folder, self._config.asset_extensions
        ):
            candidates.setdefault(entry.basename, entry)

        assets: list[Asset] = []
        warnings: list[str] = []
        if not candidates:
            return assets, warnings

        with ThreadPoolExecutor(
            max_workers=self._config.asset_upload_workers
        ) as executor:
            futures = {
                executor.submit(self._upload_one, entry, run): name
                for name, entry in candidates.items()
            }
            for future in as_completed(futures):
                name = futures[future]
                try:
                    assets.append(future.result())
                except IngestException as exc:
                    message = (
                        f"{ErrorCode.W_ASSET_UPLOAD_FAILED.value}: {name}: {exc.message}"
                    )
                    logger.warning(
                        "ingestkit_ncc | run=%s | asset=%s | upload failed: %s",
                        run.id,
                        name,
                        exc.message,
                    )
                    warnings.append(message)

        assets.sort(key=lambda a: a.filename)
        logger.info(
            "ingestkit_ncc | run=%s | assets uploaded=%d | failed=%d",
            run.id,
            len(assets),
            len(warnings),
        )
        return assets, sorted(warnings)

    def _upload_one(self, entry: ArchiveEntry, run: IngestRun) -> Asset:
        filename = entry.basename
        content_type = content_type_for(filename)
        key = asset_key(
            self._config.asset_key_prefix, run.edition_id, run.volume, filename
        )
        self._store.put_bytes(key, entry.data, content_type)
        width, height = measure_image(entry.data, content_type)
        return Asset(
            id=stable_id(run.id, "asset", filename),
            run_id=run.id,
            filename=filename,
            storage_key=key,
            content_type=content_type,
            size_bytes=len(entry.data),
            width=width,
            height=height,
        )


def match_asset(
    descriptor: str | None,
    assets: list[Asset],
    descriptor_lookup: Callable[[str], str | None] | None = None,
) -> Asset | None:
    """Find the asset an image descriptor names.

    A descriptor that is itself an image filename is matched directly.  An
    XML descriptor is looked up and the first image filename in its text is
    used.  Matching is case-insensitive and falls back to the file stem.
    """
    if not descriptor or not assets:
        return None

    candidates = [descriptor]
    if descriptor.lower().endswith(".xml") and descriptor_lookup is not None:
        text = descriptor_lookup(descriptor)
        if text:
            candidates = IMAGE_FILENAME_RE.findall(text) + [descriptor]

    by_name = {a.filename.lower(): a for a in assets}
    by_stem: dict[str, Asset] = {}
    for a in assets:
        by_stem.setdefault(_stem(a.filename), a)

    for candidate in candidates:
        name = candidate.rsplit("/", 1)[-1].lower()
        if name in by_name:
            return by_name[name]
    for candidate in candidates:
        stem = _stem(candidate.rsplit("/", 1)[-1])
        if stem in by_stem:
            return by_stem[stem]
    return None


def resolve_placeholders(
    blocks: list[Block],
    *,
    run_id: str,
    document_id: str,
    assets: list[Asset],
    descriptor_lookup: Callable[[str], str | None] | None = None,
) -> tuple[list[Block], list[AssetPlacement]]:
    """Patch image blocks with their asset and create placements.

    Returns the (possibly patched) block list in the same order and the
    placements created.  Unresolvable placeholders are left untouched.
    """
    patched: list[Block] = []
    placements: list[AssetPlacement] = []

    for block in blocks:
        if block.block_type != BlockType.IMAGE or not block.payload:
            patched.append(block)
            continue
        asset = match_asset(block.payload.get("descriptor"), assets, descriptor_lookup)
        if asset is None:
            logger.debug(
                "ingestkit_ncc | run=%s | code=%s | descriptor=%s",
                run_id,
                ErrorCode.W_ASSET_UNRESOLVED.value,
                block.payload.get("descriptor"),
            )
            patched.append(block)
            continue

        payload = dict(block.payload)
        payload["asset_id"] = asset.id
        payload["storage_key"] = asset.storage_key
        patched.append(block.model_copy(update={"payload": payload}))
        placements.append(
            AssetPlacement(
                id=stable_id(run_id, "placement", block.id),
                run_id=run_id,
                asset_id=asset.id,
                document_id=document_id,
                block_id=block.id,
                caption=payload.get("caption") or block.text or None,
            )
        )

    return patched, placements


def presigned_asset_url(
    store: ObjectStore,
    asset: Asset,
    expires_seconds: int | None = None,
    config: NCCIngestConfig | None = None,
) -> str:
    """Time-limited retrieval URL for an uploaded asset.

    Expiry defaults to ``config.presigned_url_expiry_seconds``.
    """
    if expires_seconds is None:
        expires_seconds = (config or NCCIngestConfig()).presigned_url_expiry_seconds
    return store.presigned_get_url(asset.storage_key, expires_seconds)
