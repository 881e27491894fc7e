"""Upload confirmation.

Confirming an upload persists the structured ``(archive key, volume, size)``
record, points the edition at the new archive, and creates the queued run
in a single store transaction, so upload metadata never has to be
recovered from anywhere else.
"""

from __future__ import annotations

import logging
import uuid

from ingestkit_ncc.models import (
    IN_FLIGHT_STATUSES,
    Edition,
    EditionStatus,
    IngestRun,
    RunStatus,
    UploadRecord,
    advance_edition_status,
    utc_now,
)
from ingestkit_ncc.protocols import IngestStore

logger = logging.getLogger("ingestkit_ncc")


def archive_upload_key(prefix: str, edition_id: str, volume: str) -> str:
    """Fresh object key for an incoming source archive."""
    return f"{prefix}/raw/{edition_id}/{volume}/{uuid.uuid4()}.zip"


def confirm_upload(
    store: IngestStore,
    edition_id: str,
    volume: str,
    archive_key: str,
    size_bytes: int,
) -> IngestRun:
    """Record an uploaded archive and return its queued run.

    An in-flight run for the same (edition, volume) is reused instead of
    creating a second one.  A reused run that is still ``queued`` is
    pointed at the new archive; one already processing keeps its key.
    """
    with store.transaction():
        store.save_upload(
            UploadRecord(
                id=str(uuid.uuid4()),
                edition_id=edition_id,
                volume=volume,
                archive_key=archive_key,
                size_bytes=size_bytes,
            )
        )

        edition = store.get_edition(edition_id) or Edition(id=edition_id)
        store.save_edition(
            edition.model_copy(
                update={
                    "source_archive_key": archive_key,
                    "status": advance_edition_status(
                        edition.status, EditionStatus.UPLOADED
                    ),
                    "updated_at": utc_now(),
                }
            )
        )

        in_flight = store.list_runs(
            edition_id, volume, statuses=list(IN_FLIGHT_STATUSES)
        )
        if in_flight:
            run = in_flight[0]
            if run.archive_key != archive_key:
                if run.status == RunStatus.QUEUED:
                    run = run.model_copy(update={"archive_key": archive_key})
                    store.save_run(run)
                else:
                    logger.warning(
                        "ingestkit_ncc | run=%s | status=%s | keeps archive=%s, "
                        "new upload %s not applied",
                        run.id,
                        run.status.value,
                        run.archive_key,
                        archive_key,
                    )
            return run

        run = IngestRun(
            id=str(uuid.uuid4()),
            edition_id=edition_id,
            volume=volume,
            archive_key=archive_key,
            status=RunStatus.QUEUED,
        )
        store.save_run(run)

    logger.info(
        "ingestkit_ncc | run=%s | queued | edition=%s | volume=%s | bytes=%d",
        run.id,
        edition_id,
        volume,
        size_bytes,
    )
    return run
