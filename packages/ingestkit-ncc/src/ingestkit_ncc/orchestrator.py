"""RunOrchestrator -- the ingestion job state machine.

Drives one IngestRun through the pipeline:

1. Lease the single in-flight run for an (edition, volume).
2. Fetch the source archive and locate its folders.
3. Seed: purge prior outputs, register XmlObjects, upload assets, and
   create one pending ledger row per document-bearing file.
4. Process pending files in bounded batches.  Each file's outputs and its
   ledger transition commit in one store transaction.
5. Finalize once no file is pending: resolve late references, mark the run
   ``done`` and move the edition forward.

Two invocation styles share the ledger.  :meth:`run_chunk` processes one
time-boxed batch and reports ``partial`` when work remains;
:meth:`run_to_completion` drains the whole archive in one call.
"""

from __future__ import annotations

import logging
import time
import uuid
import xml.etree.ElementTree as ET
from collections.abc import Callable
from dataclasses import dataclass, field

from ingestkit_ncc.archive import entries_under, locate_layout, read_archive
from ingestkit_ncc.assets import AssetUploader, resolve_placeholders
from ingestkit_ncc.classifier import classify_entries, decode_entry
from ingestkit_ncc.config import NCCIngestConfig
from ingestkit_ncc.errors import (
    FileParseError,
    IngestException,
    RunNotFoundError,
)
from ingestkit_ncc.extractor import extract_from_element, parse_entry
from ingestkit_ncc.hierarchy import HierarchyBuilder
from ingestkit_ncc.idempotency import stable_id
from ingestkit_ncc.models import (
    IN_FLIGHT_STATUSES,
    ArchiveEntry,
    ArchiveLayout,
    Asset,
    Block,
    BatchContinue,
    BatchOutcome,
    BatchStop,
    ChunkResult,
    ClassifiedEntry,
    Document,
    Edition,
    EditionStatus,
    IngestRun,
    JobHandle,
    ParseProgress,
    ProcessingResult,
    RunStatus,
    StopReason,
    XmlObject,
    advance_edition_status,
    utc_now,
)
from ingestkit_ncc.progress import ProgressTracker
from ingestkit_ncc.protocols import IngestStore, ObjectStore
from ingestkit_ncc.references import (
    extract_references,
    resolve_pending,
    resolve_references,
)
from ingestkit_ncc.security import EntrySecurityScanner

logger = logging.getLogger("ingestkit_ncc")

# Children before parents so no row is left pointing at a deleted one.
PURGE_ORDER = (
    "placements",
    "references",
    "blocks",
    "nodes",
    "documents",
    "assets",
    "xml_objects",
)


@dataclass
class RunContext:
    """Everything loaded for one run during one invocation."""

    run: IngestRun
    entries: list[ArchiveEntry]
    layout: ArchiveLayout
    classified: list[ClassifiedEntry]
    sources: dict[str, ArchiveEntry] = field(default_factory=dict)
    assets: list[Asset] = field(default_factory=list)
    roots: dict[str, ET.Element | None] = field(default_factory=dict)

    def entry_for(self, path: str) -> ArchiveEntry | None:
        basename = path.rsplit("/", 1)[-1]
        entry = self.sources.get(basename)
        if entry is not None and entry.path == path:
            return entry
        return next((e for e in self.entries if e.path == path), None)


class RunOrchestrator:
    """Top-level orchestrator for building-code archive ingestion.

    Parameters
    ----------
    store:
        Relational persistence for runs, outputs and the ledger.
    object_store:
        Source of archives and destination for assets.
    config:
        Pipeline configuration.  Uses defaults when *None*.
    clock:
        Monotonic clock used for the per-invocation time budget.
    """

    def __init__(
        self,
        store: IngestStore,
        object_store: ObjectStore,
        config: NCCIngestConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or NCCIngestConfig()
        self._store = store
        self._object_store = object_store
        self._clock = clock
        self._tracker = ProgressTracker(store)
        self._scanner = EntrySecurityScanner(self._config)
        self._uploader = AssetUploader(object_store, self._config)

    @property
    def tracker(self) -> ProgressTracker:
        return self._tracker

    # ------------------------------------------------------------------
    # Job lease
    # ------------------------------------------------------------------

    def lease_job(
        self, edition_id: str, volume: str, archive_key: str | None = None
    ) -> JobHandle:
        """Find or create the single in-flight run for (edition, volume).

        An existing ``queued``/``running``/``partial`` run is reused and
        moved to ``running``.  Otherwise a new ``running`` run is created
        for *archive_key*, falling back to the latest confirmed upload.

        Raises
        ------
        RunNotFoundError
            If no run is in flight and no archive key is known.
        """
        with self._store.transaction():
            in_flight = self._store.list_runs(
                edition_id, volume, statuses=list(IN_FLIGHT_STATUSES)
            )
            if in_flight:
                if len(in_flight) > 1:
                    logger.warning(
                        "ingestkit_ncc | edition=%s | volume=%s | in_flight=%d | "
                        "reusing oldest",
                        edition_id,
                        volume,
                        len(in_flight),
                    )
                run = in_flight[0]
                if run.status != RunStatus.RUNNING:
                    run = run.model_copy(
                        update={
                            "status": RunStatus.RUNNING,
                            "started_at": run.started_at or utc_now(),
                        }
                    )
                    self._store.save_run(run)
                return JobHandle(run=run, created=False)

            key = archive_key
            if key is None:
                upload = self._store.latest_upload(edition_id, volume)
                key = upload.archive_key if upload is not None else None
            if key is None:
                raise RunNotFoundError(
                    f"No in-flight run and no confirmed upload for "
                    f"edition={edition_id} volume={volume}"
                )

            now = utc_now()
            run = IngestRun(
                id=str(uuid.uuid4()),
                edition_id=edition_id,
                volume=volume,
                archive_key=key,
                status=RunStatus.RUNNING,
                created_at=now,
                started_at=now,
            )
            self._store.save_run(run)

        logger.info(
            "ingestkit_ncc | run=%s | created for edition=%s volume=%s",
            run.id,
            edition_id,
            volume,
        )
        return JobHandle(run=run, created=True)

    # ------------------------------------------------------------------
    # Invocation styles
    # ------------------------------------------------------------------

    def run_chunk(self, edition_id: str, volume: str) -> ChunkResult:
        """Process one time-boxed batch of the in-flight run.

        Seeds the run on its first invocation, then processes at most
        ``batch_size`` pending files, stopping early when the time budget is
        spent.  The run ends ``partial`` if files remain pending, else it is
        finalized to ``done``.
        """
        handle = self.lease_job(edition_id, volume)
        run = handle.run
        deadline = self._clock() + self._config.time_budget_seconds

        try:
            ctx = self._load(run)
            if self._tracker.has_rows(run.id):
                self._tracker.reset_stale_processing(run.id)
                ctx.assets = self._store.list_assets(run.id)
            else:
                self._seed(ctx)

            outcome = self.run_batch(
                ctx, batch_size=self._config.batch_size, deadline=deadline
            )
            summary = self._tracker.summary(run.id)

            if summary.pending == 0:
                self.finalize(ctx)
                status = RunStatus.DONE
            else:
                ctx.run = ctx.run.model_copy(
                    update={
                        "status": RunStatus.PARTIAL,
                        "files_total": summary.total,
                        "files_processed": summary.total - summary.pending,
                        "current_file": None,
                    }
                )
                self._store.save_run(ctx.run)
                status = RunStatus.PARTIAL
        except Exception as exc:
            self._fail(run.id, exc)
            raise

        stop_reason = outcome.reason if isinstance(outcome, BatchStop) else None
        logger.info(
            "ingestkit_ncc | run=%s | chunk status=%s | processed=%d/%d | stop=%s",
            run.id,
            status.value,
            summary.total - summary.pending,
            summary.total,
            stop_reason.value if stop_reason else "-",
        )
        return ChunkResult(
            run_id=run.id,
            status=status,
            files_processed=summary.total - summary.pending,
            files_total=summary.total,
            nodes_created_this_chunk=outcome.nodes_created,
            stop_reason=stop_reason,
        )

    def run_to_completion(self, run_id: str) -> ProcessingResult:
        """Run a whole archive in one call (queue-worker style).

        A run already ``done`` is skipped.  Otherwise every prior output of
        the run, ledger included, is purged before processing, so retried
        deliveries never duplicate rows.  Any exception marks the run
        ``failed`` and is re-raised.

        Raises
        ------
        RunNotFoundError
            If *run_id* does not exist.
        """
        overall_start = time.monotonic()
        run = self._store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found", run_id=run_id)

        if run.status == RunStatus.DONE:
            logger.info("ingestkit_ncc | run=%s | already done, skipping", run_id)
            return ProcessingResult(
                run_id=run_id,
                status=run.status,
                skipped=True,
                files_total=run.files_total,
                files_completed=run.files_processed,
                warnings=run.warnings,
                parser_version=self._config.parser_version,
                tenant_id=self._config.tenant_id,
            )

        files_completed = files_errored = nodes_created = 0
        try:
            self.purge_run_outputs(run_id, include_progress=True)
            run = run.model_copy(
                update={
                    "status": RunStatus.RUNNING,
                    "error": None,
                    "failure_stage": None,
                    "warnings": [],
                    "files_total": 0,
                    "files_processed": 0,
                    "current_file": None,
                    "started_at": utc_now(),
                    "finished_at": None,
                }
            )
            self._store.save_run(run)

            ctx = self._load(run)
            self._seed(ctx)
            while True:
                outcome = self.run_batch(
                    ctx, batch_size=self._config.batch_size, deadline=None
                )
                files_completed += outcome.files_processed
                files_errored += outcome.files_errored
                nodes_created += outcome.nodes_created
                if isinstance(outcome, BatchStop):
                    break
            self.finalize(ctx)
        except Exception as exc:
            self._fail(run_id, exc)
            raise

        counts = self._store.count_outputs(run_id)
        return ProcessingResult(
            run_id=run_id,
            status=RunStatus.DONE,
            files_total=ctx.run.files_total,
            files_completed=files_completed,
            files_errored=files_errored,
            documents_created=counts["documents"],
            nodes_created=nodes_created,
            assets_uploaded=counts["assets"],
            warnings=ctx.run.warnings,
            processing_time_seconds=time.monotonic() - overall_start,
            parser_version=self._config.parser_version,
            tenant_id=self._config.tenant_id,
        )

    # ------------------------------------------------------------------
    # Batch loop
    # ------------------------------------------------------------------

    def run_batch(
        self,
        ctx: RunContext,
        *,
        batch_size: int,
        deadline: float | None,
    ) -> BatchOutcome:
        """Process up to *batch_size* pending files.

        The budget is checked before each file; once *deadline* has passed
        the batch stops and the remaining files stay pending.

        Returns
        -------
        BatchContinue
            The batch hit its size limit and pending files remain.
        BatchStop
            The time budget ran out, or no pending files remain.
        """
        processed = errored = nodes = 0
        pending = self._tracker.select_pending(ctx.run.id, limit=batch_size)
        if not pending:
            return BatchStop(reason=StopReason.EXHAUSTED)

        for row in pending:
            if deadline is not None and self._clock() >= deadline:
                logger.info(
                    "ingestkit_ncc | run=%s | time budget spent | processed=%d",
                    ctx.run.id,
                    processed + errored,
                )
                return BatchStop(
                    reason=StopReason.TIME_BUDGET,
                    files_processed=processed,
                    files_errored=errored,
                    nodes_created=nodes,
                )
            created = self._process_file(ctx, row)
            if created is None:
                errored += 1
            else:
                processed += 1
                nodes += created

        if self._tracker.select_pending(ctx.run.id, limit=1):
            return BatchContinue(
                files_processed=processed, files_errored=errored, nodes_created=nodes
            )
        return BatchStop(
            reason=StopReason.EXHAUSTED,
            files_processed=processed,
            files_errored=errored,
            nodes_created=nodes,
        )

    def _process_file(self, ctx: RunContext, row: ParseProgress) -> int | None:
        """Ingest one file; return nodes created, or None on a file error."""
        run = ctx.run
        row = self._tracker.mark_processing(row)
        entry = ctx.entry_for(row.file_path)

        try:
            if entry is None:
                raise FileParseError(
                    f"Entry {row.file_path} missing from archive",
                    file_path=row.file_path,
                )
            root = parse_entry(entry, self._config, self._scanner)
            extracted = extract_from_element(root, entry.basename)
        except FileParseError as exc:
            self._tracker.mark_error(row, exc.message)
            logger.warning(
                "ingestkit_ncc | run=%s | file=%s | code=%s | %s",
                run.id,
                row.file_path,
                exc.code,
                exc.message,
            )
            return None

        ctx.roots[entry.basename] = root
        document_id = stable_id(run.id, "document", entry.basename)
        document = Document(
            id=document_id,
            run_id=run.id,
            xml_object_id=stable_id(run.id, "xml_object", entry.basename),
            basename=entry.basename,
            doc_type=extracted.doc_type,
            reference_code=extracted.reference_code,
            title=extracted.title,
            archive_num=extracted.archive_num,
            jurisdiction=extracted.jurisdiction,
        )

        blocks = [
            Block(
                id=stable_id(run.id, "block", f"{document_id}:{ordinal}"),
                run_id=run.id,
                document_id=document_id,
                ordinal=ordinal,
                block_type=eb.block_type,
                text=eb.text,
                payload=eb.payload,
            )
            for ordinal, eb in enumerate(extracted.blocks)
        ]
        blocks, placements = resolve_placeholders(
            blocks,
            run_id=run.id,
            document_id=document_id,
            assets=ctx.assets,
            descriptor_lookup=lambda name: self._descriptor_text(ctx, name),
        )

        last = self._store.max_sort_order(run.id)
        builder = HierarchyBuilder(run.id, run.edition_id, run.volume, self._config)
        nodes = builder.build(
            root,
            basename=entry.basename,
            document_id=document_id,
            start_sort_order=0 if last is None else last + 1,
            lookup=lambda name: self._root_for(ctx, name),
        )

        document_ids = {d.basename: d.id for d in self._store.list_documents(run.id)}
        document_ids[entry.basename] = document_id
        references = resolve_references(
            extract_references(decode_entry(entry.data)),
            source_document_id=document_id,
            run_id=run.id,
            document_ids=document_ids,
            block_refs=[
                (block.id, eb.ref_targets)
                for block, eb in zip(blocks, extracted.blocks)
            ],
        )

        with self._store.transaction():
            self._store.insert_documents([document])
            self._store.insert_blocks(blocks)
            self._store.insert_nodes(nodes)
            self._store.insert_references(references)
            self._store.insert_placements(placements)
            self._tracker.mark_completed(row, len(nodes))
            ctx.run = ctx.run.model_copy(update={"current_file": row.file_path})
            self._store.save_run(ctx.run)

        logger.debug(
            "ingestkit_ncc | run=%s | file=%s | blocks=%d | nodes=%d | refs=%d",
            run.id,
            row.file_path,
            len(blocks),
            len(nodes),
            len(references),
        )
        return len(nodes)

    def _root_for(self, ctx: RunContext, basename: str) -> ET.Element | None:
        """Parsed root of another source entry, for clause inclusion."""
        if basename in ctx.roots:
            return ctx.roots[basename]
        entry = ctx.sources.get(basename)
        root: ET.Element | None = None
        if entry is not None:
            try:
                root = parse_entry(entry, self._config, self._scanner)
            except FileParseError:
                root = None
        ctx.roots[basename] = root
        return root

    @staticmethod
    def _descriptor_text(ctx: RunContext, basename: str) -> str | None:
        entry = ctx.sources.get(basename)
        return decode_entry(entry.data) if entry is not None else None

    # ------------------------------------------------------------------
    # Lifecycle steps
    # ------------------------------------------------------------------

    def _load(self, run: IngestRun) -> RunContext:
        """Fetch the archive and discover its layout and source entries."""
        data = self._object_store.get_bytes(run.archive_key)
        entries = read_archive(data, self._config)
        layout = locate_layout(entries, self._config)
        classified = classify_entries(entries, layout, self._config)

        sources: dict[str, ArchiveEntry] = {}
        for entry in entries_under(entries, layout.source_folder, [".xml"]):
            sources.setdefault(entry.basename, entry)

        return RunContext(
            run=run,
            entries=entries,
            layout=layout,
            classified=classified,
            sources=sources,
        )

    def _seed(self, ctx: RunContext) -> None:
        """Purge prior outputs and register objects, assets and the ledger."""
        run = ctx.run
        assets, warnings = self._uploader.upload_all(ctx.entries, ctx.layout, run)
        bearing = [c.path for c in ctx.classified if c.document_bearing]

        xml_objects = [
            XmlObject(
                id=stable_id(run.id, "xml_object", c.basename),
                run_id=run.id,
                basename=c.basename,
                path=c.path,
                root_tag=c.root_tag,
                outputclass=c.outputclass,
                checksum=c.checksum,
                raw_content=(
                    decode_entry(ctx.sources[c.basename].data)
                    if self._config.persist_raw_xml
                    else None
                ),
            )
            for c in ctx.classified
        ]

        with self._store.transaction():
            self.purge_run_outputs(run.id, include_progress=True)
            self._store.insert_xml_objects(xml_objects)
            self._store.insert_assets(assets)
            self._tracker.seed(run.id, bearing)
            ctx.run = run.model_copy(
                update={
                    "files_total": len(bearing),
                    "files_processed": 0,
                    "warnings": list(run.warnings) + warnings,
                }
            )
            self._store.save_run(ctx.run)
        ctx.assets = assets

    def finalize(self, ctx: RunContext) -> None:
        """Resolve late references, mark the run done, advance the edition."""
        run_id = ctx.run.id
        with self._store.transaction():
            document_ids = {
                d.basename: d.id for d in self._store.list_documents(run_id)
            }
            late = resolve_pending(self._store.list_references(run_id), document_ids)
            for ref in late:
                self._store.set_reference_target(ref.id, ref.target_document_id)

            summary = self._tracker.summary(run_id)
            counts = self._store.count_outputs(run_id)
            ctx.run = ctx.run.model_copy(
                update={
                    "status": RunStatus.DONE,
                    "error": None,
                    "failure_stage": None,
                    "files_total": summary.total,
                    "files_processed": summary.total - summary.pending,
                    "current_file": None,
                    "finished_at": utc_now(),
                }
            )
            self._store.save_run(ctx.run)

            edition = self._store.get_edition(ctx.run.edition_id) or Edition(
                id=ctx.run.edition_id
            )
            edition = edition.model_copy(
                update={
                    "node_count": counts["nodes"],
                    "document_count": counts["documents"],
                    "status": advance_edition_status(
                        edition.status, EditionStatus.PARSED
                    ),
                    "updated_at": utc_now(),
                }
            )
            self._store.save_edition(edition)

        logger.info(
            "ingestkit_ncc | run=%s | done | completed=%d | errors=%d | "
            "documents=%d | nodes=%d | late_refs=%d",
            run_id,
            summary.completed,
            summary.error,
            counts["documents"],
            counts["nodes"],
            len(late),
        )

    def purge_run_outputs(self, run_id: str, include_progress: bool = False) -> dict[str, int]:
        """Delete every row a run produced, children first."""
        kinds = PURGE_ORDER + (("progress",) if include_progress else ())
        deleted: dict[str, int] = {}
        with self._store.transaction():
            for kind in kinds:
                deleted[kind] = self._store.delete_for_run(kind, run_id)
        if any(deleted.values()):
            logger.info(
                "ingestkit_ncc | run=%s | purged %s",
                run_id,
                ", ".join(f"{k}={v}" for k, v in deleted.items() if v),
            )
        return deleted

    def _fail(self, run_id: str, exc: Exception) -> None:
        """Record a run-level failure with the error message verbatim."""
        if isinstance(exc, IngestException):
            message, stage = exc.message, exc.stage
        else:
            message, stage = str(exc), "process"
        run = self._store.get_run(run_id)
        if run is None:
            return
        run = run.model_copy(
            update={
                "status": RunStatus.FAILED,
                "error": message,
                "failure_stage": stage,
                "current_file": None,
                "finished_at": utc_now(),
            }
        )
        self._store.save_run(run)
        logger.error(
            "ingestkit_ncc | run=%s | failed | %s: %s",
            run_id,
            type(exc).__name__,
            message,
        )
