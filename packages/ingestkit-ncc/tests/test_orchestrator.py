"""End-to-end tests for ingestkit_ncc.orchestrator -- the run state machine."""

from __future__ import annotations

import pytest

from conftest import MINIMAL_CLAUSE, clause_xml, png_bytes
from ingestkit_ncc.errors import ArchiveStructureError, RunNotFoundError, StorageError
from ingestkit_ncc.models import (
    BlockType,
    Edition,
    EditionStatus,
    FileStatus,
    NodeType,
    RunStatus,
    StopReason,
)
from ingestkit_ncc.uploads import confirm_upload


class FakeClock:
    """Monotonic clock advancing one second per reading."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        value = self.now
        self.now += 1.0
        return value


def _drain_chunks(orchestrator, edition_id: str, volume: str = "vol1", limit: int = 50):
    results = []
    for _ in range(limit):
        result = orchestrator.run_chunk(edition_id, volume)
        results.append(result)
        if result.status == RunStatus.DONE:
            return results
    raise AssertionError("run never finished")


def _snapshot(store, run_id: str) -> dict:
    """Run outputs with run-specific ids stripped out."""
    documents = store.list_documents(run_id)
    return {
        "nodes": [
            (n.path, n.sort_order, n.depth, n.node_type, n.content_hash)
            for n in store.list_nodes(run_id)
        ],
        "documents": sorted(
            (d.basename, tuple((b.block_type, b.text) for b in store.list_blocks(d.id)))
            for d in documents
        ),
        "progress": [
            (r.file_path, r.status, r.nodes_created) for r in store.list_progress(run_id)
        ],
        "xml_objects": sorted(x.basename for x in store.list_xml_objects(run_id)),
    }


class TestMinimalArchive:
    def test_single_clause(self, store, upload_archive, make_orchestrator):
        run = upload_archive({"NCC/xml/A1G1.xml": MINIMAL_CLAUSE})
        result = make_orchestrator().run_to_completion(run.id)

        assert result.status == RunStatus.DONE
        assert result.files_total == 1
        assert result.files_completed == 1
        assert result.documents_created == 1
        assert result.nodes_created == 2

        [document] = store.list_documents(run.id)
        assert document.reference_code == "A1G1"
        blocks = store.list_blocks(document.id)
        assert [(b.block_type, b.text) for b in blocks] == [
            (BlockType.HEADING, "Sample"),
            (BlockType.PARAGRAPH, "Hello."),
        ]
        root, child = store.list_nodes(run.id)
        assert root.node_type == NodeType.CLAUSE
        assert child.parent_id == root.id
        assert child.depth == 1
        assert child.document_id == document.id

        stored = store.get_run(run.id)
        assert stored.status == RunStatus.DONE
        assert stored.finished_at is not None
        assert stored.files_processed == 1

    def test_xml_objects_registered_for_every_source_entry(
        self, store, upload_archive, make_orchestrator
    ):
        run = upload_archive(
            {
                "NCC/xml/A1G1.xml": MINIMAL_CLAUSE,
                "NCC/xml/P1.xml": "<part><sptc>P1</sptc></part>",
            }
        )
        make_orchestrator().run_to_completion(run.id)
        assert sorted(x.basename for x in store.list_xml_objects(run.id)) == [
            "A1G1.xml",
            "P1.xml",
        ]
        assert store.count_progress(run.id) == {"completed": 1}

    def test_raw_content_persisted_when_enabled(self, store, upload_archive, make_orchestrator):
        run = upload_archive({"NCC/xml/A1G1.xml": MINIMAL_CLAUSE})
        make_orchestrator(persist_raw_xml=True).run_to_completion(run.id)
        assert store.list_xml_objects(run.id)[0].raw_content == MINIMAL_CLAUSE

    def test_raw_content_omitted_by_default(self, store, upload_archive, make_orchestrator):
        run = upload_archive({"NCC/xml/A1G1.xml": MINIMAL_CLAUSE})
        make_orchestrator().run_to_completion(run.id)
        assert store.list_xml_objects(run.id)[0].raw_content is None

    def test_result_carries_parser_identity(self, upload_archive, make_orchestrator):
        run = upload_archive({"NCC/xml/A1G1.xml": MINIMAL_CLAUSE})
        orchestrator = make_orchestrator(parser_version="ncc:9", tenant_id="t-1")
        result = orchestrator.run_to_completion(run.id)
        assert (result.parser_version, result.tenant_id) == ("ncc:9", "t-1")
        skipped = orchestrator.run_to_completion(run.id)
        assert skipped.skipped is True
        assert (skipped.parser_version, skipped.tenant_id) == ("ncc:9", "t-1")


class TestBlockOrdinals:
    NESTED = (
        "<clause><sptc>B1</sptc><title>Multi</title><p>Intro.</p>"
        "<subclause><num>1</num><p>First.</p><ol><li>One</li><li>Two</li></ol>"
        "<subclause><num>a</num><p>Deep.</p><note>Careful.</note></subclause>"
        "</subclause>"
        "<subclause><num>2</num><table><row><entry>x</entry></row></table>"
        "<p>Last.</p></subclause></clause>"
    )

    def test_nested_subclauses_give_gapless_ordinals(
        self, store, upload_archive, make_orchestrator
    ):
        run = upload_archive(
            {"NCC/xml/B1.xml": self.NESTED, "NCC/xml/B2.xml": clause_xml("B2")}
        )
        make_orchestrator(batch_size=1).run_to_completion(run.id)

        documents = {d.basename: d for d in store.list_documents(run.id)}
        nested = store.list_blocks(documents["B1.xml"].id)
        assert [b.ordinal for b in nested] == list(range(8))
        assert [(b.block_type, b.text) for b in nested] == [
            (BlockType.HEADING, "Multi"),
            (BlockType.PARAGRAPH, "Intro."),
            (BlockType.PARAGRAPH, "First."),
            (BlockType.LIST, "One\nTwo"),
            (BlockType.PARAGRAPH, "Deep."),
            (BlockType.NOTE, "Note: Careful."),
            (BlockType.TABLE, "x"),
            (BlockType.PARAGRAPH, "Last."),
        ]

        simple = store.list_blocks(documents["B2.xml"].id)
        assert [b.ordinal for b in simple] == list(range(len(simple)))

        b1 = documents["B1.xml"].id
        nodes = [n for n in store.list_nodes(run.id) if n.document_id == b1]
        assert [(n.path, n.depth) for n in nodes] == [
            ("/B1", 0),
            ("/B1/1", 1),
            ("/B1/1/a", 2),
            ("/B1/2", 1),
        ]


class TestRunFailures:
    def test_missing_source_folder(self, store, upload_archive, make_orchestrator):
        run = upload_archive({"NCC/images/fig1.png": png_bytes()})
        with pytest.raises(ArchiveStructureError):
            make_orchestrator().run_to_completion(run.id)

        stored = store.get_run(run.id)
        assert stored.status == RunStatus.FAILED
        assert "source-document folder" in stored.error
        assert stored.failure_stage == "archive"
        assert store.count_progress(run.id) == {}

    def test_missing_source_folder_chunked(self, store, upload_archive, make_orchestrator):
        run = upload_archive({"NCC/docs/A1G1.xml": MINIMAL_CLAUSE})
        with pytest.raises(ArchiveStructureError):
            make_orchestrator().run_chunk("ed-2022", "vol1")
        assert store.get_run(run.id).status == RunStatus.FAILED
        assert store.count_progress(run.id) == {}

    def test_missing_archive_object(self, store, make_orchestrator):
        run = confirm_upload(store, "ed-2022", "vol1", "ncc/raw/missing.zip", 10)
        with pytest.raises(StorageError):
            make_orchestrator().run_to_completion(run.id)
        stored = store.get_run(run.id)
        assert stored.status == RunStatus.FAILED
        assert stored.failure_stage == "storage"

    def test_unknown_run(self, make_orchestrator):
        with pytest.raises(RunNotFoundError):
            make_orchestrator().run_to_completion("no-such-run")


class TestFileErrors:
    def test_one_bad_file_among_ten(
        self, store, upload_archive, make_orchestrator, ten_clause_archive
    ):
        run = upload_archive(ten_clause_archive)
        orchestrator = make_orchestrator()
        result = orchestrator.run_to_completion(run.id)

        assert result.status == RunStatus.DONE
        assert result.files_total == 10
        assert result.files_completed == 9
        assert result.files_errored == 1
        assert result.documents_created == 9
        assert result.nodes_created == 18

        summary = orchestrator.tracker.summary(run.id)
        assert (summary.completed, summary.error, summary.pending) == (9, 1, 0)
        [error] = orchestrator.tracker.file_errors(run.id)
        assert error.file_path == "NCC/xml/A4G1.xml"
        assert error.error_message
        assert store.get_run(run.id).status == RunStatus.DONE


class TestIdempotency:
    def test_restart_after_failure_produces_identical_rows(
        self, store, upload_archive, make_orchestrator, ten_clause_archive
    ):
        run = upload_archive(ten_clause_archive)
        orchestrator = make_orchestrator()
        orchestrator.run_to_completion(run.id)
        counts = store.count_outputs(run.id)
        node_ids = [n.id for n in store.list_nodes(run.id)]
        snapshot = _snapshot(store, run.id)

        stored = store.get_run(run.id)
        store.save_run(stored.model_copy(update={"status": RunStatus.FAILED, "error": "crash"}))
        orchestrator.run_to_completion(run.id)

        assert store.count_outputs(run.id) == counts
        assert [n.id for n in store.list_nodes(run.id)] == node_ids
        assert _snapshot(store, run.id) == snapshot
        assert store.get_run(run.id).error is None

    def test_done_run_is_skipped(self, store, upload_archive, make_orchestrator):
        run = upload_archive({"NCC/xml/A1G1.xml": MINIMAL_CLAUSE})
        orchestrator = make_orchestrator()
        orchestrator.run_to_completion(run.id)
        again = orchestrator.run_to_completion(run.id)
        assert again.skipped is True
        assert again.status == RunStatus.DONE
        assert store.count_outputs(run.id)["nodes"] == 2

    def test_redelivery_mid_run_purges_partial_outputs(
        self, store, upload_archive, make_orchestrator, ten_clause_archive
    ):
        run = upload_archive(ten_clause_archive)
        make_orchestrator(batch_size=3).run_chunk("ed-2022", "vol1")
        assert store.get_run(run.id).status == RunStatus.PARTIAL

        result = make_orchestrator().run_to_completion(run.id)
        assert result.files_completed == 9
        assert store.count_outputs(run.id)["documents"] == 9
        assert store.count_outputs(run.id)["progress"] == 10


class TestChunkedRuns:
    @pytest.mark.parametrize("batch_size", [1, 2, 3])
    def test_chunked_equals_single_pass(
        self, store, upload_archive, make_orchestrator, ten_clause_archive, batch_size
    ):
        single = upload_archive(ten_clause_archive, edition_id="ed-single")
        make_orchestrator().run_to_completion(single.id)

        chunked = upload_archive(ten_clause_archive, edition_id="ed-chunked")
        results = _drain_chunks(make_orchestrator(batch_size=batch_size), "ed-chunked")

        assert {r.run_id for r in results} == {chunked.id}
        assert _snapshot(store, chunked.id) == _snapshot(store, single.id)

    def test_partial_reuses_same_run(self, store, upload_archive, make_orchestrator, ten_clause_archive):
        run = upload_archive(ten_clause_archive)
        orchestrator = make_orchestrator(batch_size=3)

        first = orchestrator.run_chunk("ed-2022", "vol1")
        assert first.run_id == run.id
        assert first.status == RunStatus.PARTIAL
        assert first.files_processed == 3
        assert first.files_total == 10
        assert store.get_run(run.id).status == RunStatus.PARTIAL

        second = orchestrator.run_chunk("ed-2022", "vol1")
        assert second.run_id == run.id
        assert second.files_processed == 6
        assert len(store.list_runs("ed-2022")) == 1

    def test_completeness_holds_after_every_chunk(
        self, store, upload_archive, make_orchestrator, ten_clause_archive
    ):
        run = upload_archive(ten_clause_archive)
        orchestrator = make_orchestrator(batch_size=4)
        statuses = []
        for _ in range(10):
            result = orchestrator.run_chunk("ed-2022", "vol1")
            statuses.append(result.status)
            summary = orchestrator.tracker.summary(run.id)
            assert summary.total == 10
            assert summary.processed + summary.pending + summary.error == summary.total
            assert result.files_total == 10
            if result.status == RunStatus.DONE:
                break
        assert statuses == [RunStatus.PARTIAL, RunStatus.PARTIAL, RunStatus.DONE]

    def test_sort_order_unique_across_chunks(
        self, store, upload_archive, make_orchestrator, ten_clause_archive
    ):
        run = upload_archive(ten_clause_archive)
        _drain_chunks(make_orchestrator(batch_size=2), "ed-2022")
        orders = [n.sort_order for n in store.list_nodes(run.id)]
        assert orders == list(range(len(orders)))

    def test_time_budget_stops_batch(self, store, upload_archive, make_orchestrator, ten_clause_archive):
        run = upload_archive(ten_clause_archive)
        orchestrator = make_orchestrator(
            clock=FakeClock(), batch_size=5, time_budget_seconds=2.5
        )
        result = orchestrator.run_chunk("ed-2022", "vol1")

        assert result.status == RunStatus.PARTIAL
        assert result.stop_reason == StopReason.TIME_BUDGET
        assert result.files_processed == 2
        summary = orchestrator.tracker.summary(run.id)
        assert summary.pending == 8
        assert summary.processing == 0

    def test_stale_processing_row_is_retried(
        self, store, upload_archive, make_orchestrator, ten_clause_archive
    ):
        run = upload_archive(ten_clause_archive)
        first = make_orchestrator(batch_size=3)
        first.run_chunk("ed-2022", "vol1")
        stale = first.tracker.select_pending(run.id, limit=1)[0]
        first.tracker.mark_processing(stale)

        finisher = make_orchestrator(batch_size=20)
        result = finisher.run_chunk("ed-2022", "vol1")

        assert result.status == RunStatus.DONE
        assert store.list_progress(run.id, status=FileStatus.PROCESSING) == []
        summary = finisher.tracker.summary(run.id)
        assert (summary.completed, summary.error) == (9, 1)

    def test_lease_without_upload(self, make_orchestrator):
        with pytest.raises(RunNotFoundError):
            make_orchestrator().run_chunk("ed-none", "vol1")

    def test_lease_with_explicit_key(self, store, make_orchestrator):
        orchestrator = make_orchestrator()
        handle = orchestrator.lease_job("ed-9", "vol1", archive_key="ncc/raw/x.zip")
        assert handle.created is True
        assert handle.run.status == RunStatus.RUNNING
        again = orchestrator.lease_job("ed-9", "vol1")
        assert again.created is False
        assert again.run_id == handle.run_id


class TestReferences:
    FILES = {
        "NCC/xml/A1G1.xml": clause_xml(
            "A1G1",
            body=(
                '<p>See <xref href="A2G1.xml">A2G1</xref> and '
                '<xref href="../other/Z9G9.xml#x">Z9G9</xref>.</p>'
            ),
        ),
        "NCC/xml/A2G1.xml": clause_xml(
            "A2G1", body='<p>Back to <xref href="A1G1.xml">A1G1</xref>.</p>'
        ),
    }

    def _by_target(self, store, run_id):
        return {r.target_basename: r for r in store.list_references(run_id)}

    def test_resolved_late_and_unresolved(self, store, upload_archive, make_orchestrator):
        run = upload_archive(self.FILES)
        _drain_chunks(make_orchestrator(batch_size=1), "ed-2022")

        docs = {d.basename: d for d in store.list_documents(run.id)}
        refs = self._by_target(store, run.id)
        assert refs["A2G1.xml"].source_document_id == docs["A1G1.xml"].id
        assert refs["A2G1.xml"].target_document_id == docs["A2G1.xml"].id
        assert refs["A1G1.xml"].target_document_id == docs["A1G1.xml"].id
        assert refs["Z9G9.xml"].target_document_id is None

    def test_reference_attributed_to_block(self, store, upload_archive, make_orchestrator):
        run = upload_archive(self.FILES)
        make_orchestrator().run_to_completion(run.id)

        doc = next(d for d in store.list_documents(run.id) if d.basename == "A1G1.xml")
        paragraph = store.list_blocks(doc.id)[1]
        refs = self._by_target(store, run.id)
        assert refs["A2G1.xml"].source_block_id == paragraph.id


class TestAssets:
    def test_image_placeholder_gets_placement(self, store, object_store, upload_archive, make_orchestrator):
        run = upload_archive(
            {
                "NCC/xml/A1G1.xml": clause_xml(
                    "A1G1",
                    body='<fig><title>Figure 1</title><image href="../images/fig1.png"/></fig>',
                ),
                "NCC/images/fig1.png": png_bytes(),
            }
        )
        result = make_orchestrator().run_to_completion(run.id)
        assert result.assets_uploaded == 1

        [asset] = store.list_assets(run.id)
        assert asset.storage_key == "ncc/ed-2022/vol1/assets/fig1.png"
        assert object_store.exists(asset.storage_key)

        [placement] = store.list_placements(run.id)
        assert placement.asset_id == asset.id
        assert placement.caption == "Figure 1"
        image_block = next(
            b for b in store.list_blocks(placement.document_id) if b.block_type == BlockType.IMAGE
        )
        assert placement.block_id == image_block.id
        assert image_block.payload["asset_id"] == asset.id

    def test_assets_reloaded_between_chunks(self, store, upload_archive, make_orchestrator):
        files = {
            "NCC/xml/A1G1.xml": MINIMAL_CLAUSE,
            "NCC/xml/A2G1.xml": clause_xml("A2G1", body='<p>Fig <image href="fig1.png"/></p>'),
            "NCC/images/fig1.png": png_bytes(),
        }
        run = upload_archive(files)
        _drain_chunks(make_orchestrator(batch_size=1), "ed-2022")
        assert len(store.list_placements(run.id)) == 1
        assert len(store.list_assets(run.id)) == 1


class TestFinalize:
    def test_edition_moves_to_parsed(self, store, upload_archive, make_orchestrator, ten_clause_archive):
        run = upload_archive(ten_clause_archive)
        assert store.get_edition("ed-2022").status == EditionStatus.UPLOADED
        make_orchestrator().run_to_completion(run.id)

        edition = store.get_edition("ed-2022")
        assert edition.status == EditionStatus.PARSED
        assert edition.node_count == 18
        assert edition.document_count == 9

    def test_edition_never_moves_backwards(self, store, upload_archive, make_orchestrator):
        store.save_edition(Edition(id="ed-2022", status=EditionStatus.PUBLISHED))
        run = upload_archive({"NCC/xml/A1G1.xml": MINIMAL_CLAUSE})
        make_orchestrator().run_to_completion(run.id)
        assert store.get_edition("ed-2022").status == EditionStatus.PUBLISHED

    def test_purge_run_outputs(self, store, upload_archive, make_orchestrator):
        run = upload_archive({"NCC/xml/A1G1.xml": MINIMAL_CLAUSE})
        orchestrator = make_orchestrator()
        orchestrator.run_to_completion(run.id)

        deleted = orchestrator.purge_run_outputs(run.id)
        assert deleted["nodes"] == 2
        assert deleted["documents"] == 1
        assert "progress" not in deleted
        counts = store.count_outputs(run.id)
        assert counts["progress"] == 1
        assert sum(v for k, v in counts.items() if k != "progress") == 0
