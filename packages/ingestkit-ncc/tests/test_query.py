"""Tests for ingestkit_ncc.query -- read-only views."""

from __future__ import annotations

import pytest

from conftest import clause_xml
from ingestkit_ncc.errors import RunNotFoundError
from ingestkit_ncc.models import RunStatus
from ingestkit_ncc.query import (
    document_graph,
    file_errors,
    get_run_status,
    list_nodes,
    list_runs,
    progress_summary,
)


@pytest.fixture
def finished_run(upload_archive, make_orchestrator, ten_clause_archive):
    files = dict(ten_clause_archive)
    files["NCC/xml/A0G1.xml"] = clause_xml(
        "A0G1", body='<p>See <xref href="A1G1.xml">A1G1</xref>.</p>'
    )
    run = upload_archive(files)
    make_orchestrator().run_to_completion(run.id)
    return run


class TestRunViews:
    def test_get_run_status(self, store, finished_run):
        assert get_run_status(store, finished_run.id).status == RunStatus.DONE

    def test_get_run_status_unknown(self, store):
        with pytest.raises(RunNotFoundError):
            get_run_status(store, "missing")

    def test_list_runs(self, store, finished_run):
        assert [r.id for r in list_runs(store, "ed-2022")] == [finished_run.id]
        assert list_runs(store, "ed-2022", "vol9") == []


class TestLedgerViews:
    def test_progress_summary(self, store, finished_run):
        summary = progress_summary(store, finished_run.id)
        assert (summary.total, summary.completed, summary.error, summary.pending) == (10, 9, 1, 0)

    def test_file_errors(self, store, finished_run):
        assert [e.file_path for e in file_errors(store, finished_run.id)] == ["NCC/xml/A4G1.xml"]


class TestOutputViews:
    def test_list_nodes_in_sort_order(self, store, finished_run):
        nodes = list_nodes(store, finished_run.id)
        assert [n.sort_order for n in nodes] == sorted(n.sort_order for n in nodes)

    def test_document_graph(self, store, finished_run):
        doc = next(
            d for d in store.list_documents(finished_run.id) if d.basename == "A0G1.xml"
        )
        graph = document_graph(store, doc.id)
        assert graph.document == doc
        assert [b.ordinal for b in graph.blocks] == [0, 1]
        assert [r.target_basename for r in graph.references] == ["A1G1.xml"]
        assert graph.references[0].target_document_id is not None
        assert graph.placements == []

    def test_document_graph_missing(self, store):
        assert document_graph(store, "nope") is None
