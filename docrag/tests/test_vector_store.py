"""Tests for the in-memory vector store and filter helpers."""

import pytest

from docrag.common.vector_store import (
    InMemoryVectorStore,
    build_document_filter,
    escape_filter_value,
    parse_equality_filter,
)


def _doc(doc_id, index, vector, name="Doc"):
    return {
        "id": f"{doc_id}_{index}",
        "vector": vector,
        "text": f"{doc_id} chunk {index}",
        "metadata": {"documentId": doc_id, "documentName": name, "chunkIndex": index},
    }


@pytest.fixture
def store():
    s = InMemoryVectorStore()
    s.add_documents([
        _doc("a", 0, [1.0, 0.0]),
        _doc("a", 1, [0.7, 0.7]),
        _doc("b", 0, [0.0, 1.0], name="Other"),
    ])
    return s


class TestFilterHelpers:
    def test_escape_quotes_and_backslashes(self):
        assert escape_filter_value('a"b\\c') == 'a\\"b\\\\c'

    def test_document_filter(self):
        assert build_document_filter("doc_1") == 'metadata.documentId = "doc_1"'
        assert build_document_filter(None) is None

    def test_parse_round_trips_escaped_value(self):
        raw = 'we"ird\\id'
        assert parse_equality_filter(build_document_filter(raw)) == ("documentId", raw)

    def test_parse_rejects_other_expressions(self):
        with pytest.raises(ValueError):
            parse_equality_filter("metadata.documentId != 'x'")


class TestInMemoryVectorStore:
    def test_search_orders_by_distance(self, store):
        hits = store.search([1.0, 0.0], limit=3)
        assert [h["id"] for h in hits] == ["a_0", "a_1", "b_0"]
        assert hits[0]["_distance"] == pytest.approx(0.0)
        assert hits[0]["_distance"] <= hits[1]["_distance"] <= hits[2]["_distance"]

    def test_search_respects_limit(self, store):
        assert len(store.search([1.0, 0.0], limit=1)) == 1

    def test_search_with_filter(self, store):
        hits = store.search([1.0, 0.0], limit=10, filter=build_document_filter("b"))
        assert [h["metadata"]["documentId"] for h in hits] == ["b"]

    def test_search_empty_store(self):
        assert InMemoryVectorStore().search([1.0, 0.0]) == []

    def test_add_requires_vector(self):
        with pytest.raises(ValueError):
            InMemoryVectorStore().add_documents([{"id": "x"}])

    def test_list_and_delete(self, store):
        assert store.list_documents() == ["a", "b"]
        store.delete_document("a")
        assert store.list_documents() == ["b"]
        assert len(store) == 1

    def test_summaries(self, store):
        summaries = {s.document_id: s for s in store.get_document_summaries()}
        assert summaries["a"].chunk_count == 2
        assert summaries["b"].document_name == "Other"
