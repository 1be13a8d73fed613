# =============================================================================
# Unit Tests — Search Index
# =============================================================================
#
# The query translation is pure and tested directly. The Elasticsearch
# adapter runs against a mocked AsyncElasticsearch client.
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from elastic_transport import ApiResponseMeta, HttpHeaders
from elasticsearch import ConnectionError as ESConnectionError
from elasticsearch import NotFoundError

from loan_rag.exceptions import BackendUnavailableError
from loan_rag.services.search_index import (
    ElasticsearchSearchIndex,
    StructuredQuery,
    loan_index_mapping,
    parse_boosted_fields,
    to_elasticsearch_body,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _client() -> MagicMock:
    client = MagicMock()
    client.search = AsyncMock()
    client.index = AsyncMock()
    client.get = AsyncMock()
    client.ping = AsyncMock(return_value=True)
    client.indices.exists = AsyncMock(return_value=False)
    client.indices.create = AsyncMock()
    return client


# ---------------------------------------------------------------------------
# Test: Query Translation
# ---------------------------------------------------------------------------


class TestToElasticsearchBody:

    def test_filters_only(self):
        body = to_elasticsearch_body(StructuredQuery(
            terms={"status": "approved"},
            ranges={"amount": (50000, None)},
        ))
        bool_query = body["query"]["bool"]
        assert bool_query["filter"] == [
            {"term": {"status": "approved"}},
            {"range": {"amount": {"gte": 50000}}},
        ]
        assert bool_query["must"] == []
        assert "should" not in bool_query

    def test_empty_query_matches_everything(self):
        body = to_elasticsearch_body(StructuredQuery())
        assert body["query"]["bool"]["must"] == [{"match_all": {}}]
        assert body["track_total_hits"] is True

    def test_unbounded_range_is_dropped(self):
        body = to_elasticsearch_body(StructuredQuery(ranges={"riskScore": (None, None)}))
        assert "filter" not in body["query"]["bool"]

    def test_customer_match_requires_all_terms(self):
        body = to_elasticsearch_body(StructuredQuery(matches={"customerName": "jane doe"}))
        assert body["query"]["bool"]["filter"] == [
            {"match": {"customerName": {"query": "jane doe", "operator": "and"}}},
        ]

    def test_text_is_scored_in_should(self):
        body = to_elasticsearch_body(StructuredQuery(
            text="home renovation",
            text_fields={"customerName": 3.0, "purpose": 2.0, "description": 1.0},
            terms={"loanType": "mortgage"},
        ))
        bool_query = body["query"]["bool"]
        best, phrase = bool_query["should"]
        assert best["multi_match"]["fields"] == ["customerName^3", "purpose^2", "description"]
        assert best["multi_match"]["fuzziness"] == "AUTO"
        assert best["multi_match"]["lenient"] is True
        assert phrase["multi_match"]["type"] == "phrase_prefix"
        assert bool_query["must"] == [{"match_all": {}}]
        assert bool_query["filter"] == [{"term": {"loanType": "mortgage"}}]

    def test_fuzziness_can_be_disabled(self):
        body = to_elasticsearch_body(StructuredQuery(
            text="x", text_fields={"purpose": 1.0}, fuzzy=False,
        ))
        assert "fuzziness" not in body["query"]["bool"]["should"][0]["multi_match"]

    def test_semantic_replaces_keyword_clauses(self):
        body = to_elasticsearch_body(StructuredQuery(
            text="expanding my bakery",
            text_fields={"purpose": 1.0},
            semantic_field="description",
        ))
        bool_query = body["query"]["bool"]
        assert bool_query["must"] == [
            {"semantic": {"field": "description", "query": "expanding my bakery"}},
        ]
        assert "should" not in bool_query

    def test_sort_and_highlight(self):
        body = to_elasticsearch_body(StructuredQuery(size=7, highlight_fields=("purpose",)))
        assert body["size"] == 7
        assert body["sort"][0] == {"_score": {"order": "desc"}}
        assert body["sort"][1]["createdAt"]["order"] == "desc"
        assert body["highlight"]["fields"] == {"purpose": {"number_of_fragments": 2}}


class TestHelpers:

    def test_parse_boosted_fields(self):
        assert parse_boosted_fields(["customerName^3", "purpose^1.5", "notes"]) == {
            "customerName": 3.0,
            "purpose": 1.5,
            "notes": 1.0,
        }

    def test_mapping_with_semantic_field(self):
        properties = loan_index_mapping("description")["properties"]
        assert properties["description"] == {"type": "semantic_text"}
        assert properties["status"] == {"type": "keyword"}

    def test_mapping_without_semantic_field(self):
        assert loan_index_mapping(None)["properties"]["description"] == {"type": "text"}


# ---------------------------------------------------------------------------
# Test: Elasticsearch Adapter
# ---------------------------------------------------------------------------


class TestElasticsearchSearchIndex:

    def test_query_normalises_hits(self):
        client = _client()
        client.search.return_value = {
            "hits": {
                "total": {"value": 42, "relation": "eq"},
                "hits": [
                    {
                        "_id": "a1",
                        "_score": 2.5,
                        "_source": {"applicationId": "LA-1"},
                        "highlight": {"purpose": ["<em>home</em>"]},
                    },
                    {"_id": "a2", "_score": None, "_source": {"applicationId": "LA-2"}},
                ],
            },
        }
        index = ElasticsearchSearchIndex(client, "loans")
        response = _run(index.query(StructuredQuery(terms={"status": "pending"})))

        assert response.total == 42
        assert [h.id for h in response.hits] == ["a1", "a2"]
        assert response.hits[0].highlight == {"purpose": ["<em>home</em>"]}
        assert response.hits[1].score == 0.0
        assert client.search.call_args.kwargs["index"] == "loans"

    def test_connection_refused_is_backend_unavailable(self):
        client = _client()
        client.search.side_effect = ESConnectionError("refused")
        index = ElasticsearchSearchIndex(client, "loans")
        with pytest.raises(BackendUnavailableError) as exc_info:
            _run(index.query(StructuredQuery()))
        assert exc_info.value.backend == "elasticsearch"

    def test_ping_failure_is_false(self):
        client = _client()
        client.ping.side_effect = ESConnectionError("refused")
        assert _run(ElasticsearchSearchIndex(client, "loans").ping()) is False

    def test_upsert_waits_for_refresh(self):
        client = _client()
        _run(ElasticsearchSearchIndex(client, "loans").upsert("1", {"id": "1"}))
        client.index.assert_awaited_once_with(
            index="loans", id="1", document={"id": "1"}, refresh="wait_for",
        )

    def test_bulk_upsert_reports_successes(self):
        client = _client()
        index = ElasticsearchSearchIndex(client, "loans")
        documents = [{"id": "1"}, {"id": "2"}, {"id": "3"}]
        with patch(
            "loan_rag.services.search_index.async_bulk",
            new=AsyncMock(return_value=(2, [{"index": {"_id": "3"}}])),
        ) as bulk:
            assert _run(index.bulk_upsert(documents)) == 2

        actions = list(bulk.call_args.args[1])
        assert [a["_id"] for a in actions] == ["1", "2", "3"]
        assert all(a["_index"] == "loans" for a in actions)

    def test_bulk_upsert_of_nothing(self):
        client = _client()
        assert _run(ElasticsearchSearchIndex(client, "loans").bulk_upsert([])) == 0

    def test_ensure_index_creates_once(self):
        client = _client()
        index = ElasticsearchSearchIndex(client, "loans", semantic_field="description")
        assert _run(index.ensure_index()) is True
        mappings = client.indices.create.call_args.kwargs["mappings"]
        assert mappings["properties"]["description"]["type"] == "semantic_text"

        client.indices.exists.return_value = True
        assert _run(index.ensure_index()) is False
        assert client.indices.create.await_count == 1

    def test_get_missing_document_is_none(self):
        client = _client()
        client.get.side_effect = NotFoundError(
            "not found", ApiResponseMeta(404, "1.1", HttpHeaders(), 0.0, None), {},
        )
        assert _run(ElasticsearchSearchIndex(client, "loans").get("nope")) is None

    def test_get_returns_source(self):
        client = _client()
        client.get.return_value = {"_id": "a1", "_source": {"applicationId": "LA-1"}}
        assert _run(ElasticsearchSearchIndex(client, "loans").get("a1")) == {
            "applicationId": "LA-1",
        }
