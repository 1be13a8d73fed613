# =============================================================================
# Search Index — Backend-Neutral Queries, Elasticsearch Implementation
# =============================================================================
#
# The retrieval engine speaks StructuredQuery, a small vocabulary that any
# search backend able to serve this pipeline must support:
#   - exact-term filters           (status, loanType)
#   - inclusive numeric ranges     (amount, riskScore)
#   - analysed match filters       (customerName)
#   - multi-field fuzzy full-text  (per-field boosts, typo tolerance)
#   - optional semantic similarity (one `semantic_text` field)
# Filters combine with logical AND; text relevance is OR-scored on top.
#
# DESIGN DECISION: Protocol (structural typing) over ABC.
# Same pattern as the record store and the LLM providers. Tests plug in
# lightweight fakes without inheriting from anything.
#
# DESIGN DECISION: Translation is a pure function.
# to_elasticsearch_body() has no I/O, so the query DSL the pipeline emits
# is unit-tested without a cluster.
#
# ARCHITECTURE:
#   SearchIndex (Protocol)
#   └── ElasticsearchSearchIndex  — AsyncElasticsearch client
#       ├── query()              — search, hits normalised to SearchHit
#       ├── upsert()/bulk_upsert()
#       ├── ping()
#       └── ensure_index()       — mapping bootstrap
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from elasticsearch import (
    ApiError,
    AsyncElasticsearch,
    NotFoundError,
    TransportError,
)
from elasticsearch.helpers import async_bulk

from loan_rag.config import Settings, settings
from loan_rag.exceptions import BackendUnavailableError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class StructuredQuery:
    """
    Backend-neutral search request.

    ranges maps a field to inclusive (gte, lte) bounds; either bound may
    be None. text_fields maps a field to its boost weight.
    """

    terms: dict[str, Any] = field(default_factory=dict)
    ranges: dict[str, tuple[float | None, float | None]] = field(default_factory=dict)
    matches: dict[str, str] = field(default_factory=dict)
    text: str | None = None
    text_fields: dict[str, float] = field(default_factory=dict)
    phrase_fields: tuple[str, ...] = ("customerName", "purpose")
    fuzzy: bool = True
    semantic_field: str | None = None
    size: int = 10
    highlight_fields: tuple[str, ...] = ()


@dataclass
class SearchHit:
    """One hit: the stored document plus its relevance score."""

    id: str
    source: dict[str, Any]
    score: float
    highlight: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class SearchResponse:
    """Hits for one query plus the total number of matching documents."""

    hits: list[SearchHit]
    total: int


# ---------------------------------------------------------------------------
# Query Translation
# ---------------------------------------------------------------------------


def parse_boosted_fields(fields: list[str]) -> dict[str, float]:
    """Parse Elasticsearch style "field^boost" strings into a boost map."""
    parsed: dict[str, float] = {}
    for spec in fields:
        name, _, boost = spec.partition("^")
        parsed[name] = float(boost) if boost else 1.0
    return parsed


def _format_field(name: str, boost: float) -> str:
    return name if boost == 1.0 else f"{name}^{boost:g}"


def to_elasticsearch_body(query: StructuredQuery) -> dict[str, Any]:
    """
    Translate a StructuredQuery into an Elasticsearch search body.

    Filters go in `bool.filter` (no scoring, exact AND semantics). Free
    text goes in `bool.should` so it only ranks what the filters admit; a
    `match_all` in `must` keeps `should` optional when nothing else is
    required. Semantic similarity, when requested, is the `must` clause.
    """
    filters: list[dict[str, Any]] = []
    for name, value in query.terms.items():
        filters.append({"term": {name: value}})
    for name, (gte, lte) in query.ranges.items():
        bounds: dict[str, float] = {}
        if gte is not None:
            bounds["gte"] = gte
        if lte is not None:
            bounds["lte"] = lte
        if bounds:
            filters.append({"range": {name: bounds}})
    for name, value in query.matches.items():
        filters.append({"match": {name: {"query": value, "operator": "and"}}})

    must: list[dict[str, Any]] = []
    should: list[dict[str, Any]] = []

    if query.semantic_field and query.text:
        must.append({
            "semantic": {"field": query.semantic_field, "query": query.text},
        })
    elif query.text and query.text_fields:
        best_fields: dict[str, Any] = {
            "query": query.text,
            "fields": [
                _format_field(name, boost)
                for name, boost in query.text_fields.items()
            ],
            "type": "best_fields",
            "lenient": True,
        }
        if query.fuzzy:
            best_fields["fuzziness"] = "AUTO"
        should.append({"multi_match": best_fields})
        if query.phrase_fields:
            should.append({
                "multi_match": {
                    "query": query.text,
                    "fields": list(query.phrase_fields),
                    "type": "phrase_prefix",
                },
            })

    if not must and (should or not filters):
        must.append({"match_all": {}})

    bool_query: dict[str, Any] = {"must": must}
    if filters:
        bool_query["filter"] = filters
    if should:
        bool_query["should"] = should

    body: dict[str, Any] = {
        "query": {"bool": bool_query},
        "size": query.size,
        "sort": [
            {"_score": {"order": "desc"}},
            {"createdAt": {"order": "desc", "unmapped_type": "date"}},
        ],
        "track_total_hits": True,
    }
    if query.highlight_fields:
        body["highlight"] = {
            "fields": {
                name: {"number_of_fragments": 2}
                for name in query.highlight_fields
            },
        }
    return body


def loan_index_mapping(semantic_field: str | None) -> dict[str, Any]:
    """Index mapping for loan application documents."""
    properties: dict[str, Any] = {
        "id": {"type": "keyword"},
        "applicationId": {"type": "keyword"},
        "customerId": {"type": "keyword"},
        "customerName": {
            "type": "text",
            "fields": {"keyword": {"type": "keyword"}},
        },
        "customerEmail": {"type": "keyword"},
        "loanType": {"type": "keyword"},
        "status": {"type": "keyword"},
        "amount": {"type": "double"},
        "term": {"type": "integer"},
        "interestRate": {"type": "float"},
        "riskScore": {"type": "integer"},
        "riskLevel": {"type": "keyword"},
        "purpose": {"type": "text"},
        "description": {"type": "text"},
        "notes": {"type": "text"},
        "createdAt": {"type": "date"},
        "updatedAt": {"type": "date"},
    }
    if semantic_field:
        properties[semantic_field] = {"type": "semantic_text"}
    return {"properties": properties}


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class SearchIndex(Protocol):
    """Full-text / semantic search backend for loan application documents."""

    async def query(self, query: StructuredQuery) -> SearchResponse:
        """Run a structured query. Raises BackendUnavailableError on failure."""
        ...

    async def upsert(self, doc_id: str, document: dict[str, Any]) -> None:
        ...

    async def bulk_upsert(self, documents: list[dict[str, Any]]) -> int:
        """Index many documents keyed by their "id". Returns the success count."""
        ...

    async def ping(self) -> bool:
        ...


# ---------------------------------------------------------------------------
# Implementation: Elasticsearch
# ---------------------------------------------------------------------------


def create_elasticsearch_client(config: Settings | None = None) -> AsyncElasticsearch:
    """Build an AsyncElasticsearch client from settings."""
    config = config or settings
    kwargs: dict[str, Any] = {
        "hosts": [config.elasticsearch_url],
        "request_timeout": config.search_timeout_seconds,
    }
    if config.elasticsearch_api_key:
        kwargs["api_key"] = config.elasticsearch_api_key
    elif config.elasticsearch_username and config.elasticsearch_password:
        kwargs["basic_auth"] = (
            config.elasticsearch_username,
            config.elasticsearch_password,
        )
    return AsyncElasticsearch(**kwargs)


class ElasticsearchSearchIndex:
    """
    Elasticsearch-backed search index.

    Every client error (connection refused, timeout, 4xx/5xx) is re-raised
    as BackendUnavailableError so callers deal with one failure signal.
    """

    def __init__(
        self,
        client: AsyncElasticsearch,
        index_name: str | None = None,
        semantic_field: str | None = None,
    ) -> None:
        self._client = client
        self._index = index_name or settings.loan_index_name
        self._semantic_field = semantic_field

    @property
    def index_name(self) -> str:
        return self._index

    async def query(self, query: StructuredQuery) -> SearchResponse:
        body = to_elasticsearch_body(query)
        logger.debug("Elasticsearch query on %s: %s", self._index, body)
        try:
            response = await self._client.search(index=self._index, **body)
        except (ApiError, TransportError) as e:
            raise BackendUnavailableError("elasticsearch", str(e)) from e

        hits_section = response["hits"]
        total = hits_section.get("total", 0)
        if isinstance(total, dict):
            total = total.get("value", 0)

        hits = [
            SearchHit(
                id=str(hit["_id"]),
                source=hit.get("_source") or {},
                score=float(hit.get("_score") or 0.0),
                highlight=hit.get("highlight") or {},
            )
            for hit in hits_section.get("hits", [])
        ]
        return SearchResponse(hits=hits, total=int(total))

    async def get(self, doc_id: str) -> dict[str, Any] | None:
        """Fetch one document by id, or None if it does not exist."""
        try:
            response = await self._client.get(index=self._index, id=doc_id)
        except NotFoundError:
            return None
        except (ApiError, TransportError) as e:
            raise BackendUnavailableError("elasticsearch", str(e)) from e
        return response["_source"]

    async def upsert(self, doc_id: str, document: dict[str, Any]) -> None:
        try:
            await self._client.index(
                index=self._index,
                id=doc_id,
                document=document,
                refresh="wait_for",
            )
        except (ApiError, TransportError) as e:
            raise BackendUnavailableError("elasticsearch", str(e)) from e

    async def bulk_upsert(self, documents: list[dict[str, Any]]) -> int:
        if not documents:
            return 0
        actions = (
            {
                "_op_type": "index",
                "_index": self._index,
                "_id": str(doc["id"]),
                "_source": doc,
            }
            for doc in documents
        )
        try:
            success, errors = await async_bulk(
                self._client, actions, raise_on_error=False, refresh="wait_for",
            )
        except (ApiError, TransportError) as e:
            raise BackendUnavailableError("elasticsearch", str(e)) from e

        if errors:
            logger.warning(
                "Bulk indexing into %s: %d documents failed",
                self._index, len(errors),
            )
        logger.info("Bulk indexed %d documents into %s", success, self._index)
        return success

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except (ApiError, TransportError) as e:
            logger.warning("Elasticsearch ping failed: %s", e)
            return False

    async def ensure_index(self) -> bool:
        """Create the index with the loan mapping if missing. True if created."""
        try:
            if await self._client.indices.exists(index=self._index):
                return False
            await self._client.indices.create(
                index=self._index,
                mappings=loan_index_mapping(self._semantic_field),
            )
        except (ApiError, TransportError) as e:
            raise BackendUnavailableError("elasticsearch", str(e)) from e
        logger.info("Created index %s", self._index)
        return True
