# =============================================================================
# Retrieval Engine — Tiered Search with Graceful Degradation
# =============================================================================
#
# Executes a QueryIntent and returns a ranked, size-bounded list of
# SearchResults. Tiers are tried in order; the first one that answers
# wins outright (results are never merged across tiers):
#
#   1. SemanticSearchTier — semantic similarity on the description field
#                           plus hard filters. Zero hits → next tier.
#   2. KeywordSearchTier  — fuzzy multi-field full-text plus hard filters.
#                           Zero hits is a valid, final answer.
#   3. StoreScanTier      — fetch records from the record store and apply
#                           the same predicates in-process; score 1.0.
#   4. empty              — every tier failed; empty evidence is valid.
#
# DESIGN DECISION: One failure signal.
# Tiers raise BackendUnavailableError when their backend fails and return
# None when they do not apply (disabled, zero semantic hits). The
# FallbackRetriever composite is the only place that decides to advance,
# so the call sites never repeat try/except chains.
#
# DESIGN DECISION: Semantic search is skipped for count/summary questions.
# Those need an exhaustive total of filter-matching records, which a
# similarity query does not report reliably. The keyword tier's
# filter-only query does.
#
# DESIGN DECISION: Filters mean the same thing on every tier.
# build_structured_query() and matches_intent() translate the same intent:
#   - status / loan_type: exact, case-sensitive (controlled vocabularies)
#   - amount / risk bounds: inclusive on both ends
#   - customer_name: case-insensitive containment
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol

from pydantic import ValidationError

from loan_rag.agents.interpreter import QueryIntent
from loan_rag.config import Settings, settings
from loan_rag.exceptions import BackendUnavailableError
from loan_rag.models.records import LoanRecord
from loan_rag.services.record_store import RecordStore
from loan_rag.services.search_index import (
    SearchIndex,
    SearchResponse,
    StructuredQuery,
    parse_boosted_fields,
)

logger = logging.getLogger(__name__)

HIGHLIGHT_FIELDS = ("customerName", "loanType", "purpose", "status")

# Intent kinds that need exact totals rather than similarity ranking.
_EXHAUSTIVE_KINDS = {"count", "summary"}


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class SearchResult:
    """
    A loan record plus its relevance score.

    Scores are only comparable within one result set.
    """

    record: LoanRecord
    score: float
    highlights: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class RetrievalOutcome:
    """Results from one tier, the total number of matches, and the tier name."""

    results: list[SearchResult]
    total: int
    tier: str


# ---------------------------------------------------------------------------
# Intent Translation
# ---------------------------------------------------------------------------


def matches_intent(record: LoanRecord, intent: QueryIntent) -> bool:
    """In-process predicate equivalent to the index filters."""
    status = intent.filters.get("status")
    if status is not None and record.status != status:
        return False
    loan_type = intent.filters.get("loan_type")
    if loan_type is not None and record.loan_type != loan_type:
        return False

    params = intent.parameters
    min_amount = params.get("min_amount")
    if min_amount is not None and record.amount < Decimal(str(min_amount)):
        return False
    max_amount = params.get("max_amount")
    if max_amount is not None and record.amount > Decimal(str(max_amount)):
        return False

    customer_name = params.get("customer_name")
    if customer_name and customer_name.lower() not in record.customer_name.lower():
        return False

    min_risk = params.get("min_risk_score")
    max_risk = params.get("max_risk_score")
    if min_risk is not None or max_risk is not None:
        if record.risk_score is None:
            return False
        if min_risk is not None and record.risk_score < min_risk:
            return False
        if max_risk is not None and record.risk_score > max_risk:
            return False
    return True


def build_structured_query(
    intent: QueryIntent,
    raw_query: str,
    limit: int,
    *,
    text_fields: dict[str, float] | None = None,
    semantic_field: str | None = None,
    highlight: bool = True,
) -> StructuredQuery:
    """Translate an intent plus the raw question into a StructuredQuery."""
    terms: dict[str, str] = {}
    if "status" in intent.filters:
        terms["status"] = intent.filters["status"]
    if "loan_type" in intent.filters:
        terms["loanType"] = intent.filters["loan_type"]

    params = intent.parameters
    ranges: dict[str, tuple[float | None, float | None]] = {}
    if params.get("min_amount") is not None or params.get("max_amount") is not None:
        ranges["amount"] = (params.get("min_amount"), params.get("max_amount"))
    if (
        params.get("min_risk_score") is not None
        or params.get("max_risk_score") is not None
    ):
        ranges["riskScore"] = (params.get("min_risk_score"), params.get("max_risk_score"))

    matches: dict[str, str] = {}
    if params.get("customer_name"):
        matches["customerName"] = params["customer_name"]

    return StructuredQuery(
        terms=terms,
        ranges=ranges,
        matches=matches,
        text=raw_query.strip() or None,
        text_fields=text_fields or {},
        semantic_field=semantic_field,
        size=limit,
        highlight_fields=HIGHLIGHT_FIELDS if highlight else (),
    )


def _hits_to_results(response: SearchResponse) -> list[SearchResult]:
    results: list[SearchResult] = []
    for hit in response.hits:
        try:
            record = LoanRecord.from_document(hit.source, hit.id)
        except (ValidationError, KeyError) as e:
            logger.warning("Skipping malformed document %s: %s", hit.id, e)
            continue
        results.append(SearchResult(record=record, score=hit.score, highlights=hit.highlight))
    return results


# ---------------------------------------------------------------------------
# Tiers
# ---------------------------------------------------------------------------


class RetrievalTier(Protocol):
    """
    One retrieval strategy.

    Returns None when the tier does not apply; raises
    BackendUnavailableError when its backend fails.
    """

    name: str

    async def search(
        self, intent: QueryIntent, raw_query: str, limit: int,
    ) -> RetrievalOutcome | None:
        ...


class SemanticSearchTier:
    """Semantic similarity on one `semantic_text` field, plus hard filters."""

    name = "semantic"

    def __init__(self, index: SearchIndex, semantic_field: str) -> None:
        self._index = index
        self._semantic_field = semantic_field

    async def search(
        self, intent: QueryIntent, raw_query: str, limit: int,
    ) -> RetrievalOutcome | None:
        if not raw_query.strip() or intent.kind in _EXHAUSTIVE_KINDS:
            return None

        query = build_structured_query(
            intent, raw_query, limit, semantic_field=self._semantic_field,
        )
        response = await self._index.query(query)
        if not response.hits:
            logger.info("Semantic search returned no hits, falling through")
            return None
        return RetrievalOutcome(
            results=_hits_to_results(response),
            total=response.total,
            tier=self.name,
        )


class KeywordSearchTier:
    """Fuzzy multi-field full-text relevance, plus hard filters."""

    name = "keyword"

    def __init__(self, index: SearchIndex, text_fields: dict[str, float]) -> None:
        self._index = index
        self._text_fields = text_fields

    async def search(
        self, intent: QueryIntent, raw_query: str, limit: int,
    ) -> RetrievalOutcome | None:
        query = build_structured_query(
            intent, raw_query, limit, text_fields=self._text_fields,
        )
        response = await self._index.query(query)
        return RetrievalOutcome(
            results=_hits_to_results(response),
            total=response.total,
            tier=self.name,
        )


class StoreScanTier:
    """
    Linear scan over the record store.

    No ranking signal exists at this tier, so every survivor scores 1.0
    and the engine's tie-break (newest first) orders them.
    """

    name = "store_scan"

    def __init__(self, store: RecordStore, scan_limit: int | None = None) -> None:
        self._store = store
        self._scan_limit = scan_limit or settings.record_scan_limit

    async def search(
        self, intent: QueryIntent, raw_query: str, limit: int,
    ) -> RetrievalOutcome | None:
        records = await self._store.get_all(self._scan_limit)
        survivors = [
            SearchResult(record=record, score=1.0)
            for record in records
            if matches_intent(record, intent)
        ]
        return RetrievalOutcome(results=survivors, total=len(survivors), tier=self.name)


class FallbackRetriever:
    """Ordered composite: the first tier that answers wins."""

    def __init__(self, tiers: list[RetrievalTier]) -> None:
        self._tiers = tiers

    @property
    def tier_names(self) -> list[str]:
        return [tier.name for tier in self._tiers]

    async def search(
        self, intent: QueryIntent, raw_query: str, limit: int,
    ) -> RetrievalOutcome:
        for tier in self._tiers:
            try:
                outcome = await tier.search(intent, raw_query, limit)
            except BackendUnavailableError as e:
                logger.warning("Retrieval tier '%s' unavailable: %s", tier.name, e)
                continue
            except Exception:
                logger.exception("Retrieval tier '%s' failed unexpectedly", tier.name)
                continue
            if outcome is not None:
                return outcome

        logger.warning("All retrieval tiers failed, returning no evidence")
        return RetrievalOutcome(results=[], total=0, tier="empty")


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _rank_key(result: SearchResult) -> tuple[float, float]:
    return (-result.score, -result.record.created_at.timestamp())


class RetrievalEngine:
    """
    Public retrieval entry point.

    Guarantees for every call:
      - len(results) <= min(limit, max_results)
      - sorted by score desc, then created_at desc
      - never raises; a total outage yields an empty list
    """

    def __init__(
        self,
        retriever: FallbackRetriever,
        max_results: int | None = None,
        default_limit: int | None = None,
    ) -> None:
        self._retriever = retriever
        self._max_results = max_results or settings.retrieval_max_results
        self._default_limit = default_limit or settings.retrieval_default_limit

    async def retrieve_with_total(
        self, intent: QueryIntent, raw_query: str, limit: int | None = None,
    ) -> RetrievalOutcome:
        """Retrieve and also report the total match count and the tier used."""
        limit = self._default_limit if limit is None else limit
        cap = min(limit, self._max_results)
        if cap <= 0:
            return RetrievalOutcome(results=[], total=0, tier="empty")

        outcome = await self._retriever.search(intent, raw_query, cap)
        ranked = sorted(outcome.results, key=_rank_key)[:cap]

        logger.info(
            "Retrieved %d of %d matching records via %s tier",
            len(ranked), outcome.total, outcome.tier,
        )
        return RetrievalOutcome(
            results=ranked,
            total=max(outcome.total, len(ranked)),
            tier=outcome.tier,
        )

    async def retrieve(
        self, intent: QueryIntent, raw_query: str, limit: int | None = None,
    ) -> list[SearchResult]:
        outcome = await self.retrieve_with_total(intent, raw_query, limit)
        return outcome.results


def build_retrieval_engine(
    store: RecordStore,
    index: SearchIndex | None = None,
    config: Settings | None = None,
) -> RetrievalEngine:
    """Assemble the tier chain from configuration."""
    config = config or settings
    tiers: list[RetrievalTier] = []
    if index is not None:
        if config.semantic_search_enabled:
            tiers.append(SemanticSearchTier(index, config.semantic_field))
        tiers.append(KeywordSearchTier(index, parse_boosted_fields(config.search_fields)))
    tiers.append(StoreScanTier(store, config.record_scan_limit))

    logger.info("Retrieval tiers: %s", [tier.name for tier in tiers])
    return RetrievalEngine(
        FallbackRetriever(tiers),
        max_results=config.retrieval_max_results,
        default_limit=config.retrieval_default_limit,
    )
