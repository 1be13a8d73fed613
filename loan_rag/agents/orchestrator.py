# =============================================================================
# Chat Orchestrator — LangGraph Pipeline Assembly
# =============================================================================
#
# Top-level entry point for a chat question. Wires the pipeline stages into
# a LangGraph StateGraph:
#
#                       ┌─ simple ──▶ interpret ──▶ retrieve ──────┐
#   START ──▶ route ────┤                                          ├──▶ build_context ──▶ generate ──▶ persist ──▶ END
#                       └─ complex ─▶ broad_retrieve ──────────────┘
#
# MODES:
#   simple  — Query Interpreter → Retrieval Engine (filters) → Context →
#             Response Generator with the "lookup" prompt
#   complex — no structured filtering: the raw question plus a handful of
#             loosely matched top records go to the "analytical" prompt
#
# DESIGN DECISION: The mode gate is a named policy, not inline conditionals.
# QueryModePolicy = length threshold AND trigger word. It is a coarse
# heuristic, not a classifier; both knobs are configuration.
#
# DESIGN DECISION: Plain TypedDict state (not MessagesState).
# The state is structured data flowing through a pipeline:
# question → mode → intent → results → context → answer.
#
# DESIGN DECISION: Graph compiled once per orchestrator.
# Nodes are bound to the orchestrator's collaborators (store, retrieval
# engine, generator), so the compiled graph lives on the instance and is
# reused for every question.
#
# DESIGN DECISION: Nothing crosses this boundary as an exception.
# Retrieval and generation already absorb their own failures. Chat history
# persistence is best-effort. A last-resort handler around the graph turns
# anything unexpected into an apologetic answer.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from loan_rag.agents.context import EvidenceContext, summarize
from loan_rag.agents.generator import (
    CAPABILITY_SUMMARY,
    GenerationResult,
    ResponseGenerator,
)
from loan_rag.agents.interpreter import QueryIntent, parse
from loan_rag.agents.retriever import (
    RetrievalEngine,
    RetrievalOutcome,
    SearchResult,
    build_retrieval_engine,
)
from loan_rag.config import Settings, settings
from loan_rag.models.responses import ChatAnswer, Citation
from loan_rag.services.llm import LLMProvider, get_llm_provider
from loan_rag.services.record_store import RecordStore, build_record_store
from loan_rag.services.search_index import (
    ElasticsearchSearchIndex,
    SearchIndex,
    create_elasticsearch_client,
)

logger = logging.getLogger(__name__)

APOLOGY_TEXT = (
    "Sorry, something went wrong while answering your question. "
    "Please try again in a moment."
)


# ---------------------------------------------------------------------------
# Mode Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QueryModePolicy:
    """
    Chooses between the simple lookup and complex analytical paths.

    A question is complex only when it is at least `min_length` characters
    long AND contains one of `trigger_words` (case-insensitive substring).
    """

    trigger_words: tuple[str, ...]
    min_length: int

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> QueryModePolicy:
        config = config or settings
        return cls(
            trigger_words=tuple(w.lower() for w in config.complex_query_triggers),
            min_length=config.complex_query_min_length,
        )

    def select(self, question: str) -> str:
        text = question.strip().lower()
        if len(text) >= self.min_length and any(w in text for w in self.trigger_words):
            return "complex"
        return "simple"


# ---------------------------------------------------------------------------
# Graph State Schema
# ---------------------------------------------------------------------------


class ChatState(TypedDict, total=False):
    """
    State that flows through the graph.

    Uses total=False so nodes only need to return the keys they update.
    Holds plain Python objects; safe because no checkpointer is configured.
    """

    # --- Input (set by caller) ---
    question: str
    user_id: str

    # --- Intermediate (set by nodes) ---
    mode: str
    intent: QueryIntent
    retrieval: RetrievalOutcome
    context: EvidenceContext
    citations: list[Citation]

    # --- Output ---
    generation: GenerationResult
    persisted: bool


def build_citations(results: list[SearchResult], limit: int) -> list[Citation]:
    """Citations for the top `limit` results, numbered as in the prompt."""
    return [
        Citation(
            position=position,
            application_id=result.record.application_id,
            customer_name=result.record.customer_name,
            loan_type=result.record.loan_type,
            score=result.score,
        )
        for position, result in enumerate(results[:limit], 1)
    ]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class ChatOrchestrator:
    """Routes questions through the pipeline and returns a ChatAnswer."""

    def __init__(
        self,
        store: RecordStore,
        engine: RetrievalEngine,
        generator: ResponseGenerator,
        policy: QueryModePolicy | None = None,
        config: Settings | None = None,
    ) -> None:
        self._store = store
        self._engine = engine
        self._generator = generator
        self._config = config or settings
        self._policy = policy or QueryModePolicy.from_settings(self._config)
        self._graph = self._build_graph()

    # -------------------------------------------------------------------------
    # Node Functions
    # -------------------------------------------------------------------------
    # Each node receives the full state and returns a partial update dict.
    # -------------------------------------------------------------------------

    async def _route_node(self, state: ChatState) -> dict:
        mode = self._policy.select(state["question"])
        logger.info("Mode selected: %s (question: '%s')", mode, state["question"][:80])
        return {"mode": mode}

    async def _interpret_node(self, state: ChatState) -> dict:
        intent = parse(state["question"])
        logger.info(
            "Intent: kind=%s, constrained=%s", intent.kind, intent.has_constraints,
        )
        return {"intent": intent}

    async def _retrieve_node(self, state: ChatState) -> dict:
        outcome = await self._engine.retrieve_with_total(
            state["intent"], state["question"],
        )
        return {"retrieval": outcome}

    async def _broad_retrieve_node(self, state: ChatState) -> dict:
        # No structured filters: rank the whole corpus against the question.
        outcome = await self._engine.retrieve_with_total(
            QueryIntent(), state["question"], self._config.complex_sample_size,
        )
        return {"intent": QueryIntent(), "retrieval": outcome}

    async def _build_context_node(self, state: ChatState) -> dict:
        outcome = state["retrieval"]
        context = summarize(
            outcome.results,
            state["question"],
            total_matching=outcome.total,
            sample_size=self._config.context_sample_size,
            top_customers=self._config.context_top_customers,
        )
        citations = build_citations(outcome.results, self._config.context_sample_size)
        return {"context": context, "citations": citations}

    async def _generate_node(self, state: ChatState) -> dict:
        result = await self._generator.generate(
            state["question"],
            state["context"],
            results=state["retrieval"].results,
            mode="analytical" if state["mode"] == "complex" else "lookup",
            intent_kind=state["intent"].kind,
        )
        return {"generation": result}

    async def _persist_node(self, state: ChatState) -> dict:
        try:
            await self._store.create_chat_message(
                state["user_id"],
                state["question"],
                state["generation"].answer,
                [citation.model_dump() for citation in state.get("citations", [])],
            )
        except Exception as e:  # noqa: BLE001 - history must not fail the answer
            logger.warning("Failed to persist chat message: %s", e)
            return {"persisted": False}
        return {"persisted": True}

    # -------------------------------------------------------------------------
    # Graph Assembly
    # -------------------------------------------------------------------------

    def _build_graph(self):
        builder = StateGraph(ChatState)
        builder.add_node("route", self._route_node)
        builder.add_node("interpret", self._interpret_node)
        builder.add_node("retrieve", self._retrieve_node)
        builder.add_node("broad_retrieve", self._broad_retrieve_node)
        builder.add_node("build_context", self._build_context_node)
        builder.add_node("generate", self._generate_node)
        builder.add_node("persist", self._persist_node)

        builder.add_edge(START, "route")
        builder.add_conditional_edges(
            "route",
            lambda state: state["mode"],
            {"simple": "interpret", "complex": "broad_retrieve"},
        )
        builder.add_edge("interpret", "retrieve")
        builder.add_edge("retrieve", "build_context")
        builder.add_edge("broad_retrieve", "build_context")
        builder.add_edge("build_context", "generate")
        builder.add_edge("generate", "persist")
        builder.add_edge("persist", END)
        return builder.compile()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def parse(self, question: str) -> QueryIntent:
        return parse(question)

    async def retrieve(
        self, intent: QueryIntent, raw_query: str, limit: int | None = None,
    ) -> list[SearchResult]:
        return await self._engine.retrieve(intent, raw_query, limit)

    async def answer(self, question: str, user_id: str = "anonymous") -> ChatAnswer:
        """
        Answer one question. Never raises.

        Blank questions get the capability summary without touching any
        backend.
        """
        if not question or not question.strip():
            return ChatAnswer(text=CAPABILITY_SUMMARY)

        logger.info("Answering question for user %s: '%s'", user_id, question[:80])
        initial_state: ChatState = {"question": question, "user_id": str(user_id)}

        try:
            state = await self._graph.ainvoke(initial_state)
        except Exception:
            logger.exception("Chat pipeline failed for question '%s'", question[:80])
            return ChatAnswer(text=APOLOGY_TEXT, fallback_reason="other")

        generation: GenerationResult = state["generation"]
        logger.info(
            "Answer complete: mode=%s, model=%s, citations=%d, tier=%s",
            state["mode"], generation.model,
            len(state.get("citations", [])), state["retrieval"].tier,
        )
        return ChatAnswer(
            text=generation.answer,
            citations=state.get("citations", []),
            mode=state["mode"],
            intent_kind=state["intent"].kind,
            total_matching=state["context"].total_matching,
            model=generation.model,
            fallback_reason=generation.fallback_reason,
        )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def build_orchestrator(
    config: Settings | None = None,
    *,
    store: RecordStore | None = None,
    index: SearchIndex | None = None,
    llm: LLMProvider | None = None,
) -> ChatOrchestrator:
    """
    Wire the default collaborators from configuration.

    Missing LLM credentials are not fatal: the generator then runs on the
    deterministic path only.
    """
    config = config or settings
    store = store or build_record_store(config)

    if index is None and config.search_index_enabled:
        index = ElasticsearchSearchIndex(
            create_elasticsearch_client(config),
            index_name=config.loan_index_name,
            semantic_field=config.semantic_field if config.semantic_search_enabled else None,
        )

    if llm is None:
        try:
            llm = get_llm_provider(config)
        except ValueError as e:
            logger.warning("LLM unavailable, answers will be deterministic: %s", e)

    generator = ResponseGenerator(llm, config)
    logger.info(
        "Orchestrator ready (search index: %s, llm: %s)",
        index is not None, generator.has_llm,
    )
    return ChatOrchestrator(
        store=store,
        engine=build_retrieval_engine(store, index, config),
        generator=generator,
        config=config,
    )
