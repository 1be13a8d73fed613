# =============================================================================
# Integration Tests — Chat Orchestrator
# =============================================================================
#
# Runs the full LangGraph pipeline against the in-memory record store with
# no search index (store-scan tier) and mock LLM providers.
# =============================================================================

from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from loan_rag.agents.generator import CAPABILITY_SUMMARY, SYSTEM_PROMPTS, ResponseGenerator
from loan_rag.agents.orchestrator import (
    ChatOrchestrator,
    QueryModePolicy,
    build_citations,
    build_orchestrator,
)
from loan_rag.agents.retriever import SearchResult, build_retrieval_engine
from loan_rag.config import Settings
from loan_rag.exceptions import BackendUnavailableError, GenerationError
from loan_rag.models.records import LoanRecord, NewLoanRecord
from loan_rag.services.llm import LLMResponse
from loan_rag.services.record_store import InMemoryRecordStore


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


_CONFIG = Settings(
    search_index_enabled=False,
    llm_retry_backoff_seconds=0.0,
    complex_query_min_length=80,
)


def _new(i: int, **overrides) -> NewLoanRecord:
    data = {
        "application_id": f"LA-2024-{i:03d}",
        "customer_id": f"C{i}",
        "customer_name": f"Customer {i}",
        "loan_type": "personal",
        "amount": Decimal("10000"),
        "term": 36,
        "status": "pending",
        "risk_score": 50,
    }
    data.update(overrides)
    return NewLoanRecord(**data)


def _orchestrator(store, llm=None) -> ChatOrchestrator:
    return ChatOrchestrator(
        store=store,
        engine=build_retrieval_engine(store, None, _CONFIG),
        generator=ResponseGenerator(llm, _CONFIG),
        config=_CONFIG,
    )


def _llm_returning(content: str) -> AsyncMock:
    llm = AsyncMock()
    llm.complete.return_value = LLMResponse(
        content=content, model="test-model", input_tokens=10, output_tokens=5,
    )
    return llm


class BrokenHistoryStore(InMemoryRecordStore):
    async def create_chat_message(self, user_id, message, response=None, context=None):
        raise BackendUnavailableError("memory", "history offline")


# ---------------------------------------------------------------------------
# Test: Mode Policy
# ---------------------------------------------------------------------------


class TestQueryModePolicy:

    policy = QueryModePolicy(trigger_words=("patterns", "compare"), min_length=40)

    def test_short_question_is_simple_even_with_trigger(self):
        assert self.policy.select("compare loans") == "simple"

    def test_long_question_without_trigger_is_simple(self):
        assert self.policy.select("show me every pending loan application from last year please") == "simple"

    def test_long_question_with_trigger_is_complex(self):
        question = "What patterns do you see between loan amount and approval status?"
        assert self.policy.select(question) == "complex"

    def test_trigger_match_is_case_insensitive(self):
        question = "Please COMPARE the business loans against the personal loans this year"
        assert self.policy.select(question) == "complex"

    def test_from_settings(self):
        policy = QueryModePolicy.from_settings(_CONFIG)
        assert policy.min_length == 80
        assert "correlation" in policy.trigger_words


# ---------------------------------------------------------------------------
# Test: Acceptance Scenarios
# ---------------------------------------------------------------------------


class TestScenarios:

    def test_pending_loans_are_enumerated(self):
        store = InMemoryRecordStore(
            [_new(i, status="pending") for i in range(1, 4)]
            + [_new(i, status="approved") for i in range(4, 6)]
        )
        answer = _run(_orchestrator(store).answer("Show me all pending loans", "u1"))

        assert answer.intent_kind == "status_filter"
        assert answer.total_matching == 3
        assert len(answer.citations) == 3
        for i in range(1, 4):
            assert f"LA-2024-{i:03d}" in answer.text
        assert answer.text.count("status pending") == 3
        assert "status approved" not in answer.text

    def test_amount_threshold(self):
        amounts = [10000, 60000, 75000, 20000]
        store = InMemoryRecordStore(
            [_new(i, amount=Decimal(a)) for i, a in enumerate(amounts, 1)]
        )
        answer = _run(_orchestrator(store).answer("Find loans above $50,000"))

        assert answer.intent_kind == "amount_filter"
        assert {c.application_id for c in answer.citations} == {"LA-2024-002", "LA-2024-003"}

    def test_count_of_approved(self):
        store = InMemoryRecordStore(
            [_new(i, status="approved") for i in range(1, 5)]
            + [_new(i, status="rejected") for i in range(5, 7)]
        )
        answer = _run(_orchestrator(store).answer("How many approved loans are there?"))

        assert answer.intent_kind == "count"
        assert answer.total_matching == 4
        assert "There are 4 matching loan applications." in answer.text
        assert "LA-2024-001" not in answer.text

    def test_no_matches(self):
        store = InMemoryRecordStore([_new(1, loan_type="auto")])
        answer = _run(_orchestrator(store).answer("student loans"))

        assert answer.citations == []
        assert answer.total_matching == 0
        assert "couldn't find any loan applications" in answer.text

    def test_auth_failure_falls_back_and_still_persists(self):
        store = InMemoryRecordStore([_new(1), _new(2)])
        llm = AsyncMock()
        llm.complete.side_effect = GenerationError("auth", "invalid api key")

        answer = _run(_orchestrator(store, llm).answer("Show me all pending loans", "u7"))

        assert llm.complete.call_count == 1
        assert answer.fallback_reason == "auth"
        assert answer.model == "deterministic"
        assert "LA-2024-001" in answer.text

        history = _run(store.get_chat_messages("u7"))
        assert len(history) == 1
        assert history[0].message == "Show me all pending loans"
        assert history[0].response == answer.text
        assert history[0].context[0]["application_id"] == answer.citations[0].application_id


# ---------------------------------------------------------------------------
# Test: Orchestrator Behaviour
# ---------------------------------------------------------------------------


class TestChatOrchestrator:

    def test_llm_answer_and_citations(self):
        store = InMemoryRecordStore([_new(1, customer_name="Jane Doe", loan_type="auto")])
        answer = _run(_orchestrator(store, _llm_returning("One auto loan [1].")).answer("auto loans"))

        assert answer.text == "One auto loan [1]."
        assert answer.model == "test-model"
        assert answer.mode == "simple"
        assert answer.citations[0].label == "[1] LA-2024-001 - Jane Doe (auto)"
        assert answer.citations[0].score == 1.0

    def test_complex_question_uses_analytical_path(self):
        store = InMemoryRecordStore(
            [_new(i, status="approved" if i % 2 else "rejected") for i in range(1, 10)]
        )
        llm = _llm_returning("Analysis [1].")
        question = (
            "Can you help me understand the relationship between approved "
            "loan amounts and the risk scores across all customers?"
        )
        answer = _run(_orchestrator(store, llm).answer(question))

        assert answer.mode == "complex"
        assert answer.intent_kind == "general"
        assert llm.complete.call_args.kwargs["system"] == SYSTEM_PROMPTS["analytical"]
        # Loosely matched: no status filter applied, sample size bounded.
        assert len(answer.citations) == _CONFIG.complex_sample_size

    def test_blank_question_gets_capabilities(self):
        store = InMemoryRecordStore()
        answer = _run(_orchestrator(store).answer("   "))
        assert answer.text == CAPABILITY_SUMMARY
        assert _run(store.get_chat_messages("anonymous")) == []

    def test_history_failure_does_not_fail_answer(self):
        store = BrokenHistoryStore([_new(1)])
        answer = _run(_orchestrator(store).answer("show pending loans"))
        assert "LA-2024-001" in answer.text

    def test_unexpected_failure_becomes_apology(self):
        orchestrator = _orchestrator(InMemoryRecordStore([_new(1)]))
        with patch(
            "loan_rag.agents.orchestrator.summarize",
            side_effect=RuntimeError("boom"),
        ):
            answer = _run(orchestrator.answer("show loans"))
        assert answer.text.startswith("Sorry")
        assert answer.citations == []

    def test_parse_and_retrieve_are_exposed(self):
        orchestrator = _orchestrator(InMemoryRecordStore([_new(1), _new(2, status="approved")]))
        intent = orchestrator.parse("approved loans")
        results = _run(orchestrator.retrieve(intent, "approved loans", 10))
        assert [r.record.status for r in results] == ["approved"]


class TestCitations:

    def test_positions_are_one_based_and_bounded(self):
        results = [
            SearchResult(
                record=LoanRecord(
                    id=str(i), application_id=f"A{i}", customer_id="c",
                    loan_type="auto", amount=Decimal("1"), term=12,
                ),
                score=float(10 - i),
            )
            for i in range(1, 8)
        ]
        citations = build_citations(results, 5)
        assert [c.position for c in citations] == [1, 2, 3, 4, 5]
        assert citations[0].score == 9.0


class TestBuildOrchestrator:

    def test_missing_llm_key_runs_deterministic(self):
        config = Settings(search_index_enabled=False)
        with patch(
            "loan_rag.agents.orchestrator.get_llm_provider",
            side_effect=ValueError("No API key configured"),
        ):
            orchestrator = build_orchestrator(config, store=InMemoryRecordStore([_new(1)]))
        answer = _run(orchestrator.answer("show loans"))
        assert answer.fallback_reason == "unconfigured"
        assert "LA-2024-001" in answer.text

    def test_llm_comes_from_the_given_config(self):
        config = Settings(
            search_index_enabled=False,
            llm_provider="anthropic",
            llm_api_key="sk-cfg",
            llm_model="claude-cfg",
        )
        orchestrator = build_orchestrator(config, store=InMemoryRecordStore())
        assert orchestrator._generator.has_llm
        assert orchestrator._generator._llm._model == "claude-cfg"
