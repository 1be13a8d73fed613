# =============================================================================
# Unit Tests — Context Builder
# =============================================================================

from __future__ import annotations

from decimal import Decimal

from loan_rag.agents.context import (
    NO_MATCHES_TEXT,
    format_record_line,
    summarize,
)
from loan_rag.agents.retriever import SearchResult
from loan_rag.models.records import LoanRecord


def _result(i: int, score: float = 1.0, **overrides) -> SearchResult:
    data = {
        "id": str(i),
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
    return SearchResult(record=LoanRecord(**data), score=score)


class TestEmptyResults:

    def test_no_division_by_zero(self):
        context = summarize([], "anything?")
        assert context.total_results == 0
        assert context.total_matching == 0
        assert context.amounts.mean == 0
        assert context.status_counts == {}
        assert context.loan_type_counts == {}
        assert context.risk_level_counts == {}
        assert context.top_customers == []
        assert context.sample == []

    def test_digest_states_no_matches_and_keeps_fields(self):
        digest = summarize([], "q").render_digest()
        assert NO_MATCHES_TEXT in digest
        assert "By status: none" in digest
        assert "Amounts: total $0.00" in digest


class TestStatistics:

    def test_breakdowns(self):
        results = [
            _result(1, status="approved", loan_type="auto", risk_score=80),
            _result(2, status="approved", loan_type="mortgage", risk_score=20),
            _result(3, status="pending", loan_type="auto", risk_score=None),
        ]
        context = summarize(results, "q")
        assert context.status_counts == {"approved": 2, "pending": 1}
        assert context.loan_type_counts == {"auto": 2, "mortgage": 1}
        assert context.risk_level_counts == {"high": 1, "low": 1, "unknown": 1}

    def test_amount_stats(self):
        results = [
            _result(1, amount=Decimal("1000")),
            _result(2, amount=Decimal("3000")),
            _result(3, amount=Decimal("5000")),
        ]
        amounts = summarize(results, "q").amounts
        assert amounts.count == 3
        assert amounts.total == Decimal("9000")
        assert amounts.mean == Decimal("3000")
        assert amounts.minimum == Decimal("1000")
        assert amounts.maximum == Decimal("5000")

    def test_top_customers_by_aggregate_amount(self):
        results = [
            _result(1, customer_name="Ann", amount=Decimal("100")),
            _result(2, customer_name="Bob", amount=Decimal("500")),
            _result(3, customer_name="Ann", amount=Decimal("450")),
        ]
        top = summarize(results, "q", top_customers=1).top_customers
        assert len(top) == 1
        assert top[0].name == "Ann"
        assert top[0].count == 2
        assert top[0].total_amount == Decimal("550")

    def test_total_matching_never_below_result_count(self):
        results = [_result(i) for i in range(1, 4)]
        assert summarize(results, "q", total_matching=1).total_matching == 3
        assert summarize(results, "q", total_matching=40).total_matching == 40


class TestSample:

    def test_sample_is_top_of_ranking(self):
        results = [_result(i, score=10 - i) for i in range(1, 9)]
        context = summarize(results, "q", sample_size=5)
        assert [r.record.id for r in context.sample] == ["1", "2", "3", "4", "5"]

    def test_record_line(self):
        record = _result(3, customer_name="Jane Doe", loan_type="auto",
                         amount=Decimal("25000"), status="approved",
                         risk_score=45).record
        line = format_record_line(1, record)
        assert line.startswith("[1] LA-2024-003 - Jane Doe: auto loan of $25,000.00")
        assert "status approved" in line
        assert "medium risk (score 45)" in line
