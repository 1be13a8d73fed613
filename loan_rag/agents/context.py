# =============================================================================
# Context Builder — Bounded Evidence for Generation
# =============================================================================
#
# Reduces a ranked result set to what fits in a prompt:
#   (a) a statistical digest: counts by status / loan type / risk level,
#       amount statistics, top customers by aggregate amount
#   (b) a representative sample: the first N results in rank order
#
# DESIGN DECISION: Sample = top of the ranking, not a random draw.
# The retrieval engine's ordering is the only relevance signal the model
# gets; a random sample would throw it away.
#
# DESIGN DECISION: Pure and synchronous.
# No I/O. The same EvidenceContext feeds the LLM prompt and the
# deterministic fallback answer, so both paths state the same facts.
# =============================================================================

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal

from loan_rag.agents.retriever import SearchResult
from loan_rag.config import settings
from loan_rag.models.records import LoanRecord

NO_MATCHES_TEXT = "No matching records were found."


@dataclass
class AmountStats:
    count: int = 0
    total: Decimal = Decimal("0")
    mean: Decimal = Decimal("0")
    minimum: Decimal = Decimal("0")
    maximum: Decimal = Decimal("0")


@dataclass
class CustomerAggregate:
    name: str
    count: int
    total_amount: Decimal


@dataclass
class EvidenceContext:
    """
    Request-scoped digest of one query's results. Never persisted.

    total_results counts the results handed in; total_matching is the
    number of records that matched before the result cap (>= total_results).
    """

    question: str
    total_results: int = 0
    total_matching: int = 0
    status_counts: dict[str, int] = field(default_factory=dict)
    loan_type_counts: dict[str, int] = field(default_factory=dict)
    risk_level_counts: dict[str, int] = field(default_factory=dict)
    amounts: AmountStats = field(default_factory=AmountStats)
    top_customers: list[CustomerAggregate] = field(default_factory=list)
    sample: list[SearchResult] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.total_results == 0

    def render_digest(self) -> str:
        """Render the digest as prompt text. Every field is always present."""
        lines: list[str] = []
        if self.is_empty:
            lines.append(NO_MATCHES_TEXT)
        lines.append(
            f"Matching records: {self.total_matching} "
            f"(retrieved: {self.total_results})"
        )
        lines.append(f"By status: {_format_counts(self.status_counts)}")
        lines.append(f"By loan type: {_format_counts(self.loan_type_counts)}")
        lines.append(f"By risk level: {_format_counts(self.risk_level_counts)}")
        lines.append(
            "Amounts: "
            f"total {format_money(self.amounts.total)}, "
            f"average {format_money(self.amounts.mean)}, "
            f"min {format_money(self.amounts.minimum)}, "
            f"max {format_money(self.amounts.maximum)}"
        )
        if self.top_customers:
            customers = "; ".join(
                f"{c.name} ({c.count} loan{'s' if c.count != 1 else ''}, "
                f"{format_money(c.total_amount)})"
                for c in self.top_customers
            )
        else:
            customers = "none"
        lines.append(f"Top customers by amount: {customers}")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Formatting Helpers
# ---------------------------------------------------------------------------


def format_money(value: Decimal | float) -> str:
    return f"${value:,.2f}"


def _format_counts(counts: dict[str, int]) -> str:
    if not counts:
        return "none"
    return ", ".join(f"{key}={value}" for key, value in counts.items())


def risk_label(record: LoanRecord) -> str:
    level = record.effective_risk_level
    if record.risk_score is None:
        return f"{level} risk"
    return f"{level} risk (score {record.risk_score})"


def format_record_line(position: int, record: LoanRecord) -> str:
    """
    One record as a short line, numbered for citation.

    Example:
        [1] LA-2024-003 - Jane Doe: auto loan of $25,000.00, status approved,
        medium risk (score 45)
    """
    name = record.customer_name or "Unknown customer"
    return (
        f"[{position}] {record.application_id} - {name}: "
        f"{record.loan_type} loan of {format_money(record.amount)}, "
        f"status {record.status}, {risk_label(record)}"
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def summarize(
    results: list[SearchResult],
    question: str,
    total_matching: int | None = None,
    *,
    sample_size: int | None = None,
    top_customers: int | None = None,
) -> EvidenceContext:
    """Build the EvidenceContext for one query's results."""
    sample_size = settings.context_sample_size if sample_size is None else sample_size
    top_customers = (
        settings.context_top_customers if top_customers is None else top_customers
    )
    records = [result.record for result in results]
    count = len(records)

    context = EvidenceContext(
        question=question,
        total_results=count,
        total_matching=max(total_matching or 0, count),
        sample=results[:sample_size],
    )
    if not records:
        return context

    context.status_counts = dict(Counter(r.status for r in records).most_common())
    context.loan_type_counts = dict(Counter(r.loan_type for r in records).most_common())
    context.risk_level_counts = dict(
        Counter(r.effective_risk_level for r in records).most_common()
    )

    amounts = [r.amount for r in records]
    total = sum(amounts, Decimal("0"))
    context.amounts = AmountStats(
        count=count,
        total=total,
        mean=total / count,
        minimum=min(amounts),
        maximum=max(amounts),
    )

    by_customer: dict[str, CustomerAggregate] = {}
    for record in records:
        name = record.customer_name or "Unknown customer"
        aggregate = by_customer.setdefault(
            name, CustomerAggregate(name=name, count=0, total_amount=Decimal("0")),
        )
        aggregate.count += 1
        aggregate.total_amount += record.amount
    context.top_customers = sorted(
        by_customer.values(), key=lambda c: (-c.total_amount, c.name),
    )[:top_customers]

    return context
