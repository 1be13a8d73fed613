# =============================================================================
# Query Interpreter — Natural Language → Structured Intent
# =============================================================================
#
# Turns a free-text question into a QueryIntent: a coarse `kind` plus the
# exact-match filters (status, loan type) and numeric/name parameters
# (amount bounds, customer name, risk bounds) the retrieval engine applies.
#
# DESIGN DECISION: Rule-based, not learned.
# Same trade-off as the orchestrator's mode gate: zero latency, zero cost,
# deterministic, easy to test. Questions outside the rules fall back to
# kind="general" with no filters, which is not an error.
#
# DESIGN DECISION: An ordered rule list is the contract.
# Rules are NOT mutually exclusive: one question can set status, loan type,
# amount and risk filters at once. Each rule that matches may also claim
# the intent's `kind`, so the LAST matching rule that declares a kind wins:
#
#   1. status     → status_filter
#   2. loan type  → (no kind)
#   3. amount     → amount_filter
#   4. customer   → customer_filter
#   5. risk       → risk_filter
#   6. count      → count
#   7. summary    → summary
#
# "How many approved loans?" therefore parses to kind="count" with
# filters={"status": "approved"}. RULES is exported so tests pin the order.
#
# DESIGN DECISION: Malformed numbers are no-ops.
# "loans above a lot" matches the amount phrase but yields no number, so no
# bound is set and the rule does not claim the kind.
# =============================================================================

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from loan_rag.config import settings
from loan_rag.models.records import (
    CREDIT_SCORE_MAX,
    CREDIT_SCORE_MIN,
    LoanStatus,
    LoanType,
    normalize_risk_score,
)

logger = logging.getLogger(__name__)

INTENT_KINDS = (
    "general",
    "status_filter",
    "amount_filter",
    "customer_filter",
    "risk_filter",
    "count",
    "summary",
)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class QueryIntent:
    """
    Parsed representation of a question.

    filters: exact-match values keyed by record attribute
        ("status", "loan_type").
    parameters: optional bounds and names
        (min_amount, max_amount, customer_name, min_risk_score, max_risk_score).
    """

    kind: str = "general"
    filters: dict[str, str] = field(default_factory=dict)
    parameters: dict[str, Any] = field(default_factory=dict)

    @property
    def has_constraints(self) -> bool:
        return bool(self.filters or self.parameters)


@dataclass(frozen=True)
class IntentRule:
    """One interpretation rule. `apply` mutates the intent and reports a match."""

    name: str
    kind: str | None
    apply: Callable[[str, QueryIntent], bool]


# ---------------------------------------------------------------------------
# Numeric Extraction
# ---------------------------------------------------------------------------

# "$50,000", "50000", "75.5k", "2 million"
_NUMBER = r"\$?\s*(\d[\d,]*(?:\.\d+)?)(\s*(?:thousand|million)|k|m)?\b"

_SUFFIX_MULTIPLIERS = {
    "k": 1_000,
    "thousand": 1_000,
    "m": 1_000_000,
    "million": 1_000_000,
}


def parse_amount(digits: str, suffix: str | None = None) -> float | None:
    """Parse an amount with thousands separators and an optional suffix."""
    cleaned = digits.replace(",", "").strip()
    try:
        value = float(cleaned)
    except ValueError:
        return None
    if suffix:
        value *= _SUFFIX_MULTIPLIERS.get(suffix.strip(), 1)
    return value


# ---------------------------------------------------------------------------
# Rule Implementations
# ---------------------------------------------------------------------------

_STATUS_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\b(?:approved|active)\b"), LoanStatus.APPROVED.value),
    (re.compile(r"\bpending\b"), LoanStatus.PENDING.value),
    (re.compile(r"\b(?:under|in) review\b"), LoanStatus.UNDER_REVIEW.value),
    (re.compile(r"\b(?:rejected|denied|declined)\b"), LoanStatus.REJECTED.value),
    (re.compile(r"\bdisbursed\b"), LoanStatus.DISBURSED.value),
]

_LOAN_TYPE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\bpersonal (?:loans?|applications?)\b"), LoanType.PERSONAL.value),
    (re.compile(r"\bmortgages?\b|\bhome (?:loans?|applications?)\b"), LoanType.MORTGAGE.value),
    (re.compile(r"\b(?:auto|car|vehicle) (?:loans?|applications?)\b"), LoanType.AUTO.value),
    (re.compile(r"\bbusiness (?:loans?|applications?)\b"), LoanType.BUSINESS.value),
    (re.compile(r"\bstudent (?:loans?|applications?)\b"), LoanType.STUDENT.value),
]

_BETWEEN = re.compile(rf"\bbetween\s+{_NUMBER}\s*(?:and|to|-)\s*{_NUMBER}")
_MIN_AMOUNT = re.compile(
    rf"\b(?:above|over|more than|greater than|at least|exceeding)\s+{_NUMBER}"
)
_MAX_AMOUNT = re.compile(rf"\b(?:below|under|less than|at most)\s+{_NUMBER}")

_RISK_SCORE_BOUND = re.compile(
    r"\b(risk(?:\s+scores?)?|credit\s+scores?)\s+"
    r"(above|over|greater than|more than|at least|below|under|less than|at most)"
    r"\s+(\d+)\b"
)
_HIGH_RISK = re.compile(r"\bhigh[- ]risk\b|\brisky\b")
_MEDIUM_RISK = re.compile(r"\bmedium[- ]risk\b|\bmoderate[- ]risk\b")
_LOW_RISK = re.compile(r"\blow[- ]risk\b|\bsafe\b")

_CUSTOMER_NAMED = re.compile(
    r"\bcustomer(?:\s+named)?\s+([a-z][a-z.'-]*(?:\s+[a-z][a-z.'-]*)?)"
)
_FOR_OR_BY = re.compile(r"\b(?:for|by)\s+([a-z][a-z.'-]*(?:\s+[a-z][a-z.'-]*)?)")
_LOAN_FOR = re.compile(r"\bloan\s*$")
_ARRANGED_BY = re.compile(r"\b(?:group(?:ed)?|sort(?:ed)?|order(?:ed)?|broken down)\s*$")

# Words that follow "for"/"by" without being a name.
_NAME_STOP_WORDS = {
    "a", "an", "the", "all", "any", "me", "my", "our", "us", "you", "this",
    "that", "these", "those", "each", "every", "some", "loan", "loans",
    "customer", "customers", "application", "applications", "more", "less",
    "over", "under", "above", "below", "between", "than", "with", "status",
    "type", "amount", "risk", "high", "low", "medium", "last", "next",
    "month", "year", "today", "review", "approval", "named", "and",
    "or", "of", "in", "on", "at", "to", "from", "how", "what", "which",
    "who", "is", "are", "there", "purpose", "date", "term", "rate",
    "interest", "score", "level", "name", "created", "grouped", "sorted",
    "ordered",
} | {s.value for s in LoanStatus} | {t.value for t in LoanType} | {
    "approved", "active", "rejected", "denied", "declined", "home", "car",
    "auto", "vehicle",
}


def _apply_status(text: str, intent: QueryIntent) -> bool:
    for pattern, status in _STATUS_PATTERNS:
        if pattern.search(text):
            intent.filters["status"] = status
            return True
    return False


def _apply_loan_type(text: str, intent: QueryIntent) -> bool:
    for pattern, loan_type in _LOAN_TYPE_PATTERNS:
        if pattern.search(text):
            intent.filters["loan_type"] = loan_type
            return True
    return False


def _apply_amount(text: str, intent: QueryIntent) -> bool:
    # Risk-score bounds use the same comparison words; keep them out.
    text = _RISK_SCORE_BOUND.sub(" ", text)

    between = _BETWEEN.search(text)
    if between:
        low = parse_amount(between.group(1), between.group(2))
        high = parse_amount(between.group(3), between.group(4))
        if low is None or high is None:
            return False
        low, high = sorted((low, high))
        intent.parameters["min_amount"] = low
        intent.parameters["max_amount"] = high
        return True

    matched = False
    minimum = _MIN_AMOUNT.search(text)
    if minimum:
        value = parse_amount(minimum.group(1), minimum.group(2))
        if value is not None:
            intent.parameters["min_amount"] = value
            matched = True
    maximum = _MAX_AMOUNT.search(text)
    if maximum:
        value = parse_amount(maximum.group(1), maximum.group(2))
        if value is not None:
            intent.parameters["max_amount"] = value
            matched = True
    return matched


def _clean_name(candidate: str) -> str | None:
    tokens = candidate.split()
    while tokens and tokens[-1] in _NAME_STOP_WORDS:
        tokens.pop()
    if not tokens or tokens[0] in _NAME_STOP_WORDS:
        return None
    return " ".join(tokens)


def _apply_customer(text: str, intent: QueryIntent) -> bool:
    named = _CUSTOMER_NAMED.search(text)
    if named:
        name = _clean_name(named.group(1))
        if name:
            intent.parameters["customer_name"] = name
            return True

    for match in _FOR_OR_BY.finditer(text):
        # "a loan for a new car" names a purpose, not a customer.
        preceding = text[: match.start()]
        if _LOAN_FOR.search(preceding):
            continue
        # "grouped by purpose" names a field.
        if _ARRANGED_BY.search(preceding):
            continue
        name = _clean_name(match.group(1))
        if name:
            intent.parameters["customer_name"] = name
            return True
    return False


def _apply_risk(text: str, intent: QueryIntent) -> bool:
    matched = False

    bound = _RISK_SCORE_BOUND.search(text)
    if bound:
        subject, comparison, raw = bound.group(1), bound.group(2), int(bound.group(3))
        is_credit = subject.startswith("credit")
        is_lower_bound = comparison in {
            "above", "over", "greater than", "more than", "at least",
        }
        try:
            value = normalize_risk_score(raw)
        except ValueError:
            value = None
        if is_credit and not CREDIT_SCORE_MIN <= raw <= CREDIT_SCORE_MAX:
            value = None
        if value is not None:
            # A credit score bound flips direction on the risk scale.
            if CREDIT_SCORE_MIN <= raw <= CREDIT_SCORE_MAX and raw > 100:
                is_lower_bound = not is_lower_bound
            key = "min_risk_score" if is_lower_bound else "max_risk_score"
            intent.parameters[key] = value
            matched = True

    if _HIGH_RISK.search(text):
        intent.parameters["min_risk_score"] = settings.risk_high_threshold + 1
        matched = True
    elif _MEDIUM_RISK.search(text):
        intent.parameters["min_risk_score"] = settings.risk_medium_threshold + 1
        intent.parameters["max_risk_score"] = settings.risk_high_threshold
        matched = True
    elif _LOW_RISK.search(text):
        intent.parameters["max_risk_score"] = settings.risk_medium_threshold
        matched = True
    return matched


_COUNT = re.compile(r"\bhow many\b|\bcount\b|\btotal number\b|\bnumber of\b")
_SUMMARY = re.compile(
    r"\bsummary\b|\bsummari[sz]e\b|\boverview\b|\bstatistics\b|\bstats\b|\bbreakdown\b"
)


def _apply_count(text: str, intent: QueryIntent) -> bool:
    return bool(_COUNT.search(text))


def _apply_summary(text: str, intent: QueryIntent) -> bool:
    return bool(_SUMMARY.search(text))


RULES: tuple[IntentRule, ...] = (
    IntentRule("status", "status_filter", _apply_status),
    IntentRule("loan_type", None, _apply_loan_type),
    IntentRule("amount", "amount_filter", _apply_amount),
    IntentRule("customer", "customer_filter", _apply_customer),
    IntentRule("risk", "risk_filter", _apply_risk),
    IntentRule("count", "count", _apply_count),
    IntentRule("summary", "summary", _apply_summary),
)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalize_question(question: str) -> str:
    """Lower-case and collapse whitespace."""
    return " ".join(question.lower().split())


def parse(question: str) -> QueryIntent:
    """
    Interpret a question. Pure and deterministic for a given configuration.

    Every rule runs; a matching rule with a kind overwrites intent.kind.
    """
    text = normalize_question(question)
    intent = QueryIntent()

    for rule in RULES:
        if rule.apply(text, intent) and rule.kind:
            intent.kind = rule.kind

    logger.debug(
        "Parsed '%s' → kind=%s filters=%s parameters=%s",
        question[:80], intent.kind, intent.filters, intent.parameters,
    )
    return intent
