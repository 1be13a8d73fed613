# =============================================================================
# Response Generator — LLM Answers with a Deterministic Backstop
# =============================================================================
#
# PRIMARY PATH:
#   role instructions + statistical digest + up to N numbered sample
#   records → LLM (hard timeout, bounded retries on transient failures)
#
# DETERMINISTIC PATH (always available, no external dependency):
#   greeting / help → static capability summary
#   no results      → "nothing matched" with reformulation hints
#   count           → exact total with breakdowns, no enumeration
#   summary         → the digest itself
#   otherwise       → numbered list of up to N records, "+N more" suffix
#
# DESIGN DECISION: The fallback is a correctness backstop, not a stub.
# Both paths read the same EvidenceContext, so a count stated by the
# template is the count the LLM was given. They differ in fluency only.
#
# DESIGN DECISION: Mode-specific system prompts.
# "lookup" answers a narrow question about filtered records; "analytical"
# asks for patterns and relationships across a loosely matched sample.
# Same grounding and citation rules in both.
#
# FAILURE SEMANTICS:
# GenerationError is caught here, logged with its classification, and
# resolved to the deterministic answer. Nothing propagates to the caller.
# Auth failures skip retries entirely (see complete_with_retry).
# =============================================================================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from loan_rag.agents.context import (
    NO_MATCHES_TEXT,
    EvidenceContext,
    format_record_line,
)
from loan_rag.agents.retriever import SearchResult
from loan_rag.config import Settings, settings
from loan_rag.exceptions import GenerationError
from loan_rag.models.records import LoanRecord
from loan_rag.services.llm import LLMProvider, complete_with_retry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class GenerationResult:
    """
    Final answer text plus provenance.

    fallback_reason is None when the LLM answered (or when no model call
    was needed); otherwise the error kind or "unconfigured".
    """

    answer: str
    model: str
    fallback_reason: str | None = None


# ---------------------------------------------------------------------------
# System Prompts
# ---------------------------------------------------------------------------
# Same pattern for each mode:
# 1. Role definition
# 2. Grounding instruction (use ONLY the provided context)
# 3. Citation instruction
# 4. Refusal instruction when the context is insufficient
# ---------------------------------------------------------------------------

SYSTEM_PROMPTS: dict[str, str] = {
    "lookup": (
        "You are a loan application assistant for a lending team. Answer "
        "the user's question using ONLY the provided loan application data.\n\n"
        "Rules:\n"
        "- Base your answer exclusively on the statistics and records given\n"
        "- Cite records using [1], [2], etc. matching the record numbers\n"
        "- 'Matching records' is the exact number of matching applications; "
        "use it for any count, never count the sample records yourself\n"
        "- Be precise with amounts, never round or estimate\n"
        "- If the data does not answer the question, say so plainly instead "
        "of guessing\n"
        "- Keep your answer concise and directly relevant"
    ),

    "analytical": (
        "You are a credit analyst reviewing a portfolio of loan applications. "
        "Answer the user's analytical question using ONLY the provided data.\n\n"
        "Rules:\n"
        "- Look for patterns, relationships and notable differences across "
        "the records and statistics\n"
        "- Cite records using [1], [2], etc. for each point you make\n"
        "- State which conclusions are limited by the small sample\n"
        "- If the data is insufficient for the analysis, say so plainly "
        "instead of speculating\n"
        "- Be precise with amounts and counts"
    ),
}

_DEFAULT_MODE = "lookup"

CAPABILITY_SUMMARY = (
    "I can help you explore loan applications. Try questions like:\n"
    "- \"Show me all pending loans\"\n"
    "- \"Find loans above $50,000\"\n"
    "- \"How many approved loans are there?\"\n"
    "- \"Show high risk mortgage applications\"\n"
    "- \"Give me a summary of business loans\"\n"
    "You can filter by status, loan type, amount, customer name and risk level."
)

NO_MATCHES_ANSWER = (
    "I couldn't find any loan applications matching your question. "
    "Try broadening it, for example by removing an amount limit or a status, "
    "or check the spelling of customer names."
)


# ---------------------------------------------------------------------------
# Deterministic Path
# ---------------------------------------------------------------------------

_GREETING = re.compile(
    r"^\s*(?:hi|hello|hey|good (?:morning|afternoon|evening)|greetings)\b[\s!.?]*$"
)
_HELP = re.compile(r"^help\b[\s!.?]*$|\bwhat can you do\b|\bhow do i use\b")
_COUNT = re.compile(r"\bhow many\b|\bcount\b|\btotal number\b|\bnumber of\b")
_SUMMARY = re.compile(
    r"\bsummary\b|\bsummari[sz]e\b|\boverview\b|\bstatistics\b|\bstats\b|\bbreakdown\b"
)


def detect_coarse_intent(question: str, intent_kind: str | None = None) -> str:
    """Classify a question as greeting, help, count, summary or list."""
    text = " ".join(question.lower().split())
    if not text or _GREETING.match(text):
        return "greeting"
    if _HELP.search(text):
        return "help"
    if intent_kind == "count" or _COUNT.search(text):
        return "count"
    if intent_kind == "summary" or _SUMMARY.search(text):
        return "summary"
    return "list"


def _breakdown_sentence(label: str, counts: dict[str, int]) -> str | None:
    if not counts:
        return None
    parts = ", ".join(f"{value} {key}" for key, value in counts.items())
    return f"By {label}: {parts}."


def render_fallback_answer(
    question: str,
    context: EvidenceContext,
    results: list[SearchResult] | None = None,
    *,
    intent_kind: str | None = None,
    list_limit: int | None = None,
) -> str:
    """Template answer built only from the context and the result set."""
    list_limit = settings.fallback_list_limit if list_limit is None else list_limit
    coarse = detect_coarse_intent(question, intent_kind)

    if coarse in {"greeting", "help"}:
        return CAPABILITY_SUMMARY
    if context.is_empty:
        return NO_MATCHES_ANSWER

    total = context.total_matching
    noun = "application" if total == 1 else "applications"

    if coarse == "count":
        lines = [f"There {'is' if total == 1 else 'are'} {total} matching loan {noun}."]
        for label, counts in (
            ("status", context.status_counts),
            ("loan type", context.loan_type_counts),
        ):
            sentence = _breakdown_sentence(label, counts)
            if sentence:
                lines.append(sentence)
        if context.total_results < total:
            lines.append(
                f"Breakdowns cover the {context.total_results} retrieved records."
            )
        return " ".join(lines)

    if coarse == "summary":
        return f"Summary of {total} matching loan {noun}:\n{context.render_digest()}"

    records = [r.record for r in (results if results is not None else context.sample)]
    shown = records[:list_limit]
    lines = [f"Found {total} matching loan {noun}:"]
    lines.extend(format_record_line(i, record) for i, record in enumerate(shown, 1))
    remaining = total - len(shown)
    if remaining > 0:
        lines.append(f"+{remaining} more")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


def build_user_message(
    question: str,
    context: EvidenceContext,
    sample: list[LoanRecord],
) -> str:
    """Question, digest and numbered sample records as one prompt."""
    if sample:
        record_lines = "\n".join(
            format_record_line(i, record) for i, record in enumerate(sample, 1)
        )
    else:
        record_lines = NO_MATCHES_TEXT
    return (
        f"Question: {question}\n\n"
        f"Statistics:\n{context.render_digest()}\n\n"
        f"Records ({len(sample)} of {context.total_matching}):\n{record_lines}"
    )


class ResponseGenerator:
    """
    Produces the final answer for one query.

    llm=None runs deterministic-only (no API key configured).
    """

    def __init__(
        self,
        llm: LLMProvider | None,
        config: Settings | None = None,
    ) -> None:
        self._llm = llm
        self._config = config or settings

    @property
    def has_llm(self) -> bool:
        return self._llm is not None

    def _fallback(
        self,
        question: str,
        context: EvidenceContext,
        results: list[SearchResult] | None,
        intent_kind: str | None,
        reason: str | None,
    ) -> GenerationResult:
        answer = render_fallback_answer(
            question,
            context,
            results,
            intent_kind=intent_kind,
            list_limit=self._config.fallback_list_limit,
        )
        return GenerationResult(answer=answer, model="deterministic", fallback_reason=reason)

    async def generate(
        self,
        question: str,
        context: EvidenceContext,
        sample: list[LoanRecord] | None = None,
        *,
        results: list[SearchResult] | None = None,
        mode: str = _DEFAULT_MODE,
        intent_kind: str | None = None,
    ) -> GenerationResult:
        """
        Answer `question` from `context`. Never raises.

        Args:
            sample: Records shown to the model (default: context.sample).
            results: Full ranked result set, used by the list template.
            mode: "lookup" or "analytical" system prompt.
            intent_kind: Parsed intent kind, steers the template choice.
        """
        if sample is None:
            sample = [result.record for result in context.sample]
        sample = sample[: self._config.context_sample_size]

        coarse = detect_coarse_intent(question, intent_kind)
        if context.is_empty or coarse in {"greeting", "help"}:
            # Nothing for the model to ground an answer in.
            return self._fallback(question, context, results, intent_kind, None)

        if self._llm is None:
            return self._fallback(question, context, results, intent_kind, "unconfigured")

        system_prompt = SYSTEM_PROMPTS.get(mode, SYSTEM_PROMPTS[_DEFAULT_MODE])
        user_message = build_user_message(question, context, sample)

        logger.info(
            "Generating answer: mode=%s, records=%d, matching=%d",
            mode, len(sample), context.total_matching,
        )

        try:
            response = await complete_with_retry(
                self._llm,
                messages=[{"role": "user", "content": user_message}],
                system=system_prompt,
                timeout=self._config.llm_timeout_seconds,
                max_retries=self._config.llm_max_retries,
                backoff_seconds=self._config.llm_retry_backoff_seconds,
                max_tokens=self._config.llm_max_tokens,
            )
            if not response.content.strip():
                raise GenerationError("other", "empty completion")
        except GenerationError as e:
            logger.warning(
                "Generation failed (%s), using deterministic answer: %s", e.kind, e,
            )
            return self._fallback(question, context, results, intent_kind, e.kind)

        logger.info(
            "Generation complete: model=%s, tokens=%d+%d",
            response.model, response.input_tokens, response.output_tokens,
        )
        return GenerationResult(answer=response.content.strip(), model=response.model)
