# =============================================================================
# Response Models — What the Chat Orchestrator Hands Upward
# =============================================================================
#
# These models are the contract with the (external) HTTP layer. They carry
# only derived, request-scoped data: the answer text and the citations that
# let a client render "[1] LA-2024-003 - Jane Doe (auto)" style references.
# =============================================================================

from typing import Literal

from pydantic import BaseModel, Field


class Citation(BaseModel):
    """A reference to one retrieved record, by its position in the prompt."""

    position: int = Field(ge=1, description="1-based position in the ranked results")
    application_id: str = Field(description="Human-readable application identifier")
    customer_name: str = Field(description="Customer display name")
    loan_type: str = Field(description="Loan category")
    score: float = Field(
        description=(
            "Relevance score from the tier that produced the result. Only "
            "comparable within a single answer."
        ),
    )

    @property
    def label(self) -> str:
        return (
            f"[{self.position}] {self.application_id} - "
            f"{self.customer_name or 'Unknown customer'} ({self.loan_type})"
        )


class ChatAnswer(BaseModel):
    """Final answer for one chat question."""

    text: str = Field(description="Natural-language answer, never empty")
    citations: list[Citation] = Field(default_factory=list)
    mode: Literal["simple", "complex"] = Field(
        default="simple",
        description="Processing mode chosen for the question",
    )
    intent_kind: str = Field(default="general", description="Interpreted intent kind")
    total_matching: int = Field(
        default=0,
        description="Number of records matching the question before capping",
    )
    model: str = Field(
        default="n/a",
        description="Model that produced the text, or 'deterministic'",
    )
    fallback_reason: str | None = Field(
        default=None,
        description="Why the deterministic path answered (auth, timeout, ...)",
    )
