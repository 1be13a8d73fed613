# =============================================================================
# Record Models — Loan Applications and Chat History
# =============================================================================
#
# LoanRecord is the unit of retrieval. Every store, the search index and
# the pipeline stages exchange LoanRecord instances; the camelCase document
# shape used by the search index only exists at the adapter boundary
# (to_document / from_document).
#
# DESIGN DECISION: One canonical risk scale.
# Producers disagree on risk scores: some emit a 1-100 risk score (higher =
# riskier), others a 300-850 credit score (higher = safer). Records are
# validated onto the 1-100 risk scale so that "high risk" means the same
# thing to every filter and every derived risk level:
#
#     risk = round((850 - credit_score) / 550 * 99) + 1
#
# so 850 → 1 (safest) and 300 → 100 (riskiest).
#
# DESIGN DECISION: String enums for controlled vocabularies.
# Status and loan type compare exactly (case-sensitive) in filters, so they
# are validated on the way in rather than normalised at query time.
# =============================================================================

from __future__ import annotations

import enum
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from loan_rag.config import settings


class LoanType(str, enum.Enum):
    """Fixed enumeration of loan categories."""

    PERSONAL = "personal"
    MORTGAGE = "mortgage"
    AUTO = "auto"
    BUSINESS = "business"
    STUDENT = "student"


class LoanStatus(str, enum.Enum):
    """
    Lifecycle status of an application.

    Transitions are unconstrained here: any status may follow any other.
    """

    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISBURSED = "disbursed"


CREDIT_SCORE_MIN = 300
CREDIT_SCORE_MAX = 850


def normalize_risk_score(value: int | float | None) -> int | None:
    """Map a raw risk value onto the canonical 1-100 risk scale."""
    if value is None:
        return None
    if CREDIT_SCORE_MIN <= value <= CREDIT_SCORE_MAX and value > 100:
        span = CREDIT_SCORE_MAX - CREDIT_SCORE_MIN
        return round((CREDIT_SCORE_MAX - value) / span * 99) + 1
    if not 0 <= value <= 100:
        raise ValueError(
            f"risk score {value} is neither on the 1-100 risk scale "
            f"nor a {CREDIT_SCORE_MIN}-{CREDIT_SCORE_MAX} credit score"
        )
    return int(round(value))


def risk_level_for(score: int | None) -> str:
    """Derive high / medium / low from a canonical risk score."""
    if score is None:
        return "unknown"
    if score > settings.risk_high_threshold:
        return "high"
    if score > settings.risk_medium_threshold:
        return "medium"
    return "low"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class NewLoanRecord(BaseModel):
    """Payload for creating a loan application (no server-assigned fields)."""

    application_id: str = Field(min_length=1)
    customer_id: str
    customer_name: str = ""
    customer_email: str = ""
    loan_type: LoanType
    amount: Decimal = Field(ge=0)
    term: int = Field(gt=0, description="Term in months")
    interest_rate: Decimal | None = None
    status: LoanStatus = LoanStatus.PENDING
    risk_score: int | None = None
    risk_level: str | None = None
    purpose: str = ""
    description: str = ""
    notes: str | None = None

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    @field_validator("customer_id", mode="before")
    @classmethod
    def _coerce_customer_id(cls, value: Any) -> str:
        return str(value)

    @field_validator("risk_score", mode="before")
    @classmethod
    def _normalise_risk(cls, value: Any) -> int | None:
        if value is None or value == "":
            return None
        return normalize_risk_score(float(value))


class LoanRecord(NewLoanRecord):
    """A stored loan application, including server-assigned fields."""

    id: str
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return str(value)

    @property
    def effective_risk_level(self) -> str:
        """Stored risk level if present, otherwise derived from the score."""
        if self.risk_level:
            return self.risk_level
        return risk_level_for(self.risk_score)

    # -------------------------------------------------------------------------
    # Search-index document shape
    # -------------------------------------------------------------------------

    def to_document(self) -> dict[str, Any]:
        """Serialise to the camelCase document stored in the search index."""
        return {
            "id": self.id,
            "applicationId": self.application_id,
            "customerId": self.customer_id,
            "customerName": self.customer_name,
            "customerEmail": self.customer_email,
            "loanType": self.loan_type,
            "amount": float(self.amount),
            "term": self.term,
            "interestRate": (
                float(self.interest_rate) if self.interest_rate is not None else None
            ),
            "status": self.status,
            "riskScore": self.risk_score,
            "riskLevel": self.effective_risk_level,
            "purpose": self.purpose,
            "description": self.description,
            "notes": self.notes,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_document(cls, document: dict[str, Any], doc_id: str | None = None) -> LoanRecord:
        """Rebuild a record from a search-index document."""
        return cls(
            id=doc_id or document.get("id"),
            application_id=document["applicationId"],
            customer_id=document.get("customerId", ""),
            customer_name=document.get("customerName") or "",
            customer_email=document.get("customerEmail") or "",
            loan_type=document["loanType"],
            amount=Decimal(str(document.get("amount", 0))),
            term=document.get("term") or 1,
            interest_rate=document.get("interestRate"),
            status=document.get("status", LoanStatus.PENDING.value),
            risk_score=document.get("riskScore"),
            risk_level=document.get("riskLevel"),
            purpose=document.get("purpose") or "",
            description=document.get("description") or "",
            notes=document.get("notes"),
            created_at=document.get("createdAt") or _utcnow(),
            updated_at=document.get("updatedAt") or _utcnow(),
        )


class ChatMessage(BaseModel):
    """A persisted (question, answer) exchange."""

    id: str
    user_id: str
    message: str
    response: str | None = None
    context: list[dict[str, Any]] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_utcnow)

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def _coerce_str(cls, value: Any) -> str:
        return str(value)
