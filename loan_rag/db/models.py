# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# Relational schema for the SQL record store backend.
#
# ┌──────────────────────────────┐      ┌──────────────────────────┐
# │  loan_applications           │      │  chat_messages           │
# ├──────────────────────────────┤      ├──────────────────────────┤
# │ id (PK, autoincrement)       │      │ id (PK, autoincrement)   │
# │ application_id (unique)      │      │ user_id                  │
# │ customer_id                  │      │ message (text)           │
# │ customer_name / _email       │      │ response (text)          │
# │ loan_type / status           │      │ context (json)           │
# │ amount (numeric 12,2)        │      │ timestamp                │
# │ term / interest_rate         │      └──────────────────────────┘
# │ risk_score / risk_level      │
# │ purpose / description/notes  │
# │ created_at / updated_at      │
# └──────────────────────────────┘
#
# DESIGN DECISIONS:
#
# 1. The database assigns identifiers (autoincrement). No process-wide
#    counters: concurrent writers cannot collide.
#
# 2. Enumerations are stored as plain strings. LoanRecord validates them
#    on the way out, so a bad value fails loudly at the model layer
#    instead of in a database enum migration.
#
# 3. Generic JSON (not JSONB) for chat context so the same schema runs on
#    PostgreSQL in production and SQLite in tests.
#
# 4. Timestamps are written by the store, not only by server defaults.
#    Server-generated values would be expired after flush, and reading an
#    expired attribute outside an awaited refresh fails in async SQLAlchemy.
# =============================================================================

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, DateTime, Index, Integer, Numeric, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class."""

    pass


class LoanApplicationRow(Base):
    """One loan application. application_id is unique and never changes."""

    __tablename__ = "loan_applications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_id: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False,
    )
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(255), default="")
    customer_email: Mapped[str] = mapped_column(String(255), default="")
    loan_type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    term: Mapped[int] = mapped_column(Integer, nullable=False)
    interest_rate: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    risk_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    risk_level: Mapped[str | None] = mapped_column(String(16), nullable=True)
    purpose: Mapped[str] = mapped_column(Text, default="")
    description: Mapped[str] = mapped_column(Text, default="")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_loan_applications_status", "status"),
        Index("ix_loan_applications_loan_type", "loan_type"),
        Index("ix_loan_applications_customer_id", "customer_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<LoanApplicationRow(id={self.id}, "
            f"application_id='{self.application_id}', status={self.status})>"
        )


class ChatMessageRow(Base):
    """A persisted chat exchange."""

    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    response: Mapped[str | None] = mapped_column(Text, nullable=True)
    context: Mapped[list | None] = mapped_column(JSON, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
