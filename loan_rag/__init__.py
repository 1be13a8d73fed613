# =============================================================================
# Loan Application Assistant — Retrieval-Augmented Query Pipeline
# =============================================================================
# Answers natural-language questions about a loan-application corpus with
# grounded, cited answers. Degrades through search tiers when the index is
# down and through a deterministic answer path when the LLM is.
#
# Package structure:
#   loan_rag/
#   ├── agents/       → Pipeline stages: interpreter, retriever, context
#   │                    builder, response generator, LangGraph orchestrator
#   ├── db/           → Async SQLAlchemy engine, session, and ORM rows
#   ├── models/       → Pydantic V2 records and response schemas
#   ├── services/     → External collaborators: record store, search index,
#   │                    LLM providers
#   ├── config.py     → pydantic-settings configuration
#   └── exceptions.py → Failure taxonomy (backend / generation / validation)
# =============================================================================
