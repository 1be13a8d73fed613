# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# records.py   → LoanRecord / NewLoanRecord / ChatMessage and the controlled
#                vocabularies (LoanType, LoanStatus) plus the risk scale
# responses.py → Citation / ChatAnswer returned by the chat orchestrator
#
# These are SEPARATE from the ORM rows in loan_rag/db/models.py.
# =============================================================================
