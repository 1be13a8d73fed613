# =============================================================================
# Database Package
# =============================================================================
# Async SQLAlchemy engine/session management and the ORM rows backing the
# SQL record store.
#
# Key exports:
#   - engine.build_async_engine / get_async_engine / session_scope: engine
#     and session lifecycle
#   - models.Base, LoanApplicationRow, ChatMessageRow: ORM schema
# =============================================================================
