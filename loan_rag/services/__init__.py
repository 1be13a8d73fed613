# =============================================================================
# Services Package — External Collaborators
# =============================================================================
#   - record_store.py: system of record (in-memory, SQL, Elasticsearch)
#   - search_index.py: backend-neutral StructuredQuery + Elasticsearch index
#   - llm.py: multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
#     with timeout and bounded retry
# =============================================================================
