# =============================================================================
# Agents Package — Query Pipeline Stages
# =============================================================================
#   - interpreter.py: rule-based question → QueryIntent (filters, bounds)
#   - retriever.py: tiered retrieval (semantic → keyword → store scan → empty)
#   - context.py: statistical digest + representative sample
#   - generator.py: LLM answer with a deterministic template backstop
#   - orchestrator.py: LangGraph graph, simple vs complex routing, chat
#     history persistence
# =============================================================================
