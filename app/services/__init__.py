# =============================================================================
# Services Package — External Collaborators
# =============================================================================
# Everything the search loop talks to, each behind a small interface:
#   - llm.py: Multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
#     plus structured-output validation
#   - embedder.py: Query embeddings (batch, OpenAI-compatible)
#   - retrieval.py: Typed client over the company search SQL functions
#   - taxonomy.py: Sector / category / business-model allow-lists
#   - session_store.py: Suspended searches awaiting clarification
#   - telemetry.py: search_runs / steps / results rows
# =============================================================================
