# =============================================================================
# Agents Package — The Agentic Search Loop
# =============================================================================
# One module per phase of a search request:
#   - anchor.py: company names in the message → anchor or exact match
#   - planner.py: conversation → SearchPlan (LLM, normalised)
#   - retriever.py: query variants → merged candidate map → hydrated set
#   - filters.py: deterministic plan filters over hydrated companies
#   - reranker.py: LLM ordering and per-company annotations
#   - critic.py: stop / continue decision and convergence
#   - clarification.py: when to pause and ask the user
#   - finalizer.py: request modes, references, summary
#   - guardrails.py: iteration, tool-call and runtime ceilings
#   - orchestrator.py: LangGraph graph tying the phases together
#
# Search loop: plan → retrieve → filter → rerank → critique (max N iterations)
# =============================================================================
