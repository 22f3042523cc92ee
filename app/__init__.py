# =============================================================================
# Agentic Company Search
# =============================================================================
# Answers natural-language requests for companies by iterating
# plan → retrieve → filter → rerank → critique until the results are good
# enough, have converged, or a guardrail is reached.
#
# Package structure:
#   app/
#   ├── api/          → FastAPI route handlers (search, resume; NDJSON streams)
#   ├── agents/       → Search loop: anchor resolver, planner, retriever,
#   │                    filter, reranker, critic, finalizer, LangGraph graph
#   ├── db/           → Async database engine and ORM models
#   ├── models/       → Domain dataclasses and pydantic V2 schemas
#   └── services/     → LLM providers, embeddings, retrieval client,
#                        taxonomy, clarification store, telemetry
# =============================================================================
