# =============================================================================
# Models Package — Domain Types and Pydantic V2 Schemas
# =============================================================================
#   - search.py: in-loop dataclasses (Company, Candidate, LoopState, ...)
#   - plans.py: structured LLM outputs (SearchPlan, RerankOutput, CriticOutput)
#   - requests.py / responses.py: the HTTP contract (streamed events)
#   - session.py: a suspended search awaiting clarification
#
# DESIGN DECISION: API schemas are separate from DB models (app/db/models.py).
# The public event contract and the storage layout evolve independently.
# =============================================================================
