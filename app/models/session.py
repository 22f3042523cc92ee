# =============================================================================
# Clarification Session — Serialised Suspended Search
# =============================================================================
#
# When the loop stops to ask the user a question, everything needed to pick
# up where it left off is captured here: the loop counters and candidate
# map, the conversation, the anchor, and the question itself.
#
# DESIGN DECISION: A pydantic model wrapping the loop dataclasses.
# Pydantic v2 validates stdlib dataclasses natively, so LoopState and
# Candidate round-trip through model_dump_json()/model_validate_json()
# without a parallel set of DTOs. The Redis store relies on this.
# =============================================================================

from __future__ import annotations

from pydantic import BaseModel, Field

from app.models.plans import SearchPlan
from app.models.requests import ChatMessage
from app.models.search import ClarificationOption, Company, LoopState


class ClarificationSession(BaseModel):
    session_id: str
    run_id: str | None = None

    # --- Conversation ---
    user_message: str
    messages: list[ChatMessage]
    previous_candidate_ids: list[str] = Field(default_factory=list)
    request_mode: str = "new"
    requested_count: int | None = None

    # --- Resolved context ---
    anchor: Company | None = None
    plan: SearchPlan | None = None
    loop_state: LoopState

    # --- Pending question ---
    question: str
    options: list[ClarificationOption]
    created_at: float  # Unix timestamp
