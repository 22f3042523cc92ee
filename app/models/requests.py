# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming INTO the API.
# FastAPI uses them for:
# 1. Request body validation (automatic 422 errors for invalid data)
# 2. OpenAPI documentation generation (visible at /docs)
#
# DESIGN DECISION: Empty input is rejected here, before the orchestrator
# makes a single external call. A conversation whose latest user message is
# blank never reaches the planner.
# =============================================================================

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ChatMessage(BaseModel):
    """One turn of the conversation."""

    role: Literal["user", "assistant", "system"]
    content: str = Field(..., max_length=8000)


class ClientContext(BaseModel):
    """State the client carries between turns."""

    # Ids returned by the previous answer. Drive the "more" and "filter"
    # request modes ("show me more", "only the ones from these").
    previous_candidate_ids: list[str] = Field(default_factory=list, max_length=200)


class SearchRequest(BaseModel):
    """
    Request body for POST /search to run an agentic company search.

    Example:
        {
            "messages": [{"role": "user", "content": "companies like Stripe"}],
            "client_context": {"previous_candidate_ids": []},
            "session_id": "4b1f..."
        }
    """

    messages: list[ChatMessage] = Field(..., min_length=1, max_length=50)
    client_context: ClientContext = Field(default_factory=ClientContext)

    # Generated server-side when omitted. Needed to resume after a
    # clarification question.
    session_id: str | None = Field(default=None, max_length=128)

    @model_validator(mode="after")
    def _require_user_text(self) -> "SearchRequest":
        if not latest_user_message(self.messages):
            raise ValueError("The conversation must end with a non-empty user message")
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "messages": [{"role": "user", "content": "companies like Stripe"}],
                    "client_context": {"previous_candidate_ids": []},
                },
                {
                    "messages": [
                        {"role": "user", "content": "fintech startups"},
                        {"role": "assistant", "content": "Here are 12 fintech startups..."},
                        {"role": "user", "content": "show me more"},
                    ],
                    "client_context": {"previous_candidate_ids": ["c_1", "c_2"]},
                },
            ]
        }
    )


class ResumeRequest(BaseModel):
    """Request body for POST /search/resume to answer a clarification question."""

    session_id: str = Field(..., min_length=1, max_length=128)
    selection: str = Field(
        ...,
        min_length=1,
        max_length=500,
        description="The option label the user picked, or free text",
    )


def latest_user_message(messages: list[ChatMessage]) -> str:
    """Return the stripped content of the last user turn, or ""."""
    for message in reversed(messages):
        if message.role == "user":
            return message.content.strip()
    return ""
