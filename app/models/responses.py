# =============================================================================
# API Response Models — Streamed Search Events
# =============================================================================
#
# POST /search and POST /search/resume answer with newline-delimited JSON:
# zero or more progress events followed by exactly one terminal event.
#
#   {"type": "activity",      "data": {id, label, detail, status}}
#   {"type": "partial_text",  "data": {text}}
#   {"type": "clarification", "data": {session_id, question, options}}   ← terminal
#   {"type": "final_answer",  "data": {content, references, ...}}        ← terminal
#   {"type": "error",         "data": {message}}                         ← terminal
#
# DESIGN DECISION: Events are pydantic models, not dicts.
# The orchestrator emits typed objects; the transport only calls
# model_dump_json(). Clients get a schema in /docs for free.
# =============================================================================

from __future__ import annotations

from dataclasses import asdict
from typing import Any, Literal

from pydantic import BaseModel

from app.models.search import ClarificationRequest, FinalResult


class HealthResponse(BaseModel):
    """Response for GET /health; confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


# ---------------------------------------------------------------------------
# Progress Events
# ---------------------------------------------------------------------------


class ActivityData(BaseModel):
    id: str
    label: str
    detail: str
    status: Literal["running", "completed"]


class ActivityEvent(BaseModel):
    type: Literal["activity"] = "activity"
    data: ActivityData


class PartialTextData(BaseModel):
    text: str


class PartialTextEvent(BaseModel):
    """Best-effort preview of the summary, sent before the final answer."""

    type: Literal["partial_text"] = "partial_text"
    data: PartialTextData


# ---------------------------------------------------------------------------
# Terminal Events
# ---------------------------------------------------------------------------


class ClarificationOptionData(BaseModel):
    label: str
    description: str


class ClarificationData(BaseModel):
    session_id: str
    question: str
    options: list[ClarificationOptionData]


class ClarificationEvent(BaseModel):
    """
    The loop is suspended until the user answers.

    Resume with POST /search/resume {session_id, selection}.
    """

    type: Literal["clarification"] = "clarification"
    data: ClarificationData

    @classmethod
    def from_request(
        cls, session_id: str, request: ClarificationRequest,
    ) -> ClarificationEvent:
        return cls(
            data=ClarificationData(
                session_id=session_id,
                question=request.question,
                options=[
                    ClarificationOptionData(label=o.label, description=o.description)
                    for o in request.options
                ],
            )
        )


class ReferenceData(BaseModel):
    company_id: str
    company_name: str
    reason: str
    inline_description: str | None = None
    evidence_chips: list[str]
    confidence: float


class TelemetryData(BaseModel):
    run_id: str | None
    iteration_count: int
    tool_call_count: int
    end_reason: str


class FinalAnswerData(BaseModel):
    content: str
    references: list[ReferenceData]
    companies_by_id: dict[str, dict[str, Any]]
    telemetry: TelemetryData


class FinalAnswerEvent(BaseModel):
    type: Literal["final_answer"] = "final_answer"
    data: FinalAnswerData

    @classmethod
    def from_result(cls, result: FinalResult) -> FinalAnswerEvent:
        return cls(
            data=FinalAnswerData(
                content=result.content,
                references=[ReferenceData(**asdict(ref)) for ref in result.references],
                companies_by_id={
                    company_id: asdict(company)
                    for company_id, company in result.companies_by_id.items()
                },
                telemetry=TelemetryData(
                    run_id=result.run_id,
                    iteration_count=result.iteration_count,
                    tool_call_count=result.tool_call_count,
                    end_reason=result.end_reason.value,
                ),
            )
        )


class ErrorData(BaseModel):
    message: str


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    data: ErrorData


SearchEvent = (
    ActivityEvent | PartialTextEvent | ClarificationEvent | FinalAnswerEvent | ErrorEvent
)

TERMINAL_EVENT_TYPES = frozenset({"clarification", "final_answer", "error"})
