# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# Search telemetry tables, written fire-and-forget by services/telemetry.py.
# The company dataset itself is owned by the backend and read only through
# the search SQL functions (services/retrieval.py).
#
# ┌──────────────────┐       ┌───────────────────────┐
# │  search_runs     │──1:N─▶│  search_run_steps     │
# │ id (PK, text)    │       │ run_id, iteration_no  │
# │ session_id       │       │ step_order, tool_name │
# │ end_reason       │       │ input/output (jsonb)  │
# └──────────────────┘       └───────────────────────┘
#          │ 1:N
#          ▼
# ┌───────────────────────┐
# │  search_run_results   │
# │ run_id, company_id    │
# │ rank, confidence      │
# └───────────────────────┘
#
# DESIGN DECISIONS:
#
# 1. Client-generated run ids (UUID4 text): the search loop needs a run id
#    before the first insert has been confirmed, and finalize_run() falls
#    back to an insert when the initial insert failed.
#
# 2. No FK from search_run_steps to search_runs: a step may be written
#    after a failed run insert; losing the step to an FK violation would
#    make telemetry less useful exactly when something is wrong.
# =============================================================================

from datetime import datetime

from sqlalchemy import (
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for all ORM models."""

    pass


# =============================================================================
# Search Telemetry
# =============================================================================
#
# One search_runs row per request, one search_run_steps row per tool call,
# one search_run_results row per returned company. Enables:
# - Latency and tool-call budgets per request
# - Which strategies actually contribute candidates
# - End-reason distribution (how often guardrails fire)
# =============================================================================


class SearchRun(Base):
    __tablename__ = "search_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    session_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    query_text: Mapped[str] = mapped_column(Text, nullable=False)
    status_scope: Mapped[list[str] | None] = mapped_column(ARRAY(Text), nullable=True)
    iteration_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tool_call_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    final_candidate_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # "in_progress" until finalized; stays so while a clarification is pending
    end_reason: Mapped[str] = mapped_column(String(32), nullable=False, default="in_progress")
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(),
        nullable=False,
    )


class SearchRunStep(Base):
    __tablename__ = "search_run_steps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(36), nullable=False)
    iteration_no: Mapped[int] = mapped_column(Integer, nullable=False)
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    tool_name: Mapped[str] = mapped_column(String(100), nullable=False)
    input_summary: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    output_summary: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    candidate_count_before: Mapped[int | None] = mapped_column(Integer, nullable=True)
    candidate_count_after: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )


class SearchRunResult(Base):
    __tablename__ = "search_run_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(36), nullable=False)
    company_id: Mapped[str] = mapped_column(Text, nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    # {"evidenceChips": [...], "reason": "..."}
    evidence: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )


search_step_run_idx = Index("idx_search_run_steps_run_id", SearchRunStep.run_id)
search_result_run_idx = Index("idx_search_run_results_run_id", SearchRunResult.run_id)
