# =============================================================================
# Search Telemetry — Fire-and-Forget Run / Step / Result Rows
# =============================================================================
#
# Every search request records:
#   - one search_runs row (start → updates → finalize)
#   - one search_run_steps row per tool call (planner, embedding, each
#     retrieval call, hydrate, rerank, critic, summary)
#   - one search_run_results row per returned company
#
# DESIGN DECISION: Telemetry never fails a search.
# Each write opens its own session (async_session_factory, the same pattern
# as the background metric writer) and is wrapped in try/except with a
# logger.warning. A database outage costs us telemetry, never an answer.
#
# DESIGN DECISION: Run ids are generated here, not by the database.
# start_run() returns a UUID even if its insert fails; finalize_run() then
# inserts the row instead of updating it.
# =============================================================================

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.models.search import EndReason, LoopState, Reference

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class StepRecord:
    """One tool call inside a search run."""

    iteration_no: int
    step_order: int
    tool_name: str
    input_summary: dict[str, Any]
    output_summary: dict[str, Any]
    duration_ms: int
    candidate_count_before: int
    candidate_count_after: int


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class TelemetrySink(Protocol):
    """Implementations must swallow their own failures."""

    async def start_run(
        self, session_id: str | None, query_text: str, statuses: Sequence[str],
    ) -> str: ...

    async def record_step(self, run_id: str, step: StepRecord) -> None: ...

    async def finalize_run(
        self,
        run_id: str,
        *,
        session_id: str | None,
        query_text: str,
        statuses: Sequence[str],
        iteration_count: int,
        tool_call_count: int,
        final_candidate_count: int,
        end_reason: EndReason,
        latency_ms: int,
    ) -> None: ...

    async def record_results(self, run_id: str, references: Sequence[Reference]) -> None: ...


# ---------------------------------------------------------------------------
# Implementation 1: No-op (telemetry disabled, tests)
# ---------------------------------------------------------------------------


class NullTelemetrySink:
    async def start_run(self, session_id, query_text, statuses) -> str:
        return str(uuid.uuid4())

    async def record_step(self, run_id, step) -> None:
        return None

    async def finalize_run(self, run_id, **fields) -> None:
        return None

    async def record_results(self, run_id, references) -> None:
        return None


# ---------------------------------------------------------------------------
# Implementation 2: PostgreSQL via SQLAlchemy ORM
# ---------------------------------------------------------------------------


class SqlTelemetrySink:
    """Writes telemetry rows with short-lived sessions, one per write."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        pending_ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if session_factory is None:
            from app.db.engine import async_session_factory

            session_factory = async_session_factory
        self._session_factory = session_factory
        # A run can outlive its start by one suspended clarification plus
        # one full loop; after that nobody will finalize it
        if pending_ttl_seconds is None:
            pending_ttl_seconds = (
                settings.clarification_ttl_seconds + settings.search_max_runtime_ms / 1000
            )
        self._pending_ttl = pending_ttl_seconds
        self._clock = clock
        # Runs whose initial insert failed → when; finalize inserts instead of updating
        self._unpersisted: dict[str, float] = {}

    @property
    def pending_inserts(self) -> int:
        return len(self._unpersisted)

    def _forget_abandoned(self) -> None:
        cutoff = self._clock() - self._pending_ttl
        for run_id in [rid for rid, since in self._unpersisted.items() if since < cutoff]:
            del self._unpersisted[run_id]

    async def start_run(
        self, session_id: str | None, query_text: str, statuses: Sequence[str],
    ) -> str:
        from app.db.models import SearchRun

        run_id = str(uuid.uuid4())
        self._forget_abandoned()
        try:
            async with self._session_factory() as session:
                session.add(SearchRun(
                    id=run_id,
                    session_id=session_id,
                    query_text=query_text,
                    status_scope=list(statuses),
                    end_reason=EndReason.IN_PROGRESS.value,
                ))
                await session.commit()
        except Exception as e:
            self._unpersisted[run_id] = self._clock()
            logger.warning("Failed to insert search run %s: %s", run_id, e)
        return run_id

    async def record_step(self, run_id: str, step: StepRecord) -> None:
        from app.db.models import SearchRunStep

        try:
            async with self._session_factory() as session:
                session.add(SearchRunStep(
                    run_id=run_id,
                    iteration_no=step.iteration_no,
                    step_order=step.step_order,
                    tool_name=step.tool_name,
                    input_summary=step.input_summary,
                    output_summary=step.output_summary,
                    duration_ms=step.duration_ms,
                    candidate_count_before=step.candidate_count_before,
                    candidate_count_after=step.candidate_count_after,
                ))
                await session.commit()
        except Exception as e:
            logger.warning("Failed to record step %s for run %s: %s", step.tool_name, run_id, e)

    async def finalize_run(
        self,
        run_id: str,
        *,
        session_id: str | None,
        query_text: str,
        statuses: Sequence[str],
        iteration_count: int,
        tool_call_count: int,
        final_candidate_count: int,
        end_reason: EndReason,
        latency_ms: int,
    ) -> None:
        from app.db.models import SearchRun

        values = {
            "status_scope": list(statuses),
            "iteration_count": iteration_count,
            "tool_call_count": tool_call_count,
            "final_candidate_count": final_candidate_count,
            "end_reason": end_reason.value,
            "latency_ms": latency_ms,
        }
        try:
            async with self._session_factory() as session:
                if run_id in self._unpersisted:
                    session.add(SearchRun(
                        id=run_id, session_id=session_id, query_text=query_text, **values,
                    ))
                else:
                    await session.execute(
                        update(SearchRun).where(SearchRun.id == run_id).values(**values)
                    )
                await session.commit()
        except Exception as e:
            logger.warning("Failed to finalize search run %s: %s", run_id, e)
        finally:
            self._unpersisted.pop(run_id, None)

    async def record_results(self, run_id: str, references: Sequence[Reference]) -> None:
        from app.db.models import SearchRunResult

        if not references:
            return
        try:
            async with self._session_factory() as session:
                session.add_all([
                    SearchRunResult(
                        run_id=run_id,
                        company_id=ref.company_id,
                        rank=rank,
                        confidence=ref.confidence,
                        evidence={"evidenceChips": ref.evidence_chips, "reason": ref.reason},
                    )
                    for rank, ref in enumerate(references, 1)
                ])
                await session.commit()
        except Exception as e:
            logger.warning("Failed to record results for run %s: %s", run_id, e)


# ---------------------------------------------------------------------------
# Step Recorder
# ---------------------------------------------------------------------------


class StepRecorder:
    """
    Numbers and writes step rows for one run.

    The step counter lives on LoopState so numbering continues across a
    clarification suspend/resume.
    """

    def __init__(self, sink: TelemetrySink, run_id: str, state: LoopState) -> None:
        self._sink = sink
        self._run_id = run_id
        self._state = state

    @property
    def run_id(self) -> str:
        return self._run_id

    async def record(
        self,
        tool_name: str,
        *,
        started: float,
        input_summary: dict[str, Any] | None = None,
        output_summary: dict[str, Any] | None = None,
        before: int = 0,
        after: int = 0,
    ) -> None:
        self._state.step_count += 1
        await self._sink.record_step(self._run_id, StepRecord(
            iteration_no=self._state.iteration,
            step_order=self._state.step_count,
            tool_name=tool_name,
            input_summary=input_summary or {},
            output_summary=output_summary or {},
            duration_ms=int((time.monotonic() - started) * 1000),
            candidate_count_before=before,
            candidate_count_after=after,
        ))


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_sink: SqlTelemetrySink | NullTelemetrySink | None = None


def get_telemetry_sink() -> SqlTelemetrySink | NullTelemetrySink:
    global _sink
    if _sink is None:
        _sink = SqlTelemetrySink() if settings.telemetry_enabled else NullTelemetrySink()
    return _sink
