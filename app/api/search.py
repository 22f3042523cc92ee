# =============================================================================
# Search API — Streamed Agentic Company Search
# =============================================================================
#
# POST /search          → run a search turn
# POST /search/resume   → answer a clarification question
#
# Both stream newline-delimited JSON (application/x-ndjson): progress
# events, then exactly one terminal event (final_answer | clarification |
# error).
#
# FLOW:
#   1. Validate the body (empty input → 422 before any external call)
#   2. Start the orchestrator in its own task, feeding an asyncio.Queue
#   3. Yield one JSON line per event until the terminal event arrives
#
# DESIGN DECISION: The orchestrator runs in a separate task.
# The search keeps its own pace (and its own timeouts) regardless of how
# fast the client reads. If the client disconnects, the generator is
# closed and the task is cancelled.
#
# This endpoint is thin by design: validation, streaming and the last-
# resort error event. Everything else happens in app.agents.orchestrator.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from app.agents.orchestrator import (
    SEARCH_UNAVAILABLE_MESSAGE,
    SearchDeps,
    get_default_deps,
    resume_search,
    run_search,
)
from app.models.requests import ResumeRequest, SearchRequest
from app.models.responses import TERMINAL_EVENT_TYPES, ErrorData, ErrorEvent, SearchEvent

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Search"])

NDJSON_MEDIA_TYPE = "application/x-ndjson"


def get_search_deps() -> SearchDeps:
    """FastAPI dependency; tests replace it via app.dependency_overrides."""
    return get_default_deps()


async def _stream_events(
    run: Callable[[Callable[[SearchEvent], Awaitable[None]]], Awaitable[None]],
) -> AsyncIterator[str]:
    """Run the orchestrator in a task and yield its events as JSON lines."""
    queue: asyncio.Queue[SearchEvent | None] = asyncio.Queue()

    async def emit(event: SearchEvent) -> None:
        await queue.put(event)

    async def worker() -> None:
        try:
            await run(emit)
        except Exception:
            logger.exception("Search task failed outside the orchestrator")
            await queue.put(ErrorEvent(data=ErrorData(message=SEARCH_UNAVAILABLE_MESSAGE)))
        finally:
            await queue.put(None)

    task = asyncio.create_task(worker())
    terminal_sent = False
    try:
        while True:
            event = await queue.get()
            if event is None:
                break
            if terminal_sent:
                logger.warning("Dropping %s event after terminal event", event.type)
                continue
            terminal_sent = event.type in TERMINAL_EVENT_TYPES
            yield event.model_dump_json() + "\n"
        if not terminal_sent:
            yield ErrorEvent(data=ErrorData(message=SEARCH_UNAVAILABLE_MESSAGE)).model_dump_json() + "\n"
    finally:
        if not task.done():
            task.cancel()


# ---------------------------------------------------------------------------
# POST /search — Run a search turn
# ---------------------------------------------------------------------------


@router.post(
    "/search",
    summary="Search for companies",
    description=(
        "Run the agentic search loop over the company dataset. Streams "
        "activity events, an optional partial summary, and one terminal "
        "event: final_answer, clarification or error."
    ),
    response_class=StreamingResponse,
)
async def search_endpoint(
    request: SearchRequest,
    deps: SearchDeps = Depends(get_search_deps),
) -> StreamingResponse:
    logger.info(
        "Search request: %d messages, %d previous ids, session=%s",
        len(request.messages),
        len(request.client_context.previous_candidate_ids),
        request.session_id,
    )

    async def run(emit) -> None:
        await run_search(
            request.messages,
            emit,
            client_context=request.client_context,
            session_id=request.session_id,
            deps=deps,
        )

    return StreamingResponse(_stream_events(run), media_type=NDJSON_MEDIA_TYPE)


# ---------------------------------------------------------------------------
# POST /search/resume — Answer a clarification question
# ---------------------------------------------------------------------------


@router.post(
    "/search/resume",
    summary="Resume a search after a clarification question",
    description=(
        "Continue a search suspended on a clarification question. Unknown or "
        "expired sessions return a final_answer with a session-expired message."
    ),
    response_class=StreamingResponse,
)
async def resume_endpoint(
    request: ResumeRequest,
    deps: SearchDeps = Depends(get_search_deps),
) -> StreamingResponse:
    logger.info("Resume request: session=%s", request.session_id)

    async def run(emit) -> None:
        await resume_search(request.session_id, request.selection, emit, deps=deps)

    return StreamingResponse(_stream_events(run), media_type=NDJSON_MEDIA_TYPE)
