# =============================================================================
# LangGraph Orchestrator — The Agentic Search Loop
# =============================================================================
#
# The loop controller wires anchor resolution, the plan → retrieve → filter
# → rerank → critic iterations and the finalizer into a LangGraph
# StateGraph:
#
#              ┌──(new request)──▶ anchor ──(exact match)──────┐
#   START ─────┤                     │                          ▼
#              └──(resume)───────▶ loop ──(terminal)──────▶ finalize ──▶ END
#                                    │
#                                    └──(clarification)──▶ END
#
# DESIGN DECISION: The iterations live INSIDE the loop node.
# Each iteration is strictly sequential and shares one LoopState object;
# modelling them as graph cycles would only add state copies and a
# recursion limit to tune. The graph carries the coarse request phases.
#
# DESIGN DECISION: Plain TypedDict state holding live objects.
# Dependencies (LLM, retrieval client, session store), the emit callback
# and the Guardrails instance travel in the state. Not JSON-serialisable,
# which is safe because no checkpointer is configured; suspension is
# handled explicitly through the ClarificationStore instead.
#
# DESIGN DECISION: Failure mapping at one place.
# Nodes let exceptions propagate. _execute() turns them into a single
# error event with a stable message (plus the migration hint for schema
# mismatches) and an "error" telemetry outcome. Guardrail exhaustion is
# not an error: the loop node catches it and the finalizer still runs.
#
# EVENT CONTRACT:
#   zero or more activity / partial_text events, then exactly one of
#   final_answer | clarification | error
# =============================================================================

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from app.agents.anchor import NameExtractor, RegexNameExtractor, resolve_anchor
from app.agents.clarification import AmbiguityDetector, DetectionContext, SectorSpreadDetector
from app.agents.critic import critique, decide, top_ids
from app.agents.filters import apply_plan_filters
from app.agents.finalizer import (
    PARTIAL_TEXT_CHARS,
    RequestMode,
    build_exact_match_result,
    extract_requested_count,
    finalize,
    infer_request_mode,
)
from app.agents.guardrails import GuardrailExceeded, Guardrails
from app.agents.planner import default_plan, iteration_variants, plan_search
from app.agents.reranker import rerank
from app.agents.retriever import EmbedFn, hydrate_working_set, retrieve_candidates
from app.config import settings
from app.models.plans import SearchPlan
from app.models.requests import ChatMessage, ClientContext, latest_user_message
from app.models.responses import (
    ActivityData,
    ActivityEvent,
    ClarificationEvent,
    ErrorData,
    ErrorEvent,
    FinalAnswerEvent,
    PartialTextData,
    PartialTextEvent,
    SearchEvent,
)
from app.models.search import (
    ClarificationRequest,
    Company,
    EndReason,
    FinalResult,
    LoopLimits,
    LoopState,
    clear_ranking,
)
from app.models.session import ClarificationSession
from app.services.embedder import embed_texts
from app.services.llm import LLMProvider, get_llm_provider
from app.services.retrieval import (
    SCHEMA_MISMATCH_HINT,
    EntityRetrievalClient,
    RetrievalError,
    get_retrieval_client,
)
from app.services.session_store import ClarificationStore, get_clarification_store
from app.services.telemetry import StepRecorder, TelemetrySink, get_telemetry_sink

logger = logging.getLogger(__name__)

SEARCH_UNAVAILABLE_MESSAGE = "Search is temporarily unavailable. Please try again in a moment."
EMPTY_INPUT_MESSAGE = "Please enter a search request."
SESSION_EXPIRED_MESSAGE = "Session expired. Please start a new search."

EmitFn = Callable[[SearchEvent], Awaitable[None]]


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


@dataclass
class SearchDeps:
    """Everything the loop talks to. Tests pass fakes; the API uses defaults."""

    llm: LLMProvider
    retrieval: EntityRetrievalClient
    embed: EmbedFn
    sessions: ClarificationStore
    telemetry: TelemetrySink
    name_extractor: NameExtractor = field(default_factory=RegexNameExtractor)
    ambiguity_detector: AmbiguityDetector | None = field(default_factory=SectorSpreadDetector)
    limits: LoopLimits = field(default_factory=LoopLimits.from_settings)


def get_default_deps() -> SearchDeps:
    return SearchDeps(
        llm=get_llm_provider(),
        retrieval=get_retrieval_client(),
        embed=embed_texts,
        sessions=get_clarification_store(),
        telemetry=get_telemetry_sink(),
        ambiguity_detector=SectorSpreadDetector() if settings.clarification_enabled else None,
    )


# ---------------------------------------------------------------------------
# Graph State Schema
# ---------------------------------------------------------------------------


class SearchState(TypedDict, total=False):
    """
    State that flows through the LangGraph graph.

    Uses total=False so nodes only need to return the keys they update.
    """

    # --- Collaborators (set by caller) ---
    deps: SearchDeps
    emit: EmitFn
    guardrails: Guardrails
    recorder: StepRecorder

    # --- Request ---
    session_id: str
    user_message: str
    messages: list[ChatMessage]
    previous_ids: list[str]
    request_mode: RequestMode
    requested_count: int | None
    resumed: bool

    # --- Loop ---
    loop_state: LoopState
    anchor: Company | None
    plan: SearchPlan
    exact_match: Company | None
    suspended: bool
    end_reason: EndReason

    # --- Output ---
    result: FinalResult


async def _activity(
    emit: EmitFn, activity_id: str, label: str, detail: str, status: str = "running",
) -> None:
    await emit(ActivityEvent(
        data=ActivityData(id=activity_id, label=label, detail=detail, status=status),
    ))


# ---------------------------------------------------------------------------
# Node Functions
# ---------------------------------------------------------------------------


async def anchor_node(state: SearchState) -> dict:
    """Resolve company names in the message: anchor, short-circuit, or neither."""
    deps, emit = state["deps"], state["emit"]
    await _activity(emit, "anchor", "Resolving company names", "Checking for named companies")

    started = time.monotonic()
    resolution = await resolve_anchor(
        state["user_message"],
        deps.retrieval,
        deps.name_extractor,
        state["guardrails"],
        deps.limits,
        statuses=state["plan"].filters.statuses,
    )
    await state["recorder"].record(
        "anchor_resolution", started=started,
        input_summary={"candidates": resolution.candidates},
        output_summary={
            "mode": resolution.mode,
            "score": resolution.score,
            "company_id": resolution.company.id if resolution.company else None,
        },
    )

    name = resolution.company.company_name if resolution.company else ""
    detail = {
        "anchor": f"Searching for companies similar to {name}",
        "exact_match": f"Found {name}",
        "none": "No specific company named",
    }[resolution.mode]
    await _activity(emit, "anchor", "Resolving company names", detail, "completed")

    if resolution.mode == "exact_match":
        return {"exact_match": resolution.company, "end_reason": EndReason.EXACT_MATCH}
    if resolution.mode == "anchor":
        return {"anchor": resolution.company}
    return {"anchor": None}


async def loop_node(state: SearchState) -> dict:
    """
    Run iterations until a stop rule, a guardrail or a clarification.

    Planner, reranker, critic and hydrate failures propagate.
    """
    deps, emit = state["deps"], state["emit"]
    limits = deps.limits
    guardrails: Guardrails = state["guardrails"]
    recorder: StepRecorder = state["recorder"]
    loop: LoopState = state["loop_state"]
    anchor: Company | None = state.get("anchor")
    anchor_id = anchor.id if anchor else None
    user_message = state["user_message"]
    mode = state["request_mode"]
    previous_ids = state["previous_ids"]
    plan = state["plan"]

    exclude_ids = ([anchor_id] if anchor_id else []) + (previous_ids if mode == "more" else [])
    include_ids = previous_ids if mode == "filter" and previous_ids else None

    end_reason: EndReason | None = None
    try:
        while end_reason is None:
            guardrails.check_iteration()
            loop.iteration += 1
            n = loop.iteration
            logger.info("Iteration %d (tool calls so far: %d)", n, loop.tool_calls)

            # --- Plan ---
            await _activity(emit, f"plan-{n}", f"Planning round {n}", "Generating search plan")
            started = time.monotonic()
            plan = await plan_search(
                deps.llm, guardrails, limits,
                user_message=user_message,
                messages=state["messages"],
                previous_top_ids=loop.previous_top_ids,
                anchor=anchor,
                carried_variants=loop.carried_variants,
                clarification=loop.clarification,
            )
            carried = len(loop.carried_variants)
            _, variants = iteration_variants(plan, loop.carried_variants, limits)
            loop.carried_variants = []
            await recorder.record(
                "planner", started=started,
                input_summary={"carried_variants": carried},
                output_summary={"intent": plan.intent, "variants": variants},
            )
            await _activity(
                emit, f"plan-{n}", f"Planning round {n}",
                f"{len(variants)} query variants", "completed",
            )

            # --- Retrieve ---
            await _activity(emit, f"search-{n}", "Searching", "; ".join(variants)[:200])
            retrieval_round = await retrieve_candidates(
                plan=plan,
                variants=variants,
                candidates=loop.candidates,
                retrieval=deps.retrieval,
                embed=deps.embed,
                guardrails=guardrails,
                limits=limits,
                recorder=recorder,
                exclude_ids=exclude_ids,
                include_ids=include_ids,
            )
            loop.candidates = retrieval_round.candidates
            if retrieval_round.exhausted:
                raise GuardrailExceeded(retrieval_round.exhausted)
            await _activity(
                emit, f"search-{n}", "Searching",
                f"{len(loop.candidates)} candidates", "completed",
            )

            # --- Hydrate & filter ---
            await _activity(emit, f"filter-{n}", "Reviewing candidates", "Applying filters")
            working, companies = await hydrate_working_set(
                loop.candidates, deps.retrieval, guardrails, limits, recorder,
            )
            survivors = apply_plan_filters(
                working, companies, plan.filters, anchor_id, limits.rerank_pool_size,
            )
            loop.filtered_ids = [c.company_id for c in survivors]
            await _activity(
                emit, f"filter-{n}", "Reviewing candidates",
                f"{len(survivors)} of {len(working)} passed filters", "completed",
            )
            if not survivors:
                logger.info("Iteration %d: no candidates survived filtering", n)
                continue

            # --- Clarification (once per request) ---
            if deps.ambiguity_detector is not None and not loop.clarified:
                request = deps.ambiguity_detector.detect(
                    user_message, plan, survivors, companies,
                    DetectionContext(has_anchor=anchor is not None, request_mode=mode),
                )
                if request is not None:
                    await _suspend(state, plan, request)
                    return {"plan": plan, "suspended": True}

            # --- Rerank ---
            await _activity(emit, f"rerank-{n}", "Ranking", f"Ranking {len(survivors)} candidates")
            started = time.monotonic()
            ranked, confidence = await rerank(
                deps.llm, guardrails, limits,
                user_message=user_message, plan=plan, candidates=survivors,
            )
            loop.ranked_ids = [c.company_id for c in ranked]
            # Only the latest round's overlay survives in the candidate map
            loop.candidates = {cid: clear_ranking(c) for cid, c in loop.candidates.items()}
            loop.candidates.update((c.company_id, c) for c in ranked)
            loop.last_confidence = confidence
            await recorder.record(
                "rerank", started=started,
                input_summary={"candidates": len(survivors)},
                output_summary={"confidence": confidence, "top": loop.ranked_ids[:5]},
                before=len(survivors), after=len(ranked),
            )
            await _activity(
                emit, f"rerank-{n}", "Ranking", f"Confidence {confidence:.2f}", "completed",
            )

            # --- Critic ---
            await _activity(emit, f"critic-{n}", "Evaluating results", "Deciding whether to continue")
            started = time.monotonic()
            output = await critique(
                deps.llm, guardrails, limits,
                user_message=user_message,
                iteration=n,
                ranked=ranked,
                confidence=confidence,
                previous_top_ids=loop.previous_top_ids,
            )
            current_top = top_ids(ranked)
            decision = decide(output, confidence, loop.previous_top_ids, current_top, limits)
            loop.previous_top_ids = current_top
            loop.previous_best_score = max(loop.previous_best_score, ranked[0].combined_score)
            loop.carried_variants = decision.carried_variants
            end_reason = decision.end_reason
            await recorder.record(
                "critic", started=started,
                input_summary={"iteration": n, "confidence": confidence},
                output_summary={
                    "decision": output.decision,
                    "end_reason": end_reason.value if end_reason else None,
                    "new_variants": decision.carried_variants,
                },
            )
            await _activity(emit, f"critic-{n}", "Evaluating results", decision.why[:200], "completed")
    except GuardrailExceeded as e:
        logger.info("Guardrail reached (%s) after %d iterations", e.ceiling, loop.iteration)
        end_reason = EndReason.GUARDRAIL_HIT

    logger.info("Loop ended: %s", end_reason.value)
    return {"plan": plan, "end_reason": end_reason, "suspended": False}


async def finalize_node(state: SearchState) -> dict:
    """Build the final answer, emit it, and close out telemetry."""
    deps, emit = state["deps"], state["emit"]
    loop: LoopState = state["loop_state"]
    recorder: StepRecorder = state["recorder"]

    await _activity(emit, "finalize", "Finalizing", "Preparing results")
    exact = state.get("exact_match")
    if exact is not None:
        result = build_exact_match_result(exact, loop, recorder.run_id)
    else:
        result = await finalize(
            llm=deps.llm,
            retrieval=deps.retrieval,
            limits=deps.limits,
            recorder=recorder,
            state=loop,
            user_message=state["user_message"],
            plan=state["plan"],
            anchor=state.get("anchor"),
            request_mode=state["request_mode"],
            previous_ids=state["previous_ids"],
            requested_count=state.get("requested_count"),
            end_reason=state["end_reason"],
        )
    await _activity(
        emit, "finalize", "Finalizing", f"{len(result.references)} results", "completed",
    )

    await _close_run(state, result.end_reason, len(result.references))
    await deps.telemetry.record_results(recorder.run_id, result.references)

    if result.references:
        await emit(PartialTextEvent(data=PartialTextData(text=result.content[:PARTIAL_TEXT_CHARS])))
    await emit(FinalAnswerEvent.from_result(result))
    return {"result": result}


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


def _route_entry(state: SearchState) -> str:
    return "loop" if state.get("resumed") else "anchor"


def _route_after_anchor(state: SearchState) -> str:
    return "finalize" if state.get("exact_match") is not None else "loop"


def _route_after_loop(state: SearchState) -> str:
    return END if state.get("suspended") else "finalize"


# ---------------------------------------------------------------------------
# Graph Assembly
# ---------------------------------------------------------------------------
# Compiled once at module level and reused across requests.
# ---------------------------------------------------------------------------

_builder = StateGraph(SearchState)
_builder.add_node("anchor", anchor_node)
_builder.add_node("loop", loop_node)
_builder.add_node("finalize", finalize_node)

_builder.add_conditional_edges(START, _route_entry, {"anchor": "anchor", "loop": "loop"})
_builder.add_conditional_edges(
    "anchor", _route_after_anchor, {"finalize": "finalize", "loop": "loop"},
)
_builder.add_conditional_edges("loop", _route_after_loop, {"finalize": "finalize", END: END})
_builder.add_edge("finalize", END)

graph = _builder.compile()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def run_search(
    messages: Sequence[ChatMessage],
    emit: EmitFn,
    client_context: ClientContext | None = None,
    session_id: str | None = None,
    deps: SearchDeps | None = None,
) -> None:
    """
    Entry point for a new search turn.

    Emits progress events and exactly one terminal event through `emit`.
    Never raises for search failures; they become an error event.
    """
    user_message = latest_user_message(list(messages))
    if not user_message:
        await emit(ErrorEvent(data=ErrorData(message=EMPTY_INPUT_MESSAGE)))
        return

    deps = deps or get_default_deps()
    session_id = session_id or str(uuid.uuid4())
    previous_ids = list(client_context.previous_candidate_ids) if client_context else []
    plan = default_plan(user_message)
    loop = LoopState()
    run_id = await deps.telemetry.start_run(session_id, user_message, plan.filters.statuses)

    logger.info(
        "Search started: session=%s, run=%s, message='%s'",
        session_id, run_id, user_message[:80],
    )
    await _execute({
        "deps": deps,
        "emit": emit,
        "guardrails": Guardrails(loop, deps.limits),
        "recorder": StepRecorder(deps.telemetry, run_id, loop),
        "session_id": session_id,
        "user_message": user_message,
        "messages": list(messages),
        "previous_ids": previous_ids,
        "request_mode": infer_request_mode(user_message, previous_ids),
        "requested_count": extract_requested_count(user_message),
        "resumed": False,
        "loop_state": loop,
        "plan": plan,
    })


async def resume_search(
    session_id: str,
    selection: str,
    emit: EmitFn,
    deps: SearchDeps | None = None,
) -> None:
    """
    Continue a search suspended on a clarification question.

    An unknown or expired session yields a final answer carrying the
    session-expired message.
    """
    deps = deps or get_default_deps()
    try:
        session = await deps.sessions.pop(session_id)
    except Exception:
        logger.exception("Clarification store lookup failed for session %s", session_id)
        await emit(ErrorEvent(data=ErrorData(message=SEARCH_UNAVAILABLE_MESSAGE)))
        return

    if session is None:
        logger.info("Resume for unknown or expired session %s", session_id)
        await emit(FinalAnswerEvent.from_result(FinalResult(
            content=SESSION_EXPIRED_MESSAGE,
            references=[],
            companies_by_id={},
            end_reason=EndReason.SESSION_EXPIRED,
            iteration_count=0,
            tool_call_count=0,
        )))
        return

    loop = session.loop_state
    loop.clarified = True
    loop.clarification = selection.strip()
    messages = [
        *session.messages,
        ChatMessage(role="assistant", content=f'User clarification provided: "{loop.clarification}"'),
    ]
    run_id = session.run_id or await deps.telemetry.start_run(
        session_id, session.user_message,
        session.plan.filters.statuses if session.plan else ["startup"],
    )

    logger.info(
        "Resuming session %s at iteration %d (tool calls %d)",
        session_id, loop.iteration, loop.tool_calls,
    )
    await _activity(emit, "resume", "Resuming search", f"Focusing on {loop.clarification}")
    await _execute({
        "deps": deps,
        "emit": emit,
        "guardrails": Guardrails(loop, deps.limits),
        "recorder": StepRecorder(deps.telemetry, run_id, loop),
        "session_id": session_id,
        "user_message": session.user_message,
        "messages": messages,
        "previous_ids": list(session.previous_candidate_ids),
        "request_mode": session.request_mode,
        "requested_count": session.requested_count,
        "resumed": True,
        "loop_state": loop,
        "anchor": session.anchor,
        "plan": session.plan or default_plan(session.user_message),
    })


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


async def _execute(state: SearchState) -> None:
    """Invoke the graph; map any failure to one error event."""
    try:
        await graph.ainvoke(state)
    except Exception as e:
        logger.exception("Search failed (session=%s)", state["session_id"])
        message = SEARCH_UNAVAILABLE_MESSAGE
        if isinstance(e, RetrievalError) and e.schema_mismatch:
            message = f"{SEARCH_UNAVAILABLE_MESSAGE} {SCHEMA_MISMATCH_HINT}"
        await _close_run(state, EndReason.ERROR, 0)
        await state["emit"](ErrorEvent(data=ErrorData(message=message)))


async def _close_run(state: SearchState, end_reason: EndReason, result_count: int) -> None:
    loop: LoopState = state["loop_state"]
    await state["deps"].telemetry.finalize_run(
        state["recorder"].run_id,
        session_id=state["session_id"],
        query_text=state["user_message"],
        statuses=state["plan"].filters.statuses,
        iteration_count=loop.iteration,
        tool_call_count=loop.tool_calls,
        final_candidate_count=result_count,
        end_reason=end_reason,
        latency_ms=state["guardrails"].elapsed_ms(),
    )


async def _suspend(state: SearchState, plan: SearchPlan, request: ClarificationRequest) -> None:
    """Park the loop in the session store and ask the question."""
    loop: LoopState = state["loop_state"]
    state["guardrails"].checkpoint()
    session = ClarificationSession(
        session_id=state["session_id"],
        run_id=state["recorder"].run_id,
        user_message=state["user_message"],
        messages=state["messages"],
        previous_candidate_ids=state["previous_ids"],
        request_mode=state["request_mode"],
        requested_count=state.get("requested_count"),
        anchor=state.get("anchor"),
        plan=plan,
        loop_state=loop,
        question=request.question,
        options=request.options,
        created_at=time.time(),
    )
    await state["deps"].sessions.put(session)
    logger.info(
        "Suspended session %s for clarification (%d options)",
        state["session_id"], len(request.options),
    )
    await state["emit"](ClarificationEvent.from_request(state["session_id"], request))
