# =============================================================================
# Result Finalizer — Candidates → FinalResult
# =============================================================================
#
# Runs once per completed request, whatever the end reason:
#
#   1. Pick the candidate order: reranked ids, else filtered ids, else the
#      candidate map hydrated and run through the plan filters (a guardrail
#      hit before the first filter pass)
#   2. Apply request-mode constraints ("more" / "filter") and drop the anchor
#   3. Keep the top target-count ids and hydrate them
#   4. Ask for a short summary (best effort, deterministic fallback)
#   5. Build references: reason, chips, confidence rounded to 3 decimals
#
# DESIGN DECISION: Finalization is not gated by the tool-call budget.
# A request that ended on guardrail_hit must still be able to hydrate and
# summarise what it found. The calls here are counted, and each runs
# under its own timeout, but none is refused.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Sequence
from typing import Literal

from app.agents.anchor import has_similarity_intent
from app.agents.filters import apply_plan_filters
from app.agents.prompts import build_summary_prompt
from app.models.plans import MAX_TARGET_RESULT_COUNT, SearchPlan
from app.models.search import (
    Candidate,
    Company,
    EndReason,
    FinalResult,
    LoopLimits,
    LoopState,
    Reference,
    sort_candidates,
)
from app.services.llm import LLMProvider, complete_text
from app.services.retrieval import EntityRetrievalClient
from app.services.telemetry import StepRecorder

logger = logging.getLogger(__name__)

RequestMode = Literal["new", "more", "filter", "similar"]

NO_MATCH_MESSAGE = (
    "I could not find a confident match in the current company dataset. "
    "Try adding sector, category, or a specific company name."
)
EXACT_MATCH_REASON = "Exact company name match."
EXACT_MATCH_CONFIDENCE = 0.99
PARTIAL_TEXT_CHARS = 140
MAX_REFERENCE_CHIPS = 4


# ---------------------------------------------------------------------------
# Request Modes & Requested Count
# ---------------------------------------------------------------------------

_MORE_PATTERN = re.compile(
    r"\b(more|additional|another|others|next page|next ones|keep going)\b", re.IGNORECASE,
)
_FILTER_PATTERN = re.compile(
    r"\b(filter|narrow|refine|only|from these|of these|among these|from those|of those)\b",
    re.IGNORECASE,
)

_NUMBER_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6,
    "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12,
    "fifteen": 15, "twenty": 20,
}
_NUMBER = r"(\d{1,3}|" + "|".join(_NUMBER_WORDS) + r")"
_COUNT_PATTERNS = (
    re.compile(r"\btop\s+" + _NUMBER + r"\b", re.IGNORECASE),
    re.compile(
        r"\b" + _NUMBER + r"\s+(?:\w+\s+)?(?:companies|company|startups|results|businesses|"
        r"options|examples|names|competitors|alternatives)\b",
        re.IGNORECASE,
    ),
)
_SINGLE_PATTERN = re.compile(
    r"\b(?:a single|just one|only one)\s+(?:result|company|startup|match)\b", re.IGNORECASE,
)


def infer_request_mode(message: str, previous_ids: Sequence[str]) -> RequestMode:
    if previous_ids and _MORE_PATTERN.search(message):
        return "more"
    if previous_ids and _FILTER_PATTERN.search(message):
        return "filter"
    if has_similarity_intent(message):
        return "similar"
    return "new"


def extract_requested_count(message: str) -> int | None:
    """Explicit result count in the message ("top 5", "ten companies"), clamped to [1, 20]."""
    if _SINGLE_PATTERN.search(message):
        return 1
    for pattern in _COUNT_PATTERNS:
        match = pattern.search(message)
        if match:
            token = match.group(1).lower()
            value = _NUMBER_WORDS.get(token) or int(token)
            return max(1, min(MAX_TARGET_RESULT_COUNT, value))
    return None


def apply_reference_constraints(
    company_ids: Sequence[str],
    mode: RequestMode,
    previous_ids: Sequence[str],
    anchor_id: str | None,
) -> list[str]:
    previous = set(previous_ids)
    ids = [cid for cid in dict.fromkeys(company_ids) if cid != anchor_id]
    if mode == "more":
        return [cid for cid in ids if cid not in previous]
    if mode == "filter":
        return [cid for cid in ids if cid in previous]
    return ids


# ---------------------------------------------------------------------------
# References
# ---------------------------------------------------------------------------


def build_reference(
    candidate: Candidate, company: Company, anchor_name: str | None = None,
) -> Reference:
    chips = list(candidate.evidence_chips)
    if anchor_name:
        chips.insert(0, f"Similar to {anchor_name}")
    return Reference(
        company_id=company.id,
        company_name=company.company_name,
        reason=company.description or company.product_description or candidate.effective_reason,
        evidence_chips=list(dict.fromkeys(chips))[:MAX_REFERENCE_CHIPS],
        confidence=round(candidate.effective_confidence, 3),
        inline_description=candidate.inline_description,
    )


def fallback_summary(user_message: str, names: Sequence[str], anchor_name: str | None) -> str:
    if anchor_name:
        return f"Found {len(names)} companies similar to {anchor_name}."
    return f'Found {len(names)} companies matching "{user_message}".'


def build_exact_match_result(company: Company, state: LoopState, run_id: str | None) -> FinalResult:
    reference = Reference(
        company_id=company.id,
        company_name=company.company_name,
        reason=EXACT_MATCH_REASON,
        evidence_chips=["Exact Name"],
        confidence=EXACT_MATCH_CONFIDENCE,
        inline_description=company.tagline,
    )
    return FinalResult(
        content=f"{company.company_name} matches the company name you searched for.",
        references=[reference],
        companies_by_id={company.id: company},
        end_reason=EndReason.EXACT_MATCH,
        iteration_count=state.iteration,
        tool_call_count=state.tool_calls,
        run_id=run_id,
    )


def _reviewed_order(state: LoopState) -> list[str]:
    if state.ranked_ids:
        return list(state.ranked_ids)
    return list(state.filtered_ids)


async def _filter_unreviewed(
    retrieval: EntityRetrievalClient,
    limits: LoopLimits,
    recorder: StepRecorder,
    state: LoopState,
    plan: SearchPlan,
    anchor_id: str | None,
) -> tuple[list[str], dict[str, Company]]:
    """Hydrate and filter a candidate map the loop never got to filter."""
    working = sort_candidates(list(state.candidates.values()))[:limits.working_set_size]
    if not working:
        return [], {}

    started = time.monotonic()
    state.tool_calls += 1
    companies = await asyncio.wait_for(
        retrieval.get_companies_by_ids([c.company_id for c in working]),
        limits.retrieval_timeout_seconds,
    )
    by_id = {company.id: company for company in companies}
    survivors = apply_plan_filters(working, by_id, plan.filters, anchor_id, limits.rerank_pool_size)
    await recorder.record(
        "hydrate_unfiltered", started=started,
        input_summary={"ids": len(working)}, output_summary={"survivors": len(survivors)},
        before=len(working), after=len(survivors),
    )
    return [c.company_id for c in survivors], by_id


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def finalize(
    *,
    llm: LLMProvider,
    retrieval: EntityRetrievalClient,
    limits: LoopLimits,
    recorder: StepRecorder,
    state: LoopState,
    user_message: str,
    plan: SearchPlan,
    anchor: Company | None,
    request_mode: RequestMode,
    previous_ids: Sequence[str],
    requested_count: int | None,
    end_reason: EndReason,
) -> FinalResult:
    """
    Build the caller-facing result from the loop's terminal state.

    Raises RetrievalError (or TimeoutError) when the final hydrate fails.
    """
    anchor_id = anchor.id if anchor else None
    anchor_name = anchor.company_name if anchor else None
    order = _reviewed_order(state)
    prefetched: dict[str, Company] = {}
    if not order:
        order, prefetched = await _filter_unreviewed(
            retrieval, limits, recorder, state, plan, anchor_id,
        )
    ids = apply_reference_constraints(order, request_mode, previous_ids, anchor_id)
    target = max(1, requested_count or plan.target_result_count)
    selected = [cid for cid in ids if cid in state.candidates][:target]

    def result(content: str, references: list[Reference], companies: dict[str, Company]) -> FinalResult:
        return FinalResult(
            content=content,
            references=references,
            companies_by_id=companies,
            end_reason=end_reason,
            iteration_count=state.iteration,
            tool_call_count=state.tool_calls,
            run_id=recorder.run_id,
        )

    if not selected:
        if anchor is not None:
            return result(
                f"I found {anchor.company_name} as the anchor company, but could not "
                "find strong similar companies in the current dataset.",
                [], {anchor.id: anchor},
            )
        return result(NO_MATCH_MESSAGE, [], {})

    # --- Hydrate the final selection (skipped when already fetched) ---
    if all(cid in prefetched for cid in selected):
        by_id = prefetched
    else:
        started = time.monotonic()
        state.tool_calls += 1
        companies = await asyncio.wait_for(
            retrieval.get_companies_by_ids(selected), limits.retrieval_timeout_seconds,
        )
        by_id = {company.id: company for company in companies}
        await recorder.record(
            "hydrate_final", started=started,
            input_summary={"ids": len(selected)}, output_summary={"companies": len(by_id)},
            before=len(selected), after=len(by_id),
        )

    references = [
        build_reference(state.candidates[cid], by_id[cid], anchor_name)
        for cid in selected if cid in by_id
    ]
    if not references:
        return result(NO_MATCH_MESSAGE, [], {})
    names = [ref.company_name for ref in references]

    # --- Summary (best effort) ---
    started = time.monotonic()
    state.tool_calls += 1
    try:
        summary = await asyncio.wait_for(
            complete_text(llm, build_summary_prompt(user_message, names)),
            limits.llm_timeout_seconds,
        )
    except Exception as e:
        logger.warning("Summary call failed, using fallback: %s", e)
        summary = ""
    await recorder.record(
        "summary", started=started,
        input_summary={"companies": len(names)}, output_summary={"chars": len(summary)},
        before=len(references), after=len(references),
    )
    summary = summary or fallback_summary(user_message, names, anchor_name)

    return result(summary, references, {ref.company_id: by_id[ref.company_id] for ref in references})
