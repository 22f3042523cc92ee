# =============================================================================
# Query Planner — Conversation → SearchPlan
# =============================================================================
#
# Each iteration starts with a fresh plan from the LLM:
#   intent, target result count, query variants, strategy order, filters
#
# POST-PROCESSING (deterministic, after schema validation):
#   1. Taxonomy values outside the allow-lists are dropped
#   2. Statuses are cleaned; an empty list falls back to ["startup"]
#   3. With an anchor active, "similar to <anchor>" variants are replaced
#      by queries derived from the anchor's own profile
#   4. Variants carried over from the previous critic are put first
#
# DESIGN DECISION: No retry on planner failure.
# A malformed plan (StructuredOutputError) or a timeout propagates to the
# loop controller and aborts the request. A second attempt would double the
# slowest call in the loop for a failure mode that is usually persistent
# (wrong model, broken prompt).
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence

from app.agents.anchor import anchor_context, anchor_fallback_queries, is_anchor_placeholder
from app.agents.guardrails import Guardrails
from app.agents.prompts import PLANNER_SYSTEM, build_planner_prompt
from app.models.plans import MAX_QUERY_VARIANTS, PlanFilters, SearchPlan
from app.models.requests import ChatMessage
from app.models.search import Company, LoopLimits
from app.services.llm import LLMProvider, complete_structured
from app.services.taxonomy import (
    ALL_CATEGORIES,
    BUSINESS_MODELS,
    SECTORS,
    searchable_fields_prompt,
    taxonomy_prompt,
)

logger = logging.getLogger(__name__)

DEFAULT_STATUSES = ["startup"]
DEFAULT_TARGET_RESULT_COUNT = 12
SUMMARY_MESSAGE_COUNT = 6
SUMMARY_MAX_CHARS = 2200


def default_plan(user_message: str) -> SearchPlan:
    """Plan used before the first planner call (telemetry scope, fallbacks)."""
    return SearchPlan(
        intent="discover",
        target_result_count=DEFAULT_TARGET_RESULT_COUNT,
        query_variants=[user_message],
        search_priority_order=["exact_name", "hybrid", "keyword", "taxonomy"],
        filters=PlanFilters(
            statuses=list(DEFAULT_STATUSES),
            sectors=[],
            categories=[],
            business_models=[],
            niches=[],
            niche_mode="boost",
        ),
        success_criteria="Return relevant companies.",
    )


def summarize_conversation(messages: Sequence[ChatMessage]) -> str:
    lines = [
        f"{m.role.upper()}: {m.content}"
        for m in list(messages)[-SUMMARY_MESSAGE_COUNT:]
    ]
    return "\n".join(lines)[:SUMMARY_MAX_CHARS]


def merge_variants(*groups: Sequence[str], limit: int) -> list[str]:
    """Order-preserving, case-insensitive union of variant lists."""
    seen: set[str] = set()
    merged: list[str] = []
    for group in groups:
        for variant in group:
            cleaned = variant.strip()
            key = cleaned.lower()
            if len(cleaned) < 2 or key in seen:
                continue
            seen.add(key)
            merged.append(cleaned)
    return merged[:limit]


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

_SECTOR_SET = frozenset(SECTORS)
_MODEL_SET = frozenset(BUSINESS_MODELS)


def normalize_plan(plan: SearchPlan) -> SearchPlan:
    """Drop off-taxonomy values and clean statuses."""
    filters = plan.filters
    statuses = list(dict.fromkeys(s.strip() for s in filters.statuses if s.strip()))

    dropped = (
        [s for s in filters.sectors if s not in _SECTOR_SET]
        + [c for c in filters.categories if c not in ALL_CATEGORIES]
        + [b for b in filters.business_models if b not in _MODEL_SET]
    )
    if dropped:
        logger.info("Dropped %d off-taxonomy plan filters: %s", len(dropped), dropped)

    normalized = filters.model_copy(update={
        "statuses": statuses or list(DEFAULT_STATUSES),
        "sectors": [s for s in filters.sectors if s in _SECTOR_SET],
        "categories": [c for c in filters.categories if c in ALL_CATEGORIES],
        "business_models": [b for b in filters.business_models if b in _MODEL_SET],
        "niches": [n.strip() for n in filters.niches if n.strip()],
    })
    return plan.model_copy(update={"filters": normalized})


def apply_anchor_variants(plan: SearchPlan, anchor: Company, user_message: str) -> SearchPlan:
    """Swap "similar to <anchor>" restatements for profile-derived queries."""
    kept = [
        v for v in plan.query_variants
        if not is_anchor_placeholder(v, anchor.company_name)
    ]
    fallback = anchor_fallback_queries(anchor)
    variants = merge_variants(kept, fallback, limit=MAX_QUERY_VARIANTS)
    if not variants:
        variants = fallback or [user_message]
    return plan.model_copy(update={"query_variants": variants})


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def plan_search(
    llm: LLMProvider,
    guardrails: Guardrails,
    limits: LoopLimits,
    *,
    user_message: str,
    messages: Sequence[ChatMessage],
    previous_top_ids: Sequence[str],
    anchor: Company | None,
    carried_variants: Sequence[str] = (),
    clarification: str | None = None,
) -> SearchPlan:
    """
    Produce this iteration's plan. Counts one tool call.

    Raises StructuredOutputError, TimeoutError or provider errors on failure;
    GuardrailExceeded if the budget is already spent.
    """
    prompt = build_planner_prompt(
        user_message=user_message,
        chat_summary=summarize_conversation(messages),
        previous_top_ids=previous_top_ids,
        taxonomy=taxonomy_prompt(),
        searchable_fields=searchable_fields_prompt(),
        anchor_context=anchor_context(anchor) if anchor else None,
        suggested_variants=carried_variants,
        clarification=clarification,
    )
    plan = await guardrails.call(
        limits.llm_timeout_seconds,
        complete_structured, llm, SearchPlan, PLANNER_SYSTEM, prompt,
    )
    plan = normalize_plan(plan)
    if anchor is not None:
        plan = apply_anchor_variants(plan, anchor, user_message)
    if not plan.query_variants:
        plan = plan.model_copy(update={"query_variants": [user_message]})

    logger.info(
        "Plan: intent=%s, target=%d, variants=%d, priority=%s",
        plan.intent, plan.target_result_count,
        len(plan.query_variants), ",".join(plan.search_priority_order),
    )
    return plan


def iteration_variants(
    plan: SearchPlan, carried_variants: Sequence[str], limits: LoopLimits,
) -> tuple[list[str], list[str]]:
    """
    Variants to store and variants to execute this iteration.

    Critic suggestions from the previous round go first so they are always
    among the executed ones.
    """
    stored = merge_variants(carried_variants, plan.query_variants, limit=limits.max_stored_variants)
    return stored, stored[:limits.max_executed_variants]
