# =============================================================================
# Prompts — System Instructions and Prompt Builders for the Search Loop
# =============================================================================
#
# Each LLM phase has a fixed system prompt and a builder that renders the
# per-call context. The JSON Schema of the expected output is appended by
# complete_structured(), so the prompts describe intent, not format.
# =============================================================================

from __future__ import annotations

import json
from collections.abc import Sequence

from app.models.plans import SearchPlan
from app.models.search import Candidate

# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------

PLANNER_SYSTEM = """You plan searches over a dataset of startup company profiles.

Rules:
- Produce several query variants when they would find different companies.
- Default statuses to ["startup"] unless the user asks for other statuses.
- Only use sectors, categories and business models from the allowed taxonomy.
- If the request looks like an exact company name, put exact_name first in \
searchPriorityOrder.
- For narrowing language (only, just, exactly) set nicheMode to must_match \
when niches are given.
- Always include every filter key: statuses, sectors, categories, \
businessModels, niches, nicheMode. Use empty arrays for unused filters.
- When anchor company context is given, derive queries from the anchor's \
product, problem and niches rather than from its name.
- Prefer wording that matches the searchable fields (description, \
product_description, problem_solved, target_customer, differentiator, niches)."""


def build_planner_prompt(
    user_message: str,
    chat_summary: str,
    previous_top_ids: Sequence[str],
    taxonomy: str,
    searchable_fields: str,
    anchor_context: str | None,
    suggested_variants: Sequence[str] = (),
    clarification: str | None = None,
) -> str:
    lines = [
        "User message:",
        user_message,
        "",
        "Conversation context summary:",
        chat_summary or "None",
        "",
        f"Previous candidate ids: {', '.join(previous_top_ids) or 'None'}",
    ]
    if clarification:
        lines += ["", f"The user clarified: {clarification}"]
    if suggested_variants:
        lines += ["", f"Query variants suggested by the reviewer: {'; '.join(suggested_variants)}"]
    lines += [
        "",
        searchable_fields,
        "",
        "Allowed taxonomy:",
        taxonomy,
        "",
        f"Anchor company context:\n{anchor_context}" if anchor_context else "Anchor company context: None",
        "",
        "Return intent, targetResultCount, queryVariants, searchPriorityOrder, "
        "filters and successCriteria.",
    ]
    if anchor_context:
        lines.append(
            "Query variants should mostly use the anchor's business descriptors; "
            "at most one may mention the anchor by name."
        )
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Reranker
# ---------------------------------------------------------------------------

RERANKER_SYSTEM = """You rank company search candidates for a user request.
Prioritise precision and fit with the user's intent.
If a candidate is an exact name match for what the user asked, rank it first \
with high confidence.
Write each reason and inline description from the candidate's evidence; \
do not invent facts."""


def build_reranker_prompt(
    user_message: str,
    plan: SearchPlan,
    candidates: Sequence[Candidate],
    limit: int = 30,
) -> str:
    block = "\n".join(
        json.dumps({
            "companyId": c.company_id,
            "combinedScore": round(c.combined_score, 4),
            "semanticScore": round(c.semantic_score, 4),
            "keywordScore": round(c.keyword_score, 4),
            "nicheScore": round(c.niche_score, 4),
            "evidenceChips": c.evidence_chips,
        })
        for c in list(candidates)[:limit]
    )
    return "\n".join([
        f"User message: {user_message}",
        "",
        f"Intent: {plan.intent}",
        f"Target result count: {plan.target_result_count}",
        "",
        "Candidates:",
        block,
        "",
        "Return confidence, rankedCompanyIds and perCompany entries.",
    ])


# ---------------------------------------------------------------------------
# Critic
# ---------------------------------------------------------------------------

CRITIC_SYSTEM = """You review one round of an iterative company search and \
decide whether another round is worth its cost."""


def build_critic_prompt(
    user_message: str,
    iteration: int,
    candidate_count: int,
    top_scores: Sequence[float],
    confidence: float,
    previous_top_ids: Sequence[str],
    current_top_ids: Sequence[str],
) -> str:
    return "\n".join([
        f"User message: {user_message}",
        f"Iteration: {iteration}",
        f"Candidate count: {candidate_count}",
        f"Top scores: {', '.join(f'{s:.3f}' for s in top_scores)}",
        f"Current confidence: {confidence:.3f}",
        f"Previous top ids: {', '.join(previous_top_ids) or 'None'}",
        f"Current top ids: {', '.join(current_top_ids) or 'None'}",
        "",
        "Stop if confidence is already strong or the results have converged.",
        "Continue if more queries would likely improve quality; you may add up "
        "to 3 new query variants.",
    ])


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def build_summary_prompt(user_message: str, company_names: Sequence[str]) -> str:
    return "\n".join([
        "Write a concise 2-3 sentence summary for this company search request: "
        f"{user_message}. Mention overall fit and confidence without listing "
        "every result.",
        "",
        f"Results ({len(company_names)}): {', '.join(company_names)}",
    ])
