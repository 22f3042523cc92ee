# =============================================================================
# Reranker — LLM Ordering and Annotation of the Filtered Pool
# =============================================================================
#
# The top candidates (by combined score) are shown to the LLM with their
# retrieval scores and evidence. It returns an overall confidence, an
# ordered id list and a reason / inline description / chips per company.
#
# DESIGN DECISION: Failure aborts the request.
# The rank order decides which companies the user sees. Falling back to
# the previous ranking would present stale results as if they were fresh,
# so StructuredOutputError and timeouts propagate to the loop controller.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import replace

from app.agents.guardrails import Guardrails
from app.agents.prompts import RERANKER_SYSTEM, build_reranker_prompt
from app.models.plans import RerankOutput, SearchPlan
from app.models.search import Candidate, LoopLimits, clear_ranking
from app.services.llm import LLMProvider, complete_structured

logger = logging.getLogger(__name__)


def apply_ranking(candidates: Sequence[Candidate], output: RerankOutput) -> list[Candidate]:
    """
    Reorder by the returned ids and overlay per-company annotations.

    Ids the model ranked but we never sent are ignored; candidates it left
    out keep their relative order after the ranked ones. Any overlay from an
    earlier round is dropped first, so only this round's assessments show.
    """
    by_id = {c.company_id: c for c in candidates}
    ranked_ids = [cid for cid in dict.fromkeys(output.ranked_company_ids) if cid in by_id]
    ranked_set = set(ranked_ids)
    unranked = [c.company_id for c in candidates if c.company_id not in ranked_set]
    assessments = {a.company_id: a for a in output.per_company}

    ordered: list[Candidate] = []
    for rank, company_id in enumerate(ranked_ids + unranked, 1):
        candidate = clear_ranking(by_id[company_id])
        assessment = assessments.get(company_id)
        if assessment is None:
            ordered.append(replace(candidate, rank=rank))
            continue
        ordered.append(replace(
            candidate,
            rank=rank,
            confidence=assessment.confidence,
            reason=assessment.reason,
            inline_description=assessment.inline_description,
            reranked_chips=tuple(assessment.evidence_chips),
        ))
    return ordered


async def rerank(
    llm: LLMProvider,
    guardrails: Guardrails,
    limits: LoopLimits,
    *,
    user_message: str,
    plan: SearchPlan,
    candidates: Sequence[Candidate],
) -> tuple[list[Candidate], float]:
    """Rank the pool. Returns (reordered candidates, overall confidence)."""
    prompt = build_reranker_prompt(user_message, plan, candidates, limit=limits.rerank_prompt_size)
    output = await guardrails.call(
        limits.llm_timeout_seconds,
        complete_structured, llm, RerankOutput, RERANKER_SYSTEM, prompt,
    )
    ordered = apply_ranking(candidates, output)
    logger.info(
        "Reranked %d candidates (confidence=%.2f, ranked=%d)",
        len(ordered), output.confidence, len(output.ranked_company_ids),
    )
    return ordered, output.confidence
