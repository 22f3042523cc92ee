# =============================================================================
# Critic — Stop / Continue Decision After Each Ranked Iteration
# =============================================================================
#
# The LLM critic votes "stop" or "continue" and may suggest up to 3 new
# query variants. The vote is advisory; decide() applies the rules:
#
#   1. stop  AND reranker confidence ≥ threshold  → CONFIDENCE_MET
#   2. top-5 ids identical to last iteration's     → CONVERGED
#   3. otherwise continue; suggested variants are executed first in the
#      next iteration, ahead of that iteration's planner variants
#
# DESIGN DECISION: Convergence is the literal top-5, order-sensitive check.
# Score movement below the top five does not keep the loop alive, and an
# empty top-5 never counts as converged.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from app.agents.guardrails import Guardrails
from app.agents.planner import merge_variants
from app.agents.prompts import CRITIC_SYSTEM, build_critic_prompt
from app.models.plans import CriticOutput
from app.models.search import Candidate, EndReason, LoopLimits
from app.services.llm import LLMProvider, complete_structured

logger = logging.getLogger(__name__)

TOP_K = 5


def top_ids(candidates: Sequence[Candidate], k: int = TOP_K) -> list[str]:
    return [c.company_id for c in candidates[:k]]


def has_converged(previous: Sequence[str], current: Sequence[str]) -> bool:
    return bool(previous) and bool(current) and list(previous) == list(current)


@dataclass
class CriticDecision:
    end_reason: EndReason | None  # None means continue
    carried_variants: list[str] = field(default_factory=list)
    why: str = ""


def decide(
    output: CriticOutput,
    rerank_confidence: float,
    previous_top_ids: Sequence[str],
    current_top_ids: Sequence[str],
    limits: LoopLimits,
) -> CriticDecision:
    """Apply the stop rules; on continue, return the variants to carry forward."""
    if output.decision == "stop" and rerank_confidence >= limits.confidence_stop_threshold:
        return CriticDecision(EndReason.CONFIDENCE_MET, why=output.why)
    if has_converged(previous_top_ids, current_top_ids):
        return CriticDecision(EndReason.CONVERGED, why="Top results unchanged")

    carried: list[str] = []
    if output.should_expand_queries:
        carried = merge_variants(output.new_query_variants, limit=limits.max_stored_variants)
    return CriticDecision(None, carried_variants=carried, why=output.why)


async def critique(
    llm: LLMProvider,
    guardrails: Guardrails,
    limits: LoopLimits,
    *,
    user_message: str,
    iteration: int,
    ranked: Sequence[Candidate],
    confidence: float,
    previous_top_ids: Sequence[str],
) -> CriticOutput:
    top = list(ranked[:TOP_K])
    prompt = build_critic_prompt(
        user_message=user_message,
        iteration=iteration,
        candidate_count=len(ranked),
        top_scores=[c.combined_score for c in top],
        confidence=confidence,
        previous_top_ids=previous_top_ids,
        current_top_ids=[c.company_id for c in top],
    )
    output = await guardrails.call(
        limits.llm_timeout_seconds,
        complete_structured, llm, CriticOutput, CRITIC_SYSTEM, prompt,
    )
    logger.info("Critic: %s (%s)", output.decision, output.why[:80])
    return output
