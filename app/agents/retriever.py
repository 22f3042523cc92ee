# =============================================================================
# Multi-Strategy Retriever — Query Variants → Candidate Map
# =============================================================================
#
# One retrieval round per iteration:
#
#   variants ──▶ embed (1 batch call) ──▶ per variant: hybrid + keyword
#                                         once:        taxonomy (if filters)
#            ──▶ merge every row into the candidate map (max / union)
#            ──▶ top-N working set ──▶ batch hydrate
#
# Every call counts one tool call and runs under its own timeout. Calls run
# concurrently, bounded by an asyncio.Semaphore.
#
# DESIGN DECISION: A failed retrieval call costs coverage, not the request.
# Each call is wrapped individually; an exception is logged and that call
# contributes no rows. Only the batch hydrate is fatal: without company
# records nothing downstream can filter or rank.
#
# DESIGN DECISION: The candidate map is a value.
# merge_into() returns a new dict and never mutates its input. Because
# merge_candidates() is commutative and associative, the result does not
# depend on the order in which concurrent calls complete.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass

from app.agents.guardrails import GuardrailExceeded, Guardrails
from app.models.plans import SearchPlan
from app.models.search import Candidate, Company, LoopLimits, merge_candidates, sort_candidates
from app.services.retrieval import EntityRetrievalClient
from app.services.telemetry import StepRecorder

logger = logging.getLogger(__name__)

EmbedFn = Callable[[Sequence[str]], Awaitable[list[list[float]]]]


def merge_into(
    candidates: Mapping[str, Candidate], incoming: Iterable[Candidate],
) -> dict[str, Candidate]:
    """Return a new map with `incoming` merged in."""
    merged = dict(candidates)
    for candidate in incoming:
        existing = merged.get(candidate.company_id)
        merged[candidate.company_id] = (
            candidate if existing is None else merge_candidates(existing, candidate)
        )
    return merged


@dataclass
class RetrievalRound:
    candidates: dict[str, Candidate]
    calls: int = 0
    failures: int = 0
    exhausted: str | None = None  # Guardrail ceiling hit mid-round


async def retrieve_candidates(
    *,
    plan: SearchPlan,
    variants: Sequence[str],
    candidates: Mapping[str, Candidate],
    retrieval: EntityRetrievalClient,
    embed: EmbedFn,
    guardrails: Guardrails,
    limits: LoopLimits,
    recorder: StepRecorder,
    exclude_ids: Sequence[str] = (),
    include_ids: Sequence[str] | None = None,
) -> RetrievalRound:
    """
    Run one round of retrieval and merge the rows into `candidates`.

    Never raises for a single failed call. When a guardrail is reached
    mid-round the rows gathered so far are still merged and the ceiling
    is reported through RetrievalRound.exhausted.
    """
    statuses = plan.filters.statuses
    priority = set(plan.search_priority_order)
    before = len(candidates)
    result = RetrievalRound(candidates=dict(candidates))
    semaphore = asyncio.Semaphore(limits.retrieval_concurrency)

    async def run(tool: str, timeout: float, fn, *args, summary: dict) -> list:
        async with semaphore:
            started = time.monotonic()
            try:
                rows = await guardrails.call(timeout, fn, *args)
            except GuardrailExceeded as e:
                result.exhausted = result.exhausted or e.ceiling
                return []
            except Exception as e:
                result.calls += 1
                result.failures += 1
                logger.warning("%s failed for %r: %s", tool, summary.get("query", ""), e)
                await recorder.record(
                    tool, started=started, input_summary=summary,
                    output_summary={"error": type(e).__name__}, before=before, after=before,
                )
                return []
            result.calls += 1
            await recorder.record(
                tool, started=started, input_summary=summary,
                output_summary={"rows": len(rows)}, before=before, after=before,
            )
            return rows

    # --- Embeddings: one batch call for every variant ---
    embeddings: list[list[float]] | None = None
    if "hybrid" in priority and variants:
        embeddings = await run(
            "embed_queries", limits.embedding_timeout_seconds, embed, list(variants),
            summary={"variants": len(variants)},
        ) or None
        if embeddings is not None and len(embeddings) != len(variants):
            logger.warning(
                "Embedding count mismatch (%d for %d variants), skipping hybrid",
                len(embeddings), len(variants),
            )
            embeddings = None

    # --- Per-variant hybrid + keyword, plus one taxonomy call ---
    calls: list[Awaitable[list[Candidate]]] = []
    for i, variant in enumerate(variants):
        if embeddings is not None:
            calls.append(run(
                "search_hybrid", limits.retrieval_timeout_seconds,
                retrieval.search_hybrid,
                variant, embeddings[i], statuses, include_ids, list(exclude_ids),
                limits.hybrid_limit, limits.min_semantic_score,
                summary={"query": variant, "statuses": statuses},
            ))
        if "keyword" in priority:
            calls.append(run(
                "search_keyword", limits.retrieval_timeout_seconds,
                retrieval.search_keyword, variant, statuses, limits.keyword_limit,
                summary={"query": variant, "statuses": statuses},
            ))

    filters = plan.filters
    if "taxonomy" in priority and filters.has_taxonomy:
        calls.append(run(
            "search_taxonomy", limits.retrieval_timeout_seconds,
            retrieval.search_taxonomy,
            filters.sectors, filters.categories, filters.business_models,
            statuses, limits.taxonomy_limit,
            summary={
                "sectors": filters.sectors,
                "categories": filters.categories,
                "business_models": filters.business_models,
            },
        ))

    for rows in await asyncio.gather(*calls):
        result.candidates = merge_into(result.candidates, rows)

    logger.info(
        "Retrieval round: %d calls (%d failed), candidates %d → %d",
        result.calls, result.failures, before, len(result.candidates),
    )
    return result


async def hydrate_working_set(
    candidates: Mapping[str, Candidate],
    retrieval: EntityRetrievalClient,
    guardrails: Guardrails,
    limits: LoopLimits,
    recorder: StepRecorder,
) -> tuple[list[Candidate], dict[str, Company]]:
    """
    Top-N candidates by combined score plus their company records.

    A hydrate failure propagates and aborts the request.
    """
    working = sort_candidates(list(candidates.values()))[:limits.working_set_size]
    if not working:
        return [], {}

    started = time.monotonic()
    companies = await guardrails.call(
        limits.retrieval_timeout_seconds,
        retrieval.get_companies_by_ids, [c.company_id for c in working],
    )
    by_id = {company.id: company for company in companies}
    await recorder.record(
        "hydrate", started=started,
        input_summary={"ids": len(working)}, output_summary={"companies": len(by_id)},
        before=len(working), after=len(by_id),
    )
    return working, by_id
