# =============================================================================
# Search Domain Types — Companies, Candidates, Loop State
# =============================================================================
#
# Plain dataclasses shared by every phase of the search loop.
#
# DESIGN DECISION: Dataclasses over pydantic for the in-loop types.
# They are constructed thousands of times per request (one Candidate per
# retrieval row) and never cross the wire directly. Pydantic validates them
# only when a whole LoopState is serialised into a clarification session.
#
# OWNERSHIP:
#   Company: immutable snapshot from the retrieval backend
#   Candidate: per-request aggregate of retrieval signals; merged with
#              merge_candidates(), never mutated in place by retrieval
#   LoopState: owned by the single task running the request
#   FinalResult: built once by the finalizer, immutable afterwards
# =============================================================================

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import Any

from app.config import settings


class EndReason(str, enum.Enum):
    """Why a search request stopped."""

    IN_PROGRESS = "in_progress"
    CONFIDENCE_MET = "confidence_met"
    CONVERGED = "converged"
    EXACT_MATCH = "exact_match"
    GUARDRAIL_HIT = "guardrail_hit"
    ERROR = "error"
    SESSION_EXPIRED = "session_expired"


# Retrieval source → evidence chip shown next to a result
SOURCE_CHIPS: dict[str, str] = {
    "exact_name": "Exact Name",
    "hybrid": "Hybrid Match",
    "keyword": "Keyword Match",
    "taxonomy": "Taxonomy Match",
}


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Company:
    """A company record as returned by the batch-hydrate call."""

    id: str
    company_name: str = "Unknown Company"
    website_url: str = ""
    status: str = "startup"
    tagline: str | None = None
    description: str | None = None
    product_description: str | None = None
    target_customer: str | None = None
    problem_solved: str | None = None
    differentiator: str | None = None
    logo_url: str | None = None
    founded_year: int | None = None
    headquarters: str | None = None
    total_raised: str | None = None
    team_size: str | None = None
    funding_rounds: list[dict[str, Any]] = field(default_factory=list)
    investors: list[str] = field(default_factory=list)
    founders: list[dict[str, Any]] = field(default_factory=list)
    sectors: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    niches: list[str] = field(default_factory=list)
    business_models: list[str] = field(default_factory=list)
    social_links: dict[str, str] = field(default_factory=dict)
    recent_news: list[str] = field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None
    niches_text: str | None = None


@dataclass(frozen=True)
class ExactNameMatch:
    """One row of the exact/fuzzy company-name lookup."""

    company_id: str
    name_score: float
    matched_name: str


@dataclass
class Candidate:
    """
    Aggregated retrieval signals for one company within one request.

    Score fields only ever grow: merge_candidates() takes the element-wise
    maximum, and set fields are unioned, so merge order does not matter.
    The rank/confidence/reason block is filled in by the reranker.
    """

    company_id: str
    semantic_score: float = 0.0
    keyword_score: float = 0.0
    niche_score: float = 0.0
    tag_score: float = 0.0
    name_score: float = 0.0
    combined_score: float = 0.0
    matched_fields: frozenset[str] = frozenset()
    matched_terms: frozenset[str] = frozenset()
    sources: frozenset[str] = frozenset()

    # --- Reranker overlay ---
    rank: int | None = None
    confidence: float | None = None
    reason: str | None = None
    inline_description: str | None = None
    reranked_chips: tuple[str, ...] = ()

    @property
    def evidence_chips(self) -> list[str]:
        if self.reranked_chips:
            return list(self.reranked_chips)
        return [chip for source, chip in SOURCE_CHIPS.items() if source in self.sources]

    @property
    def effective_confidence(self) -> float:
        if self.confidence is not None:
            return self.confidence
        return min(1.0, max(0.0, self.combined_score))

    @property
    def effective_reason(self) -> str:
        if self.reason:
            return self.reason
        return " · ".join(self.evidence_chips) or "Matched by relevance"


_SCORE_FIELDS = (
    "semantic_score",
    "keyword_score",
    "niche_score",
    "tag_score",
    "name_score",
    "combined_score",
)


def merge_candidates(existing: Candidate, incoming: Candidate) -> Candidate:
    """
    Combine two observations of the same company.

    Commutative and associative over the retrieval fields. The reranker
    overlay is kept from whichever side carries one (retrieval rows never do).
    """
    if existing.company_id != incoming.company_id:
        raise ValueError(
            f"Cannot merge candidates for different companies: "
            f"{existing.company_id} != {incoming.company_id}"
        )

    scores = {
        name: max(getattr(existing, name), getattr(incoming, name))
        for name in _SCORE_FIELDS
    }
    overlay = existing if existing.rank is not None or existing.confidence is not None else incoming
    return replace(
        overlay,
        **scores,
        matched_fields=existing.matched_fields | incoming.matched_fields,
        matched_terms=existing.matched_terms | incoming.matched_terms,
        sources=existing.sources | incoming.sources,
    )


def clear_ranking(candidate: Candidate) -> Candidate:
    """Drop the reranker overlay, keeping the retrieval signals."""
    if candidate.rank is None and candidate.confidence is None and not candidate.reranked_chips:
        return candidate
    return replace(
        candidate, rank=None, confidence=None, reason=None,
        inline_description=None, reranked_chips=(),
    )


def sort_candidates(candidates: list[Candidate]) -> list[Candidate]:
    """Order by combined score, highest first; company id breaks ties."""
    return sorted(candidates, key=lambda c: (-c.combined_score, c.company_id))


# ---------------------------------------------------------------------------
# Loop Limits & State
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoopLimits:
    """Per-request ceilings and thresholds, snapshotted from settings."""

    max_iterations: int = 10
    max_tool_calls: int = 40
    max_runtime_ms: int = 240_000
    exact_short_circuit_threshold: float = 0.95
    anchor_match_threshold: float = 0.8
    confidence_stop_threshold: float = 0.74
    llm_timeout_seconds: float = 60.0
    embedding_timeout_seconds: float = 20.0
    retrieval_timeout_seconds: float = 15.0
    exact_name_limit: int = 5
    hybrid_limit: int = 120
    keyword_limit: int = 120
    taxonomy_limit: int = 500
    min_semantic_score: float = 0.25
    working_set_size: int = 80
    rerank_pool_size: int = 40
    rerank_prompt_size: int = 30
    max_executed_variants: int = 6
    max_stored_variants: int = 8
    retrieval_concurrency: int = 4

    @classmethod
    def from_settings(cls) -> LoopLimits:
        return cls(
            max_iterations=settings.search_max_iterations,
            max_tool_calls=settings.search_max_tool_calls,
            max_runtime_ms=settings.search_max_runtime_ms,
            exact_short_circuit_threshold=settings.exact_short_circuit_threshold,
            anchor_match_threshold=settings.anchor_match_threshold,
            confidence_stop_threshold=settings.confidence_stop_threshold,
            llm_timeout_seconds=settings.llm_timeout_seconds,
            embedding_timeout_seconds=settings.embedding_timeout_seconds,
            retrieval_timeout_seconds=settings.retrieval_timeout_seconds,
            exact_name_limit=settings.exact_name_limit,
            hybrid_limit=settings.hybrid_limit,
            keyword_limit=settings.keyword_limit,
            taxonomy_limit=settings.taxonomy_limit,
            min_semantic_score=settings.min_semantic_score,
            working_set_size=settings.working_set_size,
            rerank_pool_size=settings.rerank_pool_size,
            rerank_prompt_size=settings.rerank_prompt_size,
            max_executed_variants=settings.max_executed_variants,
            max_stored_variants=settings.max_stored_variants,
            retrieval_concurrency=settings.retrieval_concurrency,
        )


@dataclass
class LoopState:
    """
    Mutable state of one search request.

    Written only by the task that owns the request. Serialised whole into a
    clarification session when the loop suspends.
    """

    iteration: int = 0
    tool_calls: int = 0
    elapsed_ms: int = 0  # Runtime consumed before the current resume
    previous_top_ids: list[str] = field(default_factory=list)
    previous_best_score: float = 0.0
    last_confidence: float = 0.0
    candidates: dict[str, Candidate] = field(default_factory=dict)
    filtered_ids: list[str] = field(default_factory=list)
    ranked_ids: list[str] = field(default_factory=list)
    carried_variants: list[str] = field(default_factory=list)
    step_count: int = 0  # Telemetry step rows written so far
    clarified: bool = False
    clarification: str | None = None


# ---------------------------------------------------------------------------
# Clarification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClarificationOption:
    label: str
    description: str


@dataclass(frozen=True)
class ClarificationRequest:
    """A question to put to the user before the loop can continue."""

    question: str
    options: list[ClarificationOption]


# ---------------------------------------------------------------------------
# Final Result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Reference:
    """One company in the final answer."""

    company_id: str
    company_name: str
    reason: str
    evidence_chips: list[str]
    confidence: float
    inline_description: str | None = None


@dataclass(frozen=True)
class FinalResult:
    content: str
    references: list[Reference]
    companies_by_id: dict[str, Company]
    end_reason: EndReason
    iteration_count: int
    tool_call_count: int
    run_id: str | None = None
