# =============================================================================
# Structured LLM Outputs — Pydantic V2 Schemas
# =============================================================================
#
# The planner, reranker and critic each ask the completion service for a
# JSON object. These models are the contract for those objects.
#
# DESIGN DECISION: Validate at the boundary, reject on violation.
# complete_structured() (services/llm.py) runs model_validate_json() right
# after the call returns. A missing key, a wrong type or an out-of-range
# confidence raises StructuredOutputError; nothing is silently defaulted.
# The only coercions are the documented clamps (target count, number of
# query variants) which bound plan size rather than repair it.
#
# DESIGN DECISION: camelCase aliases.
# The prompts ask for camelCase keys (`queryVariants`, `nicheMode`), which
# models produce more reliably than snake_case. `populate_by_name=True`
# accepts either spelling.
# =============================================================================

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Strategy = Literal["exact_name", "hybrid", "keyword", "taxonomy"]

MAX_TARGET_RESULT_COUNT = 20
MAX_QUERY_VARIANTS = 6


class _LLMSchema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


class PlanFilters(_LLMSchema):
    """
    Deterministic filters applied after hydration.

    Every key is required; the planner must send empty lists rather than
    omitting a filter.
    """

    statuses: list[str]
    sectors: list[str]
    categories: list[str]
    business_models: list[str]
    niches: list[str]
    niche_mode: Literal["boost", "must_match"]

    @property
    def has_taxonomy(self) -> bool:
        return bool(self.sectors or self.categories or self.business_models)


class SearchPlan(_LLMSchema):
    """One iteration's search plan."""

    intent: Literal["discover", "narrow", "compare", "find_company"]
    target_result_count: int
    query_variants: list[str]
    search_priority_order: list[Strategy] = Field(min_length=1, max_length=4)
    filters: PlanFilters
    success_criteria: str = Field(min_length=3)

    @field_validator("target_result_count")
    @classmethod
    def _clamp_target(cls, value: int) -> int:
        return max(1, min(MAX_TARGET_RESULT_COUNT, value))

    @field_validator("query_variants")
    @classmethod
    def _bound_variants(cls, value: list[str]) -> list[str]:
        seen: list[str] = []
        for variant in value:
            cleaned = variant.strip()
            if len(cleaned) >= 2 and cleaned not in seen:
                seen.append(cleaned)
        return seen[:MAX_QUERY_VARIANTS]

    @field_validator("search_priority_order")
    @classmethod
    def _dedupe_strategies(cls, value: list[Strategy]) -> list[Strategy]:
        return list(dict.fromkeys(value))


# ---------------------------------------------------------------------------
# Reranker
# ---------------------------------------------------------------------------


class CompanyAssessment(_LLMSchema):
    company_id: str
    reason: str = Field(min_length=4)
    inline_description: str = Field(min_length=4)
    evidence_chips: list[str] = Field(max_length=5)
    confidence: float = Field(ge=0.0, le=1.0)


class RerankOutput(_LLMSchema):
    """Ordering plus per-company annotations for the top candidates."""

    confidence: float = Field(ge=0.0, le=1.0)
    ranked_company_ids: list[str] = Field(min_length=1, max_length=50)
    per_company: list[CompanyAssessment]


# ---------------------------------------------------------------------------
# Critic
# ---------------------------------------------------------------------------


class CriticOutput(_LLMSchema):
    decision: Literal["continue", "stop"]
    why: str
    confidence_target_met: bool
    should_expand_queries: bool
    new_query_variants: list[str] = Field(max_length=3)
