# =============================================================================
# Unit Tests — Query Planner
# =============================================================================
#
# Plan schema validation, deterministic post-processing, and the variant
# bookkeeping between iterations.
# =============================================================================

from __future__ import annotations

import asyncio
import json

import pytest
from pydantic import ValidationError
from search_fakes import ScriptedLLM, make_company, plan_json

from app.agents.guardrails import Guardrails
from app.agents.planner import (
    apply_anchor_variants,
    default_plan,
    iteration_variants,
    merge_variants,
    normalize_plan,
    plan_search,
    summarize_conversation,
)
from app.models.plans import SearchPlan
from app.models.requests import ChatMessage
from app.models.search import LoopLimits, LoopState
from app.services.llm import StructuredOutputError


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _plan(**overrides) -> SearchPlan:
    return SearchPlan.model_validate(plan_json(**overrides))


def _plan_search(llm, state=None, **kwargs):
    state = state or LoopState()
    limits = LoopLimits()
    kwargs.setdefault("user_message", "fintech startups")
    kwargs.setdefault("messages", [ChatMessage(role="user", content=kwargs["user_message"])])
    kwargs.setdefault("previous_top_ids", [])
    kwargs.setdefault("anchor", None)
    return _run(plan_search(llm, Guardrails(state, limits), limits, **kwargs))


# ---------------------------------------------------------------------------
# Test: Plan Schema
# ---------------------------------------------------------------------------


class TestSearchPlanSchema:
    def test_accepts_camel_case(self):
        plan = _plan(variants=["a b", "c d"], sectors=["Fintech"])
        assert plan.query_variants == ["a b", "c d"]
        assert plan.filters.sectors == ["Fintech"]

    def test_missing_filter_key_rejected(self):
        payload = plan_json()
        del payload["filters"]["businessModels"]
        with pytest.raises(ValidationError):
            SearchPlan.model_validate(payload)

    def test_unknown_strategy_rejected(self):
        with pytest.raises(ValidationError):
            _plan(priority=["vector"])

    def test_target_count_clamped(self):
        assert _plan(target=500).target_result_count == 20
        assert _plan(target=0).target_result_count == 1

    def test_variants_capped_and_deduplicated(self):
        plan = _plan(variants=["q1", "q1", "x", *[f"query {i}" for i in range(10)]])

        assert plan.query_variants[0] == "q1"
        assert "x" not in plan.query_variants
        assert len(plan.query_variants) == 6


# ---------------------------------------------------------------------------
# Test: Post-Processing
# ---------------------------------------------------------------------------


class TestNormalizePlan:
    def test_drops_off_taxonomy_values(self):
        plan = normalize_plan(_plan(
            sectors=["Fintech", "Space Mining"],
            categories=["Payments", "Made Up"],
            business_models=["B2B", "Barter"],
        ))

        assert plan.filters.sectors == ["Fintech"]
        assert plan.filters.categories == ["Payments"]
        assert plan.filters.business_models == ["B2B"]

    def test_empty_statuses_default_to_startup(self):
        plan = normalize_plan(_plan(statuses=[" ", ""]))
        assert plan.filters.statuses == ["startup"]

    def test_statuses_cleaned(self):
        plan = normalize_plan(_plan(statuses=[" startup", "acquired", "startup"]))
        assert plan.filters.statuses == ["startup", "acquired"]


class TestAnchorVariants:
    def test_placeholder_replaced_by_profile_queries(self):
        anchor = make_company("c_stripe", "Stripe", niches=["payments api"])
        plan = apply_anchor_variants(
            _plan(variants=["companies like Stripe", "checkout APIs"]), anchor, "companies like Stripe",
        )

        assert plan.query_variants == [
            "checkout APIs",
            "payments api startups",
            "payments api companies",
            "Stripe builds software.",
        ]

    def test_only_placeholders_left(self):
        anchor = make_company("c_stripe", "Stripe", description=None)
        plan = apply_anchor_variants(
            _plan(variants=["similar to Stripe"]), anchor, "similar to Stripe",
        )
        assert plan.query_variants == ["similar to Stripe"]


class TestVariantBookkeeping:
    def test_merge_is_case_insensitive_and_ordered(self):
        assert merge_variants(["B2B payroll"], ["b2b payroll", "HR tools"], limit=8) == [
            "B2B payroll", "HR tools",
        ]

    def test_carried_variants_execute_first(self):
        plan = _plan(variants=[f"plan {i}" for i in range(6)])
        stored, executed = iteration_variants(plan, ["critic one", "critic two"], LoopLimits())

        assert stored[:2] == ["critic one", "critic two"]
        assert len(stored) == 8
        assert executed == stored[:6]

    def test_conversation_summary_uses_last_turns(self):
        messages = [ChatMessage(role="user", content=f"turn {i}") for i in range(10)]
        summary = summarize_conversation(messages)

        assert summary.startswith("USER: turn 4")
        assert summary.endswith("USER: turn 9")

    def test_default_plan_uses_message(self):
        plan = default_plan("robotics")
        assert plan.query_variants == ["robotics"]
        assert plan.filters.statuses == ["startup"]


# ---------------------------------------------------------------------------
# Test: plan_search
# ---------------------------------------------------------------------------


class TestPlanSearch:
    def test_counts_one_tool_call(self):
        state = LoopState()
        plan = _plan_search(ScriptedLLM(plans=[plan_json(variants=["neo banks"])]), state=state)

        assert plan.query_variants == ["neo banks"]
        assert state.tool_calls == 1

    def test_prompt_carries_clarification_and_suggestions(self):
        llm = ScriptedLLM()
        _plan_search(llm, clarification="Healthcare", carried_variants=["clinic software"])

        prompt = llm.prompts["planner"][0]
        assert "The user clarified: Healthcare" in prompt
        assert "clinic software" in prompt
        assert "Anchor company context: None" in prompt

    def test_empty_variants_fall_back_to_message(self):
        plan = _plan_search(ScriptedLLM(plans=[plan_json(variants=[])]))
        assert plan.query_variants == ["fintech startups"]

    def test_fenced_json_accepted(self):
        fenced = "```json\n" + json.dumps(plan_json(variants=["insurtech"])) + "\n```"
        plan = _plan_search(ScriptedLLM(plans=[fenced]))
        assert plan.query_variants == ["insurtech"]

    def test_missing_filters_raise(self):
        payload = plan_json()
        del payload["filters"]
        with pytest.raises(StructuredOutputError):
            _plan_search(ScriptedLLM(plans=[payload]))
