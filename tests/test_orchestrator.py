# =============================================================================
# Scenario Tests — Search Loop End to End
# =============================================================================
#
# Drives run_search() / resume_search() through the compiled LangGraph graph
# with a scripted LLM and an in-memory retrieval backend. Every test checks
# the event contract: exactly one terminal event, and it comes last.
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

from search_fakes import (
    EventCollector,
    FakeRetrieval,
    ScriptedLLM,
    critic_json,
    make_candidate,
    make_company,
    make_deps,
    plan_json,
    rank_in_prompt_order,
)

from app.agents.clarification import SectorSpreadDetector
from app.agents.orchestrator import (
    EMPTY_INPUT_MESSAGE,
    SEARCH_UNAVAILABLE_MESSAGE,
    SESSION_EXPIRED_MESSAGE,
    resume_search,
    run_search,
)
from app.models.requests import ChatMessage, ClientContext
from app.models.responses import TERMINAL_EVENT_TYPES
from app.models.search import EndReason, ExactNameMatch, LoopLimits
from app.services.retrieval import RetrievalError


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _search(deps, text: str, previous_ids=(), session_id: str | None = None) -> EventCollector:
    events = EventCollector()
    _run(run_search(
        [ChatMessage(role="user", content=text)],
        events,
        client_context=ClientContext(previous_candidate_ids=list(previous_ids)),
        session_id=session_id,
        deps=deps,
    ))
    return events


def _assert_single_terminal(events: EventCollector) -> None:
    terminal = [t for t in events.types if t in TERMINAL_EVENT_TYPES]
    assert len(terminal) == 1
    assert events.types[-1] in TERMINAL_EVENT_TYPES


def _reference_ids(events: EventCollector) -> list[str]:
    return [ref.company_id for ref in events.terminal.data.references]


FINTECH = {"sectors": ["Fintech"], "categories": ["Payments"]}


# ---------------------------------------------------------------------------
# Test: Anchor Mode
# ---------------------------------------------------------------------------


class TestAnchorScenario:
    """'companies like Stripe' with Stripe at exact-name score 0.93."""

    def _setup(self):
        stripe = make_company(
            "c_stripe", "Stripe",
            niches=["payments api", "online checkout"],
            product_description="APIs for accepting online payments",
            **FINTECH,
        )
        retrieval = FakeRetrieval(
            companies=[
                stripe,
                make_company("c_adyen", "Adyen", **FINTECH),
                make_company("c_checkout", "Checkout.com", **FINTECH),
            ],
            exact={"stripe": [ExactNameMatch("c_stripe", 0.93, "Stripe")]},
            hybrid=[
                make_candidate("c_stripe", 0.95),
                make_candidate("c_adyen", 0.8),
                make_candidate("c_checkout", 0.7),
            ],
            keyword=[make_candidate("c_stripe", 0.9, source="keyword")],
        )
        llm = ScriptedLLM(
            plans=[plan_json(variants=["companies like Stripe", "online payment processing"])],
            reranks=[rank_in_prompt_order(confidence=0.85)],
            critics=[critic_json("stop")],
        )
        return llm, retrieval

    def test_anchor_excluded_and_chip_added(self):
        llm, retrieval = self._setup()
        events = _search(make_deps(llm, retrieval), "companies like Stripe")

        _assert_single_terminal(events)
        assert events.terminal.type == "final_answer"
        ids = _reference_ids(events)
        assert ids == ["c_adyen", "c_checkout"]
        assert "c_stripe" not in ids
        for ref in events.terminal.data.references:
            assert ref.evidence_chips[0] == "Similar to Stripe"
        assert events.terminal.data.telemetry.end_reason == "confidence_met"

    def test_placeholder_variant_replaced_by_profile_queries(self):
        llm, retrieval = self._setup()
        _search(make_deps(llm, retrieval), "companies like Stripe")

        hybrid_queries = retrieval.queries("hybrid")
        assert "companies like Stripe" not in hybrid_queries
        assert "online payment processing" in hybrid_queries
        assert "payments api online checkout startups" in hybrid_queries
        assert "Anchor company context:\nCompany: Stripe" in llm.prompts["planner"][0]

    def test_partial_text_precedes_final_answer(self):
        llm, retrieval = self._setup()
        events = _search(make_deps(llm, retrieval), "companies like Stripe")

        assert events.types[-2:] == ["partial_text", "final_answer"]
        assert events.events[-2].data.text == "A concise summary of the results."


# ---------------------------------------------------------------------------
# Test: Exact-Name Short Circuit
# ---------------------------------------------------------------------------


class TestExactMatchScenario:
    def test_exact_name_ends_request_without_planner(self):
        retrieval = FakeRetrieval(
            companies=[make_company("c_stripe", "Stripe", tagline="Payments infrastructure")],
            exact={"stripe": [ExactNameMatch("c_stripe", 0.97, "Stripe")]},
        )
        llm = ScriptedLLM()
        events = _search(make_deps(llm, retrieval), "Stripe")

        _assert_single_terminal(events)
        data = events.terminal.data
        assert [ref.company_id for ref in data.references] == ["c_stripe"]
        assert data.references[0].confidence >= 0.99
        assert data.references[0].evidence_chips == ["Exact Name"]
        assert data.telemetry.end_reason == "exact_match"
        assert llm.calls == []
        assert retrieval.queries("keyword") == []

    def test_similarity_wording_prevents_short_circuit(self):
        retrieval = FakeRetrieval(
            companies=[
                make_company("c_stripe", "Stripe", **FINTECH),
                make_company("c_adyen", "Adyen", **FINTECH),
            ],
            exact={"stripe": [ExactNameMatch("c_stripe", 0.99, "Stripe")]},
            keyword=[
                make_candidate("c_stripe", 0.9, source="keyword"),
                make_candidate("c_adyen", 0.8, source="keyword"),
            ],
        )
        llm = ScriptedLLM(plans=[plan_json(variants=["payments"], priority=["keyword"])])
        events = _search(make_deps(llm, retrieval), "alternatives to Stripe")

        assert events.terminal.data.telemetry.end_reason != "exact_match"
        assert "planner" in llm.calls
        assert _reference_ids(events) == ["c_adyen"]


# ---------------------------------------------------------------------------
# Test: Taxonomy-Only Retrieval
# ---------------------------------------------------------------------------


class TestTaxonomyScenario:
    def test_taxonomy_candidates_ranked_and_confidence_met(self):
        retrieval = FakeRetrieval(
            companies=[
                make_company("c_pay", "PayCo", sectors=["Fintech"]),
                make_company("c_lend", "LendCo", sectors=["Fintech"]),
                make_company("c_health", "HealthCo", sectors=["Healthcare"]),
            ],
            taxonomy=[
                make_candidate("c_pay", 0.6, source="taxonomy"),
                make_candidate("c_lend", 0.5, source="taxonomy"),
                make_candidate("c_health", 0.4, source="taxonomy"),
            ],
        )
        llm = ScriptedLLM(
            plans=[plan_json(variants=["fintech startups"], sectors=["Fintech"])],
            reranks=[rank_in_prompt_order(confidence=0.8)],
            critics=[critic_json("stop")],
        )
        events = _search(make_deps(llm, retrieval), "fintech startups")

        _assert_single_terminal(events)
        telemetry = events.terminal.data.telemetry
        assert telemetry.end_reason == "confidence_met"
        assert telemetry.iteration_count == 1
        assert _reference_ids(events) == ["c_pay", "c_lend"]
        assert retrieval.queries("taxonomy") == ["Fintech"]


# ---------------------------------------------------------------------------
# Test: Multi-Iteration Behaviour
# ---------------------------------------------------------------------------


class TestIterations:
    def test_zero_survivors_then_matches_on_second_iteration(self):
        retrieval = FakeRetrieval(
            companies=[
                make_company("c_old", "OldCo", status="acquired"),
                make_company("c_new", "NewCo"),
            ],
            keyword={
                "legacy payments": [make_candidate("c_old", 0.9, source="keyword")],
                "modern payments": [make_candidate("c_new", 0.7, source="keyword")],
            },
        )
        llm = ScriptedLLM(
            plans=[
                plan_json(variants=["legacy payments"], priority=["keyword"]),
                plan_json(variants=["modern payments"], priority=["keyword"]),
            ],
            critics=[critic_json("stop")],
        )
        events = _search(make_deps(llm, retrieval), "payment companies")

        _assert_single_terminal(events)
        assert _reference_ids(events) == ["c_new"]
        assert events.terminal.data.telemetry.iteration_count == 2
        # No rerank or critic call on the empty iteration
        assert llm.calls == ["planner", "planner", "reranker", "critic", "summary"]

    def test_critic_variants_executed_first_next_iteration(self):
        retrieval = FakeRetrieval(
            companies=[make_company("c_a", "Alpha"), make_company("c_b", "Beta")],
            keyword={
                "payments": [make_candidate("c_a", 0.8, source="keyword")],
                "embedded finance": [make_candidate("c_b", 0.9, source="keyword")],
            },
        )
        llm = ScriptedLLM(
            plans=[plan_json(variants=["payments"], priority=["keyword"])],
            critics=[
                critic_json("continue", new_variants=["embedded finance"], expand=True),
                critic_json("stop"),
            ],
        )
        events = _search(make_deps(llm, retrieval), "payment platforms")

        assert retrieval.queries("keyword") == ["payments", "embedded finance", "payments"]
        assert "embedded finance" in llm.prompts["planner"][1]
        assert set(_reference_ids(events)) == {"c_a", "c_b"}
        assert events.terminal.data.telemetry.iteration_count == 2

    def test_identical_top_five_converges_on_second_iteration(self):
        retrieval = FakeRetrieval(
            companies=[make_company("c_a", "Alpha"), make_company("c_b", "Beta")],
            keyword=[make_candidate("c_a", 0.9, source="keyword"), make_candidate("c_b", 0.8, source="keyword")],
        )
        llm = ScriptedLLM(
            plans=[plan_json(variants=["payments"], priority=["keyword"])],
            critics=[critic_json("continue")],
        )
        events = _search(make_deps(llm, retrieval), "payment platforms")

        telemetry = events.terminal.data.telemetry
        assert telemetry.end_reason == "converged"
        assert telemetry.iteration_count == 2
        assert llm.calls.count("planner") == 2

    def test_low_confidence_stop_does_not_end_loop(self):
        retrieval = FakeRetrieval(
            companies=[make_company("c_a", "Alpha")],
            keyword=[make_candidate("c_a", 0.9, source="keyword")],
        )
        llm = ScriptedLLM(
            plans=[plan_json(variants=["payments"], priority=["keyword"])],
            reranks=[rank_in_prompt_order(confidence=0.5)],
            critics=[critic_json("stop")],
        )
        events = _search(make_deps(llm, retrieval), "payment platforms")

        # Stop vote ignored below 0.74; identical top ids converge instead
        assert events.terminal.data.telemetry.end_reason == "converged"

    def test_earlier_ranking_not_carried_into_later_round(self):
        retrieval = FakeRetrieval(
            companies=[make_company("c_a", "Alpha"), make_company("c_b", "Beta")],
            keyword={
                "payments": [make_candidate("c_a", 0.9, source="keyword")],
                "fintech apis": [make_candidate("c_b", 0.95, source="keyword")],
            },
        )

        def ranked_only(company_id, confidence, chip):
            return {
                "confidence": confidence,
                "rankedCompanyIds": [company_id],
                "perCompany": [{
                    "companyId": company_id,
                    "reason": f"Ranked {company_id}",
                    "inlineDescription": f"About {company_id}",
                    "evidenceChips": [chip],
                    "confidence": confidence,
                }],
            }

        llm = ScriptedLLM(
            plans=[
                plan_json(variants=["payments"], priority=["keyword"]),
                plan_json(variants=["fintech apis"], priority=["keyword"]),
            ],
            reranks=[ranked_only("c_a", 0.95, "old-round"), ranked_only("c_b", 0.8, "new-round")],
            critics=[critic_json("continue"), critic_json("stop")],
        )
        events = _search(make_deps(llm, retrieval), "payment platforms")

        assert events.terminal.data.telemetry.end_reason == "confidence_met"
        refs = {ref.company_id: ref for ref in events.terminal.data.references}
        assert list(refs) == ["c_b", "c_a"]
        assert refs["c_b"].confidence == 0.8
        assert refs["c_b"].evidence_chips == ["new-round"]
        assert refs["c_a"].confidence == 0.9
        assert refs["c_a"].evidence_chips == ["Keyword Match"]


# ---------------------------------------------------------------------------
# Test: Guardrails
# ---------------------------------------------------------------------------


class TestGuardrails:
    def test_max_iterations_ends_with_guardrail_hit(self):
        retrieval = FakeRetrieval(
            companies=[make_company("c_a", "Alpha")],
            keyword=[make_candidate("c_a", 0.9, source="keyword")],
        )
        llm = ScriptedLLM(
            plans=[plan_json(variants=["payments"], priority=["keyword"])],
            critics=[critic_json("continue")],
        )
        deps = make_deps(llm, retrieval, limits=LoopLimits(max_iterations=1))
        events = _search(deps, "payment platforms")

        telemetry = events.terminal.data.telemetry
        assert telemetry.end_reason == "guardrail_hit"
        assert telemetry.iteration_count == 1
        assert llm.calls.count("planner") == 1
        assert _reference_ids(events) == ["c_a"]

    def test_tool_call_budget_keeps_partial_candidates(self):
        retrieval = FakeRetrieval(
            companies=[make_company("c_a", "Alpha"), make_company("c_b", "Beta")],
            hybrid=[make_candidate("c_a", 0.7)],
            keyword=[make_candidate("c_b", 0.9, source="keyword")],
        )
        llm = ScriptedLLM(plans=[plan_json(variants=["payments"], priority=["hybrid", "keyword"])])
        # two name lookups + planner + embedding + hybrid exhaust the budget;
        # keyword is refused
        deps = make_deps(llm, retrieval, limits=LoopLimits(max_tool_calls=5))
        events = _search(deps, "payment platforms")

        _assert_single_terminal(events)
        telemetry = events.terminal.data.telemetry
        assert telemetry.end_reason == "guardrail_hit"
        assert _reference_ids(events) == ["c_a"]
        assert retrieval.queries("keyword") == []
        # Finalizer hydrate and summary are counted but never refused
        assert telemetry.tool_call_count == 7

    def test_budget_hit_before_filtering_still_applies_plan_filters(self):
        retrieval = FakeRetrieval(
            companies=[
                make_company("c_health", "MedCo", sectors=["Healthcare"]),
                make_company("c_fin", "PayCo", sectors=["Fintech"]),
            ],
            hybrid=[make_candidate("c_health", 0.9), make_candidate("c_fin", 0.5)],
        )
        llm = ScriptedLLM(plans=[plan_json(
            variants=["payments"], sectors=["Fintech"], priority=["hybrid", "keyword"],
        )])
        deps = make_deps(llm, retrieval, limits=LoopLimits(max_tool_calls=5))
        events = _search(deps, "payment platforms")

        _assert_single_terminal(events)
        assert events.terminal.data.telemetry.end_reason == "guardrail_hit"
        assert _reference_ids(events) == ["c_fin"]
        assert "reranker" not in llm.calls

    def test_default_iteration_ceiling_with_shifting_top_five(self):
        rounds = LoopLimits().max_iterations
        retrieval = FakeRetrieval(
            companies=[make_company(f"c{i}", f"Company {i}") for i in range(rounds)],
            keyword={
                f"round {i}": [make_candidate(f"c{i}", 0.5 + 0.04 * i, source="keyword")]
                for i in range(rounds)
            },
        )
        llm = ScriptedLLM(
            plans=[plan_json(variants=[f"round {i}"], priority=["keyword"]) for i in range(rounds)],
            reranks=[rank_in_prompt_order(confidence=0.8)],
            critics=[critic_json("continue")],
        )
        deps = make_deps(llm, retrieval, limits=LoopLimits(max_tool_calls=200))
        events = _search(deps, "payment platforms")

        _assert_single_terminal(events)
        telemetry = events.terminal.data.telemetry
        assert telemetry.end_reason == "guardrail_hit"
        assert telemetry.iteration_count == rounds
        assert llm.calls.count("planner") == rounds
        assert llm.calls.count("critic") == rounds
        assert retrieval.queries("keyword") == [f"round {i}" for i in range(rounds)]
        assert _reference_ids(events)[0] == f"c{rounds - 1}"


# ---------------------------------------------------------------------------
# Test: Clarification Suspend / Resume
# ---------------------------------------------------------------------------


class TestClarification:
    def _setup(self):
        retrieval = FakeRetrieval(
            companies=[
                make_company("c_fin", "FinAI", sectors=["Fintech"]),
                make_company("c_health", "HealthAI", sectors=["Healthcare"]),
            ],
            keyword=[
                make_candidate("c_fin", 0.9, source="keyword"),
                make_candidate("c_health", 0.8, source="keyword"),
            ],
        )
        llm = ScriptedLLM(
            plans=[
                plan_json(variants=["ai tools"], priority=["keyword"]),
                plan_json(variants=["ai tools"], priority=["keyword"], sectors=["Healthcare"]),
            ],
            critics=[critic_json("stop")],
        )
        deps = make_deps(llm, retrieval, ambiguity_detector=SectorSpreadDetector())
        return llm, retrieval, deps

    def test_suspend_then_resume_continues_counters(self):
        llm, retrieval, deps = self._setup()

        async def scenario():
            first = EventCollector()
            await run_search(
                [ChatMessage(role="user", content="ai tools")], first,
                session_id="sess-1", deps=deps,
            )
            stored = await deps.sessions.get("sess-1")
            parked = (stored.loop_state.iteration, stored.loop_state.tool_calls)

            second = EventCollector()
            await resume_search("sess-1", "Healthcare", second, deps=deps)
            leftover = await deps.sessions.get("sess-1")
            return first, parked, second, leftover

        first, parked, second, leftover = _run(scenario())

        _assert_single_terminal(first)
        assert first.terminal.type == "clarification"
        assert first.terminal.data.session_id == "sess-1"
        assert {o.label for o in first.terminal.data.options} == {"Fintech", "Healthcare"}
        assert parked == (1, 5)  # two name lookups, planner, keyword, hydrate

        _assert_single_terminal(second)
        telemetry = second.terminal.data.telemetry
        assert telemetry.iteration_count == 2
        assert telemetry.tool_call_count > 3
        assert [ref.company_id for ref in second.terminal.data.references] == ["c_health"]
        assert "The user clarified: Healthcare" in llm.prompts["planner"][1]
        assert leftover is None

    def test_telemetry_not_finalized_while_suspended(self):
        llm, retrieval, deps = self._setup()
        deps.telemetry = AsyncMock()
        deps.telemetry.start_run.return_value = "run-1"

        events = _search(deps, "ai tools", session_id="sess-2")

        assert events.terminal.type == "clarification"
        deps.telemetry.finalize_run.assert_not_awaited()

    def test_unknown_session_yields_expired_answer(self):
        deps = make_deps(ScriptedLLM(), FakeRetrieval())
        events = EventCollector()
        _run(resume_search("does-not-exist", "Fintech", events, deps=deps))

        _assert_single_terminal(events)
        assert events.terminal.type == "final_answer"
        assert events.terminal.data.content == SESSION_EXPIRED_MESSAGE
        assert events.terminal.data.telemetry.end_reason == EndReason.SESSION_EXPIRED.value


# ---------------------------------------------------------------------------
# Test: Failure Handling
# ---------------------------------------------------------------------------


class TestFailures:
    def _retrieval(self, **kwargs):
        return FakeRetrieval(
            companies=[make_company("c_a", "Alpha")],
            keyword=[make_candidate("c_a", 0.9, source="keyword")],
            **kwargs,
        )

    def test_empty_message_rejected_before_any_call(self):
        llm = ScriptedLLM()
        retrieval = self._retrieval()
        events = _search(make_deps(llm, retrieval), "   ")

        assert events.types == ["error"]
        assert events.terminal.data.message == EMPTY_INPUT_MESSAGE
        assert llm.calls == []
        assert retrieval.calls == []

    def test_malformed_plan_aborts_with_generic_message(self):
        llm = ScriptedLLM(plans=["this is not json"])
        events = _search(make_deps(llm, self._retrieval()), "payment platforms")

        _assert_single_terminal(events)
        assert events.terminal.type == "error"
        assert events.terminal.data.message == SEARCH_UNAVAILABLE_MESSAGE

    def test_reranker_failure_aborts(self):
        llm = ScriptedLLM(
            plans=[plan_json(variants=["payments"], priority=["keyword"])],
            reranks=[TimeoutError()],
        )
        events = _search(make_deps(llm, self._retrieval()), "payment platforms")

        assert events.terminal.type == "error"
        assert events.terminal.data.message == SEARCH_UNAVAILABLE_MESSAGE
        assert "critic" not in llm.calls

    def test_failed_retrieval_call_is_skipped(self):
        retrieval = self._retrieval(
            hybrid=[make_candidate("c_a", 0.5)],
            fail={"hybrid": RetrievalError("search_companies_hybrid_v1", "connection reset")},
        )
        llm = ScriptedLLM(plans=[plan_json(variants=["payments"], priority=["hybrid", "keyword"])])
        events = _search(make_deps(llm, retrieval), "payment platforms")

        assert events.terminal.type == "final_answer"
        assert _reference_ids(events) == ["c_a"]

    def test_schema_mismatch_on_hydrate_surfaces_hint(self):
        retrieval = self._retrieval(fail={
            "hydrate": RetrievalError(
                "get_companies_by_ids_v1",
                "structure of query does not match function result type",
                schema_mismatch=True,
            ),
        })
        llm = ScriptedLLM(plans=[plan_json(variants=["payments"], priority=["keyword"])])
        events = _search(make_deps(llm, retrieval), "payment platforms")

        assert events.terminal.type == "error"
        assert "Apply pending database migrations" in events.terminal.data.message

    def test_error_outcome_recorded_in_telemetry(self):
        llm = ScriptedLLM(plans=["{}"])
        deps = make_deps(llm, self._retrieval())
        deps.telemetry = AsyncMock()
        deps.telemetry.start_run.return_value = "run-9"

        _search(deps, "payment platforms")

        kwargs = deps.telemetry.finalize_run.await_args.kwargs
        assert kwargs["end_reason"] == EndReason.ERROR


# ---------------------------------------------------------------------------
# Test: Request Modes
# ---------------------------------------------------------------------------


class TestRequestModes:
    def test_more_excludes_previous_results(self):
        retrieval = FakeRetrieval(
            companies=[make_company("c_a", "Alpha"), make_company("c_b", "Beta")],
            keyword=[make_candidate("c_a", 0.9, source="keyword"), make_candidate("c_b", 0.8, source="keyword")],
        )
        llm = ScriptedLLM(plans=[plan_json(variants=["payments"], priority=["keyword"])])
        events = _search(make_deps(llm, retrieval), "show me more", previous_ids=["c_a"])

        assert _reference_ids(events) == ["c_b"]

    def test_requested_count_caps_references(self):
        companies = [make_company(f"c_{i}", f"Co {i}") for i in range(6)]
        retrieval = FakeRetrieval(
            companies=companies,
            keyword=[make_candidate(c.id, 0.9 - i * 0.1, source="keyword") for i, c in enumerate(companies)],
        )
        llm = ScriptedLLM(plans=[plan_json(variants=["payments"], priority=["keyword"], target=10)])
        events = _search(make_deps(llm, retrieval), "top 3 payment platforms")

        assert _reference_ids(events) == ["c_0", "c_1", "c_2"]
