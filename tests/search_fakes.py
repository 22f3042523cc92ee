# =============================================================================
# Test Fakes — Scripted LLM, In-Memory Retrieval, Builders
# =============================================================================
#
# Shared by the agent, orchestrator and API tests. No network, database or
# API keys: the LLM answers from per-phase scripts and retrieval serves
# rows from dictionaries.
# =============================================================================

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from app.agents.orchestrator import SearchDeps
from app.agents.prompts import CRITIC_SYSTEM, PLANNER_SYSTEM, RERANKER_SYSTEM
from app.models.search import Candidate, Company, ExactNameMatch, LoopLimits
from app.services.llm import LLMResponse
from app.services.retrieval import RetrievalError
from app.services.session_store import InMemoryClarificationStore
from app.services.telemetry import NullTelemetrySink

# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_company(company_id: str, name: str, **kwargs) -> Company:
    kwargs.setdefault("description", f"{name} builds software.")
    return Company(id=company_id, company_name=name, **kwargs)


def make_candidate(company_id: str, combined: float = 0.5, source: str = "hybrid", **kwargs) -> Candidate:
    return Candidate(
        company_id=company_id,
        combined_score=combined,
        sources=frozenset({source}),
        **kwargs,
    )


def plan_json(
    variants: Sequence[str] = ("fintech",),
    sectors: Sequence[str] = (),
    categories: Sequence[str] = (),
    business_models: Sequence[str] = (),
    priority: Sequence[str] = ("hybrid", "keyword", "taxonomy"),
    statuses: Sequence[str] = ("startup",),
    niches: Sequence[str] = (),
    niche_mode: str = "boost",
    target: int = 10,
    intent: str = "discover",
) -> dict[str, Any]:
    return {
        "intent": intent,
        "targetResultCount": target,
        "queryVariants": list(variants),
        "searchPriorityOrder": list(priority),
        "filters": {
            "statuses": list(statuses),
            "sectors": list(sectors),
            "categories": list(categories),
            "businessModels": list(business_models),
            "niches": list(niches),
            "nicheMode": niche_mode,
        },
        "successCriteria": "Relevant companies",
    }


def critic_json(
    decision: str = "stop",
    new_variants: Sequence[str] = (),
    expand: bool = False,
) -> dict[str, Any]:
    return {
        "decision": decision,
        "why": f"critic says {decision}",
        "confidenceTargetMet": decision == "stop",
        "shouldExpandQueries": expand,
        "newQueryVariants": list(new_variants),
    }


def prompt_candidate_ids(prompt: str) -> list[str]:
    """Candidate ids listed in a reranker prompt, in prompt order."""
    return [
        json.loads(line)["companyId"]
        for line in prompt.splitlines()
        if line.startswith("{") and "companyId" in line
    ]


def rank_in_prompt_order(confidence: float = 0.8, reverse: bool = False) -> Callable[[str], dict]:
    """Reranker script: rank every candidate it is shown."""

    def respond(prompt: str) -> dict[str, Any]:
        ids = prompt_candidate_ids(prompt)
        if reverse:
            ids = ids[::-1]
        return {
            "confidence": confidence,
            "rankedCompanyIds": ids,
            "perCompany": [
                {
                    "companyId": cid,
                    "reason": f"Good fit: {cid}",
                    "inlineDescription": f"About {cid}",
                    "evidenceChips": ["Reranked"],
                    "confidence": confidence,
                }
                for cid in ids
            ],
        }

    return respond


# ---------------------------------------------------------------------------
# Scripted LLM
# ---------------------------------------------------------------------------


class ScriptedLLM:
    """
    Answers each phase from its own script.

    A script entry may be a dict (sent as JSON), a string, a callable taking
    the prompt, or an exception to raise. The last entry repeats once the
    script is exhausted.
    """

    def __init__(self, plans=None, reranks=None, critics=None, summaries=None) -> None:
        self.scripts = {
            "planner": list(plans or [plan_json()]),
            "reranker": list(reranks or [rank_in_prompt_order()]),
            "critic": list(critics or [critic_json()]),
            "summary": list(summaries or ["A concise summary of the results."]),
        }
        self.calls: list[str] = []
        self.prompts: dict[str, list[str]] = {phase: [] for phase in self.scripts}

    def _phase(self, system: str | None) -> str:
        if system and system.startswith(PLANNER_SYSTEM):
            return "planner"
        if system and system.startswith(RERANKER_SYSTEM):
            return "reranker"
        if system and system.startswith(CRITIC_SYSTEM):
            return "critic"
        return "summary"

    async def complete(self, messages, system=None, temperature=None, max_tokens=None) -> LLMResponse:
        phase = self._phase(system)
        prompt = messages[-1]["content"]
        self.calls.append(phase)
        self.prompts[phase].append(prompt)

        script = self.scripts[phase]
        entry = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(entry, Exception):
            raise entry
        if callable(entry):
            entry = entry(prompt)
        content = entry if isinstance(entry, str) else json.dumps(entry)
        return LLMResponse(content=content, model="fake-model", input_tokens=10, output_tokens=10)


# ---------------------------------------------------------------------------
# In-Memory Retrieval
# ---------------------------------------------------------------------------


def _rows_for(table, query: str) -> list:
    if isinstance(table, dict):
        return list(table.get(query.lower(), []))
    return list(table or [])


@dataclass
class FakeRetrieval:
    """
    Retrieval backend over fixed rows.

    `hybrid` and `keyword` are either a list (returned for every query) or a
    dict keyed by lowercased query text. `fail` names operations that raise.
    """

    companies: list[Company] = field(default_factory=list)
    exact: dict[str, list[ExactNameMatch]] = field(default_factory=dict)
    hybrid: Any = field(default_factory=list)
    keyword: Any = field(default_factory=list)
    taxonomy: list[Candidate] = field(default_factory=list)
    fail: dict[str, RetrievalError] = field(default_factory=dict)
    calls: list[tuple[str, str]] = field(default_factory=list)

    def _check(self, operation: str, detail: str) -> None:
        self.calls.append((operation, detail))
        if operation in self.fail:
            raise self.fail[operation]

    async def search_exact_name(self, query_text, statuses, limit):
        self._check("exact_name", query_text)
        return self.exact.get(query_text.lower(), [])[:limit]

    async def search_hybrid(
        self, query_text, embedding, statuses, include_ids, exclude_ids, limit, min_semantic,
    ):
        self._check("hybrid", query_text)
        rows = _rows_for(self.hybrid, query_text)
        excluded = set(exclude_ids or [])
        rows = [r for r in rows if r.company_id not in excluded]
        if include_ids is not None:
            rows = [r for r in rows if r.company_id in set(include_ids)]
        return rows[:limit]

    async def search_keyword(self, query_text, statuses, limit):
        self._check("keyword", query_text)
        return _rows_for(self.keyword, query_text)[:limit]

    async def search_taxonomy(self, sectors, categories, business_models, statuses, limit):
        self._check("taxonomy", ",".join(sectors))
        return list(self.taxonomy)[:limit]

    async def get_companies_by_ids(self, company_ids):
        self._check("hydrate", str(len(company_ids)))
        by_id = {c.id: c for c in self.companies}
        return [by_id[cid] for cid in company_ids if cid in by_id]

    def queries(self, operation: str) -> list[str]:
        return [detail for op, detail in self.calls if op == operation]


async def fake_embed(texts: Sequence[str]) -> list[list[float]]:
    return [[0.1, 0.2, 0.3] for _ in texts]


# ---------------------------------------------------------------------------
# Event Collection
# ---------------------------------------------------------------------------


class EventCollector:
    def __init__(self) -> None:
        self.events: list = []

    async def __call__(self, event) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [e.type for e in self.events]

    @property
    def terminal(self):
        return self.events[-1]


def make_deps(llm, retrieval, **overrides) -> SearchDeps:
    values = {
        "llm": llm,
        "retrieval": retrieval,
        "embed": fake_embed,
        "sessions": InMemoryClarificationStore(ttl_seconds=300),
        "telemetry": NullTelemetrySink(),
        "ambiguity_detector": None,
        "limits": LoopLimits(),
    }
    values.update(overrides)
    return SearchDeps(**values)
