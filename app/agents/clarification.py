# =============================================================================
# Clarification Detection — When to Ask Before Ranking
# =============================================================================
#
# A very short, unfiltered request ("AI tools") can land on companies from
# unrelated sectors. Rather than ranking a mixed bag, the loop may pause and
# ask which interpretation the user meant.
#
# DESIGN DECISION: Pluggable detector.
# AmbiguityDetector is a Protocol; the loop controller only knows that a
# detector returns a ClarificationRequest or None. SectorSpreadDetector is
# the default, purely deterministic heuristic.
# =============================================================================

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol

from app.models.plans import SearchPlan
from app.models.search import Candidate, ClarificationOption, ClarificationRequest, Company


@dataclass(frozen=True)
class DetectionContext:
    has_anchor: bool
    request_mode: str


class AmbiguityDetector(Protocol):
    def detect(
        self,
        message: str,
        plan: SearchPlan,
        candidates: Sequence[Candidate],
        companies: Mapping[str, Company],
        context: DetectionContext,
    ) -> ClarificationRequest | None: ...


class SectorSpreadDetector:
    """Ask when a short request's top results span several sectors."""

    def __init__(self, max_words: int = 4, top_n: int = 10, max_options: int = 4) -> None:
        self.max_words = max_words
        self.top_n = top_n
        self.max_options = max_options

    def detect(
        self,
        message: str,
        plan: SearchPlan,
        candidates: Sequence[Candidate],
        companies: Mapping[str, Company],
        context: DetectionContext,
    ) -> ClarificationRequest | None:
        if context.has_anchor or context.request_mode != "new":
            return None
        if plan.filters.has_taxonomy or len(message.split()) > self.max_words:
            return None

        # Primary sector → example company names, in candidate order
        examples: dict[str, list[str]] = {}
        for candidate in candidates[:self.top_n]:
            company = companies.get(candidate.company_id)
            if company is None or not company.sectors:
                continue
            examples.setdefault(company.sectors[0], []).append(company.company_name)

        if len(examples) < 2:
            return None

        options = [
            ClarificationOption(label=sector, description=", ".join(names[:3]))
            for sector, names in list(examples.items())[:self.max_options]
        ]
        return ClarificationRequest(
            question=f'"{message}" matches companies in several sectors. Which did you mean?',
            options=options,
        )
