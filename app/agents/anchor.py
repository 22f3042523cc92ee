# =============================================================================
# Anchor Resolver — Company Names in Free Text
# =============================================================================
#
# Before planning, the loop checks whether the user named a specific
# company. Two outcomes matter:
#
#   "companies like Stripe"  → Stripe is an ANCHOR: its profile seeds query
#                              generation and it is excluded from results.
#   "Stripe"                 → SHORT CIRCUIT: the request ends with Stripe
#                              as the single, high-confidence answer.
#
# PIPELINE:
#   1. NameExtractor pulls ≤8 candidate strings from the message
#   2. One exact-name lookup per candidate (concurrent, failures skipped)
#   3. Best score per company id across all candidates
#   4. Top match ≥ anchor threshold + similarity intent → anchor
#      Top match ≥ short-circuit threshold, no similarity intent → exact
#
# DESIGN DECISION: Extraction is a pluggable strategy.
# The regex heuristics below are fuzzy by nature. NameExtractor is a
# Protocol so an NER model can replace RegexNameExtractor without touching
# the loop controller.
#
# DESIGN DECISION: Each lookup and the anchor hydrate count as tool calls
# against the same budget as the loop. A refused lookup is skipped like a
# failed one.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Literal, Protocol

from app.agents.guardrails import Guardrails
from app.models.search import Company, ExactNameMatch, LoopLimits
from app.services.retrieval import EntityRetrievalClient

logger = logging.getLogger(__name__)

MAX_NAME_CANDIDATES = 8

SIMILARITY_PATTERN = re.compile(
    r"\b(like|similar|competitor|competitors|alternative|alternatives|vs|versus|comparable)\b",
    re.IGNORECASE,
)

_QUOTED = re.compile(r"[\"“”']([^\"“”']{2,80})[\"“”']")
_AFTER_SIMILARITY = re.compile(
    r"\b(?:like|similar to|similar|competitors? of|competitors?|alternatives? to|vs\.?|versus)"
    r"\s+([a-z0-9][a-z0-9.\- ]{1,80})",
    re.IGNORECASE,
)
# Runs of capitalised words, e.g. "Stripe", "Scale AI", "Acme-Pay"
_PROPER_NOUN = re.compile(r"\b[A-Z][\w.&-]*(?:\s+[A-Z][\w.&-]*)*")
# Tokens mixing letters and digits, e.g. "1password", "n8n", "web3"
_MIXED_TOKEN = re.compile(r"\b(?=[a-z0-9]*[a-z])(?=[a-z0-9]*\d)[a-z0-9]+\b", re.IGNORECASE)

_EDGE_PUNCTUATION = re.compile(r"^[^a-z0-9]+|[^a-z0-9]+$", re.IGNORECASE)
_GENERIC_SUFFIX = re.compile(r"\s+(?:companies|company|startups?|businesses)$", re.IGNORECASE)
_NON_ALNUM = re.compile(r"[^a-z0-9]+", re.IGNORECASE)


def has_similarity_intent(text: str) -> bool:
    return bool(SIMILARITY_PATTERN.search(text))


def loose_normalize(text: str) -> str:
    """Lowercase and drop everything but letters and digits."""
    return _NON_ALNUM.sub("", text.lower())


# ---------------------------------------------------------------------------
# Name Extraction Strategy
# ---------------------------------------------------------------------------


class NameExtractor(Protocol):
    def extract(self, text: str) -> list[str]:
        """Return candidate company-name strings, best guesses first."""
        ...


def clean_name_candidate(value: str) -> str:
    cleaned = _EDGE_PUNCTUATION.sub("", value.strip())
    cleaned = re.sub(r"\s+", " ", cleaned)
    return _GENERIC_SUFFIX.sub("", cleaned).strip()


class RegexNameExtractor:
    """
    Heuristic extraction from the raw message.

    Sources, in priority order: the whole message, quoted substrings, text
    after a similarity phrase ("like X", "alternatives to X"), capitalised
    word runs, and letter/digit tokens. Each is cleaned and expanded with a
    hyphen-free and an alphanumeric-only spelling.
    """

    def __init__(self, limit: int = MAX_NAME_CANDIDATES) -> None:
        self._limit = limit

    def extract(self, text: str) -> list[str]:
        raw: list[str] = [text]
        raw += _QUOTED.findall(text)
        raw += _AFTER_SIMILARITY.findall(text)
        raw += _PROPER_NOUN.findall(text)
        raw += _MIXED_TOKEN.findall(text)

        seen: set[str] = set()
        results: list[str] = []
        for value in raw:
            cleaned = clean_name_candidate(value)
            for variant in (cleaned, cleaned.replace("-", " "), _NON_ALNUM.sub("", cleaned)):
                key = variant.lower()
                if len(variant) < 2 or key in seen:
                    continue
                seen.add(key)
                results.append(variant)
                if len(results) >= self._limit:
                    return results
        return results


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


@dataclass
class AnchorResolution:
    """Outcome of the pre-loop name check."""

    mode: Literal["none", "anchor", "exact_match"]
    similarity_intent: bool
    candidates: list[str] = field(default_factory=list)
    matches: list[ExactNameMatch] = field(default_factory=list)
    company: Company | None = None
    score: float = 0.0


async def resolve_anchor(
    message: str,
    retrieval: EntityRetrievalClient,
    extractor: NameExtractor,
    guardrails: Guardrails,
    limits: LoopLimits,
    statuses: list[str] | None = None,
) -> AnchorResolution:
    """
    Look up every extracted name and decide anchor vs. short-circuit.

    Individual lookup failures (refusals included) are logged and skipped.
    A failed hydrate of the winning match degrades to "no anchor".
    """
    statuses = statuses or ["startup"]
    similarity = has_similarity_intent(message)
    names = extractor.extract(message)

    async def lookup(name: str) -> list[tuple[str, ExactNameMatch]]:
        try:
            rows = await guardrails.call(
                limits.retrieval_timeout_seconds,
                retrieval.search_exact_name, name, statuses, limits.exact_name_limit,
            )
        except Exception as e:
            logger.warning("Exact-name lookup failed for %r: %s", name, e)
            return []
        return [(name, row) for row in rows]

    results = await asyncio.gather(*(lookup(name) for name in names))

    # Best score per company; ties go to the lexically smaller candidate text
    best: dict[str, tuple[float, str, ExactNameMatch]] = {}
    for pairs in results:
        for name, row in pairs:
            key = (row.name_score, name)
            current = best.get(row.company_id)
            if current is None or (-key[0], key[1]) < (-current[0], current[1]):
                best[row.company_id] = (row.name_score, name, row)

    ranked = sorted(best.values(), key=lambda item: (-item[0], item[1], item[2].company_id))
    matches = [row for _, _, row in ranked]

    resolution = AnchorResolution(
        mode="none", similarity_intent=similarity, candidates=names, matches=matches,
    )
    if not matches:
        logger.info("No company-name match among %d candidates", len(names))
        return resolution

    top = matches[0]
    resolution.score = top.name_score
    if top.name_score < limits.anchor_match_threshold:
        return resolution
    if not similarity and top.name_score < limits.exact_short_circuit_threshold:
        return resolution

    try:
        companies = await guardrails.call(
            limits.retrieval_timeout_seconds,
            retrieval.get_companies_by_ids, [top.company_id],
        )
    except Exception as e:
        logger.warning("Could not hydrate name match %s: %s", top.company_id, e)
        return resolution
    if not companies:
        return resolution

    resolution.company = companies[0]
    resolution.mode = "anchor" if similarity else "exact_match"
    logger.info(
        "Name match %r (score=%.3f) → %s",
        resolution.company.company_name, top.name_score, resolution.mode,
    )
    return resolution


# ---------------------------------------------------------------------------
# Anchor-Derived Query Material
# ---------------------------------------------------------------------------


def anchor_context(company: Company) -> str:
    """Profile text handed to the planner when an anchor is active."""
    parts = [
        ("Company", company.company_name),
        ("Tagline", company.tagline),
        ("Description", company.description),
        ("Product", company.product_description),
        ("Target customer", company.target_customer),
        ("Problem solved", company.problem_solved),
        ("Differentiator", company.differentiator),
        ("Niches", ", ".join(company.niches)),
        ("Sectors", ", ".join(company.sectors)),
        ("Categories", ", ".join(company.categories)),
        ("Business models", ", ".join(company.business_models)),
    ]
    return "\n".join(f"{label}: {value}" for label, value in parts if value)


def anchor_fallback_queries(company: Company, limit: int = 4) -> list[str]:
    """Similarity queries built from the anchor's own profile."""
    queries: list[str] = []
    niches = " ".join(company.niches[:3]).strip()
    if niches:
        queries += [f"{niches} startups", f"{niches} companies"]
    if company.sectors or company.categories:
        sector = company.sectors[0] if company.sectors else ""
        category = company.categories[0] if company.categories else ""
        queries.append(f"{sector} {category} companies".strip())
    for text_value in (
        company.product_description, company.problem_solved,
        company.description, company.tagline,
    ):
        if text_value and text_value.strip():
            queries.append(text_value.strip())
            break
    return list(dict.fromkeys(queries))[:limit]


def is_anchor_placeholder(query: str, anchor_name: str) -> bool:
    """True for variants that only restate "similar to <anchor>"."""
    name = loose_normalize(anchor_name)
    return bool(name) and has_similarity_intent(query) and name in loose_normalize(query)
