# =============================================================================
# Candidate Filter — Deterministic Plan Filters over Hydrated Companies
# =============================================================================
#
# Runs after hydration and before reranking. A candidate survives when:
#   - its company record was hydrated
#   - its status is one of the plan's statuses
#   - it shares at least one value with each non-empty taxonomy filter
#   - with niche_mode=must_match, its niche/description text contains at
#     least one niche term (case-insensitive substring)
#   - it is not the anchor
#
# Survivors keep the working-set order (combined score, then id).
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

from app.models.plans import PlanFilters
from app.models.search import Candidate, Company

logger = logging.getLogger(__name__)


def _intersects(values: Sequence[str], allowed: Sequence[str]) -> bool:
    return not allowed or bool(set(values) & set(allowed))


def _niche_haystack(company: Company) -> str:
    parts = [
        " ".join(company.niches),
        company.niches_text or "",
        company.description or "",
        company.product_description or "",
    ]
    return " ".join(parts).lower()


def passes_filters(company: Company, filters: PlanFilters) -> bool:
    if filters.statuses and company.status not in filters.statuses:
        return False
    if not _intersects(company.sectors, filters.sectors):
        return False
    if not _intersects(company.categories, filters.categories):
        return False
    if not _intersects(company.business_models, filters.business_models):
        return False
    if filters.niche_mode == "must_match" and filters.niches:
        haystack = _niche_haystack(company)
        if not any(niche.lower() in haystack for niche in filters.niches):
            return False
    return True


def apply_plan_filters(
    working: Sequence[Candidate],
    companies: Mapping[str, Company],
    filters: PlanFilters,
    anchor_id: str | None,
    limit: int,
) -> list[Candidate]:
    """Filter the hydrated working set; at most `limit` survivors."""
    survivors = [
        candidate for candidate in working
        if candidate.company_id != anchor_id
        and candidate.company_id in companies
        and passes_filters(companies[candidate.company_id], filters)
    ]
    logger.info("Filtering kept %d of %d candidates", len(survivors), len(working))
    return survivors[:limit]
