# =============================================================================
# Entity Retrieval Client — Typed Wrapper over the Search SQL Functions
# =============================================================================
#
# The company dataset exposes five SQL functions. This module is the only
# place that knows their names, argument lists and result columns:
#
#   search_exact_name_v1            → exact / trigram company-name matches
#   search_companies_hybrid_v1      → vector + lexical + niche scores
#   search_companies_keyword_v1     → lexical + niche scores
#   search_companies_by_taxonomy_v1 → sector / category / model overlap
#   get_companies_by_ids_v1         → full company rows (batch hydrate)
#
# DESIGN DECISION: Protocol (structural typing) over ABC.
# The search loop depends on EntityRetrievalClient only. Tests use a small
# in-memory fake; production uses PostgresRetrievalClient.
#
# DESIGN DECISION: Normalisation happens here, not in the agents.
# Rows come back with NULLs, numeric strings and (for older rows) JSON
# encoded arrays. Everything downstream receives clean Candidate / Company
# dataclasses with floats and lists.
#
# DESIGN DECISION: One error type with a schema-mismatch flag.
# A function whose declared result type drifted from its query (a missing
# migration) is an operability problem worth surfacing with a hint, unlike
# a transient connection error. RetrievalError.schema_mismatch tells them
# apart.
# =============================================================================

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from pgvector.sqlalchemy import Vector
from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.search import Candidate, Company, ExactNameMatch

logger = logging.getLogger(__name__)

SCHEMA_MISMATCH_MARKERS = (
    "structure of query does not match function result type",
    "does not exist",
)
SCHEMA_MISMATCH_HINT = "Apply pending database migrations (rpc type fixes)."


class RetrievalError(Exception):
    """A retrieval backend call failed."""

    def __init__(self, operation: str, message: str, schema_mismatch: bool = False) -> None:
        self.operation = operation
        self.schema_mismatch = schema_mismatch
        if schema_mismatch:
            message = f"{message} {SCHEMA_MISMATCH_HINT}"
        super().__init__(f"{operation} failed: {message}")


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class EntityRetrievalClient(Protocol):
    """
    The five retrieval primitives the search loop relies on.

    Every method may raise RetrievalError independently of the others.
    """

    async def search_exact_name(
        self, query_text: str, statuses: Sequence[str], limit: int,
    ) -> list[ExactNameMatch]: ...

    async def search_hybrid(
        self,
        query_text: str,
        embedding: Sequence[float],
        statuses: Sequence[str],
        include_ids: Sequence[str] | None,
        exclude_ids: Sequence[str] | None,
        limit: int,
        min_semantic: float,
    ) -> list[Candidate]: ...

    async def search_keyword(
        self, query_text: str, statuses: Sequence[str], limit: int,
    ) -> list[Candidate]: ...

    async def search_taxonomy(
        self,
        sectors: Sequence[str],
        categories: Sequence[str],
        business_models: Sequence[str],
        statuses: Sequence[str],
        limit: int,
    ) -> list[Candidate]: ...

    async def get_companies_by_ids(self, company_ids: Sequence[str]) -> list[Company]: ...


# ---------------------------------------------------------------------------
# PostgreSQL Implementation
# ---------------------------------------------------------------------------

_EXACT_NAME_SQL = text(
    "SELECT company_id, name_score, matched_name "
    "FROM search_exact_name_v1(:p_query_text, CAST(:p_statuses AS text[]), :p_limit)"
)

# pgvector's Vector type renders the embedding as a vector literal; the
# double cast lets asyncpg bind it as plain text.
_HYBRID_SQL = text(
    "SELECT company_id, semantic_score, keyword_score, niche_score, "
    "combined_score, matched_fields, matched_terms "
    "FROM search_companies_hybrid_v1("
    ":p_query_text, CAST(CAST(:p_query_embedding AS text) AS vector), "
    "CAST(:p_statuses AS text[]), CAST(:p_include_ids AS text[]), "
    "CAST(:p_exclude_ids AS text[]), :p_limit, :p_min_semantic)"
).bindparams(bindparam("p_query_embedding", type_=Vector()))

_KEYWORD_SQL = text(
    "SELECT company_id, keyword_score, niche_score, combined_score, matched_terms "
    "FROM search_companies_keyword_v1(:p_query_text, CAST(:p_statuses AS text[]), :p_limit)"
)

_TAXONOMY_SQL = text(
    "SELECT company_id, sector_hits, category_hits, model_hits, tag_score "
    "FROM search_companies_by_taxonomy_v1("
    "CAST(:p_sectors AS text[]), CAST(:p_categories AS text[]), "
    "CAST(:p_business_models AS text[]), CAST(:p_statuses AS text[]), :p_limit)"
)

_COMPANIES_BY_IDS_SQL = text(
    "SELECT * FROM get_companies_by_ids_v1(CAST(:p_company_ids AS text[]))"
)


class PostgresRetrievalClient:
    """
    Retrieval over the company tables via the search SQL functions.

    Each call opens its own short-lived session so concurrent retrieval
    calls within one iteration never share a connection.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_factory is None:
            from app.db.engine import async_session_factory

            session_factory = async_session_factory
        self._session_factory = session_factory

    async def search_exact_name(
        self, query_text: str, statuses: Sequence[str], limit: int,
    ) -> list[ExactNameMatch]:
        rows = await self._call(
            "search_exact_name_v1",
            _EXACT_NAME_SQL,
            {"p_query_text": query_text, "p_statuses": list(statuses), "p_limit": limit},
        )
        return [
            ExactNameMatch(
                company_id=str(row["company_id"]),
                name_score=as_number(row.get("name_score")),
                matched_name=str(row.get("matched_name") or ""),
            )
            for row in rows
        ]

    async def search_hybrid(
        self,
        query_text: str,
        embedding: Sequence[float],
        statuses: Sequence[str],
        include_ids: Sequence[str] | None,
        exclude_ids: Sequence[str] | None,
        limit: int,
        min_semantic: float,
    ) -> list[Candidate]:
        rows = await self._call(
            "search_companies_hybrid_v1",
            _HYBRID_SQL,
            {
                "p_query_text": query_text,
                "p_query_embedding": list(embedding),
                "p_statuses": list(statuses),
                "p_include_ids": list(include_ids) if include_ids else None,
                "p_exclude_ids": list(exclude_ids) if exclude_ids else None,
                "p_limit": limit,
                "p_min_semantic": min_semantic,
            },
        )
        return [
            Candidate(
                company_id=str(row["company_id"]),
                semantic_score=as_number(row.get("semantic_score")),
                keyword_score=as_number(row.get("keyword_score")),
                niche_score=as_number(row.get("niche_score")),
                combined_score=as_number(row.get("combined_score")),
                matched_fields=frozenset(as_string_list(row.get("matched_fields"))),
                matched_terms=frozenset(as_string_list(row.get("matched_terms"))),
                sources=frozenset({"hybrid"}),
            )
            for row in rows
        ]

    async def search_keyword(
        self, query_text: str, statuses: Sequence[str], limit: int,
    ) -> list[Candidate]:
        rows = await self._call(
            "search_companies_keyword_v1",
            _KEYWORD_SQL,
            {"p_query_text": query_text, "p_statuses": list(statuses), "p_limit": limit},
        )
        return [
            Candidate(
                company_id=str(row["company_id"]),
                keyword_score=as_number(row.get("keyword_score")),
                niche_score=as_number(row.get("niche_score")),
                combined_score=as_number(row.get("combined_score")),
                matched_fields=frozenset({"keyword"}),
                matched_terms=frozenset(as_string_list(row.get("matched_terms"))),
                sources=frozenset({"keyword"}),
            )
            for row in rows
        ]

    async def search_taxonomy(
        self,
        sectors: Sequence[str],
        categories: Sequence[str],
        business_models: Sequence[str],
        statuses: Sequence[str],
        limit: int,
    ) -> list[Candidate]:
        rows = await self._call(
            "search_companies_by_taxonomy_v1",
            _TAXONOMY_SQL,
            {
                "p_sectors": list(sectors) or None,
                "p_categories": list(categories) or None,
                "p_business_models": list(business_models) or None,
                "p_statuses": list(statuses),
                "p_limit": limit,
            },
        )
        candidates = []
        for row in rows:
            tag_score = as_number(row.get("tag_score"))
            candidates.append(
                Candidate(
                    company_id=str(row["company_id"]),
                    tag_score=tag_score,
                    combined_score=tag_score,
                    matched_fields=frozenset({"taxonomy"}),
                    sources=frozenset({"taxonomy"}),
                )
            )
        return candidates

    async def get_companies_by_ids(self, company_ids: Sequence[str]) -> list[Company]:
        if not company_ids:
            return []
        rows = await self._call(
            "get_companies_by_ids_v1",
            _COMPANIES_BY_IDS_SQL,
            {"p_company_ids": list(company_ids)},
        )
        return [normalize_company_row(row) for row in rows]

    async def _call(
        self, operation: str, statement, params: dict[str, Any],
    ) -> list[Mapping[str, Any]]:
        """Execute one SQL function call and map failures to RetrievalError."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(statement, params)
                return [dict(row) for row in result.mappings().all()]
        except SQLAlchemyError as e:
            message = str(getattr(e, "orig", None) or e)
            raise RetrievalError(
                operation, message, schema_mismatch=is_schema_mismatch(message),
            ) from e


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_client: PostgresRetrievalClient | None = None


def get_retrieval_client() -> PostgresRetrievalClient:
    """Lazy singleton over the shared async session factory."""
    global _client
    if _client is None:
        _client = PostgresRetrievalClient()
    return _client


# ---------------------------------------------------------------------------
# Normalisation Helpers
# ---------------------------------------------------------------------------


def is_schema_mismatch(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in SCHEMA_MISMATCH_MARKERS)


def as_number(value: Any, default: float = 0.0) -> float:
    """Coerce a numeric-ish column to float; NULL, NaN and junk become `default`."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return number


def _maybe_json(value: Any) -> Any:
    if isinstance(value, str):
        stripped = value.strip()
        if stripped[:1] in ("[", "{"):
            try:
                return json.loads(stripped)
            except json.JSONDecodeError:
                return value
    return value


def as_string_list(value: Any) -> list[str]:
    """Coerce an array-ish column (list, JSON string, NULL) to list[str]."""
    value = _maybe_json(value)
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None and str(item).strip()]
    return []


def _as_dict_list(value: Any) -> list[dict[str, Any]]:
    value = _maybe_json(value)
    if isinstance(value, list):
        return [item for item in value if isinstance(item, dict)]
    return []


def _as_optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text_value = str(value).strip()
    return text_value or None


def _as_optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize_company_row(row: Mapping[str, Any]) -> Company:
    """Build a Company from a get_companies_by_ids_v1 row."""
    social_links = _maybe_json(row.get("social_links"))
    if not isinstance(social_links, dict):
        social_links = {}

    return Company(
        id=str(row["id"]),
        company_name=_as_optional_str(row.get("company_name")) or "Unknown Company",
        website_url=str(row.get("website_url") or ""),
        status=_as_optional_str(row.get("status")) or "startup",
        tagline=_as_optional_str(row.get("tagline")),
        description=_as_optional_str(row.get("description")),
        product_description=_as_optional_str(row.get("product_description")),
        target_customer=_as_optional_str(row.get("target_customer")),
        problem_solved=_as_optional_str(row.get("problem_solved")),
        differentiator=_as_optional_str(row.get("differentiator")),
        logo_url=_as_optional_str(row.get("logo_url")),
        founded_year=_as_optional_int(row.get("founded_year")),
        headquarters=_as_optional_str(row.get("headquarters")),
        total_raised=_as_optional_str(row.get("total_raised")),
        team_size=_as_optional_str(row.get("team_size")),
        funding_rounds=_as_dict_list(row.get("funding_rounds")),
        investors=as_string_list(row.get("investors")),
        founders=_as_dict_list(row.get("founders")),
        sectors=as_string_list(row.get("sectors")),
        categories=as_string_list(row.get("categories")),
        niches=as_string_list(row.get("niches")),
        business_models=as_string_list(row.get("business_models")),
        social_links={str(k): str(v) for k, v in social_links.items()},
        recent_news=as_string_list(row.get("recent_news")),
        created_at=_as_optional_str(row.get("created_at")),
        updated_at=_as_optional_str(row.get("updated_at")),
        niches_text=_as_optional_str(row.get("niches_text")),
    )
