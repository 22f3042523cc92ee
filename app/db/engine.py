# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# DESIGN DECISION: Async SQLAlchemy Engine
# FastAPI is an async framework, so we use SQLAlchemy's async engine to avoid
# blocking the event loop during database operations:
# - All DB queries use `await` (e.g., `await session.execute(...)`)
# - We use `asyncpg` as the PostgreSQL driver
#
# SESSION PATTERN:
#
# Self-managed sessions (async_session_factory() directly):
#    Used by the retrieval client (one short session per SQL function call,
#    so concurrent retrieval calls never share a connection) and by the
#    telemetry sink (writes outside the request lifecycle). Telemetry
#    sessions MUST commit explicitly.
# =============================================================================

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import settings

# ---------------------------------------------------------------------------
# Async Engine
# ---------------------------------------------------------------------------
# - echo=settings.debug: log SQL statements during development.
# - pool_size=10: one search request can hold up to retrieval_concurrency
#   connections at once, plus telemetry writes.
# - max_overflow=10: extra connections during traffic spikes.
# ---------------------------------------------------------------------------
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=10,
    max_overflow=10,
    pool_pre_ping=True,
)

# ---------------------------------------------------------------------------
# Session Factory
# ---------------------------------------------------------------------------
# expire_on_commit=False: attributes stay readable after commit without a
# new round-trip, which would fail outside the session in async code.
# ---------------------------------------------------------------------------
async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

