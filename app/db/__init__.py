# =============================================================================
# Database Package
# =============================================================================
# Provides the async SQLAlchemy engine, session factory, and ORM models.
#
# Key exports:
#   - async_session_factory: short-lived sessions for retrieval and telemetry
#   - Base: SQLAlchemy declarative base for ORM models
#   - SearchRun, SearchRunStep, SearchRunResult: per-request telemetry
# =============================================================================
