# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for a specific feature:
#   - search.py: POST /search and POST /search/resume (NDJSON event streams)
# =============================================================================
