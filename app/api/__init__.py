# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for a specific feature:
#   - research.py: streamed research runs (NDJSON)
#   - sources.py: source ranking, quality assessment, review, fetching
#   - documents.py: document upload, deletion, retagging, corpus stats
#   - memory.py: learned pattern statistics
# =============================================================================
