# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Request and response bodies of the HTTP API. Kept apart from the ORM
# tables in app/db/models.py: chunk embeddings and raw source content never
# appear in a response schema.
#   - requests.py: research, source and document-maintenance requests
#   - responses.py: rankings, assessments, corpus and memory stats
# =============================================================================
