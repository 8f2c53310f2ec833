# =============================================================================
# Services Package — Business Logic
# =============================================================================
# Contains the core business logic, separated from API handlers:
#   - parser.py / chunker.py / embedder.py / ingestion.py: document corpus
#   - vectorstore.py / retrieval.py: pluggable vector search (pgvector, Chroma)
#   - scoring.py / sources.py / content_fetcher.py: web source lifecycle
#   - memory.py: learned search, query and analysis patterns
#   - llm.py / model_resolver.py / web_search.py: model providers
#   - retry.py / rate_limiter.py: transient retries and client-side limits
#   - entity_data.py: structured financials for the agent
# =============================================================================
