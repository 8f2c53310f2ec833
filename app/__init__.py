# =============================================================================
# Bank Research Agent
# =============================================================================
# An agentic research service for banks. A bounded, tool-driven LangGraph
# loop reasons over structured financials, an ingested document corpus,
# ranked web sources and its own learned memory, and returns insights.
#
# Package structure:
#   app/
#   ├── api/          → FastAPI route handlers (research, sources, documents,
#   │                    memory)
#   ├── agents/       → Research orchestrator, tools, analysis, worker pool
#   ├── db/           → Database engines, sessions, and ORM models
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── services/     → Business logic (parsing, chunking, embedding,
#   │                    retrieval, scoring, sources, memory, LLM, web search)
#   └── workers/      → Celery task definitions and configuration
# =============================================================================
