# =============================================================================
# Agents Package — Research Orchestration
# =============================================================================
#   - orchestrator.py: LangGraph loop (load_memory → reason ⇄ tools) with
#     iteration cap, wall-clock budget and cancellation
#   - tools.py: closed ToolKind enum, typed tool inputs, tool schemas
#   - analysis.py: trend, peer gap and anomaly analysis of financials
#   - state.py: run configuration, per-run state, insights, results
#   - pool.py: bounded parallel runs across entities
# =============================================================================
