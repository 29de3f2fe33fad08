# =============================================================================
# Agents Package — One-Tool Chat Agent
# =============================================================================
#   - router.py: deterministic tool choice (calculator / internet search /
#     pitch search) from the message text
#   - calculator.py: restricted arithmetic evaluator behind the calculator
#   - tools.py: the three tools plus the ToolRegistry that always answers
#     with text
#   - orchestrator.py: LangGraph state machine, decide → execute →
#     synthesize → finalize, at most one tool call per turn
# =============================================================================
