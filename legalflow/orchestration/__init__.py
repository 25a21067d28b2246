"""
Orchestration Package

Turns a free-text legal request into a dependency-ordered plan of agent jobs
and runs it:
- Intent analysis (LLM with keyword fallback)
- Plan building with static dependency edges
- Execution engine with cooperative cancellation
- NDJSON progress streaming
"""
