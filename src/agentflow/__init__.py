"""agentflow - tool execution and planning engine for LLM agents."""
