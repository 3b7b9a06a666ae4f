"""
Utility functions for the agentflow package.

Modules:
- utils: General text utilities (JSON extraction, tool name normalization,
  log-friendly truncation)
"""
