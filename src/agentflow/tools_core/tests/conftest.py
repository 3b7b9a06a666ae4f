"""Pytest configuration and shared fixtures for tools_core tests."""

from agentflow.tools_core.tests.common_fixtures import (
    DelayTool,
    FlakyTool,
    InFlightTracker,
    LookupTool,
    engine,
    lookup_tool,
    tracker,
)

__all__ = [
    "DelayTool",
    "FlakyTool",
    "InFlightTracker",
    "LookupTool",
    "engine",
    "lookup_tool",
    "tracker",
]
