"""Pytest configuration and shared fixtures for planning tests."""

from agentflow.planning.tests.common_fixtures import (
    executor,
    mock_reasoner,
    plan_engine,
)

__all__ = [
    "executor",
    "mock_reasoner",
    "plan_engine",
]
