"""
Hook points around tool calls and plan steps.

Subclass ExecutionHooks and override the coroutines you need; the defaults do
nothing. Hooks are observers: an exception raised by a hook is logged and the
execution carries on.
"""

import typing as t

from loguru import logger

from agentflow.tools_core.models import ToolCall, ToolResult

if t.TYPE_CHECKING:
    from agentflow.planning.models import PlanStep, StepExecutionResult


class ExecutionHooks:
    """No-op hook set used when the host does not provide one."""

    async def before_tool(self, call: ToolCall) -> None:
        pass

    async def after_tool(self, call: ToolCall, result: ToolResult) -> None:
        pass

    async def before_step(self, step: "PlanStep") -> None:
        pass

    async def after_step(self, step: "PlanStep", result: "StepExecutionResult") -> None:
        pass


async def run_hook(hooks: ExecutionHooks, hook_name: str, *args: t.Any) -> None:
    """Invoke ``hooks.<hook_name>(*args)`` without letting it break execution."""
    try:
        await getattr(hooks, hook_name)(*args)
    except Exception:
        logger.exception("Hook failed | hook={} | hooks={}", hook_name, type(hooks).__name__)
