"""
Tests for ToolEngine.

Tests:
- Registration (overwrite, case-insensitive lookup, invalid tools)
- Single execution (success, unknown tool, validation, exception, timeout, retries)
- Parallel batches (concurrency bound, ordering, batch timeout, fail_fast)
- Sequential batches (ordering, stop_on_error, pass_results)
- Conditional batches
- Hooks
"""

import asyncio
import time

import pytest

from agentflow.errors import ToolExecutionError, UnknownToolError
from agentflow.tools_core.hooks import ExecutionHooks
from agentflow.tools_core.models import (
    ToolCall,
    ToolCondition,
    ToolErrorType,
    ToolResult,
)
from agentflow.tools_core.tests.common_fixtures import (
    DelayTool,
    FlakyTool,
    InFlightTracker,
    LookupTool,
)
from agentflow.tools_core.tool_engine import ToolEngine


def make_engine(*tools, **kwargs) -> ToolEngine:
    kwargs.setdefault("max_retries", 0)
    kwargs.setdefault("tool_timeout", 2.0)
    return ToolEngine(tools=list(tools), **kwargs)


class TestRegistration:
    def test_lookup_is_case_insensitive(self, engine: ToolEngine):
        assert engine.get_tool("lookup") is engine.get_tool("LOOKUP")
        assert "LOOKUP" in engine.tool_names

    def test_require_tool_raises_for_unknown(self, engine: ToolEngine):
        assert engine.require_tool("Lookup") is engine.get_tool("lookup")
        with pytest.raises(UnknownToolError, match="Unknown tool: nope") as exc_info:
            engine.require_tool("nope")
        assert exc_info.value.tool_name == "nope"

    def test_last_registration_wins(self):
        first, second = DelayTool(name="job"), DelayTool(name="job")
        engine = make_engine(first)
        engine.register_tool(second)
        assert engine.get_tool("job") is second
        assert len(engine.list_tools()) == 1

    def test_rejects_non_tools(self, engine: ToolEngine):
        with pytest.raises(TypeError, match="Expected a BaseTool"):
            engine.register_tool(lambda x: x)  # type: ignore[arg-type]

    def test_rejects_tool_without_callable_execute(self, engine: ToolEngine):
        tool = DelayTool(name="broken")
        tool.ainvoke = None  # type: ignore[assignment,method-assign]
        with pytest.raises(TypeError, match="no callable execute"):
            engine.register_tool(tool)

    def test_describe_tools(self, engine: ToolEngine):
        descriptors = {d.name: d for d in engine.describe_tools()}
        assert descriptors["ADD"].description == "Add two integers"
        assert "x" in descriptors["ADD"].input_schema["properties"]


class TestExecuteTool:
    @pytest.mark.asyncio
    async def test_success_returns_plain_payload(self, engine: ToolEngine):
        result = await engine.execute_tool(ToolCall(tool_name="add", input={"x": 2, "y": 3}))
        assert result.success
        assert result.result == 5
        assert result.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_model_output_is_dumped(self):
        engine = make_engine(DelayTool(name="echo"))
        result = await engine.execute_tool(ToolCall(tool_name="echo", input={"label": "hi"}))
        assert result.result == {"label": "hi", "tool": "echo"}

    @pytest.mark.asyncio
    async def test_unknown_tool_is_error_result(self, engine: ToolEngine):
        result = await engine.execute_tool(ToolCall(tool_name="teleport"))
        assert not result.success
        assert result.error == "Unknown tool: teleport"
        assert result.error_type is ToolErrorType.UNKNOWN_TOOL

    @pytest.mark.asyncio
    async def test_validation_failure_does_not_invoke_tool(self):
        tool = DelayTool(name="echo")
        engine = make_engine(tool)
        result = await engine.execute_tool(
            ToolCall(tool_name="echo", input={"delay_ms": "soon"})
        )
        assert result.error_type is ToolErrorType.VALIDATION
        assert tool.invocations == []

    @pytest.mark.asyncio
    async def test_exception_becomes_execution_error(self, engine: ToolEngine, lookup_tool: LookupTool):
        result = await engine.execute_tool(ToolCall(tool_name="lookup", input={"key": "nope"}))
        assert result.error_type is ToolErrorType.EXECUTION
        assert "nope not found" in (result.error or "")

    @pytest.mark.asyncio
    async def test_per_call_timeout(self):
        engine = make_engine(DelayTool(name="slow", delay_ms=500), tool_timeout=0.05)
        result = await engine.execute_tool(ToolCall(tool_name="slow"))
        assert result.error_type is ToolErrorType.TIMEOUT
        assert "timed out" in (result.error or "")

    @pytest.mark.asyncio
    async def test_retryable_failure_is_retried(self):
        tool = FlakyTool(failures=2)
        engine = make_engine(tool, max_retries=2, retry_base_delay=0.0)
        result = await engine.execute_tool(ToolCall(tool_name="flaky"))
        assert result.success
        assert result.attempts == 3
        assert len(tool.invocations) == 3

    @pytest.mark.asyncio
    async def test_deterministic_failures_are_not_retried(self):
        engine = make_engine(DelayTool(name="echo"), max_retries=3, retry_base_delay=0.0)
        unknown = await engine.execute_tool(ToolCall(tool_name="ghost"))
        invalid = await engine.execute_tool(ToolCall(tool_name="echo", input={"delay_ms": "x"}))
        assert unknown.attempts == 1
        assert invalid.attempts == 1


class TestParallel:
    @pytest.mark.asyncio
    async def test_runs_concurrently_and_preserves_order(self, tracker: InFlightTracker):
        engine = make_engine(
            DelayTool(name="a", delay_ms=50, tracker=tracker),
            DelayTool(name="b", delay_ms=100, tracker=tracker),
            DelayTool(name="c", delay_ms=75, tracker=tracker),
        )
        calls = [ToolCall(tool_name=name, input={"label": name}) for name in "abc"]

        started = time.perf_counter()
        results = await engine.execute_parallel_tools(calls, concurrency=3)
        elapsed = time.perf_counter() - started

        assert [r.result["label"] for r in results] == ["a", "b", "c"]
        assert all(r.success for r in results)
        assert elapsed < 0.2
        assert tracker.peak == 3

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, tracker: InFlightTracker):
        engine = make_engine(DelayTool(name="job", delay_ms=20, tracker=tracker))
        calls = [ToolCall(tool_name="job", input={"label": str(i)}) for i in range(8)]

        results = await engine.execute_parallel_tools(calls, concurrency=2)

        assert len(results) == 8
        assert tracker.peak == 2
        assert [r.result["label"] for r in results] == [str(i) for i in range(8)]

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self):
        engine = make_engine(DelayTool(name="ok"), DelayTool(name="bad", fail=True))
        calls = [ToolCall(tool_name=n) for n in ("ok", "bad", "missing", "ok")]

        results = await engine.execute_parallel_tools(calls)

        assert [r.success for r in results] == [True, False, False, True]
        assert results[1].error == "bad exploded"
        assert results[2].error == "Unknown tool: missing"

    @pytest.mark.asyncio
    async def test_batch_timeout_marks_unfinished_calls(self):
        fast = DelayTool(name="fast", delay_ms=10)
        slow = DelayTool(name="slow", delay_ms=1000)
        engine = make_engine(fast, slow)

        started = time.perf_counter()
        results = await engine.execute_parallel_tools(
            [ToolCall(tool_name="fast"), ToolCall(tool_name="slow")], timeout=0.1
        )

        assert time.perf_counter() - started < 0.5
        assert results[0].success
        assert results[1].error_type is ToolErrorType.TIMEOUT
        assert slow.tracker.current == 0

    @pytest.mark.asyncio
    async def test_fail_fast_raises(self):
        slow = DelayTool(name="slow", delay_ms=1000)
        engine = make_engine(DelayTool(name="bad", fail=True), slow)

        with pytest.raises(ToolExecutionError, match="Tool bad failed: bad exploded"):
            await engine.execute_parallel_tools(
                [ToolCall(tool_name="slow"), ToolCall(tool_name="bad")], fail_fast=True
            )
        # The slow call was cancelled rather than left running
        assert slow.tracker.current == 0

    @pytest.mark.asyncio
    async def test_empty_batch(self, engine: ToolEngine):
        assert await engine.execute_parallel_tools([]) == []


class TestSequential:
    @pytest.mark.asyncio
    async def test_runs_in_order(self, tracker: InFlightTracker):
        engine = make_engine(
            DelayTool(name="a", delay_ms=50, tracker=tracker),
            DelayTool(name="b", delay_ms=100, tracker=tracker),
            DelayTool(name="c", delay_ms=75, tracker=tracker),
        )
        calls = [ToolCall(tool_name=name, input={"label": name}) for name in "abc"]

        started = time.perf_counter()
        results = await engine.execute_sequential_tools(calls)
        elapsed = time.perf_counter() - started

        assert elapsed >= 0.22
        assert tracker.order == ["a", "b", "c"]
        assert tracker.peak == 1
        assert [r.tool_name for r in results] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_stop_on_error(self):
        third = DelayTool(name="third")
        engine = make_engine(DelayTool(name="first"), DelayTool(name="second", fail=True), third)
        calls = [ToolCall(tool_name=n) for n in ("first", "second", "third")]

        results = await engine.execute_sequential_tools(calls, stop_on_error=True)

        assert len(results) == 2
        assert not results[1].success
        assert third.invocations == []

    @pytest.mark.asyncio
    async def test_continue_on_error(self):
        third = DelayTool(name="third")
        engine = make_engine(DelayTool(name="first"), DelayTool(name="second", fail=True), third)
        calls = [ToolCall(tool_name=n) for n in ("first", "second", "third")]

        results = await engine.execute_sequential_tools(calls, stop_on_error=False)

        assert len(results) == 3
        assert [i for i, r in enumerate(results) if not r.success] == [1]
        assert len(third.invocations) == 1

    @pytest.mark.asyncio
    async def test_pass_results(self, engine: ToolEngine):
        calls = [ToolCall(tool_name="collect", input={"value": i}) for i in range(3)]

        results = await engine.execute_sequential_tools(calls, pass_results=True)

        assert results[0].result == {"value": 0, "previous": None}
        assert results[1].result == {"value": 1, "previous": {"value": 0, "previous": None}}
        assert results[2].result["previous"]["value"] == 1

    @pytest.mark.asyncio
    async def test_batch_deadline(self):
        engine = make_engine(DelayTool(name="slow", delay_ms=80))
        calls = [ToolCall(tool_name="slow") for _ in range(3)]

        results = await engine.execute_sequential_tools(
            calls, stop_on_error=False, timeout=0.1
        )

        assert results[0].success
        assert all(r.error_type is ToolErrorType.TIMEOUT for r in results[1:])


class TestConditional:
    @pytest.mark.asyncio
    async def test_conditions_gate_entries(self):
        engine = make_engine(
            DelayTool(name="fetch"),
            DelayTool(name="broken", fail=True),
            DelayTool(name="notify"),
            DelayTool(name="rollback"),
            DelayTool(name="alert"),
        )
        calls = [
            ToolCall(tool_name="fetch", conditions=ToolCondition(always=True)),
            ToolCall(tool_name="broken"),
            ToolCall(
                tool_name="notify",
                conditions=ToolCondition(depends_on=["fetch"], execute_if="success"),
            ),
            ToolCall(
                tool_name="rollback",
                conditions=ToolCondition(depends_on=["fetch"], execute_if="failure"),
            ),
            ToolCall(
                tool_name="alert",
                conditions=ToolCondition(depends_on=["BROKEN"], execute_if="failure"),
            ),
        ]

        results = await engine.execute_conditional_tools(calls)

        assert [r.tool_name for r in results] == ["fetch", "broken", "notify", "alert"]
        assert [r.success for r in results] == [True, False, True, True]

    @pytest.mark.asyncio
    async def test_dependency_not_yet_executed_is_unmet(self):
        engine = make_engine(DelayTool(name="a"), DelayTool(name="b"))
        calls = [
            ToolCall(tool_name="b", conditions=ToolCondition(depends_on=["a"])),
            ToolCall(tool_name="a"),
        ]

        results = await engine.execute_conditional_tools(calls)

        assert [r.tool_name for r in results] == ["a"]


class RecordingHooks(ExecutionHooks):
    def __init__(self) -> None:
        self.events: list[str] = []

    async def before_tool(self, call: ToolCall) -> None:
        self.events.append(f"before:{call.tool_name}")

    async def after_tool(self, call: ToolCall, result: ToolResult) -> None:
        self.events.append(f"after:{call.tool_name}:{result.success}")


class ExplodingHooks(ExecutionHooks):
    async def before_tool(self, call: ToolCall) -> None:
        raise RuntimeError("observer down")


class TestHooks:
    @pytest.mark.asyncio
    async def test_hooks_wrap_each_call(self):
        hooks = RecordingHooks()
        engine = make_engine(DelayTool(name="a"), hooks=hooks)
        await engine.execute_tool(ToolCall(tool_name="a"))
        assert hooks.events == ["before:a", "after:a:True"]

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_break_execution(self):
        engine = make_engine(DelayTool(name="a"), hooks=ExplodingHooks())
        result = await engine.execute_tool(ToolCall(tool_name="a"))
        assert result.success


def test_aggregate_results():
    aggregated = ToolEngine.aggregate_results(
        [
            ToolResult(tool_name="a", result=1),
            ToolResult.failure("b", "boom", ToolErrorType.EXECUTION),
            ToolResult(tool_name="c", result={"x": 1}),
        ]
    )
    assert aggregated.results == [1, {"x": 1}]
    assert aggregated.errors == ["b: boom"]
    assert (aggregated.succeeded, aggregated.failed) == (2, 1)


@pytest.mark.asyncio
async def test_parallel_batch_then_aggregate():
    engine = make_engine(DelayTool(name="ok"), DelayTool(name="bad", fail=True))

    results = await engine.execute_parallel_tools(
        [ToolCall(tool_name="ok", input={"label": "first"}), ToolCall(tool_name="bad")]
    )
    aggregated = engine.aggregate_results(results)

    assert len(results) == 2
    assert aggregated.results == [{"label": "first", "tool": "ok"}]
    assert aggregated.errors == ["bad: bad exploded"]
    assert (aggregated.succeeded, aggregated.failed) == (1, 1)


@pytest.mark.asyncio
async def test_registry_tolerates_registration_during_batch():
    engine = make_engine(DelayTool(name="a", delay_ms=30))
    batch = asyncio.create_task(
        engine.execute_parallel_tools([ToolCall(tool_name="a") for _ in range(3)])
    )
    await asyncio.sleep(0)
    engine.register_tool(DelayTool(name="b"))
    results = await batch
    assert all(r.success for r in results)
    assert engine.get_tool("b") is not None
