"""
ToolEngine - the single authority for invoking tools.

Execution modes:
- execute_tool: one call, never raises for tool-caused failures
- execute_parallel_tools: bounded fan-out (asyncio.Semaphore), input order kept
- execute_sequential_tools: strict order, optional result passing / stop on error
- execute_conditional_tools: entries gated on earlier outcomes in the batch

Every failure a tool can cause (bad input, exception, timeout, unknown name)
is reported as an error-tagged ToolResult. Only `fail_fast` parallel batches
raise, so callers can reason about partial failure from the result set.
"""

import asyncio
import time
import typing as t

from loguru import logger
from pydantic import BaseModel

from agentflow.errors import (
    InputValidationError,
    ToolExecutionError,
    ToolTimeoutError,
    UnknownToolError,
)
from agentflow.settings import get_settings
from agentflow.tools_core.base_tool import BaseTool
from agentflow.tools_core.hooks import ExecutionHooks, run_hook
from agentflow.tools_core.models import (
    PREVIOUS_RESULT_KEY,
    AggregatedResults,
    ToolCall,
    ToolCondition,
    ToolDescriptor,
    ToolErrorType,
    ToolResult,
)
from agentflow.utilities.utils import normalize_tool_name, shorten


def _to_payload(output: t.Any) -> t.Any:
    """Turn a tool's output model into plain python data."""
    # RootModel dumps to its bare root value
    if isinstance(output, BaseModel):
        return output.model_dump()
    return output


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


class ToolEngine:
    """
    Registers tools and executes tool calls with failure isolation.

    Usage:
        engine = ToolEngine(tools=[search_tool, fetch_tool])

        result = await engine.execute_tool(ToolCall(tool_name="search", input={"query": "x"}))

        results = await engine.execute_parallel_tools(
            [ToolCall(tool_name="fetch", input={"id": i}) for i in range(10)],
            concurrency=3,
            timeout=5.0,
        )
    """

    def __init__(
        self,
        tools: t.Iterable[BaseTool[t.Any, t.Any]] | None = None,
        tool_timeout: float | None = None,
        concurrency: int | None = None,
        batch_timeout: float | None = None,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
        retry_max_delay: float | None = None,
        hooks: ExecutionHooks | None = None,
    ) -> None:
        """
        Initialize the ToolEngine.

        Args:
            tools: Tools to register up front
            tool_timeout: Per-call timeout in seconds (settings.tool_timeout)
            concurrency: Default in-flight limit for parallel batches
            batch_timeout: Default deadline in seconds for parallel batches
            max_retries: Retries for retryable failures (execution, timeout)
            retry_base_delay: First backoff delay in seconds, doubled per attempt
            retry_max_delay: Upper bound for the backoff delay
            hooks: Observers called around every tool call
        """
        settings = get_settings()
        self.tool_timeout = tool_timeout if tool_timeout is not None else settings.tool_timeout
        self.concurrency = concurrency if concurrency is not None else settings.parallel_concurrency
        self.batch_timeout = (
            batch_timeout if batch_timeout is not None else settings.parallel_timeout
        )
        self.max_retries = max_retries if max_retries is not None else settings.tool_max_retries
        self.retry_base_delay = (
            retry_base_delay if retry_base_delay is not None else settings.retry_base_delay
        )
        self.retry_max_delay = (
            retry_max_delay if retry_max_delay is not None else settings.retry_max_delay
        )
        self.hooks = hooks or ExecutionHooks()
        self._tools: dict[str, BaseTool[t.Any, t.Any]] = {}

        for tool in tools or []:
            self.register_tool(tool)

    # ------------------------------------------------------------------ registry

    def register_tool(self, tool: BaseTool[t.Any, t.Any]) -> None:
        """Register a tool under its normalized name. Last registration wins."""
        if not isinstance(tool, BaseTool):
            raise TypeError(f"Expected a BaseTool instance, got {type(tool).__name__}")
        if not callable(getattr(tool, "ainvoke", None)):
            raise TypeError(f"Tool {tool.raw_name!r} has no callable execute capability")

        if tool.name in self._tools:
            logger.debug("Overwriting tool registration | tool={}", tool.name)

        # Copy on write so running batches keep reading a consistent registry
        self._tools = {**self._tools, tool.name: tool}

    def register_tools(self, tools: t.Iterable[BaseTool[t.Any, t.Any]]) -> None:
        for tool in tools:
            self.register_tool(tool)

    def get_tool(self, name: str) -> BaseTool[t.Any, t.Any] | None:
        return self._tools.get(normalize_tool_name(name))

    def require_tool(self, name: str) -> BaseTool[t.Any, t.Any]:
        """Like get_tool, but raises UnknownToolError for unregistered names."""
        tool = self.get_tool(name)
        if tool is None:
            raise UnknownToolError(f"Unknown tool: {name}", tool_name=name)
        return tool

    def list_tools(self) -> list[BaseTool[t.Any, t.Any]]:
        return list(self._tools.values())

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    def describe_tools(self) -> list[ToolDescriptor]:
        """Descriptors of every registered tool, for prompt construction."""
        return [
            ToolDescriptor(
                name=tool.name,
                description=tool.description,
                input_schema=tool.input_schema(),
            )
            for tool in self._tools.values()
        ]

    # ----------------------------------------------------------------- execution

    async def execute_tool(self, call: ToolCall, timeout: float | None = None) -> ToolResult:
        """Execute one tool call, retrying retryable failures with backoff."""
        result = await self._execute_once(call, timeout)
        attempt = 1

        while (
            not result.success
            and result.error_type is not None
            and result.error_type.retryable
            and attempt <= self.max_retries
        ):
            delay = min(self.retry_base_delay * 2 ** (attempt - 1), self.retry_max_delay)
            logger.warning(
                "Retrying tool | tool={} | attempt={}/{} | delay={}s | error={}",
                call.tool_name,
                attempt,
                self.max_retries,
                delay,
                shorten(result.error),
            )
            await asyncio.sleep(delay)
            attempt += 1
            result = await self._execute_once(call, timeout)

        result.attempts = attempt
        return result

    async def _execute_once(self, call: ToolCall, timeout: float | None) -> ToolResult:
        started = time.perf_counter()
        try:
            tool = self.require_tool(call.tool_name)
        except UnknownToolError as e:
            logger.error("Unknown tool | tool={}", call.tool_name)
            return ToolResult.failure(call.tool_name, str(e), ToolErrorType.UNKNOWN_TOOL)

        try:
            validated = tool._validate_input(call.input)
        except InputValidationError as e:
            logger.warning("Invalid tool input | tool={} | error={}", call.tool_name, e)
            return ToolResult.failure(
                call.tool_name, str(e), ToolErrorType.VALIDATION, _elapsed_ms(started)
            )

        await run_hook(self.hooks, "before_tool", call)
        limit = timeout if timeout is not None else self.tool_timeout

        logger.debug("Tool call | tool={} | args={}", call.tool_name, shorten(call.input))
        try:
            output = await asyncio.wait_for(tool.ainvoke(validated), timeout=limit)
        except asyncio.TimeoutError:
            result = ToolResult.failure(
                call.tool_name,
                f"Tool {call.tool_name} timed out after {limit}s",
                ToolErrorType.TIMEOUT,
            )
        except InputValidationError as e:
            result = ToolResult.failure(call.tool_name, str(e), ToolErrorType.VALIDATION)
        except Exception as e:
            # Anything a tool raises is a tool failure, reported not propagated
            result = ToolResult.failure(
                call.tool_name, str(e) or type(e).__name__, ToolErrorType.EXECUTION
            )
        else:
            result = ToolResult(tool_name=call.tool_name, result=_to_payload(output))

        result.duration_ms = _elapsed_ms(started)
        if result.success:
            logger.debug(
                "Tool result | tool={} | duration={:.1f}ms | result={}",
                call.tool_name,
                result.duration_ms,
                shorten(result.result, 200),
            )
        else:
            logger.error(
                "Tool failed | tool={} | type={} | error={}",
                call.tool_name,
                result.error_type.value if result.error_type else None,
                shorten(result.error),
            )

        await run_hook(self.hooks, "after_tool", call, result)
        return result

    async def execute_parallel_tools(
        self,
        calls: t.Sequence[ToolCall],
        concurrency: int | None = None,
        timeout: float | None = None,
        fail_fast: bool = False,
    ) -> list[ToolResult]:
        """
        Execute calls concurrently with at most ``concurrency`` in flight.

        Results are returned in input order. When the batch deadline passes,
        unfinished calls are cancelled and reported as timeout errors.
        Aggregation is left to the caller: pass the returned list to
        aggregate_results (the agent loop does this for actions with
        aggregate_results set).

        Raises:
            ToolExecutionError: only when fail_fast is set and a call fails
        """
        calls = list(calls)
        if not calls:
            return []

        limit = max(1, concurrency or self.concurrency)
        batch_timeout = timeout if timeout is not None else self.batch_timeout
        semaphore = asyncio.Semaphore(limit)
        loop = asyncio.get_running_loop()

        logger.info(
            "Parallel batch | tools={} | concurrency={} | timeout={}s | fail_fast={}",
            len(calls),
            limit,
            batch_timeout,
            fail_fast,
        )

        async def run(call: ToolCall) -> ToolResult:
            async with semaphore:
                return await self.execute_tool(call)

        tasks = [asyncio.create_task(run(call)) for call in calls]
        positions = {task: index for index, task in enumerate(tasks)}
        results: list[ToolResult | None] = [None] * len(calls)
        pending: set[asyncio.Task[ToolResult]] = set(tasks)
        deadline = loop.time() + batch_timeout

        try:
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(
                    pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    result = task.result()
                    results[positions[task]] = result
                    if fail_fast and not result.success:
                        raise ToolExecutionError(
                            f"Tool {result.tool_name} failed: {result.error}",
                            tool_name=result.tool_name,
                        )

            if pending:
                message = f"Parallel batch timed out after {batch_timeout}s"
                logger.warning("{} | unfinished={}", message, len(pending))
                for task in pending:
                    index = positions[task]
                    results[index] = ToolResult.failure(
                        calls[index].tool_name,
                        message,
                        ToolErrorType.TIMEOUT,
                        duration_ms=batch_timeout * 1000,
                    )
                if fail_fast:
                    first = min(positions[task] for task in pending)
                    raise ToolTimeoutError(
                        f"Tool {calls[first].tool_name} failed: {message}",
                        tool_name=calls[first].tool_name,
                    )
        finally:
            await self._cancel(pending)

        return t.cast(list[ToolResult], results)

    @staticmethod
    async def _cancel(tasks: t.Iterable[asyncio.Task[ToolResult]]) -> None:
        unfinished = [task for task in tasks if not task.done()]
        for task in unfinished:
            task.cancel()
        if unfinished:
            await asyncio.gather(*unfinished, return_exceptions=True)

    async def execute_sequential_tools(
        self,
        calls: t.Sequence[ToolCall],
        stop_on_error: bool = True,
        pass_results: bool = False,
        timeout: float | None = None,
    ) -> list[ToolResult]:
        """
        Execute calls one after another in input order.

        Args:
            calls: Tool calls to execute
            stop_on_error: Halt after the first failed call (it is included)
            pass_results: Add the previous successful result to the next
                call's input under the ``previous_result`` key
            timeout: Optional deadline in seconds for the whole batch
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        results: list[ToolResult] = []
        previous: ToolResult | None = None

        for call in calls:
            if pass_results and previous is not None and previous.success:
                call = call.model_copy(
                    update={"input": {**call.input, PREVIOUS_RESULT_KEY: previous.result}}
                )

            remaining = deadline - loop.time() if deadline is not None else None
            if remaining is None:
                result = await self.execute_tool(call)
            elif remaining <= 0:
                result = ToolResult.failure(
                    call.tool_name,
                    f"Sequential batch timed out after {timeout}s",
                    ToolErrorType.TIMEOUT,
                )
            else:
                result = await self.execute_tool(
                    call, timeout=min(remaining, self.tool_timeout)
                )

            results.append(result)
            previous = result

            if not result.success and stop_on_error:
                logger.warning(
                    "Sequential batch stopped | tool={} | executed={}/{}",
                    call.tool_name,
                    len(results),
                    len(calls),
                )
                break

        return results

    async def execute_conditional_tools(self, calls: t.Sequence[ToolCall]) -> list[ToolResult]:
        """
        Execute entries whose conditions hold, in order.

        Conditions are checked against the most recent outcome of each tool
        executed earlier in the same batch. Entries that do not qualify are
        left out of the returned list.
        """
        outcomes: dict[str, bool] = {}
        results: list[ToolResult] = []

        for call in calls:
            if not self._condition_met(call.conditions, outcomes):
                logger.debug("Conditional tool skipped | tool={}", call.tool_name)
                continue
            result = await self.execute_tool(call)
            outcomes[normalize_tool_name(call.tool_name)] = result.success
            results.append(result)

        return results

    @staticmethod
    def _condition_met(conditions: ToolCondition | None, outcomes: dict[str, bool]) -> bool:
        if conditions is None or conditions.always or not conditions.depends_on:
            return True
        wanted = conditions.execute_if == "success"
        return all(
            outcomes.get(normalize_tool_name(name)) is wanted
            for name in conditions.depends_on
        )

    @staticmethod
    def aggregate_results(results: t.Sequence[ToolResult]) -> AggregatedResults:
        """Combine a batch into successful payloads and error messages."""
        aggregated = AggregatedResults()
        for result in results:
            if result.success:
                aggregated.results.append(result.result)
                aggregated.succeeded += 1
            else:
                aggregated.errors.append(f"{result.tool_name}: {result.error}")
                aggregated.failed += 1
        return aggregated
