"""
AgentTool - the agent loop controller.

AgentTool handles:
- The ExecutionContext (iteration counter, history, available tools)
- Carrying out actions through the ToolEngine / PlanExecutor
- Iteration control and termination

The planner handles:
- Reasoner interaction
- Choosing the next action
- Judging outcomes (continue, replan, stop)

The loop stops when an observation is complete, when it says not to
continue, or when the iteration budget runs out. The last thought and
observation are always part of the output; a run that cannot finish reports
success=False with an explanatory error instead of raising.
"""

import asyncio
import json
import typing as t

from loguru import logger
from pydantic import BaseModel, Field

from agentflow.errors import AgentFlowError
from agentflow.planning.base_strategy import Planner
from agentflow.planning.models import (
    ActionResult,
    AgentAction,
    AgentThought,
    ConditionalToolsAction,
    ExecutePlanAction,
    ExecutionContext,
    ExecutionPlan,
    FinalAnswerAction,
    HistoryEntry,
    Observation,
    ParallelToolsAction,
    SequentialToolsAction,
    StepStatus,
    ToolCallAction,
)
from agentflow.planning.plan_executor import PlanExecutor
from agentflow.settings import get_settings
from agentflow.tools_core.base_tool import BaseTool
from agentflow.tools_core.models import ToolResult
from agentflow.tools_core.tool_engine import ToolEngine
from agentflow.utilities.utils import shorten


class AgentToolInput(BaseModel):
    """Input for the AgentTool."""

    objective: str = Field(description="The task/objective to accomplish.")
    context: str | None = Field(
        default=None,
        description="Additional context to help accomplish the objective.",
    )
    max_iterations: int | None = Field(
        default=None,
        ge=1,
        description="Maximum number of iterations before stopping (settings default).",
    )


class AgentToolOutput(BaseModel):
    """Output from the AgentTool."""

    result: str = Field(description="The result of the task.")
    success: bool = Field(description="Whether the task was completed successfully.")
    iterations_used: int = Field(description="Number of iterations used.")
    error: str | None = Field(default=None, description="Why the run did not succeed.")
    last_thought: AgentThought | None = None
    last_observation: Observation | None = None
    partial_results: dict[str, t.Any] = Field(
        default_factory=dict,
        description="Successful tool/step outputs gathered during the run.",
    )
    history: list[HistoryEntry] = Field(
        default_factory=list,
        description="Full (thought, result, observation) history for inspection.",
    )


def _plan_outputs(plan: ExecutionPlan) -> dict[str, t.Any]:
    """Results of succeeded steps that no other step depends on."""
    required = {dep for step in plan.steps for dep in step.required_steps()}
    return {
        step.id: step.result
        for step in plan.steps
        if step.status == StepStatus.SUCCEEDED and step.id not in required
    }


class AgentTool(BaseTool[AgentToolInput, AgentToolOutput]):
    """
    General-purpose agent with a pluggable planner.

    The loop:
    1. Planner decides what to do (think)
    2. AgentTool carries out the action
    3. Planner judges the result (analyze_result)
    4. Repeat until complete, told to stop, or out of iterations

    Usage:
        planner = PlannerFactory.create("react", reasoner)
        agent = AgentTool(planner=planner, tools=[search_tool, fetch_tool])

        output = await agent.ainvoke(AgentToolInput(
            objective="Find the three newest tickets and summarize them"
        ))
    """

    _name = "agent"
    description = "A general-purpose agent that plans and uses tools to accomplish objectives."
    _input = AgentToolInput
    _output = AgentToolOutput

    def __init__(
        self,
        planner: Planner,
        tools: list[BaseTool[t.Any, t.Any]] | None = None,
        tool_engine: ToolEngine | None = None,
        plan_executor: PlanExecutor | None = None,
    ) -> None:
        """
        Initialize AgentTool.

        Args:
            planner: Planning strategy (owns its Reasoner)
            tools: Tools to register (on the given engine, or a new one)
            tool_engine: Engine to execute tools with
            plan_executor: Executor for execute_plan actions (built on the
                engine if None)
        """
        super().__init__()
        self.planner = planner
        self.tool_engine = tool_engine or ToolEngine()
        if tools:
            self.tool_engine.register_tools(tools)
        self.plan_executor = plan_executor or PlanExecutor(self.tool_engine)

    def invoke(self, input: AgentToolInput) -> AgentToolOutput:
        """Sync execution - wraps async implementation."""
        return asyncio.run(self.ainvoke(input))

    async def ainvoke(self, input: AgentToolInput) -> AgentToolOutput:
        """Execute the agent task asynchronously."""
        validated = self._validate_input(input)
        max_iterations = validated.max_iterations or get_settings().max_iterations

        logger.info(
            "Starting agent task | objective={} | max_iterations={} | strategy={}",
            shorten(validated.objective, 50),
            max_iterations,
            self.planner.strategy,
        )

        result = await self._agent_loop(
            objective=validated.objective,
            context=validated.context,
            max_iterations=max_iterations,
        )

        if result.success:
            logger.success("Task completed | iterations={}", result.iterations_used)
        else:
            logger.warning(
                "Task failed | iterations={} | error={}",
                result.iterations_used,
                shorten(result.error or result.result),
            )
        return result

    async def _agent_loop(
        self,
        objective: str,
        context: str | None,
        max_iterations: int,
    ) -> AgentToolOutput:
        """Run think -> act -> observe until a terminal observation or the budget."""
        goal = f"{objective}\n\nContext: {context}" if context else objective
        execution = ExecutionContext(
            input=goal,
            max_iterations=max_iterations,
            available_tools=self.tool_engine.describe_tools(),
        )
        self.planner.reset()

        while not execution.budget_exhausted:
            execution.iteration += 1
            logger.debug(
                "Agent iteration {}/{} | history={}",
                execution.iteration,
                max_iterations,
                len(execution.history),
            )

            thought = await self.planner.think(goal, execution)
            result = await self._act(thought.action)
            observation = await self.planner.analyze_result(result, execution)
            execution.add_entry(thought, result, observation)

            if observation.is_complete or not observation.should_continue:
                return self._final_output(execution, result, observation)

        logger.warning("Max iterations reached | max={}", max_iterations)
        last = execution.last_entry
        return AgentToolOutput(
            result=last.observation.feedback if last else "",
            success=False,
            iterations_used=execution.iteration,
            error="Max iterations reached without completing the task",
            last_thought=last.thought if last else None,
            last_observation=last.observation if last else None,
            partial_results=self._partial_results(execution),
            history=execution.history,
        )

    def _final_output(
        self,
        execution: ExecutionContext,
        result: ActionResult,
        observation: Observation,
    ) -> AgentToolOutput:
        success = observation.is_complete and observation.is_successful

        if result.type == "final_answer":
            text = str(result.content)
        elif success and result.content is not None:
            text = result.content if isinstance(result.content, str) else json.dumps(
                result.content, default=str
            )
        else:
            text = observation.feedback

        last = execution.last_entry
        return AgentToolOutput(
            result=text,
            success=success,
            iterations_used=execution.iteration,
            error=None if success else (result.error or observation.feedback or text),
            last_thought=last.thought if last else None,
            last_observation=observation,
            partial_results=self._partial_results(execution),
            history=execution.history,
        )

    @staticmethod
    def _partial_results(execution: ExecutionContext) -> dict[str, t.Any]:
        collected: dict[str, t.Any] = {}
        for entry in execution.history:
            for tool_result in entry.result.tool_results:
                if tool_result.success:
                    collected[tool_result.tool_name] = tool_result.result
            if entry.result.plan_result is not None:
                for step in entry.result.plan_result.executed_steps:
                    if step.success:
                        collected[step.step_id] = step.result
        return collected

    # ------------------------------------------------------------------ acting

    async def _act(self, action: AgentAction) -> ActionResult:
        """Carry out ``action``. Failures come back as results, never raised."""
        try:
            return await self._dispatch(action)
        except AgentFlowError as e:
            logger.warning("Action failed | action={} | error={}", action.type, e)
            return ActionResult(type="error", error=str(e), success=False)
        except Exception as e:
            logger.exception("Unexpected error while executing action | action={}", action.type)
            return ActionResult(
                type="error", error=f"{type(e).__name__}: {e}", success=False
            )

    async def _dispatch(self, action: AgentAction) -> ActionResult:
        engine = self.tool_engine

        if isinstance(action, FinalAnswerAction):
            return ActionResult(
                type="final_answer", content=action.content, success=action.success
            )

        if isinstance(action, ToolCallAction):
            tool_result = await engine.execute_tool(action.to_call())
            return self._tool_action_result("tool_result", [tool_result])

        if isinstance(action, ParallelToolsAction):
            results = await engine.execute_parallel_tools(
                action.tools,
                concurrency=action.concurrency,
                timeout=action.timeout,
                fail_fast=action.fail_fast,
            )
            action_result = self._tool_action_result("tool_results", results)
            if action.aggregate_results:
                action_result.content = engine.aggregate_results(results).model_dump()
            return action_result

        if isinstance(action, SequentialToolsAction):
            results = await engine.execute_sequential_tools(
                action.tools,
                stop_on_error=action.stop_on_error,
                pass_results=action.pass_results,
                timeout=action.timeout,
            )
            return self._tool_action_result("tool_results", results)

        if isinstance(action, ConditionalToolsAction):
            results = await engine.execute_conditional_tools(action.tools)
            return self._tool_action_result("tool_results", results)

        if isinstance(action, ExecutePlanAction):
            plan_result = await self.plan_executor.run(action.plan)
            return ActionResult(
                type="plan_result",
                content=_plan_outputs(action.plan),
                plan_result=plan_result,
                success=plan_result.is_complete,
            )

        raise TypeError(f"Unsupported action type: {type(action).__name__}")

    @staticmethod
    def _tool_action_result(
        kind: t.Literal["tool_result", "tool_results"], results: list[ToolResult]
    ) -> ActionResult:
        content: t.Any = [r.result for r in results]
        if kind == "tool_result":
            content = results[0].result
        return ActionResult(
            type=kind,
            content=content,
            tool_results=results,
            success=all(r.success for r in results),
        )
