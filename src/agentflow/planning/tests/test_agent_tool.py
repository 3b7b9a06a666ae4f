"""
Tests for AgentTool.

Tests:
- Input/output models
- ReAct loop: tool calls, final answers, iteration budget, reasoner failures
- Batch actions (parallel, sequential)
- Plan-execute loop: completion, replanning with preserved steps, deadlock
"""

import json
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from agentflow.llm_core.reasoner import PromptContext, ReasonerOutput
from agentflow.planning.agent_tool import AgentTool, AgentToolInput, AgentToolOutput
from agentflow.planning.plan_execute_strategy import PlanExecutePlanner
from agentflow.planning.plan_executor import PlanExecutor
from agentflow.planning.react_strategy import ReactPlanner
from agentflow.planning.tests.common_fixtures import (
    final_answer_output,
    make_draft,
    tool_call_output,
)
from agentflow.tools_core.tool_engine import ToolEngine


def make_agent(planner, engine: ToolEngine) -> AgentTool:
    return AgentTool(
        planner=planner,
        tool_engine=engine,
        plan_executor=PlanExecutor(engine, max_retries=0),
    )


class TestModels:
    def test_input_defaults(self):
        input = AgentToolInput(objective="Do something")
        assert input.context is None
        assert input.max_iterations is None

    def test_input_rejects_zero_iterations(self):
        with pytest.raises(ValidationError):
            AgentToolInput(objective="x", max_iterations=0)

    def test_output_defaults(self):
        output = AgentToolOutput(result="Done", success=True, iterations_used=1)
        assert output.history == []
        assert output.partial_results == {}
        assert output.error is None

    def test_agent_is_a_tool(self, mock_reasoner: MagicMock, plan_engine: ToolEngine):
        agent = make_agent(ReactPlanner(mock_reasoner), plan_engine)
        assert agent.name == "AGENT"
        assert "objective" in agent.input_schema()["properties"]


class TestReactLoop:
    @pytest.mark.asyncio
    async def test_tool_call_then_final_answer(
        self, mock_reasoner: MagicMock, plan_engine: ToolEngine
    ):
        mock_reasoner.think.side_effect = [
            tool_call_output("add", {"x": 1, "y": 2}),
            final_answer_output("The sum is 3"),
        ]
        agent = make_agent(ReactPlanner(mock_reasoner), plan_engine)

        output = await agent.ainvoke(AgentToolInput(objective="Add 1 and 2"))

        assert output.success
        assert output.result == "The sum is 3"
        assert output.iterations_used == 2
        assert output.partial_results == {"add": 3}
        assert len(output.history) == 2
        assert output.history[0].result.content == 3
        assert output.last_observation.is_complete

    @pytest.mark.asyncio
    async def test_context_is_part_of_goal(
        self, mock_reasoner: MagicMock, plan_engine: ToolEngine
    ):
        mock_reasoner.think.return_value = final_answer_output("ok")
        agent = make_agent(ReactPlanner(mock_reasoner), plan_engine)

        await agent.ainvoke(AgentToolInput(objective="Refund", context="order 77"))

        prompt_context: PromptContext = mock_reasoner.think.await_args.args[0]
        assert "Refund" in prompt_context.input
        assert "order 77" in prompt_context.input

    @pytest.mark.asyncio
    async def test_unsuccessful_final_answer(
        self, mock_reasoner: MagicMock, plan_engine: ToolEngine
    ):
        mock_reasoner.think.return_value = final_answer_output("Cannot do it", success=False)
        agent = make_agent(ReactPlanner(mock_reasoner), plan_engine)

        output = await agent.ainvoke(AgentToolInput(objective="Impossible"))

        assert not output.success
        assert output.result == "Cannot do it"
        assert output.error

    @pytest.mark.asyncio
    async def test_failed_tool_lets_loop_continue(
        self, mock_reasoner: MagicMock, plan_engine: ToolEngine
    ):
        mock_reasoner.think.side_effect = [
            tool_call_output("lookup", {"key": "nobody"}),
            tool_call_output("lookup", {"key": "user"}),
            final_answer_output("ada@example.com"),
        ]
        agent = make_agent(ReactPlanner(mock_reasoner), plan_engine)

        output = await agent.ainvoke(AgentToolInput(objective="Find the email"))

        assert output.success
        assert output.iterations_used == 3
        first = output.history[0]
        assert first.result.failed
        assert first.observation.should_continue
        assert "nobody not found" in first.observation.feedback

    @pytest.mark.asyncio
    async def test_unknown_tool_is_reported(
        self, mock_reasoner: MagicMock, plan_engine: ToolEngine
    ):
        mock_reasoner.think.side_effect = [
            tool_call_output("teleport"),
            final_answer_output("gave up", success=False),
        ]
        agent = make_agent(ReactPlanner(mock_reasoner), plan_engine)

        output = await agent.ainvoke(AgentToolInput(objective="Go"))

        assert "Unknown tool: teleport" in output.history[0].observation.feedback
        assert output.iterations_used == 2

    @pytest.mark.asyncio
    async def test_iteration_budget(self, mock_reasoner: MagicMock, plan_engine: ToolEngine):
        mock_reasoner.think.return_value = tool_call_output("add", {"x": 1, "y": 1})
        agent = make_agent(ReactPlanner(mock_reasoner), plan_engine)

        output = await agent.ainvoke(AgentToolInput(objective="Loop", max_iterations=2))

        assert not output.success
        assert output.iterations_used == 2
        assert output.error == "Max iterations reached without completing the task"
        assert output.last_thought is not None
        assert output.partial_results == {"add": 2}

    @pytest.mark.asyncio
    async def test_reasoner_failure_ends_gracefully(
        self, mock_reasoner: MagicMock, plan_engine: ToolEngine
    ):
        mock_reasoner.think.side_effect = RuntimeError("rate limited")
        agent = make_agent(ReactPlanner(mock_reasoner), plan_engine)

        output = await agent.ainvoke(AgentToolInput(objective="Anything"))

        assert not output.success
        assert output.iterations_used == 1
        assert "I encountered an error while planning" in output.result
        assert "rate limited" in output.result

    @pytest.mark.asyncio
    async def test_invalid_plan_action_ends_gracefully(
        self, mock_reasoner: MagicMock, plan_engine: ToolEngine
    ):
        mock_reasoner.think.return_value = ReasonerOutput(
            reasoning="two steps waiting on each other",
            action={
                "type": "execute_plan",
                "plan": {
                    "goal": "go",
                    "steps": [
                        {"id": "a", "tool": "add", "dependencies": ["b"]},
                        {"id": "b", "tool": "add", "dependencies": ["a"]},
                    ],
                },
            },
        )
        agent = make_agent(ReactPlanner(mock_reasoner), plan_engine)

        output = await agent.ainvoke(AgentToolInput(objective="go", max_iterations=2))

        assert isinstance(output, AgentToolOutput)
        assert not output.success
        assert output.iterations_used == 1
        assert "Circular dependency detected: a -> b -> a" in output.result

    @pytest.mark.asyncio
    async def test_parallel_action_aggregates(
        self, mock_reasoner: MagicMock, plan_engine: ToolEngine
    ):
        mock_reasoner.think.side_effect = [
            ReasonerOutput(
                reasoning="both at once",
                action={
                    "type": "parallel_tools",
                    "tools": [
                        {"tool_name": "add", "input": {"x": 1, "y": 2}},
                        {"tool_name": "broken", "input": {}},
                    ],
                },
            ),
            final_answer_output("partial"),
        ]
        agent = make_agent(ReactPlanner(mock_reasoner), plan_engine)

        output = await agent.ainvoke(AgentToolInput(objective="Batch"))

        first = output.history[0].result
        assert first.type == "tool_results"
        assert first.content["succeeded"] == 1
        assert first.content["failed"] == 1
        assert first.content["errors"] == ["broken: broken exploded"]
        assert first.failed

    @pytest.mark.asyncio
    async def test_sequential_action_passes_results(
        self, mock_reasoner: MagicMock, plan_engine: ToolEngine
    ):
        mock_reasoner.think.side_effect = [
            ReasonerOutput(
                action={
                    "type": "sequential_tools",
                    "pass_results": True,
                    "tools": [
                        {"tool_name": "add", "input": {"x": 2, "y": 2}},
                        {"tool_name": "collect", "input": {"value": 9}},
                    ],
                },
            ),
            final_answer_output("done"),
        ]
        agent = make_agent(ReactPlanner(mock_reasoner), plan_engine)

        output = await agent.ainvoke(AgentToolInput(objective="Chain"))

        assert output.history[0].result.content == [4, {"value": 9, "previous": 4}]

    def test_sync_invoke(self, mock_reasoner: MagicMock, plan_engine: ToolEngine):
        mock_reasoner.think.return_value = final_answer_output("sync ok")
        agent = make_agent(ReactPlanner(mock_reasoner), plan_engine)

        output = agent.invoke(AgentToolInput(objective="Sync"))

        assert output.success
        assert output.result == "sync ok"


class TestPlanExecuteLoop:
    @pytest.mark.asyncio
    async def test_plan_completes(self, mock_reasoner: MagicMock, plan_engine: ToolEngine):
        mock_reasoner.create_plan.return_value = make_draft(
            {"id": "fetch", "tool": "lookup", "arguments": {"key": "user"}},
            {"id": "next", "tool": "add", "arguments": {"x": "{{fetch.result.id}}", "y": 1}},
        )
        agent = make_agent(PlanExecutePlanner(mock_reasoner), plan_engine)

        output = await agent.ainvoke(AgentToolInput(objective="Next user id"))

        assert output.success
        assert output.iterations_used == 1
        assert json.loads(output.result) == {"next": 43}
        assert output.partial_results["fetch"]["id"] == 42
        assert output.partial_results["next"] == 43

    @pytest.mark.asyncio
    async def test_replan_round_trip(self, mock_reasoner: MagicMock, plan_engine: ToolEngine):
        mock_reasoner.create_plan.side_effect = [
            make_draft(
                {"id": "fetch", "tool": "lookup", "arguments": {"key": "user"}},
                {"id": "notify", "tool": "broken"},
            ),
            make_draft(
                {"id": "fetch", "tool": "lookup", "arguments": {"key": "user"}},
                {"id": "total", "tool": "add", "arguments": {"x": "{{fetch.result.id}}", "y": 1}},
            ),
        ]
        agent = make_agent(PlanExecutePlanner(mock_reasoner), plan_engine)

        output = await agent.ainvoke(AgentToolInput(objective="Notify then total"))

        assert output.success
        assert output.iterations_used == 2
        first_plan, second_plan = (entry.result.plan_result for entry in output.history)
        assert first_plan.type.value == "needs_replan"
        assert first_plan.plan_id != second_plan.plan_id
        assert [r.step_id for r in second_plan.executed_steps] == ["total"]
        assert json.loads(output.result) == {"total": 43}

    @pytest.mark.asyncio
    async def test_deadlock_stops_run(self, mock_reasoner: MagicMock, plan_engine: ToolEngine):
        mock_reasoner.create_plan.return_value = make_draft(
            {"id": "a", "tool": "broken"},
            {"id": "b", "tool": "add", "arguments": {"x": "{{a.result}}", "y": 1}},
        )
        agent = make_agent(PlanExecutePlanner(mock_reasoner), plan_engine)

        output = await agent.ainvoke(AgentToolInput(objective="Doomed"))

        assert not output.success
        assert output.iterations_used == 1
        assert output.result.startswith("DeadlockError")
        assert mock_reasoner.create_plan.await_count == 1

    @pytest.mark.asyncio
    async def test_replans_are_capped(self, mock_reasoner: MagicMock, plan_engine: ToolEngine):
        mock_reasoner.create_plan.return_value = make_draft({"id": "a", "tool": "broken"})
        agent = make_agent(PlanExecutePlanner(mock_reasoner, max_replans=1), plan_engine)

        output = await agent.ainvoke(AgentToolInput(objective="Keep failing"))

        assert not output.success
        assert output.iterations_used == 2
        assert output.result.startswith("ReplanExhaustedError")
