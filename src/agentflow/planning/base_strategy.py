"""
Planner - the strategy interface driving the think -> act -> observe loop.

Every strategy implements:
- think(input, context) -> AgentThought: decide the next action
- analyze_result(result, context) -> Observation: judge what the action did

A Reasoner is mandatory. Reasoner failures (exceptions or unparsable output)
are converted into ReasonerError and `think` turns them into a terminal
final_answer, so a run always ends gracefully.
"""

import json
import typing as t
from abc import ABC, abstractmethod

from loguru import logger
from pydantic import TypeAdapter, ValidationError

from agentflow.errors import MissingReasonerError, PlanValidationError, ReasonerError
from agentflow.llm_core.reasoner import (
    PlanDraft,
    PlanningRequest,
    PromptContext,
    Reasoner,
    ReasonerOutput,
)
from agentflow.planning.models import (
    ActionResult,
    AgentAction,
    AgentThought,
    ExecutionContext,
    FinalAnswerAction,
    Observation,
)
from agentflow.utilities.utils import shorten

_action_adapter: TypeAdapter[AgentAction] = TypeAdapter(AgentAction)


def summarize_result(result: ActionResult, limit: int = 500) -> str:
    """Compact text rendering of an action result for prompts."""
    if result.is_error:
        return f"ERROR: {result.error}"
    if result.plan_result is not None:
        return result.plan_result.feedback
    if result.tool_results:
        parts = [
            f"{r.tool_name} -> {shorten(r.result, limit) if r.success else 'ERROR: ' + str(r.error)}"
            for r in result.tool_results
        ]
        return "; ".join(parts)
    return shorten(result.content, limit)


class Planner(ABC):
    """
    Base class for planning strategies.

    Subclasses set `strategy` (the tag used by PlannerFactory) and implement
    `_think` and `analyze_result`.
    """

    strategy: t.ClassVar[str]

    def __init__(self, reasoner: Reasoner) -> None:
        if reasoner is None:
            raise MissingReasonerError(
                f"Planner '{getattr(self, 'strategy', type(self).__name__)}' requires a Reasoner"
            )
        self.reasoner = reasoner

    async def think(self, input: str, context: ExecutionContext) -> AgentThought:
        """Decide the next action. Never raises for Reasoner failures."""
        try:
            thought = await self._think(input, context)
        except ReasonerError as e:
            logger.error("Planning failed | strategy={} | error={}", self.strategy, e)
            return self.fallback_thought(
                f"I encountered an error while planning: {e}", error=str(e)
            )

        thought.metadata.setdefault("strategy", self.strategy)
        logger.debug(
            "Thought | strategy={} | action={} | reasoning={}",
            self.strategy,
            thought.action.type,
            shorten(thought.reasoning, 80),
        )
        return thought

    @abstractmethod
    async def _think(self, input: str, context: ExecutionContext) -> AgentThought: ...

    @abstractmethod
    async def analyze_result(
        self, result: ActionResult, context: ExecutionContext
    ) -> Observation: ...

    def reset(self) -> None:
        """Clear per-run state. Stateless strategies have nothing to clear."""

    # ------------------------------------------------------------------ helpers

    def fallback_thought(self, message: str, error: str | None = None) -> AgentThought:
        return AgentThought(
            reasoning=message,
            action=FinalAnswerAction(content=message, success=False),
            confidence=0.0,
            metadata={"strategy": self.strategy, "fallback": True, "error": error},
        )

    async def call_think(self, prompt_context: PromptContext) -> ReasonerOutput:
        """Call Reasoner.think, turning any failure into ReasonerError."""
        try:
            output = await self.reasoner.think(prompt_context)
        except ReasonerError:
            raise
        except Exception as e:
            raise ReasonerError(f"Reasoner think failed: {e}") from e
        if not isinstance(output, ReasonerOutput):
            try:
                output = ReasonerOutput.model_validate(output)
            except ValidationError as e:
                raise ReasonerError(f"Unparsable reasoner output: {e}") from e
        return output

    async def call_create_plan(
        self, goal: str, strategy_hint: str, request: PlanningRequest
    ) -> PlanDraft:
        """Call Reasoner.create_plan, turning any failure into ReasonerError."""
        try:
            draft = await self.reasoner.create_plan(goal, strategy_hint, request)
        except ReasonerError:
            raise
        except Exception as e:
            raise ReasonerError(f"Reasoner create_plan failed: {e}") from e
        if not isinstance(draft, PlanDraft):
            try:
                draft = PlanDraft.model_validate(draft)
            except ValidationError as e:
                raise ReasonerError(f"Unparsable plan: {e}") from e
        return draft

    @staticmethod
    def parse_action(raw: t.Any) -> AgentAction:
        """Validate a raw action dictionary into an AgentAction."""
        if raw is None:
            raise ReasonerError("Reasoner returned no action")
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ReasonerError(f"Action is not valid JSON: {e}") from e
        try:
            return _action_adapter.validate_python(raw)
        except ValidationError as e:
            raise ReasonerError(f"Unparsable action: {e}") from e
        except PlanValidationError as e:
            raise ReasonerError(f"Invalid plan in action: {e}") from e

    def thought_from_output(self, output: ReasonerOutput) -> AgentThought:
        return AgentThought(
            reasoning=output.reasoning,
            action=self.parse_action(output.action),
            confidence=output.confidence,
        )

    @staticmethod
    def history_for_prompt(context: ExecutionContext) -> list[dict[str, t.Any]]:
        """The full (thought, action, result, observation) history as prompt data."""
        return [
            {
                "iteration": index + 1,
                "reasoning": entry.thought.reasoning,
                "action": entry.action.model_dump_json(exclude={"plan"}),
                "result": summarize_result(entry.result),
                "feedback": entry.observation.feedback,
            }
            for index, entry in enumerate(context.history)
        ]

    @staticmethod
    def tools_for_prompt(context: ExecutionContext) -> list[dict[str, t.Any]]:
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": json.dumps(tool.input_schema.get("properties", {})),
            }
            for tool in context.available_tools
        ]

    @staticmethod
    def observe(result: ActionResult) -> Observation:
        """Default judgment shared by the iterative strategies."""
        if result.type == "final_answer":
            return Observation(
                is_complete=True,
                is_successful=result.success,
                should_continue=False,
                feedback="Final answer provided",
            )

        if result.is_error:
            return Observation(
                is_complete=False,
                is_successful=False,
                should_continue=True,
                feedback=f"Action failed: {result.error}",
                suggested_next_action="Try a different approach or tool",
            )

        if result.failed:
            failures = result.describe_failures()
            return Observation(
                is_complete=False,
                is_successful=False,
                should_continue=True,
                feedback=f"Some actions failed: {'; '.join(failures)}",
                suggested_next_action="Fix the failing inputs or use another tool",
            )

        return Observation(
            is_complete=False,
            is_successful=True,
            should_continue=True,
            feedback=f"Action succeeded: {summarize_result(result, 200)}",
        )
