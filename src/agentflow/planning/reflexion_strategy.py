"""
Reflexion Planner - learning from mistakes through self-reflection.

Reflexion follows a "try, reflect on failure, retry with insight" pattern:
1. Attempt an action
2. On failure, ask the Reasoner what went wrong
3. Store the insight in memory
4. Retry with accumulated insights in the prompt

After `max_reflections` consecutive failed attempts the planner stops the run.

Reference: "Reflexion: Language Agents with Verbal Reinforcement Learning" (2023)
"""

from dataclasses import dataclass, field

from loguru import logger
from pydantic import BaseModel, Field

from agentflow.configs import get_planning_template_module
from agentflow.llm_core.reasoner import PromptContext, Reasoner
from agentflow.planning.base_strategy import Planner
from agentflow.planning.models import (
    ActionResult,
    AgentThought,
    ExecutionContext,
    Observation,
)
from agentflow.utilities.utils import shorten

_templates = get_planning_template_module("reflexion_strategy.jinja")


class ReflectionInsight(BaseModel):
    """A single reflection insight from a failure."""

    iteration: int = Field(description="Which iteration this insight came from")
    failure_description: str = Field(description="What went wrong")
    insight: str = Field(description="What was learned / how to avoid this")
    tool_involved: str | None = Field(
        default=None, description="Tool that failed, if any"
    )


@dataclass
class ReflexionMemory:
    """
    Memory store for the Reflexion planner.

    Task insights live for one run; persistent insights optionally survive
    `reset()` so later runs can learn from earlier ones.
    """

    task_insights: list[ReflectionInsight] = field(default_factory=list)
    persistent_insights: list[ReflectionInsight] = field(default_factory=list)

    # Circuit breaker
    consecutive_failures: int = 0

    def add_insight(self, insight: ReflectionInsight, persist: bool = False) -> None:
        self.task_insights.append(insight)
        if persist:
            self.persistent_insights.append(insight)

    def get_context_prompt(self, max_insights: int = 5) -> str:
        """Render accumulated insights as a prompt section."""
        if not self.task_insights and not self.persistent_insights:
            return ""

        lines = ["## Lessons from Previous Attempts\n"]

        if self.persistent_insights:
            lines.append("### General Patterns to Avoid:")
            lines.extend(f"- {i.insight}" for i in self.persistent_insights[-max_insights:])
            lines.append("")

        if self.task_insights:
            lines.append("### This Task's Learnings:")
            lines.extend(
                f"- Attempt {i.iteration}: {i.insight}"
                for i in self.task_insights[-max_insights:]
            )

        return "\n".join(lines)

    def reset_task(self) -> None:
        self.task_insights = []
        self.consecutive_failures = 0

    def reset_all(self) -> None:
        self.reset_task()
        self.persistent_insights = []


class ReflexionPlanner(Planner):
    """
    Reflexion strategy: act like React, but reflect after every failure.

    Flow per iteration:
        1. If the previous action failed: reflect -> store insight
        2. Render the action prompt with accumulated insights
        3. Ask the Reasoner for the next action
    """

    strategy = "reflexion"

    def __init__(
        self,
        reasoner: Reasoner,
        max_reflections: int = 3,
        persist_insights: bool = False,
    ) -> None:
        """
        Initialize Reflexion Planner.

        Args:
            reasoner: Reasoner used for both action and reflection phases
            max_reflections: Consecutive failures tolerated before giving up
            persist_insights: Keep insights across runs (cross-task learning)
        """
        super().__init__(reasoner)
        self.max_reflections = max_reflections
        self.persist_insights = persist_insights
        self.memory = ReflexionMemory()
        self._pending_failure: str | None = None
        self._failed_tool: str | None = None

    async def _reflect(
        self, input: str, context: ExecutionContext, failure: str
    ) -> ReflectionInsight:
        logger.info(
            "Reflexion: Generating reflection | iteration={} | failure={}",
            context.iteration,
            shorten(failure, 50),
        )
        output = await self.call_think(
            PromptContext(
                prompt=str(_templates.reflection_prompt(input=input, failure_context=failure)),
                purpose="reflect",
                input=input,
                strategy=self.strategy,
                iteration=context.iteration,
                available_tools=context.available_tool_names,
                history=self.history_for_prompt(context),
            )
        )
        return ReflectionInsight(
            iteration=context.iteration,
            failure_description=failure,
            insight=output.reasoning or "Unable to generate insight",
            tool_involved=self._failed_tool,
        )

    async def _think(self, input: str, context: ExecutionContext) -> AgentThought:
        if self._pending_failure is not None:
            insight = await self._reflect(input, context, self._pending_failure)
            self.memory.add_insight(insight, persist=self.persist_insights)
            self.memory.consecutive_failures += 1
            self._pending_failure = None
            logger.debug("Reflexion: Insight stored | insight={}", shorten(insight.insight))

        prompt = _templates.action_prompt(
            input=input,
            tools=self.tools_for_prompt(context),
            history=self.history_for_prompt(context),
            insights=self.memory.get_context_prompt(),
        )
        output = await self.call_think(
            PromptContext(
                prompt=str(prompt),
                purpose="act",
                input=input,
                strategy=self.strategy,
                iteration=context.iteration,
                available_tools=context.available_tool_names,
                history=self.history_for_prompt(context),
            )
        )
        thought = self.thought_from_output(output)
        thought.metadata["insights"] = len(self.memory.task_insights)
        return thought

    async def analyze_result(
        self, result: ActionResult, context: ExecutionContext
    ) -> Observation:
        observation = self.observe(result)

        if observation.is_complete:
            if observation.is_successful:
                self.memory.consecutive_failures = 0
            return observation

        if not result.failed:
            self.memory.consecutive_failures = 0
            return observation

        if self.memory.consecutive_failures >= self.max_reflections:
            logger.warning(
                "Reflexion: Max reflections reached | count={}", self.max_reflections
            )
            return Observation(
                is_complete=False,
                is_successful=False,
                should_continue=False,
                feedback=(
                    f"Failed after {self.max_reflections} reflection attempts. "
                    f"Last failure: {observation.feedback}"
                ),
            )

        failed_tools = [r.tool_name for r in result.tool_results if not r.success]
        self._failed_tool = failed_tools[0] if failed_tools else None
        self._pending_failure = "; ".join(result.describe_failures()) or observation.feedback
        observation.suggested_next_action = "Reflect on the failure and retry with the lesson learned"
        return observation

    def reset(self, full: bool = False) -> None:
        """
        Reset planner state.

        Args:
            full: If True, also clear persistent insights
        """
        self._pending_failure = None
        self._failed_tool = None
        if full:
            self.memory.reset_all()
        else:
            self.memory.reset_task()

    def get_insights(self) -> list[ReflectionInsight]:
        return self.memory.task_insights + self.memory.persistent_insights
