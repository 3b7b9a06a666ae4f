"""
React Planner - Reason-Act-Observe, one action per iteration.

Each think call folds the whole history (thought, action, result,
observation) into the prompt, so the Reasoner re-plans from what actually
happened:

    Iteration 1: "I need the user list first"      -> tool_call list_users
    Iteration 2: "Got 5 users, update profiles"    -> parallel_tools update_profile x5
    Iteration 3: "All updated"                     -> final_answer

Output that cannot be parsed into an action degrades to a final_answer
(handled by Planner.think), so the loop always terminates.

Reference: "ReAct: Synergizing Reasoning and Acting in Language Models" (2022)
"""

import typing as t

from agentflow.configs import get_planning_template_module
from agentflow.llm_core.reasoner import PromptContext, Reasoner
from agentflow.planning.base_strategy import Planner
from agentflow.planning.models import (
    ActionResult,
    AgentThought,
    ExecutionContext,
    Observation,
)

_templates = get_planning_template_module("react_strategy.jinja")


class ReactPlanner(Planner):
    """Iterative strategy: one Reasoner call and one action per iteration."""

    strategy = "react"

    def __init__(self, reasoner: Reasoner, think_prompt: str | None = None) -> None:
        """
        Initialize React Planner.

        Args:
            reasoner: Reasoner consulted on every iteration
            think_prompt: Custom prompt replacing the template (the run history
                is appended to it and passed in the prompt context)
        """
        super().__init__(reasoner)
        self.think_prompt = think_prompt

    def _get_think_prompt(
        self, input: str, context: ExecutionContext, history: list[dict[str, t.Any]]
    ) -> str:
        if self.think_prompt:
            return str(_templates.custom_think_prompt(prompt=self.think_prompt, history=history))
        return str(
            _templates.think_prompt(
                input=input,
                tools=self.tools_for_prompt(context),
                history=history,
            )
        )

    async def _think(self, input: str, context: ExecutionContext) -> AgentThought:
        history = self.history_for_prompt(context)
        output = await self.call_think(
            PromptContext(
                prompt=self._get_think_prompt(input, context, history),
                purpose="act",
                input=input,
                strategy=self.strategy,
                iteration=context.iteration,
                available_tools=context.available_tool_names,
                history=history,
            )
        )
        return self.thought_from_output(output)

    async def analyze_result(
        self, result: ActionResult, context: ExecutionContext
    ) -> Observation:
        return self.observe(result)
