"""
Tree-of-Thoughts Planner - explore alternative approaches, backtrack on failure.

The planner keeps a tree of candidate thoughts:
1. Expand: ask the Reasoner for `max_branches` alternative next actions,
   each scored by the Reasoner's confidence
2. Select: execute the best unexplored node
3. Score: failure x0.3, progress x1.1, final answer x1.2 (clamped to [0, 1])
4. Successful nodes scoring above `expansion_threshold` are expanded one
   level deeper (up to `max_depth`); failures fall back to the best sibling
   or cousin that has not been tried yet

The run ends when a final answer is produced or the tree is exhausted.

Reference: "Tree of Thoughts: Deliberate Problem Solving with Large Language Models" (2023)
"""

import asyncio
import itertools
from dataclasses import dataclass, field

from loguru import logger

from agentflow.configs import get_planning_template_module
from agentflow.errors import ReasonerError
from agentflow.llm_core.reasoner import PromptContext, Reasoner
from agentflow.planning.base_strategy import Planner
from agentflow.planning.models import (
    ActionResult,
    AgentThought,
    ExecutionContext,
    FinalAnswerAction,
    Observation,
)

_templates = get_planning_template_module("tree_of_thoughts_strategy.jinja")

FAILURE_FACTOR = 0.3
PROGRESS_FACTOR = 1.1
FINAL_FACTOR = 1.2
DEFAULT_SCORE = 0.5


def _clamp(score: float) -> float:
    return max(0.0, min(1.0, score))


@dataclass
class ThoughtNode:
    """One candidate thought in the search tree."""

    id: int
    thought: AgentThought
    depth: int
    score: float
    parent: "ThoughtNode | None" = None
    children: list["ThoughtNode"] = field(default_factory=list)
    explored: bool = False
    outcome: str | None = None

    def path(self) -> list[str]:
        """Reasoning from the root down to this node."""
        node: ThoughtNode | None = self
        reasoning: list[str] = []
        while node is not None:
            reasoning.append(node.thought.reasoning)
            node = node.parent
        return list(reversed(reasoning))


class TreeOfThoughtsPlanner(Planner):
    """Search strategy over alternative next actions."""

    strategy = "tree-of-thoughts"

    def __init__(
        self,
        reasoner: Reasoner,
        max_depth: int = 4,
        max_branches: int = 3,
        expansion_threshold: float = 0.6,
    ) -> None:
        """
        Initialize Tree-of-Thoughts Planner.

        Args:
            reasoner: Reasoner asked for candidate thoughts
            max_depth: Maximum depth of the search tree
            max_branches: Candidates generated per expansion
            expansion_threshold: Minimum score of a successful node to expand it
        """
        super().__init__(reasoner)
        self.max_depth = max_depth
        self.max_branches = max_branches
        self.expansion_threshold = expansion_threshold
        self.reset()

    def reset(self) -> None:
        self.nodes: list[ThoughtNode] = []
        self.current: ThoughtNode | None = None
        self._ids = itertools.count(1)

    # ----------------------------------------------------------------- search

    def best_unexplored(self) -> ThoughtNode | None:
        candidates = [node for node in self.nodes if not node.explored]
        if not candidates:
            return None
        # Highest score first; deeper nodes win ties so progress is kept
        return max(candidates, key=lambda node: (node.score, node.depth, -node.id))

    def _should_expand(self) -> bool:
        if not self.nodes:
            return True
        node = self.current
        if node is None or node.outcome != "success" or node.depth >= self.max_depth:
            return False
        return node.score > self.expansion_threshold or self.best_unexplored() is None

    async def _candidate(
        self,
        input: str,
        context: ExecutionContext,
        parent: ThoughtNode | None,
        branch: int,
    ) -> AgentThought:
        prompt = _templates.expand_prompt(
            input=input,
            tools=self.tools_for_prompt(context),
            history=self.history_for_prompt(context),
            path=parent.path() if parent else [],
            branch=branch,
            branches=self.max_branches,
        )
        output = await self.call_think(
            PromptContext(
                prompt=str(prompt),
                purpose="expand",
                input=input,
                strategy=self.strategy,
                iteration=context.iteration,
                available_tools=context.available_tool_names,
                history=self.history_for_prompt(context),
                metadata={"branch": branch, "depth": parent.depth + 1 if parent else 1},
            )
        )
        return self.thought_from_output(output)

    async def _expand(
        self, input: str, context: ExecutionContext, parent: ThoughtNode | None
    ) -> None:
        depth = parent.depth + 1 if parent else 1
        outcomes = await asyncio.gather(
            *(
                self._candidate(input, context, parent, branch)
                for branch in range(1, self.max_branches + 1)
            ),
            return_exceptions=True,
        )

        errors: list[ReasonerError] = []
        for outcome in outcomes:
            if isinstance(outcome, ReasonerError):
                logger.warning("ToT: Candidate discarded | depth={} | error={}", depth, outcome)
                errors.append(outcome)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            node = ThoughtNode(
                id=next(self._ids),
                thought=outcome,
                depth=depth,
                score=_clamp(
                    outcome.confidence if outcome.confidence is not None else DEFAULT_SCORE
                ),
                parent=parent,
            )
            self.nodes.append(node)
            if parent is not None:
                parent.children.append(node)

        if errors and len(errors) == len(outcomes):
            raise errors[0]

        logger.debug(
            "ToT: Expanded | depth={} | candidates={} | total_nodes={}",
            depth,
            len(outcomes) - len(errors),
            len(self.nodes),
        )

    async def _think(self, input: str, context: ExecutionContext) -> AgentThought:
        if self._should_expand():
            parent = self.current if self.nodes else None
            await self._expand(input, context, parent)

        node = self.best_unexplored()
        if node is None:
            message = (
                f"Explored {len(self.nodes)} approaches to depth {self.max_depth} "
                "without reaching the goal"
            )
            return AgentThought(
                reasoning=message,
                action=FinalAnswerAction(content=message, success=False),
                metadata={"nodes": len(self.nodes)},
            )

        node.explored = True
        self.current = node
        thought = node.thought.model_copy(deep=True)
        thought.confidence = node.score
        thought.metadata.update({"node_id": node.id, "depth": node.depth})
        return thought

    # ---------------------------------------------------------------- observe

    async def analyze_result(
        self, result: ActionResult, context: ExecutionContext
    ) -> Observation:
        observation = self.observe(result)
        node = self.current
        if node is None:
            return observation

        if result.type == "final_answer":
            node.outcome = "final"
            node.score = _clamp(node.score * FINAL_FACTOR)
            return observation

        if result.failed:
            node.outcome = "failure"
            node.score = _clamp(node.score * FAILURE_FACTOR)
            if self.best_unexplored() is None:
                observation.should_continue = False
                observation.feedback = (
                    f"{observation.feedback}. No unexplored approaches remain"
                )
            else:
                observation.suggested_next_action = "Backtrack to an alternative approach"
            return observation

        node.outcome = "success"
        node.score = _clamp(node.score * PROGRESS_FACTOR)
        if node.depth >= self.max_depth and self.best_unexplored() is None:
            observation.should_continue = False
            observation.feedback = (
                f"{observation.feedback}. Maximum search depth {self.max_depth} reached"
            )
        return observation
