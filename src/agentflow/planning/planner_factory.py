"""
PlannerFactory - select a planning strategy by tag.

    planner = PlannerFactory.create("plan-execute", reasoner, max_replans=2)

A Reasoner is mandatory: creating any planner without one fails immediately,
before any reasoning call is attempted.
"""

import typing as t

from agentflow.errors import MissingReasonerError
from agentflow.llm_core.reasoner import Reasoner
from agentflow.planning.base_strategy import Planner
from agentflow.planning.plan_execute_strategy import PlanExecutePlanner
from agentflow.planning.react_strategy import ReactPlanner
from agentflow.planning.reflexion_strategy import ReflexionPlanner
from agentflow.planning.tree_of_thoughts_strategy import TreeOfThoughtsPlanner


def _normalize_tag(tag: str) -> str:
    return tag.strip().lower().replace("_", "-")


class PlannerFactory:
    """Registry of planning strategies keyed by tag and alias."""

    _registry: t.ClassVar[dict[str, type[Planner]]] = {}

    @classmethod
    def register(cls, planner_cls: type[Planner], *aliases: str) -> None:
        """Register ``planner_cls`` under its strategy tag and any aliases."""
        for tag in (planner_cls.strategy, *aliases):
            cls._registry[_normalize_tag(tag)] = planner_cls

    @classmethod
    def available_strategies(cls) -> list[str]:
        return sorted(cls._registry)

    @classmethod
    def create(
        cls, strategy: str, reasoner: Reasoner | None, **options: t.Any
    ) -> Planner:
        """
        Create a planner for ``strategy``.

        Raises:
            MissingReasonerError: if reasoner is None
            ValueError: if the strategy tag is unknown
        """
        if reasoner is None:
            raise MissingReasonerError(f"Planner '{strategy}' requires a Reasoner")

        planner_cls = cls._registry.get(_normalize_tag(strategy))
        if planner_cls is None:
            raise ValueError(
                f"Unknown planner strategy: {strategy!r}. "
                f"Available: {', '.join(cls.available_strategies())}"
            )
        return planner_cls(reasoner, **options)


PlannerFactory.register(ReactPlanner, "iterative")
PlannerFactory.register(PlanExecutePlanner, "batch")
PlannerFactory.register(ReflexionPlanner)
PlannerFactory.register(TreeOfThoughtsPlanner, "tot")
