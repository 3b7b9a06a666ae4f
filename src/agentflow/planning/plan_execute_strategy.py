"""
Plan-Execute Planner - plan the whole task, execute it, replan on failure.

Flow:
    1. think: Reasoner.create_plan -> ExecutionPlan (fresh id every time)
    2. The agent loop runs the plan through the PlanExecutor
    3. analyze_result:
       - execution_complete -> done
       - needs_replan -> store PreviousExecution in the context, continue
       - deadlock -> stop with the failure analysis
    4. The next think call sees previous_execution; steps of the new plan
       that reuse a preserved step's id and tool start as succeeded with a
       copy of the preserved result, so completed work is not repeated

A replan cap (max_replans) bounds the number of plans per run.
"""

import copy
import typing as t

from loguru import logger
from pydantic import ValidationError

from agentflow.configs import get_planning_template_module
from agentflow.errors import (
    DeadlockError,
    PlanValidationError,
    ReasonerError,
    ReplanExhaustedError,
)
from agentflow.llm_core.reasoner import PlanDraft, PlanningRequest, Reasoner
from agentflow.planning.base_strategy import Planner
from agentflow.planning.models import (
    ActionResult,
    AgentThought,
    ExecutePlanAction,
    ExecutionContext,
    ExecutionPlan,
    ExecutionResultType,
    FinalAnswerAction,
    Observation,
    PlanSignals,
    PlanStep,
    PreservedStep,
    PreviousExecution,
    StepStatus,
    utcnow,
)
from agentflow.settings import get_settings
from agentflow.utilities.utils import normalize_tool_name

_templates = get_planning_template_module("plan_execute_strategy.jinja")


def _first_present(raw: dict[str, t.Any], *keys: str, default: t.Any = None) -> t.Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return default


def convert_draft_step(raw: dict[str, t.Any], index: int) -> PlanStep:
    """
    Build a PlanStep from the loosely shaped step a Reasoner returns.

    A bare string dependency is a single id; pydantic coerces "parallel", so
    "false" stays False.
    """
    dependencies = _first_present(raw, "dependencies", "depends_on", "dependsOn", default=[])
    if isinstance(dependencies, str):
        dependencies = [dependencies]

    return PlanStep(
        id=str(_first_present(raw, "id", default=f"step-{index + 1}")),
        description=str(_first_present(raw, "description", default="")),
        tool=_first_present(raw, "tool", "tool_name"),
        arguments=_first_present(raw, "arguments", "args", "parameters", default={}),
        dependencies=list(dependencies),
        parallel=_first_present(raw, "parallel", default=False),
    )


class PlanExecutePlanner(Planner):
    """Batch strategy: one plan per think call, executed by the PlanExecutor."""

    strategy = "plan-execute"

    def __init__(
        self,
        reasoner: Reasoner,
        max_replans: int | None = None,
        plan_prompt: str | None = None,
    ) -> None:
        """
        Initialize Plan-Execute Planner.

        Args:
            reasoner: Reasoner used to create (and re-create) plans
            max_replans: Replans allowed per run (settings.max_replans)
            plan_prompt: Custom planning prompt replacing the template
        """
        super().__init__(reasoner)
        self.max_replans = (
            max_replans if max_replans is not None else get_settings().max_replans
        )
        self.plan_prompt = plan_prompt
        self.current_plan: ExecutionPlan | None = None

    def reset(self) -> None:
        self.current_plan = None

    # ------------------------------------------------------------------- think

    async def _think(self, input: str, context: ExecutionContext) -> AgentThought:
        if context.replan_count > self.max_replans:
            return self._exhausted_thought(context)

        previous = self._previous_summary(context.previous_execution)
        request = PlanningRequest(
            prompt=self._get_plan_prompt(input, context, previous),
            available_tools=context.available_tools,
            previous_execution=previous,
            replan_count=context.replan_count,
        )
        draft = await self.call_create_plan(input, self.strategy, request)

        if not draft.steps:
            return self._thought_without_steps(draft)

        plan = self._build_plan(input, draft, context.previous_execution, context.replan_count)
        self.current_plan = plan
        logger.info(
            "Plan created | plan={} | steps={} | replan={} | reused={}",
            plan.id,
            len(plan.steps),
            context.replan_count,
            len(plan.steps_with_status(StepStatus.SUCCEEDED)),
        )
        return AgentThought(
            reasoning=draft.reasoning or f"Execute a plan of {len(plan.steps)} steps",
            action=ExecutePlanAction(plan=plan),
            metadata={
                "plan_id": plan.id,
                "replan_count": context.replan_count,
                "audit": draft.audit,
            },
        )

    def _get_plan_prompt(
        self,
        input: str,
        context: ExecutionContext,
        previous: dict[str, t.Any] | None,
    ) -> str:
        if self.plan_prompt:
            return self.plan_prompt
        return str(
            _templates.plan_prompt(
                goal=input,
                tools=self.tools_for_prompt(context),
                previous=previous,
            )
        )

    @staticmethod
    def _previous_summary(previous: PreviousExecution | None) -> dict[str, t.Any] | None:
        if previous is None:
            return None
        analysis = previous.failure_analysis
        return {
            "plan_id": previous.plan.id,
            "feedback": previous.result.feedback,
            "primary_cause": analysis.primary_cause if analysis else "",
            "failure_patterns": analysis.failure_patterns if analysis else [],
            "failed_steps": previous.result.failed_steps,
            "skipped_steps": previous.result.skipped_steps,
            "signals": (
                previous.plan.signals.model_dump() if previous.plan.signals.has_problems else None
            ),
            "preserved_steps": [step.model_dump() for step in previous.preserved_steps],
        }

    def _thought_without_steps(self, draft: PlanDraft) -> AgentThought:
        if draft.signals.needs:
            content = "I need more information to continue: " + "; ".join(draft.signals.needs)
            success = False
        elif draft.signals.errors:
            content = "Planning failed: " + "; ".join(draft.signals.errors)
            success = False
        else:
            content = draft.reasoning or "No executable steps were produced"
            success = bool(draft.reasoning)
        return AgentThought(
            reasoning=draft.reasoning,
            action=FinalAnswerAction(content=content, success=success),
            metadata={"signals": draft.signals.model_dump()},
        )

    def _build_plan(
        self,
        goal: str,
        draft: PlanDraft,
        previous: PreviousExecution | None,
        replan_count: int = 0,
    ) -> ExecutionPlan:
        preserved = {step.step_id: step for step in previous.preserved_steps} if previous else {}
        try:
            steps = [convert_draft_step(raw, index) for index, raw in enumerate(draft.steps)]
            for step in steps:
                self._reuse_preserved(step, preserved.get(step.id))
            return ExecutionPlan(
                goal=goal,
                steps=steps,
                strategy=self.strategy,
                reasoning=draft.reasoning,
                signals=PlanSignals.model_validate(draft.signals.model_dump()),
                metadata={
                    "audit": draft.audit,
                    "replan_of": previous.plan.id if previous else None,
                    "replan_count": replan_count,
                },
            )
        except (PlanValidationError, ValidationError, TypeError) as e:
            raise ReasonerError(f"Invalid plan: {e}") from e

    @staticmethod
    def _reuse_preserved(step: PlanStep, preserved: PreservedStep | None) -> None:
        if preserved is None or step.tool is None or preserved.tool is None:
            return
        if normalize_tool_name(step.tool) != normalize_tool_name(preserved.tool):
            return
        step.status = StepStatus.SUCCEEDED
        step.result = copy.deepcopy(preserved.result)
        step.finished_at = utcnow()

    def _exhausted_thought(self, context: ExecutionContext) -> AgentThought:
        error = ReplanExhaustedError(
            f"Replan limit reached ({self.max_replans}) without completing the goal"
        )
        message = f"{type(error).__name__}: {error}"
        return AgentThought(
            reasoning=message,
            action=FinalAnswerAction(content=message, success=False),
            metadata={"replan_count": context.replan_count},
        )

    # ---------------------------------------------------------------- observe

    async def analyze_result(
        self, result: ActionResult, context: ExecutionContext
    ) -> Observation:
        outcome = result.plan_result
        if result.type != "plan_result" or outcome is None:
            return self.observe(result)

        if outcome.type == ExecutionResultType.EXECUTION_COMPLETE:
            return Observation(
                is_complete=True,
                is_successful=True,
                should_continue=False,
                feedback=outcome.feedback,
            )

        if outcome.type == ExecutionResultType.DEADLOCK:
            error = DeadlockError(outcome.feedback)
            logger.error("Plan deadlocked | plan={} | failed={}", outcome.plan_id, outcome.failed_steps)
            return Observation(
                is_complete=False,
                is_successful=False,
                should_continue=False,
                feedback=f"{type(error).__name__}: {error}",
            )

        # needs_replan: keep what worked for the next plan
        analysis = outcome.replan_context
        plan = self.current_plan
        if plan is not None:
            context.previous_execution = PreviousExecution(
                plan=plan,
                result=outcome,
                preserved_steps=analysis.preserved_steps if analysis else [],
                failure_analysis=analysis,
            )
        context.replan_count += 1

        if context.replan_count > self.max_replans:
            error = ReplanExhaustedError(
                f"Replan limit reached ({self.max_replans}). Last outcome: {outcome.feedback}"
            )
            logger.warning("Replans exhausted | plan={} | max={}", outcome.plan_id, self.max_replans)
            return Observation(
                is_complete=False,
                is_successful=False,
                should_continue=False,
                feedback=f"{type(error).__name__}: {error}",
            )

        logger.info(
            "Replanning | plan={} | replan={}/{} | preserved={}",
            outcome.plan_id,
            context.replan_count,
            self.max_replans,
            len(analysis.preserved_steps) if analysis else 0,
        )
        return Observation(
            is_complete=False,
            is_successful=False,
            should_continue=True,
            feedback=outcome.feedback,
            suggested_next_action="replan",
        )
