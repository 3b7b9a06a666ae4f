"""
PlanExecutor - runs an ExecutionPlan (a DAG of steps) through the ToolEngine.

Scheduling works in synchronized waves:
1. Compute the ready set: pending steps whose dependencies (explicit and
   argument references) have all succeeded
2. Dispatch parallel-flagged ready steps together through the ToolEngine's
   parallel mode, then the remaining ready steps one at a time in plan order
3. Wait for the whole wave to settle, then recompute the ready set

When nothing is ready any more, the run is classified:
- needs_replan: the plan carries signals (needs, errors, a suggested next
  step) and fewer than max_signal_replans replans have happened
- execution_complete: no step failed
- deadlock: no step succeeded and some steps can never become ready
- needs_replan: everything else with a failure; a ReplanContext describes
  what to keep and what went wrong
"""

import copy
import re
import time
import typing as t

from loguru import logger

from agentflow.errors import DependencyError
from agentflow.planning.argument_resolver import ArgumentResolver
from agentflow.planning.models import (
    ExecutionPlan,
    ExecutionResultType,
    PlanExecutionResult,
    PlanStatus,
    PlanStep,
    PreservedStep,
    ReplanContext,
    StepExecutionResult,
    StepStatus,
    utcnow,
)
from agentflow.settings import get_settings
from agentflow.tools_core.hooks import ExecutionHooks, run_hook
from agentflow.tools_core.models import ToolCall, ToolErrorType, ToolResult
from agentflow.tools_core.tool_engine import ToolEngine
from agentflow.utilities.utils import shorten

# (substrings, category) checked in order against the lower-cased first error
_CAUSE_CATEGORIES: list[tuple[tuple[str, ...], str]] = [
    (("invalid",), "Invalid input provided"),
    (("not found",), "Resource not found"),
    (("permission", "unauthorized", "forbidden", "auth"), "Permission or authentication error"),
    (("timeout", "timed out", "unavailable"), "Service unavailable or timeout"),
]


def normalize_failure_patterns(errors: t.Iterable[str]) -> list[str]:
    """Lower-case, collapse whitespace and de-duplicate, keeping first-seen order."""
    patterns: dict[str, None] = {}
    for error in errors:
        pattern = re.sub(r"\s+", " ", error).strip().lower()
        if pattern:
            patterns.setdefault(pattern, None)
    return list(patterns)


def classify_primary_cause(error: str) -> str:
    lowered = error.lower()
    for needles, category in _CAUSE_CATEGORIES:
        if any(needle in lowered for needle in needles):
            return category
    return error


class PlanExecutor:
    """
    Executes plans produced by a planner.

    Usage:
        executor = PlanExecutor(tool_engine=engine, max_retries=1)
        result = await executor.run(plan)

        if result.type == ExecutionResultType.NEEDS_REPLAN:
            context = result.replan_context
    """

    def __init__(
        self,
        tool_engine: ToolEngine,
        max_retries: int | None = None,
        concurrency: int | None = None,
        batch_timeout: float | None = None,
        hooks: ExecutionHooks | None = None,
        max_signal_replans: int | None = None,
    ) -> None:
        """
        Initialize the PlanExecutor.

        Args:
            tool_engine: Engine that owns the tools referenced by plan steps
            max_retries: Re-dispatches of a step after a retryable failure
                (settings.max_step_retries)
            concurrency: In-flight limit for parallel waves (engine default if None)
            batch_timeout: Deadline for each parallel wave (engine default if None)
            hooks: Observers for before_step/after_step (engine hooks if None)
            max_signal_replans: Replans a plan's signals may request, compared
                against plan.metadata["replan_count"] (settings.max_signal_replans)
        """
        self.tool_engine = tool_engine
        self.max_retries = (
            max_retries if max_retries is not None else get_settings().max_step_retries
        )
        self.concurrency = concurrency
        self.batch_timeout = batch_timeout
        self.hooks = hooks or tool_engine.hooks
        self.max_signal_replans = (
            max_signal_replans
            if max_signal_replans is not None
            else get_settings().max_signal_replans
        )

    @staticmethod
    def get_ready_steps(plan: ExecutionPlan) -> list[PlanStep]:
        """Pending steps whose requirements have all succeeded, in plan order."""
        status = {step.id: step.status for step in plan.steps}
        return [
            step
            for step in plan.steps
            if step.status == StepStatus.PENDING
            and all(status.get(dep) == StepStatus.SUCCEEDED for dep in step.required_steps())
        ]

    async def run(self, plan: ExecutionPlan) -> PlanExecutionResult:
        """Execute ``plan`` in place and classify the outcome."""
        started = time.perf_counter()

        # Steps interrupted mid-run go back to pending
        for step in plan.steps:
            if step.status == StepStatus.RUNNING:
                step.status = StepStatus.PENDING

        plan.status = PlanStatus.EXECUTING
        plan.touch()
        logger.info(
            "Executing plan | plan={} | steps={} | goal={}",
            plan.id,
            len(plan.steps),
            shorten(plan.goal, 60),
        )

        executed: list[StepExecutionResult] = []
        wave = 0
        while True:
            ready = self.get_ready_steps(plan)
            if not ready:
                break
            wave += 1
            logger.debug(
                "Plan wave {} | plan={} | ready={}",
                wave,
                plan.id,
                [step.id for step in ready],
            )
            executed.extend(await self._run_wave(plan, ready))

        result = self._classify(plan, executed, (time.perf_counter() - started) * 1000)

        if result.type == ExecutionResultType.EXECUTION_COMPLETE:
            logger.success(
                "Plan completed | plan={} | steps={} | time={:.0f}ms",
                plan.id,
                len(result.successful_steps),
                result.execution_time_ms,
            )
        else:
            logger.warning(
                "Plan incomplete | plan={} | outcome={} | failed={} | skipped={}",
                plan.id,
                result.type.value,
                result.failed_steps,
                result.skipped_steps,
            )
        return result

    # ------------------------------------------------------------------ dispatch

    async def _run_wave(
        self, plan: ExecutionPlan, ready: list[PlanStep]
    ) -> list[StepExecutionResult]:
        resolver = ArgumentResolver(
            {step.id: step.result for step in plan.steps if step.status == StepStatus.SUCCEEDED}
        )
        records: list[StepExecutionResult] = []

        parallel = [step for step in ready if step.parallel]
        if parallel:
            records.extend(await self._run_parallel(parallel, resolver))

        for step in ready:
            if not step.parallel:
                records.append(await self._run_serial(step, resolver))

        plan.touch()
        return records

    async def _start(self, step: PlanStep, resolver: ArgumentResolver) -> ToolCall | ToolResult:
        """Mark ``step`` running and build its call, or an immediate outcome."""
        step.status = StepStatus.RUNNING
        step.started_at = utcnow()
        await run_hook(self.hooks, "before_step", step)

        if step.tool is None:
            # Reasoning-only step: nothing to call
            return ToolResult(tool_name="", result=step.description)

        try:
            arguments = resolver.resolve(step.arguments)
        except DependencyError as e:
            logger.warning("Step arguments unresolved | step={} | error={}", step.id, e)
            return ToolResult.failure(step.tool, str(e), ToolErrorType.DEPENDENCY)

        return ToolCall(tool_name=step.tool, input=arguments)

    def _should_retry(self, result: ToolResult, retries: int) -> bool:
        return (
            not result.success
            and result.error_type is not None
            and result.error_type.retryable
            and retries < self.max_retries
        )

    async def _run_serial(
        self, step: PlanStep, resolver: ArgumentResolver
    ) -> StepExecutionResult:
        prepared = await self._start(step, resolver)
        if isinstance(prepared, ToolResult):
            return await self._finish(step, prepared)

        result = await self.tool_engine.execute_tool(prepared)
        while self._should_retry(result, step.retry_count):
            step.retry_count += 1
            logger.warning(
                "Retrying step | step={} | attempt={}/{} | error={}",
                step.id,
                step.retry_count,
                self.max_retries,
                shorten(result.error),
            )
            result = await self.tool_engine.execute_tool(prepared)
        return await self._finish(step, result)

    async def _run_parallel(
        self, steps: list[PlanStep], resolver: ArgumentResolver
    ) -> list[StepExecutionResult]:
        outcomes: dict[str, ToolResult] = {}
        calls: dict[str, ToolCall] = {}

        for step in steps:
            prepared = await self._start(step, resolver)
            if isinstance(prepared, ToolResult):
                outcomes[step.id] = prepared
            else:
                calls[step.id] = prepared

        by_id = {step.id: step for step in steps}
        to_run = list(calls)
        while to_run:
            batch = await self.tool_engine.execute_parallel_tools(
                [calls[step_id] for step_id in to_run],
                concurrency=self.concurrency,
                timeout=self.batch_timeout,
            )
            outcomes.update(zip(to_run, batch))

            to_run = [
                step_id
                for step_id in to_run
                if self._should_retry(outcomes[step_id], by_id[step_id].retry_count)
            ]
            for step_id in to_run:
                by_id[step_id].retry_count += 1
            if to_run:
                logger.warning("Retrying parallel steps | steps={}", to_run)

        return [await self._finish(step, outcomes[step.id]) for step in steps]

    async def _finish(self, step: PlanStep, outcome: ToolResult) -> StepExecutionResult:
        step.finished_at = utcnow()
        started_at = step.started_at or step.finished_at

        if outcome.success:
            step.status = StepStatus.SUCCEEDED
            step.result = outcome.result
            step.error = None
            step.error_type = None
        else:
            step.status = StepStatus.FAILED
            step.error = outcome.error
            step.error_type = outcome.error_type
            logger.error(
                "Step failed | step={} | tool={} | error={}",
                step.id,
                step.tool,
                shorten(outcome.error),
            )

        record = StepExecutionResult(
            step_id=step.id,
            tool=step.tool,
            success=outcome.success,
            result=outcome.result,
            error=outcome.error,
            error_type=outcome.error_type,
            executed_at=started_at,
            duration_ms=(step.finished_at - started_at).total_seconds() * 1000,
            retry_count=step.retry_count,
        )
        await run_hook(self.hooks, "after_step", step, record)
        return record

    # ------------------------------------------------------------ classification

    def _classify(
        self,
        plan: ExecutionPlan,
        executed: list[StepExecutionResult],
        elapsed_ms: float,
    ) -> PlanExecutionResult:
        succeeded = [step.id for step in plan.steps if step.status == StepStatus.SUCCEEDED]
        failed = [step.id for step in plan.steps if step.status == StepStatus.FAILED]

        # Anything still pending is blocked behind a failure
        skipped: list[str] = []
        for step in plan.steps:
            if step.status in (StepStatus.PENDING, StepStatus.SKIPPED):
                blockers = [
                    dep for dep in step.required_steps() if dep not in succeeded
                ]
                step.status = StepStatus.SKIPPED
                step.error = f"Blocked by unsuccessful steps: {', '.join(blockers)}"
                skipped.append(step.id)

        signals = plan.signals
        replan_count = int(plan.metadata.get("replan_count") or 0)
        signal_replan = signals.has_problems and replan_count < self.max_signal_replans

        if signal_replan:
            outcome = ExecutionResultType.NEEDS_REPLAN
            feedback = (
                f"Plan needs replanning due to signals: {len(succeeded)} succeeded, "
                f"{len(failed)} failed; signals={signals.model_dump_json()}"
            )
            plan.status = PlanStatus.REPLANNING
        elif not failed:
            outcome = ExecutionResultType.EXECUTION_COMPLETE
            feedback = f"Plan executed successfully: {len(succeeded)}/{len(plan.steps)} steps completed"
            plan.status = PlanStatus.COMPLETED
        elif not succeeded and skipped:
            outcome = ExecutionResultType.DEADLOCK
            feedback = (
                f"Execution deadlock: {len(skipped)} step(s) unreachable after "
                f"failures in {', '.join(failed)}"
            )
            plan.status = PlanStatus.FAILED
        else:
            outcome = ExecutionResultType.NEEDS_REPLAN
            feedback = (
                f"Plan partially executed: {len(succeeded)} succeeded, "
                f"{len(failed)} failed, {len(skipped)} skipped"
            )
            plan.status = PlanStatus.REPLANNING
        if signals.has_problems and not signal_replan:
            feedback = (
                f"{feedback}. Signal replan limit reached "
                f"({replan_count}/{self.max_signal_replans})"
            )
        plan.touch()

        replan_context = None
        if failed or signal_replan:
            replan_context = self._build_replan_context(
                plan, executed, succeeded, failed, skipped
            )
            feedback = f"{feedback}. Primary cause: {replan_context.primary_cause}"

        return PlanExecutionResult(
            type=outcome,
            plan_id=plan.id,
            strategy=plan.strategy,
            total_steps=len(plan.steps),
            executed_steps=executed,
            successful_steps=succeeded,
            failed_steps=failed,
            skipped_steps=skipped,
            execution_time_ms=elapsed_ms,
            feedback=feedback,
            replan_context=replan_context,
        )

    @staticmethod
    def _build_replan_context(
        plan: ExecutionPlan,
        executed: list[StepExecutionResult],
        succeeded: list[str],
        failed: list[str],
        skipped: list[str],
    ) -> ReplanContext:
        preserved = [
            PreservedStep(
                step_id=step.id,
                description=step.description,
                tool=step.tool,
                result=copy.deepcopy(step.result),
            )
            for step in plan.steps
            if step.status == StepStatus.SUCCEEDED
        ]
        errors = [record.error for record in executed if not record.success and record.error]
        if not errors:
            errors = [step.error for step in plan.steps if step.id in failed and step.error]

        signals = plan.signals
        if errors:
            primary_cause = classify_primary_cause(errors[0])
        elif signals.needs:
            primary_cause = f"Missing inputs: {', '.join(signals.needs)}"
        elif signals.errors:
            primary_cause = classify_primary_cause(signals.errors[0])
        elif signals.suggested_next_step:
            primary_cause = f"Suggested next step: {signals.suggested_next_step}"
        else:
            primary_cause = "Unknown failure"

        context_for_replan: dict[str, t.Any] = {
            "successful_steps": list(succeeded),
            "failed_steps": list(failed),
            "skipped_steps": list(skipped),
        }
        if signals.has_problems:
            context_for_replan["signals"] = signals.model_dump()

        return ReplanContext(
            preserved_steps=preserved,
            failure_patterns=normalize_failure_patterns(errors + signals.errors),
            primary_cause=primary_cause,
            suggested_strategy=plan.strategy or "plan-execute",
            context_for_replan=context_for_replan,
        )
