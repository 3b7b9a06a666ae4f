"""
Data models for plans, actions, observations and the agent execution context.

Plans are DAGs of PlanSteps. Their structure (unique ids, resolvable
dependencies and argument references, no cycles) is checked when the plan is
constructed, so the PlanExecutor only ever sees well-formed graphs.
"""

import typing as t
import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from agentflow.errors import PlanValidationError
from agentflow.planning.argument_resolver import extract_references
from agentflow.tools_core.models import ToolCall, ToolDescriptor, ToolErrorType, ToolResult


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_plan_id() -> str:
    return f"plan-{uuid.uuid4().hex[:12]}"


# ============================================================================
# Plans
# ============================================================================


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class PlanStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    REPLANNING = "replanning"
    FAILED = "failed"


class PlanSignals(BaseModel):
    """Side information the Reasoner attaches to a plan."""

    needs: list[str] = Field(
        default_factory=list, description="Inputs the Reasoner is missing."
    )
    errors: list[str] = Field(default_factory=list)
    suggested_next_step: str | None = None

    @property
    def has_problems(self) -> bool:
        """True when any signal asks for another planning round."""
        return bool(self.needs or self.errors or self.suggested_next_step)


class PlanStep(BaseModel):
    """One unit of work bound to a tool and its argument template."""

    id: str = Field(min_length=1)
    description: str = ""
    tool: str | None = Field(
        default=None, description="Tool to call. None marks a pure reasoning step."
    )
    arguments: dict[str, t.Any] = Field(
        default_factory=dict,
        description="Argument template; may contain {{step_id.result...}} tokens.",
    )
    dependencies: list[str] = Field(default_factory=list)
    parallel: bool = False

    status: StepStatus = StepStatus.PENDING
    result: t.Any = None
    error: str | None = None
    error_type: ToolErrorType | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    retry_count: int = 0

    @field_validator("tool", mode="before")
    @classmethod
    def _none_tool_is_reasoning(cls, value: t.Any) -> t.Any:
        if isinstance(value, str) and value.strip().lower() in ("", "none", "null"):
            return None
        return value

    def required_steps(self) -> list[str]:
        """Explicit dependencies plus steps referenced by argument tokens."""
        required = list(dict.fromkeys(self.dependencies))
        for step_id in extract_references(self.arguments):
            if step_id not in required:
                required.append(step_id)
        return required


class ExecutionPlan(BaseModel):
    """A goal plus an ordered list of steps forming a DAG."""

    id: str = Field(default_factory=new_plan_id)
    goal: str
    steps: list[PlanStep] = Field(default_factory=list)
    status: PlanStatus = PlanStatus.PENDING
    strategy: str = "plan-execute"
    reasoning: str = ""
    signals: PlanSignals = Field(default_factory=PlanSignals)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, t.Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_structure(self) -> "ExecutionPlan":
        validate_plan_steps(self.steps)
        return self

    def get_step(self, step_id: str) -> PlanStep | None:
        return next((step for step in self.steps if step.id == step_id), None)

    def steps_with_status(self, status: StepStatus) -> list[PlanStep]:
        return [step for step in self.steps if step.status == status]

    def touch(self) -> None:
        self.updated_at = utcnow()


def validate_plan_steps(steps: t.Sequence[PlanStep]) -> None:
    """
    Check step ids are unique, every requirement resolves, and there are no cycles.

    Raises:
        PlanValidationError: describing the first problem found
    """
    seen: set[str] = set()
    for step in steps:
        if step.id in seen:
            raise PlanValidationError(f"Duplicate step id: {step.id}")
        seen.add(step.id)

    graph = {step.id: step.required_steps() for step in steps}
    for step_id, required in graph.items():
        for dependency in required:
            if dependency == step_id:
                raise PlanValidationError(f"Step {step_id} depends on itself")
            if dependency not in graph:
                raise PlanValidationError(
                    f"Step {step_id} depends on unknown step: {dependency}"
                )

    # Depth-first search with colouring; grey nodes are on the current path
    white, grey, black = 0, 1, 2
    colour = dict.fromkeys(graph, white)

    def visit(node: str, path: list[str]) -> None:
        colour[node] = grey
        for dependency in graph[node]:
            if colour[dependency] == grey:
                cycle = path[path.index(dependency) :] + [dependency]
                raise PlanValidationError(
                    f"Circular dependency detected: {' -> '.join(cycle)}"
                )
            if colour[dependency] == white:
                visit(dependency, path + [dependency])
        colour[node] = black

    for node in graph:
        if colour[node] == white:
            visit(node, [node])


# ============================================================================
# Plan execution results
# ============================================================================


class StepExecutionResult(BaseModel):
    """Per-step metrics recorded by the PlanExecutor."""

    step_id: str
    tool: str | None = None
    success: bool
    result: t.Any = None
    error: str | None = None
    error_type: ToolErrorType | None = None
    executed_at: datetime
    duration_ms: float
    retry_count: int = 0


class PreservedStep(BaseModel):
    """A succeeded step carried over into the next planning call."""

    step_id: str
    description: str = ""
    tool: str | None = None
    result: t.Any = None


class ReplanContext(BaseModel):
    """What went right and wrong, fed into the next planning call."""

    preserved_steps: list[PreservedStep] = Field(default_factory=list)
    failure_patterns: list[str] = Field(default_factory=list)
    primary_cause: str = ""
    suggested_strategy: str = "plan-execute"
    context_for_replan: dict[str, t.Any] = Field(default_factory=dict)


class ExecutionResultType(str, Enum):
    EXECUTION_COMPLETE = "execution_complete"
    NEEDS_REPLAN = "needs_replan"
    DEADLOCK = "deadlock"


class PlanExecutionResult(BaseModel):
    """Classified outcome of running a plan."""

    type: ExecutionResultType
    plan_id: str
    strategy: str = "plan-execute"
    total_steps: int = 0
    executed_steps: list[StepExecutionResult] = Field(default_factory=list)
    successful_steps: list[str] = Field(default_factory=list)
    failed_steps: list[str] = Field(default_factory=list)
    skipped_steps: list[str] = Field(default_factory=list)
    execution_time_ms: float = 0.0
    feedback: str = ""
    replan_context: ReplanContext | None = None

    @property
    def is_complete(self) -> bool:
        return self.type == ExecutionResultType.EXECUTION_COMPLETE


# ============================================================================
# Agent actions
# ============================================================================


class ToolCallAction(BaseModel):
    type: t.Literal["tool_call"] = "tool_call"
    tool_name: str
    input: dict[str, t.Any] = Field(default_factory=dict)

    def to_call(self) -> ToolCall:
        return ToolCall(tool_name=self.tool_name, input=self.input)


class ParallelToolsAction(BaseModel):
    type: t.Literal["parallel_tools"] = "parallel_tools"
    tools: list[ToolCall]
    concurrency: int | None = Field(default=None, ge=1)
    timeout: float | None = Field(default=None, gt=0)
    fail_fast: bool = False
    aggregate_results: bool = True


class SequentialToolsAction(BaseModel):
    type: t.Literal["sequential_tools"] = "sequential_tools"
    tools: list[ToolCall]
    stop_on_error: bool = True
    pass_results: bool = False
    timeout: float | None = Field(default=None, gt=0)


class ConditionalToolsAction(BaseModel):
    type: t.Literal["conditional_tools"] = "conditional_tools"
    tools: list[ToolCall]


class ExecutePlanAction(BaseModel):
    type: t.Literal["execute_plan"] = "execute_plan"
    plan: ExecutionPlan


class FinalAnswerAction(BaseModel):
    type: t.Literal["final_answer"] = "final_answer"
    content: str
    success: bool = True


AgentAction = t.Annotated[
    ToolCallAction
    | ParallelToolsAction
    | SequentialToolsAction
    | ConditionalToolsAction
    | ExecutePlanAction
    | FinalAnswerAction,
    Field(discriminator="type"),
]


class AgentThought(BaseModel):
    """A planner's decision: what it reasoned and what to do next."""

    reasoning: str = ""
    action: AgentAction
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    metadata: dict[str, t.Any] = Field(default_factory=dict)


class ActionResult(BaseModel):
    """What happened when the loop carried out an action."""

    type: t.Literal["tool_result", "tool_results", "plan_result", "final_answer", "error"]
    content: t.Any = None
    tool_results: list[ToolResult] = Field(default_factory=list)
    plan_result: PlanExecutionResult | None = None
    error: str | None = None
    success: bool = True

    @property
    def is_error(self) -> bool:
        return self.type == "error"

    @property
    def failed(self) -> bool:
        """True when the action or any part of it did not succeed."""
        if self.is_error or not self.success:
            return True
        if any(not result.success for result in self.tool_results):
            return True
        return self.plan_result is not None and not self.plan_result.is_complete

    def describe_failures(self) -> list[str]:
        failures: list[str] = []
        if self.error:
            failures.append(self.error)
        failures.extend(
            f"{result.tool_name}: {result.error}"
            for result in self.tool_results
            if not result.success
        )
        if self.plan_result is not None and self.plan_result.replan_context is not None:
            failures.extend(self.plan_result.replan_context.failure_patterns)
        return failures


class Observation(BaseModel):
    """A planner's structured judgment of an action's outcome."""

    is_complete: bool = False
    is_successful: bool = False
    should_continue: bool = True
    feedback: str = ""
    suggested_next_action: str | None = None


# ============================================================================
# Execution context
# ============================================================================


class HistoryEntry(BaseModel):
    thought: AgentThought
    result: ActionResult
    observation: Observation

    @property
    def action(self) -> AgentAction:
        return self.thought.action


class PreviousExecution(BaseModel):
    """State handed to the next planning call after a needs_replan outcome."""

    plan: ExecutionPlan
    result: PlanExecutionResult
    preserved_steps: list[PreservedStep] = Field(default_factory=list)
    failure_analysis: ReplanContext | None = None


class ExecutionContext(BaseModel):
    """Per-run state owned by the agent loop."""

    input: str
    iteration: int = 0
    max_iterations: int = Field(default=10, ge=1)
    history: list[HistoryEntry] = Field(default_factory=list)
    available_tools: list[ToolDescriptor] = Field(default_factory=list)
    previous_execution: PreviousExecution | None = None
    replan_count: int = 0
    metadata: dict[str, t.Any] = Field(default_factory=dict)

    @property
    def available_tool_names(self) -> list[str]:
        return [tool.name for tool in self.available_tools]

    @property
    def last_entry(self) -> HistoryEntry | None:
        return self.history[-1] if self.history else None

    @property
    def budget_exhausted(self) -> bool:
        return self.iteration >= self.max_iterations

    def add_entry(
        self, thought: AgentThought, result: ActionResult, observation: Observation
    ) -> HistoryEntry:
        entry = HistoryEntry(thought=thought, result=result, observation=observation)
        self.history.append(entry)
        return entry
