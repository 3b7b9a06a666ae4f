"""
Reasoner - the external reasoning capability consulted by planners.

The host injects a Reasoner; planners never construct one themselves. A
Reasoner receives fully rendered prompts and returns structured output:

- think(prompt_context) -> ReasonerOutput {reasoning, action, confidence}
- create_plan(goal, strategy_hint, context) -> PlanDraft {steps, signals, audit, reasoning}

Actions and plan steps come back as plain dictionaries; planners validate them
into AgentActions / PlanSteps and treat anything unparsable as a ReasonerError.
"""

import typing as t

from pydantic import BaseModel, Field

from agentflow.tools_core.models import ToolDescriptor


class PromptContext(BaseModel):
    """Everything a Reasoner needs for one think call."""

    prompt: str = Field(description="Rendered prompt text.")
    purpose: t.Literal["act", "reflect", "expand"] = "act"
    input: str = Field(description="The user's goal for this run.")
    strategy: str
    iteration: int = 0
    available_tools: list[str] = Field(default_factory=list)
    history: list[dict[str, t.Any]] = Field(
        default_factory=list,
        description="Prior (thought, action, result, observation) entries of this run.",
    )
    metadata: dict[str, t.Any] = Field(default_factory=dict)


class ReasonerOutput(BaseModel):
    reasoning: str = ""
    action: dict[str, t.Any] | None = Field(
        default=None,
        description="Raw action; must carry a 'type' understood by the planners.",
    )
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class PlanningRequest(BaseModel):
    """Context passed along with create_plan."""

    prompt: str
    available_tools: list[ToolDescriptor] = Field(default_factory=list)
    previous_execution: dict[str, t.Any] | None = None
    replan_count: int = 0


class DraftSignals(BaseModel):
    needs: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    suggested_next_step: str | None = None


class PlanDraft(BaseModel):
    """Unvalidated plan as produced by the Reasoner."""

    steps: list[dict[str, t.Any]] = Field(default_factory=list)
    signals: DraftSignals = Field(default_factory=DraftSignals)
    audit: list[str] = Field(default_factory=list)
    reasoning: str = ""


class Reasoner(t.Protocol):
    async def think(self, prompt_context: PromptContext) -> ReasonerOutput: ...

    async def create_plan(
        self, goal: str, strategy_hint: str, context: PlanningRequest
    ) -> PlanDraft: ...
