"""Data models exchanged with the ToolEngine."""

import typing as t
from enum import Enum

from pydantic import BaseModel, Field

# Key under which sequential batches pass the preceding result to the next tool
PREVIOUS_RESULT_KEY = "previous_result"


class ToolErrorType(str, Enum):
    """Classification of a failed tool call."""

    VALIDATION = "validation"
    EXECUTION = "execution"
    TIMEOUT = "timeout"
    UNKNOWN_TOOL = "unknown_tool"
    DEPENDENCY = "dependency"

    @property
    def retryable(self) -> bool:
        return self in (ToolErrorType.EXECUTION, ToolErrorType.TIMEOUT)


class ToolCondition(BaseModel):
    """Execution condition for an entry of a conditional batch."""

    always: bool = Field(default=False, description="Run unconditionally.")
    depends_on: list[str] = Field(
        default_factory=list,
        description="Tool names whose most recent outcome gates this entry.",
    )
    execute_if: t.Literal["success", "failure"] = Field(
        default="success",
        description="Required outcome of every tool in depends_on.",
    )


class ToolCall(BaseModel):
    """A request to run one tool with the given input."""

    tool_name: str = Field(description="Name of the registered tool.")
    input: dict[str, t.Any] = Field(default_factory=dict)
    conditions: ToolCondition | None = Field(
        default=None, description="Only used by conditional batches."
    )


class ToolResult(BaseModel):
    """Outcome of one tool call. Exactly one of result/error is meaningful."""

    tool_name: str
    result: t.Any = None
    error: str | None = None
    error_type: ToolErrorType | None = None
    duration_ms: float = 0.0
    attempts: int = 1

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def failure(
        cls,
        tool_name: str,
        error: str,
        error_type: ToolErrorType,
        duration_ms: float = 0.0,
    ) -> "ToolResult":
        return cls(
            tool_name=tool_name,
            error=error,
            error_type=error_type,
            duration_ms=duration_ms,
        )


class ToolDescriptor(BaseModel):
    """Prompt-facing description of a registered tool."""

    name: str
    description: str = ""
    input_schema: dict[str, t.Any] = Field(default_factory=dict)


class AggregatedResults(BaseModel):
    """Combined view over a batch of tool results."""

    results: list[t.Any] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    succeeded: int = 0
    failed: int = 0
