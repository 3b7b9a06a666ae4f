"""
Exception hierarchy for the planning & execution engine.

Tool-local failures (validation, execution, timeout, unknown tool) are
normally reported inside ToolResult objects and only raised when a caller
asks for fail-fast behaviour. Structural failures (dependency, deadlock,
replan exhaustion) and Reasoner failures are raised by the components that
detect them and converted into terminal observations by the planners.
"""


class AgentFlowError(Exception):
    """Base class for all agentflow errors."""

    retryable: bool = False

    def __init__(self, message: str, tool_name: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.tool_name = tool_name


class InputValidationError(AgentFlowError):
    """Raised when tool input does not satisfy the tool's input model."""

    pass


class UnknownToolError(AgentFlowError):
    """Raised when a tool name is not registered."""

    pass


class ToolExecutionError(AgentFlowError):
    """Raised when a tool fails (or a fail-fast batch observes a failure)."""

    retryable = True


class ToolTimeoutError(ToolExecutionError):
    """Raised when a tool call or a batch exceeds its deadline."""

    pass


class DependencyError(AgentFlowError):
    """Raised when a step references output that is not available."""

    pass


class PlanValidationError(DependencyError):
    """Raised when a plan has duplicate ids, unknown dependencies or cycles."""

    pass


class DeadlockError(AgentFlowError):
    """Raised when remaining plan steps can never become ready."""

    pass


class ReplanExhaustedError(AgentFlowError):
    """Raised when the replan cap for a run has been reached."""

    pass


class ReasonerError(AgentFlowError):
    """Raised when the Reasoner fails or returns output that cannot be parsed."""

    pass


class MissingReasonerError(ReasonerError, ValueError):
    """Raised when a planner is constructed without a Reasoner."""

    pass
