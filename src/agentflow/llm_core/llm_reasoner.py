"""
LLMReasoner - a Reasoner backed by an OpenAI-compatible chat completions API.

Planners render their own prompts; this adapter only sends them, asks for a
JSON object back and validates it into ReasonerOutput / PlanDraft. Any API,
parsing or validation failure surfaces as ReasonerError, which the planners
turn into a final answer instead of crashing the run.

Usage:
    from agentflow.llm_core.llm_reasoner import create_openai_reasoner
    from agentflow.planning.planner_factory import PlannerFactory

    reasoner = create_openai_reasoner()
    planner = PlannerFactory.create("react", reasoner)
"""

import json
import typing as t

from loguru import logger
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ValidationError

from agentflow.errors import ReasonerError
from agentflow.llm_core.reasoner import (
    PlanDraft,
    PlanningRequest,
    PromptContext,
    ReasonerOutput,
)
from agentflow.settings import get_settings
from agentflow.utilities.utils import extract_json_subtexts

DEFAULT_SYSTEM_PROMPT = (
    "You are the reasoning component of a tool-using agent. "
    "Always answer with a single JSON object and nothing else."
)

THINK_FORMAT = (
    'Respond with JSON: {"reasoning": str, "action": {"type": ..., ...}, '
    '"confidence": float between 0 and 1}'
)

PLAN_FORMAT = (
    'Respond with JSON: {"reasoning": str, "steps": [{"id": str, "description": str, '
    '"tool": str | null, "arguments": object, "dependencies": [str], "parallel": bool}], '
    '"signals": {"needs": [str], "errors": [str], "suggested_next_step": str | null}, '
    '"audit": [str]}'
)

ModelT = t.TypeVar("ModelT", bound=BaseModel)


class LLMReasoner:
    """Reasoner implementation that delegates to an AsyncOpenAI client."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str | None = None,
        temperature: float | None = None,
        system_prompt: str | None = None,
    ) -> None:
        settings = get_settings()
        self.client = client
        self.model = model or settings.reasoner_model
        self.temperature = (
            temperature if temperature is not None else settings.reasoner_temperature
        )
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT

    async def think(self, prompt_context: PromptContext) -> ReasonerOutput:
        data = await self._complete_json(
            f"{prompt_context.prompt}\n\n{THINK_FORMAT}",
            purpose=prompt_context.purpose,
        )
        return self._parse(ReasonerOutput, data)

    async def create_plan(
        self, goal: str, strategy_hint: str, context: PlanningRequest
    ) -> PlanDraft:
        prompt = context.prompt or f"Create a plan ({strategy_hint}) for: {goal}"
        data = await self._complete_json(f"{prompt}\n\n{PLAN_FORMAT}", purpose="plan")
        return self._parse(PlanDraft, data)

    async def _complete_json(self, prompt: str, purpose: str) -> dict[str, t.Any]:
        logger.debug("Reasoner request | model={} | purpose={}", self.model, purpose)
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": self.system_prompt},
                    {"role": "user", "content": prompt},
                ],
            )
        except OpenAIError as e:
            raise ReasonerError(f"OpenAI API error: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ReasonerError("Reasoner returned an empty response")

        try:
            data = json.loads(extract_json_subtexts(content))
        except json.JSONDecodeError as e:
            raise ReasonerError(f"Reasoner returned invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ReasonerError(
                f"Reasoner returned {type(data).__name__}, expected a JSON object"
            )
        return data

    @staticmethod
    def _parse(model: type[ModelT], data: dict[str, t.Any]) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ReasonerError(f"Invalid {model.__name__}: {e}") from e


def create_openai_reasoner(
    api_key: str | None = None,
    base_url: str | None = None,
    timeout: float = 120.0,
    model: str | None = None,
) -> LLMReasoner:
    """
    Create an LLMReasoner configured for OpenAI.

    Args:
        api_key: OpenAI API key (uses settings if not set)
        base_url: Optional base URL override
        timeout: Request timeout in seconds
        model: Model to use (settings.reasoner_model if not set)

    Returns:
        Configured LLMReasoner
    """
    try:
        client = AsyncOpenAI(
            api_key=api_key or get_settings().openai_api_key or None,
            base_url=base_url,
            timeout=timeout,
        )
    except OpenAIError as e:
        raise ReasonerError(f"Could not create OpenAI client: {e}") from e
    return LLMReasoner(client=client, model=model)
