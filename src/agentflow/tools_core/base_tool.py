"""
Tool definitions for the ToolEngine.

A tool is a named capability with:
- an input contract (`_input`, a pydantic model) used to validate calls
- an output model (`_output`) describing what the tool returns
- an execute capability (`invoke` for sync code, `ainvoke` for async code)

Tools are registered once with the ToolEngine and are treated as immutable
afterwards. Anything a tool raises becomes a failed ToolResult; anything it
returns becomes the result payload.
"""

import asyncio
import inspect
import typing as t
from abc import ABC, abstractmethod

from pydantic import BaseModel, RootModel, ValidationError, create_model
from pydantic.errors import PydanticSchemaGenerationError
from pydantic.functional_serializers import PlainSerializer

from agentflow.errors import InputValidationError
from agentflow.utilities.utils import normalize_tool_name

InputT = t.TypeVar("InputT", bound=BaseModel)
OutputT = t.TypeVar("OutputT", bound=BaseModel)

__all__ = [
    "BaseTool",
    "InputValidationError",
    "create_fn_tool",
    "create_tool",
]


class BaseTool(ABC, t.Generic[InputT, OutputT]):
    """
    Base class for tools executed by the ToolEngine.

    Subclasses must:
    1. Set `_name` and `description` as class attributes
    2. Define `_input` and `_output` as pydantic BaseModel types
    3. Override `invoke()` for sync implementation or `ainvoke()` for async

    Example:
        class FetchInput(BaseModel):
            user_id: int

        class FetchOutput(BaseModel):
            email: str

        class FetchUserTool(BaseTool[FetchInput, FetchOutput]):
            _name = "fetch_user"
            description = "Fetch a user's profile"
            _input = FetchInput
            _output = FetchOutput

            async def ainvoke(self, input: FetchInput) -> FetchOutput:
                return FetchOutput(email=await lookup(input.user_id))

            def invoke(self, input: FetchInput) -> FetchOutput:
                return asyncio.run(self.ainvoke(input))
    """

    _name: str
    description: str

    _input: t.ClassVar[type[BaseModel]]
    _output: t.ClassVar[type[BaseModel]]

    def __init_subclass__(cls, **kwargs: t.Any) -> None:
        """Validate the subclass configuration on definition."""
        super().__init_subclass__(**kwargs)

        if inspect.isabstract(cls):
            return

        for attr in ("_input", "_output"):
            model = getattr(cls, attr, None)
            if model is None:
                raise TypeError(
                    f"{cls.__name__} must define '{attr}' as a pydantic BaseModel type"
                )
            if not (inspect.isclass(model) and issubclass(model, BaseModel)):
                raise TypeError(
                    f"{cls.__name__}.{attr} must be a pydantic BaseModel subclass, "
                    f"got {model}"
                )

    @property
    def name(self) -> str:
        """Normalized tool name, used as the registry key."""
        return normalize_tool_name(self._name)

    @property
    def raw_name(self) -> str:
        """Original tool name without normalization."""
        return self._name

    def _validate_input(self, input: t.Any) -> InputT:
        """Coerce a model, dict or foreign model into the tool's input model."""
        expected_type = self._input

        if isinstance(input, expected_type):
            return t.cast(InputT, input)

        if isinstance(input, BaseModel):
            input = input.model_dump()

        if not isinstance(input, dict):
            raise InputValidationError(
                f"Expected {expected_type.__name__} or dict, got {type(input).__name__}",
                tool_name=self.name,
            )

        try:
            return t.cast(InputT, expected_type.model_validate(input))
        except ValidationError as e:
            raise InputValidationError(
                f"Invalid input for {self.name}: {e}", tool_name=self.name
            ) from e

    @abstractmethod
    def invoke(self, input: InputT) -> OutputT:
        """Synchronous execution of the tool."""
        ...

    async def ainvoke(self, input: InputT) -> OutputT:
        """
        Asynchronous execution of the tool.

        Default implementation runs invoke() in a worker thread so blocking
        tools do not stall the event loop. Override for native async tools.
        """
        validated_input = self._validate_input(input)
        return await asyncio.to_thread(self.invoke, validated_input)

    @classmethod
    def input_schema(cls) -> dict[str, t.Any]:
        """Get the JSON schema for the input model."""
        return cls._input.model_json_schema()

    @classmethod
    def output_schema(cls) -> dict[str, t.Any]:
        """Get the JSON schema for the output model."""
        return cls._output.model_json_schema()

    def __call__(self, input: InputT | dict[str, t.Any]) -> OutputT:
        validated_input = self._validate_input(input)
        return self.invoke(validated_input)

    async def acall(self, input: InputT | dict[str, t.Any]) -> OutputT:
        validated_input = self._validate_input(input)
        return await self.ainvoke(validated_input)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r}, description={self.description!r})"


def _build_model_from_signature(
    fn: t.Callable[..., t.Any],
    schema_name: str,
    exclude_params: tuple[str, ...] = ("self", "cls", "kwargs"),
) -> type[BaseModel]:
    """Build a pydantic model from a function's parameter signature."""
    fields: dict[str, t.Any] = {}
    for name, param in inspect.signature(fn).parameters.items():
        if name in exclude_params or param.kind == inspect.Parameter.VAR_KEYWORD:
            continue

        annotation = (
            param.annotation if param.annotation != inspect.Parameter.empty else t.Any
        )
        default = param.default if param.default != inspect.Parameter.empty else ...
        fields[name] = (annotation, default)

    try:
        return create_model(schema_name, **fields)
    except PydanticSchemaGenerationError as e:
        raise ValueError(
            f"Cannot create pydantic model from signature of {fn.__name__}. "
            "Use supported primitive types or provide explicit _input model."
        ) from e


def _build_output_model_from_return(
    fn: t.Callable[..., t.Any],
    schema_name: str,
) -> type[BaseModel]:
    """Build a pydantic model from a function's return type annotation."""
    return_annotation = inspect.signature(fn).return_annotation
    if return_annotation == inspect.Signature.empty:
        return_annotation = t.Any

    if inspect.isclass(return_annotation) and issubclass(
        t.cast(type, return_annotation), BaseModel
    ):
        return t.cast(type[BaseModel], return_annotation)

    try:
        return create_model(
            schema_name,
            __base__=RootModel[return_annotation],  # type: ignore[valid-type]
        )
    except PydanticSchemaGenerationError:
        return create_model(
            schema_name,
            result=(t.Annotated[t.Any, PlainSerializer(str)], ...),
        )


def _make_tool(
    fn: t.Callable[..., t.Any],
    tool_name: str,
    tool_description: str,
    input_model: type[BaseModel],
    output_model: type[BaseModel],
    call: t.Callable[[BaseModel], t.Any],
) -> BaseTool[BaseModel, BaseModel]:
    """Create a BaseTool instance around ``fn``.

    ``call`` adapts the validated input model into the function's calling
    convention; plain return values are wrapped into ``output_model``.
    """

    def _wrap(result: t.Any) -> BaseModel:
        if isinstance(result, BaseModel):
            return result
        if issubclass(output_model, RootModel):
            return output_model(result)
        return output_model(result=result)  # type: ignore[call-arg]

    def _invoke_sync(self: BaseTool[BaseModel, BaseModel], input: BaseModel) -> BaseModel:
        return _wrap(call(self._validate_input(input)))

    def _invoke_async_placeholder(
        self: BaseTool[BaseModel, BaseModel], input: BaseModel
    ) -> BaseModel:
        raise NotImplementedError(f"{tool_name} is async-only. Use ainvoke() or acall().")

    async def _ainvoke_async(
        self: BaseTool[BaseModel, BaseModel], input: BaseModel
    ) -> BaseModel:
        return _wrap(await call(self._validate_input(input)))

    class_attrs: dict[str, t.Any] = {
        "_name": tool_name,
        "_input": input_model,
        "_output": output_model,
        "description": tool_description,
        "__doc__": fn.__doc__,
    }
    if inspect.iscoroutinefunction(fn):
        class_attrs["invoke"] = _invoke_async_placeholder
        class_attrs["ainvoke"] = _ainvoke_async
    else:
        class_attrs["invoke"] = _invoke_sync

    FunctionTool = type("FunctionTool", (BaseTool,), class_attrs)
    return FunctionTool()  # type: ignore[return-value]


def create_fn_tool(
    name: str | None = None,
    description: str | None = None,
) -> t.Callable[[t.Callable[..., t.Any]], BaseTool[BaseModel, BaseModel]]:
    """
    Decorator to create a tool from a function with a keyword signature.

    The input model is generated from the parameters and the output model from
    the return annotation (primitive returns become a RootModel, so the engine
    reports the bare value as the result).

    Example:
        @create_fn_tool(name="add_numbers", description="Adds two numbers")
        def add(x: int, y: int) -> int:
            return x + y
    """

    def decorator(fn: t.Callable[..., t.Any]) -> BaseTool[BaseModel, BaseModel]:
        tool_name = name or fn.__name__
        input_model = _build_model_from_signature(fn, schema_name=f"{tool_name}Input")
        output_model = _build_output_model_from_return(
            fn, schema_name=f"{tool_name}Output"
        )
        return _make_tool(
            fn,
            tool_name=tool_name,
            tool_description=description or fn.__doc__ or "",
            input_model=input_model,
            output_model=output_model,
            call=lambda validated: fn(**validated.model_dump()),
        )

    return decorator


def create_tool(
    name: str | None = None,
    description: str | None = None,
    input_model: type[BaseModel] | None = None,
    output_model: type[BaseModel] | None = None,
) -> t.Callable[[t.Callable[[t.Any], t.Any]], BaseTool[BaseModel, BaseModel]]:
    """
    Decorator to create a tool from a function taking one pydantic model.

    If input_model/output_model are not provided, they are inferred from type hints.

    Example:
        @create_tool(name="add_numbers", description="Adds two numbers")
        def add(input: AddInput) -> AddOutput:
            return AddOutput(result=input.x + input.y)
    """

    def decorator(fn: t.Callable[[t.Any], t.Any]) -> BaseTool[BaseModel, BaseModel]:
        hints = t.get_type_hints(fn)
        params = list(inspect.signature(fn).parameters.values())

        inferred_input = input_model
        if inferred_input is None:
            if len(params) != 1:
                raise ValueError(
                    f"Function {fn.__name__} must have exactly one parameter, "
                    f"got {len(params)}"
                )
            if params[0].name not in hints:
                raise ValueError(
                    f"Function {fn.__name__} parameter '{params[0].name}' must have a type hint"
                )
            inferred_input = hints[params[0].name]

        inferred_output = output_model
        if inferred_output is None:
            if "return" not in hints:
                raise ValueError(f"Function {fn.__name__} must have a return type hint")
            inferred_output = hints["return"]

        if not (inspect.isclass(inferred_input) and issubclass(inferred_input, BaseModel)):
            raise TypeError(
                f"Input type must be a pydantic BaseModel subclass, got {inferred_input}"
            )
        if not (
            inspect.isclass(inferred_output) and issubclass(inferred_output, BaseModel)
        ):
            raise TypeError(
                f"Output type must be a pydantic BaseModel subclass, got {inferred_output}"
            )

        return _make_tool(
            fn,
            tool_name=name or fn.__name__,
            tool_description=description or fn.__doc__ or "",
            input_model=inferred_input,
            output_model=inferred_output,
            call=fn,
        )

    return decorator
