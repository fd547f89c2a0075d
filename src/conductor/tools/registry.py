"""Tool definitions and registration helpers."""

import inspect
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel

from conductor.tools.schema import ParameterSchema, as_schema, schema_from_callable


class ToolLayer(StrEnum):
    LLM = "llm"
    COMPUTER = "computer"


class CallingConvention(StrEnum):
    ARGS_OBJECT = "args_object"
    MODEL_OBJECT = "model_object"
    KEYWORDS = "keywords"


@dataclass(frozen=True, slots=True)
class _Signature:
    convention: CallingConvention
    wants_environment: bool = False
    accepts_var_keywords: bool = False
    arg_model: type[BaseModel] | None = None
    parameter_names: tuple[str, ...] = ()


def _is_dict_type(annotation: Any) -> bool:
    if annotation is dict or annotation == "dict":
        return True
    if getattr(annotation, "__origin__", None) is dict:
        return True
    return isinstance(annotation, str) and annotation.startswith("dict[")


def _inspect_callable(fn: Callable[..., Any]) -> _Signature:
    try:
        signature = inspect.signature(fn, eval_str=True)
    except NameError:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return _Signature(CallingConvention.ARGS_OBJECT)
    params = signature.parameters
    wants_environment = "environment" in params
    accepts_var_kw = any(p.kind is inspect.Parameter.VAR_KEYWORD for p in params.values())
    named = [
        p
        for p in params.values()
        if p.name != "environment"
        and p.kind not in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)
    ]
    names = tuple(p.name for p in named)
    if len(named) == 1:
        annotation = named[0].annotation
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            return _Signature(
                CallingConvention.MODEL_OBJECT,
                wants_environment,
                accepts_var_kw,
                annotation,
                names,
            )
        if named[0].name == "args" or _is_dict_type(annotation):
            return _Signature(
                CallingConvention.ARGS_OBJECT, wants_environment, accepts_var_kw, None, names
            )
    return _Signature(CallingConvention.KEYWORDS, wants_environment, accepts_var_kw, None, names)


@dataclass(slots=True)
class Tool:
    """A named capability the model may call.

    `execute` may be sync or async. Its calling convention is resolved once
    here: a single `args` (or dict-typed) parameter receives the whole
    argument object, a single pydantic-model parameter receives a validated
    instance, anything else receives discrete keywords. A parameter named
    `environment` receives the session variable store.
    """

    name: str
    description: str
    execute: Callable[..., Any]
    parameters: Any = None
    layer: ToolLayer = ToolLayer.LLM
    signature: _Signature = field(init=False)
    is_async: bool = field(init=False)

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("tool name must be a non-empty string")
        if not callable(self.execute):
            raise TypeError(f"tool '{self.name}' execute must be callable")
        try:
            self.layer = ToolLayer(self.layer)
        except ValueError as exc:
            valid = ", ".join(item.value for item in ToolLayer)
            raise ValueError(f"tool '{self.name}' layer must be one of: {valid}") from exc
        if self.parameters is None:
            self.parameters = schema_from_callable(self.execute)
        else:
            self.parameters = as_schema(self.parameters)
        self.signature = _inspect_callable(self.execute)
        self.is_async = inspect.iscoroutinefunction(self.execute)

    @property
    def schema(self) -> ParameterSchema:
        return self.parameters  # type: ignore[no-any-return]

    @property
    def convention(self) -> CallingConvention:
        return self.signature.convention

    @property
    def wants_environment(self) -> bool:
        return self.signature.wants_environment

    def to_schema(self) -> dict[str, object]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.schema.to_json_schema(),
        }


def tool(
    execute: Callable[..., Any],
    *,
    name: str | None = None,
    description: str | None = None,
    parameters: Any = None,
    layer: ToolLayer | str = ToolLayer.LLM,
) -> Tool:
    return Tool(
        name=name or execute.__name__,
        description=description or inspect.getdoc(execute) or "",
        execute=execute,
        parameters=parameters,
        layer=ToolLayer(layer),
    )


class ToolRegistry:
    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        for item in tools or []:
            self.add(item)

    def add(self, item: Tool) -> None:
        self._tools[item.name] = item

    def register(
        self,
        name: str,
        description: str,
        handler: Callable[..., Any],
        parameters: Any = None,
        layer: ToolLayer | str = ToolLayer.LLM,
    ) -> Tool:
        item = Tool(
            name=name,
            description=description,
            execute=handler,
            parameters=parameters,
            layer=ToolLayer(layer),
        )
        self.add(item)
        return item

    def remove(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self) -> list[dict[str, object]]:
        return [item.to_schema() for item in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[Tool]:
        return iter(list(self._tools.values()))

    def __len__(self) -> int:
        return len(self._tools)
