"""Parameter schemas for tools.

A tool's parameters are anything implementing ParameterSchema: it validates
and coerces a parsed argument object and can describe itself as JSON
schema for the model. Two pydantic-backed implementations cover the
common cases: a BaseModel subclass, or a plain JSON-schema dict.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

_JSON_TYPES: dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "array": list[Any],
    "object": dict[str, Any],
    "null": type(None),
}

_RESERVED_PARAMS = {"environment", "self", "cls"}


@dataclass(slots=True)
class SchemaResult:
    ok: bool
    value: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)


@runtime_checkable
class ParameterSchema(Protocol):
    @property
    def field_names(self) -> tuple[str, ...]: ...

    def validate(self, value: dict[str, Any]) -> SchemaResult: ...

    def to_json_schema(self) -> dict[str, Any]: ...


def _format_errors(exc: ValidationError) -> list[str]:
    errors: list[str] = []
    for item in exc.errors():
        loc = ".".join(str(part) for part in item.get("loc", ())) or "<root>"
        errors.append(f"{loc}: {item.get('msg', 'invalid value')}")
    return errors


class ModelSchema:
    """Schema backed by a pydantic model class."""

    def __init__(self, model: type[BaseModel]) -> None:
        self.model = model

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(
            info.alias or name for name, info in self.model.model_fields.items()
        )

    def validate(self, value: dict[str, Any]) -> SchemaResult:
        try:
            instance = self.model.model_validate(value)
        except ValidationError as exc:
            return SchemaResult(ok=False, errors=_format_errors(exc))
        return SchemaResult(ok=True, value=instance.model_dump(by_alias=True))

    def to_json_schema(self) -> dict[str, Any]:
        schema = self.model.model_json_schema()
        schema.pop("title", None)
        schema.setdefault("type", "object")
        schema.setdefault("properties", {})
        return schema


def _annotation_for(prop: dict[str, Any]) -> Any:
    enum = prop.get("enum")
    if isinstance(enum, list) and enum:
        return Literal[tuple(enum)]
    raw_type = prop.get("type")
    if isinstance(raw_type, list):
        members = [_JSON_TYPES.get(str(item), Any) for item in raw_type]
        if Any in members:
            return Any
        annotation = members[0]
        for member in members[1:]:
            annotation = annotation | member
        return annotation
    if isinstance(raw_type, str):
        return _JSON_TYPES.get(raw_type, Any)
    return Any


class ObjectSchema:
    """Schema described by a JSON-schema object dict.

    The dict is kept verbatim for the model; validation goes through a
    pydantic model generated from its properties. Unknown keys are kept.
    """

    def __init__(self, schema: dict[str, Any] | None = None) -> None:
        self.schema: dict[str, Any] = dict(schema or {"type": "object", "properties": {}})
        self.schema.setdefault("type", "object")
        self.schema.setdefault("properties", {})
        properties = self.schema.get("properties") or {}
        required = set(self.schema.get("required") or [])
        self._names: tuple[str, ...] = tuple(properties)
        self._defaults: set[str] = set()
        fields: dict[str, Any] = {}
        for index, (name, prop) in enumerate(properties.items()):
            prop = prop if isinstance(prop, dict) else {}
            annotation = _annotation_for(prop)
            safe = name.isidentifier() and not name.startswith("_")
            internal = name if safe else f"field_{index}"
            if name in required:
                fields[internal] = (annotation, Field(..., alias=name))
            elif "default" in prop:
                self._defaults.add(name)
                fields[internal] = (annotation | None, Field(prop["default"], alias=name))
            else:
                fields[internal] = (annotation | None, Field(None, alias=name))
        self._model = create_model(  # type: ignore[call-overload]
            "ToolArguments",
            __config__=ConfigDict(extra="allow", populate_by_name=True),
            **fields,
        )

    @property
    def field_names(self) -> tuple[str, ...]:
        return self._names

    def validate(self, value: dict[str, Any]) -> SchemaResult:
        try:
            instance = self._model.model_validate(value)
        except ValidationError as exc:
            return SchemaResult(ok=False, errors=_format_errors(exc))
        dumped = instance.model_dump(by_alias=True)
        clean = {
            key: item
            for key, item in dumped.items()
            if key in value or key in self._defaults or key not in self._names
        }
        return SchemaResult(ok=True, value=clean)

    def to_json_schema(self) -> dict[str, Any]:
        return dict(self.schema)


def as_schema(parameters: object) -> ParameterSchema:
    if parameters is None:
        return ObjectSchema()
    if isinstance(parameters, dict):
        return ObjectSchema(parameters)
    if isinstance(parameters, type) and issubclass(parameters, BaseModel):
        return ModelSchema(parameters)
    if isinstance(parameters, ParameterSchema):
        return parameters
    raise TypeError(f"unsupported parameter schema: {type(parameters).__name__}")


def schema_from_callable(fn: Any) -> ParameterSchema:
    """Derive a schema from a function signature.

    A single BaseModel-annotated parameter yields that model's schema;
    `environment` and variadic parameters are never exposed to the model.
    """
    try:
        signature = inspect.signature(fn, eval_str=True)
    except NameError:
        signature = inspect.signature(fn)
    params = [
        param
        for param in signature.parameters.values()
        if param.name not in _RESERVED_PARAMS
        and param.kind not in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)
    ]
    if len(params) == 1:
        annotation = params[0].annotation
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            return ModelSchema(annotation)
        if params[0].name == "args" or annotation is dict or _is_dict_annotation(annotation):
            return ObjectSchema()

    takes_var_keywords = any(
        param.kind is inspect.Parameter.VAR_KEYWORD for param in signature.parameters.values()
    )
    fields: dict[str, Any] = {}
    for param in params:
        annotation = Any if param.annotation is inspect.Parameter.empty else param.annotation
        default = ... if param.default is inspect.Parameter.empty else param.default
        fields[param.name] = (annotation, default)
    model = create_model(  # type: ignore[call-overload]
        f"{getattr(fn, '__name__', 'tool')}_arguments",
        __config__=ConfigDict(extra="allow" if takes_var_keywords else "ignore"),
        **fields,
    )
    return ModelSchema(model)


def _is_dict_annotation(annotation: Any) -> bool:
    return getattr(annotation, "__origin__", None) is dict
