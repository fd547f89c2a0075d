"""Tool invocation pipeline.

Every model-requested call ends as exactly one ToolResult. Approval, name
resolution, argument repair, validation, execution and hooks all report
failures as error results; nothing raises past `invoke`.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from conductor.config import get_settings
from conductor.errors import (
    InvalidArgumentsError,
    ToolDenied,
    ToolError,
    ToolErrorKind,
    ToolTimeout,
    UnknownToolError,
)
from conductor.hooks import HookHandler
from conductor.providers.base import ToolCall
from conductor.redaction import redact_payload
from conductor.session import Message
from conductor.tools.registry import CallingConvention, Tool, ToolLayer, ToolRegistry
from conductor.tools.repair import (
    ArgumentStatus,
    parse_tool_arguments,
    repair_tool_name,
    suggest_tool_name,
)

if TYPE_CHECKING:
    from conductor.session import Session

logger = logging.getLogger(__name__)

INVALID_TOOL_NAME = "__invalid__"


@dataclass(slots=True)
class ToolResult:
    call_id: str
    name: str
    result: str
    is_error: bool = False
    error_kind: ToolErrorKind | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def as_message(self) -> Message:
        return Message(role="tool", content=self.result, tool_call_id=self.call_id, name=self.name)


def normalize_result(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


class ToolRuntime:
    def __init__(
        self,
        registry: ToolRegistry,
        *,
        hooks: HookHandler | None = None,
        suggest_max_ratio: float | None = None,
        repair_names: bool | None = None,
        computer_timeout_ms: int | None = None,
    ) -> None:
        settings = get_settings()
        self.registry = registry
        self.hooks = hooks or HookHandler()
        self.suggest_max_ratio = (
            settings.tool_suggest_max_ratio if suggest_max_ratio is None else suggest_max_ratio
        )
        self.repair_names = (
            bool(settings.tool_repair_names) if repair_names is None else repair_names
        )
        self.computer_timeout_ms = (
            settings.computer_timeout_ms if computer_timeout_ms is None else computer_timeout_ms
        )

    async def invoke(
        self,
        call: ToolCall,
        *,
        session: Session | None = None,
        agent_name: str | None = None,
    ) -> ToolResult:
        started = time.monotonic()
        arguments: Any = None
        try:
            result, arguments = await self._invoke(call, session)
        except ToolError as exc:
            result = self._error(call, exc.kind, str(exc))
        except Exception as exc:
            logger.exception("Tool execution failed for '%s'", call.name)
            result = self._error(
                call, ToolErrorKind.EXECUTION_FAILURE, f"Error executing tool '{call.name}': {exc}"
            )

        try:
            await self.hooks.trigger("on_tool_end", result)
        except Exception as exc:
            logger.exception("on_tool_end hook failed for '%s'", call.name)
            result = self._error(
                call, ToolErrorKind.EXECUTION_FAILURE, f"Error executing tool '{call.name}': {exc}"
            )

        duration_ms = (time.monotonic() - started) * 1000
        logger.info(
            "tool %s finished is_error=%s kind=%s duration_ms=%.1f",
            call.name,
            result.is_error,
            result.error_kind,
            duration_ms,
        )
        if session is not None:
            session.trace_event(
                "tool_call",
                {
                    "tool": call.name,
                    "call_id": call.id,
                    "arguments": redact_payload(arguments) if isinstance(arguments, dict) else {},
                    "is_error": result.is_error,
                    "error_kind": result.error_kind,
                    "duration_ms": duration_ms,
                },
                agent=agent_name,
            )
        return result

    async def invoke_all(
        self,
        calls: list[ToolCall],
        *,
        session: Session | None = None,
        agent_name: str | None = None,
    ) -> list[ToolResult]:
        results: list[ToolResult] = []
        for call in calls:
            results.append(await self.invoke(call, session=session, agent_name=agent_name))
        return results

    def resolve(self, name: str) -> Tool | None:
        found = self.registry.get(name)
        if found is not None or not self.repair_names:
            return found
        repaired = repair_tool_name(name, self.registry.names())
        if repaired is None:
            return None
        logger.info("repaired tool name %r -> %r", name, repaired)
        return self.registry.get(repaired)

    def _unknown_tool(self, call: ToolCall) -> ToolResult:
        suggestion = suggest_tool_name(call.name, self.registry.names(), self.suggest_max_ratio)
        extra: dict[str, Any] = {"routed_to": INVALID_TOOL_NAME}
        if suggestion is not None:
            extra["suggestion"] = suggestion
            message = f"Unknown tool '{call.name}'. Did you mean: {suggestion}?"
        else:
            message = f"Unknown tool '{call.name}'. Skill/tool not found."
        return self._error(call, UnknownToolError.kind, message, extra)

    async def _invoke(
        self, call: ToolCall, session: Session | None
    ) -> tuple[ToolResult, dict[str, Any] | None]:
        if not await self.hooks.approve(call):
            raise ToolDenied(f"Tool execution denied: {call.name}")

        found = self.resolve(call.name)
        if found is None:
            return self._unknown_tool(call), None

        parsed, status = parse_tool_arguments(call.arguments)
        extra: dict[str, Any] = {}
        if status is not ArgumentStatus.OK:
            extra["arguments"] = status.value
        if not isinstance(parsed, dict):
            fields = found.schema.field_names
            parsed = {fields[0] if len(fields) == 1 else "value": parsed}

        validation = found.schema.validate(parsed)
        if not validation.ok:
            raise InvalidArgumentsError(
                f"Invalid arguments for tool '{found.name}': {'; '.join(validation.errors)}"
            )

        await self.hooks.trigger("on_tool_start", call)
        value = await self._execute(found, validation.value, session)
        return (
            ToolResult(
                call_id=call.id,
                name=found.name,
                result=normalize_result(value),
                extra=extra,
            ),
            validation.value,
        )

    async def _execute(
        self, found: Tool, arguments: dict[str, Any], session: Session | None
    ) -> Any:
        signature = found.signature
        args: tuple[Any, ...] = ()
        kwargs: dict[str, Any] = {}
        if signature.convention is CallingConvention.ARGS_OBJECT:
            args = (arguments,)
        elif signature.convention is CallingConvention.MODEL_OBJECT:
            assert signature.arg_model is not None
            args = (signature.arg_model.model_validate(arguments),)
        elif signature.accepts_var_keywords:
            kwargs = dict(arguments)
        else:
            kwargs = {
                key: value for key, value in arguments.items() if key in signature.parameter_names
            }
        if signature.wants_environment:
            kwargs["environment"] = session.environment if session is not None else {}

        outcome = found.execute(*args, **kwargs)
        if not inspect.isawaitable(outcome):
            return outcome
        if found.layer is ToolLayer.COMPUTER:
            timeout_s = self.computer_timeout_ms / 1000
            try:
                return await asyncio.wait_for(outcome, timeout=timeout_s)
            except TimeoutError as exc:
                raise ToolTimeout(f"tool '{found.name}' timed out after {timeout_s:g}s") from exc
        return await outcome

    @staticmethod
    def _error(
        call: ToolCall,
        kind: ToolErrorKind,
        message: str,
        extra: dict[str, Any] | None = None,
    ) -> ToolResult:
        return ToolResult(
            call_id=call.id,
            name=call.name,
            result=message,
            is_error=True,
            error_kind=kind,
            extra=dict(extra or {}),
        )
