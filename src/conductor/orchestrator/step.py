"""ReAct tool-calling loop shared by Agent.run and Agent.stream."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from conductor.errors import ProviderError
from conductor.hooks import HookHandler, maybe_await
from conductor.providers.base import (
    ModelProvider,
    ModelResponse,
    ToolCall,
    Usage,
    normalize_tool_calls,
    tool_call_to_dict,
)
from conductor.tools.runtime import ToolResult, ToolRuntime

if TYPE_CHECKING:
    from conductor.session import Session

logger = logging.getLogger(__name__)

StreamCallback = Callable[[str, bool], Awaitable[None] | None]


class RunStatus(StrEnum):
    DONE = "done"
    STEP_LIMIT = "step_limit"


@dataclass(slots=True)
class RunResult:
    text: str
    status: RunStatus
    steps: int
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    finish_reason: str = "stop"
    warning: str | None = None

    @property
    def completed(self) -> bool:
        return self.status is RunStatus.DONE


async def _call_model(
    model: ModelProvider,
    convo: list[dict[str, Any]],
    tool_schemas: list[dict[str, Any]],
    callback: StreamCallback | None,
    options: dict[str, Any],
) -> ModelResponse:
    try:
        if callback is None:
            return await model.generate(convo, tools=tool_schemas or None, **options)

        async def on_chunk(chunk: str) -> None:
            if chunk:
                await maybe_await(callback(chunk, False))

        return await model.stream(convo, tool_schemas or None, on_chunk, **options)
    except ProviderError:
        raise
    except Exception as exc:
        raise ProviderError(f"model call failed: {exc}") from exc


async def _safe_trigger(hooks: HookHandler, name: str, *args: Any) -> None:
    try:
        await hooks.trigger(name, *args)
    except Exception:
        logger.exception("%s hook failed", name)


async def run_agent_loop(
    *,
    model: ModelProvider,
    runtime: ToolRuntime,
    system_prompt: str,
    task: str,
    agent_name: str,
    max_steps: int,
    session: Session | None = None,
    hooks: HookHandler | None = None,
    callback: StreamCallback | None = None,
    options: dict[str, Any] | None = None,
) -> RunResult:
    """Alternate model calls and tool execution until a final answer.

    Session history receives one tool-role message per executed call and the
    final assistant text. The user task and the assistant's tool-call turns
    live only in this run's local conversation.

    Raises:
        ProviderError: the model client failed; the run is aborted.
    """
    hooks = hooks or HookHandler()
    options = dict(options or {})
    if max_steps < 1:
        raise ValueError("max_steps must be >= 1")

    convo: list[dict[str, Any]] = []
    if system_prompt:
        convo.append({"role": "system", "content": system_prompt})
    if session is not None:
        convo.extend(session.get_history())
    convo.append({"role": "user", "content": task})
    tool_schemas = runtime.registry.schemas()

    steps = 0
    usage = Usage()
    all_calls: list[ToolCall] = []
    all_results: list[ToolResult] = []
    status = RunStatus.DONE
    warning: str | None = None
    final_text = ""
    finish_reason = "stop"

    while steps < max_steps:
        steps += 1
        await _safe_trigger(hooks, "on_generation_start", agent_name, convo)
        response = await _call_model(model, convo, tool_schemas, callback, options)
        usage.add(response.usage)
        finish_reason = response.finish_reason
        final_text = response.text or ""
        calls = normalize_tool_calls(response.tool_calls)

        if not calls:
            if session is not None:
                session.append_message("assistant", final_text)
            break

        if steps >= max_steps:
            status = RunStatus.STEP_LIMIT
            warning = f"Maximum generation steps ({max_steps}) reached"
            logger.warning("%s: agent=%s", warning, agent_name)
            break

        convo.append(
            {
                "role": "assistant",
                "content": final_text,
                "tool_calls": [tool_call_to_dict(call) for call in calls],
            }
        )
        for call in calls:
            tool_result = await runtime.invoke(call, session=session, agent_name=agent_name)
            all_calls.append(call)
            all_results.append(tool_result)
            message = tool_result.as_message()
            convo.append(message.to_dict())
            if session is not None:
                session.append(message)

    if callback is not None:
        await maybe_await(callback("", True))

    result = RunResult(
        text=final_text,
        status=status,
        steps=steps,
        tool_calls=all_calls,
        tool_results=all_results,
        usage=usage,
        finish_reason=finish_reason,
        warning=warning,
    )
    if session is not None:
        session.record_usage(usage, tool_calls=len(all_calls))
        session.set_memory(f"agent_{agent_name}_last_task", task)
        session.set_memory(f"agent_{agent_name}_last_result", final_text)
    await _safe_trigger(hooks, "on_generation_end", agent_name, result)
    logger.info(
        "agent %s finished status=%s steps=%d tool_calls=%d",
        agent_name,
        status,
        steps,
        len(all_calls),
    )
    return result
