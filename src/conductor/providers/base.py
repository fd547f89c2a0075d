"""Provider contracts.

The runtime never formats vendor requests. A model client only has to
accept the role/content message list plus tool schemas and return a
ModelResponse; anything shaped like a tool call is normalized here.
"""

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from conductor.ids import new_id

ChunkCallback = Callable[[str], Awaitable[None] | None]


@dataclass(frozen=True, slots=True)
class ToolCall:
    id: str
    name: str
    arguments: Any = None


@dataclass(slots=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def add(self, other: "Usage | None") -> None:
        if other is None:
            return
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens


@dataclass(slots=True)
class ModelResponse:
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"
    usage: Usage | None = None


class ModelProvider(Protocol):
    async def generate(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        **options: Any,
    ) -> ModelResponse: ...

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        on_chunk: ChunkCallback,
        **options: Any,
    ) -> ModelResponse: ...


def normalize_tool_calls(tool_calls_raw: object) -> list[ToolCall]:
    """Coerce provider tool-call payloads into ToolCall values.

    Accepts ToolCall instances, flat dicts ({"name", "arguments"}) and the
    nested OpenAI-style shape ({"function": {"name", "arguments"}}).
    Entries without a usable name are dropped. Arguments stay raw; the
    invocation pipeline repairs them.
    """
    calls: list[ToolCall] = []
    if not isinstance(tool_calls_raw, list):
        return calls
    for item in tool_calls_raw:
        if isinstance(item, ToolCall):
            calls.append(item)
            continue
        if not isinstance(item, dict):
            continue
        function = item.get("function")
        source = function if isinstance(function, dict) else item
        name = source.get("name")
        if not isinstance(name, str) or not name.strip():
            continue
        call_id = item.get("id")
        calls.append(
            ToolCall(
                id=call_id if isinstance(call_id, str) and call_id else new_id("call"),
                name=name.strip(),
                arguments=source.get("arguments"),
            )
        )
    return calls


def tool_call_to_dict(call: ToolCall) -> dict[str, Any]:
    arguments = call.arguments
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments if arguments is not None else {}, default=str)
    return {
        "id": call.id,
        "type": "function",
        "function": {"name": call.name, "arguments": arguments},
    }
