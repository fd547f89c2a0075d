import asyncio
from typing import Any

import pytest

from conductor.errors import SandboxViolation, ToolErrorKind
from conductor.hooks import HookHandler, create_permission_hook
from conductor.providers.base import ToolCall
from conductor.session import Session
from conductor.tools.registry import Tool, ToolLayer, ToolRegistry
from conductor.tools.runtime import INVALID_TOOL_NAME, ToolRuntime, normalize_result


def _registry() -> ToolRegistry:
    registry = ToolRegistry()

    def add(a: int, b: int) -> int:
        return a + b

    def shout(text: str) -> str:
        return text.upper()

    async def echo(args: dict[str, Any]) -> dict[str, Any]:
        return args

    def double_x(environment: dict[str, Any]) -> int:
        return environment["x"] * 2

    registry.register("add", "Add two integers", add)
    registry.register("shout", "Upper-case text", shout)
    registry.register("echo", "Echo arguments", echo)
    registry.register("double_x", "Double the shared x", double_x)
    return registry


@pytest.mark.asyncio
async def test_invoke_success_normalizes_result() -> None:
    runtime = ToolRuntime(_registry())
    result = await runtime.invoke(ToolCall(id="c1", name="add", arguments={"a": 2, "b": 3}))
    assert result.is_error is False
    assert result.result == "5"
    assert result.call_id == "c1"
    assert result.extra == {}


@pytest.mark.asyncio
async def test_unknown_tool_suggests_close_name() -> None:
    runtime = ToolRuntime(_registry())
    result = await runtime.invoke(ToolCall(id="c1", name="shuot", arguments={}))
    assert result.is_error is True
    assert result.error_kind is ToolErrorKind.UNKNOWN_TOOL
    assert result.result == "Unknown tool 'shuot'. Did you mean: shout?"
    assert result.extra == {"routed_to": INVALID_TOOL_NAME, "suggestion": "shout"}


@pytest.mark.asyncio
async def test_unknown_tool_without_close_match() -> None:
    runtime = ToolRuntime(_registry())
    result = await runtime.invoke(ToolCall(id="c1", name="launch_rocket", arguments={}))
    assert result.is_error is True
    assert result.result == "Unknown tool 'launch_rocket'. Skill/tool not found."
    assert "suggestion" not in result.extra


@pytest.mark.asyncio
async def test_name_repair_is_opt_in() -> None:
    call = ToolCall(id="c1", name="Shout", arguments={"text": "hi"})
    plain = await ToolRuntime(_registry()).invoke(call)
    assert plain.error_kind is ToolErrorKind.UNKNOWN_TOOL

    repaired = await ToolRuntime(_registry(), repair_names=True).invoke(call)
    assert repaired.is_error is False
    assert repaired.name == "shout"
    assert repaired.result == "HI"


@pytest.mark.asyncio
async def test_truncated_arguments_are_repaired() -> None:
    runtime = ToolRuntime(_registry())
    result = await runtime.invoke(ToolCall(id="c1", name="add", arguments='{"a": 2, "b": 3'))
    assert result.is_error is False
    assert result.result == "5"
    assert result.extra == {"arguments": "repaired"}


@pytest.mark.asyncio
async def test_unparseable_arguments_fall_back_to_empty() -> None:
    runtime = ToolRuntime(_registry())
    result = await runtime.invoke(ToolCall(id="c1", name="echo", arguments='{"a" 1}'))
    assert result.is_error is False
    assert result.result == "{}"
    assert result.extra == {"arguments": "fallback_empty"}


@pytest.mark.asyncio
async def test_bare_value_is_coerced_into_single_field() -> None:
    runtime = ToolRuntime(_registry())
    result = await runtime.invoke(ToolCall(id="c1", name="shout", arguments="hello"))
    assert result.is_error is False
    assert result.result == "HELLO"


@pytest.mark.asyncio
async def test_invalid_arguments_become_error_result() -> None:
    runtime = ToolRuntime(_registry())
    result = await runtime.invoke(ToolCall(id="c1", name="add", arguments={"a": "two", "b": 3}))
    assert result.is_error is True
    assert result.error_kind is ToolErrorKind.INVALID_ARGUMENTS
    assert result.result.startswith("Invalid arguments for tool 'add'")


@pytest.mark.asyncio
async def test_unknown_keys_are_dropped_for_keyword_tools() -> None:
    runtime = ToolRuntime(_registry())
    result = await runtime.invoke(
        ToolCall(id="c1", name="add", arguments={"a": 1, "b": 1, "c": 99})
    )
    assert result.result == "2"


@pytest.mark.asyncio
async def test_var_keyword_tools_receive_every_key() -> None:
    registry = ToolRegistry()

    def collect(**kwargs: Any) -> list[str]:
        return sorted(kwargs)

    registry.register("collect", "Collect keys", collect)
    result = await ToolRuntime(registry).invoke(
        ToolCall(id="c1", name="collect", arguments={"b": 1, "a": 2})
    )
    assert result.result == '["a", "b"]'


@pytest.mark.asyncio
async def test_environment_injection_uses_session_store() -> None:
    session = Session()
    session.set_var("x", 10)
    runtime = ToolRuntime(_registry())
    result = await runtime.invoke(ToolCall(id="c1", name="double_x"), session=session)
    assert result.is_error is False
    assert result.result == "20"


@pytest.mark.asyncio
async def test_environment_is_empty_without_session() -> None:
    runtime = ToolRuntime(_registry())
    result = await runtime.invoke(ToolCall(id="c1", name="double_x"))
    assert result.is_error is True
    assert result.error_kind is ToolErrorKind.EXECUTION_FAILURE
    assert result.result == "Error executing tool 'double_x': 'x'"


@pytest.mark.asyncio
async def test_execution_failure_is_captured() -> None:
    registry = ToolRegistry()

    def fail() -> None:
        raise RuntimeError("boom")

    registry.register("fail", "Always fails", fail)
    result = await ToolRuntime(registry).invoke(ToolCall(id="c1", name="fail"))
    assert result.is_error is True
    assert result.result == "Error executing tool 'fail': boom"


@pytest.mark.asyncio
async def test_tool_error_kind_is_preserved() -> None:
    registry = ToolRegistry()

    def guarded() -> None:
        raise SandboxViolation("Sandbox violation (strict): fork bomb", rule="fork bomb")

    registry.register("guarded", "Guarded", guarded)
    result = await ToolRuntime(registry).invoke(ToolCall(id="c1", name="guarded"))
    assert result.error_kind is ToolErrorKind.SANDBOX_VIOLATION
    assert result.result == "Sandbox violation (strict): fork bomb"


@pytest.mark.asyncio
async def test_denied_call_never_executes() -> None:
    executed: list[str] = []
    registry = ToolRegistry()

    def risky() -> str:
        executed.append("risky")
        return "done"

    registry.register("risky", "Risky", risky)
    runtime = ToolRuntime(registry, hooks=create_permission_hook("explicit", allowlist=["add"]))
    result = await runtime.invoke(ToolCall(id="c1", name="risky"))
    assert result.is_error is True
    assert result.error_kind is ToolErrorKind.DENIED
    assert result.result == "Tool execution denied: risky"
    assert executed == []


@pytest.mark.asyncio
async def test_start_and_end_hooks_fire_in_order() -> None:
    events: list[str] = []

    async def on_start(call: ToolCall) -> None:
        events.append(f"start:{call.name}")

    def on_end(result: Any) -> None:
        events.append(f"end:{result.result}")

    hooks = HookHandler(on_tool_start=on_start, on_tool_end=on_end)
    runtime = ToolRuntime(_registry(), hooks=hooks)
    await runtime.invoke(ToolCall(id="c1", name="add", arguments={"a": 1, "b": 2}))
    assert events == ["start:add", "end:3"]


@pytest.mark.asyncio
async def test_failing_end_hook_becomes_error_result() -> None:
    def on_end(result: Any) -> None:
        raise ValueError("hook exploded")

    runtime = ToolRuntime(_registry(), hooks=HookHandler(on_tool_end=on_end))
    result = await runtime.invoke(ToolCall(id="c1", name="add", arguments={"a": 1, "b": 2}))
    assert result.is_error is True
    assert result.result == "Error executing tool 'add': hook exploded"


@pytest.mark.asyncio
async def test_async_computer_tool_is_bounded_by_timeout() -> None:
    registry = ToolRegistry()

    async def slow() -> str:
        await asyncio.sleep(5)
        return "late"

    registry.register("slow", "Slow", slow, layer=ToolLayer.COMPUTER)
    runtime = ToolRuntime(registry, computer_timeout_ms=50)
    result = await runtime.invoke(ToolCall(id="c1", name="slow"))
    assert result.is_error is True
    assert result.error_kind is ToolErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_invocation_is_traced_with_redacted_arguments() -> None:
    session = Session()
    runtime = ToolRuntime(_registry())
    await runtime.invoke(
        ToolCall(id="c1", name="echo", arguments={"token": "abc", "q": "x"}),
        session=session,
        agent_name="worker",
    )
    events = session.get_trace(["tool_call"])
    assert len(events) == 1
    assert events[0].agent == "worker"
    assert events[0].data["arguments"] == {"token": "[REDACTED]", "q": "x"}
    assert events[0].data["is_error"] is False


@pytest.mark.asyncio
async def test_invoke_all_runs_sequentially() -> None:
    runtime = ToolRuntime(_registry())
    results = await runtime.invoke_all(
        [
            ToolCall(id="c1", name="shout", arguments={"text": "a"}),
            ToolCall(id="c2", name="missing"),
        ]
    )
    assert [item.call_id for item in results] == ["c1", "c2"]
    assert [item.is_error for item in results] == [False, True]


def test_normalize_result() -> None:
    assert normalize_result(None) == ""
    assert normalize_result("text") == "text"
    assert normalize_result({"a": 1}) == '{"a": 1}'
    assert normalize_result([1, 2]) == "[1, 2]"
