"""Lifecycle hooks for generation and tool execution."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from conductor.providers.base import ToolCall

logger = logging.getLogger(__name__)

PERMISSION_MODES = ("implicit", "explicit", "escalate")

HookFn = Callable[..., Any]


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass(slots=True)
class HookHandler:
    """Optional callbacks; each may be sync or async.

    on_tool_approval(call) returning False vetoes the call before execution.
    """

    on_generation_start: HookFn | None = None
    on_generation_end: HookFn | None = None
    on_tool_start: HookFn | None = None
    on_tool_end: HookFn | None = None
    on_tool_approval: HookFn | None = None

    async def trigger(self, name: str, *args: Any) -> Any:
        fn = getattr(self, name, None)
        if fn is None:
            return None
        return await maybe_await(fn(*args))

    async def approve(self, call: ToolCall) -> bool:
        if self.on_tool_approval is None:
            return True
        return bool(await maybe_await(self.on_tool_approval(call)))


def create_permission_hook(
    mode: str = "implicit",
    allowlist: Iterable[str] | None = None,
    confirm: Callable[[ToolCall], Any] | None = None,
) -> HookHandler:
    """Build an approval gate.

    implicit: allow everything. explicit: allow only allowlisted tools.
    escalate: allowlisted tools pass, anything else goes to `confirm`;
    without a confirm callback those calls are denied.
    """
    if mode not in PERMISSION_MODES:
        raise ValueError(f"permission mode must be one of: {', '.join(PERMISSION_MODES)}")
    allowed = set(allowlist or ())

    async def approval(call: ToolCall) -> bool:
        if mode == "implicit" or call.name in allowed:
            return True
        if mode == "explicit":
            logger.info("tool call not in allowlist", extra={"tool": call.name})
            return False
        if confirm is None:
            logger.warning(
                "escalation requested without confirm callback", extra={"tool": call.name}
            )
            return False
        return bool(await maybe_await(confirm(call)))

    return HookHandler(on_tool_approval=approval)
