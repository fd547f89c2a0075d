"""Agent data models and run entry points."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from conductor.config import get_settings
from conductor.hooks import HookHandler
from conductor.orchestrator.prompt_builder import build_delegation_context, build_system_prompt
from conductor.orchestrator.step import RunResult, StreamCallback, run_agent_loop
from conductor.providers.base import ModelProvider
from conductor.tools.registry import Tool, ToolRegistry
from conductor.tools.runtime import ToolRuntime

if TYPE_CHECKING:
    from conductor.orchestrator.flow import Flow
    from conductor.session import Session

AGENT_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(slots=True)
class Skill:
    """A loaded skill: prompt fragment plus the tools it brings."""

    name: str
    prompt: str = ""
    tools: list[Tool] = field(default_factory=list)


class DelegateArgs(BaseModel):
    task: str = Field(description="The sub-task to hand over, stated completely.")
    context: str | None = Field(default=None, description="Extra context for the agent.")


@dataclass(slots=True)
class Agent:
    name: str
    description: str = ""
    system_prompt: str = ""
    tools: list[Tool] = field(default_factory=list)
    skills: list[Skill] = field(default_factory=list)
    max_steps: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not AGENT_NAME_PATTERN.match(self.name):
            raise ValueError(
                f"agent name must be non-empty and use only letters, digits, '_' or '-': "
                f"{self.name!r}"
            )
        merged: dict[str, Tool] = {}
        for item in [*self.tools, *(t for skill in self.skills for t in skill.tools)]:
            merged.setdefault(item.name, item)
        self.tools = list(merged.values())

    def registry(self, extra_tools: list[Tool] | None = None) -> ToolRegistry:
        registry = ToolRegistry(self.tools)
        for item in extra_tools or []:
            if item.name not in registry:
                registry.add(item)
        return registry

    def prompt(self, *, context: str | None = None, session: Session | None = None) -> str:
        return build_system_prompt(
            self.system_prompt,
            context=context,
            session=session,
            skill_prompts=[skill.prompt for skill in self.skills if skill.prompt],
        )

    async def run(
        self,
        task: str,
        *,
        model: ModelProvider,
        session: Session | None = None,
        context: str | None = None,
        max_steps: int | None = None,
        hooks: HookHandler | None = None,
        extra_tools: list[Tool] | None = None,
        system_prompt: str | None = None,
        **options: Any,
    ) -> RunResult:
        return await self._loop(
            task,
            model=model,
            session=session,
            context=context,
            max_steps=max_steps,
            hooks=hooks,
            extra_tools=extra_tools,
            system_prompt=system_prompt,
            callback=None,
            options=options,
        )

    async def stream(
        self,
        task: str,
        callback: StreamCallback,
        *,
        model: ModelProvider,
        session: Session | None = None,
        context: str | None = None,
        max_steps: int | None = None,
        hooks: HookHandler | None = None,
        extra_tools: list[Tool] | None = None,
        system_prompt: str | None = None,
        **options: Any,
    ) -> RunResult:
        return await self._loop(
            task,
            model=model,
            session=session,
            context=context,
            max_steps=max_steps,
            hooks=hooks,
            extra_tools=extra_tools,
            system_prompt=system_prompt,
            callback=callback,
            options=options,
        )

    async def _loop(
        self,
        task: str,
        *,
        model: ModelProvider,
        session: Session | None,
        context: str | None,
        max_steps: int | None,
        hooks: HookHandler | None,
        extra_tools: list[Tool] | None,
        system_prompt: str | None,
        callback: StreamCallback | None,
        options: dict[str, Any],
    ) -> RunResult:
        steps = max_steps or self.max_steps or get_settings().agent_max_steps
        runtime = ToolRuntime(self.registry(extra_tools), hooks=hooks)
        prompt = system_prompt if system_prompt is not None else self.prompt(
            context=context, session=session
        )
        return await run_agent_loop(
            model=model,
            runtime=runtime,
            system_prompt=prompt,
            task=task,
            agent_name=self.name,
            max_steps=steps,
            session=session,
            hooks=hooks,
            callback=callback,
            options=options,
        )

    def as_tool(
        self,
        *,
        model: ModelProvider,
        session: Session | None = None,
        flow: Flow | None = None,
        hooks: HookHandler | None = None,
    ) -> Tool:
        """Wrap this agent as a `delegate_to_<name>` tool.

        With a Flow the call goes through its guardrails and history;
        otherwise the session context stack is pushed and popped here.
        """

        async def delegate(task: str, context: str | None = None) -> str:
            if flow is not None:
                return await flow.delegate(self.name, task, context=context)
            if session is None:
                result = await self.run(task, model=model, context=context, hooks=hooks)
                return result.text
            parent = session.current_agent
            session.push_context(self.name, task, parent)
            outcome: str | None = None
            try:
                banner = build_delegation_context(
                    caller=parent, task=task, session=session, extra_context=context
                )
                result = await self.run(
                    task, model=model, session=session, context=banner, hooks=hooks
                )
                outcome = result.text
            finally:
                session.pop_context(outcome)
            return outcome or ""

        description = self.description or f"Delegate a task to agent '{self.name}'."
        return Tool(
            name=f"delegate_to_{self.name}",
            description=description,
            execute=delegate,
            parameters=DelegateArgs,
        )
