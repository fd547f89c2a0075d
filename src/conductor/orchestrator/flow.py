"""Multi-agent delegation over one shared session.

A Flow owns the delegation guardrails and history. Delegations form a
bounded stack on the session (never a graph). Depth is capped and an agent
cannot delegate to itself. Repeated hand-offs to the same agent are rejected
once they look like a loop, as is a task identical to a recent one.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from conductor.agents.registry import AgentRegistry
from conductor.agents.types import Agent
from conductor.config import get_settings
from conductor.errors import DelegationError, DepthExceeded
from conductor.hooks import HookHandler
from conductor.ids import delegation_id, new_id
from conductor.logging import log_context
from conductor.orchestrator.prompt_builder import build_delegation_context, build_manager_prompt
from conductor.orchestrator.step import RunResult
from conductor.providers.base import ModelProvider
from conductor.session import RESULT_SUMMARY_CHARS, Session
from conductor.tools.registry import Tool

logger = logging.getLogger(__name__)

DELEGATE_TOOL_NAME = "delegate_task"
LOOP_WINDOW = 5


@dataclass(slots=True)
class DelegationRecord:
    id: str
    from_agent: str | None
    to_agent: str
    task: str
    depth: int
    timestamp: datetime
    priority: str = "normal"
    duration_ms: float = 0.0
    result_summary: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class DelegateTaskArgs(BaseModel):
    agent_name: str = Field(description="Name of the agent to delegate to.")
    task: str = Field(description="The sub-task, stated completely.")
    context: str | None = Field(default=None, description="Extra context for the agent.")
    priority: Literal["high", "normal", "low"] = "normal"


class Flow:
    def __init__(
        self,
        session: Session,
        model: ModelProvider,
        registry: AgentRegistry,
        *,
        max_depth: int | None = None,
        max_steps_per_agent: int | None = None,
        enable_guardrails: bool | None = None,
        loop_threshold: int | None = None,
        hooks: HookHandler | None = None,
    ) -> None:
        settings = get_settings()
        self.id = new_id("flw")
        self.session = session
        self.model = model
        self.registry = registry
        self.max_depth = settings.flow_max_depth if max_depth is None else max_depth
        self.session.max_depth = self.max_depth
        self.max_steps_per_agent = max_steps_per_agent
        if enable_guardrails is None:
            enable_guardrails = bool(settings.flow_enable_guardrails)
        self.enable_guardrails = enable_guardrails
        self.loop_threshold = (
            settings.flow_loop_threshold if loop_threshold is None else loop_threshold
        )
        self.hooks = hooks
        self.history: list[DelegationRecord] = []

    def _check(self, agent_name: str, task: str, caller: str | None) -> Agent:
        agent = self.registry.get(agent_name)
        if agent is None:
            available = ", ".join(self.registry.names()) or "none"
            raise DelegationError(f"Unknown agent '{agent_name}'. Available agents: {available}")
        if not self.enable_guardrails:
            return agent
        if self.session.depth >= self.session.max_depth:
            raise DepthExceeded(self.session.depth + 1, self.session.max_depth)
        if caller == agent_name:
            raise DelegationError(f"Agent '{agent_name}' cannot delegate to itself")
        recent = [record.to_agent for record in self.history[-LOOP_WINDOW:]]
        if recent.count(agent_name) >= self.loop_threshold:
            raise DelegationError(
                f"Delegation loop detected: '{agent_name}' received "
                f"{recent.count(agent_name)} of the last {len(recent)} delegations"
            )
        if any(record.task == task for record in self.history[-LOOP_WINDOW:]):
            raise DelegationError(
                "Duplicate task detected: this exact task was delegated within the last "
                f"{LOOP_WINDOW} delegations"
            )
        return agent

    async def delegate(
        self,
        agent_name: str,
        task: str,
        *,
        context: str | None = None,
        priority: str = "normal",
    ) -> str:
        """Run `task` on a registered agent inside a new stack frame.

        Exactly one DelegationRecord is kept per call, whether it succeeds
        or is rejected.

        Raises:
            DelegationError: unknown target, self-delegation, a loop or a
                repeated task.
            DepthExceeded: the stack is already at max depth.
        """
        caller = self.session.current_agent
        record = DelegationRecord(
            id=delegation_id(),
            from_agent=caller,
            to_agent=agent_name,
            task=task,
            depth=self.session.depth + 1,
            timestamp=datetime.now(UTC),
            priority=priority,
        )
        started = time.monotonic()
        try:
            agent = self._check(agent_name, task, caller)
            self.session.push_context(agent_name, task, caller)
            outcome: str | None = None
            try:
                banner = build_delegation_context(
                    caller=caller,
                    task=task,
                    session=self.session,
                    priority=priority,
                    extra_context=context,
                )
                with log_context(agent=agent_name, depth=record.depth):
                    result = await agent.run(
                        task,
                        model=self.model,
                        session=self.session,
                        context=banner,
                        max_steps=self.max_steps_per_agent,
                        hooks=self.hooks,
                        extra_tools=[self.generate_delegate_tool()],
                    )
                outcome = result.text
            finally:
                self.session.pop_context(outcome)
            record.result_summary = (outcome or "")[:RESULT_SUMMARY_CHARS]
            return outcome or ""
        except Exception as exc:
            record.error = str(exc)
            logger.warning("delegation %s -> %s failed: %s", caller, agent_name, exc)
            raise
        finally:
            record.duration_ms = (time.monotonic() - started) * 1000
            self.history.append(record)
            self.session.trace_event(
                "delegation",
                {
                    "id": record.id,
                    "from": caller,
                    "to": agent_name,
                    "ok": record.succeeded,
                    "duration_ms": record.duration_ms,
                },
                agent=caller,
            )

    def generate_delegate_tool(self) -> Tool:
        async def delegate_task(
            agent_name: str, task: str, context: str | None = None, priority: str = "normal"
        ) -> str:
            return await self.delegate(agent_name, task, context=context, priority=priority)

        section = self.registry.prompt_section() or "- (no agents registered)"
        return Tool(
            name=DELEGATE_TOOL_NAME,
            description=(
                "Delegate a sub-task to a specialist agent. Available agents:\n" + section
            ),
            execute=delegate_task,
            parameters=DelegateTaskArgs,
        )

    async def run(self, agent: Agent | str, task: str, **options: Any) -> RunResult:
        """Run a manager agent on `task` with delegation available."""
        manager = self.registry.get(agent) if isinstance(agent, str) else agent
        if manager is None:
            raise DelegationError(f"Unknown agent '{agent}'")
        self.session.set_global_task(task)
        with log_context(flow_id=self.id, manager=manager.name):
            self.session.push_context(manager.name, task, None)
            result: RunResult | None = None
            try:
                prompt = build_manager_prompt(
                    manager.prompt(session=self.session), self.registry.prompt_section()
                )
                result = await manager.run(
                    task,
                    model=self.model,
                    session=self.session,
                    max_steps=self.max_steps_per_agent,
                    hooks=self.hooks,
                    extra_tools=[self.generate_delegate_tool()],
                    system_prompt=prompt,
                    **options,
                )
            finally:
                self.session.pop_context(result.text if result is not None else None)
            assert result is not None
            logger.info(
                "flow finished manager=%s delegations=%d status=%s",
                manager.name,
                len(self.history),
                result.status,
            )
            return result

    def delegation_history(
        self, agent_name: str | None = None, limit: int | None = None
    ) -> list[DelegationRecord]:
        records = self.history
        if agent_name is not None:
            records = [
                record
                for record in records
                if record.to_agent == agent_name or record.from_agent == agent_name
            ]
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return list(records)

    def delegation_stats(self) -> dict[str, Any]:
        total = len(self.history)
        succeeded = sum(1 for record in self.history if record.succeeded)
        return {
            "total_delegations": total,
            "by_agent": dict(Counter(record.to_agent for record in self.history)),
            "max_depth_reached": max((record.depth for record in self.history), default=0),
            "success_rate": succeeded / total if total else 0.0,
            "failures": total - succeeded,
            "avg_duration_ms": (
                sum(record.duration_ms for record in self.history) / total if total else 0.0
            ),
        }

    def clear_history(self) -> None:
        self.history.clear()
