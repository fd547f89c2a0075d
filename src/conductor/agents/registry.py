"""Agent registry."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from conductor.agents.types import Agent
from conductor.hooks import HookHandler
from conductor.providers.base import ModelProvider
from conductor.tools.registry import Tool

if TYPE_CHECKING:
    from conductor.orchestrator.flow import Flow
    from conductor.session import Session

logger = logging.getLogger(__name__)


class AgentRegistry:
    def __init__(self, agents: list[Agent] | None = None) -> None:
        self._agents: dict[str, Agent] = {}
        for agent in agents or []:
            self.register(agent)

    def register(self, agent: Agent) -> None:
        if agent.name in self._agents:
            logger.warning("replacing registered agent '%s'", agent.name)
        self._agents[agent.name] = agent

    def unregister(self, name: str) -> bool:
        return self._agents.pop(name, None) is not None

    def get(self, name: str) -> Agent | None:
        return self._agents.get(name)

    def has(self, name: str) -> bool:
        return name in self._agents

    def names(self) -> list[str]:
        return list(self._agents)

    def list_agents(self) -> list[dict[str, str]]:
        return [
            {"name": agent.name, "description": agent.description}
            for agent in self._agents.values()
        ]

    def prompt_section(self) -> str:
        lines = [
            f"- {agent.name}: {agent.description or 'no description'}"
            for agent in self._agents.values()
        ]
        return "\n".join(lines)

    def delegate_tools(
        self,
        *,
        model: ModelProvider,
        session: Session | None = None,
        flow: Flow | None = None,
        hooks: HookHandler | None = None,
        exclude: str | None = None,
    ) -> list[Tool]:
        return [
            agent.as_tool(model=model, session=session, flow=flow, hooks=hooks)
            for agent in self._agents.values()
            if agent.name != exclude
        ]

    def __contains__(self, name: object) -> bool:
        return name in self._agents

    def __len__(self) -> int:
        return len(self._agents)
