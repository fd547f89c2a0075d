"""System prompt assembly for agents, delegated sub-tasks and managers."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from conductor.session import Session

logger = logging.getLogger(__name__)

SECTION_BUDGET_CHARS = 4000
DEPTH_WARNING_REMAINING = 2

ORCHESTRATION_GUIDELINES = (
    "1. Break the task into focused sub-tasks and delegate each to the best-suited agent.\n"
    "2. Put the exact deliverable in the delegated task; agents only see what you send.\n"
    "3. Agents share the session variables, so pass data by variable name, not by value.\n"
    "4. Do not delegate the same sub-task twice; work with the result you get.\n"
    "5. When every sub-task is done, answer the original task yourself."
)


def _truncate_with_marker(text: str, budget_chars: int) -> tuple[str, bool]:
    if budget_chars <= 0:
        return "", True
    normalized = text.strip()
    if len(normalized) <= budget_chars:
        return normalized, False
    head_chars = max(32, int(budget_chars * 0.65))
    tail_chars = max(16, int(budget_chars * 0.2))
    marker = "\n[...truncated...]\n"
    if head_chars + tail_chars + len(marker) >= budget_chars:
        return normalized[: budget_chars - 1] + "…", True
    return f"{normalized[:head_chars]}{marker}{normalized[-tail_chars:]}", True


def _append_section(
    parts: list[str],
    *,
    label: str,
    body: str,
    budget_chars: int = SECTION_BUDGET_CHARS,
) -> None:
    clean_body = body.strip()
    if not clean_body:
        return
    clipped_body, clipped = _truncate_with_marker(clean_body, budget_chars)
    if clipped:
        logger.debug("prompt section %s clipped to %d chars", label, budget_chars)
    if clipped_body:
        parts.append(f"[{label}]\n{clipped_body}")


def _format_vars(summary: Sequence[dict[str, Any]]) -> str:
    lines: list[str] = []
    for item in summary:
        size = f", size {item['size']}" if item.get("size") is not None else ""
        lines.append(f"- {item['name']} ({item['type']}{size})")
    return "\n".join(lines)


def session_context(session: Session) -> str:
    lines: list[str] = []
    variables = session.summarize_vars()
    if variables:
        lines.append("Shared variables:")
        lines.append(_format_vars(variables))
    memory_keys = session.list_memory()
    if memory_keys:
        lines.append("Memory keys: " + ", ".join(memory_keys))
    return "\n".join(lines)


def build_system_prompt(
    system_prompt: str,
    *,
    context: str | None = None,
    session: Session | None = None,
    skill_prompts: Sequence[str] = (),
) -> str:
    parts: list[str] = [system_prompt.strip()] if system_prompt.strip() else []
    for fragment in skill_prompts:
        _append_section(parts, label="SKILL", body=fragment)
    if context:
        _append_section(parts, label="CURRENT CONTEXT", body=context)
    if session is not None:
        _append_section(parts, label="SHARED SESSION CONTEXT", body=session_context(session))
    return "\n\n".join(parts)


def build_delegation_context(
    *,
    caller: str | None,
    task: str,
    session: Session,
    priority: str = "normal",
    extra_context: str | None = None,
) -> str:
    lines: list[str] = []
    if caller:
        lines.append(f"You are assisting agent '{caller}'.")
    if session.global_task:
        lines.append(f"Global Goal: {session.global_task}")
    lines.append(f"Your Sub-task [PRIORITY {priority.upper()}]: {task}")
    remaining = session.max_depth - session.depth
    if remaining <= DEPTH_WARNING_REMAINING:
        lines.append(
            f"Delegation depth {session.depth}/{session.max_depth}: "
            f"{max(remaining, 0)} level(s) left. Prefer completing the task directly."
        )
    variables = session.summarize_vars()
    if variables:
        lines.append("Available session data:")
        lines.append(_format_vars(variables))
    if extra_context:
        lines.append(f"Additional context: {extra_context.strip()}")
    return "\n".join(lines)


def build_manager_prompt(system_prompt: str, agents_section: str) -> str:
    parts: list[str] = [system_prompt.strip()] if system_prompt.strip() else []
    _append_section(parts, label="AVAILABLE AGENTS", body=agents_section)
    _append_section(parts, label="ORCHESTRATION GUIDELINES", body=ORCHESTRATION_GUIDELINES)
    return "\n\n".join(parts)
