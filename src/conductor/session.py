"""Shared session state: history, scoped memory, variable store, trace and
the delegation context stack.

One Session is shared by every agent taking part in a run. It is plain
mutable state and is not safe to use from concurrent tasks.
"""

from __future__ import annotations

import ast
import contextlib
import io
import json
import logging
import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from conductor.config import SANDBOX_MODES, get_settings
from conductor.errors import DelegationError, DepthExceeded
from conductor.providers.base import Usage
from conductor.tools.computer import PYTHON_DENY_PATTERNS

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1
RESULT_SUMMARY_CHARS = 200
DEFAULT_SCOPE = "global"

_CODE_STRICT_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("file io: open", re.compile(r"(?<![\w.])open\s*\(")),
    ("file io: pathlib write", re.compile(r"\.(write_text|write_bytes|unlink)\s*\(")),
    ("dynamic import", re.compile(r"\b__import__\s*\(")),
)


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class Message:
    role: str
    content: str = ""
    tool_call_id: str | None = None
    name: str | None = None
    tool_calls: list[dict[str, Any]] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            role=str(data.get("role", "user")),
            content=str(data.get("content") or ""),
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
            tool_calls=data.get("tool_calls"),
        )


@dataclass(slots=True)
class TraceEvent:
    timestamp: datetime
    type: str
    agent: str | None
    depth: int
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DelegationContext:
    agent_name: str
    task: str
    parent_agent_name: str | None
    depth: int
    started_at: datetime
    ended_at: datetime | None = None
    duration_ms: float | None = None
    result_summary: str | None = None


class Session:
    def __init__(
        self,
        *,
        model_id: str | None = None,
        sandbox_mode: str | None = None,
        max_depth: int | None = None,
        trace_enabled: bool | None = None,
    ) -> None:
        settings = get_settings()
        self.model_id = model_id
        self.history: list[Message] = []
        self.memory: dict[str, dict[str, Any]] = {DEFAULT_SCOPE: {}}
        self.environment: dict[str, Any] = {}
        self.trace: list[TraceEvent] = []
        self.trace_enabled = (
            bool(settings.session_trace_enabled) if trace_enabled is None else trace_enabled
        )
        self.context_stack: list[DelegationContext] = []
        self.max_depth = settings.flow_max_depth if max_depth is None else max_depth
        self.global_task: str | None = None
        self.stats: dict[str, int] = {
            "prompt_tokens": 0,
            "completion_tokens": 0,
            "total_tokens": 0,
            "tool_calls": 0,
            "runs": 0,
        }
        self._sandbox_mode = "strict"
        self.sandbox_mode = sandbox_mode or settings.session_sandbox_mode

    # -- history ---------------------------------------------------------

    def append_message(self, role: str, content: str = "", **extra: Any) -> Message:
        message = Message(role=role, content=content, **extra)
        self.history.append(message)
        return message

    def append(self, message: Message) -> None:
        self.history.append(message)

    def get_history(self) -> list[dict[str, Any]]:
        return [message.to_dict() for message in self.history]

    def get_last_response(self) -> str | None:
        for message in reversed(self.history):
            if message.role == "assistant":
                return message.content
        return None

    def clear_history(self) -> None:
        self.history.clear()

    # -- memory ----------------------------------------------------------

    def get_memory(self, key: str, default: Any = None, scope: str = DEFAULT_SCOPE) -> Any:
        return self.memory.get(scope, {}).get(key, default)

    def set_memory(self, key: str, value: Any, scope: str = DEFAULT_SCOPE) -> None:
        self.memory.setdefault(scope, {})[key] = value

    def list_memory(self, scope: str = DEFAULT_SCOPE) -> list[str]:
        return list(self.memory.get(scope, {}))

    def clear_memory(self, keys: list[str] | None = None, scope: str = DEFAULT_SCOPE) -> None:
        bucket = self.memory.get(scope)
        if bucket is None:
            return
        if keys is None:
            bucket.clear()
            return
        for key in keys:
            bucket.pop(key, None)

    def memory_scopes(self) -> list[str]:
        return list(self.memory)

    def delete_scope(self, scope: str) -> bool:
        if scope == DEFAULT_SCOPE:
            self.memory[DEFAULT_SCOPE].clear()
            return True
        return self.memory.pop(scope, None) is not None

    # -- variable store --------------------------------------------------

    def get_var(self, name: str, default: Any = None) -> Any:
        return self.environment.get(name, default)

    def set_var(self, name: str, value: Any) -> None:
        self.environment[name] = value
        self.trace_event("var_set", {"name": name, "type": type(value).__name__})

    def has_var(self, name: str) -> bool:
        return name in self.environment

    def del_var(self, name: str) -> bool:
        return self.environment.pop(name, _MISSING) is not _MISSING

    def list_vars(self) -> list[str]:
        return [name for name in self.environment if not name.startswith("__")]

    def summarize_vars(self) -> list[dict[str, Any]]:
        summary: list[dict[str, Any]] = []
        for name in self.list_vars():
            value = self.environment[name]
            try:
                size: int | None = len(value)
            except TypeError:
                size = None
            summary.append({"name": name, "type": type(value).__name__, "size": size})
        return summary

    # -- sandbox & code --------------------------------------------------

    @property
    def sandbox_mode(self) -> str:
        return self._sandbox_mode

    @sandbox_mode.setter
    def sandbox_mode(self, mode: str) -> None:
        normalized = str(mode).strip().lower()
        if normalized not in SANDBOX_MODES:
            raise ValueError(f"sandbox mode must be one of: {', '.join(SANDBOX_MODES)}")
        self._sandbox_mode = normalized

    def check_code(self, code: str) -> str | None:
        """Return the violated rule for `code` under the current mode, if any."""
        if self._sandbox_mode == "none":
            return None
        patterns = PYTHON_DENY_PATTERNS
        if self._sandbox_mode == "strict":
            patterns = patterns + _CODE_STRICT_PATTERNS
        for rule, pattern in patterns:
            if pattern.search(code):
                return rule
        return None

    def execute_code(self, code: str, agent: str | None = None) -> dict[str, Any]:
        """Run Python against the shared variable store.

        The value of a trailing expression is returned as `result`; printed
        output is captured. Failures are reported, never raised.
        """
        rule = self.check_code(code)
        if rule is not None:
            self.trace_event(
                "code_execution", {"ok": False, "violation": rule}, agent=agent
            )
            return {
                "result": None,
                "output": "",
                "error": True,
                "message": f"Sandbox violation ({self._sandbox_mode}): {rule}",
                "rule": rule,
            }

        buffer = io.StringIO()
        injected = "__builtins__" not in self.environment
        try:
            tree = ast.parse(code, mode="exec")
            tail: ast.expr | None = None
            if tree.body and isinstance(tree.body[-1], ast.Expr):
                tail = tree.body.pop().value  # type: ignore[attr-defined]
            with contextlib.redirect_stdout(buffer):
                exec(compile(tree, "<session>", "exec"), self.environment)
                result = (
                    eval(compile(ast.Expression(tail), "<session>", "eval"), self.environment)
                    if tail is not None
                    else None
                )
        except Exception as exc:
            self.trace_event(
                "code_execution", {"ok": False, "error": type(exc).__name__}, agent=agent
            )
            return {
                "result": None,
                "output": buffer.getvalue(),
                "error": True,
                "message": f"{type(exc).__name__}: {exc}",
            }
        finally:
            if injected:
                self.environment.pop("__builtins__", None)

        self.trace_event(
            "code_execution", {"ok": True, "chars": len(code)}, agent=agent
        )
        return {"result": result, "output": buffer.getvalue(), "error": False, "message": ""}

    # -- trace -----------------------------------------------------------

    def trace_event(
        self, event_type: str, data: dict[str, Any] | None = None, agent: str | None = None
    ) -> TraceEvent | None:
        if not self.trace_enabled:
            return None
        event = TraceEvent(
            timestamp=_now(),
            type=event_type,
            agent=agent if agent is not None else self.current_agent,
            depth=len(self.context_stack),
            data=dict(data or {}),
        )
        self.trace.append(event)
        return event

    def get_trace(
        self, event_types: list[str] | None = None, agent: str | None = None
    ) -> list[TraceEvent]:
        events = self.trace
        if event_types is not None:
            wanted = set(event_types)
            events = [event for event in events if event.type in wanted]
        if agent is not None:
            events = [event for event in events if event.agent == agent]
        return list(events)

    def clear_trace(self) -> None:
        self.trace.clear()

    def trace_summary(self) -> dict[str, Any]:
        by_type = Counter(event.type for event in self.trace)
        agents = sorted({event.agent for event in self.trace if event.agent})
        span_ms = 0.0
        if len(self.trace) > 1:
            span_ms = (self.trace[-1].timestamp - self.trace[0].timestamp).total_seconds() * 1000
        return {
            "total_events": len(self.trace),
            "by_type": dict(by_type),
            "agents": agents,
            "max_depth": max((event.depth for event in self.trace), default=0),
            "span_ms": span_ms,
        }

    # -- delegation context ----------------------------------------------

    @property
    def depth(self) -> int:
        return len(self.context_stack)

    @property
    def current_agent(self) -> str | None:
        return self.context_stack[-1].agent_name if self.context_stack else None

    def push_context(
        self, agent_name: str, task: str, parent_agent_name: str | None = None
    ) -> DelegationContext:
        if len(self.context_stack) >= self.max_depth:
            raise DepthExceeded(len(self.context_stack) + 1, self.max_depth)
        context = DelegationContext(
            agent_name=agent_name,
            task=task,
            parent_agent_name=parent_agent_name,
            depth=len(self.context_stack) + 1,
            started_at=_now(),
        )
        self.context_stack.append(context)
        self.trace_event(
            "context_push",
            {
                "agent": agent_name,
                "parent": parent_agent_name,
                "task": task[:RESULT_SUMMARY_CHARS],
            },
            agent=agent_name,
        )
        return context

    def pop_context(self, result: Any = None) -> DelegationContext:
        if not self.context_stack:
            raise DelegationError("cannot pop delegation context: stack is empty")
        context = self.context_stack.pop()
        context.ended_at = _now()
        context.duration_ms = (context.ended_at - context.started_at).total_seconds() * 1000
        context.result_summary = None if result is None else str(result)[:RESULT_SUMMARY_CHARS]
        self.trace_event(
            "context_pop",
            {"agent": context.agent_name, "duration_ms": context.duration_ms},
            agent=context.agent_name,
        )
        return context

    def get_context(self) -> dict[str, Any]:
        return {
            "depth": self.depth,
            "max_depth": self.max_depth,
            "current_agent": self.current_agent,
            "global_task": self.global_task,
            "stack": [
                {
                    "agent": item.agent_name,
                    "task": item.task,
                    "parent": item.parent_agent_name,
                    "depth": item.depth,
                }
                for item in self.context_stack
            ],
        }

    def set_global_task(self, task: str) -> None:
        self.global_task = task
        self.trace_event("global_task_set", {"task": task[:RESULT_SUMMARY_CHARS]})

    # -- stats -----------------------------------------------------------

    def record_usage(self, usage: Usage | None, tool_calls: int = 0) -> None:
        if usage is not None:
            self.stats["prompt_tokens"] += usage.prompt_tokens
            self.stats["completion_tokens"] += usage.completion_tokens
            self.stats["total_tokens"] += usage.total_tokens
        self.stats["tool_calls"] += tool_calls
        self.stats["runs"] += 1

    # -- snapshot --------------------------------------------------------

    def as_dict(self) -> dict[str, Any]:
        variables: dict[str, Any] = {}
        skipped: list[str] = []
        for name in self.list_vars():
            value = self.environment[name]
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                skipped.append(name)
                continue
            variables[name] = value
        return {
            "version": SNAPSHOT_VERSION,
            "model_id": self.model_id,
            "history": self.get_history(),
            "memory": {scope: dict(bucket) for scope, bucket in self.memory.items()},
            "variables": variables,
            "unserialized_variables": skipped,
            "sandbox_mode": self.sandbox_mode,
            "max_depth": self.max_depth,
            "global_task": self.global_task,
            "stats": dict(self.stats),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        version = data.get("version")
        if version != SNAPSHOT_VERSION:
            raise ValueError(f"unsupported session snapshot version: {version!r}")
        session = cls(
            model_id=data.get("model_id"),
            sandbox_mode=data.get("sandbox_mode"),
            max_depth=data.get("max_depth"),
        )
        session.history = [Message.from_dict(item) for item in data.get("history", [])]
        for scope, bucket in (data.get("memory") or {}).items():
            session.memory[scope] = dict(bucket)
        session.environment.update(data.get("variables") or {})
        session.global_task = data.get("global_task")
        session.stats.update(data.get("stats") or {})
        return session

    def save(self, path: str | Path) -> Path:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(self.as_dict(), indent=2, default=str))
        logger.info("session saved", extra={"path": str(target)})
        return target

    @classmethod
    def load(cls, path: str | Path) -> Session:
        return cls.from_dict(json.loads(Path(path).read_text()))


_MISSING = object()
