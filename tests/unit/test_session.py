from pathlib import Path

import pytest

from conductor.errors import DelegationError, DepthExceeded
from conductor.providers.base import Usage
from conductor.session import SNAPSHOT_VERSION, Message, Session


def test_history_round_trip() -> None:
    session = Session()
    session.append_message("user", "hi")
    session.append(Message(role="tool", content="5", tool_call_id="c1", name="add"))
    session.append_message("assistant", "done")
    assert session.get_history() == [
        {"role": "user", "content": "hi"},
        {"role": "tool", "content": "5", "tool_call_id": "c1", "name": "add"},
        {"role": "assistant", "content": "done"},
    ]
    assert session.get_last_response() == "done"
    session.clear_history()
    assert session.get_history() == []
    assert session.get_last_response() is None


def test_scoped_memory() -> None:
    session = Session()
    session.set_memory("topic", "llamas")
    session.set_memory("topic", "alpacas", scope="research")
    assert session.get_memory("topic") == "llamas"
    assert session.get_memory("topic", scope="research") == "alpacas"
    assert session.get_memory("missing", default=0) == 0
    assert session.get_memory("topic", scope="nowhere") is None
    assert session.memory_scopes() == ["global", "research"]

    session.set_memory("other", 1)
    session.clear_memory(["topic"])
    assert session.list_memory() == ["other"]
    session.clear_memory(scope="research")
    assert session.list_memory("research") == []
    assert session.delete_scope("research") is True
    assert session.delete_scope("research") is False


def test_variable_store() -> None:
    session = Session()
    session.set_var("rows", [1, 2, 3])
    session.set_var("name", "sales")
    assert session.has_var("rows")
    assert session.get_var("rows") == [1, 2, 3]
    assert session.list_vars() == ["rows", "name"]
    assert session.summarize_vars() == [
        {"name": "rows", "type": "list", "size": 3},
        {"name": "name", "type": "str", "size": 5},
    ]
    assert session.del_var("rows") is True
    assert session.del_var("rows") is False
    assert [event.type for event in session.get_trace()] == ["var_set", "var_set"]


def test_execute_code_shares_environment() -> None:
    session = Session(sandbox_mode="permissive")
    first = session.execute_code("x = 10\nprint('set')")
    assert first["error"] is False
    assert first["output"] == "set\n"
    second = session.execute_code("x * 2")
    assert second["result"] == 20
    assert session.get_var("x") == 10
    assert "__builtins__" not in session.list_vars()
    assert "__builtins__" not in session.environment


def test_execute_code_reports_errors() -> None:
    session = Session()
    outcome = session.execute_code("undefined_name + 1")
    assert outcome["error"] is True
    assert outcome["message"].startswith("NameError")


def test_execute_code_sandbox_modes() -> None:
    session = Session(sandbox_mode="strict")
    blocked = session.execute_code("open('x.txt', 'w')")
    assert blocked["error"] is True
    assert blocked["rule"] == "file io: open"

    session.sandbox_mode = "permissive"
    assert session.check_code("open('x.txt')") is None
    assert session.check_code("import subprocess") == "shell escape: subprocess"

    session.sandbox_mode = "none"
    assert session.check_code("import subprocess") is None

    with pytest.raises(ValueError):
        session.sandbox_mode = "loose"


def test_trace_filters_and_summary() -> None:
    session = Session()
    session.trace_event("custom", {"n": 1}, agent="a")
    session.trace_event("custom", {"n": 2}, agent="b")
    session.trace_event("other", agent="a")
    assert len(session.get_trace(["custom"])) == 2
    assert [event.data["n"] for event in session.get_trace(agent="b")] == [2]
    summary = session.trace_summary()
    assert summary["total_events"] == 3
    assert summary["by_type"] == {"custom": 2, "other": 1}
    assert summary["agents"] == ["a", "b"]
    session.clear_trace()
    assert session.get_trace() == []


def test_trace_can_be_disabled() -> None:
    session = Session(trace_enabled=False)
    assert session.trace_event("custom") is None
    session.set_var("x", 1)
    assert session.get_trace() == []


def test_context_stack_push_pop() -> None:
    session = Session(max_depth=2)
    first = session.push_context("manager", "plan the trip")
    assert first.depth == 1
    assert session.current_agent == "manager"
    second = session.push_context("researcher", "find flights", "manager")
    assert second.depth == 2
    assert session.get_context()["stack"][1]["parent"] == "manager"

    with pytest.raises(DepthExceeded) as excinfo:
        session.push_context("booker", "book it", "researcher")
    assert excinfo.value.depth == 3
    assert excinfo.value.max_depth == 2

    popped = session.pop_context("x" * 500)
    assert popped.agent_name == "researcher"
    assert popped.ended_at is not None
    assert popped.duration_ms is not None and popped.duration_ms >= 0
    assert popped.result_summary == "x" * 200
    assert session.depth == 1
    session.pop_context()
    assert session.current_agent is None

    with pytest.raises(DelegationError):
        session.pop_context()

    types = [event.type for event in session.get_trace()]
    assert types.count("context_push") == 2
    assert types.count("context_pop") == 2


def test_trace_events_carry_depth() -> None:
    session = Session()
    session.push_context("manager", "task")
    event = session.trace_event("custom")
    assert event is not None
    assert event.depth == 1
    assert event.agent == "manager"


def test_record_usage() -> None:
    session = Session()
    session.record_usage(Usage(prompt_tokens=10, completion_tokens=5), tool_calls=2)
    session.record_usage(None)
    assert session.stats["total_tokens"] == 15
    assert session.stats["tool_calls"] == 2
    assert session.stats["runs"] == 2


def test_snapshot_save_and_load(tmp_path: Path) -> None:
    session = Session(model_id="test-model", sandbox_mode="permissive", max_depth=3)
    session.append_message("user", "hi")
    session.set_memory("k", "v", scope="notes")
    session.set_var("count", 3)
    session.set_var("handle", object())
    session.set_global_task("count things")

    snapshot = session.as_dict()
    assert snapshot["version"] == SNAPSHOT_VERSION
    assert snapshot["variables"] == {"count": 3}
    assert snapshot["unserialized_variables"] == ["handle"]

    path = session.save(tmp_path / "snap" / "session.json")
    restored = Session.load(path)
    assert restored.model_id == "test-model"
    assert restored.sandbox_mode == "permissive"
    assert restored.max_depth == 3
    assert restored.get_history() == [{"role": "user", "content": "hi"}]
    assert restored.get_memory("k", scope="notes") == "v"
    assert restored.get_var("count") == 3
    assert not restored.has_var("handle")
    assert restored.global_task == "count things"


def test_snapshot_rejects_unknown_version() -> None:
    with pytest.raises(ValueError, match="snapshot version"):
        Session.from_dict({"version": 99})
