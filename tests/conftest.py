import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from conductor.config import get_settings
from conductor.logging import clear_context
from conductor.providers.base import ModelResponse


@pytest.fixture(autouse=True)
def test_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("SESSION_SANDBOX_MODE", "strict")
    monkeypatch.setenv("COMPUTER_SANDBOX_MODE", "permissive")
    monkeypatch.setenv("TOOL_REPAIR_NAMES", "0")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    clear_context()


ScriptItem = ModelResponse | Exception | Callable[[list[dict[str, Any]]], ModelResponse]


class ScriptedProvider:
    """Model client that replays canned responses in order."""

    def __init__(self, responses: list[ScriptItem]) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def generate(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        **options: Any,
    ) -> ModelResponse:
        self.calls.append(
            {"messages": [dict(item) for item in messages], "tools": tools, "options": options}
        )
        if not self.responses:
            raise AssertionError("scripted provider ran out of responses")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(messages)
        return item

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        on_chunk: Callable[[str], Any],
        **options: Any,
    ) -> ModelResponse:
        response = await self.generate(messages, tools, **options)
        for piece in re.findall(r"\S+\s*", response.text or ""):
            await on_chunk(piece)
        return response


@pytest.fixture
def scripted() -> type[ScriptedProvider]:
    return ScriptedProvider
