import io
import json

import pytest

from conductor.mcp.server import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    PROTOCOL_VERSION,
    McpServer,
)
from conductor.session import Session
from conductor.tools.registry import Tool


def _server() -> McpServer:
    def add(a: int, b: int) -> int:
        """Add two integers."""
        return a + b

    def fail() -> None:
        raise RuntimeError("kaboom")

    server = McpServer("calc", "1.2.3", session=Session())
    server.add_tool(Tool("add", "Add two integers", add))
    server.add_tool(Tool("fail", "Always fails", fail))
    server.add_resource("memo://notes", "Notes", lambda: "remember", description="Scratch notes")
    server.add_resource(
        "memo://config", "Config", lambda: {"mode": "test"}, mime_type="application/json"
    )
    return server


def _request(method: str, params: dict | None = None, request_id: int = 1) -> str:
    message: dict = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return json.dumps(message)


@pytest.mark.asyncio
async def test_initialize() -> None:
    response = await _server().handle_message(_request("initialize", {}))
    assert response is not None
    assert response["id"] == 1
    result = response["result"]
    assert result["protocolVersion"] == PROTOCOL_VERSION
    assert result["serverInfo"] == {"name": "calc", "version": "1.2.3"}
    assert "tools" in result["capabilities"]


@pytest.mark.asyncio
async def test_notifications_get_no_response() -> None:
    server = _server()
    line = json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"})
    assert await server.handle_message(line) is None
    assert server.initialized is True
    unknown = json.dumps({"jsonrpc": "2.0", "method": "notifications/whatever"})
    assert await server.handle_message(unknown) is None


@pytest.mark.asyncio
async def test_tools_list_exposes_input_schema() -> None:
    response = await _server().handle_message(_request("tools/list"))
    assert response is not None
    tools = response["result"]["tools"]
    assert [item["name"] for item in tools] == ["add", "fail"]
    assert set(tools[0]["inputSchema"]["properties"]) == {"a", "b"}
    assert tools[0]["description"] == "Add two integers"


@pytest.mark.asyncio
async def test_tools_call_goes_through_pipeline() -> None:
    server = _server()
    response = await server.handle_message(
        _request("tools/call", {"name": "add", "arguments": {"a": 2, "b": 3}})
    )
    assert response is not None
    assert response["result"] == {"content": [{"type": "text", "text": "5"}], "isError": False}
    assert len(server.session.get_trace(["tool_call"])) == 1


@pytest.mark.asyncio
async def test_tools_call_errors_set_is_error() -> None:
    server = _server()
    failed = await server.handle_message(_request("tools/call", {"name": "fail"}))
    assert failed is not None
    assert failed["result"]["isError"] is True
    assert failed["result"]["content"][0]["text"] == "Error executing tool 'fail': kaboom"

    unknown = await server.handle_message(_request("tools/call", {"name": "ad"}))
    assert unknown is not None
    assert unknown["result"]["isError"] is True
    assert "Did you mean: add?" in unknown["result"]["content"][0]["text"]


@pytest.mark.asyncio
async def test_tools_call_requires_name() -> None:
    response = await _server().handle_message(_request("tools/call", {}))
    assert response is not None
    assert response["error"]["code"] == INVALID_PARAMS


@pytest.mark.asyncio
async def test_resources_list_and_read() -> None:
    server = _server()
    listed = await server.handle_message(_request("resources/list"))
    assert listed is not None
    assert listed["result"]["resources"][0] == {
        "uri": "memo://notes",
        "name": "Notes",
        "description": "Scratch notes",
        "mimeType": "text/plain",
    }

    read = await server.handle_message(_request("resources/read", {"uri": "memo://config"}))
    assert read is not None
    assert read["result"]["contents"] == [
        {"uri": "memo://config", "mimeType": "application/json", "text": '{"mode": "test"}'}
    ]

    missing = await server.handle_message(_request("resources/read", {"uri": "memo://nope"}))
    assert missing is not None
    assert missing["error"]["code"] == INVALID_PARAMS


@pytest.mark.asyncio
async def test_protocol_errors() -> None:
    server = _server()
    parse = await server.handle_message("{not json")
    assert parse is not None
    assert parse["error"]["code"] == PARSE_ERROR
    assert parse["id"] is None

    invalid = await server.handle_message(json.dumps({"id": 7, "method": "tools/list"}))
    assert invalid is not None
    assert invalid["error"]["code"] == INVALID_REQUEST
    assert invalid["id"] == 7

    missing = await server.handle_message(_request("tools/destroy", request_id=9))
    assert missing is not None
    assert missing["error"] == {
        "code": METHOD_NOT_FOUND,
        "message": "Method not found: tools/destroy",
    }


@pytest.mark.asyncio
async def test_internal_errors_are_reported() -> None:
    server = McpServer()

    def broken() -> str:
        raise OSError("disk gone")

    server.add_resource("memo://broken", "Broken", broken)
    response = await server.handle_message(_request("resources/read", {"uri": "memo://broken"}))
    assert response is not None
    assert response["error"]["code"] == INTERNAL_ERROR


@pytest.mark.asyncio
async def test_listen_serves_newline_delimited_json() -> None:
    stdin = io.StringIO(
        "\n".join(
            [
                _request("initialize", {}, request_id=1),
                json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}),
                "",
                _request("tools/call", {"name": "add", "arguments": {"a": 1, "b": 1}}, 2),
            ]
        )
        + "\n"
    )
    stdout = io.StringIO()
    await _server().listen(stdin, stdout)
    responses = [json.loads(line) for line in stdout.getvalue().splitlines()]
    assert [item["id"] for item in responses] == [1, 2]
    assert responses[1]["result"]["content"][0]["text"] == "2"


@pytest.mark.asyncio
async def test_positional_params_are_invalid() -> None:
    line = json.dumps({"jsonrpc": "2.0", "id": 3, "method": "tools/call", "params": ["add"]})
    response = await _server().handle_message(line)
    assert response is not None
    assert response["id"] == 3
    assert response["error"]["code"] == INVALID_PARAMS
