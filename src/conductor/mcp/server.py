"""MCP server: expose tools and resources over newline-delimited JSON-RPC."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TextIO

from conductor.hooks import HookHandler, maybe_await
from conductor.ids import new_id
from conductor.logging import bind_context
from conductor.providers.base import ToolCall
from conductor.session import Session
from conductor.tools.registry import Tool, ToolRegistry
from conductor.tools.runtime import ToolRuntime

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class RpcError(Exception):
    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass(slots=True)
class Resource:
    uri: str
    name: str
    read: Callable[[], Any]
    description: str = ""
    mime_type: str = "text/plain"


class McpServer:
    def __init__(
        self,
        name: str = "conductor",
        version: str = "0.1.0",
        *,
        session: Session | None = None,
        hooks: HookHandler | None = None,
    ) -> None:
        self.name = name
        self.version = version
        self.session = session
        self.registry = ToolRegistry()
        self.runtime = ToolRuntime(self.registry, hooks=hooks)
        self.resources: dict[str, Resource] = {}
        self.initialized = False

    def add_tool(self, tool: Tool) -> None:
        self.registry.add(tool)

    def add_resource(
        self,
        uri: str,
        name: str,
        read: Callable[[], Any],
        *,
        description: str = "",
        mime_type: str = "text/plain",
    ) -> None:
        self.resources[uri] = Resource(uri, name, read, description, mime_type)

    async def handle_message(self, line: str) -> dict[str, Any] | None:
        """Handle one JSON-RPC message; notifications get no response."""
        try:
            message = json.loads(line)
        except json.JSONDecodeError as exc:
            return _error_response(None, PARSE_ERROR, f"Parse error: {exc}")

        if not isinstance(message, dict) or message.get("jsonrpc") != "2.0":
            request_id = message.get("id") if isinstance(message, dict) else None
            return _error_response(request_id, INVALID_REQUEST, "Invalid Request")
        method = message.get("method")
        if not isinstance(method, str):
            return _error_response(message.get("id"), INVALID_REQUEST, "Invalid Request")

        is_notification = "id" not in message
        request_id = message.get("id")
        params = message.get("params") or {}
        try:
            if not isinstance(params, dict):
                raise RpcError(INVALID_PARAMS, "Invalid params: expected an object")
            result = await self._dispatch(method, params)
        except RpcError as exc:
            if is_notification:
                return None
            return _error_response(request_id, exc.code, exc.message)
        except Exception as exc:
            logger.exception("MCP method %s failed", method)
            if is_notification:
                return None
            return _error_response(request_id, INTERNAL_ERROR, f"Internal error: {exc}")

        if is_notification:
            return None
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    async def _dispatch(self, method: str, params: dict[str, Any]) -> Any:
        if method == "initialize":
            return {
                "protocolVersion": PROTOCOL_VERSION,
                "serverInfo": {"name": self.name, "version": self.version},
                "capabilities": {"tools": {}, "resources": {}},
            }
        if method == "notifications/initialized":
            self.initialized = True
            return None
        if method == "ping":
            return {}
        if method == "tools/list":
            return {
                "tools": [
                    {
                        "name": item.name,
                        "description": item.description,
                        "inputSchema": item.schema.to_json_schema(),
                    }
                    for item in self.registry
                ]
            }
        if method == "tools/call":
            return await self._call_tool(params)
        if method == "resources/list":
            return {
                "resources": [
                    {
                        "uri": item.uri,
                        "name": item.name,
                        "description": item.description,
                        "mimeType": item.mime_type,
                    }
                    for item in self.resources.values()
                ]
            }
        if method == "resources/read":
            return await self._read_resource(params)
        raise RpcError(METHOD_NOT_FOUND, f"Method not found: {method}")

    async def _call_tool(self, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise RpcError(INVALID_PARAMS, "tools/call requires a tool name")
        call = ToolCall(id=new_id("mcp"), name=name, arguments=params.get("arguments"))
        result = await self.runtime.invoke(call, session=self.session, agent_name=self.name)
        return {
            "content": [{"type": "text", "text": result.result}],
            "isError": result.is_error,
        }

    async def _read_resource(self, params: dict[str, Any]) -> dict[str, Any]:
        uri = params.get("uri")
        resource = self.resources.get(uri) if isinstance(uri, str) else None
        if resource is None:
            raise RpcError(INVALID_PARAMS, f"Unknown resource: {uri}")
        value = await maybe_await(resource.read())
        text = value if isinstance(value, str) else json.dumps(value, default=str)
        return {"contents": [{"uri": resource.uri, "mimeType": resource.mime_type, "text": text}]}

    async def listen(self, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
        """Serve until EOF on stdin."""
        reader = stdin or sys.stdin
        writer = stdout or sys.stdout
        bind_context(mcp_server=self.name)
        logger.info("MCP server %s listening on stdio", self.name)
        while True:
            line = await asyncio.to_thread(reader.readline)
            if not line:
                break
            if not line.strip():
                continue
            response = await self.handle_message(line)
            if response is not None:
                writer.write(json.dumps(response) + "\n")
                writer.flush()


def _error_response(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}
