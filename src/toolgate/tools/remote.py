"""
Remote tool provider for Toolgate.

Forwards allowed invocations to an MCP-style server speaking JSON-RPC 2.0
over HTTP:

    POST <url>
    {"jsonrpc": "2.0", "id": 1, "method": "tools/call",
     "params": {"name": "github.create_issue", "arguments": {...}}}

A result with "isError": true, a JSON-RPC error object, a non-2xx status or a
transport failure all become ProviderError subclasses. Nothing is retried:
a forwarded call happens at most once per invocation attempt.
"""

import itertools
import logging
from typing import Any

import httpx

from toolgate.errors import ToolExecutionError, ToolNotFoundError, ToolTimeoutError
from toolgate.tools.base import ToolContext, ToolOutput

logger = logging.getLogger(__name__)

# JSON-RPC error code for an unknown method or tool
METHOD_NOT_FOUND = -32601


class RemoteToolProvider:
    """
    ToolProvider that calls tools on a remote JSON-RPC server.

    Usage:
        provider = RemoteToolProvider("http://localhost:8080/mcp")
        output = await provider.invoke_tool("fs.read", {"path": "README.md"})

    Attributes:
        url: JSON-RPC endpoint
        timeout_seconds: Per-request timeout
        headers: Extra headers sent with every request (e.g. auth)
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 60,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.headers = dict(headers or {})
        self._transport = transport
        self._ids = itertools.count(1)

    async def invoke_tool(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        context: ToolContext | None = None,
    ) -> ToolOutput:
        """
        Call one tool on the remote server.

        Raises:
            ToolNotFoundError: If the server doesn't know the tool
            ToolTimeoutError: If the request timed out
            ToolExecutionError: For every other failure
        """
        request_id = next(self._ids)
        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": "tools/call",
            "params": {"name": tool_name, "arguments": arguments},
        }
        if context is not None:
            payload["params"]["_meta"] = {"record_id": context.record_id}

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                headers=self.headers,
                transport=self._transport,
            ) as client:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
                body = response.json()
        except httpx.TimeoutException as e:
            raise ToolTimeoutError(
                tool=tool_name,
                tool_args=arguments,
                timeout_seconds=self.timeout_seconds,
            ) from e
        except httpx.HTTPStatusError as e:
            raise ToolExecutionError(
                tool=tool_name,
                tool_args=arguments,
                underlying_error=f"HTTP {e.response.status_code} from {self.url}",
            ) from e
        except httpx.RequestError as e:
            raise ToolExecutionError(
                tool=tool_name,
                tool_args=arguments,
                underlying_error=f"Request failed: {e}",
                suggestion="Check that the tool server is reachable",
            ) from e
        except ValueError as e:
            raise ToolExecutionError(
                tool=tool_name,
                tool_args=arguments,
                underlying_error=f"Invalid JSON response: {e}",
            ) from e

        return self._parse_response(tool_name, arguments, body)

    def _parse_response(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        body: Any,
    ) -> ToolOutput:
        if not isinstance(body, dict):
            raise ToolExecutionError(
                tool=tool_name,
                tool_args=arguments,
                underlying_error="Response is not a JSON-RPC object",
            )

        error = body.get("error")
        if error is not None:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            if code == METHOD_NOT_FOUND:
                raise ToolNotFoundError(tool=tool_name, tool_args=arguments, message=message)
            raise ToolExecutionError(
                tool=tool_name,
                tool_args=arguments,
                underlying_error=message,
                context={"rpc_error_code": code},
            )

        result = body.get("result")
        if not isinstance(result, dict):
            raise ToolExecutionError(
                tool=tool_name,
                tool_args=arguments,
                underlying_error="Response has no result",
            )

        if result.get("isError"):
            raise ToolExecutionError(
                tool=tool_name,
                tool_args=arguments,
                underlying_error=_content_text(result) or "tool reported failure",
            )

        data = result.get("structuredContent", result.get("content"))
        return ToolOutput.ok(data, url=self.url)

    def __repr__(self) -> str:
        return f"<RemoteToolProvider: {self.url}>"


def _content_text(result: dict[str, Any]) -> str:
    """Join the text parts of an MCP content list."""
    parts = [
        item.get("text", "")
        for item in result.get("content") or []
        if isinstance(item, dict) and item.get("type") == "text"
    ]
    return "\n".join(p for p in parts if p)
