"""
In-process tool provider for Toolgate.

The registry maps tool names to Tool instances and serves them through the
ToolProvider interface, so the mediator can forward to local tools and remote
servers the same way.

Design:
    - Tools run in a worker thread so a slow tool never blocks the event loop
    - A ToolOutput.fail() result becomes a ToolExecutionError
    - Unexpected exceptions from a tool become a ToolExecutionError too

Usage:
    registry = ToolRegistry()
    registry.register(EchoTool())
    output = await registry.invoke_tool("echo", {"message": "hi"})
"""

import asyncio
import logging
from typing import Any, Iterator

from toolgate.errors import ProviderError, ToolExecutionError, ToolNotFoundError
from toolgate.tools.base import Tool, ToolContext, ToolOutput

logger = logging.getLogger(__name__)


class ToolRegistry:
    """
    Registry for looking up tools by name.

    Attributes:
        _tools: Internal mapping of tool names to tool instances
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """
        Register a tool, replacing any tool with the same name.

        Raises:
            ValueError: If tool is None or has an empty name
        """
        if tool is None:
            msg = "Cannot register None as a tool"
            raise ValueError(msg)

        name = tool.name
        if not name:
            msg = "Tool must have a non-empty name"
            raise ValueError(msg)

        if name in self._tools:
            logger.debug("Replacing registered tool %s", name)
        self._tools[name] = tool

    def get(self, name: str) -> Tool:
        """
        Look up a tool by name.

        Raises:
            ToolNotFoundError: If no tool with that name is registered
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(tool=name)
        return tool

    def has(self, name: str) -> bool:
        return name in self._tools

    def unregister(self, name: str) -> bool:
        """
        Remove a tool from the registry.

        Returns:
            True if the tool was removed, False if it wasn't registered
        """
        if name in self._tools:
            del self._tools[name]
            return True
        return False

    def list_tools(self) -> list[str]:
        """List all registered tool names in sorted order."""
        return sorted(self._tools.keys())

    async def invoke_tool(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        context: ToolContext | None = None,
    ) -> ToolOutput:
        """
        Run a registered tool in a worker thread.

        Raises:
            ToolNotFoundError: If the tool is not registered
            ToolExecutionError: If the arguments are invalid, the tool
                reports a failure, or the tool raises
        """
        tool = self.get(tool_name)

        problems = tool.validate_args(arguments)
        if problems:
            raise ToolExecutionError(
                tool=tool_name,
                tool_args=arguments,
                underlying_error="; ".join(problems),
                suggestion="Fix the tool arguments",
            )

        ctx = context or ToolContext(record_id="")
        try:
            output = await asyncio.to_thread(tool.execute, arguments, ctx)
        except ProviderError:
            raise
        except Exception as e:
            logger.warning("Tool %s raised %s", tool_name, type(e).__name__)
            raise ToolExecutionError(
                tool=tool_name,
                tool_args=arguments,
                underlying_error=f"{type(e).__name__}: {e}",
            ) from e

        if not output.success:
            raise ToolExecutionError(
                tool=tool_name,
                tool_args=arguments,
                underlying_error=output.error or "tool reported failure",
            )
        return output

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._tools.values())

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __repr__(self) -> str:
        tools = ", ".join(self.list_tools())
        return f"<ToolRegistry: [{tools}]>"
