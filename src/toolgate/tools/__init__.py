"""
Tool providers for Toolgate.

Toolgate never executes tools itself; it forwards allowed invocations to a
provider:
    - ToolRegistry: in-process tools, run in a worker thread
    - RemoteToolProvider: an MCP-style JSON-RPC server over HTTP

Policy enforcement happens BEFORE a provider is reached, never within it.
"""

from toolgate.tools.base import FunctionTool, Tool, ToolContext, ToolOutput, ToolProvider
from toolgate.tools.registry import ToolRegistry
from toolgate.tools.remote import RemoteToolProvider

__all__ = [
    "FunctionTool",
    "RemoteToolProvider",
    "Tool",
    "ToolContext",
    "ToolOutput",
    "ToolProvider",
    "ToolRegistry",
]
