"""
Base classes for the provider boundary.

This module defines how Toolgate talks to whatever actually executes a tool:
- ToolProvider: Protocol the mediator dispatches allowed invocations to
- Tool: Abstract base class for in-process tools served by a ToolRegistry
- ToolContext: Runtime context passed to in-process tools
- ToolOutput: Standardized result of a forwarded call

Design Principles:
    - Providers are only reached after a verdict allowed the invocation
    - Providers raise ProviderError subclasses for failed calls; the
      mediator records those as Failed, never as Denied
    - In-process tools return ToolOutput.fail() for expected failures,
      which their registry turns into a ToolExecutionError
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class ToolOutput:
    """
    Standardized output of a forwarded tool call.

    Attributes:
        success: Whether the tool executed successfully
        data: The output data from the tool (type varies by tool)
        error: Error message if success is False
        metadata: Additional metadata about the execution
    """

    success: bool
    data: Any = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any, **metadata: Any) -> "ToolOutput":
        """Create a successful output."""
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def fail(cls, error: str, **metadata: Any) -> "ToolOutput":
        """Create a failed output."""
        return cls(success=False, error=error, metadata=metadata)


@dataclass
class ToolContext:
    """
    Runtime context passed along with a forwarded call.

    Attributes:
        record_id: Audit record of the invocation attempt
        agent_id: Calling agent, if known
        session_id: Calling session, if known
        metadata: Additional context-specific metadata
    """

    record_id: str
    agent_id: str | None = None
    session_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ToolProvider(Protocol):
    """Anything the mediator can forward an allowed invocation to."""

    async def invoke_tool(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        context: ToolContext | None = None,
    ) -> ToolOutput:
        """
        Execute one tool call.

        Raises:
            ProviderError: If the call could not be completed
        """
        ...


class Tool(ABC):
    """
    Abstract base class for in-process tools.

    Example:
        class EchoTool(Tool):
            @property
            def name(self) -> str:
                return "echo"

            def execute(self, args: dict[str, Any], context: ToolContext) -> ToolOutput:
                return ToolOutput.ok(args.get("message", ""))
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """
        The unique identifier for this tool.

        Tool names follow the convention: namespace.action
        Examples: "fs.read", "http.get", "github.create_issue"
        """
        ...

    @property
    def description(self) -> str:
        return f"Tool: {self.name}"

    @abstractmethod
    def execute(self, args: dict[str, Any], context: ToolContext) -> ToolOutput:
        """
        Execute the tool with the given arguments.

        Called from a worker thread, after the invocation was allowed.

        Note:
            - Use ToolOutput.fail() for expected errors
            - Only raise exceptions for unexpected/programming errors
        """
        ...

    def validate_args(self, args: dict[str, Any]) -> list[str]:
        """
        Validate the arguments for this tool.

        Returns:
            List of validation error messages (empty if valid)
        """
        return []

    def __repr__(self) -> str:
        return f"<Tool: {self.name}>"


class FunctionTool(Tool):
    """
    Wrap a plain callable as a tool.

    The callable receives the argument map as keyword arguments and its
    return value becomes the output data.

    Example:
        registry.register(FunctionTool("math.add", lambda a, b: a + b))
    """

    def __init__(self, name: str, func: Any, description: str | None = None) -> None:
        self._name = name
        self._func = func
        self._description = description

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description or (self._func.__doc__ or "").strip() or super().description

    def execute(self, args: dict[str, Any], context: ToolContext) -> ToolOutput:
        return ToolOutput.ok(self._func(**args))
