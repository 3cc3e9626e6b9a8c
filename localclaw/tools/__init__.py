"""
Tools System
============

Tools are the capabilities the model can invoke. Each tool has a name, a
description, a JSON Schema for its parameters and an async handler:

    Tool(
        name="read_file",
        description="Read the contents of a file",
        parameters={
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        },
        execute=file_tool.read_file_tool,
    )

Tool Categories:
1. Shell: bash
2. Files: read_file, write_file, list_directory, delete_file
3. Browser: browse
4. Code agent: code_agent (remote, over ssh)

Handlers receive the argument map as-is. They validate their own required
fields and report problems as a failed ToolResult; the model sees the
error text and can try again.

This module provides:
- Tool: definition + handler
- ToolResult: standardized handler output
- ToolRegistry: name -> Tool lookup, advertised verbatim to the LLM
"""

from dataclasses import dataclass
from typing import Any, Callable, Awaitable

from localclaw.utils.logger import Logger

logger = Logger("Tools")


@dataclass
class ToolResult:
    """
    Standardized result from tool execution.

    Attributes:
        success: Whether the tool did what was asked
        output: Text shown to the model on success
        error: Text shown to the model on failure
    """
    success: bool
    output: str = ""
    error: str | None = None

    @classmethod
    def ok(cls, output: str) -> "ToolResult":
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, error: str) -> "ToolResult":
        return cls(success=False, error=error)

    def to_message(self) -> str:
        """Format as tool message content for the LLM."""
        if self.success:
            return self.output
        return self.error or "Error: tool failed without a message"


@dataclass
class Tool:
    """
    Definition of a tool.

    Attributes:
        name: Unique identifier for the tool
        description: What the tool does (shown to the model)
        parameters: JSON Schema for the parameters
        execute: Async function that runs the tool
    """
    name: str
    description: str
    parameters: dict
    execute: Callable[[dict[str, Any]], Awaitable[ToolResult]]

    def to_openai_function(self) -> dict:
        """Convert to the OpenAI function-calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters
            }
        }

    @property
    def primary_parameter(self) -> str:
        """
        The argument a bare string is assigned to when the model's
        arguments are not a JSON object.
        """
        required = self.parameters.get("required") or []
        if required:
            return required[0]
        properties = self.parameters.get("properties") or {}
        return next(iter(properties), "input")


class ToolRegistry:
    """
    Registry of the tools available for one configuration.

    Example:
        registry = ToolRegistry()
        registry.register(bash_tool)

        functions = registry.get_openai_functions()
        result = await registry.execute("bash", {"command": "ls"})
    """

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """
        Register a tool.

        Raises:
            ValueError: If a tool with this name already exists
        """
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")

        self._tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name}")

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def get_openai_functions(self) -> list[dict]:
        """All tools in OpenAI function format, in registration order."""
        return [tool.to_openai_function() for tool in self._tools.values()]

    def list_names(self) -> list[str]:
        return list(self._tools.keys())

    async def execute(self, name: str, params: dict[str, Any]) -> ToolResult:
        """
        Execute a tool by name.

        Exceptions raised by a handler are captured into a failed result.

        Args:
            name: The tool name
            params: Arguments to pass to the tool

        Returns:
            ToolResult from the tool execution
        """
        tool = self.get(name)
        if not tool:
            return ToolResult.fail(f"Unknown tool: {name}")

        try:
            return await tool.execute(params)
        except Exception as e:
            logger.error(f"Tool execution failed: {name}", e)
            return ToolResult.fail(f"Tool error: {e}")


__all__ = [
    "Tool",
    "ToolResult",
    "ToolRegistry",
]
