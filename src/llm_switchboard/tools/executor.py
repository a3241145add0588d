"""
Tool execution collaborator.

'ToolExecutor' is the interface the tool loop calls: 'execute(name, arguments)'
either returns a 'ToolResult' or raises 'ToolExecutionFailed'. It is treated as
an opaque, possibly slow, possibly failing dependency (a plugin runtime, a
remote service). 'ToolRegistryExecutor' is the in-process implementation that
dispatches to registered 'Tool' objects.
"""

import json
from abc import ABC, abstractmethod
from typing import Any

from loguru import logger
from pydantic import BaseModel

from llm_switchboard.errors import ToolExecutionFailed
from llm_switchboard.tools.base import Tool, ToolDescription


class ToolResult(BaseModel):
    """Tool output as text, ready to be fed back to the model."""

    content: str


class ToolExecutor(ABC):
    @abstractmethod
    def declarations(self) -> list[ToolDescription]:
        """Tools the model may call, in OpenAI function-calling format."""
        pass

    @abstractmethod
    async def execute(self, tool_name: str, arguments: dict[str, Any]) -> ToolResult:
        """Run a tool; raise 'ToolExecutionFailed' on any failure."""
        pass


class ToolRegistryExecutor(ToolExecutor):
    def __init__(self, tools: list[Tool] | None = None) -> None:
        self.tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        tool.validate()
        if tool.name in self.tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self.tools[tool.name] = tool

    def declarations(self) -> list[ToolDescription]:
        return [tool.json_schema() for tool in self.tools.values()]

    async def execute(self, tool_name: str, arguments: dict[str, Any]) -> ToolResult:
        tool = self.tools.get(tool_name)
        if tool is None:
            raise ToolExecutionFailed(tool_name, "no such tool")
        if "_raw" in arguments:
            raise ToolExecutionFailed(tool_name, "arguments were not valid JSON")
        missing = tool.missing_arguments(arguments)
        if missing:
            raise ToolExecutionFailed(tool_name, f"missing required arguments: {', '.join(missing)}")
        try:
            output = await tool.call(arguments)
        except ToolExecutionFailed:
            raise
        except Exception as exc:
            logger.warning(f"Tool '{tool_name}' raised {type(exc).__name__}: {exc}")
            raise ToolExecutionFailed(tool_name, str(exc)) from exc
        if isinstance(output, str):
            return ToolResult(content=output)
        return ToolResult(content=json.dumps(output, default=str))
