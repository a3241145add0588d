"""
Tool abstractions for LLM function calling.

Tools are the plugins a model can ask to run in the middle of a turn. Each
'Tool' exposes a JSON schema via 'json_schema()' that is declared to the
provider, and a 'call()' coroutine that performs the action when the model
requests it. Declarations use the OpenAI function-calling format; adapters
for other providers convert from it.

Tools are executed through a 'ToolExecutor' (see 'tools.executor'), which is
what the tool loop talks to.
"""

import re
from abc import ABC, abstractmethod
from typing import Any, Literal, TypedDict


class FunctionDescription(TypedDict):
    """JSON schema fragment describing a callable function for the LLM API."""

    name: str
    description: str
    parameters: dict[str, Any]


class ToolDescription(TypedDict):
    """Full tool descriptor in the format expected by OpenAI-compatible APIs."""

    type: Literal["function"]
    function: FunctionDescription


TOOL_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
"""Tool names every supported provider accepts."""


class Tool(ABC):
    """
    Abstract base class for LLM-callable tools.

    Subclasses declare 'name', 'description' and 'parameters' as class
    attributes. 'parameters' is a JSON schema of type "object"; its "required"
    entries must name declared properties.
    """

    name: str
    description: str
    parameters: dict[str, Any]

    @abstractmethod
    async def call(self, args: dict[str, Any]) -> dict[str, Any] | str:
        """Execute the tool with the arguments chosen by the model.

        Return a JSON-serialisable dict or plain text. Raise any exception to
        signal failure; the executor turns it into an error result the model
        can react to.
        """
        pass

    def validate(self) -> None:
        """Raise 'ValueError' when the declaration would be rejected by a provider."""
        name = getattr(self, "name", "")
        if not isinstance(name, str) or not TOOL_NAME_PATTERN.match(name):
            raise ValueError(f"Tool name {name!r} must be 1-64 letters, digits, '_' or '-'")
        parameters = getattr(self, "parameters", None)
        if not isinstance(parameters, dict) or parameters.get("type") != "object":
            raise ValueError(f"Tool '{name}': parameters must be a JSON schema of type 'object'")
        properties = parameters.get("properties", {})
        undeclared = [key for key in parameters.get("required", []) if key not in properties]
        if undeclared:
            raise ValueError(f"Tool '{name}': required arguments {undeclared} are not declared properties")

    def missing_arguments(self, args: dict[str, Any]) -> list[str]:
        return [key for key in self.parameters.get("required", []) if key not in args]

    def json_schema(self) -> ToolDescription:
        """Return the tool descriptor in OpenAI function-calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": getattr(self, "description", "") or "",
                "parameters": self.parameters,
            },
        }
