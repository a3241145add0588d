"""Shared test helpers and stub classes.

Reusable stubs for the tool loop, the controller and the context window tests.
Import from here instead of duplicating them in individual test files.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from llm_switchboard.context.tokens import TokenEstimator, TokenEstimatorRegistry
from llm_switchboard.conversation_database.controller import ConversationController
from llm_switchboard.conversation_database.in_memory import InMemoryConversationDatabase, InMemoryMessageDatabase
from llm_switchboard.errors import ProviderError, ToolExecutionFailed, UnknownProviderError
from llm_switchboard.events import Completed, ProviderResponseEvent, TextDelta, ToolCallRequested, Usage
from llm_switchboard.llms.adapter import ProviderAdapter
from llm_switchboard.llms.base import LLMMessage, ProviderFamily, ProviderRequest, ProviderSelection
from llm_switchboard.llms.factory import AdapterFactory
from llm_switchboard.settings import LoopSettings, ProviderSettings, RetrySettings, Settings
from llm_switchboard.tools.base import Tool, ToolDescription
from llm_switchboard.tools.executor import ToolExecutor, ToolResult

HANG = object()
"""Script item that stalls the provider stream until the call is cancelled or times out."""

SELECTION = ProviderSelection(family=ProviderFamily.OPENAI, model="scripted-model")


def text_response(*chunks: str, finish_reason: str = "stop") -> list[Any]:
    return [TextDelta(text=chunk) for chunk in chunks] + [Completed(finish_reason=finish_reason, usage=Usage())]


def tool_response(name: str, arguments: dict[str, Any] | None = None, call_id: str = "call_1") -> list[Any]:
    return [ToolCallRequested(id=call_id, name=name, arguments=arguments or {}, usage=Usage(output_tokens=3))]


class ScriptedAdapter(ProviderAdapter):
    """Adapter replaying canned responses, one script per provider call.

    A script is a list of events (or 'HANG'), or a 'ProviderError' raised when the
    call is opened. Once the scripts run out the last one is replayed. Every
    normalized request is recorded, as is the number of calls in flight.
    """

    family = ProviderFamily.OPENAI

    def __init__(
        self,
        scripts: list[list[Any] | ProviderError],
        *,
        settings: ProviderSettings | None = None,
        selection: ProviderSelection = SELECTION,
        retry: RetrySettings | None = None,
    ) -> None:
        super().__init__(selection, settings or ProviderSettings(), retry or RetrySettings(max_attempts=1))
        self.scripts = list(scripts)
        self.requests: list[ProviderRequest] = []
        self.opened = 0
        self.in_flight = 0
        self.max_in_flight = 0

    def translate_request(self, request: ProviderRequest) -> dict[str, Any]:
        self.check_content(request)
        self.requests.append(request)
        return {"messages": request.messages}

    async def _open(self, native: dict[str, Any]) -> Any:
        if not self.scripts:
            raise UnknownProviderError("script exhausted")
        script = self.scripts.pop(0) if len(self.scripts) > 1 else self.scripts[0]
        self.opened += 1
        if isinstance(script, ProviderError):
            raise script
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        return script

    async def _read(self, script: list[Any]) -> AsyncIterator[ProviderResponseEvent]:
        for item in script:
            if item is HANG:
                await asyncio.Event().wait()
            else:
                yield item

    async def _close(self, handle: Any) -> None:
        self.in_flight -= 1

    def map_error(self, error: Exception) -> ProviderError:
        return UnknownProviderError(str(error))


class StaticAdapterFactory(AdapterFactory):
    """Hands out pre-built adapters in order instead of building real ones."""

    def __init__(self, *adapters: ProviderAdapter, settings: Settings | None = None) -> None:
        super().__init__(settings or Settings())
        self.adapters = list(adapters)
        self.selections: list[ProviderSelection] = []

    def create(self, selection: ProviderSelection) -> ProviderAdapter:
        self.selections.append(selection)
        return self.adapters.pop(0) if len(self.adapters) > 1 else self.adapters[0]


ToolBehaviour = str | Exception | Callable[[dict[str, Any]], Awaitable[str]]


class FakeToolExecutor(ToolExecutor):
    """Tool executor answering from a name -> behaviour map and recording calls."""

    def __init__(self, behaviours: dict[str, ToolBehaviour] | None = None) -> None:
        self.behaviours = behaviours or {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def declarations(self) -> list[ToolDescription]:
        return [
            {
                "type": "function",
                "function": {"name": name, "description": f"{name} tool", "parameters": {"type": "object"}},
            }
            for name in self.behaviours
        ]

    async def execute(self, tool_name: str, arguments: dict[str, Any]) -> ToolResult:
        self.calls.append((tool_name, arguments))
        behaviour = self.behaviours.get(tool_name)
        if behaviour is None:
            raise ToolExecutionFailed(tool_name, "no such tool")
        if isinstance(behaviour, Exception):
            raise ToolExecutionFailed(tool_name, str(behaviour))
        if callable(behaviour):
            return ToolResult(content=await behaviour(arguments))
        return ToolResult(content=behaviour)


class EchoTool(Tool):
    name = "echo"
    description = "Return the given text."
    parameters = {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]}

    async def call(self, args: dict[str, Any]) -> dict[str, Any] | str:
        return args["text"]


class FixedCostEstimator(TokenEstimator):
    """Charges a fixed number of tokens per message, looked up by its text."""

    def __init__(self, costs: dict[str, int] | None = None, default: int = 10) -> None:
        super().__init__(message_overhead=0, image_tokens=0)
        self.costs = costs or {}
        self.default = default

    def count_text(self, text: str) -> int:
        return 0

    def count_message(self, message: LLMMessage) -> int:
        return self.costs.get(message.content, self.default)

    def count_tools(self, tools: list[dict[str, Any]]) -> int:
        return 0


def make_controller(
    *adapters: ProviderAdapter,
    executor: ToolExecutor | None = None,
    loop: LoopSettings | None = None,
    estimator: TokenEstimator | None = None,
) -> ConversationController:
    settings = Settings(loop=loop or LoopSettings())
    return ConversationController(
        InMemoryConversationDatabase(),
        InMemoryMessageDatabase(),
        settings=settings,
        adapter_factory=StaticAdapterFactory(*adapters, settings=settings),
        tool_executor=executor,
        estimators=TokenEstimatorRegistry({family: estimator or FixedCostEstimator() for family in ProviderFamily}),
    )
