"""
Anthropic-style adapter (Messages API).

The Messages API differs from the normalized shape in three ways the
translation takes care of: the system prompt is a top-level field, tool results
travel as 'tool_result' blocks inside a user turn, and consecutive turns of the
same role must be merged into one. Streaming responses arrive as content
blocks; tool-use input is streamed as partial JSON and decoded once its block
is complete.
"""

from collections.abc import AsyncIterator
from typing import Any

import anthropic
from anthropic import AsyncAnthropic

from llm_switchboard.errors import (
    AuthenticationFailed,
    ContentFiltered,
    ContextLengthExceeded,
    ProviderError,
    ProviderUnavailable,
    RateLimited,
    UnknownProviderError,
)
from llm_switchboard.events import Completed, ProviderResponseEvent, TextDelta, ToolCallRequested, Usage
from llm_switchboard.llms.adapter import ProviderAdapter, decode_arguments, from_first_user_turn, retry_after_from_headers
from llm_switchboard.llms.base import (
    Capability,
    ImagePart,
    LLMMessage,
    ProviderFamily,
    ProviderRequest,
    ProviderSelection,
    Roles,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from llm_switchboard.settings import ProviderSettings, RetrySettings

STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}


def _to_block(part: Any) -> dict[str, Any] | None:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text} if part.text else None
    if isinstance(part, ImagePart):
        if part.url:
            return {"type": "image", "source": {"type": "url", "url": part.url}}
        return {"type": "image", "source": {"type": "base64", "media_type": part.media_type, "data": part.data}}
    if isinstance(part, ToolCallPart):
        return {"type": "tool_use", "id": part.id, "name": part.name, "input": part.arguments}
    if isinstance(part, ToolResultPart):
        return {
            "type": "tool_result",
            "tool_use_id": part.tool_call_id,
            "content": part.content,
            "is_error": part.is_error,
        }
    return None


def _to_anthropic_messages(messages: list[LLMMessage]) -> list[dict[str, Any]]:
    turns: list[dict[str, Any]] = []
    for message in messages:
        role = "assistant" if message.role == Roles.ASSISTANT else "user"
        blocks = [block for block in map(_to_block, message.parts) if block is not None]
        if not blocks:
            continue
        if turns and turns[-1]["role"] == role:
            turns[-1]["content"].extend(blocks)
        else:
            turns.append({"role": role, "content": blocks})
    return turns


def _to_anthropic_tool(tool: dict[str, Any]) -> dict[str, Any]:
    function = tool["function"]
    return {
        "name": function["name"],
        "description": function.get("description", ""),
        "input_schema": function.get("parameters") or {"type": "object", "properties": {}},
    }


class AnthropicAdapter(ProviderAdapter):
    family = ProviderFamily.ANTHROPIC

    def __init__(
        self,
        selection: ProviderSelection,
        settings: ProviderSettings,
        retry: RetrySettings | None = None,
        client: AsyncAnthropic | None = None,
    ) -> None:
        super().__init__(selection, settings, retry)
        self._client = client

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic(api_key=self.settings.api_key, base_url=self.settings.base_url, max_retries=0)
        return self._client

    def translate_request(self, request: ProviderRequest) -> dict[str, Any]:
        self.check_content(request)
        system = "\n\n".join(message.content for message in request.messages if message.role == Roles.SYSTEM)
        conversation = from_first_user_turn([message for message in request.messages if message.role != Roles.SYSTEM])
        native: dict[str, Any] = {
            "model": request.selection.model,
            "max_tokens": request.max_output_tokens,
            "messages": _to_anthropic_messages(conversation),
        }
        if system:
            native["system"] = system
        if request.tools:
            native["tools"] = [_to_anthropic_tool(tool) for tool in request.tools]
        if self.settings.temperature is not None:
            native["temperature"] = self.settings.temperature
        if self.supports(Capability.STREAMING):
            native["stream"] = True
        return native

    async def _open(self, native: dict[str, Any]) -> Any:
        return await self.client.messages.create(**native)

    async def _read(self, handle: Any) -> AsyncIterator[ProviderResponseEvent]:
        if self.supports(Capability.STREAMING):
            events = self._read_stream(handle)
        else:
            events = self._read_message(handle)
        async for event in events:
            yield event

    async def _read_stream(self, stream: Any) -> AsyncIterator[ProviderResponseEvent]:
        tool_blocks: dict[int, dict[str, str]] = {}
        stop_reason = None
        usage = Usage()
        async for event in stream:
            match event.type:
                case "message_start":
                    usage = Usage(input_tokens=event.message.usage.input_tokens)
                case "content_block_start":
                    if event.content_block.type == "tool_use":
                        tool_blocks[event.index] = {
                            "id": event.content_block.id,
                            "name": event.content_block.name,
                            "arguments": "",
                        }
                case "content_block_delta":
                    if event.delta.type == "text_delta":
                        yield TextDelta(text=event.delta.text)
                    elif event.delta.type == "input_json_delta":
                        tool_blocks[event.index]["arguments"] += event.delta.partial_json
                case "message_delta":
                    stop_reason = event.delta.stop_reason
                    usage = Usage(input_tokens=usage.input_tokens, output_tokens=event.usage.output_tokens)
        tool_calls = [
            (block["id"], block["name"], decode_arguments(block["arguments"]))
            for _, block in sorted(tool_blocks.items())
        ]
        for terminal in self._terminal_events(stop_reason, tool_calls, usage):
            yield terminal

    async def _read_message(self, message: Any) -> AsyncIterator[ProviderResponseEvent]:
        usage = Usage(input_tokens=message.usage.input_tokens, output_tokens=message.usage.output_tokens)
        tool_calls = []
        for block in message.content:
            if block.type == "text" and block.text:
                yield TextDelta(text=block.text)
            elif block.type == "tool_use":
                tool_calls.append((block.id, block.name, dict(block.input or {})))
        for terminal in self._terminal_events(message.stop_reason, tool_calls, usage):
            yield terminal

    def _terminal_events(
        self, stop_reason: str | None, tool_calls: list[tuple[str, str, dict[str, Any]]], usage: Usage
    ) -> list[ProviderResponseEvent]:
        if stop_reason == "refusal":
            raise ContentFiltered("stop_reason=refusal")
        if not tool_calls:
            return [Completed(finish_reason=STOP_REASONS.get(stop_reason or "", stop_reason or "stop"), usage=usage)]
        return [
            ToolCallRequested(
                id=call_id,
                name=name,
                arguments=arguments,
                usage=usage if index == len(tool_calls) - 1 else None,
            )
            for index, (call_id, name, arguments) in enumerate(tool_calls)
        ]

    async def _close(self, handle: Any) -> None:
        if self.supports(Capability.STREAMING):
            await handle.close()

    def map_error(self, error: Exception) -> ProviderError:
        detail = str(error)
        if isinstance(error, anthropic.APIConnectionError):
            return ProviderUnavailable(detail)
        if isinstance(error, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
            return AuthenticationFailed(detail)
        if isinstance(error, anthropic.RateLimitError):
            return RateLimited(detail, retry_after=retry_after_from_headers(error.response.headers))
        if isinstance(error, anthropic.BadRequestError):
            if "prompt is too long" in detail:
                return ContextLengthExceeded(detail)
            return UnknownProviderError(detail)
        if isinstance(error, anthropic.APIStatusError):
            if error.status_code >= 500 or error.status_code == 408 or "overloaded" in detail:
                return ProviderUnavailable(detail)
        return UnknownProviderError(detail)
