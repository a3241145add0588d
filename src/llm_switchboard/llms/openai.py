"""
OpenAI-style adapter (Chat Completions API).

Works against api.openai.com and any OpenAI-compatible server reachable through
'base_url'. With streaming enabled text deltas are forwarded as they arrive and
tool-call fragments are accumulated per index until the stream ends; without
it the whole completion is emitted at once followed by its terminal event.
"""

import json
from collections.abc import AsyncIterator
from typing import Any

import openai
from openai import AsyncOpenAI

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
from llm_switchboard.llms.adapter import ProviderAdapter, decode_arguments, retry_after_from_headers
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
)
from llm_switchboard.settings import ProviderSettings, RetrySettings


def _image_url(part: ImagePart) -> str:
    if part.url:
        return part.url
    return f"data:{part.media_type};base64,{part.data}"


def _to_openai_messages(message: LLMMessage) -> list[dict[str, Any]]:
    match message.role:
        case Roles.SYSTEM:
            return [{"role": "system", "content": message.content}]
        case Roles.USER:
            if not message.images:
                return [{"role": "user", "content": message.content}]
            content: list[dict[str, Any]] = []
            for part in message.parts:
                if isinstance(part, TextPart):
                    content.append({"type": "text", "text": part.text})
                elif isinstance(part, ImagePart):
                    content.append({"type": "image_url", "image_url": {"url": _image_url(part)}})
            return [{"role": "user", "content": content}]
        case Roles.ASSISTANT:
            native: dict[str, Any] = {"role": "assistant", "content": message.content or None}
            if message.tool_calls:
                native["tool_calls"] = [_to_openai_tool_call(call) for call in message.tool_calls]
            return [native]
        case Roles.TOOL:
            return [
                {"role": "tool", "tool_call_id": result.tool_call_id, "content": result.content}
                for result in message.tool_results
            ]
    return []


def _to_openai_tool_call(call: ToolCallPart) -> dict[str, Any]:
    return {
        "id": call.id,
        "type": "function",
        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
    }


class OpenAIAdapter(ProviderAdapter):
    family = ProviderFamily.OPENAI

    def __init__(
        self,
        selection: ProviderSelection,
        settings: ProviderSettings,
        retry: RetrySettings | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        super().__init__(selection, settings, retry)
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            # Retries are handled by the adapter so they stay bounded per turn.
            self._client = AsyncOpenAI(api_key=self.settings.api_key, base_url=self.settings.base_url, max_retries=0)
        return self._client

    def translate_request(self, request: ProviderRequest) -> dict[str, Any]:
        self.check_content(request)
        native: dict[str, Any] = {
            "model": request.selection.model,
            "messages": [native for message in request.messages for native in _to_openai_messages(message)],
            "max_completion_tokens": request.max_output_tokens,
        }
        if request.tools:
            native["tools"] = request.tools
        if self.settings.temperature is not None:
            native["temperature"] = self.settings.temperature
        if self.supports(Capability.STREAMING):
            native["stream"] = True
            native["stream_options"] = {"include_usage": True}
        return native

    async def _open(self, native: dict[str, Any]) -> Any:
        return await self.client.chat.completions.create(**native)

    async def _read(self, handle: Any) -> AsyncIterator[ProviderResponseEvent]:
        if self.supports(Capability.STREAMING):
            events = self._read_stream(handle)
        else:
            events = self._read_completion(handle)
        async for event in events:
            yield event

    async def _read_stream(self, stream: Any) -> AsyncIterator[ProviderResponseEvent]:
        tool_calls: dict[int, dict[str, str]] = {}
        finish_reason = None
        usage = Usage()
        async for chunk in stream:
            if getattr(chunk, "usage", None):
                usage = Usage(input_tokens=chunk.usage.prompt_tokens, output_tokens=chunk.usage.completion_tokens)
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta
            if delta.content:
                yield TextDelta(text=delta.content)
            for fragment in delta.tool_calls or []:
                entry = tool_calls.setdefault(fragment.index, {"id": "", "name": "", "arguments": ""})
                if fragment.id:
                    entry["id"] = fragment.id
                if fragment.function is not None:
                    entry["name"] += fragment.function.name or ""
                    entry["arguments"] += fragment.function.arguments or ""
            if choice.finish_reason:
                finish_reason = choice.finish_reason
        for event in self._terminal_events(finish_reason, [tool_calls[index] for index in sorted(tool_calls)], usage):
            yield event

    async def _read_completion(self, completion: Any) -> AsyncIterator[ProviderResponseEvent]:
        usage = Usage()
        if completion.usage is not None:
            usage = Usage(
                input_tokens=completion.usage.prompt_tokens, output_tokens=completion.usage.completion_tokens
            )
        choice = completion.choices[0]
        if choice.message.content:
            yield TextDelta(text=choice.message.content)
        tool_calls = [
            {"id": call.id, "name": call.function.name, "arguments": call.function.arguments}
            for call in choice.message.tool_calls or []
        ]
        for event in self._terminal_events(choice.finish_reason, tool_calls, usage):
            yield event

    def _terminal_events(
        self, finish_reason: str | None, tool_calls: list[dict[str, str]], usage: Usage
    ) -> list[ProviderResponseEvent]:
        if finish_reason == "content_filter":
            raise ContentFiltered("finish_reason=content_filter")
        if not tool_calls:
            return [Completed(finish_reason=finish_reason or "stop", usage=usage)]
        return [
            ToolCallRequested(
                id=call["id"],
                name=call["name"],
                arguments=decode_arguments(call["arguments"]),
                usage=usage if index == len(tool_calls) - 1 else None,
            )
            for index, call in enumerate(tool_calls)
        ]

    async def _close(self, handle: Any) -> None:
        if self.supports(Capability.STREAMING):
            await handle.close()

    def map_error(self, error: Exception) -> ProviderError:
        detail = str(error)
        if isinstance(error, openai.APIConnectionError):
            return ProviderUnavailable(detail)
        if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
            return AuthenticationFailed(detail)
        if isinstance(error, openai.RateLimitError):
            return RateLimited(detail, retry_after=retry_after_from_headers(error.response.headers))
        if isinstance(error, openai.BadRequestError):
            code = getattr(error, "code", None)
            if code == "context_length_exceeded" or "maximum context length" in detail:
                return ContextLengthExceeded(detail)
            if code in ("content_filter", "content_policy_violation"):
                return ContentFiltered(detail)
            return UnknownProviderError(detail)
        if isinstance(error, openai.APIStatusError) and (error.status_code >= 500 or error.status_code == 408):
            return ProviderUnavailable(detail)
        return UnknownProviderError(detail)
