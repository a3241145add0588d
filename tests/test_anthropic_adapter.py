"""Tests for the Anthropic-style adapter."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, cast

import anthropic
import httpx
import pytest
from anthropic import AsyncAnthropic

from llm_switchboard.errors import ErrorKind
from llm_switchboard.events import Completed, Failed, TextDelta, ToolCallRequested
from llm_switchboard.llms.anthropic import AnthropicAdapter
from llm_switchboard.llms.base import (
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

SELECTION = ProviderSelection(family=ProviderFamily.ANTHROPIC, model="claude-test")
REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


class _FakeStream:
    def __init__(self, events: list[Any]) -> None:
        self._iterator = iter(events)
        self.closed = False

    def __aiter__(self) -> "_FakeStream":
        return self

    async def __anext__(self) -> Any:
        try:
            return next(self._iterator)
        except StopIteration as exc:
            raise StopAsyncIteration from exc

    async def close(self) -> None:
        self.closed = True


class _FakeMessages:
    def __init__(self, responses: list[Any]) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _adapter(*responses: Any, **settings: Any) -> tuple[AnthropicAdapter, _FakeMessages]:
    messages = _FakeMessages(list(responses))
    adapter = AnthropicAdapter(
        SELECTION,
        ProviderSettings(**settings),
        RetrySettings(max_attempts=1),
        client=cast(AsyncAnthropic, SimpleNamespace(messages=messages)),
    )
    return adapter, messages


def _event(event_type: str, **fields: Any) -> SimpleNamespace:
    return SimpleNamespace(type=event_type, **fields)


def _message_start(input_tokens: int = 10) -> SimpleNamespace:
    return _event("message_start", message=SimpleNamespace(usage=SimpleNamespace(input_tokens=input_tokens)))


def _text_delta(index: int, text: str) -> SimpleNamespace:
    return _event("content_block_delta", index=index, delta=SimpleNamespace(type="text_delta", text=text))


def _message_delta(stop_reason: str, output_tokens: int = 4) -> SimpleNamespace:
    return _event(
        "message_delta",
        delta=SimpleNamespace(stop_reason=stop_reason),
        usage=SimpleNamespace(output_tokens=output_tokens),
    )


def _request(*messages: LLMMessage, tools: list[dict[str, Any]] | None = None) -> ProviderRequest:
    return ProviderRequest(selection=SELECTION, messages=list(messages), max_output_tokens=64, tools=tools or [])


async def _collect(adapter: AnthropicAdapter, request: ProviderRequest) -> list[Any]:
    return [event async for event in adapter.invoke(adapter.translate_request(request))]


class TestTranslation:
    def test_system_prompt_is_lifted_and_tool_results_merge_into_user_turns(self) -> None:
        adapter, _ = _adapter()
        request = _request(
            LLMMessage.from_text(Roles.SYSTEM, "be brief"),
            LLMMessage.from_text(Roles.USER, "search x"),
            LLMMessage(
                role=Roles.ASSISTANT,
                parts=[TextPart(text="on it"), ToolCallPart(id="t1", name="search", arguments={"q": "x"})],
            ),
            LLMMessage(role=Roles.TOOL, parts=[ToolResultPart(tool_call_id="t1", name="search", content="r")]),
            LLMMessage.from_text(Roles.USER, "thanks"),
        )

        native = adapter.translate_request(request)

        assert native["system"] == "be brief"
        assert native["max_tokens"] == 64
        assert [turn["role"] for turn in native["messages"]] == ["user", "assistant", "user"]
        assert native["messages"][1]["content"][1] == {
            "type": "tool_use",
            "id": "t1",
            "name": "search",
            "input": {"q": "x"},
        }
        merged = native["messages"][2]["content"]
        assert merged[0]["type"] == "tool_result"
        assert merged[0]["tool_use_id"] == "t1"
        assert merged[1] == {"type": "text", "text": "thanks"}

    def test_leading_assistant_turns_are_skipped(self) -> None:
        adapter, _ = _adapter()
        request = _request(
            LLMMessage.from_text(Roles.SYSTEM, "be brief"),
            LLMMessage(role=Roles.ASSISTANT, parts=[ToolCallPart(id="t0", name="search", arguments={})]),
            LLMMessage(role=Roles.TOOL, parts=[ToolResultPart(tool_call_id="t0", name="search", content="r")]),
            LLMMessage.from_text(Roles.ASSISTANT, "earlier answer"),
            LLMMessage.from_text(Roles.USER, "next question"),
        )

        native = adapter.translate_request(request)

        assert native["messages"] == [{"role": "user", "content": [{"type": "text", "text": "next question"}]}]

    def test_tools_and_images_use_native_shapes(self) -> None:
        adapter, _ = _adapter()
        tools = [
            {
                "type": "function",
                "function": {"name": "search", "description": "Search.", "parameters": {"type": "object"}},
            }
        ]
        request = _request(
            LLMMessage(role=Roles.USER, parts=[ImagePart(media_type="image/jpeg", data="abc")]), tools=tools
        )

        native = adapter.translate_request(request)

        assert native["tools"] == [{"name": "search", "description": "Search.", "input_schema": {"type": "object"}}]
        assert native["messages"][0]["content"][0]["source"] == {
            "type": "base64",
            "media_type": "image/jpeg",
            "data": "abc",
        }


class TestStreaming:
    @pytest.mark.asyncio
    async def test_text_stream(self) -> None:
        stream = _FakeStream(
            [
                _message_start(11),
                _event("content_block_start", index=0, content_block=SimpleNamespace(type="text")),
                _text_delta(0, "Hi"),
                _text_delta(0, " there"),
                _event("content_block_stop", index=0),
                _message_delta("end_turn", 2),
                _event("message_stop"),
            ]
        )
        adapter, _ = _adapter(stream)

        events = await _collect(adapter, _request(LLMMessage.from_text(Roles.USER, "hello")))

        assert [event.text for event in events if isinstance(event, TextDelta)] == ["Hi", " there"]
        assert isinstance(events[-1], Completed)
        assert events[-1].finish_reason == "stop"
        assert events[-1].usage.input_tokens == 11
        assert events[-1].usage.output_tokens == 2
        assert stream.closed

    @pytest.mark.asyncio
    async def test_tool_use_stream(self) -> None:
        block = SimpleNamespace(type="tool_use", id="toolu_1", name="search")
        stream = _FakeStream(
            [
                _message_start(),
                _event("content_block_start", index=0, content_block=block),
                _event("content_block_delta", index=0, delta=SimpleNamespace(type="input_json_delta", partial_json='{"q"')),
                _event("content_block_delta", index=0, delta=SimpleNamespace(type="input_json_delta", partial_json=': "x"}')),
                _message_delta("tool_use"),
            ]
        )
        adapter, _ = _adapter(stream)

        events = await _collect(adapter, _request(LLMMessage.from_text(Roles.USER, "hello")))

        assert len(events) == 1
        assert isinstance(events[0], ToolCallRequested)
        assert (events[0].id, events[0].name, events[0].arguments) == ("toolu_1", "search", {"q": "x"})

    @pytest.mark.asyncio
    async def test_refusal_is_content_filtered(self) -> None:
        adapter, _ = _adapter(_FakeStream([_message_start(), _message_delta("refusal")]))

        events = await _collect(adapter, _request(LLMMessage.from_text(Roles.USER, "hello")))

        assert isinstance(events[-1], Failed)
        assert events[-1].kind == ErrorKind.CONTENT_FILTERED


class TestBatch:
    @pytest.mark.asyncio
    async def test_message_response(self) -> None:
        message = SimpleNamespace(
            usage=SimpleNamespace(input_tokens=3, output_tokens=5),
            stop_reason="max_tokens",
            content=[SimpleNamespace(type="text", text="cut short")],
        )
        adapter, messages = _adapter(message, streaming=False)

        events = await _collect(adapter, _request(LLMMessage.from_text(Roles.USER, "hello")))

        assert "stream" not in messages.calls[0]
        assert events[0] == TextDelta(text="cut short")
        assert events[-1].finish_reason == "length"


class TestErrorMapping:
    def test_sdk_errors_map_to_one_kind_each(self) -> None:
        adapter, _ = _adapter()
        cases = [
            (anthropic.APIConnectionError(request=REQUEST), ErrorKind.PROVIDER_UNAVAILABLE),
            (
                anthropic.AuthenticationError("bad key", response=httpx.Response(401, request=REQUEST), body=None),
                ErrorKind.AUTHENTICATION_FAILED,
            ),
            (
                anthropic.BadRequestError(
                    "prompt is too long: 210000 tokens > 200000 maximum",
                    response=httpx.Response(400, request=REQUEST),
                    body=None,
                ),
                ErrorKind.CONTEXT_LENGTH_EXCEEDED,
            ),
            (
                anthropic.APIStatusError("Overloaded", response=httpx.Response(529, request=REQUEST), body=None),
                ErrorKind.PROVIDER_UNAVAILABLE,
            ),
            (RuntimeError("odd"), ErrorKind.UNKNOWN),
        ]

        for error, kind in cases:
            assert adapter.map_error(error).kind == kind

    def test_rate_limit_carries_retry_after(self) -> None:
        adapter, _ = _adapter()
        response = httpx.Response(429, headers={"retry-after": "2"}, request=REQUEST)

        mapped = adapter.map_error(anthropic.RateLimitError("slow down", response=response, body=None))

        assert mapped.kind == ErrorKind.RATE_LIMITED
        assert mapped.retry_after == 2.0

    @pytest.mark.asyncio
    async def test_authentication_failure_surfaces_as_failed_event(self) -> None:
        error = anthropic.AuthenticationError("bad key", response=httpx.Response(401, request=REQUEST), body=None)
        adapter, _ = _adapter(error)

        events = await _collect(adapter, _request(LLMMessage.from_text(Roles.USER, "hello")))

        assert len(events) == 1
        assert events[0].kind == ErrorKind.AUTHENTICATION_FAILED
        assert "bad key" not in events[0].message
