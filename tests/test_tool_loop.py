"""Tests for the tool-call loop controller."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from helpers import HANG, SELECTION, FakeToolExecutor, ScriptedAdapter, text_response, tool_response

from llm_switchboard.agents.tool_loop import LoopState, MessageReady, ToolLoopController
from llm_switchboard.errors import AuthenticationFailed, ErrorKind
from llm_switchboard.events import Completed, Failed, TextDelta, ToolCallRequested, TurnWarning
from llm_switchboard.llms.base import LLMMessage, ProviderRequest, Roles
from llm_switchboard.settings import LoopSettings


def _request() -> ProviderRequest:
    return ProviderRequest(
        selection=SELECTION,
        messages=[LLMMessage.from_text(Roles.USER, "find x")],
        max_output_tokens=256,
    )


async def _run(controller: ToolLoopController) -> list[Any]:
    return [event async for event in controller.run(_request())]


def _ready(events: list[Any]) -> list[MessageReady]:
    return [event for event in events if isinstance(event, MessageReady)]


@pytest.mark.asyncio
async def test_plain_answer_finalizes_after_one_call() -> None:
    adapter = ScriptedAdapter([text_response("Hel", "lo")])
    controller = ToolLoopController(adapter)

    events = await _run(controller)

    assert [event.text for event in events if isinstance(event, TextDelta)] == ["Hel", "lo"]
    assert isinstance(events[-1], Completed)
    ready = _ready(events)
    assert len(ready) == 1
    assert ready[0].message.content == "Hello"
    assert ready[0].metadata.finish_reason == "stop"
    assert controller.state == LoopState.DONE
    assert controller.provider_calls == 1


@pytest.mark.asyncio
async def test_tool_call_then_answer_produces_three_messages() -> None:
    """Tool call 'search' {q: 'x'} succeeds, the model is re-invoked and completes."""
    adapter = ScriptedAdapter([tool_response("search", {"q": "x"}), text_response("x is 42")])
    executor = FakeToolExecutor({"search": "x = 42"})
    controller = ToolLoopController(adapter, executor)

    events = await _run(controller)

    ready = _ready(events)
    assert [message.message.role for message in ready] == [Roles.ASSISTANT, Roles.TOOL, Roles.ASSISTANT]
    assert ready[0].message.tool_calls[0].name == "search"
    assert ready[0].metadata.finish_reason == "tool_calls"
    assert ready[1].message.tool_results[0].content == "x = 42"
    assert not ready[1].message.tool_results[0].is_error
    assert ready[2].message.content == "x is 42"
    assert executor.calls == [("search", {"q": "x"})]
    assert adapter.opened == 2
    assert isinstance(events[-1], Completed)

    second_request = adapter.requests[1]
    assert [message.role for message in second_request.messages] == [Roles.USER, Roles.ASSISTANT, Roles.TOOL]


@pytest.mark.asyncio
async def test_tool_failure_is_fed_back_to_the_model() -> None:
    adapter = ScriptedAdapter([tool_response("search"), text_response("sorry")])
    executor = FakeToolExecutor({"search": RuntimeError("index offline")})
    controller = ToolLoopController(adapter, executor)

    events = await _run(controller)

    result = _ready(events)[1].message.tool_results[0]
    assert result.is_error
    assert "index offline" in result.content
    warnings = [event for event in events if isinstance(event, TurnWarning)]
    assert [warning.kind for warning in warnings] == [ErrorKind.TOOL_EXECUTION_FAILED]
    assert isinstance(events[-1], Completed)
    assert adapter.opened == 2


@pytest.mark.asyncio
async def test_without_executor_tool_calls_get_error_results() -> None:
    adapter = ScriptedAdapter([tool_response("search"), text_response("ok")])
    events = await _run(ToolLoopController(adapter))

    assert _ready(events)[1].message.tool_results[0].is_error
    assert isinstance(events[-1], Completed)


@pytest.mark.asyncio
async def test_iteration_ceiling_stops_without_another_call() -> None:
    """Ceiling 3 with a provider that always requests tools: three calls, then a loop-limit warning."""
    adapter = ScriptedAdapter([tool_response("search")])
    executor = FakeToolExecutor({"search": "nothing"})
    controller = ToolLoopController(adapter, executor, LoopSettings(iteration_ceiling=3))

    events = await _run(controller)

    assert adapter.opened == 3
    assert controller.provider_calls == 3
    assert len(executor.calls) == 2
    warnings = [event for event in events if isinstance(event, TurnWarning)]
    assert warnings[-1].kind == ErrorKind.LOOP_LIMIT_EXCEEDED
    assert isinstance(events[-1], Completed)
    assert events[-1].finish_reason == "loop_limit"

    last_result = _ready(events)[-1].message
    assert last_result.role == Roles.TOOL
    assert last_result.tool_results[0].is_error
    assert "Not executed" in last_result.tool_results[0].content


@pytest.mark.asyncio
async def test_provider_calls_are_never_concurrent() -> None:
    adapter = ScriptedAdapter([tool_response("a"), tool_response("b"), text_response("done")])
    executor = FakeToolExecutor({"a": "1", "b": "2"})

    await _run(ToolLoopController(adapter, executor))

    assert adapter.opened == 3
    assert adapter.max_in_flight == 1
    assert adapter.in_flight == 0


@pytest.mark.asyncio
async def test_multiple_tool_calls_run_in_order() -> None:
    calls = [
        ToolCallRequested(id="c1", name="first", arguments={}),
        ToolCallRequested(id="c2", name="second", arguments={}),
    ]
    adapter = ScriptedAdapter([calls, text_response("done")])
    executor = FakeToolExecutor({"first": "1", "second": "2"})

    events = await _run(ToolLoopController(adapter, executor))

    assert [name for name, _ in executor.calls] == ["first", "second"]
    tool_messages = [ready.message for ready in _ready(events) if ready.message.role == Roles.TOOL]
    assert [message.tool_results[0].tool_call_id for message in tool_messages] == ["c1", "c2"]


@pytest.mark.asyncio
async def test_provider_failure_persists_partial_text_as_incomplete() -> None:
    adapter = ScriptedAdapter([[TextDelta(text="par"), TextDelta(text="tial"), Failed.of(ErrorKind.CONTENT_FILTERED)]])

    events = await _run(ToolLoopController(adapter))

    ready = _ready(events)
    assert len(ready) == 1
    assert ready[0].message.content == "partial"
    assert ready[0].metadata.incomplete
    assert isinstance(events[-1], Failed)
    assert events[-1].kind == ErrorKind.CONTENT_FILTERED


@pytest.mark.asyncio
async def test_open_failure_surfaces_without_messages() -> None:
    adapter = ScriptedAdapter([AuthenticationFailed("bad key")])

    events = await _run(ToolLoopController(adapter))

    assert _ready(events) == []
    assert len(events) == 1
    assert events[0].kind == ErrorKind.AUTHENTICATION_FAILED
    assert events[0].message == ErrorKind.AUTHENTICATION_FAILED.summary


@pytest.mark.asyncio
async def test_stream_ending_without_terminal_event_fails() -> None:
    adapter = ScriptedAdapter([[TextDelta(text="cut")]])

    events = await _run(ToolLoopController(adapter))

    assert events[-1].kind == ErrorKind.UNKNOWN
    assert _ready(events)[0].metadata.incomplete


@pytest.mark.asyncio
async def test_cancel_mid_stream_stops_the_loop() -> None:
    adapter = ScriptedAdapter([[TextDelta(text="a"), TextDelta(text="b"), HANG]])
    controller = ToolLoopController(adapter)
    events = []

    async for event in controller.run(_request()):
        events.append(event)
        if len([e for e in events if isinstance(e, TextDelta)]) == 2 and not controller.cancelled:
            controller.cancel()
            controller.cancel()

    assert _ready(events)[0].message.content == "ab"
    assert events[-1].kind == ErrorKind.CANCELLED
    assert adapter.opened == 1
    assert controller.state == LoopState.DONE
    controller.cancel()


@pytest.mark.asyncio
async def test_cancel_during_tool_execution_makes_no_further_calls() -> None:
    started = asyncio.Event()

    async def slow_tool(arguments: dict[str, Any]) -> str:
        started.set()
        await asyncio.sleep(10)
        return "late"

    adapter = ScriptedAdapter([tool_response("slow"), text_response("never")])
    controller = ToolLoopController(adapter, FakeToolExecutor({"slow": slow_tool}))

    async def cancel_when_started() -> None:
        await started.wait()
        controller.cancel()

    canceller = asyncio.create_task(cancel_when_started())
    events = await _run(controller)
    await canceller

    assert events[-1].kind == ErrorKind.CANCELLED
    assert adapter.opened == 1
    result = _ready(events)[-1].message.tool_results[0]
    assert result.is_error
    assert result.content == "Cancelled."


@pytest.mark.asyncio
async def test_slow_tool_times_out_as_tool_failure() -> None:
    async def slow_tool(arguments: dict[str, Any]) -> str:
        await asyncio.sleep(10)
        return "late"

    adapter = ScriptedAdapter([tool_response("slow"), text_response("gave up")])
    settings = LoopSettings(tool_timeout=0.05)

    events = await _run(ToolLoopController(adapter, FakeToolExecutor({"slow": slow_tool}), settings))

    result = _ready(events)[1].message.tool_results[0]
    assert result.is_error
    assert "timed out" in result.content
    assert isinstance(events[-1], Completed)
    assert events[-1].finish_reason == "stop"


@pytest.mark.asyncio
async def test_turn_timeout_finalizes_with_warning() -> None:
    adapter = ScriptedAdapter([[TextDelta(text="slow"), HANG]])
    settings = LoopSettings(turn_timeout=0.05, call_timeout=None)

    events = await _run(ToolLoopController(adapter, settings=settings))

    assert _ready(events)[0].metadata.incomplete
    warnings = [event for event in events if isinstance(event, TurnWarning)]
    assert warnings[-1].kind == ErrorKind.TIMEOUT_EXCEEDED
    assert isinstance(events[-1], Completed)
    assert events[-1].finish_reason == "timeout"


@pytest.mark.asyncio
async def test_run_can_only_be_consumed_once() -> None:
    controller = ToolLoopController(ScriptedAdapter([text_response("hi")]))
    await _run(controller)

    with pytest.raises(RuntimeError):
        await _run(controller)
