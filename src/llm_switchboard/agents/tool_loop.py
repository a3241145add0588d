"""
Tool-call loop controller.

'ToolLoopController' drives one turn against one provider adapter as an
explicit state machine:

    AWAITING_MODEL -> MODEL_RESPONDED -> EXECUTING_TOOL -> AWAITING_MODEL ...
                                      -> FINALIZING -> DONE

After each model response the terminal event decides what happens next. A
response ending in tool calls has every call executed in order, the results
appended to the request, and the model invoked again. A 'Completed' response
finalizes the turn. Tool failures are folded into the conversation as error
results so the model can recover; they never end the turn.

The loop is flat rather than recursive, so the iteration ceiling is a plain
counter: at most 'iteration_ceiling' provider calls are made. When the last
allowed call still asks for tools, those calls are answered with "not
executed" error results and the turn is finalized with a
'loop_limit_exceeded' warning.

Every finished step is announced as a 'MessageReady' event for the caller to
persist; provider events are passed through unchanged and in order.
"""

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from enum import StrEnum
from typing import Literal

from loguru import logger
from pydantic import BaseModel

from llm_switchboard.conversation_database.data_models.message import MessageMetadata
from llm_switchboard.errors import ErrorKind, ProviderError, ToolExecutionFailed
from llm_switchboard.events import Completed, Failed, TextDelta, ToolCallRequested, TurnWarning, Usage
from llm_switchboard.llms.adapter import ProviderAdapter
from llm_switchboard.llms.base import LLMMessage, ProviderRequest, Roles, TextPart, ToolCallPart, ToolResultPart
from llm_switchboard.settings import LoopSettings
from llm_switchboard.tools.executor import ToolExecutor

NOT_EXECUTED = "Not executed: the tool-call limit for this turn was reached."


class LoopState(StrEnum):
    AWAITING_MODEL = "awaiting_model"
    MODEL_RESPONDED = "model_responded"
    EXECUTING_TOOL = "executing_tool"
    FINALIZING = "finalizing"
    DONE = "done"


class MessageReady(BaseModel):
    """A completed step of the turn (assistant reply or tool result) to persist."""

    type: Literal["message_ready"] = "message_ready"
    message: LLMMessage
    metadata: MessageMetadata


LoopEvent = TextDelta | ToolCallRequested | Completed | Failed | TurnWarning | MessageReady


class ToolLoopController:
    """
    Runs the model/tool cycle for a single turn.

    A controller is single-use: 'run()' may be consumed once. 'cancel()' may be
    called from the consumer at any time, any number of times.

    Attributes:
        state: Current 'LoopState'.
        provider_calls: Number of provider invocations started so far.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        executor: ToolExecutor | None = None,
        settings: LoopSettings | None = None,
    ) -> None:
        self.adapter = adapter
        self.executor = executor
        self.settings = settings or LoopSettings()
        self.state = LoopState.AWAITING_MODEL
        self.provider_calls = 0
        self._started = False
        self._cancel_requested = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested.is_set()

    def cancel(self) -> None:
        if self.state == LoopState.DONE or self._cancel_requested.is_set():
            return
        logger.info(f"Cancelling tool loop in state {self.state}")
        self._cancel_requested.set()
        self.adapter.cancel()

    async def run(self, request: ProviderRequest) -> AsyncGenerator[LoopEvent, None]:
        if self._started:
            raise RuntimeError("ToolLoopController.run() can only be consumed once")
        self._started = True
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.turn_timeout if self.settings.turn_timeout else None
        messages = list(request.messages)

        try:
            while True:
                if self.cancelled:
                    yield Failed.of(ErrorKind.CANCELLED)
                    return
                try:
                    native = self.adapter.translate_request(request.with_messages(messages))
                except ProviderError as error:
                    logger.warning(f"Request could not be translated for {self.adapter.family}: {error.detail}")
                    yield Failed.from_error(error)
                    return

                self.provider_calls += 1
                logger.debug(f"Tool loop: provider call {self.provider_calls}/{self.settings.iteration_ceiling}")
                text = ""
                tool_calls: list[ToolCallRequested] = []
                terminal: Completed | Failed | None = None
                invocation = self.adapter.invoke(
                    native, call_timeout=self.settings.call_timeout, turn_deadline=deadline
                )
                async for event in invocation:
                    if isinstance(event, TextDelta):
                        text += event.text
                        yield event
                    elif isinstance(event, ToolCallRequested):
                        tool_calls.append(event)
                        yield event
                    else:
                        terminal = event
                self.state = LoopState.MODEL_RESPONDED

                if terminal is None and not tool_calls:
                    terminal = Failed.of(ErrorKind.UNKNOWN)

                if isinstance(terminal, Failed):
                    async for event in self._fail(terminal, text):
                        yield event
                    return

                if isinstance(terminal, Completed):
                    self.state = LoopState.FINALIZING
                    final = LLMMessage(role=Roles.ASSISTANT, parts=[TextPart(text=text)] if text else [])
                    yield MessageReady(message=final, metadata=self._metadata(terminal.finish_reason, terminal.usage))
                    yield terminal
                    return

                assistant = LLMMessage(
                    role=Roles.ASSISTANT,
                    parts=([TextPart(text=text)] if text else [])
                    + [ToolCallPart(id=call.id, name=call.name, arguments=call.arguments) for call in tool_calls],
                )
                usage = tool_calls[-1].usage or Usage()
                messages.append(assistant)
                yield MessageReady(message=assistant, metadata=self._metadata("tool_calls", usage))

                if self.provider_calls >= self.settings.iteration_ceiling:
                    self.state = LoopState.FINALIZING
                    logger.warning(
                        f"Tool loop reached its ceiling of {self.settings.iteration_ceiling} provider calls"
                    )
                    for call in tool_calls:
                        result = self._tool_message(call, NOT_EXECUTED, True)
                        yield MessageReady(message=result, metadata=self._metadata(None, None))
                    yield TurnWarning(
                        kind=ErrorKind.LOOP_LIMIT_EXCEEDED,
                        message=f"Stopped after {self.provider_calls} model calls that all requested tools.",
                    )
                    yield Completed(finish_reason="loop_limit", usage=usage)
                    return

                self.state = LoopState.EXECUTING_TOOL
                timed_out = False
                for call in tool_calls:
                    result, failure = await self._execute(call, deadline)
                    messages.append(result)
                    yield MessageReady(message=result, metadata=self._metadata(None, None))
                    if failure == ErrorKind.CANCELLED:
                        yield Failed.of(ErrorKind.CANCELLED)
                        return
                    if failure == ErrorKind.TOOL_EXECUTION_FAILED:
                        yield TurnWarning(kind=failure, message=f"Tool '{call.name}' failed; the model was told why.")
                    elif failure == ErrorKind.TIMEOUT_EXCEEDED:
                        timed_out = True
                        break

                if timed_out:
                    self.state = LoopState.FINALIZING
                    yield TurnWarning(kind=ErrorKind.TIMEOUT_EXCEEDED, message=ErrorKind.TIMEOUT_EXCEEDED.summary)
                    yield Completed(finish_reason="timeout", usage=usage)
                    return
                self.state = LoopState.AWAITING_MODEL
        finally:
            self.state = LoopState.DONE

    async def _fail(self, failure: Failed, text: str) -> AsyncGenerator[LoopEvent, None]:
        """Persist partial text as incomplete, then end with 'failure' (or finalize on turn timeout)."""
        timed_out = failure.kind == ErrorKind.TIMEOUT_EXCEEDED
        if text:
            partial = LLMMessage.from_text(Roles.ASSISTANT, text)
            finish_reason = "timeout" if timed_out else str(failure.kind)
            yield MessageReady(message=partial, metadata=self._metadata(finish_reason, None, incomplete=True))
        if timed_out:
            self.state = LoopState.FINALIZING
            yield TurnWarning(kind=ErrorKind.TIMEOUT_EXCEEDED, message=ErrorKind.TIMEOUT_EXCEEDED.summary)
            yield Completed(finish_reason="timeout")
        else:
            yield failure

    async def _execute(
        self, call: ToolCallRequested, deadline: float | None
    ) -> tuple[LLMMessage, ErrorKind | None]:
        if self.executor is None:
            return self._tool_message(call, "No tools are available in this conversation.", True), (
                ErrorKind.TOOL_EXECUTION_FAILED
            )

        loop = asyncio.get_running_loop()
        timeouts = [self.settings.tool_timeout] if self.settings.tool_timeout else []
        if deadline is not None:
            timeouts.append(max(0.0, deadline - loop.time()))
        timeout = min(timeouts) if timeouts else None

        logger.info(f"Executing tool '{call.name}'")
        task = asyncio.ensure_future(self.executor.execute(call.name, call.arguments))
        cancel_wait = asyncio.ensure_future(self._cancel_requested.wait())
        try:
            done, _ = await asyncio.wait({task, cancel_wait}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()

        if task not in done:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, ToolExecutionFailed):
                await task
            if self.cancelled:
                return self._tool_message(call, "Cancelled.", True), ErrorKind.CANCELLED
            if deadline is not None and loop.time() >= deadline:
                return self._tool_message(call, "Not completed: the turn ran out of time.", True), (
                    ErrorKind.TIMEOUT_EXCEEDED
                )
            logger.warning(f"Tool '{call.name}' timed out after {timeout}s")
            return self._tool_message(call, f"Tool timed out after {timeout} seconds.", True), (
                ErrorKind.TOOL_EXECUTION_FAILED
            )

        try:
            result = task.result()
        except ToolExecutionFailed as error:
            logger.warning(str(error))
            return self._tool_message(call, f"Error: {error.detail}", True), ErrorKind.TOOL_EXECUTION_FAILED
        return self._tool_message(call, result.content, False), None

    @staticmethod
    def _tool_message(call: ToolCallRequested, content: str, is_error: bool) -> LLMMessage:
        return LLMMessage(
            role=Roles.TOOL,
            parts=[ToolResultPart(tool_call_id=call.id, name=call.name, content=content, is_error=is_error)],
        )

    def _metadata(
        self, finish_reason: str | None, usage: Usage | None, incomplete: bool = False
    ) -> MessageMetadata:
        return MessageMetadata(
            provider=self.adapter.family,
            model=self.adapter.model,
            input_tokens=usage.input_tokens if usage else None,
            output_tokens=usage.output_tokens if usage else None,
            finish_reason=finish_reason,
            incomplete=incomplete,
        )
