"""
Provider adapter abstraction.

A 'ProviderAdapter' is the translation layer between the normalized
'ProviderRequest' / event contract and one provider family's native API.
Concrete adapters implement four hooks:

    'translate_request' - normalized request -> native request dict
    '_open'             - issue the network call, return a stream or response handle
    '_read'             - turn that handle into 'ProviderResponseEvent's
    'map_error'         - turn any SDK / transport exception into a 'ProviderError'

Everything else is shared: bounded retries with backoff for rate limiting and
unavailability (only before the first event, so nothing is ever emitted twice),
normalization of every exception into a terminal 'Failed' event, closing the
native stream, and cancellation through 'Invocation'.
"""

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, AsyncIterator
from typing import Any, ClassVar

from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from llm_switchboard.errors import ErrorKind, ProviderError, UnsupportedContentKind
from llm_switchboard.events import Failed, ProviderResponseEvent
from llm_switchboard.llms.base import (
    Capability,
    LLMMessage,
    ProviderFamily,
    ProviderRequest,
    ProviderSelection,
    Roles,
)
from llm_switchboard.llms.invocation import Invocation
from llm_switchboard.settings import ProviderSettings, RetrySettings


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.retryable


def decode_arguments(raw: str | None) -> dict[str, Any]:
    """Parse JSON tool arguments; malformed input is kept under '_raw' for the tool to reject."""
    if not raw:
        return {}
    try:
        arguments = json.loads(raw)
    except json.JSONDecodeError:
        return {"_raw": raw}
    return arguments if isinstance(arguments, dict) else {"_raw": raw}


class ProviderAdapter(ABC):
    """
    Abstract base class for provider adapters.

    One adapter instance serves one turn: 'cancel()' acts on the invocation
    most recently started through 'invoke()'.

    Attributes:
        selection: Provider family and model this adapter calls.
        settings: Credentials, context size and capability flags for the family.
        retry: Retry policy for rate-limited / unavailable calls.
    """

    family: ClassVar[ProviderFamily]
    native_capabilities: ClassVar[frozenset[Capability]] = frozenset(
        {Capability.COMPLETION, Capability.STREAMING, Capability.TOOL_INVOCATION, Capability.VISION_INPUT}
    )

    def __init__(
        self,
        selection: ProviderSelection,
        settings: ProviderSettings,
        retry: RetrySettings | None = None,
    ) -> None:
        self.selection = selection
        self.settings = settings
        self.retry = retry or RetrySettings()
        self._active: Invocation | None = None
        self._exponential = wait_exponential(multiplier=self.retry.initial_backoff, max=self.retry.max_backoff)

    @property
    def model(self) -> str:
        return self.selection.model

    @property
    def capabilities(self) -> frozenset[Capability]:
        """What this adapter can do with the configured model."""
        disabled = set()
        if not self.settings.streaming:
            disabled.add(Capability.STREAMING)
        if not self.settings.vision:
            disabled.add(Capability.VISION_INPUT)
        if not self.settings.tools:
            disabled.add(Capability.TOOL_INVOCATION)
        return self.native_capabilities - disabled

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    @property
    def max_output_tokens(self) -> int:
        return self.selection.max_output_tokens or self.settings.reserved_output_tokens

    @property
    def max_context_tokens(self) -> int:
        return self.selection.max_context_tokens or self.settings.max_context_tokens

    @abstractmethod
    def translate_request(self, request: ProviderRequest) -> dict[str, Any]:
        """Return the native request for 'request'; raise 'UnsupportedContentKind' if it cannot be expressed."""
        pass

    @abstractmethod
    async def _open(self, native: dict[str, Any]) -> Any:
        """Issue the network call and return the native stream or response."""
        pass

    @abstractmethod
    def _read(self, handle: Any) -> AsyncIterator[ProviderResponseEvent]:
        """Yield normalized events from the native stream or response."""
        pass

    @abstractmethod
    def map_error(self, error: Exception) -> ProviderError:
        """Map an SDK or transport exception to exactly one 'ProviderError' kind."""
        pass

    async def _close(self, handle: Any) -> None:
        """Release the native stream. Batch responses need nothing."""
        return None

    def check_content(self, request: ProviderRequest) -> None:
        """Raise 'UnsupportedContentKind' for content parts the configured model cannot take."""
        if request.tools and not self.supports(Capability.TOOL_INVOCATION):
            raise UnsupportedContentKind(f"{self.family}/{self.model} does not support tool invocation")
        for message in request.messages:
            if message.images and not self.supports(Capability.VISION_INPUT):
                raise UnsupportedContentKind(f"{self.family}/{self.model} does not accept image input")
            if (message.tool_calls or message.tool_results) and not self.supports(Capability.TOOL_INVOCATION):
                raise UnsupportedContentKind(f"{self.family}/{self.model} cannot replay tool calls")

    def invoke(
        self,
        native: dict[str, Any],
        *,
        call_timeout: float | None = None,
        turn_deadline: float | None = None,
    ) -> Invocation:
        """Start a call. Nothing is sent until the returned invocation is iterated."""
        invocation = Invocation(self._produce(native), call_timeout=call_timeout, turn_deadline=turn_deadline)
        self._active = invocation
        return invocation

    def cancel(self) -> None:
        if self._active is not None:
            self._active.cancel()

    async def _produce(self, native: dict[str, Any]) -> AsyncGenerator[ProviderResponseEvent, None]:
        handle = None
        try:
            handle = await self._open_with_retry(native)
            async for event in self._read(handle):
                yield event
        except ProviderError as error:
            self._log_failure(error)
            yield Failed.from_error(error)
        except Exception as exc:
            error = self.map_error(exc)
            self._log_failure(error)
            yield Failed.from_error(error)
        finally:
            if handle is not None:
                await self._close(handle)

    async def _open_with_retry(self, native: dict[str, Any]) -> Any:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.retry.max_attempts),
            wait=self._backoff,
            before_sleep=self._log_retry,
            reraise=True,
        ):
            with attempt:
                return await self._open_mapped(native)
        raise ProviderError("retries exhausted")

    async def _open_mapped(self, native: dict[str, Any]) -> Any:
        try:
            return await self._open(native)
        except ProviderError:
            raise
        except Exception as exc:
            raise self.map_error(exc) from exc

    def _backoff(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        hint = getattr(error, "retry_after", None) or 0.0
        return min(max(self._exponential(retry_state), hint), self.retry.max_backoff)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"{self.family}/{self.model}: attempt {retry_state.attempt_number} failed with "
            f"{getattr(error, 'kind', ErrorKind.UNKNOWN)}, retrying"
        )

    def _log_failure(self, error: ProviderError) -> None:
        if error.kind == ErrorKind.CONTEXT_LENGTH_EXCEEDED:
            logger.error(f"{self.family}/{self.model} rejected the context window as too long: {error.detail}")
        else:
            logger.warning(f"{self.family}/{self.model} call failed ({error.kind})")
            logger.debug(f"Raw provider error: {error.detail}")


def retry_after_from_headers(headers: Any) -> float | None:
    """Read a 'retry-after' header given in seconds."""
    if headers is None:
        return None
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def from_first_user_turn(messages: list[LLMMessage]) -> list[LLMMessage]:
    """Drop the messages before the first user message, for APIs that must open with a user turn."""
    for index, message in enumerate(messages):
        if message.role == Roles.USER:
            return messages[index:]
    return []
