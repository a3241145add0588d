"""
A single, non-restartable provider call seen as an async event stream.

'Invocation' wraps the async generator an adapter produces for one call and
adds the two things every consumer needs regardless of provider: cooperative
cancellation and deadlines. Waiting for the next event races against the
cancel signal and the nearest deadline, so a stalled network read never blocks
cancellation. Once cancelled or timed out the underlying generator is closed
(which closes the provider stream) and the invocation ends with a single
terminal 'Failed' event:

    cancel()              -> Failed(CANCELLED)
    per-call deadline     -> Failed(PROVIDER_UNAVAILABLE)
    whole-turn deadline   -> Failed(TIMEOUT_EXCEEDED)

Events already yielded stay valid; no further events are produced afterwards.
"""

import asyncio
import contextlib
from collections.abc import AsyncIterator

from loguru import logger

from llm_switchboard.errors import ErrorKind
from llm_switchboard.events import Completed, Failed, ProviderResponseEvent


class Invocation:
    """
    Attributes:
        call_timeout: Seconds allowed for the whole call, measured from the first
            '__anext__'. 'None' disables the per-call deadline.
        turn_deadline: Absolute event-loop time ('loop.time()') at which the
            surrounding turn runs out of time. 'None' disables it.
    """

    def __init__(
        self,
        events: AsyncIterator[ProviderResponseEvent],
        *,
        call_timeout: float | None = None,
        turn_deadline: float | None = None,
    ) -> None:
        self._events = events
        self.call_timeout = call_timeout
        self.turn_deadline = turn_deadline
        self._call_deadline: float | None = None
        self._cancel_requested = asyncio.Event()
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    def cancel(self) -> None:
        """Request cancellation. Safe to call any number of times."""
        if not self._finished:
            self._cancel_requested.set()

    def __aiter__(self) -> "Invocation":
        return self

    async def __anext__(self) -> ProviderResponseEvent:
        if self._finished:
            raise StopAsyncIteration
        if self._cancel_requested.is_set():
            return await self._terminate(ErrorKind.CANCELLED)

        now = asyncio.get_running_loop().time()
        if self._call_deadline is None and self.call_timeout is not None:
            self._call_deadline = now + self.call_timeout
        timeout, timeout_kind = self._nearest_deadline(now)

        next_event = asyncio.ensure_future(anext(self._events))
        cancel_wait = asyncio.ensure_future(self._cancel_requested.wait())
        try:
            done, _ = await asyncio.wait(
                {next_event, cancel_wait}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            await self._abandon(next_event)
            self._finished = True
            raise
        finally:
            cancel_wait.cancel()

        if next_event in done:
            try:
                event = next_event.result()
            except StopAsyncIteration:
                self._finished = True
                raise
            if isinstance(event, (Completed, Failed)):
                self._finished = True
                await self._close_source()
            return event

        await self._abandon(next_event)
        if self._cancel_requested.is_set():
            return await self._terminate(ErrorKind.CANCELLED)
        logger.warning(f"Provider call hit its {timeout_kind} deadline")
        return await self._terminate(timeout_kind or ErrorKind.PROVIDER_UNAVAILABLE)

    def _nearest_deadline(self, now: float) -> tuple[float | None, ErrorKind | None]:
        candidates = []
        if self._call_deadline is not None:
            candidates.append((self._call_deadline - now, ErrorKind.PROVIDER_UNAVAILABLE))
        if self.turn_deadline is not None:
            candidates.append((self.turn_deadline - now, ErrorKind.TIMEOUT_EXCEEDED))
        if not candidates:
            return None, None
        remaining, kind = min(candidates, key=lambda candidate: candidate[0])
        return max(0.0, remaining), kind

    async def _abandon(self, pending: "asyncio.Future[ProviderResponseEvent]") -> None:
        pending.cancel()
        with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
            await pending
        await self._close_source()

    async def _close_source(self) -> None:
        aclose = getattr(self._events, "aclose", None)
        if aclose is not None:
            await aclose()

    async def _terminate(self, kind: ErrorKind) -> Failed:
        self._finished = True
        await self._close_source()
        return Failed.of(kind)
