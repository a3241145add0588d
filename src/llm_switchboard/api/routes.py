"""
HTTP surface for the conversation controller.

'build_router(controller)' returns a FastAPI 'APIRouter' exposing the turn
operations. Turns stream their events as newline-delimited JSON, one
'OutboundEvent' per line, so a client can render deltas as they arrive and
read the turn id from the 'X-Turn-Id' response header to cancel it.

Authentication is left to whatever gateway sits in front of the application.
"""

import asyncio
from collections.abc import AsyncIterator

from fastapi import APIRouter, FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from loguru import logger
from pydantic import BaseModel

from llm_switchboard.conversation_database.controller import (
    DEFAULT_CONVERSATION_TITLE,
    ConversationController,
    ConversationView,
    Turn,
)
from llm_switchboard.conversation_database.data_models.conversation import Conversation
from llm_switchboard.conversation_database.data_models.message import Message
from llm_switchboard.errors import ConversationNotFound, MessageNotFound
from llm_switchboard.events import OutboundEvent
from llm_switchboard.llms.base import ContentPart, ProviderSelection

NDJSON = "application/x-ndjson"


class ConversationInput(BaseModel):
    title: str = DEFAULT_CONVERSATION_TITLE
    system_prompt: str | None = None


class TurnInput(BaseModel):
    content: str | list[ContentPart]
    selection: ProviderSelection
    parent_id: str | None = None


class RegenerateInput(BaseModel):
    selection: ProviderSelection


class EditInput(BaseModel):
    content: str | list[ContentPart]
    selection: ProviderSelection


class ActiveLeafInput(BaseModel):
    leaf_id: str


class CancelResponse(BaseModel):
    turn_id: str
    cancelled: bool


_draining: set[asyncio.Task] = set()


def _stream(turn: Turn) -> StreamingResponse:
    """
    Stream 'turn' as NDJSON.

    The turn is consumed by its own task, so a client that disconnects only
    stops the writer: the turn is cancelled and still runs to its end, which
    persists any partial answer.
    """

    async def produce(queue: "asyncio.Queue[OutboundEvent | None]") -> None:
        try:
            async for event in turn:
                await queue.put(event)
        finally:
            await queue.put(None)

    async def lines() -> AsyncIterator[str]:
        queue: asyncio.Queue[OutboundEvent | None] = asyncio.Queue()
        producer = asyncio.create_task(produce(queue))
        _draining.add(producer)
        producer.add_done_callback(_draining.discard)
        finished = False
        try:
            while True:
                event = await queue.get()
                if event is None:
                    finished = True
                    break
                yield event.model_dump_json() + "\n"
        finally:
            if not finished:
                logger.info(f"Turn {turn.id}: client stopped reading, cancelling")
                turn.cancel()
            await asyncio.shield(producer)

    return StreamingResponse(lines(), media_type=NDJSON, headers={"X-Turn-Id": turn.id})


def _not_found(error: Exception) -> HTTPException:
    return HTTPException(status_code=404, detail=str(error))


def build_router(controller: ConversationController) -> APIRouter:
    router = APIRouter()

    @router.post("/conversations", response_model=Conversation)
    async def create_conversation(body: ConversationInput) -> Conversation:
        return await controller.create_conversation(body.title, body.system_prompt)

    @router.get("/conversations/{conversation_id}/view", response_model=ConversationView)
    async def get_view(conversation_id: str) -> ConversationView:
        try:
            return await controller.get_view(conversation_id)
        except (ConversationNotFound, MessageNotFound) as error:
            raise _not_found(error) from error

    @router.post("/conversations/{conversation_id}/turns")
    async def send_turn(conversation_id: str, body: TurnInput) -> StreamingResponse:
        try:
            turn = await controller.send_turn(conversation_id, body.content, body.selection, body.parent_id)
        except (ConversationNotFound, MessageNotFound) as error:
            raise _not_found(error) from error
        return _stream(turn)

    @router.post("/messages/{message_id}/regenerate")
    async def regenerate(message_id: str, body: RegenerateInput) -> StreamingResponse:
        try:
            turn = await controller.regenerate(message_id, body.selection)
        except MessageNotFound as error:
            raise _not_found(error) from error
        return _stream(turn)

    @router.post("/messages/{message_id}/edit")
    async def edit_turn(message_id: str, body: EditInput) -> StreamingResponse:
        try:
            turn = await controller.edit_turn(message_id, body.content, body.selection)
        except MessageNotFound as error:
            raise _not_found(error) from error
        except ValueError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        return _stream(turn)

    @router.get("/messages/{message_id}/children", response_model=list[Message])
    async def get_children(message_id: str) -> list[Message]:
        try:
            return await controller.get_children(message_id)
        except MessageNotFound as error:
            raise _not_found(error) from error

    @router.post("/turns/{turn_id}/cancel", response_model=CancelResponse)
    async def cancel_turn(turn_id: str) -> CancelResponse:
        cancelled = controller.cancel_turn(turn_id)
        if not cancelled:
            logger.debug(f"Cancel requested for unknown or finished turn {turn_id}")
        return CancelResponse(turn_id=turn_id, cancelled=cancelled)

    @router.put("/conversations/{conversation_id}/active-leaf", response_model=Conversation)
    async def switch_branch(conversation_id: str, body: ActiveLeafInput) -> Conversation:
        try:
            return await controller.switch_branch(conversation_id, body.leaf_id)
        except (ConversationNotFound, MessageNotFound) as error:
            raise _not_found(error) from error

    return router


def create_app(controller: ConversationController) -> FastAPI:
    app = FastAPI(title="llm-switchboard")
    app.include_router(build_router(controller))
    return app
