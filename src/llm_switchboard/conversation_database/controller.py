"""
Conversation controller (Facade).

'ConversationController' is the single entry point for application logic. It
coordinates the two storage repositories, the adapter factory, the token
estimators and the tool executor to run a conversation turn end to end:

    persist the user message -> build the context window for the selected
    provider -> run the tool-call loop -> persist every finished step as a node
    of the branch -> keep the conversation's active leaf on the newest node.

The turn entry points ('send_turn', 'regenerate', 'edit_turn') return a 'Turn':
a single-use async iterator of 'OutboundEvent's that can be cancelled at any
point, either directly or through 'cancel_turn(turn_id)'. History is never
mutated; regenerations and edits become sibling branches in the message tree.
"""

from collections.abc import AsyncGenerator
from typing import Any

from loguru import logger
from pydantic import BaseModel

from llm_switchboard.agents.tool_loop import MessageReady, ToolLoopController
from llm_switchboard.context.tokens import TokenEstimatorRegistry
from llm_switchboard.context.window import ContextWindowBuilder, TokenBudget
from llm_switchboard.conversation_database.data_models.conversation import Conversation, ConversationDatabase
from llm_switchboard.conversation_database.data_models.message import Message, MessageDatabase
from llm_switchboard.errors import ErrorKind, MessageNotFound
from llm_switchboard.events import BranchCreated, Failed, OutboundEvent, Persisted, TurnWarning
from llm_switchboard.llms.adapter import ProviderAdapter
from llm_switchboard.llms.base import (
    Capability,
    ContentPart,
    LLMMessage,
    ProviderRequest,
    ProviderSelection,
    Roles,
    TextPart,
)
from llm_switchboard.llms.factory import AdapterFactory
from llm_switchboard.settings import Settings
from llm_switchboard.tools.executor import ToolExecutor
from llm_switchboard.utils.database import generate_uid
from llm_switchboard.utils.time import get_current_timestamp

DEFAULT_CONVERSATION_TITLE = "New Conversation"
TITLE_LENGTH = 40


class ConversationView(BaseModel):
    """The active branch of a conversation, root first."""

    conversation: Conversation
    messages: list[Message]


class Turn:
    """
    Handle on one running turn.

    Iterate it to receive events; the iterator is finite, cannot be restarted
    and has a single consumer. 'cancel()' is idempotent and safe to call from
    another task while the turn is being consumed. The turn shows up in
    'ConversationController.active_turns' from its first iteration until it ends.
    """

    def __init__(self, turn_id: str, loop: ToolLoopController) -> None:
        self.id = turn_id
        self.loop = loop
        self._events: AsyncGenerator[OutboundEvent, None] | None = None
        self._started = False

    def _bind(self, events: AsyncGenerator[OutboundEvent, None]) -> None:
        self._events = events

    @property
    def cancelled(self) -> bool:
        return self.loop.cancelled

    def cancel(self) -> None:
        self.loop.cancel()

    def __aiter__(self) -> "Turn":
        return self

    async def __anext__(self) -> OutboundEvent:
        if self._events is None:
            raise StopAsyncIteration
        self._started = True
        return await anext(self._events)

    async def aclose(self) -> None:
        """
        Cancel the turn and run it to its end, discarding the remaining events.

        A turn that was already streaming still persists its partial answer as
        an incomplete message. A turn that never started makes no provider call.
        """
        self.cancel()
        if self._events is None:
            return
        try:
            if self._started:
                async for _ in self._events:
                    pass
        finally:
            await self._events.aclose()

    async def collect(self) -> list[OutboundEvent]:
        return [event async for event in self]


class ConversationController:
    def __init__(
        self,
        conversation_db: ConversationDatabase,
        message_db: MessageDatabase,
        settings: Settings | None = None,
        adapter_factory: AdapterFactory | None = None,
        tool_executor: ToolExecutor | None = None,
        estimators: TokenEstimatorRegistry | None = None,
    ):
        self.conversation_db = conversation_db
        self.message_db = message_db
        self.settings = settings or Settings()
        self.adapter_factory = adapter_factory or AdapterFactory(self.settings)
        self.tool_executor = tool_executor
        self.estimators = estimators or TokenEstimatorRegistry()
        self.active_turns: dict[str, Turn] = {}

    async def create_conversation(
        self, title: str = DEFAULT_CONVERSATION_TITLE, system_prompt: str | None = None
    ) -> Conversation:
        create_time = get_current_timestamp()
        conversation = await self.conversation_db.create_conversation(
            Conversation(
                id=generate_uid(),
                create_timestamp=create_time,
                update_timestamp=create_time,
                title=title,
                system_prompt=system_prompt,
            )
        )
        logger.info(f"Created conversation {conversation.id}")
        return conversation

    async def get_conversation_by_id(self, conversation_id: str) -> Conversation:
        return await self.conversation_db.get_conversation_by_id(conversation_id)

    async def get_view(self, conversation_id: str) -> ConversationView:
        conversation = await self.conversation_db.get_conversation_by_id(conversation_id)
        messages = await self._branch(conversation.active_leaf_id)
        return ConversationView(conversation=conversation, messages=messages)

    async def get_children(self, message_id: str) -> list[Message]:
        await self.message_db.get_message_by_id(message_id)
        return await self.message_db.get_children(message_id)

    async def switch_branch(self, conversation_id: str, leaf_id: str) -> Conversation:
        await self.conversation_db.get_conversation_by_id(conversation_id)
        leaf = await self.message_db.get_message_by_id(leaf_id)
        if leaf.conversation_id != conversation_id:
            raise MessageNotFound(leaf_id)
        await self.conversation_db.set_active_leaf(conversation_id, leaf_id)
        logger.info(f"Conversation {conversation_id}: active branch switched to {leaf_id}")
        return await self.conversation_db.get_conversation_by_id(conversation_id)

    def cancel_turn(self, turn_id: str) -> bool:
        """Cancel a running turn; returns False when no such turn is running."""
        turn = self.active_turns.get(turn_id)
        if turn is None:
            return False
        turn.cancel()
        return True

    async def send_turn(
        self,
        conversation_id: str,
        content: str | list[ContentPart],
        selection: ProviderSelection,
        parent_id: str | None = None,
    ) -> Turn:
        """
        Append a user message and answer it with the selected provider.

        The message is attached to 'parent_id', or to the active leaf when no
        parent is given, and is persisted before this method returns.
        """
        conversation = await self.conversation_db.get_conversation_by_id(conversation_id)
        parent_id = parent_id if parent_id is not None else conversation.active_leaf_id
        if parent_id is not None:
            parent = await self.message_db.get_message_by_id(parent_id)
            if parent.conversation_id != conversation_id:
                raise MessageNotFound(parent_id)

        parts = [TextPart(text=content)] if isinstance(content, str) else list(content)
        user_message = Message(
            id=generate_uid(),
            conversation_id=conversation_id,
            role=Roles.USER,
            parts=parts,
            create_timestamp=get_current_timestamp(),
        )
        prelude = await self._append(conversation_id, parent_id, user_message)
        await self._maybe_set_title(conversation, user_message)
        return self._start(conversation_id, user_message.id, selection, prelude)

    async def regenerate(self, message_id: str, selection: ProviderSelection) -> Turn:
        """
        Answer again from the nearest user message at or above 'message_id'.

        The new answer becomes a sibling branch of the existing ones.
        """
        chain = await self.message_db.get_ancestor_chain(message_id)
        anchor = next((message for message in chain if message.role == Roles.USER), None)
        if anchor is None:
            raise MessageNotFound(message_id)
        logger.info(f"Regenerating answer to message {anchor.id}")
        return self._start(anchor.conversation_id, anchor.id, selection, [])

    async def edit_turn(
        self, message_id: str, content: str | list[ContentPart], selection: ProviderSelection
    ) -> Turn:
        """Replace a user message with an edited sibling and answer it."""
        original = await self.message_db.get_message_by_id(message_id)
        if original.role != Roles.USER:
            raise ValueError(f"Only user messages can be edited, {message_id} is a {original.role} message")
        parts = [TextPart(text=content)] if isinstance(content, str) else list(content)
        edited = Message(
            id=generate_uid(),
            conversation_id=original.conversation_id,
            role=Roles.USER,
            parts=parts,
            create_timestamp=get_current_timestamp(),
            is_edited=True,
            override_id=original.id,
        )
        prelude = await self._append(original.conversation_id, original.parent_id, edited)
        return self._start(original.conversation_id, edited.id, selection, prelude)

    def _start(
        self,
        conversation_id: str,
        anchor_id: str,
        selection: ProviderSelection,
        prelude: list[OutboundEvent],
    ) -> Turn:
        adapter = self.adapter_factory.create(selection)
        turn = Turn(generate_uid(), ToolLoopController(adapter, self.tool_executor, self.settings.loop))
        turn._bind(self._run(turn, adapter, conversation_id, anchor_id, selection, prelude))
        logger.info(f"Turn {turn.id} created in conversation {conversation_id} ({selection.family}/{selection.model})")
        return turn

    async def _run(
        self,
        turn: Turn,
        adapter: ProviderAdapter,
        conversation_id: str,
        anchor_id: str,
        selection: ProviderSelection,
        prelude: list[OutboundEvent],
    ) -> AsyncGenerator[OutboundEvent, None]:
        try:
            self.active_turns[turn.id] = turn
            for event in prelude:
                yield event

            conversation = await self.conversation_db.get_conversation_by_id(conversation_id)
            view = [message.to_llm_message() for message in await self._branch(anchor_id)]
            if conversation.system_prompt:
                view.insert(0, LLMMessage.from_text(Roles.SYSTEM, conversation.system_prompt))

            tools: list[dict[str, Any]] = []
            if self.tool_executor is not None and adapter.supports(Capability.TOOL_INVOCATION):
                tools = [dict(declaration) for declaration in self.tool_executor.declarations()]

            estimator = self.estimators.get(selection)
            budget = TokenBudget(
                max_context_tokens=adapter.max_context_tokens, reserved_output_tokens=adapter.max_output_tokens
            ).reserve(estimator.count_tools(tools))
            window = ContextWindowBuilder(estimator).build(view, budget, adapter.capabilities)
            logger.debug(
                f"Turn {turn.id}: window of {len(window.messages)} messages, ~{window.token_count} tokens "
                f"({window.dropped_count} dropped, {budget.available} available)"
            )

            pending_warnings = list(window.warnings)
            for warning in window.warnings:
                logger.warning(f"Turn {turn.id}: {warning}")
                yield TurnWarning(message=warning)

            if not window.latest_kept or not window.has_user_turn:
                logger.error(f"Turn {turn.id}: the user message alone exceeds the context budget")
                yield Failed.of(ErrorKind.CONTEXT_LENGTH_EXCEEDED)
                return

            request = ProviderRequest(
                selection=selection,
                messages=window.messages,
                max_output_tokens=adapter.max_output_tokens,
                tools=tools,
            )
            parent_id = anchor_id
            async for event in turn.loop.run(request):
                if isinstance(event, MessageReady):
                    metadata = event.metadata
                    if pending_warnings and event.message.role == Roles.ASSISTANT:
                        metadata = metadata.model_copy(update={"warnings": pending_warnings})
                        pending_warnings = []
                    message = Message(
                        id=generate_uid(),
                        conversation_id=conversation_id,
                        role=event.message.role,
                        parts=list(event.message.parts),
                        create_timestamp=get_current_timestamp(),
                        metadata=metadata,
                    )
                    for outbound in await self._append(conversation_id, parent_id, message):
                        yield outbound
                    parent_id = message.id
                    continue
                if isinstance(event, Failed):
                    logger.warning(f"Turn {turn.id} failed: {event.kind}")
                yield event
        finally:
            self.active_turns.pop(turn.id, None)
            logger.info(f"Turn {turn.id} finished after {turn.loop.provider_calls} provider call(s)")

    async def _append(self, conversation_id: str, parent_id: str | None, message: Message) -> list[OutboundEvent]:
        """Persist 'message' under 'parent_id', move the active leaf to it and describe what happened."""
        events: list[OutboundEvent] = []
        siblings = await self._siblings(conversation_id, parent_id)
        message_id = await self.message_db.append_message(parent_id, message)
        await self.conversation_db.set_active_leaf(conversation_id, message_id)
        if siblings:
            logger.info(f"Message {message_id} opened a new branch under {parent_id}")
            events.append(BranchCreated(message_id=message_id, parent_id=parent_id))
        logger.debug(f"Persisted {message.role} message {message_id}")
        events.append(Persisted(message_id=message_id, incomplete=message.metadata.incomplete))
        return events

    async def _siblings(self, conversation_id: str, parent_id: str | None) -> list[Message]:
        if parent_id is not None:
            return await self.message_db.get_children(parent_id)
        messages = await self.message_db.get_messages_by_conversation_id(conversation_id)
        return [message for message in messages if message.parent_id is None]

    async def _branch(self, leaf_id: str | None) -> list[Message]:
        if leaf_id is None:
            return []
        chain = await self.message_db.get_ancestor_chain(leaf_id)
        return list(reversed(chain))

    async def _maybe_set_title(self, conversation: Conversation, user_message: Message) -> None:
        update_time = get_current_timestamp()
        title = conversation.title
        if title == DEFAULT_CONVERSATION_TITLE and user_message.content.strip():
            title = user_message.content.strip()[:TITLE_LENGTH]
        await self.conversation_db.update_conversation(
            conversation.model_copy(update={"title": title, "update_timestamp": update_time})
        )
