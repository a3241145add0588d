"""
In-memory storage backends.

Reference implementations of 'MessageDatabase' and 'ConversationDatabase' for
tests, demos and single-process deployments. Messages live in an arena keyed
by id plus a child index; an asyncio lock serialises writes so concurrent turns
can append safely. Records are copied on the way in and on the way out, so
callers never share mutable state with the store.
"""

import asyncio
from collections import defaultdict

from llm_switchboard.conversation_database.data_models.conversation import Conversation, ConversationDatabase
from llm_switchboard.conversation_database.data_models.message import Message, MessageDatabase
from llm_switchboard.errors import ConversationNotFound, MessageNotFound


class InMemoryMessageDatabase(MessageDatabase):
    def __init__(self) -> None:
        self._messages: dict[str, Message] = {}
        self._children: dict[str | None, list[str]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def get_message_by_id(self, message_id: str) -> Message:
        message = self._messages.get(message_id)
        if message is None:
            raise MessageNotFound(message_id)
        return message.model_copy(deep=True)

    async def get_ancestor_chain(self, leaf_id: str) -> list[Message]:
        chain: list[Message] = []
        seen: set[str] = set()
        current: str | None = leaf_id
        while current is not None:
            if current in seen:
                raise RuntimeError(f"Cycle detected in message tree at {current}")
            seen.add(current)
            message = await self.get_message_by_id(current)
            chain.append(message)
            current = message.parent_id
        return chain

    async def append_message(self, parent_id: str | None, message: Message) -> str:
        async with self._lock:
            if message.id in self._messages:
                raise ValueError(f"Message with id {message.id} already exists")
            if parent_id is not None:
                parent = await self.get_message_by_id(parent_id)
                if parent.conversation_id != message.conversation_id:
                    raise ValueError(f"Parent {parent_id} belongs to another conversation")
            stored = message.model_copy(update={"parent_id": parent_id}, deep=True)
            self._messages[stored.id] = stored
            self._children[parent_id].append(stored.id)
            return stored.id

    async def get_children(self, message_id: str) -> list[Message]:
        return [self._messages[child_id].model_copy(deep=True) for child_id in self._children.get(message_id, [])]

    async def get_messages_by_conversation_id(self, conversation_id: str) -> list[Message]:
        return [
            message.model_copy(deep=True)
            for message in self._messages.values()
            if message.conversation_id == conversation_id
        ]


class InMemoryConversationDatabase(ConversationDatabase):
    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._lock = asyncio.Lock()

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        async with self._lock:
            if conversation.id in self._conversations:
                raise ValueError(f"Conversation with id {conversation.id} already exists")
            self._conversations[conversation.id] = conversation.model_copy(deep=True)
            return conversation

    async def get_conversation_by_id(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return conversation.model_copy(deep=True)

    async def update_conversation(self, conversation: Conversation) -> Conversation:
        async with self._lock:
            current = self._conversations.get(conversation.id)
            if current is None:
                raise ConversationNotFound(conversation.id)
            # The active leaf only moves through 'set_active_leaf'.
            updated = conversation.model_copy(update={"active_leaf_id": current.active_leaf_id}, deep=True)
            self._conversations[conversation.id] = updated
            return updated.model_copy(deep=True)

    async def set_active_leaf(self, conversation_id: str, leaf_id: str) -> None:
        async with self._lock:
            current = self._conversations.get(conversation_id)
            if current is None:
                raise ConversationNotFound(conversation_id)
            self._conversations[conversation_id] = current.model_copy(update={"active_leaf_id": leaf_id})
