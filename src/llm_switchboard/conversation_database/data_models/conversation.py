"""
Conversation data model and storage interface.

A conversation groups a tree of messages and remembers which leaf is active,
i.e. which branch the user currently sees. The record only changes when a
message is appended (timestamps, title) or when the active leaf is repointed.

The 'ConversationDatabase' ABC is the pluggable storage backend. Concrete
implementation: 'InMemoryConversationDatabase'.
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel


class Conversation(BaseModel):
    """A single conversation session."""

    id: str
    create_timestamp: int
    update_timestamp: int
    title: str
    system_prompt: str | None = None
    active_leaf_id: str | None = None


class ConversationDatabase(ABC):
    """Abstract repository for 'Conversation' records."""

    @abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation:
        pass

    @abstractmethod
    async def get_conversation_by_id(self, conversation_id: str) -> Conversation:
        """Raise 'ConversationNotFound' for unknown ids."""
        pass

    @abstractmethod
    async def update_conversation(self, conversation: Conversation) -> Conversation:
        pass

    @abstractmethod
    async def set_active_leaf(self, conversation_id: str, leaf_id: str) -> None:
        """Atomically repoint the active branch; last writer wins."""
        pass
