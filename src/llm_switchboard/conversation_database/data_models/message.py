"""
Message data model and storage interface.

Messages form a tree within a conversation via 'parent_id'. This branching
structure supports regeneration and edits: multiple assistant responses (or
edited user messages) exist as siblings under the same parent, and any path
from the root to a leaf is a valid linear history. Messages are immutable once
appended; 'metadata' records what the provider reported for the message.

The 'MessageDatabase' ABC is the pluggable storage backend. Concrete
implementation: 'InMemoryMessageDatabase'.
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel, ConfigDict, Field

from llm_switchboard.llms.base import ContentPart, LLMMessage, ProviderFamily, Roles, TextPart


class MessageMetadata(BaseModel):
    """
    Provider metadata stored with a message.

    'incomplete' marks partial assistant content persisted after a
    cancellation or a terminal failure.
    """

    model_config = ConfigDict(frozen=True)

    provider: ProviderFamily | None = None
    model: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    finish_reason: str | None = None
    incomplete: bool = False
    warnings: list[str] = Field(default_factory=list)


class Message(BaseModel):
    """
    A single message within a conversation.

    'parent_id' is None only for the conversation root. 'override_id' points at
    the message an edited user message supersedes ('is_edited' is then True).
    """

    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    role: Roles
    parts: list[ContentPart]
    create_timestamp: int
    parent_id: str | None = None
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)
    is_edited: bool = False
    override_id: str | None = None

    @property
    def content(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    def to_llm_message(self) -> LLMMessage:
        return LLMMessage(role=self.role, parts=list(self.parts))


class MessageDatabase(ABC):
    """Abstract repository for 'Message' records."""

    @abstractmethod
    async def get_message_by_id(self, message_id: str) -> Message:
        """Raise 'MessageNotFound' for unknown ids."""
        pass

    @abstractmethod
    async def get_ancestor_chain(self, leaf_id: str) -> list[Message]:
        """Return the leaf and all its ancestors, leaf first and root last."""
        pass

    @abstractmethod
    async def append_message(self, parent_id: str | None, message: Message) -> str:
        """Persist 'message' under 'parent_id' and return its id."""
        pass

    @abstractmethod
    async def get_children(self, message_id: str) -> list[Message]:
        pass

    @abstractmethod
    async def get_messages_by_conversation_id(self, conversation_id: str) -> list[Message]:
        pass
