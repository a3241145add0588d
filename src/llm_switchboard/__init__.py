"""
llm-switchboard: multi-provider chat orchestration.

A conversation is a tree of messages; each turn is answered by the provider
chosen for that turn (OpenAI, Anthropic or Google), with the history trimmed
to fit the model's context window, tool calls executed in a bounded loop, and
every step persisted as a node of the active branch.

Entry point: 'ConversationController' in 'conversation_database.controller'.
"""

from llm_switchboard.conversation_database.controller import ConversationController, Turn
from llm_switchboard.conversation_database.in_memory import InMemoryConversationDatabase, InMemoryMessageDatabase
from llm_switchboard.llms.base import ProviderFamily, ProviderSelection
from llm_switchboard.settings import Settings

__all__ = [
    "ConversationController",
    "InMemoryConversationDatabase",
    "InMemoryMessageDatabase",
    "ProviderFamily",
    "ProviderSelection",
    "Settings",
    "Turn",
]
