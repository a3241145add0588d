"""
Adapter selection.

'AdapterFactory' is the only place that maps a 'ProviderFamily' to an adapter
class. Adding a provider means adding an adapter module and an entry in
'ADAPTERS'; nothing else branches on the provider name.
"""

from loguru import logger

from llm_switchboard.llms.adapter import ProviderAdapter
from llm_switchboard.llms.anthropic import AnthropicAdapter
from llm_switchboard.llms.base import ProviderFamily, ProviderSelection
from llm_switchboard.llms.google import GoogleAdapter
from llm_switchboard.llms.openai import OpenAIAdapter
from llm_switchboard.settings import Settings

ADAPTERS: dict[ProviderFamily, type[ProviderAdapter]] = {
    ProviderFamily.OPENAI: OpenAIAdapter,
    ProviderFamily.ANTHROPIC: AnthropicAdapter,
    ProviderFamily.GOOGLE: GoogleAdapter,
}


class AdapterFactory:
    """Builds a fresh adapter per turn from the configured 'Settings'."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def create(self, selection: ProviderSelection) -> ProviderAdapter:
        adapter_class = ADAPTERS[selection.family]
        logger.debug(f"LLM backend: {selection.family} ({selection.model})")
        return adapter_class(selection, self.settings.provider(selection.family), self.settings.retry)
