"""
Runtime configuration.

Settings are plain pydantic models so they can be built in code (tests, embedding
applications) or read from the environment with 'Settings.from_env()', which
mirrors how the example scripts pick up credentials:

    OPENAI_API_KEY / OPENAI_BASE_URL
    ANTHROPIC_API_KEY / ANTHROPIC_BASE_URL
    GOOGLE_API_KEY / GOOGLE_BASE_URL
    SWITCHBOARD_ITERATION_CEILING   tool-call iterations per turn (default 5)
    SWITCHBOARD_CALL_TIMEOUT        seconds per provider call (default 60)
    SWITCHBOARD_TURN_TIMEOUT        seconds per whole turn (default 300)
    SWITCHBOARD_TOOL_TIMEOUT        seconds per tool execution (default 30)
    SWITCHBOARD_MAX_RETRIES         attempts for rate-limited/unavailable calls (default 3)
"""

import os

from pydantic import BaseModel, Field, NonNegativeInt, PositiveInt

from llm_switchboard.llms.base import ProviderFamily

DEFAULT_CONTEXT_TOKENS = {
    ProviderFamily.OPENAI: 128_000,
    ProviderFamily.ANTHROPIC: 200_000,
    ProviderFamily.GOOGLE: 1_000_000,
}


class ProviderSettings(BaseModel):
    """
    Per-family provider configuration.

    Attributes:
        max_context_tokens: Context window of the configured models.
        reserved_output_tokens: Part of the window kept free for the answer;
            also the default 'max_output_tokens' of a request.
        vision: Whether the configured models accept image input.
        streaming: Use the provider's streaming API when it has one.
    """

    api_key: str = ""
    base_url: str | None = None
    max_context_tokens: PositiveInt = 128_000
    reserved_output_tokens: NonNegativeInt = 4_096
    vision: bool = True
    tools: bool = True
    streaming: bool = True
    temperature: float | None = None


class LoopSettings(BaseModel):
    iteration_ceiling: PositiveInt = 5
    call_timeout: float | None = 60.0
    turn_timeout: float | None = 300.0
    tool_timeout: float | None = 30.0


class RetrySettings(BaseModel):
    max_attempts: PositiveInt = 3
    initial_backoff: float = 1.0
    max_backoff: float = 20.0


class Settings(BaseModel):
    providers: dict[ProviderFamily, ProviderSettings] = Field(default_factory=dict)
    loop: LoopSettings = Field(default_factory=LoopSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)

    def provider(self, family: ProviderFamily) -> ProviderSettings:
        if family in self.providers:
            return self.providers[family]
        return ProviderSettings(max_context_tokens=DEFAULT_CONTEXT_TOKENS[family])

    @classmethod
    def from_env(cls) -> "Settings":
        providers = {
            family: ProviderSettings(
                api_key=os.environ.get(f"{family.upper()}_API_KEY", ""),
                base_url=os.environ.get(f"{family.upper()}_BASE_URL") or None,
                max_context_tokens=DEFAULT_CONTEXT_TOKENS[family],
            )
            for family in ProviderFamily
        }
        loop = LoopSettings(
            iteration_ceiling=int(os.environ.get("SWITCHBOARD_ITERATION_CEILING", 5)),
            call_timeout=_optional_float(os.environ.get("SWITCHBOARD_CALL_TIMEOUT", "60")),
            turn_timeout=_optional_float(os.environ.get("SWITCHBOARD_TURN_TIMEOUT", "300")),
            tool_timeout=_optional_float(os.environ.get("SWITCHBOARD_TOOL_TIMEOUT", "30")),
        )
        retry = RetrySettings(max_attempts=int(os.environ.get("SWITCHBOARD_MAX_RETRIES", 3)))
        return cls(providers=providers, loop=loop, retry=retry)


def _optional_float(value: str) -> float | None:
    """'0' or an empty value disables a timeout."""
    if not value or float(value) <= 0:
        return None
    return float(value)
