"""
Provider-aware token estimation.

Providers tokenize differently and only OpenAI ships a local tokenizer, so the
estimators here round up. Every message pays a fixed framing overhead and
images cost a flat per-provider amount close to the provider's documented
upper bound.

'TokenEstimatorRegistry' hands out one estimator per (family, model) and lets
callers override the estimator for a family.
"""

import json
import math
from abc import ABC, abstractmethod
from typing import Any

import tiktoken

from llm_switchboard.llms.base import (
    ImagePart,
    LLMMessage,
    ProviderFamily,
    ProviderSelection,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)

FALLBACK_ENCODING = "o200k_base"


class TokenEstimator(ABC):
    """
    Abstract base class for token estimators.

    Attributes:
        message_overhead: Tokens charged per message for role markers and framing.
        image_tokens: Flat cost charged per image attachment.
    """

    def __init__(self, *, message_overhead: int = 4, image_tokens: int = 1_000) -> None:
        self.message_overhead = message_overhead
        self.image_tokens = image_tokens

    @abstractmethod
    def count_text(self, text: str) -> int:
        """Return an upper-bound token count for 'text' (0 for empty text)."""
        pass

    def count_part(self, part: Any) -> int:
        if isinstance(part, TextPart):
            return self.count_text(part.text)
        if isinstance(part, ImagePart):
            return self.image_tokens
        if isinstance(part, ToolCallPart):
            return self.count_text(part.name) + self.count_text(json.dumps(part.arguments)) + self.message_overhead
        if isinstance(part, ToolResultPart):
            return self.count_text(part.name) + self.count_text(part.content) + self.message_overhead
        return 0

    def count_message(self, message: LLMMessage) -> int:
        return self.message_overhead + sum(self.count_part(part) for part in message.parts)

    def count_messages(self, messages: list[LLMMessage]) -> int:
        return sum(self.count_message(message) for message in messages)

    def count_tools(self, tools: list[dict[str, Any]]) -> int:
        """Cost of the tool declarations sent alongside every request."""
        if not tools:
            return 0
        return self.count_text(json.dumps(tools))


class CharRatioEstimator(TokenEstimator):
    """Byte-length heuristic for providers without a local tokenizer."""

    def __init__(self, chars_per_token: float = 4.0, *, message_overhead: int = 4, image_tokens: int = 1_000) -> None:
        super().__init__(message_overhead=message_overhead, image_tokens=image_tokens)
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        self.chars_per_token = chars_per_token

    def count_text(self, text: str) -> int:
        if not text:
            return 0
        return max(1, math.ceil(len(text.encode("utf-8", errors="ignore")) / self.chars_per_token))


class TiktokenEstimator(TokenEstimator):
    """Exact text counts for OpenAI models via tiktoken, loaded on first use."""

    def __init__(self, model_name: str, *, message_overhead: int = 4, image_tokens: int = 1_105) -> None:
        super().__init__(message_overhead=message_overhead, image_tokens=image_tokens)
        self.model_name = model_name
        self._encoding: tiktoken.Encoding | None = None

    @property
    def encoding(self) -> tiktoken.Encoding:
        if self._encoding is None:
            try:
                self._encoding = tiktoken.encoding_for_model(self.model_name)
            except KeyError:
                self._encoding = tiktoken.get_encoding(FALLBACK_ENCODING)
        return self._encoding

    def count_text(self, text: str) -> int:
        if not text:
            return 0
        return len(self.encoding.encode(text, disallowed_special=()))


def default_estimator(selection: ProviderSelection) -> TokenEstimator:
    match selection.family:
        case ProviderFamily.OPENAI:
            return TiktokenEstimator(selection.model)
        case ProviderFamily.ANTHROPIC:
            return CharRatioEstimator(3.5, message_overhead=5, image_tokens=1_600)
        case ProviderFamily.GOOGLE:
            return CharRatioEstimator(4.0, message_overhead=5, image_tokens=258)
    raise ValueError(f"No token estimator for provider family {selection.family!r}")


class TokenEstimatorRegistry:
    """Registry maintaining one estimator per provider family and model."""

    def __init__(self, overrides: dict[ProviderFamily, TokenEstimator] | None = None) -> None:
        self._overrides = dict(overrides or {})
        self._estimators: dict[tuple[ProviderFamily, str], TokenEstimator] = {}

    def register(self, family: ProviderFamily, estimator: TokenEstimator) -> None:
        self._overrides[family] = estimator
        self._estimators = {key: value for key, value in self._estimators.items() if key[0] != family}

    def get(self, selection: ProviderSelection) -> TokenEstimator:
        if selection.family in self._overrides:
            return self._overrides[selection.family]
        key = (selection.family, selection.model.strip().lower())
        if key not in self._estimators:
            self._estimators[key] = default_estimator(selection)
        return self._estimators[key]
