"""
Normalized message and request models shared by every provider adapter.

All concrete adapters ('OpenAIAdapter', 'AnthropicAdapter', 'GoogleAdapter')
consume the same 'ProviderRequest' and translate it into their native request
shape. 'LLMMessage' is deliberately provider-agnostic: its content is an
ordered list of typed parts (text, image reference, tool-call request,
tool-call result) so structured tool traffic survives persistence and replay
on a different provider than the one that produced it.

Tool declarations travel in the OpenAI function-calling format produced by
'Tool.json_schema()'; adapters for other providers convert from it.
"""

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class Roles(StrEnum):
    """Conversation roles as used by the OpenAI chat completions API."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ProviderFamily(StrEnum):
    """The closed set of provider API styles an adapter exists for."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


class Capability(StrEnum):
    COMPLETION = "completion"
    STREAMING = "streaming"
    TOOL_INVOCATION = "tool_invocation"
    VISION_INPUT = "vision_input"


class TextPart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    """
    An image attachment, either inline ('data', base64 encoded) or by 'url'.

    Exactly one of 'data' and 'url' is expected to be set.
    """

    model_config = ConfigDict(frozen=True)

    type: Literal["image"] = "image"
    media_type: str = "image/png"
    data: str | None = None
    url: str | None = None


class ToolCallPart(BaseModel):
    """A tool invocation requested by the assistant."""

    model_config = ConfigDict(frozen=True)

    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolResultPart(BaseModel):
    """
    The outcome of a tool invocation, fed back to the model.

    'is_error' marks results that carry a failure description instead of tool
    output; the model is expected to react to it like to any other result.
    """

    model_config = ConfigDict(frozen=True)

    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    name: str
    content: str
    is_error: bool = False


ContentPart = Annotated[TextPart | ImagePart | ToolCallPart | ToolResultPart, Field(discriminator="type")]


class LLMMessage(BaseModel):
    """
    A single message in a conversation sent to or received from an LLM.

    Assistant messages that request tools carry 'ToolCallPart' entries next to
    any text the model produced before deciding to call them. TOOL role
    messages carry exactly one 'ToolResultPart'.
    """

    model_config = ConfigDict(frozen=True)

    role: Roles = Roles.ASSISTANT
    parts: list[ContentPart] = Field(default_factory=list)

    @classmethod
    def from_text(cls, role: Roles, text: str) -> "LLMMessage":
        return cls(role=role, parts=[TextPart(text=text)])

    @property
    def content(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [part for part in self.parts if isinstance(part, ToolCallPart)]

    @property
    def tool_results(self) -> list[ToolResultPart]:
        return [part for part in self.parts if isinstance(part, ToolResultPart)]

    @property
    def images(self) -> list[ImagePart]:
        return [part for part in self.parts if isinstance(part, ImagePart)]


class ProviderSelection(BaseModel):
    """
    Which provider and model a turn should be answered by.

    The optional overrides take precedence over the configured
    'ProviderSettings' for this family.
    """

    family: ProviderFamily
    model: str
    max_output_tokens: int | None = None
    max_context_tokens: int | None = None


class ProviderRequest(BaseModel):
    """
    A normalized request handed to 'ProviderAdapter.translate_request'.

    Attributes:
        selection: Provider family and model to call.
        messages: The trimmed conversation, oldest first, system message at the head.
        max_output_tokens: Upper bound on generated tokens for this call.
        tools: Tool declarations in OpenAI function-calling format.
    """

    selection: ProviderSelection
    messages: list[LLMMessage]
    max_output_tokens: int
    tools: list[dict[str, Any]] = Field(default_factory=list)

    def with_messages(self, messages: list[LLMMessage]) -> "ProviderRequest":
        return self.model_copy(update={"messages": messages})
