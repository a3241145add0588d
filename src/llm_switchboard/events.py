"""
Event types flowing from provider adapters to the caller.

'ProviderResponseEvent' is what an adapter invocation yields: text deltas in
the order the provider sent them, tool-call requests, and exactly one terminal
'Completed' or 'Failed' (a response that asks for tools ends with its
'ToolCallRequested' events instead). 'OutboundEvent' is what a 'Turn' yields to
the caller: the provider events plus the controller's own 'BranchCreated',
'Persisted' and 'TurnWarning' notifications.

Every event carries a 'type' discriminator so the stream can be serialised as
newline-delimited JSON without extra wrappers.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from llm_switchboard.errors import ErrorKind, ProviderError


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class TextDelta(BaseModel):
    type: Literal["text_delta"] = "text_delta"
    text: str


class ToolCallRequested(BaseModel):
    """
    The model asks for a tool to be executed.

    'usage' is attached to the last tool call of a response, since such a
    response does not end with 'Completed'.
    """

    type: Literal["tool_call_requested"] = "tool_call_requested"
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    usage: Usage | None = None


class Completed(BaseModel):
    type: Literal["completed"] = "completed"
    finish_reason: str = "stop"
    usage: Usage = Field(default_factory=Usage)


class Failed(BaseModel):
    """Terminal failure. 'message' is always the human-readable summary for 'kind'."""

    type: Literal["failed"] = "failed"
    kind: ErrorKind
    message: str
    retry_after: float | None = None

    @classmethod
    def of(cls, kind: ErrorKind, retry_after: float | None = None) -> "Failed":
        return cls(kind=kind, message=kind.summary, retry_after=retry_after)

    @classmethod
    def from_error(cls, error: ProviderError) -> "Failed":
        return cls.of(error.kind, retry_after=error.retry_after)


ProviderResponseEvent = TextDelta | ToolCallRequested | Completed | Failed


class BranchCreated(BaseModel):
    """A new message was attached to a parent that already had children."""

    type: Literal["branch_created"] = "branch_created"
    message_id: str
    parent_id: str | None = None


class Persisted(BaseModel):
    type: Literal["persisted"] = "persisted"
    message_id: str
    incomplete: bool = False


class TurnWarning(BaseModel):
    """Non-fatal notice: dropped context, loop limit, turn timeout, failed tool."""

    type: Literal["warning"] = "warning"
    kind: ErrorKind | None = None
    message: str


OutboundEvent = Annotated[
    TextDelta | ToolCallRequested | Completed | Failed | BranchCreated | Persisted | TurnWarning,
    Field(discriminator="type"),
]
