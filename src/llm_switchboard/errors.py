"""
Error taxonomy shared by adapters, the tool loop and the controller.

Every failure that can end (or be folded into) a conversation turn is one of
the 'ErrorKind' values. Provider adapters translate SDK and HTTP errors into a
'ProviderError' subclass carrying exactly one kind, so nothing provider-specific
leaks past the adapter boundary. 'ErrorKind.summary' is the human-readable
text shown to users in place of raw provider payloads.
"""

from enum import StrEnum


class ErrorKind(StrEnum):
    UNSUPPORTED_CONTENT_KIND = "unsupported_content_kind"
    AUTHENTICATION_FAILED = "authentication_failed"
    RATE_LIMITED = "rate_limited"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    CONTENT_FILTERED = "content_filtered"
    CONTEXT_LENGTH_EXCEEDED = "context_length_exceeded"
    TOOL_EXECUTION_FAILED = "tool_execution_failed"
    LOOP_LIMIT_EXCEEDED = "loop_limit_exceeded"
    TIMEOUT_EXCEEDED = "timeout_exceeded"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @property
    def summary(self) -> str:
        return _SUMMARIES[self]

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.RATE_LIMITED, ErrorKind.PROVIDER_UNAVAILABLE)


_SUMMARIES = {
    ErrorKind.UNSUPPORTED_CONTENT_KIND: "The selected model cannot accept some of the content in this conversation.",
    ErrorKind.AUTHENTICATION_FAILED: "The provider rejected the configured credentials.",
    ErrorKind.RATE_LIMITED: "The provider is rate limiting requests. Please try again shortly.",
    ErrorKind.PROVIDER_UNAVAILABLE: "The provider could not be reached or did not answer in time.",
    ErrorKind.CONTENT_FILTERED: "The provider refused to answer because of its content policy.",
    ErrorKind.CONTEXT_LENGTH_EXCEEDED: "The conversation is too long for the selected model.",
    ErrorKind.TOOL_EXECUTION_FAILED: "A tool failed while answering.",
    ErrorKind.LOOP_LIMIT_EXCEEDED: "The answer needed too many tool calls and was stopped early.",
    ErrorKind.TIMEOUT_EXCEEDED: "The answer took too long and was stopped early.",
    ErrorKind.CANCELLED: "The answer was cancelled.",
    ErrorKind.UNKNOWN: "The provider returned an unexpected error.",
}


class SwitchboardError(Exception):
    """Base class for all errors raised by this package."""


class ProviderError(SwitchboardError):
    """
    A provider failure normalized to a single 'ErrorKind'.

    'detail' keeps the raw provider message for debug logging only; it is never
    shown to users. 'retry_after' is the provider's backoff hint in seconds, if
    it sent one.
    """

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, detail: str = "", retry_after: float | None = None) -> None:
        super().__init__(detail or self.kind.summary)
        self.detail = detail
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class AuthenticationFailed(ProviderError):
    kind = ErrorKind.AUTHENTICATION_FAILED


class RateLimited(ProviderError):
    kind = ErrorKind.RATE_LIMITED


class ProviderUnavailable(ProviderError):
    kind = ErrorKind.PROVIDER_UNAVAILABLE


class ContentFiltered(ProviderError):
    kind = ErrorKind.CONTENT_FILTERED


class ContextLengthExceeded(ProviderError):
    kind = ErrorKind.CONTEXT_LENGTH_EXCEEDED


class UnsupportedContentKind(ProviderError):
    kind = ErrorKind.UNSUPPORTED_CONTENT_KIND


class UnknownProviderError(ProviderError):
    kind = ErrorKind.UNKNOWN


class ToolExecutionFailed(SwitchboardError):
    """Raised by a tool executor; the tool loop folds it into an error tool result."""

    def __init__(self, tool_name: str, detail: str) -> None:
        super().__init__(f"Tool '{tool_name}' failed: {detail}")
        self.tool_name = tool_name
        self.detail = detail


class MessageNotFound(SwitchboardError):
    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message with id {message_id} not found")
        self.message_id = message_id


class ConversationNotFound(SwitchboardError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation with id {conversation_id} not found")
        self.conversation_id = conversation_id
