"""
Google-style adapter (Gemini 'generateContent' REST API over httpx).

This adapter is batch-only: the full candidate is fetched in one request and
then emitted as text deltas followed by its terminal event, which consumers
handle exactly like a stream. Gemini has no tool-call ids, so ids are minted
here and results are matched back by function name.
"""

from collections.abc import AsyncIterator
from typing import Any

import httpx

from llm_switchboard.errors import (
    AuthenticationFailed,
    ContentFiltered,
    ContextLengthExceeded,
    ProviderError,
    ProviderUnavailable,
    RateLimited,
    UnknownProviderError,
)
from llm_switchboard.events import Completed, ProviderResponseEvent, TextDelta, ToolCallRequested, Usage
from llm_switchboard.llms.adapter import ProviderAdapter, from_first_user_turn, retry_after_from_headers
from llm_switchboard.llms.base import (
    Capability,
    ImagePart,
    LLMMessage,
    ProviderFamily,
    ProviderRequest,
    ProviderSelection,
    Roles,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from llm_switchboard.settings import ProviderSettings, RetrySettings
from llm_switchboard.utils.database import generate_uid

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
FINISH_REASONS = {"STOP": "stop", "MAX_TOKENS": "length"}
BLOCKED_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "RECITATION"}


def _to_part(part: Any) -> dict[str, Any] | None:
    if isinstance(part, TextPart):
        return {"text": part.text} if part.text else None
    if isinstance(part, ImagePart):
        if part.url:
            return {"fileData": {"mimeType": part.media_type, "fileUri": part.url}}
        return {"inlineData": {"mimeType": part.media_type, "data": part.data}}
    if isinstance(part, ToolCallPart):
        return {"functionCall": {"name": part.name, "args": part.arguments}}
    if isinstance(part, ToolResultPart):
        key = "error" if part.is_error else "content"
        return {"functionResponse": {"name": part.name, "response": {key: part.content}}}
    return None


def _to_contents(messages: list[LLMMessage]) -> list[dict[str, Any]]:
    contents: list[dict[str, Any]] = []
    for message in messages:
        role = "model" if message.role == Roles.ASSISTANT else "user"
        parts = [part for part in map(_to_part, message.parts) if part is not None]
        if not parts:
            continue
        if contents and contents[-1]["role"] == role:
            contents[-1]["parts"].extend(parts)
        else:
            contents.append({"role": role, "parts": parts})
    return contents


def _to_declaration(tool: dict[str, Any]) -> dict[str, Any]:
    function = tool["function"]
    declaration = {"name": function["name"], "description": function.get("description", "")}
    if function.get("parameters"):
        declaration["parameters"] = function["parameters"]
    return declaration


class GoogleAdapter(ProviderAdapter):
    family = ProviderFamily.GOOGLE
    native_capabilities = frozenset({Capability.COMPLETION, Capability.TOOL_INVOCATION, Capability.VISION_INPUT})

    def __init__(
        self,
        selection: ProviderSelection,
        settings: ProviderSettings,
        retry: RetrySettings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(selection, settings, retry)
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.settings.base_url or DEFAULT_BASE_URL, timeout=None)
        return self._client

    def translate_request(self, request: ProviderRequest) -> dict[str, Any]:
        self.check_content(request)
        system = "\n\n".join(message.content for message in request.messages if message.role == Roles.SYSTEM)
        conversation = from_first_user_turn([message for message in request.messages if message.role != Roles.SYSTEM])
        generation_config: dict[str, Any] = {"maxOutputTokens": request.max_output_tokens}
        if self.settings.temperature is not None:
            generation_config["temperature"] = self.settings.temperature
        body: dict[str, Any] = {"contents": _to_contents(conversation), "generationConfig": generation_config}
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        if request.tools:
            body["tools"] = [{"functionDeclarations": [_to_declaration(tool) for tool in request.tools]}]
        return {"model": request.selection.model, "body": body}

    async def _open(self, native: dict[str, Any]) -> Any:
        response = await self.client.post(
            f"/models/{native['model']}:generateContent",
            json=native["body"],
            headers={"x-goog-api-key": self.settings.api_key},
        )
        response.raise_for_status()
        return response.json()

    async def _read(self, payload: Any) -> AsyncIterator[ProviderResponseEvent]:
        block_reason = payload.get("promptFeedback", {}).get("blockReason")
        if block_reason:
            raise ContentFiltered(f"blockReason={block_reason}")
        candidates = payload.get("candidates") or []
        if not candidates:
            raise UnknownProviderError("response contained no candidates")
        candidate = candidates[0]
        finish_reason = candidate.get("finishReason", "STOP")
        if finish_reason in BLOCKED_FINISH_REASONS:
            raise ContentFiltered(f"finishReason={finish_reason}")

        metadata = payload.get("usageMetadata", {})
        usage = Usage(
            input_tokens=metadata.get("promptTokenCount", 0),
            output_tokens=metadata.get("candidatesTokenCount", 0),
        )
        tool_calls = []
        for part in candidate.get("content", {}).get("parts", []):
            if part.get("text"):
                yield TextDelta(text=part["text"])
            elif "functionCall" in part:
                call = part["functionCall"]
                tool_calls.append((call.get("id") or f"call_{generate_uid()[:12]}", call["name"], call.get("args", {})))

        if not tool_calls:
            yield Completed(finish_reason=FINISH_REASONS.get(finish_reason, finish_reason.lower()), usage=usage)
            return
        for index, (call_id, name, arguments) in enumerate(tool_calls):
            yield ToolCallRequested(
                id=call_id,
                name=name,
                arguments=arguments,
                usage=usage if index == len(tool_calls) - 1 else None,
            )

    def map_error(self, error: Exception) -> ProviderError:
        detail = str(error)
        if isinstance(error, httpx.TransportError):
            return ProviderUnavailable(detail)
        if isinstance(error, httpx.HTTPStatusError):
            status = error.response.status_code
            body = error.response.text
            if status in (401, 403):
                return AuthenticationFailed(body)
            if status == 429:
                return RateLimited(body, retry_after=retry_after_from_headers(error.response.headers))
            if status >= 500 or status == 408:
                return ProviderUnavailable(body)
            if status == 400 and "token" in body.lower() and "exceed" in body.lower():
                return ContextLengthExceeded(body)
            return UnknownProviderError(body)
        return UnknownProviderError(detail)
