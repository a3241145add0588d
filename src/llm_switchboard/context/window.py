"""
Context window builder.

Turns a conversation view (root first) into the message list actually sent to
a provider. The dropping pass walks newest to oldest and stops at the first
message that no longer fits, so what survives is a recent suffix of the
conversation plus the system message, returned in the original chronological
order. Content is never truncated: a message that cannot fit on its own is
skipped whole with a warning.

After the budget pass, tool results and tool calls that lost their counterpart
are removed. This only ever removes messages, so the budget bound still holds.
Adapters whose API must open with a user turn skip any leading assistant
messages themselves.
"""

from collections.abc import Sequence

from loguru import logger
from pydantic import BaseModel, Field, NonNegativeInt

from llm_switchboard.context.tokens import TokenEstimator
from llm_switchboard.llms.base import Capability, LLMMessage, Roles


class TokenBudget(BaseModel):
    """
    Tokens available for input context.

    'available' is the context size minus the output allowance and the cost of
    tool declarations, clamped at zero.
    """

    max_context_tokens: NonNegativeInt
    reserved_output_tokens: NonNegativeInt = 0
    reserved_tool_tokens: NonNegativeInt = 0

    @property
    def available(self) -> int:
        return max(0, self.max_context_tokens - self.reserved_output_tokens - self.reserved_tool_tokens)

    def reserve(self, tokens: int) -> "TokenBudget":
        return self.model_copy(update={"reserved_tool_tokens": self.reserved_tool_tokens + max(0, tokens)})


class WindowResult(BaseModel):
    messages: list[LLMMessage]
    dropped_count: int = 0
    warnings: list[str] = Field(default_factory=list)
    token_count: int = 0
    latest_kept: bool = False
    """Whether the newest message of the view made it into the window."""

    @property
    def has_user_turn(self) -> bool:
        return any(message.role == Roles.USER for message in self.messages)


class ContextWindowBuilder:
    def __init__(self, estimator: TokenEstimator) -> None:
        self.estimator = estimator

    def build(
        self,
        view: Sequence[LLMMessage],
        budget: TokenBudget | int,
        capabilities: frozenset[Capability] | None = None,
    ) -> WindowResult:
        limit = budget.available if isinstance(budget, TokenBudget) else max(0, budget)
        costs = [self.estimator.count_message(message) for message in view]
        warnings: list[str] = []

        system_index = next((i for i, message in enumerate(view) if message.role == Roles.SYSTEM), None)
        kept: set[int] = set()
        total = 0
        if system_index is not None:
            if costs[system_index] > limit:
                warnings.append(
                    f"System message ({costs[system_index]} tokens) exceeds the {limit} token budget and was dropped"
                )
            else:
                kept.add(system_index)
                total = costs[system_index]
        room = limit - total

        for index in reversed(range(len(view))):
            if index == system_index:
                continue
            cost = costs[index]
            if cost > room:
                warnings.append(
                    f"A {view[index].role} message ({cost} tokens) does not fit the context window on its own "
                    "and was dropped"
                )
                continue
            if total + cost > limit:
                break
            kept.add(index)
            total += cost

        kept = self._repair(view, kept, system_index)
        if capabilities is not None and Capability.VISION_INPUT not in capabilities:
            if any(view[index].images for index in kept):
                warnings.append("The conversation contains images but the selected model does not accept image input")

        messages = [view[index] for index in sorted(kept)]
        dropped = len(view) - len(kept)
        if dropped:
            logger.debug(f"Context window kept {len(kept)}/{len(view)} messages ({total} tokens, limit {limit})")
        return WindowResult(
            messages=messages,
            dropped_count=dropped,
            warnings=warnings,
            token_count=sum(costs[index] for index in kept),
            latest_kept=len(view) - 1 in kept,
        )

    @staticmethod
    def _repair(view: Sequence[LLMMessage], kept: set[int], system_index: int | None) -> set[int]:
        kept = set(kept)
        changed = True
        while changed:
            changed = False
            ordered = [index for index in sorted(kept) if index != system_index]
            call_ids = {call.id for index in ordered for call in view[index].tool_calls}
            result_ids = {result.tool_call_id for index in ordered for result in view[index].tool_results}
            for index in ordered:
                message = view[index]
                orphan_results = any(result.tool_call_id not in call_ids for result in message.tool_results)
                unanswered_calls = any(call.id not in result_ids for call in message.tool_calls)
                if orphan_results or unanswered_calls:
                    kept.discard(index)
                    changed = True
        return kept
