"""
Token-budgeted prompt construction.

Selects the newest stretch of conversation history that fits in a model's
context window once room for the completion has been reserved.
"""

from dataclasses import dataclass
from typing import List, Sequence

from .errors import ConfigurationError
from .models import Message, ModelSpec, Role
from .token_counter import REPLY_PRIMING_TOKENS, EncoderHandle, message_tokens


@dataclass(frozen=True)
class Budget:
    """Token budget for a single request."""
    reserved_completion_tokens: int
    context_limit: int

    def __post_init__(self):
        """Validate budget values."""
        if self.reserved_completion_tokens < 0:
            raise ValueError("reserved_completion_tokens cannot be negative")
        if self.context_limit <= 0:
            raise ValueError("context_limit must be > 0")

    @property
    def prompt_limit(self) -> int:
        """Maximum tokens the prompt may occupy."""
        return self.context_limit - self.reserved_completion_tokens


@dataclass(frozen=True)
class BudgetedPrompt:
    """Result of fitting history into a budget.

    ``tokens_used`` includes the system prompt and reply priming, so it is
    the prompt cost the generation service will see for these messages.
    """
    messages: List[Message]
    tokens_used: int
    max_completion_tokens: int

    @property
    def is_empty(self) -> bool:
        """True when not even the newest message fit in the budget."""
        return not self.messages


def build(
    encoder: EncoderHandle,
    model: ModelSpec,
    system_prompt: str,
    reserved_completion_tokens: int,
    history: Sequence[Message],
) -> BudgetedPrompt:
    """Select the longest suffix of ``history`` that fits the budget.

    History is walked from newest to oldest. The first message that would
    push the prompt past ``context_limit - reserved_completion_tokens`` is
    excluded whole, and so is everything older than it.

    Args:
        encoder: Tokenizer handle for ``model``
        model: Model whose context limit bounds the prompt
        system_prompt: Always included; never truncated
        reserved_completion_tokens: Tokens held back for the completion
        history: Conversation in chronological order

    Returns:
        BudgetedPrompt with the selection in chronological order

    Raises:
        ValueError: If reserved_completion_tokens is negative
        ConfigurationError: If the system prompt alone exceeds the budget
    """
    budget = Budget(
        reserved_completion_tokens=reserved_completion_tokens,
        context_limit=model.context_token_limit,
    )

    system_message = Message(role=Role.SYSTEM, content=system_prompt)
    tokens_used = message_tokens(encoder, system_message) + REPLY_PRIMING_TOKENS
    if tokens_used > budget.prompt_limit:
        raise ConfigurationError(
            f"System prompt needs {tokens_used} tokens but only {budget.prompt_limit} "
            f"are available for {model.id} after reserving "
            f"{reserved_completion_tokens} for the completion"
        )

    selected: List[Message] = []
    for message in reversed(history):
        cost = message_tokens(encoder, message)
        if tokens_used + cost > budget.prompt_limit:
            break
        tokens_used += cost
        selected.append(message)
    selected.reverse()

    max_completion_tokens = min(
        max(budget.context_limit - tokens_used, 0),
        model.max_output_tokens,
    )

    return BudgetedPrompt(
        messages=selected,
        tokens_used=tokens_used,
        max_completion_tokens=max_completion_tokens,
    )
