"""
Token counting and usage tracking.

Manages per-request tokenizer handles and token calculations for chat
model message formats.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, List, Optional

import tiktoken

from .errors import ConfigurationError
from .models import DEFAULT_MODEL_TABLE, Message, ModelTable

# Chat accounting used by OpenAI chat models: every message is wrapped in
# fixed framing tokens and the reply is primed with a few more.
TOKENS_PER_MESSAGE = 3
REPLY_PRIMING_TOKENS = 3

EncodeFn = Callable[[str], List[int]]
EncodingLoader = Callable[[str], EncodeFn]


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for a single request.

    Contains exact token counts without estimation or model-specific logic.
    """
    prompt_tokens: int
    completion_tokens: int

    def __post_init__(self):
        """Validate token counts are non-negative."""
        if self.prompt_tokens < 0:
            raise ValueError("prompt_tokens cannot be negative")
        if self.completion_tokens < 0:
            raise ValueError("completion_tokens cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def load_tiktoken_encoding(model_id: str) -> EncodeFn:
    """Resolve the tiktoken encoding for a model.

    Raises:
        ConfigurationError: If tiktoken has no encoding for the model
    """
    try:
        encoding = tiktoken.encoding_for_model(model_id)
    except KeyError:
        raise ConfigurationError(f"No tokenizer available for model: {model_id}")
    return encoding.encode_ordinary


class EncoderHandle:
    """Request-scoped tokenizer handle.

    Must be released exactly once per request. Releasing is idempotent and
    any use after release fails loudly instead of silently re-acquiring.
    """

    def __init__(self, model_id: str, encode_fn: EncodeFn):
        self.model_id = model_id
        self._encode_fn: Optional[EncodeFn] = encode_fn

    @property
    def released(self) -> bool:
        return self._encode_fn is None

    def encode(self, text: str) -> List[int]:
        """Encode text into token ids."""
        if self._encode_fn is None:
            raise ConfigurationError(f"Encoder for {self.model_id} used after release")
        return list(self._encode_fn(text))

    def count(self, text: str) -> int:
        """Count the tokens in a piece of text."""
        if not text:
            return 0
        return len(self.encode(text))

    def release(self) -> None:
        """Free the underlying encoding."""
        self._encode_fn = None


class TokenCounter:
    """Issues encoder handles for configured models."""

    def __init__(
        self,
        model_table: ModelTable = DEFAULT_MODEL_TABLE,
        encoding_loader: EncodingLoader = load_tiktoken_encoding,
    ):
        self.model_table = model_table
        self._encoding_loader = encoding_loader

    def acquire(self, model_id: str) -> EncoderHandle:
        """Acquire a tokenizer handle for a model.

        The caller owns the handle and must release it.

        Raises:
            ConfigurationError: If the model id is unknown
        """
        self.model_table.get(model_id)
        return EncoderHandle(model_id, self._encoding_loader(model_id))

    @contextmanager
    def scoped(self, model_id: str) -> Iterator[EncoderHandle]:
        """Acquire a handle that is released when the block exits."""
        handle = self.acquire(model_id)
        try:
            yield handle
        finally:
            handle.release()

    def count(self, model_id: str, text: str) -> int:
        """Count tokens in text with the tokenizer of ``model_id``."""
        with self.scoped(model_id) as encoder:
            return encoder.count(text)


def message_tokens(encoder: EncoderHandle, message: Message) -> int:
    """Token cost of one message including its framing overhead."""
    return (
        TOKENS_PER_MESSAGE
        + encoder.count(message.role.value)
        + encoder.count(message.content)
    )


def count_message_tokens(encoder: EncoderHandle, messages: Iterable[Message]) -> int:
    """Token cost of a full chat prompt, including reply priming."""
    return sum(message_tokens(encoder, m) for m in messages) + REPLY_PRIMING_TOKENS
