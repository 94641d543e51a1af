"""
Chat pipeline orchestration.

Sequences quota check, prompt budgeting, retrieval augmentation, and
completion streaming for one request, and owns the tokenizer handle for
the whole request lifecycle.

Order of operations:
1. Quota check - a user over quota never reaches tokenization or generation
2. Model resolution - budgeting and generation use the same model spec
3. Budget history into the context window
4. Ground the newest turn with retrieved documents
5. Open the generation stream (still before any response byte)
6. On stream close - record usage per policy, release the tokenizer

Ledger reads and writes are blocking SQLite calls and run in worker threads.
"""

import logging
from dataclasses import dataclass, field
from functools import partial
from typing import List, Optional

import anyio.to_thread

from . import budgeter
from .errors import PromptBudgetError
from .ledger import CHAT_FEATURE, UsageLedger
from .models import Message, ModelSpec, ModelTable, Role
from .retrieval import RetrievalAugmenter
from .streamer import CompletionStreamer, StreamOutcome, StreamSession
from .token_counter import TokenCounter, TokenUsage, count_message_tokens
from guarded_chat.config.loader import PipelineConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatRequest:
    """A validated inbound chat request."""
    model_id: str
    messages: List[Message] = field(default_factory=list)
    prompt: Optional[str] = None
    temperature: Optional[float] = None
    key: Optional[str] = None


class ChatPipeline:
    """Turns a chat request into an open, accounted stream session.

    No step is retried; every failure is surfaced to the caller.
    """

    def __init__(
        self,
        config: PipelineConfig,
        models: ModelTable,
        token_counter: TokenCounter,
        ledger: UsageLedger,
        augmenter: RetrievalAugmenter,
        streamer: CompletionStreamer,
    ):
        self.config = config
        self.models = models
        self.token_counter = token_counter
        self.ledger = ledger
        self.augmenter = augmenter
        self.streamer = streamer

    def generation_model(self, requested: ModelSpec) -> ModelSpec:
        """Model that will actually serve the request."""
        if self.config.generation_model is None:
            return requested
        generation = self.models.get(self.config.generation_model)
        if generation.id != requested.id:
            logger.warning(
                "Request for %s will be served by %s; budgeting against %s",
                requested.id, generation.id, generation.id,
            )
        return generation

    async def prepare(
        self,
        user_id: str,
        request: ChatRequest,
        request_id: Optional[str] = None,
    ) -> StreamSession:
        """Run every pre-stream step and open the generation stream.

        The returned session owns the tokenizer handle. If any step fails,
        the handle is released before the error propagates.

        Raises:
            QuotaExceeded: If the user is over quota
            ConfigurationError: For unknown models or an oversized system prompt
            PromptBudgetError: If no usable prompt fits the context window
            RetrievalError: If embedding or similarity search fails
            GenerationStreamError: If the generation request cannot be opened
        """
        await anyio.to_thread.run_sync(self.ledger.check_quota, user_id, request.model_id)

        if self.config.audit_log_enabled:
            logger.info("audit event=chat user=%s model=%s request_id=%s",
                        user_id, request.model_id, request_id)

        requested = self.models.get(request.model_id)
        model = self.generation_model(requested)
        system_prompt = request.prompt or self.config.default_system_prompt
        temperature = (
            request.temperature if request.temperature is not None
            else self.config.default_temperature
        )

        encoder = self.token_counter.acquire(model.id)
        opened = False
        try:
            budgeted = budgeter.build(
                encoder,
                model,
                system_prompt,
                self.config.reserved_completion_tokens,
                request.messages,
            )
            if budgeted.is_empty:
                logger.error(
                    "No messages fit the %d token context of %s (system prompt uses %d)",
                    model.context_token_limit, model.id, budgeted.tokens_used,
                )
                raise PromptBudgetError(
                    "The conversation is too long for the selected model; "
                    "shorten the latest message and try again"
                )

            messages = await self.augmenter.augment(budgeted.messages)

            prompt_tokens = count_message_tokens(
                encoder, [Message(role=Role.SYSTEM, content=system_prompt), *messages]
            )
            max_tokens = min(
                budgeted.max_completion_tokens,
                model.context_token_limit - prompt_tokens,
            )
            if max_tokens <= 0:
                raise PromptBudgetError(
                    f"Retrieved context uses {prompt_tokens} tokens and leaves no room "
                    f"for a completion within the {model.context_token_limit} token limit"
                )

            on_finish = partial(
                self._record_usage, user_id, request.model_id, prompt_tokens, request_id
            )
            session = await self.streamer.open(
                model,
                system_prompt,
                temperature,
                request.key,
                messages,
                max_tokens,
                encoder,
                on_finish,
            )
            opened = True
            return session
        finally:
            if not opened:
                encoder.release()

    async def aclose(self) -> None:
        """Release network resources held by the collaborators."""
        await self.augmenter.aclose()

    async def _record_usage(
        self,
        user_id: str,
        model_id: str,
        prompt_tokens: int,
        request_id: Optional[str],
        session: StreamSession,
    ) -> None:
        partial_output = session.outcome is not StreamOutcome.COMPLETED
        if partial_output and not self.config.bill_partial_completions:
            logger.info(
                "Stream for user %s ended as %s; partial usage not recorded",
                user_id, session.outcome.value,
            )
            return

        usage = TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=session.encoder.count(session.text),
        )
        await anyio.to_thread.run_sync(partial(
            self.ledger.record,
            user_id,
            model_id,
            CHAT_FEATURE,
            usage,
            partial=partial_output,
            request_id=request_id,
        ))
