"""
Incremental completion streaming.

Relays text chunks from the generation service to the client one at a
time, in arrival order, while accumulating the full completion text for
usage accounting.

Lifecycle of a StreamSession:
1. Opened before any response byte is written (open failures are still
   ordinary errors that can become a JSON error body)
2. Relayed chunk by chunk; the next chunk is only requested after the
   previous one has been handed to the writer
3. Closed exactly once on every exit path: upstream closed, finish hook
   invoked (awaited if it is a coroutine function), encoder released
"""

import inspect
import logging
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Protocol, Sequence

import anyio

from .errors import GenerationStreamError
from .models import Message, ModelSpec
from .token_counter import EncoderHandle

logger = logging.getLogger(__name__)


class StreamOutcome(Enum):
    """How a stream session ended."""
    COMPLETED = "completed"
    CLIENT_DISCONNECTED = "client_disconnected"
    UPSTREAM_FAILED = "upstream_failed"


class GenerationService(Protocol):
    """Opaque token-streaming text generation service."""

    async def open(
        self,
        model: ModelSpec,
        system_prompt: str,
        temperature: float,
        credential: Optional[str],
        messages: Sequence[Message],
        max_tokens: int,
    ) -> AsyncIterator[str]:
        ...


FinishHook = Callable[["StreamSession"], Optional[Awaitable[None]]]


class StreamSession:
    """Request-scoped stream that owns the upstream and the encoder.

    Not restartable: ``relay`` may be iterated once.
    """

    def __init__(
        self,
        upstream: AsyncIterator[str],
        encoder: EncoderHandle,
        on_finish: Optional[FinishHook] = None,
    ):
        self._upstream = upstream
        self.encoder = encoder
        self._on_finish = on_finish
        self._parts: List[str] = []
        self._started = False
        self._closed = False
        self.outcome: Optional[StreamOutcome] = None
        self.error: Optional[GenerationStreamError] = None

    @property
    def text(self) -> str:
        """Completion text relayed so far."""
        return "".join(self._parts)

    @property
    def chunk_count(self) -> int:
        return len(self._parts)

    @property
    def closed(self) -> bool:
        return self._closed

    async def relay(self) -> AsyncIterator[str]:
        """Yield upstream chunks in order until the stream is done.

        An upstream failure ends the stream early; it is logged and kept on
        ``self.error`` because the response status has already been sent.
        Leaving the loop for any other reason (client disconnect,
        cancellation) counts as a disconnect.
        """
        if self._started:
            raise RuntimeError("StreamSession.relay() can only be iterated once")
        self._started = True

        outcome = StreamOutcome.CLIENT_DISCONNECTED
        iterator = self._upstream.__aiter__()
        try:
            while True:
                try:
                    chunk = await iterator.__anext__()
                except StopAsyncIteration:
                    outcome = StreamOutcome.COMPLETED
                    break
                except Exception as e:
                    logger.error(
                        "Generation stream failed after %d chunks: %s",
                        self.chunk_count, e, exc_info=True,
                    )
                    self.error = GenerationStreamError(f"Generation stream failed: {e}")
                    outcome = StreamOutcome.UPSTREAM_FAILED
                    break
                if not chunk:
                    continue
                self._parts.append(chunk)
                yield chunk
        finally:
            self.outcome = outcome
            with anyio.CancelScope(shield=True):
                await self.close()

    async def close(self) -> None:
        """Release everything the session owns. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        if self.outcome is None:
            self.outcome = StreamOutcome.CLIENT_DISCONNECTED

        try:
            await _close_upstream(self._upstream)
        finally:
            try:
                if self._on_finish is not None:
                    result = self._on_finish(self)
                    if inspect.isawaitable(result):
                        await result
            finally:
                self.encoder.release()


async def _close_upstream(upstream: object) -> None:
    closer = getattr(upstream, "aclose", None) or getattr(upstream, "close", None)
    if closer is None:
        return
    result = closer()
    if inspect.isawaitable(result):
        await result


class CompletionStreamer:
    """Opens generation streams and wraps them in sessions."""

    def __init__(self, service: GenerationService):
        self.service = service

    async def open(
        self,
        model: ModelSpec,
        system_prompt: str,
        temperature: float,
        credential: Optional[str],
        messages: Sequence[Message],
        max_tokens: int,
        encoder: EncoderHandle,
        on_finish: Optional[FinishHook] = None,
    ) -> StreamSession:
        """Issue a new generation request.

        The returned session takes ownership of ``encoder``. If opening
        fails, ownership stays with the caller.

        Raises:
            GenerationStreamError: If the generation service rejects the request
        """
        try:
            upstream = await self.service.open(
                model, system_prompt, temperature, credential, messages, max_tokens
            )
        except GenerationStreamError:
            raise
        except Exception as e:
            raise GenerationStreamError(f"Failed to open generation stream: {e}") from e
        return StreamSession(upstream, encoder, on_finish)
