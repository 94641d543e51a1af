"""
OpenAI collaborators for the chat pipeline.

Embeds text for retrieval and opens streaming chat completions.
All failures are loud so the pipeline can map them to error responses.
"""

import os
from typing import List, Optional, Sequence

from openai import AsyncOpenAI

from ..core.models import Message, ModelSpec, Role, to_dicts

DEFAULT_EMBEDDING_MODEL = "text-embedding-ada-002"


class OpenAIEmbedder:
    """Embeds text with the OpenAI embeddings endpoint."""

    def __init__(self, model: str = DEFAULT_EMBEDDING_MODEL, api_key: Optional[str] = None):
        """Initialize the embedder.

        Args:
            model: Embedding model name
            api_key: API key (defaults to OPENAI_API_KEY)

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        self.client = AsyncOpenAI(api_key=api_key or os.getenv("OPENAI_API_KEY"))

    async def embed(self, text: str) -> List[float]:
        """Return the embedding vector for ``text``.

        Raises:
            OpenAI API errors: Propagated without modification
            ValueError: If the response carries no embedding
        """
        response = await self.client.embeddings.create(model=self.model, input=text)
        if not response.data:
            raise ValueError("OpenAI response missing embedding data")
        return list(response.data[0].embedding)

    async def aclose(self) -> None:
        await self.client.close()


class OpenAIGenerator:
    """Streams chat completions from OpenAI.

    A credential supplied with the request takes precedence over the
    server's own key.
    """

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")

    def _client_for(self, credential: Optional[str]) -> AsyncOpenAI:
        return AsyncOpenAI(api_key=credential or self.api_key)

    async def open(
        self,
        model: ModelSpec,
        system_prompt: str,
        temperature: float,
        credential: Optional[str],
        messages: Sequence[Message],
        max_tokens: int,
    ) -> "CompletionStream":
        """Open a streaming completion and return its text deltas.

        The request is sent (and rejected, if it is going to be) before
        this coroutine returns. A rejected request closes its client.
        """
        client = self._client_for(credential)
        try:
            stream = await client.chat.completions.create(
                model=model.id,
                messages=to_dicts([Message(role=Role.SYSTEM, content=system_prompt), *messages]),
                temperature=temperature,
                max_tokens=max_tokens,
                stream=True,
            )
        except BaseException:
            await client.close()
            raise
        return CompletionStream(stream, client)


class CompletionStream:
    """Text deltas of one streamed completion.

    Owns both the response stream and the per-request client; ``aclose``
    releases them whether or not iteration ever started.
    """

    def __init__(self, stream, client: AsyncOpenAI):
        self._stream = stream
        self._client = client
        self._chunks = None
        self._closed = False

    def __aiter__(self) -> "CompletionStream":
        return self

    async def __anext__(self) -> str:
        if self._chunks is None:
            self._chunks = self._stream.__aiter__()
        while True:
            try:
                chunk = await self._chunks.__anext__()
            except StopAsyncIteration:
                await self.aclose()
                raise
            choice = chunk.choices[0] if chunk.choices else None
            if choice is None or choice.delta is None:
                continue
            if choice.delta.content:
                return choice.delta.content

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._stream.close()
        finally:
            await self._client.close()
