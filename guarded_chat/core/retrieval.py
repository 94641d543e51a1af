"""
Retrieval-augmented prompt construction.

Grounds the newest user turn in documents found by vector similarity
search and folds them into a synthetic system message.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

from .errors import RetrievalError
from .models import Message, Role

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 8

PointId = Union[int, str]


@dataclass(frozen=True)
class RetrievalResult:
    """One nearest-neighbour hit from the similarity index."""
    score: float
    payload: Dict[str, Any] = field(default_factory=dict)
    id: Optional[PointId] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.id is not None:
            data["id"] = self.id
        data["score"] = self.score
        data["payload"] = self.payload
        return data


class Embedder(Protocol):
    """Produces a fixed-dimension vector for a piece of text."""

    async def embed(self, text: str) -> List[float]:
        ...


class SimilaritySearch(Protocol):
    """Nearest-neighbour search over a named collection."""

    async def search(
        self, collection: str, vector: List[float], limit: int
    ) -> List[RetrievalResult]:
        ...


def grounding_content(question: str, results: Sequence[RetrievalResult]) -> str:
    """Render the synthetic grounding message text."""
    articles = json.dumps([r.to_dict() for r in results], ensure_ascii=False)
    return (
        f"The user is asking about {question}.\n"
        f"Here are some related articles: {articles}\n"
        "Provide the user with the information they need."
    )


class RetrievalAugmenter:
    """Injects similarity search results into a budgeted message list."""

    def __init__(
        self,
        embedder: Embedder,
        search: SimilaritySearch,
        collection: str,
        limit: int = DEFAULT_TOP_K,
    ):
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self.embedder = embedder
        self.search = search
        self.collection = collection
        self.limit = limit

    async def retrieve(self, text: str) -> List[RetrievalResult]:
        """Embed ``text`` and fetch its nearest neighbours.

        Raises:
            RetrievalError: If embedding or search fails
        """
        try:
            vector = await self.embedder.embed(text)
            results = await self.search.search(self.collection, vector, self.limit)
        except RetrievalError:
            raise
        except Exception as e:
            logger.error("Retrieval from %s failed: %s", self.collection, e, exc_info=True)
            raise RetrievalError(f"Retrieval failed: {e}") from e
        return list(results)

    async def augment(self, messages: Sequence[Message]) -> List[Message]:
        """Return a new message list grounded in retrieved documents.

        With more than one result the synthetic message replaces only the
        last message. With zero or one result the whole history is dropped
        in favour of the single synthetic turn.

        Raises:
            RetrievalError: If there is nothing to retrieve for, or retrieval fails
        """
        if not messages:
            raise RetrievalError("Cannot augment an empty message list")

        question = messages[-1].content
        results = await self.retrieve(question)
        logger.debug("Retrieved %d results from %s", len(results), self.collection)

        synthetic = Message(role=Role.SYSTEM, content=grounding_content(question, results))
        if len(results) > 1:
            return [*messages[:-1], synthetic]
        return [synthetic]

    async def aclose(self) -> None:
        """Close collaborators that hold network connections."""
        for collaborator in (self.embedder, self.search):
            closer = getattr(collaborator, "aclose", None)
            if closer is not None:
                await closer()
