"""
FastAPI application for the chat pipeline.

Exposes POST /api/chat, which streams a retrieval-grounded completion as a
chunked text/event-stream response. Errors raised before the stream starts
are returned as JSON bodies with the status code of their kind; once the
stream has started the status can no longer change.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from starlette.background import BackgroundTask

from .auth import ApiKeyAuthenticator
from guarded_chat.config.loader import Settings
from guarded_chat.core.errors import PipelineError, error_response_body, status_code_for
from guarded_chat.core.ledger import UsageLedger
from guarded_chat.core.models import Message
from guarded_chat.core.pipeline import ChatPipeline, ChatRequest
from guarded_chat.core.retrieval import RetrievalAugmenter
from guarded_chat.core.streamer import CompletionStreamer
from guarded_chat.core.token_counter import TokenCounter
from guarded_chat.sdk import OpenAIEmbedder, OpenAIGenerator, QdrantSearch
from guarded_chat.storage.repository import UsageRepository

logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Connection": "keep-alive",
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


class MessageBody(BaseModel):
    """A single message in the request history."""
    role: Literal["system", "user", "assistant"]
    content: str


class ModelBody(BaseModel):
    """Model selection sent by the client."""
    id: str
    name: Optional[str] = None


class ChatBody(BaseModel):
    """Request body for POST /api/chat."""
    model: ModelBody
    messages: List[MessageBody]
    key: Optional[str] = None
    prompt: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)

    def to_request(self) -> ChatRequest:
        return ChatRequest(
            model_id=self.model.id,
            messages=[Message.from_dict(m.model_dump()) for m in self.messages],
            prompt=self.prompt,
            temperature=self.temperature,
            key=self.key,
        )


def build_pipeline(settings: Settings) -> ChatPipeline:
    """Wire the pipeline to the OpenAI and Qdrant collaborators."""
    repository = UsageRepository(settings.db_path)
    repository.initialize()

    augmenter = RetrievalAugmenter(
        embedder=OpenAIEmbedder(),
        search=QdrantSearch(settings.retrieval.url, api_key=settings.retrieval.api_key),
        collection=settings.retrieval.collection,
        limit=settings.retrieval.limit,
    )
    return ChatPipeline(
        config=settings.pipeline,
        models=settings.models,
        token_counter=TokenCounter(settings.models),
        ledger=UsageLedger(repository, settings.quota),
        augmenter=augmenter,
        streamer=CompletionStreamer(OpenAIGenerator()),
    )


def create_app(
    settings: Optional[Settings] = None,
    pipeline: Optional[ChatPipeline] = None,
    authenticator: Optional[ApiKeyAuthenticator] = None,
) -> FastAPI:
    """Create the chat API application.

    A pipeline built here is owned by the app and closed on shutdown; an
    injected one is left to its owner.

    Args:
        settings: Application settings (defaults to ``Settings.default()``)
        pipeline: Pre-built pipeline; built from settings at startup if omitted
        authenticator: Token authenticator; built from ``settings.api_keys`` if omitted

    Returns:
        Configured FastAPI application
    """
    settings = settings or Settings.default()
    authenticator = authenticator or ApiKeyAuthenticator(settings.api_keys)
    owns_pipeline = pipeline is None
    state = {"pipeline": pipeline}

    def active_pipeline() -> ChatPipeline:
        if state["pipeline"] is None:
            logger.info("Building chat pipeline (db=%s, collection=%s)",
                        settings.db_path, settings.retrieval.collection)
            state["pipeline"] = build_pipeline(settings)
        return state["pipeline"]

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active_pipeline()
        yield
        logger.info("Chat API shutting down")
        if owns_pipeline and state["pipeline"] is not None:
            await state["pipeline"].aclose()

    app = FastAPI(
        title="Guarded Chat",
        description="Token-budgeted, retrieval-augmented streaming chat",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        logger.warning("Chat request rejected (%s): %s", exc.kind.type_name, exc.message)
        return JSONResponse(status_code=exc.status_code, content=error_response_body(exc))

    async def current_user(authorization: Optional[str] = Header(default=None)) -> str:
        """Resolve the bearer token before the request body is validated."""
        return authenticator.authenticate(authorization)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok"}

    @app.post("/api/chat")
    async def chat(body: ChatBody, user_id: str = Depends(current_user)):
        """Stream a completion for the given history."""
        request_id = uuid.uuid4().hex
        try:
            session = await active_pipeline().prepare(user_id, body.to_request(), request_id=request_id)
        except PipelineError as e:
            logger.warning("Chat request %s rejected (%s): %s",
                           request_id, e.kind.type_name, e.message)
            return JSONResponse(status_code=e.status_code, content=error_response_body(e))
        except Exception as e:
            logger.error("Chat request %s failed: %s", request_id, e, exc_info=True)
            return JSONResponse(status_code=status_code_for(e), content=error_response_body(e))

        return StreamingResponse(
            session.relay(),
            status_code=200,
            headers=STREAM_HEADERS,
            media_type="text/event-stream",
            background=BackgroundTask(session.close),
        )

    return app
