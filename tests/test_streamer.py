"""
Tests for completion streaming and stream session cleanup.
"""

import asyncio

import pytest

from guarded_chat.core.errors import GenerationStreamError
from guarded_chat.core.models import Message, Role
from guarded_chat.core.streamer import CompletionStreamer, StreamOutcome, StreamSession
from guarded_chat.core.token_counter import TokenCounter

from fakes import TEST_MODEL, TEST_MODELS, FakeGenerationService, FakeUpstream, word_encoding


def new_encoder():
    return TokenCounter(TEST_MODELS, encoding_loader=word_encoding).acquire("test-model")


class TestStreamSession:
    """Test relay ordering and exactly-once cleanup."""

    def setup_method(self):
        self.encoder = new_encoder()
        self.finished = []

    def on_finish(self, session):
        assert not session.encoder.released
        self.finished.append((session.outcome, session.text))

    def drain(self, session):
        async def _drain():
            return [chunk async for chunk in session.relay()]
        return asyncio.run(_drain())

    def test_chunks_relayed_in_order_and_accumulated(self):
        upstream = FakeUpstream(["The ", "answer ", "is ", "42"])
        session = StreamSession(upstream, self.encoder, self.on_finish)

        chunks = self.drain(session)

        assert chunks == ["The ", "answer ", "is ", "42"]
        assert session.text == "The answer is 42"
        assert session.chunk_count == 4
        assert session.outcome == StreamOutcome.COMPLETED
        assert self.finished == [(StreamOutcome.COMPLETED, "The answer is 42")]
        assert upstream.closed
        assert self.encoder.released

    def test_next_chunk_requested_only_after_previous_consumed(self):
        upstream = FakeUpstream(["a", "b", "c"])
        session = StreamSession(upstream, self.encoder)

        async def _step():
            relay = session.relay()
            first = await relay.__anext__()
            requested_after_first = upstream.requested
            rest = [chunk async for chunk in relay]
            return first, requested_after_first, rest

        first, requested_after_first, rest = asyncio.run(_step())

        assert first == "a"
        assert requested_after_first == 1
        assert rest == ["b", "c"]

    def test_empty_chunks_skipped(self):
        session = StreamSession(FakeUpstream(["a", "", "b"]), self.encoder)
        assert self.drain(session) == ["a", "b"]

    def test_upstream_failure_ends_stream_with_partial_text(self):
        upstream = FakeUpstream(["partial ", "answer ", "never"], fail_after=2)
        session = StreamSession(upstream, self.encoder, self.on_finish)

        chunks = self.drain(session)

        assert chunks == ["partial ", "answer "]
        assert session.outcome == StreamOutcome.UPSTREAM_FAILED
        assert isinstance(session.error, GenerationStreamError)
        assert self.finished == [(StreamOutcome.UPSTREAM_FAILED, "partial answer ")]
        assert upstream.closed
        assert self.encoder.released

    def test_client_disconnect_stops_stream_and_cleans_up(self):
        upstream = FakeUpstream(["one ", "two ", "three"])
        session = StreamSession(upstream, self.encoder, self.on_finish)

        async def _disconnect():
            relay = session.relay()
            await relay.__anext__()
            await relay.aclose()

        asyncio.run(_disconnect())

        assert upstream.requested == 1
        assert session.outcome == StreamOutcome.CLIENT_DISCONNECTED
        assert self.finished == [(StreamOutcome.CLIENT_DISCONNECTED, "one ")]
        assert upstream.closed
        assert self.encoder.released

    def test_close_without_relay_cleans_up_once(self):
        upstream = FakeUpstream(["never sent"])
        session = StreamSession(upstream, self.encoder, self.on_finish)

        async def _close_twice():
            await session.close()
            await session.close()

        asyncio.run(_close_twice())

        assert session.closed
        assert len(self.finished) == 1
        assert upstream.closed
        assert self.encoder.released

    def test_encoder_released_even_if_finish_hook_fails(self):
        def failing_hook(session):
            raise RuntimeError("ledger unavailable")

        session = StreamSession(FakeUpstream(["x"]), self.encoder, failing_hook)

        with pytest.raises(RuntimeError, match="ledger unavailable"):
            self.drain(session)
        assert self.encoder.released

    def test_async_finish_hook_is_awaited(self):
        finished = []

        async def async_hook(session):
            await asyncio.sleep(0)
            assert not session.encoder.released
            finished.append(session.outcome)

        session = StreamSession(FakeUpstream(["x"]), self.encoder, async_hook)
        self.drain(session)

        assert finished == [StreamOutcome.COMPLETED]
        assert self.encoder.released

    def test_relay_is_not_restartable(self):
        session = StreamSession(FakeUpstream(["x"]), self.encoder)
        self.drain(session)

        with pytest.raises(RuntimeError, match="only be iterated once"):
            self.drain(session)


class TestCompletionStreamer:
    """Test opening generation requests."""

    def test_open_passes_request_through(self):
        service = FakeGenerationService(chunks=["hi"])
        streamer = CompletionStreamer(service)
        encoder = new_encoder()
        messages = [Message(role=Role.USER, content="Hello")]

        session = asyncio.run(streamer.open(TEST_MODEL, "sys", 0.3, "sk-user", messages, 40, encoder))

        call = service.calls[0]
        assert call["model"] is TEST_MODEL
        assert call["system_prompt"] == "sys"
        assert call["temperature"] == 0.3
        assert call["credential"] == "sk-user"
        assert call["messages"] == messages
        assert call["max_tokens"] == 40
        assert session.encoder is encoder

    def test_open_failure_raises_generation_error_and_keeps_encoder(self):
        service = FakeGenerationService(open_error=ConnectionError("refused"))
        streamer = CompletionStreamer(service)
        encoder = new_encoder()

        with pytest.raises(GenerationStreamError, match="Failed to open"):
            asyncio.run(streamer.open(TEST_MODEL, "sys", 1.0, None, [], 40, encoder))
        assert not encoder.released
        encoder.release()
