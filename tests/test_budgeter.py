"""
Tests for token-budgeted prompt construction.
"""

import random

import pytest

from guarded_chat.core import budgeter
from guarded_chat.core.errors import ConfigurationError
from guarded_chat.core.models import Message, Role
from guarded_chat.core.token_counter import TokenCounter, message_tokens

from fakes import TEST_MODEL, TEST_MODELS, word_encoding


def words(n, prefix="w"):
    return " ".join(f"{prefix}{i}" for i in range(n))


class TestPromptBudgeter:
    """Test history selection against the context window."""

    def setup_method(self):
        self.encoder = TokenCounter(TEST_MODELS, encoding_loader=word_encoding).acquire("test-model")

    def teardown_method(self):
        self.encoder.release()

    def test_short_history_is_kept_whole(self):
        history = [
            Message(role=Role.USER, content="Hi"),
            Message(role=Role.ASSISTANT, content="Hello, how can I help"),
            Message(role=Role.USER, content="Tell me about funds"),
        ]

        result = budgeter.build(self.encoder, TEST_MODEL, "Be helpful", 10, history)

        assert result.messages == history
        assert not result.is_empty
        # system 3+1+2, priming 3, then 3+1+1, 3+1+5, 3+1+4
        assert result.tokens_used == 9 + 5 + 9 + 8
        assert result.max_completion_tokens == min(100 - result.tokens_used, 50)

    def test_boundary_message_is_excluded_not_truncated(self):
        history = [
            Message(role=Role.USER if i % 2 == 0 else Role.ASSISTANT, content=words(10, f"m{i}-"))
            for i in range(10)
        ]

        result = budgeter.build(self.encoder, TEST_MODEL, "Be helpful", 10, history)

        # each message costs 14; 9 + 5 * 14 = 79 fits in 90, a sixth would need 93
        assert result.messages == history[5:]
        assert result.tokens_used == 79
        boundary = history[4]
        assert result.tokens_used + message_tokens(self.encoder, boundary) + 10 > TEST_MODEL.context_token_limit
        assert all(m.content == original.content for m, original in zip(result.messages, history[5:]))

    def test_chronological_order_preserved(self):
        history = [Message(role=Role.USER, content=f"turn {i}") for i in range(6)]

        result = budgeter.build(self.encoder, TEST_MODEL, "", 0, history)

        contents = [m.content for m in result.messages]
        assert contents == [f"turn {i}" for i in range(6)]

    def test_oversized_newest_message_yields_empty_selection(self):
        history = [
            Message(role=Role.USER, content="short"),
            Message(role=Role.USER, content=words(200)),
        ]

        result = budgeter.build(self.encoder, TEST_MODEL, "Be helpful", 10, history)

        assert result.is_empty
        assert result.messages == []

    def test_scan_stops_at_first_overflow(self):
        history = [
            Message(role=Role.USER, content="tiny"),
            Message(role=Role.ASSISTANT, content=words(80)),
            Message(role=Role.USER, content="latest question"),
        ]

        result = budgeter.build(self.encoder, TEST_MODEL, "Be helpful", 10, history)

        assert [m.content for m in result.messages] == ["latest question"]

    def test_system_prompt_over_budget_is_configuration_error(self):
        with pytest.raises(ConfigurationError, match="System prompt"):
            budgeter.build(self.encoder, TEST_MODEL, words(95), 10, [])

    def test_negative_reserve_rejected(self):
        with pytest.raises(ValueError, match="reserved_completion_tokens"):
            budgeter.build(self.encoder, TEST_MODEL, "", -1, [])

    def test_max_completion_clamped_to_model_output(self):
        result = budgeter.build(self.encoder, TEST_MODEL, "", 0, [Message(role=Role.USER, content="hi")])
        assert result.max_completion_tokens == TEST_MODEL.max_output_tokens

    def test_budget_never_exceeds_context_limit(self):
        rng = random.Random(42)
        for _ in range(200):
            reserved = rng.randint(0, 60)
            history = [
                Message(role=rng.choice([Role.USER, Role.ASSISTANT]), content=words(rng.randint(0, 30)))
                for _ in range(rng.randint(0, 15))
            ]
            try:
                result = budgeter.build(self.encoder, TEST_MODEL, "Be helpful", reserved, history)
            except ConfigurationError:
                continue

            assert result.tokens_used + reserved <= TEST_MODEL.context_token_limit
            assert 0 <= result.max_completion_tokens <= TEST_MODEL.max_output_tokens
            assert result.messages == history[len(history) - len(result.messages):]
