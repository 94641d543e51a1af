"""
Unit tests for storage layer.

Tests schema creation, record insertion, and retrieval operations.
"""

import os
import sqlite3
import tempfile
from datetime import datetime, timedelta

import pytest

from guarded_chat.storage.db import get_connection
from guarded_chat.storage.models import UsageRecord
from guarded_chat.storage.repository import UsageRepository, initialize_schema


def make_record(timestamp=None, user_id="user-1", model="gpt-4", prompt=100, completion=50, **kwargs):
    return UsageRecord(
        timestamp=timestamp or datetime(2024, 1, 1, 12, 0, 0),
        user_id=user_id,
        model=model,
        feature="chat",
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=prompt + completion,
        **kwargs,
    )


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify table is created correctly."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute("""
                    SELECT name FROM sqlite_master
                    WHERE type='table' AND name='llm_usage_record'
                """)
                tables = cursor.fetchall()
                assert len(tables) == 1

                cursor = conn.execute("PRAGMA table_info(llm_usage_record)")
                column_names = [col[1] for col in cursor.fetchall()]
                assert column_names == [
                    'id', 'timestamp', 'user_id', 'model', 'feature',
                    'prompt_tokens', 'completion_tokens', 'total_tokens',
                    'partial', 'request_id'
                ]
            finally:
                conn.close()

    def test_schema_creation_is_idempotent(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)

    def test_schema_rejects_inconsistent_totals(self):
        """The table itself refuses rows where total != prompt + completion."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                with pytest.raises(sqlite3.IntegrityError):
                    conn.execute("""
                        INSERT INTO llm_usage_record
                        (timestamp, user_id, model, feature, prompt_tokens,
                         completion_tokens, total_tokens)
                        VALUES ('2024-01-01T00:00:00', 'u', 'm', 'chat', 1, 1, 5)
                    """)
            finally:
                conn.close()


class TestUsageRecord:
    """Test record invariants."""

    def test_total_must_equal_sum(self):
        with pytest.raises(ValueError, match="total_tokens"):
            UsageRecord(
                timestamp=datetime.now(),
                user_id="user-1",
                model="gpt-4",
                feature="chat",
                prompt_tokens=10,
                completion_tokens=5,
                total_tokens=20,
            )

    def test_negative_counts_rejected(self):
        with pytest.raises(ValueError, match="negative"):
            make_record(prompt=-1, completion=1)

    def test_record_is_immutable(self):
        record = make_record()
        with pytest.raises(Exception):
            record.total_tokens = 0


class TestRepository:
    """Test record insertion and queries."""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.temp_dir.name, "test.db")
        self.repository = UsageRepository(self.db_path)
        self.repository.initialize()

    def teardown_method(self):
        self.temp_dir.cleanup()

    def test_insert_and_fetch_round_trip(self):
        record = make_record(partial=True, request_id="req_123")
        self.repository.insert(record)

        fetched = self.repository.recent()

        assert fetched == [record]

    def test_recent_newest_first_with_limit(self):
        base = datetime(2024, 1, 1, 12, 0, 0)
        for hour in range(5):
            self.repository.insert(make_record(timestamp=base + timedelta(hours=hour), prompt=hour))

        fetched = self.repository.recent(limit=3)

        assert [r.prompt_tokens for r in fetched] == [4, 3, 2]

    def test_recent_filters(self):
        self.repository.insert(make_record(user_id="alice", model="gpt-4"))
        self.repository.insert(make_record(user_id="alice", model="gpt-3.5-turbo"))
        self.repository.insert(make_record(user_id="bob", model="gpt-4"))

        assert len(self.repository.recent(user_id="alice")) == 2
        assert len(self.repository.recent(model="gpt-4")) == 2
        assert len(self.repository.recent(user_id="alice", model="gpt-4")) == 1

    def test_total_tokens_since(self):
        base = datetime(2024, 1, 10, 0, 0, 0)
        self.repository.insert(make_record(timestamp=base - timedelta(days=3), prompt=1000, completion=0))
        self.repository.insert(make_record(timestamp=base, prompt=100, completion=50))
        self.repository.insert(make_record(timestamp=base + timedelta(hours=1), prompt=10, completion=5))
        self.repository.insert(make_record(timestamp=base, user_id="other", prompt=999, completion=0))

        assert self.repository.total_tokens_since("user-1", "gpt-4", base) == 165
        assert self.repository.total_tokens_since("user-1", "gpt-4", base + timedelta(days=1)) == 0
