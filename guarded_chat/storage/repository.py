"""
Repository pattern for data access.

Handles database operations and data persistence logic.
"""

from datetime import datetime
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageRecord

_SELECT_COLUMNS = """
    SELECT timestamp, user_id, model, feature, prompt_tokens,
           completion_tokens, total_tokens, partial, request_id
    FROM llm_usage_record
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the llm_usage_record table if it doesn't exist.

    This creates an append-only ledger for immutable usage records.
    No UPDATE or DELETE operations should ever be performed on this table.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS llm_usage_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                user_id TEXT NOT NULL,
                model TEXT NOT NULL,
                feature TEXT NOT NULL,
                prompt_tokens INTEGER NOT NULL,
                completion_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                partial INTEGER NOT NULL DEFAULT 0,
                request_id TEXT,
                CHECK (total_tokens = prompt_tokens + completion_tokens)
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_llm_usage_record_user_model
            ON llm_usage_record (user_id, model, timestamp)
        """)
        conn.commit()
    finally:
        conn.close()


def _row_to_record(row) -> UsageRecord:
    return UsageRecord(
        timestamp=datetime.fromisoformat(row[0]),
        user_id=row[1],
        model=row[2],
        feature=row[3],
        prompt_tokens=row[4],
        completion_tokens=row[5],
        total_tokens=row[6],
        partial=bool(row[7]),
        request_id=row[8],
    )


class UsageRepository:
    """Repository for reading and appending usage records.

    Every write is a single INSERT in its own transaction, so concurrent
    requests for the same user append rows rather than racing on a counter.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize(self) -> None:
        initialize_schema(self.db_path)

    def insert(self, record: UsageRecord) -> None:
        """Append a single usage record atomically.

        Args:
            record: The usage record to store
        """
        conn = get_connection(self.db_path)
        try:
            with conn:
                conn.execute("""
                    INSERT INTO llm_usage_record
                    (timestamp, user_id, model, feature, prompt_tokens,
                     completion_tokens, total_tokens, partial, request_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    record.timestamp.isoformat(),
                    record.user_id,
                    record.model,
                    record.feature,
                    record.prompt_tokens,
                    record.completion_tokens,
                    record.total_tokens,
                    int(record.partial),
                    record.request_id,
                ))
        finally:
            conn.close()

    def total_tokens_since(self, user_id: str, model: str, since: datetime) -> int:
        """Sum of total_tokens recorded for a user and model since a point in time."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT COALESCE(SUM(total_tokens), 0)
                FROM llm_usage_record
                WHERE user_id = ? AND model = ? AND timestamp >= ?
            """, (user_id, model, since.isoformat()))
            return int(cursor.fetchone()[0])
        finally:
            conn.close()

    def recent(
        self,
        user_id: Optional[str] = None,
        model: Optional[str] = None,
        limit: int = 100,
    ) -> List[UsageRecord]:
        """Fetch recent usage records, newest first.

        Args:
            user_id: Optional filter for a specific user
            model: Optional filter for a specific model
            limit: Maximum number of records to return

        Returns:
            List of usage records ordered by timestamp (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = _SELECT_COLUMNS
            params: list = []
            conditions = []

            if user_id:
                conditions.append("user_id = ?")
                params.append(user_id)
            if model:
                conditions.append("model = ?")
                params.append(model)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
            params.append(limit)

            cursor = conn.execute(query, params)
            return [_row_to_record(row) for row in cursor.fetchall()]
        finally:
            conn.close()
