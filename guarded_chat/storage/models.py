"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one chat request's token consumption.

    Append-only rows that form an auditable per-user ledger.
    Once written, these records must never be modified.
    """
    timestamp: datetime
    user_id: str
    model: str
    feature: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    partial: bool = False
    request_id: Optional[str] = None

    def __post_init__(self):
        """Validate token arithmetic."""
        if self.prompt_tokens < 0 or self.completion_tokens < 0:
            raise ValueError("token counts cannot be negative")
        if self.total_tokens != self.prompt_tokens + self.completion_tokens:
            raise ValueError(
                f"total_tokens ({self.total_tokens}) must equal prompt_tokens "
                f"({self.prompt_tokens}) + completion_tokens ({self.completion_tokens})"
            )
