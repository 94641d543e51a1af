"""
Per-user token quota enforcement and usage recording.

Enforcement Order:
1. Pre-flight quota check - fast-fail gate before any tokenization or generation
2. Post-flight record - exactly one append-only row per finished request
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from .errors import QuotaExceeded
from .token_counter import TokenUsage
from guarded_chat.storage.models import UsageRecord
from guarded_chat.storage.repository import UsageRepository

logger = logging.getLogger(__name__)

CHAT_FEATURE = "chat"


@dataclass(frozen=True)
class QuotaLimits:
    """Token caps for rolling windows. ``None`` disables a window."""
    daily_tokens: Optional[int] = None
    monthly_tokens: Optional[int] = None

    def __post_init__(self):
        """Validate limits are positive."""
        if self.daily_tokens is not None and self.daily_tokens <= 0:
            raise ValueError("daily_tokens must be > 0")
        if self.monthly_tokens is not None and self.monthly_tokens <= 0:
            raise ValueError("monthly_tokens must be > 0")


@dataclass(frozen=True)
class QuotaConfig:
    """Quota limits with optional per-model overrides."""
    defaults: QuotaLimits = field(default_factory=QuotaLimits)
    models: Dict[str, QuotaLimits] = field(default_factory=dict)

    def limits_for(self, model_id: str) -> QuotaLimits:
        """Get limits for a specific model, using defaults if not specified."""
        return self.models.get(model_id, self.defaults)


class UsageLedger:
    """Gatekeeper and bookkeeper for per-user token consumption."""

    def __init__(
        self,
        repository: UsageRepository,
        quota: Optional[QuotaConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repository = repository
        self.quota = quota or QuotaConfig()
        self._clock = clock

    def check_quota(self, user_id: str, model_id: str) -> None:
        """Verify a user still has quota for a model.

        Raises:
            QuotaExceeded: If the daily or monthly window is used up
        """
        limits = self.quota.limits_for(model_id)
        now = self._clock()

        windows = (
            ("daily", limits.daily_tokens, timedelta(days=1)),
            ("monthly", limits.monthly_tokens, timedelta(days=30)),
        )
        for label, limit, span in windows:
            if limit is None:
                continue
            used = self.repository.total_tokens_since(user_id, model_id, now - span)
            if used >= limit:
                logger.info(
                    "Quota exceeded for user %s on %s: %d/%d %s tokens",
                    user_id, model_id, used, limit, label,
                )
                raise QuotaExceeded(
                    f"You have reached your {label} limit of {limit} tokens for {model_id}. "
                    "Please try again later."
                )

    def record(
        self,
        user_id: str,
        model_id: str,
        feature: str,
        usage: TokenUsage,
        partial: bool = False,
        request_id: Optional[str] = None,
    ) -> UsageRecord:
        """Append one usage record for a finished request.

        Returns:
            The stored UsageRecord
        """
        record = UsageRecord(
            timestamp=self._clock(),
            user_id=user_id,
            model=model_id,
            feature=feature,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            partial=partial,
            request_id=request_id,
        )
        self.repository.insert(record)
        logger.debug(
            "Recorded usage for user %s on %s: prompt=%d completion=%d total=%d partial=%s",
            user_id, model_id, record.prompt_tokens, record.completion_tokens,
            record.total_tokens, partial,
        )
        return record
