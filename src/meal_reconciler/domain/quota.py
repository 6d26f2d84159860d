"""Quota domain models."""

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum


class QuotaType(Enum):
    """Billable call categories."""

    VISION = "vision"
    TEXT = "text"


@dataclass(frozen=True)
class QuotaState:
    """Per-user usage counters for one local day."""

    user_id: str
    day: date
    vision_count: int = 0
    text_count: int = 0

    def count_for(self, quota_type: QuotaType) -> int:
        if quota_type is QuotaType.VISION:
            return self.vision_count
        return self.text_count


@dataclass(frozen=True)
class QuotaDecision:
    """Whether a user may make another call of a given type today."""

    allowed: bool
    remaining: int
    limit: int
    resets_at: datetime
    is_premium: bool = False
    degraded: bool = False
    message: str | None = None
