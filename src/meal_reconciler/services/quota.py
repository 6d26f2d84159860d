"""Daily quota gate for billable inference calls."""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo

from meal_reconciler.domain.quota import QuotaDecision, QuotaState, QuotaType

_logger = logging.getLogger(__name__)

PREMIUM_PLANS = frozenset({"premium", "lifetime", "trialing"})


@dataclass(frozen=True)
class TierLimits:
    """Daily call limits for one subscription tier."""

    vision: int
    text: int

    def limit_for(self, quota_type: QuotaType) -> int:
        if quota_type is QuotaType.VISION:
            return self.vision
        return self.text


class QuotaRepository(Protocol):
    """Persistence interface for usage counters and plans."""

    def get_usage(self, user_id: str, day: date) -> QuotaState:
        """Return usage counters for a user on a local day."""

    def increment(self, user_id: str, day: date, quota_type: QuotaType) -> QuotaState:
        """Atomically add one call to a counter and return the new state."""

    def get_plan(self, user_id: str) -> str:
        """Return the user's plan, e.g. ``free``, ``premium`` or ``lifetime``."""


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def resets_in_message(resets_at: datetime, now: datetime) -> str:
    """Human-readable countdown to the next reset."""
    remaining = max(resets_at - now, timedelta(0))
    minutes_total = int(remaining.total_seconds() // 60)
    hours, minutes = divmod(minutes_total, 60)
    if hours > 0:
        return f"Resets in {hours}h {minutes}m"
    return f"Resets in {minutes}m"


def paywall_message(quota_type: QuotaType, limit: int) -> str:
    noun = "photo analyses" if quota_type is QuotaType.VISION else "text analyses"
    return (
        f"You've used all {limit} free {noun} for today. "
        "Upgrade to premium for more."
    )


@dataclass
class QuotaService:
    """Checks and records per-user daily usage.

    Days are local to ``timezone``; counters reset at local midnight.
    """

    repository: QuotaRepository
    free_limits: TierLimits = field(default_factory=lambda: TierLimits(5, 20))
    premium_limits: TierLimits = field(default_factory=lambda: TierLimits(100, 500))
    timezone: ZoneInfo = field(default_factory=lambda: ZoneInfo("UTC"))
    fail_open: bool = True
    clock: Callable[[], datetime] = _utcnow

    def local_day(self, now: datetime | None = None) -> date:
        return (now or self.clock()).astimezone(self.timezone).date()

    def next_reset(self, now: datetime | None = None) -> datetime:
        day = self.local_day(now)
        return datetime.combine(day + timedelta(days=1), time(0), tzinfo=self.timezone)

    def check(self, user_id: str, quota_type: QuotaType) -> QuotaDecision:
        """Decide whether the user may make one more call of ``quota_type``."""
        now = self.clock()
        day = self.local_day(now)
        resets_at = self.next_reset(now)
        try:
            plan = self.repository.get_plan(user_id)
            usage = self.repository.get_usage(user_id, day)
        except Exception:
            return self._degraded(user_id, quota_type, resets_at)
        is_premium = plan.lower() in PREMIUM_PLANS
        limits = self.premium_limits if is_premium else self.free_limits
        limit = limits.limit_for(quota_type)
        used = usage.count_for(quota_type)
        remaining = max(0, limit - used)
        allowed = is_premium or used < limit
        message = None
        if not allowed:
            message = (
                f"{paywall_message(quota_type, limit)} "
                f"{resets_in_message(resets_at, now)}"
            )
            _logger.info(
                "Quota exceeded: user=%s type=%s used=%s limit=%s",
                user_id,
                quota_type.value,
                used,
                limit,
            )
        return QuotaDecision(
            allowed=allowed,
            remaining=remaining,
            limit=limit,
            resets_at=resets_at,
            is_premium=is_premium,
            message=message,
        )

    def increment(self, user_id: str, quota_type: QuotaType) -> None:
        """Record one completed call; store errors are logged, not raised."""
        day = self.local_day()
        try:
            state = self.repository.increment(user_id, day, quota_type)
        except Exception:
            _logger.warning(
                "Failed to record %s usage for %s",
                quota_type.value,
                user_id,
                exc_info=True,
            )
            return
        _logger.info(
            "Usage recorded: user=%s day=%s vision=%s text=%s",
            user_id,
            day.isoformat(),
            state.vision_count,
            state.text_count,
        )

    def status(self, user_id: str) -> dict[QuotaType, QuotaDecision]:
        return {quota_type: self.check(user_id, quota_type) for quota_type in QuotaType}

    def _degraded(
        self, user_id: str, quota_type: QuotaType, resets_at: datetime
    ) -> QuotaDecision:
        limit = self.free_limits.limit_for(quota_type)
        if self.fail_open:
            _logger.warning(
                "Quota store unavailable, allowing %s call for %s",
                quota_type.value,
                user_id,
                exc_info=True,
            )
            return QuotaDecision(
                allowed=True,
                remaining=limit,
                limit=limit,
                resets_at=resets_at,
                degraded=True,
            )
        _logger.warning(
            "Quota store unavailable, refusing %s call for %s",
            quota_type.value,
            user_id,
            exc_info=True,
        )
        return QuotaDecision(
            allowed=False,
            remaining=0,
            limit=limit,
            resets_at=resets_at,
            degraded=True,
            message="Usage limits are temporarily unavailable. Please try again.",
        )
