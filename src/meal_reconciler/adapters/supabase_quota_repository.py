"""Supabase repository for daily usage counters and plans."""

from dataclasses import dataclass
from datetime import UTC, date, datetime

from supabase import Client

from meal_reconciler.domain.quota import QuotaState, QuotaType
from meal_reconciler.services.quota import QuotaRepository

_ACTIVE_STATUSES = ["active", "trialing"]


@dataclass
class SupabaseQuotaRepository(QuotaRepository):
    """Counters live in ``usage_tracking``; increments go through an RPC."""

    client: Client

    def get_usage(self, user_id: str, day: date) -> QuotaState:
        response = (
            self.client.table("usage_tracking")
            .select("vision_count, text_count")
            .eq("user_id", user_id)
            .eq("usage_date", day.isoformat())
            .limit(1)
            .execute()
        )
        if not response.data:
            return QuotaState(user_id=user_id, day=day)
        return _parse_state(user_id, day, response.data[0])

    def increment(self, user_id: str, day: date, quota_type: QuotaType) -> QuotaState:
        """Upsert and increment in one statement so concurrent calls never race."""
        response = self.client.rpc(
            "increment_usage",
            {
                "p_user_id": user_id,
                "p_usage_date": day.isoformat(),
                "p_quota_type": quota_type.value,
            },
        ).execute()
        data = response.data
        if isinstance(data, list):
            data = data[0] if data else None
        if not data:
            raise RuntimeError("Failed to increment usage")
        return _parse_state(user_id, day, data)

    def get_plan(self, user_id: str) -> str:
        response = (
            self.client.table("subscriptions")
            .select("plan, status, expires_at")
            .eq("user_id", user_id)
            .in_("status", _ACTIVE_STATUSES)
            .limit(1)
            .execute()
        )
        if not response.data:
            return "free"
        row = response.data[0]
        plan = str(row.get("plan") or "free")
        if plan != "lifetime" and _is_expired(row.get("expires_at")):
            return "free"
        if row.get("status") == "trialing":
            return "trialing"
        return plan


def _parse_state(user_id: str, day: date, row: dict[str, object]) -> QuotaState:
    return QuotaState(
        user_id=user_id,
        day=day,
        vision_count=int(row.get("vision_count") or 0),
        text_count=int(row.get("text_count") or 0),
    )


def _is_expired(expires_at: object) -> bool:
    if not expires_at:
        return False
    moment = datetime.fromisoformat(str(expires_at))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment <= datetime.now(tz=UTC)
