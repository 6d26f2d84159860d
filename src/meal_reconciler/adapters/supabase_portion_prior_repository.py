"""Supabase repository for per-user portion priors."""

from dataclasses import dataclass

from supabase import Client

from meal_reconciler.domain.priors import PortionPrior
from meal_reconciler.services.portions import PortionPriorRepository


@dataclass
class SupabasePortionPriorRepository(PortionPriorRepository):
    """Priors live in ``user_portion_priors``; updates go through an RPC."""

    client: Client

    def get_prior(self, user_id: str, food_name: str) -> PortionPrior | None:
        response = (
            self.client.table("user_portion_priors")
            .select("user_id, food_name, avg_portion_grams, sample_count")
            .eq("user_id", user_id)
            .eq("food_name", food_name.lower())
            .limit(1)
            .execute()
        )
        if not response.data:
            return None
        row = response.data[0]
        return PortionPrior(
            user_id=str(row["user_id"]),
            food_name=str(row["food_name"]),
            avg_portion_grams=float(row.get("avg_portion_grams") or 0.0),
            sample_count=int(row.get("sample_count") or 0),
        )

    def record_portion(self, user_id: str, food_name: str, grams: float) -> None:
        """Fold one portion into the running mean inside the database."""
        self.client.rpc(
            "update_portion_prior",
            {
                "p_user_id": user_id,
                "p_food_name": food_name.lower(),
                "p_portion_grams": grams,
            },
        ).execute()
