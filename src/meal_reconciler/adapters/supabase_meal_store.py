"""Supabase store for idempotent meal saves."""

from dataclasses import dataclass

from supabase import Client

from meal_reconciler.domain.meals import MealLog, SaveResult
from meal_reconciler.services.meals import MealStore


@dataclass
class SupabaseMealStore(MealStore):
    """Writes the meal and its items in one transaction via ``save_meal_idempotent``.

    The function inserts under a unique idempotency key and returns the existing
    row when the key is already present.
    """

    client: Client

    def save_if_absent(self, idempotency_key: str, meal: MealLog) -> SaveResult:
        response = self.client.rpc(
            "save_meal_idempotent",
            {
                "p_idempotency_key": idempotency_key,
                "p_user_id": meal.user_id,
                "p_meal_type": meal.meal_type,
                "p_logged_at": meal.logged_at.isoformat(),
                "p_photo_ref": meal.photo_ref,
                "p_analysis_id": meal.analysis_id,
                "p_total_calories": meal.totals.calories,
                "p_total_protein_g": meal.totals.protein_g,
                "p_total_fat_g": meal.totals.fat_g,
                "p_total_carbs_g": meal.totals.carbs_g,
                "p_items": [
                    {
                        "food_id": item.food_id,
                        "name_snapshot": item.name,
                        "portion_grams": item.grams,
                        "item_calories": item.calories,
                        "item_protein_g": item.protein_g,
                        "item_fat_g": item.fat_g,
                        "item_carbs_g": item.carbs_g,
                        "confidence": item.confidence,
                        "note_influence": item.note_influence,
                    }
                    for item in meal.items
                ],
            },
        ).execute()
        data = response.data
        if isinstance(data, list):
            data = data[0] if data else None
        if not data or not data.get("meal_id"):
            raise RuntimeError("Failed to save meal log")
        return SaveResult(
            meal_log_id=str(data["meal_id"]),
            is_duplicate=bool(data.get("is_duplicate")),
        )
