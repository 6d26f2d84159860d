"""Supabase repository for the canonical food catalog."""

from dataclasses import dataclass

from supabase import Client

from meal_reconciler.domain.catalog import CanonicalFoodRecord
from meal_reconciler.domain.nutrition import MacroProfile
from meal_reconciler.services.identity import CatalogRepository

_COLUMNS = (
    "id, name, calories_per_100g, protein_per_100g, fat_per_100g, "
    "carbs_per_100g, region_tags, dietary_tags"
)
_MIN_WORD_LENGTH = 3


@dataclass
class SupabaseCatalogRepository(CatalogRepository):
    """Supabase implementation of catalog search."""

    client: Client

    def search(
        self, name: str, region: str | None = None, limit: int = 10
    ) -> list[CanonicalFoodRecord]:
        """Search by name containment, falling back to any matching word."""
        query = (
            self.client.table("food_items")
            .select(_COLUMNS)
            .ilike("name", f"%{name}%")
        )
        if region:
            query = query.contains("region_tags", [region.lower()])
        response = query.limit(limit).execute()
        rows = response.data or []
        if not rows:
            words = [word for word in name.split() if len(word) >= _MIN_WORD_LENGTH]
            if len(words) > 1:
                condition = ",".join(f"name.ilike.%{word}%" for word in words)
                query = self.client.table("food_items").select(_COLUMNS).or_(condition)
                if region:
                    query = query.contains("region_tags", [region.lower()])
                rows = query.limit(limit).execute().data or []
        return [_parse_record(row) for row in rows]


def _parse_record(row: dict[str, object]) -> CanonicalFoodRecord:
    return CanonicalFoodRecord(
        id=str(row["id"]),
        name=str(row["name"]),
        per_100g=MacroProfile(
            calories=float(row.get("calories_per_100g") or 0.0),
            protein_g=float(row.get("protein_per_100g") or 0.0),
            fat_g=float(row.get("fat_per_100g") or 0.0),
            carbs_g=float(row.get("carbs_per_100g") or 0.0),
        ),
        region_tags=tuple(row.get("region_tags") or ()),
        dietary_tags=tuple(row.get("dietary_tags") or ()),
    )
