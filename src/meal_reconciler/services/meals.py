"""Idempotent meal persistence."""

import hashlib
import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

from meal_reconciler.domain.analysis import ReconciledItem
from meal_reconciler.domain.meals import MealItemSnapshot, MealLog, SaveResult
from meal_reconciler.domain.nutrition import ZERO_MACROS, MacroProfile, round_half_up

_logger = logging.getLogger(__name__)


class MealStore(Protocol):
    """Persistence interface with an atomic keyed insert."""

    def save_if_absent(self, idempotency_key: str, meal: MealLog) -> SaveResult:
        """Insert the meal unless the key exists; return the stored meal id."""


def minute_bucket(moment: datetime) -> str:
    """UTC timestamp floored to the minute; naive values are treated as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).replace(second=0, microsecond=0).isoformat()


def build_idempotency_key(
    user_id: str,
    meal_type: str,
    photo_ref: str | None,
    totals: MacroProfile,
    logged_at: datetime,
) -> str:
    """SHA-256 over the canonical JSON form of the meal's identity."""
    payload = {
        "user_id": user_id,
        "meal_type": meal_type,
        "photo_ref": photo_ref or "",
        "totals": {
            "calories": int(round_half_up(totals.calories)),
            "protein_g": int(round_half_up(totals.protein_g)),
            "carbs_g": int(round_half_up(totals.carbs_g)),
            "fat_g": int(round_half_up(totals.fat_g)),
        },
        "logged_at": minute_bucket(logged_at),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def sum_totals(items: Iterable[ReconciledItem]) -> MacroProfile:
    total = ZERO_MACROS
    for item in items:
        total = total + item.macros
    return total


def snapshot(item: ReconciledItem) -> MealItemSnapshot:
    return MealItemSnapshot(
        name=item.name,
        grams=round_half_up(item.portion_grams, 1),
        calories=round_half_up(item.macros.calories, 1),
        protein_g=round_half_up(item.macros.protein_g, 1),
        fat_g=round_half_up(item.macros.fat_g, 1),
        carbs_g=round_half_up(item.macros.carbs_g, 1),
        confidence=item.confidence,
        food_id=item.food_id,
        note_influence=item.note_influence.value,
    )


@dataclass
class MealPersistenceService:
    """Builds meal logs from reconciled items and saves each exactly once."""

    store: MealStore

    def build_meal(  # noqa: PLR0913
        self,
        *,
        user_id: str,
        meal_type: str,
        items: list[ReconciledItem],
        logged_at: datetime,
        photo_ref: str | None = None,
        analysis_id: str | None = None,
    ) -> MealLog:
        return MealLog(
            user_id=user_id,
            meal_type=meal_type,
            logged_at=logged_at,
            totals=sum_totals(items),
            photo_ref=photo_ref,
            analysis_id=analysis_id,
            items=tuple(snapshot(item) for item in items),
        )

    def save(self, meal: MealLog) -> SaveResult:
        key = build_idempotency_key(
            meal.user_id, meal.meal_type, meal.photo_ref, meal.totals, meal.logged_at
        )
        result = self.store.save_if_absent(key, meal)
        if result.is_duplicate:
            _logger.info(
                "Duplicate meal save ignored: user=%s meal=%s",
                meal.user_id,
                result.meal_log_id,
            )
        else:
            _logger.info(
                "Meal saved: user=%s meal=%s items=%s",
                meal.user_id,
                result.meal_log_id,
                len(meal.items),
            )
        return result
