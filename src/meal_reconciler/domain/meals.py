"""Domain models for saved meals."""

from dataclasses import dataclass, field
from datetime import datetime

from meal_reconciler.domain.nutrition import MacroProfile


@dataclass(frozen=True)
class MealItemSnapshot:
    """Snapshot of a saved meal item with macros."""

    name: str
    grams: float
    calories: float
    protein_g: float
    fat_g: float
    carbs_g: float
    confidence: int
    food_id: str | None = None
    note_influence: str = "none"


@dataclass(frozen=True)
class MealLog:
    """Meal ready to be persisted."""

    user_id: str
    meal_type: str
    logged_at: datetime
    totals: MacroProfile
    photo_ref: str | None = None
    analysis_id: str | None = None
    items: tuple[MealItemSnapshot, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SaveResult:
    """Outcome of an idempotent save."""

    meal_log_id: str
    is_duplicate: bool


@dataclass(frozen=True)
class ItemEdit:
    """User edit applied to a reconciled item before saving."""

    item_id: str
    portion_grams: float | None = None
    remove: bool = False
