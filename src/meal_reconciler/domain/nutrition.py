"""Nutrition domain models."""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal


@dataclass(frozen=True)
class MacroProfile:
    """Macronutrient profile for a food item or a whole meal."""

    calories: float
    protein_g: float
    fat_g: float
    carbs_g: float

    def scaled(self, ratio: float) -> "MacroProfile":
        """Return the profile multiplied by a portion ratio."""
        return MacroProfile(
            calories=self.calories * ratio,
            protein_g=self.protein_g * ratio,
            fat_g=self.fat_g * ratio,
            carbs_g=self.carbs_g * ratio,
        )

    def for_grams(self, grams: float) -> "MacroProfile":
        """Treat the profile as per-100g values and scale to a portion."""
        return self.scaled(grams / 100.0)

    def __add__(self, other: "MacroProfile") -> "MacroProfile":
        return MacroProfile(
            calories=self.calories + other.calories,
            protein_g=self.protein_g + other.protein_g,
            fat_g=self.fat_g + other.fat_g,
            carbs_g=self.carbs_g + other.carbs_g,
        )


ZERO_MACROS = MacroProfile(calories=0.0, protein_g=0.0, fat_g=0.0, carbs_g=0.0)


def round_half_up(value: float, digits: int = 0) -> float:
    """Round with halves away from zero, e.g. ``90.5 -> 91``."""
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))
