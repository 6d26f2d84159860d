"""Per-user portion history."""

from dataclasses import dataclass


@dataclass(frozen=True)
class PortionPrior:
    """Running average portion a user logs for a food."""

    user_id: str
    food_name: str
    avg_portion_grams: float
    sample_count: int
