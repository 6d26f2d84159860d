"""Composite confidence scoring for reconciled items."""

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from meal_reconciler.domain.analysis import ConfidenceFactors, ReconciledItem

WEIGHTS: dict[str, Decimal] = {
    "model_confidence": Decimal("0.4"),
    "mapping_confidence": Decimal("0.3"),
    "portion_heuristic": Decimal("0.2"),
    "context_score": Decimal("0.1"),
}

VERIFICATION_THRESHOLD = 70
WARNING_THRESHOLD = 80
PLACEHOLDER_CONFIDENCE = 25
UNKNOWN_PORTION_SCORE = 50


class ConfidenceLevel(Enum):
    """Bands shown next to an item's score."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    VERY_LOW = "very-low"


_LEVEL_MESSAGES = {
    ConfidenceLevel.HIGH: "Analysis looks accurate",
    ConfidenceLevel.MEDIUM: "Please verify the details",
    ConfidenceLevel.LOW: "Low confidence, please review carefully",
    ConfidenceLevel.VERY_LOW: "Unable to identify accurately, manual entry recommended",
}


def portion_heuristic(detected_grams: float, expected_grams: float | None) -> int:
    """Score how typical a portion is compared to its expected size."""
    if not expected_grams:
        return UNKNOWN_PORTION_SCORE
    ratio = detected_grams / expected_grams
    if 0.8 <= ratio <= 1.2:
        return 95
    if 0.6 <= ratio <= 1.5:
        return 80
    if 0.4 <= ratio <= 2.0:
        return 60
    return 40


def context_score(region: str | None) -> int:
    return 90 if region else 70


def weighted_score(factors: ConfidenceFactors) -> int:
    """Weighted sum of the factors, rounded half-up and clamped to 0-100."""
    total = sum(
        (
            weight * Decimal(str(getattr(factors, name)))
            for name, weight in WEIGHTS.items()
        ),
        Decimal(0),
    )
    rounded = int(total.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return max(0, min(100, rounded))


def confidence_level(score: int) -> ConfidenceLevel:
    if score >= 85:
        return ConfidenceLevel.HIGH
    if score >= 70:
        return ConfidenceLevel.MEDIUM
    if score >= 50:
        return ConfidenceLevel.LOW
    return ConfidenceLevel.VERY_LOW


def confidence_message(score: int) -> str:
    return _LEVEL_MESSAGES[confidence_level(score)]


def needs_verification(score: int) -> bool:
    return score < VERIFICATION_THRESHOLD


def shows_warning(score: int) -> bool:
    return score < WARNING_THRESHOLD


def explain(factors: ConfidenceFactors) -> tuple[str, ...]:
    """Explainability trace, one line per factor."""
    model = round(factors.model_confidence)
    mapping = round(factors.mapping_confidence)
    portion = round(factors.portion_heuristic)
    lines = [
        f"Model confidence: {model}% ({'good' if model >= 80 else 'needs review'})",
        f"Database match: {mapping}% ({'exact' if mapping >= 85 else 'fuzzy'})",
        f"Portion estimate: {portion}% ({'typical' if portion >= 80 else 'unusual'})",
        f"Context: {round(factors.context_score)}%",
    ]
    if factors.model_confidence < VERIFICATION_THRESHOLD:
        lines.append("Recommendation: verify all values before saving")
    return tuple(lines)


@dataclass(frozen=True)
class ConfidenceResult:
    score: int
    factors: ConfidenceFactors
    explanation: tuple[str, ...]


@dataclass
class ConfidenceOrchestrator:
    """Combines model, mapping, portion and context signals into one score."""

    def score(
        self,
        *,
        model_confidence: float,
        mapping_confidence: float,
        portion_grams: float,
        expected_grams: float | None,
        region: str | None,
    ) -> ConfidenceResult:
        """Score one item; ``model_confidence`` is on the model's 0-1 scale."""
        factors = ConfidenceFactors(
            model_confidence=float(Decimal(str(model_confidence)) * 100),
            mapping_confidence=mapping_confidence,
            portion_heuristic=portion_heuristic(portion_grams, expected_grams),
            context_score=context_score(region),
        )
        return ConfidenceResult(
            score=weighted_score(factors),
            factors=factors,
            explanation=explain(factors),
        )

    def overall(self, items: Sequence[ReconciledItem]) -> int:
        """Mean item confidence, rounded half-up; 0 for an empty meal."""
        if not items:
            return 0
        total = sum(Decimal(item.confidence) for item in items)
        mean = total / Decimal(len(items))
        return int(mean.quantize(Decimal(1), rounding=ROUND_HALF_UP))

    def save_warnings(self, items: Sequence[ReconciledItem]) -> list[str]:
        """Warnings to surface before saving low-confidence items."""
        warnings: list[str] = []
        for item in items:
            if item.is_placeholder:
                warnings.append(
                    f"{item.name}: could not be identified, please edit before saving"
                )
            elif needs_verification(item.confidence):
                warnings.append(f"{item.name}: {confidence_message(item.confidence)}")
        return warnings
