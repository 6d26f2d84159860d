"""Models for inference requests and the structured model output."""

from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, Field

from meal_reconciler.domain.nutrition import MacroProfile


class InferenceMacros(BaseModel):
    """Macro grams reported for a detected item."""

    protein_g: float = Field(ge=0.0)
    carbs_g: float = Field(ge=0.0)
    fat_g: float = Field(ge=0.0)


class InferenceAlternative(BaseModel):
    """Alternative label the model considered for an item."""

    name: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)


class InferenceItem(BaseModel):
    """Single detected food item as returned by the model."""

    name: str = Field(min_length=1)
    portion_grams: float = Field(ge=0.0)
    unit: str | None = "g"
    calories: float = Field(ge=0.0)
    macros: InferenceMacros
    confidence: float = Field(ge=0.0, le=1.0)
    note_influence: Literal["none", "name", "portion", "both"] | None = None
    alternatives: list[InferenceAlternative] = Field(default_factory=list)


class InferenceResponse(BaseModel):
    """Structured output for a meal inference call."""

    items: list[InferenceItem]
    total_calories: float = Field(ge=0.0)
    explanation: str = ""
    model_version: str = "unknown"


@dataclass(frozen=True)
class Alternative:
    """Alternative identity for a detected item."""

    name: str
    confidence: float


@dataclass(frozen=True)
class DetectedItem:
    """Immutable item produced by inference, before reconciliation.

    ``portion`` is expressed in ``unit``; it is only grams when the unit is
    ``g``. Macros are totals for the detected portion.
    """

    name: str
    portion: float
    unit: str
    calories: float
    protein_g: float
    carbs_g: float
    fat_g: float
    confidence: float
    alternatives: tuple[Alternative, ...] = ()
    note_influence: str | None = None

    @property
    def macros(self) -> MacroProfile:
        return MacroProfile(
            calories=self.calories,
            protein_g=self.protein_g,
            fat_g=self.fat_g,
            carbs_g=self.carbs_g,
        )

    @classmethod
    def from_inference(cls, item: InferenceItem) -> "DetectedItem":
        """Build a detected item from a validated model item."""
        return cls(
            name=item.name.strip(),
            portion=item.portion_grams,
            unit=item.unit or "g",
            calories=item.calories,
            protein_g=item.macros.protein_g,
            carbs_g=item.macros.carbs_g,
            fat_g=item.macros.fat_g,
            confidence=item.confidence,
            alternatives=tuple(
                Alternative(name=alt.name, confidence=alt.confidence)
                for alt in item.alternatives
            ),
            note_influence=item.note_influence,
        )


@dataclass(frozen=True)
class InferenceRequest:
    """Input handed to an inference client.

    Exactly one of ``image_bytes``, ``image_url`` or ``text`` drives the call.
    """

    user_id: str
    image_bytes: bytes | None = None
    image_url: str | None = None
    text: str | None = None
    meal_type: str | None = None
    region: str | None = None
    dietary_prefs: tuple[str, ...] = field(default_factory=tuple)
    aux_note: str | None = None

    @property
    def is_vision(self) -> bool:
        return self.image_bytes is not None or self.image_url is not None
