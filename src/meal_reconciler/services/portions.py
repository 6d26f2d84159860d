"""Portion resolution: unit conversion, personal priors and note presets."""

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from typing import Protocol

from meal_reconciler.domain.analysis import ReconciledItem
from meal_reconciler.domain.notes import NotePortion, NoteQuantity, UserNote
from meal_reconciler.domain.nutrition import round_half_up
from meal_reconciler.domain.priors import PortionPrior
from meal_reconciler.services.normalizer import phrase_mentions, singular

_logger = logging.getLogger(__name__)

UNIT_GRAMS: dict[str, float] = {
    "g": 1.0,
    "gm": 1.0,
    "gram": 1.0,
    "grams": 1.0,
    "kg": 1000.0,
    "mg": 0.001,
    "ml": 1.0,
    "l": 1000.0,
    "litre": 1000.0,
    "liter": 1000.0,
    "cup": 240.0,
    "cups": 240.0,
    "tbsp": 15.0,
    "tablespoon": 15.0,
    "tsp": 5.0,
    "teaspoon": 5.0,
    "oz": 28.35,
    "ounce": 28.35,
    "lb": 453.59,
    "pound": 453.59,
}

CONTAINER_GRAMS: dict[str, float] = {
    "katori": 150.0,
    "bowl": 150.0,
    "cup": 240.0,
    "plate": 250.0,
    "glass": 250.0,
    "spoon": 15.0,
    "tbsp": 15.0,
    "tsp": 5.0,
}

SIZE_MULTIPLIERS: dict[str, float] = {
    "small": 0.75,
    "medium": 1.0,
    "regular": 1.0,
    "full": 1.0,
    "large": 1.3,
    "half": 0.5,
}

PIECE_GRAMS: dict[str, float] = {
    "roti": 30.0,
    "chapati": 30.0,
    "phulka": 30.0,
    "paratha": 50.0,
    "aloo paratha": 100.0,
    "naan": 70.0,
    "puri": 25.0,
    "idli": 40.0,
    "dosa": 120.0,
    "vada": 50.0,
    "samosa": 80.0,
    "ladoo": 40.0,
    "egg": 50.0,
}

TYPICAL_PORTIONS: dict[str, float] = {
    "roti": 30.0,
    "chapati": 30.0,
    "paratha": 50.0,
    "naan": 70.0,
    "rice": 150.0,
    "dal": 200.0,
    "dal fry": 200.0,
    "sambar": 200.0,
    "chicken curry": 200.0,
    "paneer tikka": 100.0,
    "dosa": 120.0,
    "idli": 40.0,
    "vada": 50.0,
    "biryani": 250.0,
    "chole bhature": 250.0,
    "aloo paratha": 100.0,
}

DEFAULT_PIECE_GRAMS = 50.0
PRIOR_MIN_SAMPLES = 3
PRIOR_DETECTED_WEIGHT = 0.6
PRESET_DEVIATION = 0.5

_PIECE_UNITS = frozenset(
    {"piece", "pieces", "pc", "pcs", "slice", "slices", "serving", "unit", "nos"}
)


def piece_grams(food: str) -> float:
    """Weight of one piece of ``food``, falling back to a generic piece."""
    key = food.lower().strip()
    if key in PIECE_GRAMS:
        return PIECE_GRAMS[key]
    single = singular(key)
    if single in PIECE_GRAMS:
        return PIECE_GRAMS[single]
    for name, grams in PIECE_GRAMS.items():
        if phrase_mentions(key, name):
            return grams
    return DEFAULT_PIECE_GRAMS


def typical_portion(*names: str | None) -> float | None:
    """Expected grams for the first name with a known typical portion."""
    for name in names:
        if not name:
            continue
        key = name.lower().strip()
        if key in TYPICAL_PORTIONS:
            return TYPICAL_PORTIONS[key]
        single = singular(key)
        if single in TYPICAL_PORTIONS:
            return TYPICAL_PORTIONS[single]
    return None


def unit_weight(unit: str | None, food: str) -> float:
    """Grams represented by one ``unit`` of ``food``.

    Containers and measures use their static weight; pieces (or no unit, or
    the food's own name as the unit) use the per-piece weight for the food.
    """
    if unit:
        key = unit.lower().strip()
        if key in CONTAINER_GRAMS:
            return CONTAINER_GRAMS[key]
        if key in UNIT_GRAMS:
            return UNIT_GRAMS[key]
    return piece_grams(food)


def is_count_unit(unit: str | None, food: str) -> bool:
    """True when a unit counts pieces rather than measuring mass or volume."""
    if not unit:
        return True
    key = unit.lower().strip()
    if key in _PIECE_UNITS:
        return True
    return key not in UNIT_GRAMS and key not in CONTAINER_GRAMS and (
        key in PIECE_GRAMS or phrase_mentions(food, key)
    )


def convert_to_grams(value: float, unit: str | None, food: str = "") -> float:
    """Convert a portion in ``unit`` to grams."""
    if not unit:
        return value
    key = unit.lower().strip()
    if key in UNIT_GRAMS:
        return value * UNIT_GRAMS[key]
    if key in CONTAINER_GRAMS:
        return value * CONTAINER_GRAMS[key]
    if is_count_unit(key, food):
        return value * piece_grams(food or key)
    _logger.info("Unknown portion unit %s, treating as grams", unit)
    return value


def convert_from_grams(grams: float, unit: str | None, food: str = "") -> float:
    """Express ``grams`` in ``unit``; the inverse of ``convert_to_grams``."""
    if not unit:
        return grams
    factor = convert_to_grams(1.0, unit, food)
    if factor <= 0:
        return grams
    return grams / factor


def size_multiplier(size: str | None) -> float:
    if not size:
        return 1.0
    return SIZE_MULTIPLIERS.get(size.lower(), 1.0)


def blend_with_prior(grams: float, prior: PortionPrior | None) -> float:
    """Blend a detected portion with the user's history.

    Only priors with enough samples count; the result is rounded to the gram.
    """
    if prior is None or prior.sample_count < PRIOR_MIN_SAMPLES:
        return grams
    blended = (
        grams * PRIOR_DETECTED_WEIGHT
        + prior.avg_portion_grams * (1 - PRIOR_DETECTED_WEIGHT)
    )
    return round_half_up(blended)


def note_preset_grams(
    note: UserNote | None, food_names: Iterable[str]
) -> float | None:
    """Grams implied by the note for a food, if the note mentions one."""
    if note is None:
        return None
    names = [name for name in food_names if name]
    for quantity in note.quantities:
        for name in names:
            if phrase_mentions(quantity.food, name):
                return quantity.count * unit_weight(quantity.unit, name)
    for portion in note.portions:
        for name in names:
            if phrase_mentions(portion.food, name):
                return CONTAINER_GRAMS[portion.container] * size_multiplier(
                    portion.size
                )
    return None


def scope_note(
    items: Sequence[ReconciledItem], note: UserNote | None
) -> list[UserNote | None]:
    """Split the note so each quantity and portion belongs to one item.

    A mention goes to the first non-placeholder item naming its food, so two
    items that map to the same food never both take the note's grams.
    """
    if note is None:
        return [None] * len(items)
    quantities: list[list[NoteQuantity]] = [[] for _ in items]
    portions: list[list[NotePortion]] = [[] for _ in items]
    for quantity in note.quantities:
        index = _first_mention(items, quantity.food)
        if index is not None:
            quantities[index].append(quantity)
    for portion in note.portions:
        index = _first_mention(items, portion.food)
        if index is not None:
            portions[index].append(portion)
    return [
        replace(note, quantities=tuple(owned), portions=tuple(sized))
        for owned, sized in zip(quantities, portions, strict=True)
    ]


def _first_mention(items: Sequence[ReconciledItem], food: str) -> int | None:
    for index, item in enumerate(items):
        if item.is_placeholder:
            continue
        if phrase_mentions(food, item.name) or phrase_mentions(
            food, item.detected_name
        ):
            return index
    return None


class PortionPriorRepository(Protocol):
    """Persistence interface for per-user portion history."""

    def get_prior(self, user_id: str, food_name: str) -> PortionPrior | None:
        """Return the user's prior for a food, if any."""

    def record_portion(self, user_id: str, food_name: str, grams: float) -> None:
        """Atomically fold a logged portion into the running average."""


@dataclass
class PortionResolver:
    """Resolves a reconciled item's grams in a fixed order.

    Unit conversion happens when the item is built; this resolver applies the
    personal prior and then the note preset, rescaling macros each time.
    """

    priors: PortionPriorRepository

    def resolve(
        self, item: ReconciledItem, user_id: str, note: UserNote | None
    ) -> ReconciledItem:
        resolved = item
        prior = self._load_prior(user_id, item.name)
        blended = blend_with_prior(resolved.portion_grams, prior)
        if blended != resolved.portion_grams:
            _logger.info(
                "Applied portion prior: food=%s detected=%s prior=%s result=%s",
                item.name,
                resolved.portion_grams,
                prior.avg_portion_grams if prior else None,
                blended,
            )
            resolved = resolved.with_portion(blended)
        preset = note_preset_grams(note, (item.name, item.detected_name))
        if preset is not None and _deviates(resolved.portion_grams, preset):
            _logger.info(
                "Applied note preset: food=%s from=%s to=%s",
                item.name,
                resolved.portion_grams,
                preset,
            )
            resolved = resolved.with_portion(preset)
            resolved = replace(
                resolved, note_influence=resolved.note_influence.with_portion()
            )
        return resolved

    def record_history(self, user_id: str, items: Iterable[ReconciledItem]) -> None:
        """Update priors after a meal is saved; failures are logged only."""
        for item in items:
            if item.is_placeholder or item.portion_grams <= 0:
                continue
            try:
                self.priors.record_portion(user_id, item.name, item.portion_grams)
            except Exception:
                _logger.warning(
                    "Failed to update portion prior for %s", item.name, exc_info=True
                )

    def _load_prior(self, user_id: str, food_name: str) -> PortionPrior | None:
        try:
            return self.priors.get_prior(user_id, food_name)
        except Exception:
            _logger.warning(
                "Failed to load portion prior for %s", food_name, exc_info=True
            )
            return None


def _deviates(current: float, preset: float) -> bool:
    if current <= 0:
        return preset > 0
    return abs(preset - current) / current > PRESET_DEVIATION
