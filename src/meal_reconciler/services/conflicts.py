"""Detection and resolution of contradictions between inference and notes."""

import logging
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace

from meal_reconciler.domain.analysis import (
    ConflictRecord,
    ConflictType,
    ReconciledItem,
    Resolution,
)
from meal_reconciler.domain.notes import UserNote
from meal_reconciler.domain.nutrition import round_half_up
from meal_reconciler.services.normalizer import phrase_mentions
from meal_reconciler.services.portions import (
    CONTAINER_GRAMS,
    scope_note,
    size_multiplier,
    unit_weight,
)

_logger = logging.getLogger(__name__)

CONFLICT_DEVIATION = 0.25

# Dish families that cannot describe the same item. Pairs are symmetric.
EXCLUSIVE_FAMILIES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("naan", ("chapati", "roti", "paratha")),
    ("chapati", ("naan", "kulcha")),
    ("roti", ("naan", "kulcha")),
    ("paratha", ("chapati", "roti", "naan")),
    ("dosa", ("idli", "uttapam")),
    ("idli", ("dosa", "vada")),
    ("rice", ("roti", "naan", "chapati")),
    ("paneer", ("chicken", "mutton", "fish", "egg")),
    ("chicken", ("paneer", "tofu")),
)


def exclusion_pairs(
    families: Iterable[tuple[str, Iterable[str]]] = EXCLUSIVE_FAMILIES,
) -> frozenset[frozenset[str]]:
    """Flatten family rows into a symmetric set of excluded term pairs."""
    pairs: set[frozenset[str]] = set()
    for term, opposites in families:
        for opposite in opposites:
            if opposite != term:
                pairs.add(frozenset({term, opposite}))
    return frozenset(pairs)


def _terms_in(text: str, vocabulary: Iterable[str]) -> list[str]:
    found = []
    for term in vocabulary:
        if re.search(rf"(?<!\w){re.escape(term)}s?(?!\w)", text):
            found.append(term)
    return found


def deviates(model_grams: float, expected_grams: float) -> bool:
    if expected_grams <= 0:
        return False
    return abs(model_grams - expected_grams) / expected_grams > CONFLICT_DEVIATION


@dataclass
class ConflictDetector:
    """Finds at most one conflict per reconciled item.

    Each note quantity or portion is checked against the single item that
    owns it (see ``scope_note``).
    """

    pairs: frozenset[frozenset[str]] = field(default_factory=exclusion_pairs)

    @property
    def vocabulary(self) -> frozenset[str]:
        return frozenset(term for pair in self.pairs for term in pair)

    def detect(
        self, items: Sequence[ReconciledItem], note: UserNote | None
    ) -> list[ConflictRecord]:
        if note is None or note.is_empty:
            return []
        conflicts: list[ConflictRecord] = []
        owned = scope_note(items, note)
        for index, item in enumerate(items):
            if item.is_placeholder:
                continue
            others = [other for i, other in enumerate(items) if i != index]
            conflict = (
                self._name_conflict(item, others, note)
                or self._quantity_conflict(item, owned[index])
                or self._portion_conflict(item, owned[index])
            )
            if conflict is not None:
                _logger.info(
                    "Conflict detected: item=%s (%s) type=%s model=%s note=%s",
                    conflict.item_id,
                    conflict.item_name,
                    conflict.conflict_type.value,
                    conflict.model_value,
                    conflict.note_value,
                )
                conflicts.append(conflict)
        return conflicts

    def _name_conflict(
        self,
        item: ReconciledItem,
        others: Sequence[ReconciledItem],
        note: UserNote,
    ) -> ConflictRecord | None:
        vocabulary = self.vocabulary
        item_terms = _terms_in(f"{item.name} {item.detected_name}".lower(), vocabulary)
        if not item_terms:
            return None
        note_terms = _terms_in(note.sanitized_text, vocabulary)
        if any(term in note_terms for term in item_terms):
            return None
        for note_term in note_terms:
            if any(
                phrase_mentions(note_term, other.name)
                or phrase_mentions(note_term, other.detected_name)
                for other in others
            ):
                continue
            for item_term in item_terms:
                if frozenset({item_term, note_term}) in self.pairs:
                    return ConflictRecord(
                        item_name=item.name,
                        item_id=item.item_id,
                        conflict_type=ConflictType.NAME,
                        model_value=item.name,
                        note_value=note_term,
                        note_food=note_term,
                    )
        return None

    def _quantity_conflict(
        self, item: ReconciledItem, note: UserNote | None
    ) -> ConflictRecord | None:
        if note is None:
            return None
        for quantity in note.quantities:
            if not _mentions(quantity.food, item):
                continue
            weight = unit_weight(quantity.unit, item.name)
            expected = quantity.count * weight
            if not deviates(item.portion_grams, expected):
                return None
            return ConflictRecord(
                item_name=item.name,
                item_id=item.item_id,
                conflict_type=ConflictType.QUANTITY,
                model_value=round_half_up(item.portion_grams / weight),
                note_value=float(quantity.count),
                unit=quantity.unit or "piece",
                note_food=quantity.food,
            )
        return None

    def _portion_conflict(
        self, item: ReconciledItem, note: UserNote | None
    ) -> ConflictRecord | None:
        if note is None:
            return None
        for portion in note.portions:
            if not _mentions(portion.food, item):
                continue
            expected = CONTAINER_GRAMS[portion.container] * size_multiplier(
                portion.size
            )
            if not deviates(item.portion_grams, expected):
                return None
            return ConflictRecord(
                item_name=item.name,
                item_id=item.item_id,
                conflict_type=ConflictType.PORTION,
                model_value=round_half_up(item.portion_grams),
                note_value=round_half_up(expected),
                unit="g",
                note_food=portion.food,
            )
        return None


def _mentions(phrase: str, item: ReconciledItem) -> bool:
    return phrase_mentions(phrase, item.name) or phrase_mentions(
        phrase, item.detected_name
    )


Renamer = Callable[[ReconciledItem, str], ReconciledItem]


@dataclass
class ConflictResolver:
    """Applies a single user choice to a conflicted item."""

    def apply(
        self,
        item: ReconciledItem,
        conflict: ConflictRecord,
        chosen: Resolution,
        note: UserNote | None,
        rename: Renamer,
    ) -> tuple[ReconciledItem, ConflictRecord]:
        """Return the updated item and the resolved conflict.

        Choosing the model keeps the item as is; choosing the note rewrites
        grams (quantity, portion) or identity (name) from the note value.
        """
        if chosen is Resolution.UNRESOLVED:
            raise ValueError("A conflict can only be resolved to model or note")
        resolved_conflict = replace(conflict, resolution=chosen)
        if chosen is Resolution.MODEL:
            return item, resolved_conflict
        if conflict.conflict_type is ConflictType.QUANTITY:
            grams = float(conflict.note_value) * unit_weight(conflict.unit, item.name)
            updated = item.with_portion(grams)
            influence = updated.note_influence.with_portion()
        elif conflict.conflict_type is ConflictType.PORTION:
            updated = item.with_portion(float(conflict.note_value))
            influence = updated.note_influence.with_portion()
        else:
            updated = rename(item, str(conflict.note_value))
            influence = item.note_influence.with_name()
            grams = _note_grams_for(note, str(conflict.note_value))
            if grams is not None and grams != updated.portion_grams:
                updated = updated.with_portion(grams)
                influence = influence.with_portion()
        return replace(updated, note_influence=influence), resolved_conflict


def _note_grams_for(note: UserNote | None, food: str) -> float | None:
    if note is None:
        return None
    for quantity in note.quantities:
        if phrase_mentions(quantity.food, food):
            return quantity.count * unit_weight(quantity.unit, food)
    return None
