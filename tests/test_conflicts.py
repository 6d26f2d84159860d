"""Tests for conflict detection and resolution."""

from dataclasses import replace

import pytest

from meal_reconciler.domain.analysis import (
    ConflictType,
    NoteInfluence,
    ReconciledItem,
    Resolution,
)
from meal_reconciler.domain.notes import UserNote
from meal_reconciler.domain.nutrition import MacroProfile
from meal_reconciler.services.conflicts import (
    ConflictDetector,
    ConflictResolver,
    exclusion_pairs,
)
from meal_reconciler.services.normalizer import SynonymTable, normalize_note

PER_100G = MacroProfile(calories=300, protein_g=10, fat_g=4, carbs_g=55)


def _item(name: str, grams: float) -> ReconciledItem:
    return ReconciledItem(
        name=name,
        detected_name=name,
        portion_grams=grams,
        macros=PER_100G.for_grams(grams),
        confidence=85,
        mapping_confidence=95,
        model_confidence=0.9,
        food_id=f"food-{name}",
        per_100g=PER_100G,
    )


def _note(text: str) -> UserNote:
    return normalize_note(text, SynonymTable.default())


def test_quantity_conflict_over_threshold() -> None:
    conflicts = ConflictDetector().detect([_item("roti", 90)], _note("2 roti"))

    assert len(conflicts) == 1
    conflict = conflicts[0]
    assert conflict.conflict_type is ConflictType.QUANTITY
    assert conflict.model_value == 3
    assert conflict.note_value == 2
    assert conflict.unit == "piece"
    assert conflict.resolution is Resolution.UNRESOLVED


def test_note_quantity_belongs_to_first_matching_item() -> None:
    first = replace(_item("roti", 90), item_id="item-1")
    second = replace(_item("roti", 20), detected_name="chapati", item_id="item-2")

    conflicts = ConflictDetector().detect([first, second], _note("2 roti"))

    assert [conflict.item_id for conflict in conflicts] == ["item-1"]
    assert conflicts[0].model_value == 3


def test_small_deviation_is_not_a_conflict() -> None:
    assert ConflictDetector().detect([_item("roti", 65)], _note("2 roti")) == []


def test_no_note_means_no_conflicts() -> None:
    assert ConflictDetector().detect([_item("roti", 90)], None) == []
    assert ConflictDetector().detect([_item("roti", 90)], _note("")) == []


def test_name_conflict_between_exclusive_families() -> None:
    conflicts = ConflictDetector().detect([_item("naan", 70)], _note("2 roti"))

    assert len(conflicts) == 1
    assert conflicts[0].conflict_type is ConflictType.NAME
    assert conflicts[0].model_value == "naan"
    assert conflicts[0].note_value == "roti"


def test_name_conflict_skipped_when_another_item_matches_note() -> None:
    items = [_item("naan", 70), _item("roti", 60)]

    assert ConflictDetector().detect(items, _note("2 roti")) == []


def test_portion_conflict_from_container() -> None:
    note = _note("small katori dal")

    conflicts = ConflictDetector().detect([_item("dal", 300)], note)

    assert len(conflicts) == 1
    assert conflicts[0].conflict_type is ConflictType.PORTION
    assert conflicts[0].model_value == 300
    assert conflicts[0].note_value == 113


def test_placeholders_are_never_in_conflict() -> None:
    placeholder = replace(_item("roti", 90), is_placeholder=True)

    assert ConflictDetector().detect([placeholder], _note("2 roti")) == []


def test_exclusion_pairs_are_symmetric() -> None:
    pairs = exclusion_pairs()

    assert frozenset({"naan", "roti"}) in pairs
    assert frozenset({"roti", "naan"}) in pairs
    assert frozenset({"paneer", "chicken"}) in pairs


def test_choosing_note_recomputes_portion() -> None:
    item = _item("roti", 90)
    conflict = ConflictDetector().detect([item], _note("2 roti"))[0]

    updated, resolved = ConflictResolver().apply(
        item, conflict, Resolution.NOTE, _note("2 roti"), rename=_no_rename
    )

    assert updated.portion_grams == 60
    assert updated.macros.calories == pytest.approx(180)
    assert updated.note_influence is NoteInfluence.PORTION
    assert resolved.resolution is Resolution.NOTE


def test_choosing_model_keeps_values() -> None:
    item = _item("roti", 90)
    conflict = ConflictDetector().detect([item], _note("2 roti"))[0]

    updated, resolved = ConflictResolver().apply(
        item, conflict, Resolution.MODEL, _note("2 roti"), rename=_no_rename
    )

    assert updated == item
    assert resolved.resolution is Resolution.MODEL


def test_choosing_note_for_name_conflict_renames_and_uses_note_count() -> None:
    item = _item("naan", 70)
    note = _note("2 roti")
    conflict = ConflictDetector().detect([item], note)[0]

    def rename(current: ReconciledItem, name: str) -> ReconciledItem:
        return replace(current, name=name, food_id=f"food-{name}")

    updated, _ = ConflictResolver().apply(
        item, conflict, Resolution.NOTE, note, rename=rename
    )

    assert updated.name == "roti"
    assert updated.portion_grams == 60
    assert updated.note_influence is NoteInfluence.BOTH


def test_unresolved_is_not_a_valid_choice() -> None:
    item = _item("roti", 90)
    conflict = ConflictDetector().detect([item], _note("2 roti"))[0]

    with pytest.raises(ValueError):
        ConflictResolver().apply(
            item, conflict, Resolution.UNRESOLVED, None, rename=_no_rename
        )


def _no_rename(item: ReconciledItem, _name: str) -> ReconciledItem:
    return item
