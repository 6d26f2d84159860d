"""Domain models for a meal analysis and its reconciled items."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from meal_reconciler.domain.errors import InvalidTransition
from meal_reconciler.domain.notes import UserNote
from meal_reconciler.domain.nutrition import ZERO_MACROS, MacroProfile
from meal_reconciler.domain.quota import QuotaDecision


class AnalysisStatus(Enum):
    """Lifecycle of a single analysis."""

    RECEIVED = "received"
    NORMALIZING = "normalizing"
    INFERRING = "inferring"
    MAPPING = "mapping"
    PORTION_RESOLVING = "portion_resolving"
    SCORING_CONFIDENCE = "scoring_confidence"
    CONFLICT_CHECK = "conflict_check"
    AWAITING_USER_RESOLUTION = "awaiting_user_resolution"
    READY_TO_SAVE = "ready_to_save"
    SAVED = "saved"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset(
    {AnalysisStatus.SAVED, AnalysisStatus.FAILED, AnalysisStatus.CANCELLED}
)

_TRANSITIONS: dict[AnalysisStatus, frozenset[AnalysisStatus]] = {
    AnalysisStatus.RECEIVED: frozenset({AnalysisStatus.NORMALIZING}),
    AnalysisStatus.NORMALIZING: frozenset({AnalysisStatus.INFERRING}),
    AnalysisStatus.INFERRING: frozenset(
        {AnalysisStatus.MAPPING, AnalysisStatus.FAILED}
    ),
    AnalysisStatus.MAPPING: frozenset({AnalysisStatus.PORTION_RESOLVING}),
    AnalysisStatus.PORTION_RESOLVING: frozenset(
        {AnalysisStatus.SCORING_CONFIDENCE}
    ),
    AnalysisStatus.SCORING_CONFIDENCE: frozenset({AnalysisStatus.CONFLICT_CHECK}),
    AnalysisStatus.CONFLICT_CHECK: frozenset(
        {AnalysisStatus.AWAITING_USER_RESOLUTION, AnalysisStatus.READY_TO_SAVE}
    ),
    AnalysisStatus.AWAITING_USER_RESOLUTION: frozenset(
        {AnalysisStatus.READY_TO_SAVE, AnalysisStatus.SAVED}
    ),
    AnalysisStatus.READY_TO_SAVE: frozenset({AnalysisStatus.SAVED}),
}


def ensure_transition(current: AnalysisStatus, target: AnalysisStatus) -> None:
    """Raise InvalidTransition unless ``current`` may move to ``target``.

    Any non-terminal status may move to CANCELLED.
    """
    if target is AnalysisStatus.CANCELLED and not current.is_terminal:
        return
    if target in _TRANSITIONS.get(current, frozenset()):
        return
    raise InvalidTransition(current.value, target.value)


class NoteInfluence(Enum):
    """How much the user note changed an item."""

    NONE = "none"
    NAME = "name"
    PORTION = "portion"
    BOTH = "both"

    def with_name(self) -> "NoteInfluence":
        if self in (NoteInfluence.PORTION, NoteInfluence.BOTH):
            return NoteInfluence.BOTH
        return NoteInfluence.NAME

    def with_portion(self) -> "NoteInfluence":
        if self in (NoteInfluence.NAME, NoteInfluence.BOTH):
            return NoteInfluence.BOTH
        return NoteInfluence.PORTION


class ConflictType(Enum):
    """Kind of disagreement between inference and note."""

    QUANTITY = "quantity"
    PORTION = "portion"
    NAME = "name"


class Resolution(Enum):
    """Which side wins a conflict."""

    UNRESOLVED = "unresolved"
    MODEL = "model"
    NOTE = "note"


@dataclass(frozen=True)
class ConfidenceFactors:
    """Inputs to the composite confidence score, each on a 0-100 scale."""

    model_confidence: float
    mapping_confidence: float
    portion_heuristic: float
    context_score: float


@dataclass(frozen=True)
class ReconciledItem:
    """Detected item mapped onto the catalog with a resolved portion.

    When ``per_100g`` is set the macros always equal
    ``per_100g * portion_grams / 100``; otherwise they are the model's macros
    scaled with the portion. ``item_id`` is unique within one analysis;
    names are not, since two detections can map to the same food.
    """

    name: str
    detected_name: str
    portion_grams: float
    macros: MacroProfile
    confidence: int
    mapping_confidence: int
    model_confidence: float
    food_id: str | None = None
    per_100g: MacroProfile | None = None
    note_influence: NoteInfluence = NoteInfluence.NONE
    factors: ConfidenceFactors | None = None
    explanation: tuple[str, ...] = field(default_factory=tuple)
    is_placeholder: bool = False
    item_id: str = ""

    @property
    def is_mapped(self) -> bool:
        return self.per_100g is not None

    def with_portion(self, grams: float) -> "ReconciledItem":
        """Return a copy with the portion changed and macros rescaled."""
        if self.per_100g is not None:
            macros = self.per_100g.for_grams(grams)
        elif self.portion_grams > 0:
            macros = self.macros.scaled(grams / self.portion_grams)
        else:
            macros = ZERO_MACROS
        return replace(self, portion_grams=grams, macros=macros)


@dataclass(frozen=True)
class ConflictRecord:
    """Disagreement between the inferred item and the user note."""

    item_name: str
    conflict_type: ConflictType
    model_value: float | str
    note_value: float | str
    resolution: Resolution = Resolution.UNRESOLVED
    unit: str | None = None
    note_food: str | None = None
    item_id: str = ""

    @property
    def is_resolved(self) -> bool:
        return self.resolution is not Resolution.UNRESOLVED


@dataclass(frozen=True)
class AnalysisRecord:
    """Snapshot of one analysis, write-once apart from its status."""

    id: str
    user_id: str
    status: AnalysisStatus
    created_at: datetime
    items: tuple[ReconciledItem, ...] = field(default_factory=tuple)
    conflicts: tuple[ConflictRecord, ...] = field(default_factory=tuple)
    note: UserNote | None = None
    raw_inference: dict[str, object] = field(default_factory=dict)
    overall_confidence: int = 0
    warnings: tuple[str, ...] = field(default_factory=tuple)
    meal_type: str | None = None
    region: str | None = None
    photo_ref: str | None = None
    failure_reason: str | None = None
    meal_log_id: str | None = None

    @property
    def total_calories(self) -> float:
        return sum(item.macros.calories for item in self.items)


@dataclass(frozen=True)
class AnalysisResult:
    """Outcome of ``run_analysis``.

    ``analysis_id`` is ``None`` when the quota gate refused the call.
    ``quota`` is ``None`` for a cached analysis, which costs no quota.
    """

    analysis_id: str | None
    status: AnalysisStatus | None
    items: tuple[ReconciledItem, ...]
    total_calories: float
    overall_confidence: int
    conflicts: tuple[ConflictRecord, ...]
    warnings: tuple[str, ...]
    quota: QuotaDecision | None
    explanation: str = ""
    model_version: str | None = None
    was_cached: bool = False

    @property
    def quota_exceeded(self) -> bool:
        return self.quota is not None and not self.quota.allowed
