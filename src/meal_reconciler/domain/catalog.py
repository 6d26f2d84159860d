"""Canonical food catalog models."""

from dataclasses import dataclass, field

from meal_reconciler.domain.nutrition import MacroProfile


@dataclass(frozen=True)
class CanonicalFoodRecord:
    """Catalog entry with per-100g macros."""

    id: str
    name: str
    per_100g: MacroProfile
    region_tags: tuple[str, ...] = field(default_factory=tuple)
    dietary_tags: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SynonymEntry:
    """Maps a local or regional term to its canonical name."""

    local_term: str
    canonical: str
    language: str = "hi"
    region: str | None = None


@dataclass(frozen=True)
class IdentityMatch:
    """Result of resolving a detected name against the catalog."""

    query: str
    record: CanonicalFoodRecord | None
    score: float
    mapping_confidence: int

    @property
    def is_mapped(self) -> bool:
        return self.record is not None
