"""Models for normalized user notes."""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class NoteQuantity:
    """Count of a food mentioned in the note, e.g. ``2 roti``."""

    count: int
    food: str
    unit: str | None = None


@dataclass(frozen=True)
class NotePortion:
    """Container-based portion mentioned in the note, e.g. ``small bowl dal``."""

    container: str
    food: str
    size: str = "medium"


@dataclass(frozen=True)
class UserNote:
    """User note after normalization and extraction."""

    raw_text: str
    sanitized_text: str
    language: str
    quantities: tuple[NoteQuantity, ...] = field(default_factory=tuple)
    portions: tuple[NotePortion, ...] = field(default_factory=tuple)
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.sanitized_text


EMPTY_NOTE = UserNote(raw_text="", sanitized_text="", language="en")
