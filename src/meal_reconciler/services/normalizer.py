"""Normalization of free-text meal notes.

Notes arrive in English, Hindi (Devanagari) or romanized Hindi. The
normalizer turns them into a lowercase, sanitized, canonical form and pulls
out structured quantities ("2 roti") and container portions ("small katori
dal") for the conflict detector.
"""

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from functools import cached_property
from typing import Protocol

from meal_reconciler.domain.catalog import SynonymEntry
from meal_reconciler.domain.notes import NotePortion, NoteQuantity, UserNote
from meal_reconciler.services.cache import Cache

_logger = logging.getLogger(__name__)

DEFAULT_NOTE_MAX_LENGTH = 140

_DEVANAGARI = "\u0900-\u097F"
_DEVANAGARI_RE = re.compile(f"[{_DEVANAGARI}]")
_WORD_CHARS = rf"\w{_DEVANAGARI}"
_DISALLOWED_RE = re.compile(rf"[^\w\s{_DEVANAGARI}+\-(),.]")
_WHITESPACE_RE = re.compile(r"\s+")

_NATIVE_DIGITS = str.maketrans("०१२३४५६७८९", "0123456789")

NUMERALS: dict[str, int] = {
    "एक": 1,
    "ek": 1,
    "दो": 2,
    "do": 2,
    "तीन": 3,
    "teen": 3,
    "चार": 4,
    "char": 4,
    "पांच": 5,
    "पाँच": 5,
    "paanch": 5,
}

LOCAL_UNIT_KEYWORDS = frozenset(
    {"रोटी", "कटोरी", "कप", "प्याला", "अंडा", "roti", "katori", "anda"}
)

DEFAULT_SYNONYMS: tuple[SynonymEntry, ...] = (
    SynonymEntry("chapati", "roti", "hinglish"),
    SynonymEntry("chapatti", "roti", "hinglish"),
    SynonymEntry("phulka", "roti", "hinglish"),
    SynonymEntry("रोटी", "roti"),
    SynonymEntry("चपाती", "roti"),
    SynonymEntry("फुलका", "roti"),
    SynonymEntry("पराठा", "paratha"),
    SynonymEntry("परांठा", "paratha"),
    SynonymEntry("नान", "naan"),
    SynonymEntry("चावल", "rice"),
    SynonymEntry("chawal", "rice", "hinglish"),
    SynonymEntry("plain rice", "rice", "en"),
    SynonymEntry("steamed rice", "rice", "en"),
    SynonymEntry("दाल", "dal"),
    SynonymEntry("daal", "dal", "hinglish"),
    SynonymEntry("toor dal", "dal", "hinglish"),
    SynonymEntry("masoor dal", "dal", "hinglish"),
    SynonymEntry("dal tadka", "dal fry", "hinglish"),
    SynonymEntry("सांभर", "sambar"),
    SynonymEntry("sambhar", "sambar", "hinglish"),
    SynonymEntry("इडली", "idli"),
    SynonymEntry("idly", "idli", "hinglish"),
    SynonymEntry("डोसा", "dosa"),
    SynonymEntry("plain dosa", "dosa", "en"),
    SynonymEntry("masala dosa", "dosa", "hinglish"),
    SynonymEntry("rava dosa", "dosa", "hinglish"),
    SynonymEntry("वड़ा", "vada"),
    SynonymEntry("पनीर", "paneer"),
    SynonymEntry("paneer butter masala", "paneer curry", "hinglish"),
    SynonymEntry("murgh curry", "chicken curry", "hinglish"),
    SynonymEntry("chicken masala", "chicken curry", "en"),
    SynonymEntry("murgh", "chicken", "hinglish"),
    SynonymEntry("अंडा", "egg"),
    SynonymEntry("anda", "egg", "hinglish"),
    SynonymEntry("ande", "egg", "hinglish"),
    SynonymEntry("दही", "curd"),
    SynonymEntry("dahi", "curd", "hinglish"),
    SynonymEntry("दूध", "milk"),
    SynonymEntry("doodh", "milk", "hinglish"),
    SynonymEntry("sabzi", "vegetable curry", "hinglish"),
    SynonymEntry("subzi", "vegetable curry", "hinglish"),
    SynonymEntry("सब्जी", "vegetable curry"),
    SynonymEntry("कटोरी", "katori"),
    SynonymEntry("कप", "cup"),
    SynonymEntry("प्याला", "cup"),
    SynonymEntry("गिलास", "glass"),
    SynonymEntry("gilas", "glass", "hinglish"),
    SynonymEntry("thali", "plate", "hinglish"),
    SynonymEntry("थाली", "plate"),
    SynonymEntry("chammach", "spoon", "hinglish"),
    SynonymEntry("चम्मच", "spoon"),
    SynonymEntry("छोटी", "small"),
    SynonymEntry("छोटा", "small"),
    SynonymEntry("बड़ी", "large"),
    SynonymEntry("बड़ा", "large"),
    SynonymEntry("chhoti", "small", "hinglish"),
    SynonymEntry("badi", "large", "hinglish"),
    SynonymEntry("और", "and"),
    SynonymEntry("aur", "and", "hinglish"),
)


def _bounded(alternatives: Iterable[str]) -> str:
    """Join terms into one alternation that respects Devanagari word edges."""
    ordered = sorted(alternatives, key=len, reverse=True)
    body = "|".join(re.escape(term) for term in ordered)
    return rf"(?<![{_WORD_CHARS}])(?:{body})(?![{_WORD_CHARS}])"


def _compile(terms: dict[str, str]) -> re.Pattern[str] | None:
    if not terms:
        return None
    return re.compile(_bounded(terms))


def _substitute(
    pattern: re.Pattern[str] | None, terms: dict[str, str], text: str
) -> str:
    if pattern is None:
        return text
    return pattern.sub(lambda match: terms[match.group(0)], text)


def _resolve_fixed_point(terms: dict[str, str]) -> dict[str, str]:
    """Rewrite canonical values until substituting them changes nothing.

    Entries that never settle form a cycle and are dropped.
    """
    resolved = dict(terms)
    for _ in range(len(resolved) + 1):
        pattern = _compile(resolved)
        rewritten = {
            local: _substitute(pattern, resolved, canonical)
            for local, canonical in resolved.items()
        }
        if rewritten == resolved:
            return {
                local: canonical
                for local, canonical in resolved.items()
                if local != canonical
            }
        resolved = rewritten
    pattern = _compile(resolved)
    stable = {
        local: canonical
        for local, canonical in resolved.items()
        if _substitute(pattern, resolved, canonical) == canonical
    }
    for local in resolved.keys() - stable.keys():
        _logger.warning("Dropping cyclic synonym: %s", local)
    return _resolve_fixed_point(stable)


def _clean(text: str) -> str:
    stripped = _DISALLOWED_RE.sub("", text.lower())
    return _WHITESPACE_RE.sub(" ", stripped).strip()


@dataclass(frozen=True)
class SynonymTable:
    """Local-to-canonical vocabulary, closed under its own substitution."""

    terms: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_entries(cls, entries: Iterable[SynonymEntry]) -> "SynonymTable":
        raw: dict[str, str] = {}
        for entry in entries:
            local = _clean(entry.local_term)
            canonical = _clean(entry.canonical)
            if local and canonical:
                raw[local] = canonical
        return cls(terms=_resolve_fixed_point(raw))

    @classmethod
    def default(cls) -> "SynonymTable":
        return cls.from_entries(DEFAULT_SYNONYMS)

    @cached_property
    def _pattern(self) -> re.Pattern[str] | None:
        return _compile(self.terms)

    @cached_property
    def keywords(self) -> frozenset[str]:
        """Romanized local terms that mark a note as mixed-language."""
        return frozenset(term for term in self.terms if term.isascii())

    @cached_property
    def counted_words(self) -> frozenset[str]:
        """Units, sizes and foods a romanized numeral may count."""
        words = {*self.keywords, *_UNIT_ALIASES, *_CONTAINERS, *_SIZES}
        words.update(term for term in LOCAL_UNIT_KEYWORDS if term.isascii())
        words.update(term for term in self.terms.values() if term.isascii())
        return frozenset(words)

    @cached_property
    def numeral_pattern(self) -> re.Pattern[str]:
        return re.compile(
            rf"{_ROMANIZED_NUMERALS}(?=\s+{_bounded(self.counted_words)})"
        )

    def substitute(self, text: str) -> str:
        """Replace every local term in ``text`` with its canonical term."""
        return _substitute(self._pattern, self.terms, text)

    def canonical_name(self, name: str) -> str:
        """Return the canonical form of a single food name."""
        return _clean(self.substitute(_clean(name)))


_NATIVE_NUMERAL_RE = re.compile(
    _bounded(term for term in NUMERALS if not term.isascii())
)
_ROMANIZED_NUMERALS = _bounded(term for term in NUMERALS if term.isascii())


def detect_language(text: str, table: SynonymTable | None = None) -> str:
    """Return ``hi``, ``mixed`` or ``en`` for a note."""
    if _DEVANAGARI_RE.search(text):
        return "hi"
    lowered = text.lower()
    keywords = LOCAL_UNIT_KEYWORDS | (table.keywords if table else frozenset())
    for keyword in keywords:
        if re.search(_bounded([keyword]), lowered):
            return "mixed"
    return "en"


def _numeral_value(match: re.Match[str]) -> str:
    return str(NUMERALS[match.group(0)])


def _translate_numerals(text: str, table: SynonymTable) -> str:
    """Replace numeral words with digits.

    Romanized numerals ("do", "ek") double as English words, so they are only
    replaced in front of a unit, a size or a known food.
    """
    translated = _NATIVE_NUMERAL_RE.sub(_numeral_value, text.translate(_NATIVE_DIGITS))
    return table.numeral_pattern.sub(_numeral_value, translated)


def normalize_text(
    text: str,
    table: SynonymTable,
    max_length: int = DEFAULT_NOTE_MAX_LENGTH,
) -> tuple[str, str, list[str]]:
    """Normalize a note and return ``(text, language, warnings)``.

    Applying the function to its own output returns the same text.
    """
    warnings: list[str] = []
    if len(text) > max_length:
        warnings.append(f"Note truncated to {max_length} characters.")
        text = text[:max_length]
    cleaned = _clean(text)
    language = detect_language(cleaned, table)
    if language != "en":
        cleaned = _clean(table.substitute(_translate_numerals(cleaned, table)))
    return cleaned[:max_length].strip(), language, warnings


_UNIT_ALIASES: dict[str, str] = {
    "piece": "piece",
    "pieces": "piece",
    "pc": "piece",
    "pcs": "piece",
    "katori": "katori",
    "katoris": "katori",
    "bowl": "bowl",
    "bowls": "bowl",
    "cup": "cup",
    "cups": "cup",
    "plate": "plate",
    "plates": "plate",
    "glass": "glass",
    "glasses": "glass",
    "spoon": "tbsp",
    "spoons": "tbsp",
    "tbsp": "tbsp",
    "tsp": "tsp",
    "g": "g",
    "gm": "g",
    "gms": "g",
    "gram": "g",
    "grams": "g",
    "ml": "ml",
}
_CONTAINERS = ("katori", "bowl", "cup", "plate", "glass")
_SIZES = ("small", "medium", "large", "big", "half", "full", "regular")

_SEGMENT_SPLIT_RE = re.compile(r"\s*(?:,|\+|\band\b|\bwith\b)\s*")
_FOOD = rf"[a-z{_DEVANAGARI}][a-z{_DEVANAGARI}\s\-]*"
_QUANTITY_RE = re.compile(
    rf"(?P<count>\d+)\s*"
    rf"(?:(?P<unit>{'|'.join(sorted(_UNIT_ALIASES, key=len, reverse=True))})\b)?\s*"
    rf"(?:of\s+)?(?P<food>{_FOOD})"
)
_TRAILING_COUNT_RE = re.compile(rf"(?P<food>{_FOOD}?)\s*\(\s*(?P<count>\d+)\s*\)")
_PORTION_RE = re.compile(
    rf"(?:(?P<size>{'|'.join(_SIZES)})\s+)?"
    rf"(?P<container>{'|'.join(_CONTAINERS)})s?\s+"
    rf"(?:of\s+)?(?P<food>{_FOOD})"
)


def _segments(text: str) -> list[str]:
    return [segment for segment in _SEGMENT_SPLIT_RE.split(text) if segment]


def extract_quantities(text: str) -> list[NoteQuantity]:
    """Extract ``count [unit] [of] food`` and ``food (count)`` phrases."""
    quantities: list[NoteQuantity] = []
    for segment in _segments(text):
        match = _QUANTITY_RE.search(segment)
        if match:
            food = match.group("food").strip()
            if food:
                unit = match.group("unit")
                quantities.append(
                    NoteQuantity(
                        count=int(match.group("count")),
                        food=food,
                        unit=_UNIT_ALIASES[unit] if unit else None,
                    )
                )
            continue
        trailing = _TRAILING_COUNT_RE.search(segment)
        if trailing and trailing.group("food").strip():
            quantities.append(
                NoteQuantity(
                    count=int(trailing.group("count")),
                    food=trailing.group("food").strip(),
                )
            )
    return quantities


def extract_portions(text: str) -> list[NotePortion]:
    """Extract ``[size] container [of] food`` phrases not preceded by a count."""
    portions: list[NotePortion] = []
    for segment in _segments(text):
        if _QUANTITY_RE.search(segment):
            continue
        match = _PORTION_RE.search(segment)
        if not match:
            continue
        size = match.group("size") or "medium"
        portions.append(
            NotePortion(
                container=match.group("container"),
                food=match.group("food").strip(),
                size="large" if size == "big" else size,
            )
        )
    return portions


def normalize_note(
    text: str | None,
    table: SynonymTable,
    max_length: int = DEFAULT_NOTE_MAX_LENGTH,
) -> UserNote:
    """Normalize a raw note and extract structured quantities and portions."""
    raw = text or ""
    normalized, language, warnings = normalize_text(raw, table, max_length)
    return UserNote(
        raw_text=raw,
        sanitized_text=normalized,
        language=language,
        quantities=tuple(extract_quantities(normalized)),
        portions=tuple(extract_portions(normalized)),
        warnings=tuple(warnings),
    )


def singular(word: str) -> str:
    """Very small English singularizer for food names."""
    if word.endswith("ies") and len(word) > 4:
        return word[:-3] + "y"
    if word.endswith("es") and word[:-2].endswith(("ch", "sh", "o")):
        return word[:-2]
    if word.endswith("s") and not word.endswith(("ss", "us")) and len(word) > 3:
        return word[:-1]
    return word


def _singular_phrase(phrase: str) -> str:
    return " ".join(singular(word) for word in phrase.split())


def phrase_mentions(phrase: str, food_name: str) -> bool:
    """Return True when a note phrase refers to ``food_name``.

    The item name may equal the phrase or lead it ("roti" in "roti today"),
    or the phrase may name part of the item ("chicken" for "chicken curry").
    A name later in the phrase does not count, so "idli sambar" refers to
    idli only.
    """
    left = _singular_phrase(phrase.lower().strip())
    right = _singular_phrase(food_name.lower().strip())
    if not left or not right:
        return False
    if left == right or left.startswith(right + " "):
        return True
    return re.search(_bounded([left]), right) is not None


class SynonymRepository(Protocol):
    """Read access to stored multilingual synonyms."""

    def list_synonyms(self) -> list[SynonymEntry]:
        """Return every stored synonym row."""


@dataclass
class SynonymService:
    """Loads the synonym table from storage, cached and merged with defaults."""

    repository: SynonymRepository
    cache: Cache
    ttl_seconds: int = 3600

    _cache_key = "synonyms:table"

    def table(self) -> SynonymTable:
        cached = self.cache.get(self._cache_key)
        if isinstance(cached, SynonymTable):
            return cached
        try:
            stored = self.repository.list_synonyms()
        except Exception:
            _logger.warning(
                "Synonym store unavailable, using built-in table", exc_info=True
            )
            return SynonymTable.default()
        table = SynonymTable.from_entries([*DEFAULT_SYNONYMS, *stored])
        self.cache.set(self._cache_key, table, ttl_seconds=self.ttl_seconds)
        _logger.info(
            "Loaded synonym table: stored=%s terms=%s", len(stored), len(table.terms)
        )
        return table
