"""Food identity resolution against the canonical catalog."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from meal_reconciler.domain.catalog import CanonicalFoodRecord, IdentityMatch
from meal_reconciler.services.normalizer import SynonymTable

_logger = logging.getLogger(__name__)

UNMAPPED_CONFIDENCE = 40
_SEARCH_LIMIT = 10


class CatalogRepository(Protocol):
    """Read-only access to the canonical food catalog."""

    def search(
        self, name: str, region: str | None = None, limit: int = _SEARCH_LIMIT
    ) -> list[CanonicalFoodRecord]:
        """Return candidate records for a name, optionally region-tagged."""


def match_score(search: str, name: str) -> float:
    """Score how well a catalog name matches a search term (0-100)."""
    search_lower = search.lower().strip()
    name_lower = name.lower().strip()
    if not search_lower:
        return 0.0
    if name_lower == search_lower:
        return 100.0
    if search_lower in name_lower:
        return 80.0
    search_words = search_lower.split()
    name_words = name_lower.split()
    matching = [
        word
        for word in search_words
        if any(word in other or other in word for other in name_words)
    ]
    return len(matching) / len(search_words) * 60.0


def mapping_confidence(score: float) -> int:
    """Map a match score onto the mapping confidence scale."""
    if score >= 90:
        return 95
    if score >= 70:
        return 85
    if score >= 50:
        return 70
    return 60


def filter_dietary(
    records: Sequence[CanonicalFoodRecord], dietary_prefs: Sequence[str]
) -> list[CanonicalFoodRecord]:
    """Prefer records whose tags satisfy every preference.

    Records without tags pass. When nothing passes, the unfiltered list is
    returned.
    """
    if not dietary_prefs:
        return list(records)
    prefs = [pref.lower() for pref in dietary_prefs]
    kept = [
        record
        for record in records
        if not record.dietary_tags
        or all(
            any(pref in tag.lower() for tag in record.dietary_tags) for pref in prefs
        )
    ]
    return kept or list(records)


@dataclass
class FoodIdentityResolver:
    """Maps detected names onto canonical catalog records."""

    catalog: CatalogRepository

    def resolve(
        self,
        name: str,
        table: SynonymTable,
        region: str | None = None,
        dietary_prefs: Sequence[str] = (),
    ) -> IdentityMatch:
        query = table.canonical_name(name)
        try:
            candidates = self.catalog.search(query, region=region, limit=_SEARCH_LIMIT)
        except Exception:
            _logger.warning("Catalog search failed for %s", query, exc_info=True)
            candidates = []
        candidates = filter_dietary(candidates, dietary_prefs)
        best: CanonicalFoodRecord | None = None
        best_score = 0.0
        for record in candidates:
            score = match_score(query, record.name)
            if score > best_score:
                best, best_score = record, score
        if best is None:
            _logger.info("No catalog match: name=%s region=%s", query, region)
            return IdentityMatch(
                query=query,
                record=None,
                score=0.0,
                mapping_confidence=UNMAPPED_CONFIDENCE,
            )
        return IdentityMatch(
            query=query,
            record=best,
            score=best_score,
            mapping_confidence=mapping_confidence(best_score),
        )
