"""Supabase repository for multilingual synonyms."""

from dataclasses import dataclass

from supabase import Client

from meal_reconciler.domain.catalog import SynonymEntry
from meal_reconciler.services.normalizer import SynonymRepository


@dataclass
class SupabaseSynonymRepository(SynonymRepository):
    """Reads the ``multilingual_synonyms`` table."""

    client: Client

    def list_synonyms(self) -> list[SynonymEntry]:
        response = (
            self.client.table("multilingual_synonyms")
            .select("local_term, canonical_name, language, region")
            .execute()
        )
        entries = []
        for row in response.data or []:
            local_term = row.get("local_term")
            canonical = row.get("canonical_name")
            if not local_term or not canonical:
                continue
            entries.append(
                SynonymEntry(
                    local_term=str(local_term),
                    canonical=str(canonical),
                    language=str(row.get("language") or "hi"),
                    region=row.get("region"),
                )
            )
        return entries
