"""Supabase repository for analysis snapshots and conflict resolutions."""

from dataclasses import dataclass
from datetime import datetime

from supabase import Client

from meal_reconciler.domain.analysis import (
    AnalysisRecord,
    AnalysisStatus,
    ConfidenceFactors,
    ConflictRecord,
    ConflictType,
    NoteInfluence,
    ReconciledItem,
    Resolution,
)
from meal_reconciler.domain.notes import NotePortion, NoteQuantity, UserNote
from meal_reconciler.domain.nutrition import MacroProfile
from meal_reconciler.services.analysis import AnalysisRepository

_ANALYSIS_COLUMNS = (
    "id, user_id, status, created_at, meal_type, region, photo_ref, "
    "failure_reason, overall_confidence, meal_log_id, snapshot"
)


@dataclass
class SupabaseAnalysisRepository(AnalysisRepository):
    """Snapshots live in ``photo_analyses``; only status columns are updated.

    Resolutions are rows in ``analysis_conflict_resolutions`` with a unique
    ``(analysis_id, item_id)`` key. ``note_text`` holds the sanitized note so
    saved analyses can be found again for the same photo and note.
    """

    client: Client

    def create(self, record: AnalysisRecord) -> None:
        response = (
            self.client.table("photo_analyses")
            .insert(
                {
                    "id": record.id,
                    "user_id": record.user_id,
                    "status": record.status.value,
                    "created_at": record.created_at.isoformat(),
                    "meal_type": record.meal_type,
                    "region": record.region,
                    "photo_ref": record.photo_ref,
                    "note_text": record.note.sanitized_text if record.note else "",
                    "failure_reason": record.failure_reason,
                    "overall_confidence": record.overall_confidence,
                    "meal_log_id": record.meal_log_id,
                    "snapshot": {
                        "items": [item_to_json(item) for item in record.items],
                        "conflicts": [
                            conflict_to_json(conflict) for conflict in record.conflicts
                        ],
                        "note": note_to_json(record.note),
                        "raw_inference": record.raw_inference,
                        "warnings": list(record.warnings),
                    },
                }
            )
            .execute()
        )
        if not response.data:
            raise RuntimeError("Failed to store analysis")

    def get(self, analysis_id: str) -> AnalysisRecord | None:
        response = (
            self.client.table("photo_analyses")
            .select(_ANALYSIS_COLUMNS)
            .eq("id", analysis_id)
            .limit(1)
            .execute()
        )
        if not response.data:
            return None
        return _record_from_row(response.data[0])

    def find_cached(
        self,
        user_id: str,
        photo_ref: str,
        note_text: str,
        since: datetime,
    ) -> AnalysisRecord | None:
        response = (
            self.client.table("photo_analyses")
            .select(_ANALYSIS_COLUMNS)
            .eq("user_id", user_id)
            .eq("photo_ref", photo_ref)
            .eq("note_text", note_text)
            .eq("status", AnalysisStatus.SAVED.value)
            .gte("created_at", since.isoformat())
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        if not response.data:
            return None
        return _record_from_row(response.data[0])

    def update_status(
        self,
        analysis_id: str,
        status: AnalysisStatus,
        meal_log_id: str | None = None,
    ) -> None:
        payload: dict[str, object] = {"status": status.value}
        if meal_log_id is not None:
            payload["meal_log_id"] = meal_log_id
        response = (
            self.client.table("photo_analyses")
            .update(payload)
            .eq("id", analysis_id)
            .execute()
        )
        if not response.data:
            raise RuntimeError(f"Failed to update analysis {analysis_id}")

    def record_resolution(
        self,
        analysis_id: str,
        item_id: str,
        resolution: Resolution,
        item: ReconciledItem,
    ) -> bool:
        """Insert with ON CONFLICT DO NOTHING; an empty result means a duplicate."""
        response = (
            self.client.table("analysis_conflict_resolutions")
            .upsert(
                {
                    "analysis_id": analysis_id,
                    "item_id": item_id,
                    "resolution": resolution.value,
                    "item": item_to_json(item),
                },
                on_conflict="analysis_id,item_id",
                ignore_duplicates=True,
            )
            .execute()
        )
        return bool(response.data)

    def list_resolutions(
        self, analysis_id: str
    ) -> dict[str, tuple[Resolution, ReconciledItem]]:
        response = (
            self.client.table("analysis_conflict_resolutions")
            .select("item_id, resolution, item")
            .eq("analysis_id", analysis_id)
            .execute()
        )
        return {
            str(row["item_id"]): (
                Resolution(row["resolution"]),
                item_from_json(row["item"]),
            )
            for row in response.data or []
        }


def _record_from_row(row: dict[str, object]) -> AnalysisRecord:
    snapshot = row.get("snapshot") or {}
    return AnalysisRecord(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        status=AnalysisStatus(row["status"]),
        created_at=datetime.fromisoformat(str(row["created_at"])),
        items=tuple(item_from_json(item) for item in snapshot.get("items", [])),
        conflicts=tuple(
            conflict_from_json(conflict)
            for conflict in snapshot.get("conflicts", [])
        ),
        note=note_from_json(snapshot.get("note")),
        raw_inference=snapshot.get("raw_inference") or {},
        overall_confidence=int(row.get("overall_confidence") or 0),
        warnings=tuple(snapshot.get("warnings") or ()),
        meal_type=row.get("meal_type"),
        region=row.get("region"),
        photo_ref=row.get("photo_ref"),
        failure_reason=row.get("failure_reason"),
        meal_log_id=row.get("meal_log_id"),
    )


def _macros_to_json(macros: MacroProfile) -> dict[str, float]:
    return {
        "calories": macros.calories,
        "protein_g": macros.protein_g,
        "fat_g": macros.fat_g,
        "carbs_g": macros.carbs_g,
    }


def _macros_from_json(data: dict[str, float]) -> MacroProfile:
    return MacroProfile(
        calories=float(data.get("calories", 0.0)),
        protein_g=float(data.get("protein_g", 0.0)),
        fat_g=float(data.get("fat_g", 0.0)),
        carbs_g=float(data.get("carbs_g", 0.0)),
    )


def item_to_json(item: ReconciledItem) -> dict[str, object]:
    factors = item.factors
    return {
        "name": item.name,
        "detected_name": item.detected_name,
        "portion_grams": item.portion_grams,
        "macros": _macros_to_json(item.macros),
        "confidence": item.confidence,
        "mapping_confidence": item.mapping_confidence,
        "model_confidence": item.model_confidence,
        "food_id": item.food_id,
        "per_100g": _macros_to_json(item.per_100g) if item.per_100g else None,
        "note_influence": item.note_influence.value,
        "factors": (
            {
                "model_confidence": factors.model_confidence,
                "mapping_confidence": factors.mapping_confidence,
                "portion_heuristic": factors.portion_heuristic,
                "context_score": factors.context_score,
            }
            if factors
            else None
        ),
        "explanation": list(item.explanation),
        "is_placeholder": item.is_placeholder,
        "item_id": item.item_id,
    }


def item_from_json(data: dict[str, object]) -> ReconciledItem:
    per_100g = data.get("per_100g")
    factors = data.get("factors")
    return ReconciledItem(
        name=str(data["name"]),
        detected_name=str(data.get("detected_name") or data["name"]),
        portion_grams=float(data["portion_grams"]),
        macros=_macros_from_json(data["macros"]),
        confidence=int(data.get("confidence") or 0),
        mapping_confidence=int(data.get("mapping_confidence") or 0),
        model_confidence=float(data.get("model_confidence") or 0.0),
        food_id=data.get("food_id"),
        per_100g=_macros_from_json(per_100g) if per_100g else None,
        note_influence=NoteInfluence(data.get("note_influence") or "none"),
        factors=ConfidenceFactors(**factors) if factors else None,
        explanation=tuple(data.get("explanation") or ()),
        is_placeholder=bool(data.get("is_placeholder")),
        item_id=str(data.get("item_id") or ""),
    )


def conflict_to_json(conflict: ConflictRecord) -> dict[str, object]:
    return {
        "item_name": conflict.item_name,
        "conflict_type": conflict.conflict_type.value,
        "model_value": conflict.model_value,
        "note_value": conflict.note_value,
        "resolution": conflict.resolution.value,
        "unit": conflict.unit,
        "note_food": conflict.note_food,
        "item_id": conflict.item_id,
    }


def conflict_from_json(data: dict[str, object]) -> ConflictRecord:
    return ConflictRecord(
        item_name=str(data["item_name"]),
        conflict_type=ConflictType(data["conflict_type"]),
        model_value=data["model_value"],
        note_value=data["note_value"],
        resolution=Resolution(data.get("resolution") or "unresolved"),
        unit=data.get("unit"),
        note_food=data.get("note_food"),
        item_id=str(data.get("item_id") or ""),
    )


def note_to_json(note: UserNote | None) -> dict[str, object] | None:
    if note is None:
        return None
    return {
        "raw_text": note.raw_text,
        "sanitized_text": note.sanitized_text,
        "language": note.language,
        "quantities": [
            {"count": q.count, "food": q.food, "unit": q.unit} for q in note.quantities
        ],
        "portions": [
            {"container": p.container, "food": p.food, "size": p.size}
            for p in note.portions
        ],
        "warnings": list(note.warnings),
    }


def note_from_json(data: dict[str, object] | None) -> UserNote | None:
    if not data:
        return None
    return UserNote(
        raw_text=str(data.get("raw_text") or ""),
        sanitized_text=str(data.get("sanitized_text") or ""),
        language=str(data.get("language") or "en"),
        quantities=tuple(NoteQuantity(**q) for q in data.get("quantities") or ()),
        portions=tuple(NotePortion(**p) for p in data.get("portions") or ()),
        warnings=tuple(data.get("warnings") or ()),
    )
