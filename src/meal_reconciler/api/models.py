"""Request and response models for the HTTP API."""

import base64
import binascii
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from meal_reconciler.config import parse_dietary_prefs
from meal_reconciler.domain.analysis import (
    AnalysisRecord,
    AnalysisResult,
    ConflictRecord,
    ReconciledItem,
    Resolution,
)
from meal_reconciler.domain.inference import InferenceRequest
from meal_reconciler.domain.meals import ItemEdit
from meal_reconciler.domain.quota import QuotaDecision
from meal_reconciler.services.confidence import confidence_level


class AnalysisRequest(BaseModel):
    """Photo (base64 or URL) or text description plus optional context.

    ``analysis_id`` lets the client cancel the analysis while it runs.
    """

    user_id: str = Field(min_length=1)
    analysis_id: UUID | None = None
    image_base64: str | None = None
    image_url: str | None = None
    text: str | None = None
    meal_type: str | None = None
    region: str | None = None
    dietary_prefs: str | list[str] | None = None
    aux_note: str | None = None

    @model_validator(mode="after")
    def _require_input(self) -> "AnalysisRequest":
        has_text = bool(self.text and self.text.strip())
        if not (self.image_base64 or self.image_url or has_text):
            raise ValueError("Provide an image or a text description")
        return self

    @field_validator("image_base64")
    @classmethod
    def _valid_base64(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("image_base64 is not valid base64") from exc
        return value

    def to_domain(self) -> InferenceRequest:
        return InferenceRequest(
            user_id=self.user_id,
            image_bytes=base64.b64decode(self.image_base64)
            if self.image_base64
            else None,
            image_url=self.image_url,
            text=self.text if not (self.image_base64 or self.image_url) else None,
            meal_type=self.meal_type,
            region=self.region,
            dietary_prefs=parse_dietary_prefs(self.dietary_prefs),
            aux_note=self.aux_note,
        )


class ResolveConflictRequest(BaseModel):
    chosen: Resolution

    @field_validator("chosen")
    @classmethod
    def _not_unresolved(cls, value: Resolution) -> Resolution:
        if value is Resolution.UNRESOLVED:
            raise ValueError("chosen must be 'model' or 'note'")
        return value


class ItemEditPayload(BaseModel):
    item_id: str
    portion_grams: float | None = Field(default=None, ge=0)
    remove: bool = False

    def to_domain(self) -> ItemEdit:
        return ItemEdit(
            item_id=self.item_id,
            portion_grams=self.portion_grams,
            remove=self.remove,
        )


class SaveMealRequest(BaseModel):
    edited_items: list[ItemEditPayload] = Field(default_factory=list)
    meal_type: str | None = None
    timestamp: datetime | None = None


class MacrosPayload(BaseModel):
    protein_g: float
    carbs_g: float
    fat_g: float


class ItemPayload(BaseModel):
    item_id: str
    name: str
    detected_name: str
    portion_grams: float
    calories: float
    macros: MacrosPayload
    confidence: int
    confidence_level: str
    food_id: str | None
    note_influence: str
    explanation: list[str]
    is_placeholder: bool

    @classmethod
    def from_domain(cls, item: ReconciledItem) -> "ItemPayload":
        return cls(
            item_id=item.item_id,
            name=item.name,
            detected_name=item.detected_name,
            portion_grams=item.portion_grams,
            calories=item.macros.calories,
            macros=MacrosPayload(
                protein_g=item.macros.protein_g,
                carbs_g=item.macros.carbs_g,
                fat_g=item.macros.fat_g,
            ),
            confidence=item.confidence,
            confidence_level=confidence_level(item.confidence).value,
            food_id=item.food_id,
            note_influence=item.note_influence.value,
            explanation=list(item.explanation),
            is_placeholder=item.is_placeholder,
        )


class ConflictPayload(BaseModel):
    item_id: str
    item_name: str
    conflict_type: str
    model_value: float | str
    note_value: float | str
    unit: str | None
    resolution: str

    @classmethod
    def from_domain(cls, conflict: ConflictRecord) -> "ConflictPayload":
        return cls(
            item_id=conflict.item_id,
            item_name=conflict.item_name,
            conflict_type=conflict.conflict_type.value,
            model_value=conflict.model_value,
            note_value=conflict.note_value,
            unit=conflict.unit,
            resolution=conflict.resolution.value,
        )


class QuotaPayload(BaseModel):
    allowed: bool
    remaining: int
    limit: int
    resets_at: datetime
    is_premium: bool
    degraded: bool
    message: str | None

    @classmethod
    def from_domain(cls, decision: QuotaDecision) -> "QuotaPayload":
        return cls(
            allowed=decision.allowed,
            remaining=decision.remaining,
            limit=decision.limit,
            resets_at=decision.resets_at,
            is_premium=decision.is_premium,
            degraded=decision.degraded,
            message=decision.message,
        )


class AnalysisPayload(BaseModel):
    analysis_id: str | None
    status: str | None
    items: list[ItemPayload]
    total_calories: float
    overall_confidence: int
    conflicts: list[ConflictPayload]
    warnings: list[str]
    quota: QuotaPayload | None = None
    explanation: str = ""
    model_version: str | None = None
    was_cached: bool = False

    @classmethod
    def from_result(cls, result: AnalysisResult) -> "AnalysisPayload":
        return cls(
            analysis_id=result.analysis_id,
            status=result.status.value if result.status else None,
            items=[ItemPayload.from_domain(item) for item in result.items],
            total_calories=result.total_calories,
            overall_confidence=result.overall_confidence,
            conflicts=[ConflictPayload.from_domain(c) for c in result.conflicts],
            warnings=list(result.warnings),
            quota=QuotaPayload.from_domain(result.quota) if result.quota else None,
            explanation=result.explanation,
            model_version=result.model_version,
            was_cached=result.was_cached,
        )

    @classmethod
    def from_record(cls, record: AnalysisRecord) -> "AnalysisPayload":
        return cls(
            analysis_id=record.id,
            status=record.status.value,
            items=[ItemPayload.from_domain(item) for item in record.items],
            total_calories=record.total_calories,
            overall_confidence=record.overall_confidence,
            conflicts=[ConflictPayload.from_domain(c) for c in record.conflicts],
            warnings=list(record.warnings),
        )
