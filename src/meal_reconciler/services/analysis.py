"""Analysis orchestration: the end-to-end reconciliation pipeline."""

import hashlib
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Protocol
from uuid import uuid4

from meal_reconciler.domain.analysis import (
    AnalysisRecord,
    AnalysisResult,
    AnalysisStatus,
    ConflictRecord,
    NoteInfluence,
    ReconciledItem,
    Resolution,
    ensure_transition,
)
from meal_reconciler.domain.catalog import IdentityMatch
from meal_reconciler.domain.errors import (
    AnalysisClosed,
    AnalysisNotFound,
    ConflictAlreadyResolved,
    ConflictNotFound,
    DuplicateAnalysis,
    InferenceUnavailable,
)
from meal_reconciler.domain.inference import DetectedItem, InferenceRequest
from meal_reconciler.domain.meals import ItemEdit, SaveResult
from meal_reconciler.domain.notes import UserNote
from meal_reconciler.domain.quota import QuotaDecision, QuotaType
from meal_reconciler.services.confidence import (
    PLACEHOLDER_CONFIDENCE,
    ConfidenceOrchestrator,
)
from meal_reconciler.services.conflicts import ConflictDetector, ConflictResolver
from meal_reconciler.services.identity import (
    UNMAPPED_CONFIDENCE,
    FoodIdentityResolver,
)
from meal_reconciler.services.inference import InferenceOutcome, InferenceService
from meal_reconciler.services.meals import MealPersistenceService
from meal_reconciler.services.normalizer import (
    DEFAULT_NOTE_MAX_LENGTH,
    SynonymService,
    SynonymTable,
    normalize_note,
)
from meal_reconciler.services.portions import (
    PortionResolver,
    convert_to_grams,
    scope_note,
    typical_portion,
)
from meal_reconciler.services.quota import QuotaService

_logger = logging.getLogger(__name__)

_CLOSED = frozenset({AnalysisStatus.CANCELLED, AnalysisStatus.FAILED})

ANALYSIS_CACHE_TTL = timedelta(days=7)
CACHED_ANALYSIS_WARNING = "Using cached analysis from previous session"


class AnalysisRepository(Protocol):
    """Persistence interface for analysis snapshots and resolutions."""

    def create(self, record: AnalysisRecord) -> None:
        """Store a new analysis snapshot."""

    def get(self, analysis_id: str) -> AnalysisRecord | None:
        """Return the stored snapshot, if any."""

    def update_status(
        self,
        analysis_id: str,
        status: AnalysisStatus,
        meal_log_id: str | None = None,
    ) -> None:
        """Change only the status (and the saved meal id)."""

    def record_resolution(
        self,
        analysis_id: str,
        item_id: str,
        resolution: Resolution,
        item: ReconciledItem,
    ) -> bool:
        """Insert a resolution once; return False if one already exists."""

    def list_resolutions(
        self, analysis_id: str
    ) -> dict[str, tuple[Resolution, ReconciledItem]]:
        """Return resolutions keyed by item id."""

    def find_cached(
        self,
        user_id: str,
        photo_ref: str,
        note_text: str,
        since: datetime,
    ) -> AnalysisRecord | None:
        """Return the newest saved analysis of the same photo and note."""


def photo_reference(request: InferenceRequest) -> str | None:
    """Stable reference to the analysed photo, used in the idempotency key."""
    if request.image_url:
        return request.image_url
    if request.image_bytes is not None:
        return f"sha256:{hashlib.sha256(request.image_bytes).hexdigest()}"
    return None


def default_meal_type(moment: datetime) -> str:
    """Meal type suggested by the hour of the day."""
    hour = moment.hour
    if 5 <= hour < 11:
        return "breakfast"
    if 11 <= hour < 16:
        return "lunch"
    if 16 <= hour < 19:
        return "snack"
    return "dinner"


@dataclass
class AnalysisService:
    """Runs analyses and the follow-up user actions on them."""

    repository: AnalysisRepository
    synonym_service: SynonymService
    inference_service: InferenceService
    identity_resolver: FoodIdentityResolver
    portion_resolver: PortionResolver
    confidence: ConfidenceOrchestrator
    conflict_detector: ConflictDetector
    conflict_resolver: ConflictResolver
    quota_service: QuotaService
    meal_service: MealPersistenceService
    note_max_length: int = DEFAULT_NOTE_MAX_LENGTH
    cache_ttl: timedelta = ANALYSIS_CACHE_TTL
    _inflight: dict[str, AnalysisStatus] = field(default_factory=dict)

    async def run_analysis(
        self, request: InferenceRequest, analysis_id: str | None = None
    ) -> AnalysisResult:
        """Run the full pipeline for one photo or description.

        Clients may pass their own ``analysis_id`` so they can cancel the
        analysis while inference is running. A photo analysed and saved with
        the same note within ``cache_ttl`` is reused without a model call.
        """
        if analysis_id is not None and (
            analysis_id in self._inflight or self.repository.get(analysis_id)
        ):
            raise DuplicateAnalysis(analysis_id)
        table = self.synonym_service.table()
        note = normalize_note(request.aux_note, table, self.note_max_length)
        cached = self._find_cached(request, note)
        if cached is not None:
            return self._reuse(cached, analysis_id or str(uuid4()), request)

        quota_type = QuotaType.VISION if request.is_vision else QuotaType.TEXT
        decision = self.quota_service.check(request.user_id, quota_type)
        if not decision.allowed:
            return AnalysisResult(
                analysis_id=None,
                status=None,
                items=(),
                total_calories=0.0,
                overall_confidence=0,
                conflicts=(),
                warnings=(decision.message,) if decision.message else (),
                quota=decision,
            )

        analysis_id = analysis_id or str(uuid4())
        created_at = datetime.now(tz=UTC)
        self._inflight[analysis_id] = AnalysisStatus.RECEIVED
        try:
            self._advance(analysis_id, AnalysisStatus.NORMALIZING)

            self._advance(analysis_id, AnalysisStatus.INFERRING)
            try:
                outcome = await self.inference_service.infer(request, note)
            except InferenceUnavailable as exc:
                if self._is_cancelled(analysis_id):
                    return self._cancelled_result(analysis_id, decision)
                self._fail(analysis_id, request, created_at, str(exc))
                raise
            self.quota_service.increment(request.user_id, quota_type)
            if self._is_cancelled(analysis_id):
                return self._cancelled_result(analysis_id, decision)

            self._advance(analysis_id, AnalysisStatus.MAPPING)
            matches = [
                self._match(detected, table, request, outcome)
                for detected in outcome.items
            ]
            items = [
                _reconcile(
                    detected, match, outcome.is_placeholder, item_id_for(index)
                )
                for index, (detected, match) in enumerate(matches)
            ]

            self._advance(analysis_id, AnalysisStatus.PORTION_RESOLVING)
            items = [
                item
                if item.is_placeholder
                else self.portion_resolver.resolve(item, request.user_id, owned)
                for item, owned in zip(items, scope_note(items, note), strict=True)
            ]

            self._advance(analysis_id, AnalysisStatus.SCORING_CONFIDENCE)
            items = [
                self._score(item, match, request.region)
                for item, (_, match) in zip(items, matches, strict=True)
            ]

            self._advance(analysis_id, AnalysisStatus.CONFLICT_CHECK)
            conflicts = self.conflict_detector.detect(items, note)
            final_status = (
                AnalysisStatus.AWAITING_USER_RESOLUTION
                if conflicts
                else AnalysisStatus.READY_TO_SAVE
            )
            if self._is_cancelled(analysis_id):
                return self._cancelled_result(analysis_id, decision)
            self._advance(analysis_id, final_status)

            warnings = (
                *note.warnings,
                *outcome.warnings,
                *self.confidence.save_warnings(items),
            )
            record = AnalysisRecord(
                id=analysis_id,
                user_id=request.user_id,
                status=final_status,
                created_at=created_at,
                items=tuple(items),
                conflicts=tuple(conflicts),
                note=note,
                raw_inference=outcome.raw,
                overall_confidence=self.confidence.overall(items),
                warnings=warnings,
                meal_type=request.meal_type,
                region=request.region,
                photo_ref=photo_reference(request),
            )
            self.repository.create(record)
            _logger.info(
                "Analysis complete: id=%s items=%s conflicts=%s confidence=%s",
                analysis_id,
                len(items),
                len(conflicts),
                record.overall_confidence,
            )
            return AnalysisResult(
                analysis_id=analysis_id,
                status=final_status,
                items=record.items,
                total_calories=record.total_calories,
                overall_confidence=record.overall_confidence,
                conflicts=record.conflicts,
                warnings=warnings,
                quota=decision,
                explanation=outcome.explanation,
                model_version=outcome.model_version,
            )
        finally:
            self._inflight.pop(analysis_id, None)

    def get_analysis(self, analysis_id: str) -> AnalysisRecord:
        """Return the analysis with any conflict resolutions applied."""
        return self._with_resolutions(self._load(analysis_id))

    def resolve_conflict(
        self, analysis_id: str, item_id: str, chosen: Resolution
    ) -> ReconciledItem:
        """Apply the user's choice for one conflicted item, at most once."""
        record = self._load(analysis_id)
        if record.status in _CLOSED or record.status is AnalysisStatus.SAVED:
            raise AnalysisClosed(f"Analysis {analysis_id} is {record.status.value}")
        conflict = _find_conflict(record.conflicts, item_id)
        resolutions = self.repository.list_resolutions(analysis_id)
        if item_id in resolutions:
            raise ConflictAlreadyResolved(item_id)
        item = _find_item(record.items, item_id)
        updated, resolved = self.conflict_resolver.apply(
            item,
            conflict,
            chosen,
            record.note,
            rename=lambda current, name: self._rename(current, name, record.region),
        )
        if not self.repository.record_resolution(
            analysis_id, item_id, resolved.resolution, updated
        ):
            raise ConflictAlreadyResolved(item_id)
        _logger.info(
            "Conflict resolved: analysis=%s item=%s (%s) chosen=%s",
            analysis_id,
            item_id,
            item.name,
            chosen.value,
        )
        resolved_ids = {*resolutions, item_id}
        if record.status is AnalysisStatus.AWAITING_USER_RESOLUTION and all(
            other.item_id in resolved_ids for other in record.conflicts
        ):
            ensure_transition(record.status, AnalysisStatus.READY_TO_SAVE)
            self.repository.update_status(analysis_id, AnalysisStatus.READY_TO_SAVE)
        return updated

    def save_meal(
        self,
        analysis_id: str,
        edited_items: Sequence[ItemEdit] = (),
        meal_type: str | None = None,
        timestamp: datetime | None = None,
    ) -> SaveResult:
        """Persist the reconciled meal exactly once.

        Unresolved conflicts keep the model's values.
        """
        view = self.get_analysis(analysis_id)
        if view.status in _CLOSED:
            raise AnalysisClosed(f"Analysis {analysis_id} is {view.status.value}")
        if view.status is AnalysisStatus.SAVED and view.meal_log_id:
            return SaveResult(meal_log_id=view.meal_log_id, is_duplicate=True)
        unresolved = [c.item_id for c in view.conflicts if not c.is_resolved]
        if unresolved:
            _logger.info(
                "Saving with unresolved conflicts, keeping model values: %s",
                ", ".join(unresolved),
            )
        items = _apply_edits(view.items, edited_items)
        logged_at = timestamp or datetime.now(tz=UTC)
        meal = self.meal_service.build_meal(
            user_id=view.user_id,
            meal_type=meal_type or view.meal_type or default_meal_type(logged_at),
            items=items,
            logged_at=logged_at,
            photo_ref=view.photo_ref,
            analysis_id=analysis_id,
        )
        result = self.meal_service.save(meal)
        if not result.is_duplicate:
            self.portion_resolver.record_history(view.user_id, items)
        if view.status is not AnalysisStatus.SAVED:
            ensure_transition(view.status, AnalysisStatus.SAVED)
            self.repository.update_status(
                analysis_id, AnalysisStatus.SAVED, meal_log_id=result.meal_log_id
            )
        return result

    def cancel_analysis(self, analysis_id: str) -> AnalysisStatus:
        """Cancel an in-flight or unsaved analysis."""
        current = self._inflight.get(analysis_id)
        if current is not None:
            ensure_transition(current, AnalysisStatus.CANCELLED)
            self._inflight[analysis_id] = AnalysisStatus.CANCELLED
            _logger.info("Analysis cancelled in flight: id=%s", analysis_id)
            return AnalysisStatus.CANCELLED
        record = self._load(analysis_id)
        ensure_transition(record.status, AnalysisStatus.CANCELLED)
        self.repository.update_status(analysis_id, AnalysisStatus.CANCELLED)
        _logger.info("Analysis cancelled: id=%s", analysis_id)
        return AnalysisStatus.CANCELLED

    def _load(self, analysis_id: str) -> AnalysisRecord:
        record = self.repository.get(analysis_id)
        if record is None:
            raise AnalysisNotFound(analysis_id)
        return record

    def _with_resolutions(self, record: AnalysisRecord) -> AnalysisRecord:
        resolutions = self.repository.list_resolutions(record.id)
        if not resolutions:
            return record
        items = tuple(
            resolutions[item.item_id][1] if item.item_id in resolutions else item
            for item in record.items
        )
        conflicts = tuple(
            replace(conflict, resolution=resolutions[conflict.item_id][0])
            if conflict.item_id in resolutions
            else conflict
            for conflict in record.conflicts
        )
        return replace(
            record,
            items=items,
            conflicts=conflicts,
            overall_confidence=self.confidence.overall(items),
        )

    def _is_cancelled(self, analysis_id: str) -> bool:
        return self._inflight.get(analysis_id) is AnalysisStatus.CANCELLED

    def _find_cached(
        self, request: InferenceRequest, note: UserNote
    ) -> AnalysisRecord | None:
        photo_ref = photo_reference(request)
        if photo_ref is None:
            return None
        since = datetime.now(tz=UTC) - self.cache_ttl
        try:
            return self.repository.find_cached(
                request.user_id, photo_ref, note.sanitized_text, since
            )
        except Exception:
            _logger.warning(
                "Analysis cache lookup failed for user %s",
                request.user_id,
                exc_info=True,
            )
            return None

    def _reuse(
        self, cached: AnalysisRecord, analysis_id: str, request: InferenceRequest
    ) -> AnalysisResult:
        """Copy a saved analysis into a new one that is ready to save."""
        view = self._with_resolutions(cached)
        warnings = (CACHED_ANALYSIS_WARNING, *self.confidence.save_warnings(view.items))
        record = replace(
            view,
            id=analysis_id,
            status=AnalysisStatus.READY_TO_SAVE,
            created_at=datetime.now(tz=UTC),
            conflicts=(),
            warnings=warnings,
            meal_type=request.meal_type or view.meal_type,
            meal_log_id=None,
        )
        self.repository.create(record)
        _logger.info(
            "Reused cached analysis: id=%s source=%s", analysis_id, cached.id
        )
        return AnalysisResult(
            analysis_id=analysis_id,
            status=record.status,
            items=record.items,
            total_calories=record.total_calories,
            overall_confidence=record.overall_confidence,
            conflicts=(),
            warnings=warnings,
            quota=None,
            explanation=str(record.raw_inference.get("explanation") or ""),
            model_version=record.raw_inference.get("model_version"),
            was_cached=True,
        )

    def _advance(self, analysis_id: str, target: AnalysisStatus) -> None:
        current = self._inflight[analysis_id]
        if current is AnalysisStatus.CANCELLED:
            return
        ensure_transition(current, target)
        self._inflight[analysis_id] = target
        _logger.debug(
            "Analysis %s: %s -> %s", analysis_id, current.value, target.value
        )

    def _fail(
        self,
        analysis_id: str,
        request: InferenceRequest,
        created_at: datetime,
        reason: str,
    ) -> None:
        self._advance(analysis_id, AnalysisStatus.FAILED)
        _logger.warning("Analysis failed: id=%s reason=%s", analysis_id, reason)
        try:
            self.repository.create(
                AnalysisRecord(
                    id=analysis_id,
                    user_id=request.user_id,
                    status=AnalysisStatus.FAILED,
                    created_at=created_at,
                    meal_type=request.meal_type,
                    region=request.region,
                    photo_ref=photo_reference(request),
                    failure_reason=reason,
                )
            )
        except Exception:
            _logger.exception("Failed to store failed analysis %s", analysis_id)

    def _cancelled_result(
        self, analysis_id: str, decision: QuotaDecision
    ) -> AnalysisResult:
        _logger.info("Discarding results of cancelled analysis %s", analysis_id)
        return AnalysisResult(
            analysis_id=analysis_id,
            status=AnalysisStatus.CANCELLED,
            items=(),
            total_calories=0.0,
            overall_confidence=0,
            conflicts=(),
            warnings=(),
            quota=decision,
        )

    def _match(
        self,
        detected: DetectedItem,
        table: SynonymTable,
        request: InferenceRequest,
        outcome: InferenceOutcome,
    ) -> tuple[DetectedItem, IdentityMatch]:
        if outcome.is_placeholder:
            return detected, _unmapped(detected.name)
        match = self.identity_resolver.resolve(
            detected.name, table, request.region, request.dietary_prefs
        )
        return detected, match

    def _score(
        self, item: ReconciledItem, match: IdentityMatch, region: str | None
    ) -> ReconciledItem:
        if item.is_placeholder:
            return replace(item, confidence=PLACEHOLDER_CONFIDENCE)
        result = self.confidence.score(
            model_confidence=item.model_confidence,
            mapping_confidence=match.mapping_confidence,
            portion_grams=item.portion_grams,
            expected_grams=typical_portion(item.name, match.query, item.detected_name),
            region=region,
        )
        return replace(
            item,
            confidence=result.score,
            factors=result.factors,
            explanation=result.explanation,
        )

    def _rename(
        self, item: ReconciledItem, name: str, region: str | None
    ) -> ReconciledItem:
        table = self.synonym_service.table()
        match = self.identity_resolver.resolve(name, table, region)
        if match.record is not None:
            renamed = replace(
                item,
                name=match.record.name,
                food_id=match.record.id,
                per_100g=match.record.per_100g,
                macros=match.record.per_100g.for_grams(item.portion_grams),
                mapping_confidence=match.mapping_confidence,
            )
        else:
            renamed = replace(
                item,
                name=match.query or name,
                food_id=None,
                per_100g=None,
                mapping_confidence=match.mapping_confidence,
            )
        return self._score(renamed, match, region)


def _unmapped(name: str) -> IdentityMatch:
    return IdentityMatch(
        query=name, record=None, score=0.0, mapping_confidence=UNMAPPED_CONFIDENCE
    )


def item_id_for(index: int) -> str:
    """Identifier of the item at ``index``, unique within one analysis."""
    return f"item-{index + 1}"


def _reconcile(
    detected: DetectedItem,
    match: IdentityMatch,
    is_placeholder: bool,
    identifier: str,
) -> ReconciledItem:
    """Build the initial item: grams from the detected unit, macros per match."""
    grams = convert_to_grams(detected.portion, detected.unit, detected.name)
    influence = NoteInfluence(detected.note_influence or "none")
    if match.record is not None:
        return ReconciledItem(
            name=match.record.name,
            detected_name=detected.name,
            portion_grams=grams,
            macros=match.record.per_100g.for_grams(grams),
            confidence=0,
            mapping_confidence=match.mapping_confidence,
            model_confidence=detected.confidence,
            food_id=match.record.id,
            per_100g=match.record.per_100g,
            note_influence=influence,
            item_id=identifier,
        )
    return ReconciledItem(
        name=match.query or detected.name,
        detected_name=detected.name,
        portion_grams=grams,
        macros=detected.macros,
        confidence=0,
        mapping_confidence=match.mapping_confidence,
        model_confidence=detected.confidence,
        note_influence=influence,
        is_placeholder=is_placeholder,
        item_id=identifier,
    )


def _find_conflict(
    conflicts: Sequence[ConflictRecord], identifier: str
) -> ConflictRecord:
    for conflict in conflicts:
        if conflict.item_id == identifier:
            return conflict
    raise ConflictNotFound(identifier)


def _find_item(
    items: Sequence[ReconciledItem], identifier: str
) -> ReconciledItem:
    for item in items:
        if item.item_id == identifier:
            return item
    raise ConflictNotFound(identifier)


def _apply_edits(
    items: Sequence[ReconciledItem], edits: Sequence[ItemEdit]
) -> list[ReconciledItem]:
    by_id = {edit.item_id: edit for edit in edits}
    result: list[ReconciledItem] = []
    for item in items:
        edit = by_id.get(item.item_id)
        if edit is None:
            result.append(item)
        elif edit.remove:
            continue
        elif edit.portion_grams is not None:
            result.append(item.with_portion(edit.portion_grams))
        else:
            result.append(item)
    return result
