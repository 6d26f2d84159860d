"""Shared test fixtures."""

import threading
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from uuid import uuid4

import pytest

from meal_reconciler.config import Settings
from meal_reconciler.containers import AppContainer
from meal_reconciler.domain.analysis import (
    AnalysisRecord,
    AnalysisStatus,
    ReconciledItem,
    Resolution,
)
from meal_reconciler.domain.catalog import CanonicalFoodRecord, SynonymEntry
from meal_reconciler.domain.meals import MealLog, SaveResult
from meal_reconciler.domain.nutrition import MacroProfile
from meal_reconciler.domain.priors import PortionPrior
from meal_reconciler.domain.quota import QuotaState, QuotaType
from meal_reconciler.services.analysis import AnalysisRepository, AnalysisService
from meal_reconciler.services.cache import InMemoryCache
from meal_reconciler.services.confidence import ConfidenceOrchestrator
from meal_reconciler.services.conflicts import ConflictDetector, ConflictResolver
from meal_reconciler.services.identity import CatalogRepository, FoodIdentityResolver
from meal_reconciler.services.inference import InferenceClient, InferenceService
from meal_reconciler.services.meals import MealPersistenceService, MealStore
from meal_reconciler.services.normalizer import SynonymRepository, SynonymService
from meal_reconciler.services.portions import PortionPriorRepository, PortionResolver
from meal_reconciler.services.quota import QuotaRepository, QuotaService, TierLimits
from meal_reconciler.services.resilience import RetryPolicy

FIXED_NOW = datetime(2026, 3, 14, 12, 30, tzinfo=UTC)


def detected_item(  # noqa: PLR0913
    name: str,
    portion_grams: float,
    confidence: float,
    calories: float = 100.0,
    protein_g: float = 3.0,
    carbs_g: float = 15.0,
    fat_g: float = 2.0,
    unit: str | None = "g",
) -> dict[str, object]:
    """Raw model item as it comes back from inference."""
    return {
        "name": name,
        "portion_grams": portion_grams,
        "unit": unit,
        "calories": calories,
        "macros": {"protein_g": protein_g, "carbs_g": carbs_g, "fat_g": fat_g},
        "confidence": confidence,
        "note_influence": None,
        "alternatives": [],
    }


def inference_payload(*items: dict[str, object]) -> dict[str, object]:
    return {
        "items": list(items),
        "total_calories": sum(float(item["calories"]) for item in items),
        "explanation": "Detected from photo",
        "model_version": "test-model",
    }


IDLI_SAMBAR_PAYLOAD = inference_payload(
    detected_item("idli", 40, 0.9, calories=58, protein_g=2, carbs_g=12, fat_g=0.2),
    detected_item("sambar", 200, 0.85, calories=130, protein_g=6, carbs_g=18, fat_g=4),
)


def catalog_records() -> list[CanonicalFoodRecord]:
    return [
        CanonicalFoodRecord(
            id="food-idli",
            name="idli",
            per_100g=MacroProfile(calories=146, protein_g=4.5, fat_g=0.4, carbs_g=30),
            region_tags=("south indian",),
            dietary_tags=("vegetarian",),
        ),
        CanonicalFoodRecord(
            id="food-roti",
            name="roti",
            per_100g=MacroProfile(calories=297, protein_g=9.8, fat_g=3.7, carbs_g=55),
            region_tags=("north indian",),
            dietary_tags=("vegetarian",),
        ),
        CanonicalFoodRecord(
            id="food-naan",
            name="naan",
            per_100g=MacroProfile(calories=310, protein_g=9, fat_g=7, carbs_g=52),
            dietary_tags=("vegetarian",),
        ),
        CanonicalFoodRecord(
            id="food-dal",
            name="dal",
            per_100g=MacroProfile(calories=116, protein_g=7, fat_g=3, carbs_g=16),
            dietary_tags=("vegetarian", "vegan"),
        ),
    ]


@dataclass
class InMemorySynonymRepository(SynonymRepository):
    """In-memory synonym repository for tests."""

    entries: list[SynonymEntry] = field(default_factory=list)
    fail: bool = False
    calls: int = 0

    def list_synonyms(self) -> list[SynonymEntry]:
        self.calls += 1
        if self.fail:
            raise RuntimeError("synonym store down")
        return list(self.entries)


@dataclass
class InMemoryCatalogRepository(CatalogRepository):
    """Catalog search by name overlap."""

    records: list[CanonicalFoodRecord] = field(default_factory=catalog_records)
    fail: bool = False
    queries: list[str] = field(default_factory=list)

    def search(
        self, name: str, region: str | None = None, limit: int = 10
    ) -> list[CanonicalFoodRecord]:
        self.queries.append(name)
        if self.fail:
            raise RuntimeError("catalog down")
        query = name.lower()
        words = query.split()
        found = [
            record
            for record in self.records
            if query in record.name or record.name in words
        ]
        return found[:limit]


@dataclass
class InMemoryPortionPriorRepository(PortionPriorRepository):
    """In-memory portion priors for tests."""

    priors: dict[tuple[str, str], PortionPrior] = field(default_factory=dict)
    recorded: list[tuple[str, str, float]] = field(default_factory=list)

    def get_prior(self, user_id: str, food_name: str) -> PortionPrior | None:
        return self.priors.get((user_id, food_name.lower()))

    def record_portion(self, user_id: str, food_name: str, grams: float) -> None:
        self.recorded.append((user_id, food_name, grams))


@dataclass
class InMemoryQuotaRepository(QuotaRepository):
    """In-memory usage counters with an atomic increment."""

    usage: dict[tuple[str, date], QuotaState] = field(default_factory=dict)
    plans: dict[str, str] = field(default_factory=dict)
    fail: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def get_usage(self, user_id: str, day: date) -> QuotaState:
        if self.fail:
            raise RuntimeError("quota store down")
        return self.usage.get((user_id, day), QuotaState(user_id=user_id, day=day))

    def increment(self, user_id: str, day: date, quota_type: QuotaType) -> QuotaState:
        if self.fail:
            raise RuntimeError("quota store down")
        with self._lock:
            state = self.usage.get((user_id, day), QuotaState(user_id=user_id, day=day))
            if quota_type is QuotaType.VISION:
                state = replace(state, vision_count=state.vision_count + 1)
            else:
                state = replace(state, text_count=state.text_count + 1)
            self.usage[(user_id, day)] = state
            return state

    def get_plan(self, user_id: str) -> str:
        if self.fail:
            raise RuntimeError("quota store down")
        return self.plans.get(user_id, "free")


@dataclass
class InMemoryMealStore(MealStore):
    """Keyed insert guarded by a lock, like a unique index."""

    meals: dict[str, tuple[str, MealLog]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def save_if_absent(self, idempotency_key: str, meal: MealLog) -> SaveResult:
        with self._lock:
            existing = self.meals.get(idempotency_key)
            if existing is not None:
                return SaveResult(meal_log_id=existing[0], is_duplicate=True)
            meal_log_id = str(uuid4())
            self.meals[idempotency_key] = (meal_log_id, meal)
            return SaveResult(meal_log_id=meal_log_id, is_duplicate=False)


@dataclass
class InMemoryAnalysisRepository(AnalysisRepository):
    """In-memory analysis snapshots and resolutions."""

    records: dict[str, AnalysisRecord] = field(default_factory=dict)
    resolutions: dict[str, dict[str, tuple[Resolution, ReconciledItem]]] = field(
        default_factory=dict
    )
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def create(self, record: AnalysisRecord) -> None:
        self.records[record.id] = record

    def get(self, analysis_id: str) -> AnalysisRecord | None:
        return self.records.get(analysis_id)

    def update_status(
        self,
        analysis_id: str,
        status: AnalysisStatus,
        meal_log_id: str | None = None,
    ) -> None:
        record = self.records[analysis_id]
        self.records[analysis_id] = replace(
            record, status=status, meal_log_id=meal_log_id or record.meal_log_id
        )

    def record_resolution(
        self,
        analysis_id: str,
        item_id: str,
        resolution: Resolution,
        item: ReconciledItem,
    ) -> bool:
        with self._lock:
            stored = self.resolutions.setdefault(analysis_id, {})
            if item_id in stored:
                return False
            stored[item_id] = (resolution, item)
            return True

    def list_resolutions(
        self, analysis_id: str
    ) -> dict[str, tuple[Resolution, ReconciledItem]]:
        return dict(self.resolutions.get(analysis_id, {}))

    def find_cached(
        self,
        user_id: str,
        photo_ref: str,
        note_text: str,
        since: datetime,
    ) -> AnalysisRecord | None:
        matches = [
            record
            for record in self.records.values()
            if record.user_id == user_id
            and record.photo_ref == photo_ref
            and (record.note.sanitized_text if record.note else "") == note_text
            and record.status is AnalysisStatus.SAVED
            and record.created_at >= since
        ]
        return max(matches, key=lambda record: record.created_at, default=None)


@dataclass
class FakeInferenceClient(InferenceClient):
    """Returns queued payloads or raises queued errors, in order.

    When the queue is empty the default payload is returned.
    """

    payload: dict[str, object] = field(default_factory=lambda: IDLI_SAMBAR_PAYLOAD)
    queue: list[object] = field(default_factory=list)
    calls: list[dict[str, object]] = field(default_factory=list)
    closed: bool = False

    async def infer(  # noqa: PLR0913
        self,
        *,
        model: str,
        reasoning_effort: str | None,
        store: bool,
        prompt: str,
        schema: dict[str, object],
        image_url: str | None,
        text: str | None,
    ) -> dict[str, object]:
        self.calls.append({"prompt": prompt, "image_url": image_url, "text": text})
        if self.queue:
            next_item = self.queue.pop(0)
            if isinstance(next_item, BaseException):
                raise next_item
            return next_item
        return self.payload

    async def close(self) -> None:
        self.closed = True


async def _no_sleep(_seconds: float) -> None:
    return None


def fast_retry_policy(max_attempts: int = 2) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts, timeout_seconds=1.0, sleep=_no_sleep
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        supabase_url="https://example.supabase.co",
        supabase_service_key="service-key",
        openai_api_key="openai-key",
    )


@pytest.fixture
def inference_client() -> FakeInferenceClient:
    return FakeInferenceClient()


@pytest.fixture
def catalog() -> InMemoryCatalogRepository:
    return InMemoryCatalogRepository()


@pytest.fixture
def quota_repository() -> InMemoryQuotaRepository:
    return InMemoryQuotaRepository()


@pytest.fixture
def prior_repository() -> InMemoryPortionPriorRepository:
    return InMemoryPortionPriorRepository()


@pytest.fixture
def meal_store() -> InMemoryMealStore:
    return InMemoryMealStore()


@pytest.fixture
def analysis_repository() -> InMemoryAnalysisRepository:
    return InMemoryAnalysisRepository()


@pytest.fixture
def quota_service(quota_repository: InMemoryQuotaRepository) -> QuotaService:
    return QuotaService(
        repository=quota_repository,
        free_limits=TierLimits(vision=5, text=20),
        premium_limits=TierLimits(vision=100, text=500),
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def analysis_service(  # noqa: PLR0913
    inference_client: FakeInferenceClient,
    catalog: InMemoryCatalogRepository,
    quota_service: QuotaService,
    prior_repository: InMemoryPortionPriorRepository,
    meal_store: InMemoryMealStore,
    analysis_repository: InMemoryAnalysisRepository,
) -> AnalysisService:
    return AnalysisService(
        repository=analysis_repository,
        synonym_service=SynonymService(InMemorySynonymRepository(), InMemoryCache()),
        inference_service=InferenceService(
            client=inference_client,
            model="gpt-5.2",
            reasoning_effort="high",
            store=False,
            retry_policy=fast_retry_policy(),
        ),
        identity_resolver=FoodIdentityResolver(catalog),
        portion_resolver=PortionResolver(prior_repository),
        confidence=ConfidenceOrchestrator(),
        conflict_detector=ConflictDetector(),
        conflict_resolver=ConflictResolver(),
        quota_service=quota_service,
        meal_service=MealPersistenceService(meal_store),
    )


@pytest.fixture
def container(
    settings: Settings,
    analysis_service: AnalysisService,
    quota_service: QuotaService,
    inference_client: FakeInferenceClient,
) -> AppContainer:
    async def close_resources() -> None:
        await inference_client.close()

    return AppContainer(
        settings=settings,
        analysis_service=analysis_service,
        quota_service=quota_service,
        close_resources=close_resources,
    )
