"""Tests for Supabase adapter implementations."""

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta

import pytest

from meal_reconciler.adapters.supabase_analysis_repository import (
    SupabaseAnalysisRepository,
    item_to_json,
)
from meal_reconciler.adapters.supabase_catalog_repository import (
    SupabaseCatalogRepository,
)
from meal_reconciler.adapters.supabase_meal_store import SupabaseMealStore
from meal_reconciler.adapters.supabase_portion_prior_repository import (
    SupabasePortionPriorRepository,
)
from meal_reconciler.adapters.supabase_quota_repository import (
    SupabaseQuotaRepository,
)
from meal_reconciler.adapters.supabase_synonym_repository import (
    SupabaseSynonymRepository,
)
from meal_reconciler.domain.analysis import (
    AnalysisRecord,
    AnalysisStatus,
    ConflictRecord,
    ConflictType,
    NoteInfluence,
    ReconciledItem,
    Resolution,
)
from meal_reconciler.domain.meals import MealItemSnapshot, MealLog
from meal_reconciler.domain.nutrition import MacroProfile
from meal_reconciler.domain.quota import QuotaState, QuotaType
from meal_reconciler.services.normalizer import SynonymTable, normalize_note


@dataclass
class FakeResponse:
    data: list[dict[str, object]] | dict[str, object] | None


@dataclass
class FakeTable:
    name: str
    response_queue: dict[str, list[list[dict[str, object]]]] = field(
        default_factory=lambda: {"select": [], "insert": [], "update": [], "upsert": []}
    )
    last_payload: object | None = None
    last_filters: list[tuple[str, object]] = field(default_factory=list)
    last_options: dict[str, object] = field(default_factory=dict)

    def queue(self, action: str, data: list[dict[str, object]]) -> None:
        self.response_queue[action].append(data)

    def select(self, *_args) -> "FakeTable":
        self._action = "select"
        return self

    def insert(self, payload) -> "FakeTable":  # type: ignore[no-untyped-def]
        self._action = "insert"
        self.last_payload = payload
        return self

    def update(self, payload) -> "FakeTable":  # type: ignore[no-untyped-def]
        self._action = "update"
        self.last_payload = payload
        return self

    def upsert(self, payload, **options) -> "FakeTable":  # type: ignore[no-untyped-def]
        self._action = "upsert"
        self.last_payload = payload
        self.last_options = options
        return self

    def eq(self, column: str, value) -> "FakeTable":  # type: ignore[no-untyped-def]
        self.last_filters.append((column, value))
        return self

    def in_(self, column: str, value) -> "FakeTable":  # type: ignore[no-untyped-def]
        self.last_filters.append((column, value))
        return self

    def ilike(self, column: str, value) -> "FakeTable":  # type: ignore[no-untyped-def]
        self.last_filters.append((column, value))
        return self

    def contains(self, column: str, value: list[str]) -> "FakeTable":
        self.last_filters.append((column, value))
        return self

    def or_(self, condition: str) -> "FakeTable":
        self.last_filters.append(("or", condition))
        return self

    def gte(self, column: str, value) -> "FakeTable":  # type: ignore[no-untyped-def]
        self.last_filters.append((column, value))
        return self

    def order(self, column: str, desc: bool = False) -> "FakeTable":
        self.last_filters.append(("order", (column, desc)))
        return self

    def limit(self, _count: int) -> "FakeTable":
        return self

    def execute(self) -> FakeResponse:
        action = getattr(self, "_action", "select")
        queue = self.response_queue.get(action, [])
        data = queue.pop(0) if queue else []
        return FakeResponse(data=data)


@dataclass
class FakeRpc:
    data: object

    def execute(self) -> FakeResponse:
        return FakeResponse(data=self.data)


@dataclass
class FakeSupabaseClient:
    tables: dict[str, FakeTable] = field(default_factory=dict)
    rpc_responses: dict[str, list[object]] = field(default_factory=dict)
    rpc_calls: list[tuple[str, dict[str, object]]] = field(default_factory=list)

    def table(self, name: str) -> FakeTable:
        if name not in self.tables:
            self.tables[name] = FakeTable(name=name)
        return self.tables[name]

    def rpc(self, name: str, params: dict[str, object]) -> FakeRpc:
        self.rpc_calls.append((name, params))
        queue = self.rpc_responses.get(name, [])
        return FakeRpc(data=queue.pop(0) if queue else [])


IDLI_ROW = {
    "id": "food-idli",
    "name": "Idli",
    "calories_per_100g": 146,
    "protein_per_100g": 4.5,
    "fat_per_100g": 0.4,
    "carbs_per_100g": 30,
    "region_tags": ["south indian"],
    "dietary_tags": ["vegetarian"],
}


def _item() -> ReconciledItem:
    per_100g = MacroProfile(calories=297, protein_g=9.8, fat_g=3.7, carbs_g=55)
    return ReconciledItem(
        name="roti",
        detected_name="chapati",
        portion_grams=60,
        macros=per_100g.for_grams(60),
        confidence=88,
        mapping_confidence=95,
        model_confidence=0.9,
        food_id="food-roti",
        per_100g=per_100g,
        note_influence=NoteInfluence.PORTION,
        explanation=("Model confidence: 90%",),
        item_id="item-1",
    )


def test_catalog_search_parses_records_and_filters_region() -> None:
    client = FakeSupabaseClient()
    table = client.table("food_items")
    table.queue("select", [IDLI_ROW])

    records = SupabaseCatalogRepository(client).search("idli", region="South Indian")

    assert len(records) == 1
    assert records[0].name == "Idli"
    assert records[0].per_100g.calories == 146
    assert records[0].region_tags == ("south indian",)
    assert ("name", "%idli%") in table.last_filters
    assert ("region_tags", ["south indian"]) in table.last_filters


def test_catalog_search_falls_back_to_words() -> None:
    client = FakeSupabaseClient()
    table = client.table("food_items")
    table.queue("select", [])
    table.queue("select", [IDLI_ROW])

    records = SupabaseCatalogRepository(client).search("idli with podi")

    assert [record.id for record in records] == ["food-idli"]
    assert ("or", "name.ilike.%idli%,name.ilike.%with%,name.ilike.%podi%") in (
        table.last_filters
    )


def test_synonym_repository_skips_incomplete_rows() -> None:
    client = FakeSupabaseClient()
    client.table("multilingual_synonyms").queue(
        "select",
        [
            {"local_term": "kozhukattai", "canonical_name": "modak", "language": "ta"},
            {"local_term": "", "canonical_name": "rice"},
        ],
    )

    entries = SupabaseSynonymRepository(client).list_synonyms()

    assert len(entries) == 1
    assert entries[0].local_term == "kozhukattai"
    assert entries[0].language == "ta"


def test_portion_prior_repository() -> None:
    client = FakeSupabaseClient()
    table = client.table("user_portion_priors")
    table.queue(
        "select",
        [
            {
                "user_id": "user-1",
                "food_name": "rice",
                "avg_portion_grams": 150,
                "sample_count": 4,
            }
        ],
    )
    repository = SupabasePortionPriorRepository(client)

    prior = repository.get_prior("user-1", "Rice")
    repository.record_portion("user-1", "Rice", 120)

    assert prior is not None
    assert prior.avg_portion_grams == 150
    assert ("food_name", "rice") in table.last_filters
    assert repository.get_prior("user-1", "dal") is None
    assert client.rpc_calls == [
        (
            "update_portion_prior",
            {"p_user_id": "user-1", "p_food_name": "rice", "p_portion_grams": 120},
        )
    ]


def test_quota_repository_usage_and_increment() -> None:
    client = FakeSupabaseClient()
    client.table("usage_tracking").queue("select", [{"vision_count": 3}])
    client.rpc_responses["increment_usage"] = [
        [{"vision_count": 4, "text_count": 0}]
    ]
    repository = SupabaseQuotaRepository(client)
    day = date(2026, 3, 14)

    usage = repository.get_usage("user-1", day)
    updated = repository.increment("user-1", day, QuotaType.VISION)

    assert usage == QuotaState("user-1", day, vision_count=3, text_count=0)
    assert updated.vision_count == 4
    assert client.rpc_calls[0][1] == {
        "p_user_id": "user-1",
        "p_usage_date": "2026-03-14",
        "p_quota_type": "vision",
    }


def test_quota_repository_increment_failure_raises() -> None:
    repository = SupabaseQuotaRepository(FakeSupabaseClient())

    with pytest.raises(RuntimeError):
        repository.increment("user-1", date(2026, 3, 14), QuotaType.TEXT)


def test_quota_repository_plan() -> None:
    client = FakeSupabaseClient()
    table = client.table("subscriptions")
    future = (datetime.now(tz=UTC) + timedelta(days=10)).isoformat()
    past = (datetime.now(tz=UTC) - timedelta(days=1)).isoformat()
    rows = [
        {"plan": "premium", "status": "active", "expires_at": future},
        {"plan": "premium", "status": "active", "expires_at": past},
        {"plan": "lifetime", "status": "active", "expires_at": past},
        {"plan": "premium", "status": "trialing"},
    ]
    for row in rows:
        table.queue("select", [row])
    repository = SupabaseQuotaRepository(client)

    assert repository.get_plan("user-1") == "premium"
    assert repository.get_plan("user-1") == "free"
    assert repository.get_plan("user-1") == "lifetime"
    assert repository.get_plan("user-1") == "trialing"
    assert repository.get_plan("user-1") == "free"


def test_meal_store_calls_idempotent_function() -> None:
    client = FakeSupabaseClient()
    client.rpc_responses["save_meal_idempotent"] = [
        [{"meal_id": "meal-1", "is_duplicate": False}],
        {"meal_id": "meal-1", "is_duplicate": True},
    ]
    store = SupabaseMealStore(client)
    meal = MealLog(
        user_id="user-1",
        meal_type="lunch",
        logged_at=datetime(2026, 3, 14, 13, 0, tzinfo=UTC),
        totals=MacroProfile(calories=178.2, protein_g=5.9, fat_g=2.2, carbs_g=33),
        items=(
            MealItemSnapshot(
                name="roti",
                grams=60,
                calories=178.2,
                protein_g=5.9,
                fat_g=2.2,
                carbs_g=33,
                confidence=88,
                food_id="food-roti",
            ),
        ),
    )

    first = store.save_if_absent("key-1", meal)
    second = store.save_if_absent("key-1", meal)

    assert not first.is_duplicate
    assert second.is_duplicate
    assert second.meal_log_id == "meal-1"
    name, params = client.rpc_calls[0]
    assert name == "save_meal_idempotent"
    assert params["p_idempotency_key"] == "key-1"
    assert params["p_items"][0]["name_snapshot"] == "roti"


def test_meal_store_without_id_raises() -> None:
    store = SupabaseMealStore(FakeSupabaseClient())
    meal = MealLog(
        user_id="user-1",
        meal_type="lunch",
        logged_at=datetime(2026, 3, 14, 13, 0, tzinfo=UTC),
        totals=MacroProfile(calories=0, protein_g=0, fat_g=0, carbs_g=0),
    )

    with pytest.raises(RuntimeError):
        store.save_if_absent("key-1", meal)


def test_analysis_repository_stores_and_loads_snapshot() -> None:
    client = FakeSupabaseClient()
    table = client.table("photo_analyses")
    note = normalize_note("2 roti", SynonymTable.default())
    record = AnalysisRecord(
        id="analysis-1",
        user_id="user-1",
        status=AnalysisStatus.AWAITING_USER_RESOLUTION,
        created_at=datetime(2026, 3, 14, 12, 30, tzinfo=UTC),
        items=(_item(),),
        conflicts=(
            ConflictRecord(
                item_name="roti",
                item_id="item-1",
                conflict_type=ConflictType.QUANTITY,
                model_value=3,
                note_value=2,
                unit="piece",
                note_food="roti",
            ),
        ),
        note=note,
        overall_confidence=88,
        meal_type="dinner",
    )
    table.queue("insert", [{"id": "analysis-1"}])
    repository = SupabaseAnalysisRepository(client)

    repository.create(record)
    stored = dict(table.last_payload)
    table.queue("select", [stored])
    loaded = repository.get("analysis-1")

    assert stored["status"] == "awaiting_user_resolution"
    assert stored["note_text"] == "2 roti"
    assert stored["snapshot"]["items"][0]["item_id"] == "item-1"
    assert loaded == record


def test_analysis_repository_missing_and_failed_writes() -> None:
    repository = SupabaseAnalysisRepository(FakeSupabaseClient())

    assert repository.get("missing") is None
    with pytest.raises(RuntimeError):
        repository.update_status("missing", AnalysisStatus.CANCELLED)


def test_analysis_repository_updates_status_only() -> None:
    client = FakeSupabaseClient()
    table = client.table("photo_analyses")
    table.queue("update", [{"id": "analysis-1"}])

    SupabaseAnalysisRepository(client).update_status(
        "analysis-1", AnalysisStatus.SAVED, meal_log_id="meal-1"
    )

    assert table.last_payload == {"status": "saved", "meal_log_id": "meal-1"}
    assert ("id", "analysis-1") in table.last_filters


def test_analysis_repository_resolutions_insert_once() -> None:
    client = FakeSupabaseClient()
    table = client.table("analysis_conflict_resolutions")
    table.queue("upsert", [{"analysis_id": "analysis-1", "item_id": "item-1"}])
    table.queue("upsert", [])
    table.queue(
        "select",
        [{"item_id": "item-1", "resolution": "note", "item": item_to_json(_item())}],
    )
    repository = SupabaseAnalysisRepository(client)

    first = repository.record_resolution(
        "analysis-1", "item-1", Resolution.NOTE, _item()
    )
    second = repository.record_resolution(
        "analysis-1", "item-1", Resolution.MODEL, _item()
    )
    resolutions = repository.list_resolutions("analysis-1")

    assert first
    assert not second
    assert table.last_options == {
        "on_conflict": "analysis_id,item_id",
        "ignore_duplicates": True,
    }
    assert resolutions == {"item-1": (Resolution.NOTE, _item())}


def test_analysis_repository_finds_cached_saved_analysis() -> None:
    client = FakeSupabaseClient()
    table = client.table("photo_analyses")
    table.queue(
        "select",
        [
            {
                "id": "analysis-1",
                "user_id": "user-1",
                "status": "saved",
                "created_at": "2026-03-14T12:30:00+00:00",
                "photo_ref": "sha256:abc",
                "meal_log_id": "meal-1",
                "snapshot": {"items": [item_to_json(_item())]},
            }
        ],
    )
    since = datetime(2026, 3, 7, 12, 30, tzinfo=UTC)

    cached = SupabaseAnalysisRepository(client).find_cached(
        "user-1", "sha256:abc", "2 roti", since
    )

    assert cached is not None
    assert cached.status is AnalysisStatus.SAVED
    assert cached.items == (_item(),)
    assert ("note_text", "2 roti") in table.last_filters
    assert ("status", "saved") in table.last_filters
    assert ("created_at", since.isoformat()) in table.last_filters
    assert ("order", ("created_at", True)) in table.last_filters
    assert SupabaseAnalysisRepository(FakeSupabaseClient()).find_cached(
        "user-1", "sha256:abc", "", since
    ) is None
