"""Dependency container wiring for the application."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from zoneinfo import ZoneInfo

from supabase import create_client

from meal_reconciler.adapters.edge_inference_client import HttpxEdgeInferenceClient
from meal_reconciler.adapters.openai_inference_client import OpenAIInferenceClient
from meal_reconciler.adapters.supabase_analysis_repository import (
    SupabaseAnalysisRepository,
)
from meal_reconciler.adapters.supabase_catalog_repository import (
    SupabaseCatalogRepository,
)
from meal_reconciler.adapters.supabase_meal_store import SupabaseMealStore
from meal_reconciler.adapters.supabase_portion_prior_repository import (
    SupabasePortionPriorRepository,
)
from meal_reconciler.adapters.supabase_quota_repository import SupabaseQuotaRepository
from meal_reconciler.adapters.supabase_synonym_repository import (
    SupabaseSynonymRepository,
)
from meal_reconciler.config import Settings
from meal_reconciler.services.analysis import AnalysisService
from meal_reconciler.services.cache import InMemoryCache
from meal_reconciler.services.confidence import ConfidenceOrchestrator
from meal_reconciler.services.conflicts import ConflictDetector, ConflictResolver
from meal_reconciler.services.identity import FoodIdentityResolver
from meal_reconciler.services.inference import InferenceService
from meal_reconciler.services.meals import MealPersistenceService
from meal_reconciler.services.normalizer import SynonymService
from meal_reconciler.services.portions import PortionResolver
from meal_reconciler.services.quota import QuotaService, TierLimits
from meal_reconciler.services.resilience import RetryPolicy


@dataclass
class AppContainer:
    """Holds application-wide dependencies."""

    settings: Settings
    analysis_service: AnalysisService
    quota_service: QuotaService
    close_resources: Callable[[], Awaitable[None]]


def build_inference_client(
    settings: Settings,
) -> OpenAIInferenceClient | HttpxEdgeInferenceClient:
    """Pick the inference backend named in settings."""
    backend = settings.inference_backend.lower()
    if backend == "openai":
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required for the openai backend")
        return OpenAIInferenceClient.create(settings.openai_api_key)
    if backend == "edge":
        if not settings.edge_function_url:
            raise ValueError("EDGE_FUNCTION_URL is required for the edge backend")
        return HttpxEdgeInferenceClient.create(
            url=settings.edge_function_url,
            api_key=settings.supabase_service_key,
        )
    raise ValueError(f"Unknown inference backend: {settings.inference_backend}")


def build_container(settings: Settings | None = None) -> AppContainer:
    """Create the default dependency container."""
    resolved_settings = settings or Settings()
    supabase_client = create_client(
        resolved_settings.supabase_url, resolved_settings.supabase_service_key
    )
    inference_client = build_inference_client(resolved_settings)
    inference_service = InferenceService(
        client=inference_client,
        model=resolved_settings.openai_model,
        reasoning_effort=resolved_settings.openai_reasoning_effort,
        store=resolved_settings.openai_store,
        retry_policy=RetryPolicy(
            max_attempts=resolved_settings.inference_max_attempts,
            timeout_seconds=resolved_settings.inference_timeout_seconds,
            base_delay_seconds=resolved_settings.inference_retry_delay_seconds,
            max_delay_seconds=resolved_settings.inference_max_retry_delay_seconds,
        ),
        malformed_retries=resolved_settings.malformed_output_retries,
    )
    quota_service = QuotaService(
        repository=SupabaseQuotaRepository(supabase_client),
        free_limits=TierLimits(
            vision=resolved_settings.free_vision_limit,
            text=resolved_settings.free_text_limit,
        ),
        premium_limits=TierLimits(
            vision=resolved_settings.premium_vision_limit,
            text=resolved_settings.premium_text_limit,
        ),
        timezone=ZoneInfo(resolved_settings.quota_timezone),
        fail_open=resolved_settings.quota_fail_open,
    )
    synonym_service = SynonymService(
        repository=SupabaseSynonymRepository(supabase_client),
        cache=InMemoryCache(),
        ttl_seconds=resolved_settings.synonym_cache_ttl_seconds,
    )
    analysis_service = AnalysisService(
        repository=SupabaseAnalysisRepository(supabase_client),
        synonym_service=synonym_service,
        inference_service=inference_service,
        identity_resolver=FoodIdentityResolver(
            SupabaseCatalogRepository(supabase_client)
        ),
        portion_resolver=PortionResolver(
            SupabasePortionPriorRepository(supabase_client)
        ),
        confidence=ConfidenceOrchestrator(),
        conflict_detector=ConflictDetector(),
        conflict_resolver=ConflictResolver(),
        quota_service=quota_service,
        meal_service=MealPersistenceService(SupabaseMealStore(supabase_client)),
        note_max_length=resolved_settings.note_max_length,
        cache_ttl=timedelta(days=resolved_settings.analysis_cache_days),
    )

    async def close_resources() -> None:
        await inference_client.close()

    return AppContainer(
        settings=resolved_settings,
        analysis_service=analysis_service,
        quota_service=quota_service,
        close_resources=close_resources,
    )
