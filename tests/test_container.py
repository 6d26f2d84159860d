"""Tests for container wiring."""

import asyncio

import pytest

from meal_reconciler.adapters.edge_inference_client import HttpxEdgeInferenceClient
from meal_reconciler.config import Settings, parse_dietary_prefs
from meal_reconciler.containers import build_container, build_inference_client


def test_build_container_creates_services(settings: Settings) -> None:
    container = build_container(settings)

    assert container.analysis_service is not None
    assert container.analysis_service.quota_service is container.quota_service
    assert container.analysis_service.note_max_length == 140
    asyncio.run(container.close_resources())


def test_edge_backend_uses_service_key() -> None:
    settings = Settings(
        supabase_url="https://example.supabase.co",
        supabase_service_key="service-key",
        inference_backend="edge",
        edge_function_url="https://example.supabase.co/functions/v1/analyze-photo",
    )

    client = build_inference_client(settings)

    assert isinstance(client, HttpxEdgeInferenceClient)
    assert client.api_key == "service-key"
    asyncio.run(client.close())


@pytest.mark.parametrize(
    ("backend", "message"),
    [
        ("openai", "OPENAI_API_KEY"),
        ("edge", "EDGE_FUNCTION_URL"),
        ("local", "Unknown inference backend"),
    ],
)
def test_inference_backend_misconfiguration(backend: str, message: str) -> None:
    settings = Settings(
        supabase_url="https://example.supabase.co",
        supabase_service_key="service-key",
        openai_api_key=None,
        inference_backend=backend,
    )

    with pytest.raises(ValueError, match=message):
        build_inference_client(settings)


def test_parse_dietary_prefs() -> None:
    assert parse_dietary_prefs("Vegetarian, jain,,vegetarian") == ("vegetarian", "jain")
    assert parse_dietary_prefs(["Vegan"]) == ("vegan",)
    assert parse_dietary_prefs(None) == ()
