"""ASGI entrypoint for the meal reconciliation API."""

from meal_reconciler.api.app import create_app
from meal_reconciler.containers import build_container

app = create_app(build_container())
