"""Analysis endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from meal_reconciler.api.models import (
    AnalysisPayload,
    AnalysisRequest,
    ItemPayload,
    QuotaPayload,
    ResolveConflictRequest,
    SaveMealRequest,
)

if TYPE_CHECKING:
    from meal_reconciler.containers import AppContainer

router = APIRouter(tags=["analyses"])


def _container(request: Request) -> AppContainer:
    return request.app.state.container


@router.post("/analyses", response_model=None)
async def create_analysis(
    payload: AnalysisRequest, request: Request
) -> dict[str, object] | JSONResponse:
    """Run an analysis; answers 402 with the paywall text when over quota."""
    analysis_id = str(payload.analysis_id) if payload.analysis_id else None
    result = await _container(request).analysis_service.run_analysis(
        payload.to_domain(), analysis_id=analysis_id
    )
    body = AnalysisPayload.from_result(result).model_dump(mode="json")
    if result.quota_exceeded:
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content={"detail": result.quota.message, **body},
        )
    return body


@router.get("/analyses/{analysis_id}")
async def get_analysis(analysis_id: str, request: Request) -> dict[str, object]:
    record = _container(request).analysis_service.get_analysis(analysis_id)
    return AnalysisPayload.from_record(record).model_dump(mode="json")


@router.post("/analyses/{analysis_id}/conflicts/{item_id}/resolve")
async def resolve_conflict(
    analysis_id: str,
    item_id: str,
    payload: ResolveConflictRequest,
    request: Request,
) -> dict[str, object]:
    """Apply the user's choice for one conflict."""
    item = _container(request).analysis_service.resolve_conflict(
        analysis_id, item_id, payload.chosen
    )
    return {"item": ItemPayload.from_domain(item).model_dump(mode="json")}


@router.post("/analyses/{analysis_id}/meal")
async def save_meal(
    analysis_id: str, payload: SaveMealRequest, request: Request
) -> dict[str, object]:
    """Save the meal; repeating the call returns the same meal log id."""
    result = _container(request).analysis_service.save_meal(
        analysis_id,
        edited_items=[edit.to_domain() for edit in payload.edited_items],
        meal_type=payload.meal_type,
        timestamp=payload.timestamp,
    )
    return {"meal_log_id": result.meal_log_id, "is_duplicate": result.is_duplicate}


@router.post("/analyses/{analysis_id}/cancel")
async def cancel_analysis(analysis_id: str, request: Request) -> dict[str, str]:
    new_status = _container(request).analysis_service.cancel_analysis(analysis_id)
    return {"analysis_id": analysis_id, "status": new_status.value}


@router.get("/users/{user_id}/quota")
async def quota_status(user_id: str, request: Request) -> dict[str, object]:
    """Remaining vision and text calls for today."""
    decisions = _container(request).quota_service.status(user_id)
    return {
        quota_type.value: QuotaPayload.from_domain(decision).model_dump(mode="json")
        for quota_type, decision in decisions.items()
    }
