"""
FastAPI routes: warning lifecycle and read paths.

Writes (X-User-ID required; each emits one dispatch event):
    POST   /api/v1/warnings                           — create (201)
    POST   /api/v1/warnings/{id}/updates              — append update
    POST   /api/v1/warnings/{id}/actions              — append response action
    PATCH  /api/v1/warnings/{id}/actions/{action_id}  — set action status
    POST   /api/v1/warnings/{id}/resolve              — resolve
    PATCH  /api/v1/warnings/{id}                      — status transition

Reads:
    GET    /api/v1/warnings                           — list / filter / paginate
    GET    /api/v1/warnings/active                    — active + monitoring
    GET    /api/v1/warnings/nearby                    — by location and radius
    GET    /api/v1/warnings/stream                    — live feed (SSE)
    GET    /api/v1/warnings/{id}                      — by id
    GET    /api/v1/warnings/{id}/deliveries           — delivery reports

Write responses return the warning as committed; notification dispatch
continues in the background and never affects the response.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from backend.app.api.deps import get_actor, get_controller, get_services, get_store
from backend.app.api.schemas import (
    ActionStatusRequest,
    ResolveRequest,
    ResponseActionRequest,
    StatusTransitionRequest,
    WarningCreateRequest,
    WarningListResponse,
    WarningPageResponse,
    WarningUpdateRequest,
)
from backend.app.lifecycle.controller import WarningLifecycleController
from backend.app.lifecycle.models import (
    DisasterCategory,
    Severity,
    WarningFilters,
    WarningStatus,
)
from backend.app.lifecycle.store import WarningStore
from backend.app.services import Services
from backend.app.spatial.distance import Coordinate, format_distance, haversine

router = APIRouter(prefix="/api/v1/warnings", tags=["warnings"])

SSE_KEEPALIVE_SECONDS = 15.0


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

@router.post(
    "",
    status_code=201,
    summary="Create a warning",
    description="Validates and stores a new ACTIVE warning, then notifies nearby and subscribed recipients.",
)
async def create_warning(
    body: WarningCreateRequest,
    actor: str = Depends(get_actor),
    controller: WarningLifecycleController = Depends(get_controller),
) -> Dict[str, Any]:
    warning = await controller.create(body.to_draft(created_by=actor))
    return warning.to_dict()


@router.post("/{warning_id}/updates", summary="Append an update")
async def add_update(
    warning_id: str,
    body: WarningUpdateRequest,
    actor: str = Depends(get_actor),
    controller: WarningLifecycleController = Depends(get_controller),
) -> Dict[str, Any]:
    warning = await controller.append_update(
        warning_id, body.update_text, actor=actor, severity_change=body.severity_change,
    )
    return warning.to_dict()


@router.post("/{warning_id}/actions", summary="Append a response action")
async def add_response_action(
    warning_id: str,
    body: ResponseActionRequest,
    actor: str = Depends(get_actor),
    controller: WarningLifecycleController = Depends(get_controller),
) -> Dict[str, Any]:
    warning, _ = await controller.append_response_action(
        warning_id, body.action_type, body.description, actor=actor,
    )
    return warning.to_dict()


@router.patch("/{warning_id}/actions/{action_id}", summary="Set a response action's status")
async def set_action_status(
    warning_id: str,
    action_id: str,
    body: ActionStatusRequest,
    actor: str = Depends(get_actor),
    controller: WarningLifecycleController = Depends(get_controller),
) -> Dict[str, Any]:
    warning, _ = await controller.set_action_status(
        warning_id, action_id, body.status, actor=actor,
    )
    return warning.to_dict()


@router.post("/{warning_id}/resolve", summary="Resolve a warning")
async def resolve_warning(
    warning_id: str,
    body: ResolveRequest,
    actor: str = Depends(get_actor),
    controller: WarningLifecycleController = Depends(get_controller),
) -> Dict[str, Any]:
    warning = await controller.resolve(warning_id, body.resolution_notes, actor=actor)
    return warning.to_dict()


@router.patch("/{warning_id}", summary="Move a warning between active and monitoring")
async def transition_status(
    warning_id: str,
    body: StatusTransitionRequest,
    actor: str = Depends(get_actor),
    controller: WarningLifecycleController = Depends(get_controller),
) -> Dict[str, Any]:
    warning = await controller.transition_status(warning_id, body.status, actor=actor)
    return warning.to_dict()


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

@router.get("", response_model=WarningPageResponse, summary="List warnings")
async def list_warnings(
    disaster_category: Optional[DisasterCategory] = Query(None),
    status: Optional[WarningStatus] = Query(None),
    severity: Optional[Severity] = Query(None),
    city: Optional[str] = Query(None, description="Case-insensitive substring"),
    district: Optional[str] = Query(None, description="Case-insensitive substring"),
    province: Optional[str] = Query(None, description="Case-insensitive substring"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    store: WarningStore = Depends(get_store),
):
    filters = WarningFilters(
        disaster_category=disaster_category,
        status=status,
        severity=severity,
        city=city,
        district=district,
        province=province,
    )
    result = await store.list_warnings(filters, page=page, limit=limit)
    return result.to_dict()


@router.get("/active", response_model=WarningListResponse, summary="Active and monitoring warnings")
async def active_warnings(store: WarningStore = Depends(get_store)):
    warnings = await store.active()
    return {"warnings": [w.to_dict() for w in warnings], "count": len(warnings)}


@router.get("/nearby", summary="Unresolved warnings near a location")
async def nearby_warnings(
    latitude: float = Query(..., ge=-90.0, le=90.0),
    longitude: float = Query(..., ge=-180.0, le=180.0),
    radius_km: Optional[float] = Query(None, gt=0, le=1000),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    center = Coordinate(latitude, longitude)
    radius = radius_km or services.settings.DISPATCH_RADIUS_KM
    warnings = await services.store.near(center, radius)

    items = []
    for warning in warnings:
        nearest = min(haversine(center, c) for c in warning.coordinates)
        entry = warning.to_dict()
        entry["distance_km"] = round(nearest, 2)
        entry["distance_label"] = format_distance(nearest)
        items.append(entry)
    items.sort(key=lambda e: e["distance_km"])

    return {
        "center": center.to_dict(),
        "radius_km": radius,
        "count": len(items),
        "warnings": items,
    }


@router.get("/stream", summary="Live warning feed (server-sent events)")
async def stream_warnings(
    request: Request,
    services: Services = Depends(get_services),
) -> StreamingResponse:
    feed = services.feed

    async def events() -> AsyncIterator[str]:
        connection_id, queue = feed.connect()
        try:
            yield f"event: connected\ndata: {json.dumps({'connection_id': connection_id})}\n\n"
            while not await request.is_disconnected():
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"event: {item['event']}\ndata: {json.dumps(item, default=str)}\n\n"
        finally:
            feed.disconnect(connection_id)

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/{warning_id}", summary="Get a warning by id")
async def get_warning(
    warning_id: str,
    store: WarningStore = Depends(get_store),
) -> Dict[str, Any]:
    warning = await store.get(warning_id)
    return warning.to_dict()


@router.get("/{warning_id}/deliveries", summary="Delivery reports for a warning")
async def warning_deliveries(
    warning_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    await services.store.get(warning_id)
    reports = services.controller.reports_for(warning_id)
    return {
        "warning_id": warning_id,
        "pending_dispatches": services.controller.pending_dispatches,
        "reports": [r.to_dict() for r in reports],
    }
