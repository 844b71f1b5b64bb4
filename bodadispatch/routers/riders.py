"""Rider API endpoints — registration, status, location reports and device streams."""

import asyncio
import logging

from fastapi import APIRouter, Depends, Response, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from bodadispatch.container import Platform, get_platform
from bodadispatch.errors import DispatchError, NotFound
from bodadispatch.models import RiderStatus
from bodadispatch.schemas import (
    LocationErrorReport, LocationReport, RiderCreate, RiderResponse, RiderStatusUpdate,
)
from bodadispatch.services.location_pipeline import ReportingSession

logger = logging.getLogger(__name__)

router = APIRouter()


# ── CRUD ───────────────────────────────────────────────────

@router.post("/", response_model=RiderResponse)
async def create_rider(data: RiderCreate, platform: Platform = Depends(get_platform)):
    """Register a rider. New riders start offline until they report a location."""
    return await platform.registry.register(
        name=data.name,
        phone=data.phone,
        vehicle=data.vehicle,
        vehicle_reg=data.vehicle_reg,
        rider_id=data.id,
    )


@router.get("/", response_model=list[RiderResponse])
async def list_riders(status: RiderStatus | None = None, platform: Platform = Depends(get_platform)):
    return platform.registry.list_all(status)


@router.get("/available", response_model=list[RiderResponse])
async def list_available_riders(platform: Platform = Depends(get_platform)):
    return platform.registry.list_available()


@router.get("/{rider_id}", response_model=RiderResponse)
async def get_rider(rider_id: str, platform: Platform = Depends(get_platform)):
    return platform.registry.get(rider_id)


@router.delete("/{rider_id}", response_model=RiderResponse)
async def deactivate_rider(rider_id: str, platform: Platform = Depends(get_platform)):
    """Soft delete: the rider goes offline for good, history stays intact."""
    return await platform.registry.deactivate(rider_id)


# ── Status ─────────────────────────────────────────────────

@router.patch("/{rider_id}/status", response_model=RiderResponse)
async def update_rider_status(
    rider_id: str,
    data: RiderStatusUpdate,
    platform: Platform = Depends(get_platform),
):
    return await platform.registry.set_status(rider_id, data.status)


# ── Location ───────────────────────────────────────────────

@router.put("/{rider_id}/location", status_code=status.HTTP_204_NO_CONTENT)
async def report_rider_location(
    rider_id: str,
    data: LocationReport,
    platform: Platform = Depends(get_platform),
):
    """Ingest one GPS report. Duplicate or out-of-order reports are ignored."""
    await platform.pipeline.report_location(rider_id, data.lat, data.lng, data.sequence, data.accuracy)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{rider_id}/location/error", response_model=RiderResponse)
async def report_rider_location_error(
    rider_id: str,
    data: LocationErrorReport,
    platform: Platform = Depends(get_platform),
):
    """Device lost its position source (permission revoked, GPS error)."""
    return await platform.pipeline.report_location_error(rider_id, data.reason)


async def _next_report(websocket: WebSocket, session: ReportingSession) -> str | None:
    """Wait for the next client frame, or None once the session is cancelled."""
    receive = asyncio.ensure_future(websocket.receive_text())
    cancelled = asyncio.ensure_future(session.cancelled.wait())
    done, pending = await asyncio.wait({receive, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    if receive in done:
        return receive.result()
    return None


@router.websocket("/{rider_id}/location/stream")
async def stream_rider_location(websocket: WebSocket, rider_id: str):
    """Rider device position stream. Disconnecting forces the rider offline."""
    platform: Platform = websocket.app.state.platform
    try:
        platform.registry.get(rider_id)
    except NotFound:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    try:
        async with platform.pipeline.session(rider_id) as session:
            while True:
                message = await _next_report(websocket, session)
                if message is None:
                    await websocket.close(reason="session cancelled")
                    return
                try:
                    report = LocationReport.model_validate_json(message)
                except ValidationError as e:
                    await websocket.send_json({"error": "invalid report", "detail": e.errors(include_url=False)})
                    continue
                try:
                    update = await session.report(report.lat, report.lng, report.sequence, report.accuracy)
                except DispatchError as e:
                    await websocket.send_json({"error": type(e).__name__, "detail": e.message})
                    continue
                await websocket.send_json({
                    "ack": report.sequence,
                    "tracking": update.to_dict() if update else None,
                })
    except WebSocketDisconnect:
        logger.info("Location stream for rider %s disconnected", rider_id)
