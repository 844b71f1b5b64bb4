"""Order API endpoints — placement, lifecycle, dispatch and live tracking."""

import asyncio
import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketState

from bodadispatch.container import Platform, get_platform
from bodadispatch.errors import NoCandidates, NotFound
from bodadispatch.models import OrderStatus
from bodadispatch.schemas import (
    AcceptRequest, AdvanceRequest, CancelRequest, DeclineRequest, DispatchResponse,
    EstimateRequest, OrderCreate, OrderResponse, PriceEstimate, RepriceRequest,
    TrackingMessage,
)
from bodadispatch.services.location_pipeline import LocationPipeline, LocationWatch

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/estimate", response_model=PriceEstimate)
async def estimate_price(data: EstimateRequest, platform: Platform = Depends(get_platform)):
    """Calculate price estimate without creating an order."""
    breakdown = await platform.coordinator.estimate(data.pickup.to_place(), data.dropoff.to_place())
    return PriceEstimate(**asdict(breakdown))


@router.post("/", response_model=OrderResponse)
async def create_order(data: OrderCreate, platform: Platform = Depends(get_platform)):
    return await platform.coordinator.place_order(
        customer_id=data.customer_id,
        pickup=data.pickup.to_place(),
        dropoff=data.dropoff.to_place(),
        description=data.description,
        recipient_name=data.recipient_name,
        recipient_phone=data.recipient_phone,
        shop_id=data.shop_id,
        idempotency_key=data.idempotency_key,
    )


@router.get("/", response_model=list[OrderResponse])
async def list_orders(
    status: OrderStatus | None = None,
    customer_id: str | None = None,
    rider_id: str | None = None,
    shop_id: str | None = None,
    platform: Platform = Depends(get_platform),
):
    return platform.coordinator.list_orders(
        status=status, customer_id=customer_id, rider_id=rider_id, shop_id=shop_id,
    )


@router.get("/available", response_model=list[OrderResponse])
async def available_orders(platform: Platform = Depends(get_platform)):
    """Pending orders no rider has taken yet (rider dashboard list)."""
    return platform.coordinator.available_orders()


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: str, platform: Platform = Depends(get_platform)):
    return platform.coordinator.get_order(order_id)


# ── Lifecycle ──────────────────────────────────────────────

@router.post("/{order_id}/accept", response_model=OrderResponse)
async def accept_order(order_id: str, data: AcceptRequest, platform: Platform = Depends(get_platform)):
    return await platform.coordinator.accept(order_id, data.rider_id, data.expected_version)


@router.post("/{order_id}/decline", response_model=OrderResponse)
async def decline_order(order_id: str, data: DeclineRequest, platform: Platform = Depends(get_platform)):
    return await platform.coordinator.decline(order_id, data.rider_id)


@router.post("/{order_id}/advance", response_model=OrderResponse)
async def advance_order(order_id: str, data: AdvanceRequest, platform: Platform = Depends(get_platform)):
    """Move an accepted order to in-progress, or an in-progress one to completed."""
    return await platform.coordinator.advance(order_id, data.status, data.expected_version)


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: str,
    data: CancelRequest | None = None,
    platform: Platform = Depends(get_platform),
):
    expected_version = data.expected_version if data else None
    return await platform.coordinator.cancel(order_id, expected_version)


@router.patch("/{order_id}/price", response_model=OrderResponse)
async def reprice_order(order_id: str, data: RepriceRequest, platform: Platform = Depends(get_platform)):
    """Override the fare while the order is still pending."""
    return await platform.coordinator.reprice(order_id, data.price)


@router.post("/{order_id}/dispatch", response_model=DispatchResponse)
async def dispatch_order(order_id: str, platform: Platform = Depends(get_platform)):
    """Offer the order to the best available rider now."""
    try:
        rider = await platform.dispatcher.dispatch(order_id)
    except NoCandidates:
        body = DispatchResponse(order_id=order_id, status="searching")
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body.model_dump())
    return DispatchResponse(order_id=order_id, status="offered", rider_id=rider.id)


# ── Live Tracking ──────────────────────────────────────────

async def _close_on_disconnect(websocket: WebSocket, pipeline: LocationPipeline, watch: LocationWatch) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            pipeline.close_watch(watch)
            return


@router.websocket("/{order_id}/tracking")
async def track_order(websocket: WebSocket, order_id: str):
    """Stream rider position and ETA until the order closes or the rider goes offline."""
    platform: Platform = websocket.app.state.platform
    try:
        # The watch must exist before the handshake completes
        watch = platform.pipeline.open_watch(order_id)
    except NotFound:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    listener = asyncio.create_task(_close_on_disconnect(websocket, platform.pipeline, watch))
    try:
        async for update in watch.updates():
            message = TrackingMessage(**update.to_dict())
            await websocket.send_json(message.model_dump(mode="json"))
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()
    except WebSocketDisconnect:
        logger.debug("Tracking client for order %s disconnected", order_id)
    finally:
        listener.cancel()
        platform.pipeline.close_watch(watch)
