"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from bodadispatch.models import Location, OrderStatus, Place, RiderStatus, Vehicle


# ── Geo ────────────────────────────────────────────────────

class LocationIn(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class LocationOut(BaseModel):
    lat: float
    lng: float

    class Config:
        from_attributes = True


class PlaceIn(BaseModel):
    """Address text, coordinates, or both. Missing coordinates are geocoded."""

    address: str = ""
    lat: float | None = Field(None, ge=-90, le=90)
    lng: float | None = Field(None, ge=-180, le=180)

    @model_validator(mode="after")
    def check_place(self) -> PlaceIn:
        if (self.lat is None) != (self.lng is None):
            raise ValueError("lat and lng must be given together")
        if self.lat is None and not self.address.strip():
            raise ValueError("either an address or coordinates are required")
        return self

    def to_place(self) -> Place:
        location = Location(self.lat, self.lng) if self.lat is not None else None
        address = self.address or f"{self.lat},{self.lng}"
        return Place(address=address, location=location)


class PlaceOut(BaseModel):
    address: str
    location: LocationOut | None

    class Config:
        from_attributes = True


# ── Rider Schemas ──────────────────────────────────────────

class RiderCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    phone: str = Field(..., min_length=5, max_length=20)
    vehicle: Vehicle = Vehicle.MOTORCYCLE
    vehicle_reg: str | None = Field(None, max_length=20)
    id: str | None = Field(None, max_length=64)


class RiderResponse(BaseModel):
    id: str
    name: str
    phone: str
    vehicle: Vehicle
    vehicle_reg: str | None
    status: RiderStatus
    location: LocationOut | None
    active_order_id: str | None
    location_seq: int | None
    location_updated_at: datetime | None
    is_active: bool
    registered_at: datetime
    version: int

    class Config:
        from_attributes = True


class RiderStatusUpdate(BaseModel):
    status: RiderStatus


class LocationReport(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    sequence: int | None = Field(None, ge=0)
    accuracy: float | None = Field(None, ge=0)


class LocationErrorReport(BaseModel):
    reason: str = "permission_denied"


# ── Order Schemas ──────────────────────────────────────────

class EstimateRequest(BaseModel):
    pickup: PlaceIn
    dropoff: PlaceIn


class OrderCreate(BaseModel):
    customer_id: str = Field(..., min_length=1, max_length=64)
    pickup: PlaceIn
    dropoff: PlaceIn
    description: str = ""
    recipient_name: str | None = Field(None, max_length=255)
    recipient_phone: str | None = Field(None, max_length=20)
    shop_id: str | None = Field(None, max_length=64)
    idempotency_key: str | None = Field(None, max_length=128)


class StatusEntryOut(BaseModel):
    status: OrderStatus
    timestamp: datetime

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    id: str
    customer_id: str
    rider_id: str | None
    pickup: PlaceOut
    dropoff: PlaceOut
    description: str
    recipient_name: str | None
    recipient_phone: str | None
    shop_id: str | None
    price: float | None
    distance_km: float | None
    duration_min: float | None
    status: OrderStatus
    status_history: list[StatusEntryOut]
    held_by: str | None
    declined_by: list[str]
    created_at: datetime
    updated_at: datetime
    version: int

    class Config:
        from_attributes = True


class PriceEstimate(BaseModel):
    distance_km: float
    duration_min: float
    base_fare: float
    rate_per_km: float
    distance_cost: float
    total_cost: float
    currency: str
    route_source: str

    class Config:
        from_attributes = True


class AcceptRequest(BaseModel):
    rider_id: str
    expected_version: int | None = None


class DeclineRequest(BaseModel):
    rider_id: str


class AdvanceRequest(BaseModel):
    status: OrderStatus
    expected_version: int | None = None


class CancelRequest(BaseModel):
    expected_version: int | None = None


class RepriceRequest(BaseModel):
    price: float = Field(..., ge=0)


class DispatchResponse(BaseModel):
    order_id: str
    status: str  # "offered" or "searching"
    rider_id: str | None = None


class TrackingMessage(BaseModel):
    order_id: str
    rider_id: str
    leg: str
    rider_lat: float
    rider_lng: float
    distance_km: float
    eta_min: float
    source: str
    at: datetime
