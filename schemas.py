"""
Database Schemas for the Waste Collection Dispatch Service

Each Pydantic model corresponds to a MongoDB collection (lowercased class name).
Models suffixed with In are request bodies.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, EmailStr, Field

Role = Literal["user", "collector", "admin"]
WasteType = Literal["plastic", "organic", "hazardous", "electronic", "mixed"]
Urgency = Literal["normal", "urgent", "emergency"]
RequestStatus = Literal["pending", "accepted", "in_progress", "completed", "cancelled"]
CollectorStatus = Literal["offline", "available", "busy"]
CollectionStatus = Literal["assigned", "en_route", "arrived", "collecting", "completed", "cancelled"]
SurgeReason = Literal["high_demand", "bad_weather", "peak_hours", "special_event"]
VehicleType = Literal["truck", "motorcycle", "handcart"]

WASTE_TYPES = get_args(WasteType)
URGENCIES = get_args(Urgency)

WASTE_REQUESTS = "wasterequest"
COLLECTORS = "collector"
COLLECTIONS = "collection"
USERS = "user"


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt hash")
    role: Role = Field("user", description="Access role")
    provider: Literal["email", "google"] = Field("email")
    phone: Optional[str] = None
    is_active: bool = True


class Actor(BaseModel):
    """Authenticated caller as asserted by the identity provider."""
    id: str
    role: Role = "user"


class GeoPoint(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class Location(BaseModel):
    address: str = ""
    coordinates: GeoPoint
    cell: Optional[str] = Field(None, description="Grid bucket of the coordinates")


class TimeWindow(BaseModel):
    preferred_time: Literal["asap", "scheduled"] = "asap"
    requested_at: Optional[datetime] = None
    scheduled_time: Optional[datetime] = None


class PriceEstimate(BaseModel):
    base_price: float
    surge_multiplier: float = Field(..., ge=1.0, description="All factors composed")
    final_price: int
    currency: str = "KES"
    breakdown: Dict[str, float] = Field(default_factory=dict)


class WasteRequest(BaseModel):
    id: Optional[str] = None
    user_id: str
    waste_type: WasteType
    quantity: float = Field(..., gt=0, description="Kilograms")
    urgency: Urgency = "normal"
    location: Location
    time_window: TimeWindow = Field(default_factory=TimeWindow)
    contact_phone: Optional[str] = None
    notes: Optional[str] = None
    price_estimate: PriceEstimate
    status: RequestStatus = "pending"
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Collector(BaseModel):
    id: Optional[str] = None
    user_id: str
    name: str
    phone: Optional[str] = None
    vehicle_type: VehicleType = "truck"
    capacity_kg: float = Field(..., gt=0)
    specializations: List[WasteType] = Field(default_factory=list)
    status: CollectorStatus = "offline"
    location: Optional[GeoPoint] = None
    cell: Optional[str] = None
    location_updated_at: Optional[datetime] = None
    rating_avg: float = 0.0
    rating_count: int = 0
    completed_jobs: int = 0
    total_earnings: float = 0.0
    is_verified: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Candidate(BaseModel):
    collector: Collector
    distance_km: float


class Timeline(BaseModel):
    assigned_at: datetime
    en_route_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class Payment(BaseModel):
    amount: float
    commission_rate: float
    commission: float = 0.0
    platform_fee: float
    collector_net: float = 0.0
    status: Literal["pending", "paid", "void"] = "pending"
    paid_at: Optional[datetime] = None


class CollectionRating(BaseModel):
    user_id: str
    collector_rating: int = Field(..., ge=1, le=5)
    feedback: Optional[str] = None
    rated_at: datetime


class ProofPhoto(BaseModel):
    url: str
    phash: str
    duplicate_of: Optional[str] = Field(None, description="Collection already holding this photo")
    uploaded_at: datetime


class Collection(BaseModel):
    id: Optional[str] = None
    request_id: str
    collector_id: str
    customer_id: str
    collector_user_id: str
    status: CollectionStatus = "assigned"
    timeline: Timeline
    payment: Payment
    rating: Optional[CollectionRating] = None
    photos: List[ProofPhoto] = Field(default_factory=list)
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SurgeState(BaseModel):
    model_config = ConfigDict(frozen=True)

    area: str
    multiplier: float = Field(..., ge=1.0)
    reason: SurgeReason = "high_demand"
    valid_from: datetime
    valid_until: datetime
    demand: int = 0
    supply: int = 0

    def is_active(self, now: datetime) -> bool:
        return self.valid_from <= now < self.valid_until


# ------------------ Request bodies ------------------
class LocationIn(BaseModel):
    address: str = ""
    lat: Any = None
    lng: Any = None


class CollectionRequestIn(BaseModel):
    """
    Loosely typed on purpose: values are coerced by RequestIntake.validate so
    that every invalid field is reported at once.
    """
    waste_type: Any = None
    quantity: Any = None
    urgency: Any = "normal"
    location: Optional[LocationIn] = None
    preferred_time: Any = "asap"
    scheduled_time: Any = None
    contact_phone: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=1000)


class CollectorIn(BaseModel):
    name: str = Field(..., min_length=2, max_length=120)
    phone: Optional[str] = Field(None, min_length=7, max_length=20)
    vehicle_type: VehicleType = "truck"
    capacity_kg: float = Field(..., gt=0, le=20000)
    specializations: List[WasteType] = Field(..., min_length=1)


class LocationUpdate(GeoPoint):
    pass


class AvailabilityUpdate(BaseModel):
    online: bool


class StatusUpdate(BaseModel):
    status: CollectionStatus
    reason: Optional[str] = None


class CancelIn(BaseModel):
    reason: Optional[str] = None


class RatingIn(BaseModel):
    collector_rating: int = Field(..., ge=1, le=5)
    feedback: Optional[str] = Field(None, max_length=1000)


class SurgeOverrideIn(GeoPoint):
    multiplier: float = Field(..., ge=1.0, le=5.0)
    reason: SurgeReason = "special_event"
    duration_minutes: float = Field(60, gt=0, le=24 * 60)


class PickupRouteRequest(BaseModel):
    start: GeoPoint
    stops: List[GeoPoint]
