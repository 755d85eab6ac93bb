from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime


class Location(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class Place(Location):
    address: str = Field("", max_length=500)
    landmark: Optional[str] = Field(None, max_length=200)
    instructions: Optional[str] = Field(None, max_length=500)


class RideCreate(BaseModel):
    pickup: Place
    destination: Place
    vehicle_class: str = Field("Car", max_length=50)
    passengers: int = Field(1, ge=1, le=8)
    luggage: bool = False
    special_requests: str = Field("", max_length=500)
    scheduled_time: Optional[datetime] = None
    payment_method: str = Field("cash", max_length=50)


class FareOut(BaseModel):
    base_fare: float
    distance_fare: float
    time_fare: float
    total_fare: float
    surge_multiplier: float
    final_amount: float


class RideOut(BaseModel):
    id: int
    status: str
    rider_id: int
    driver_id: Optional[int] = None
    vehicle_class: str
    pickup: dict
    destination: dict
    distance_km: float
    duration_min: float
    pricing: FareOut
    passengers: int
    payment_method: str
    scheduled_time: Optional[datetime] = None
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_fee: Optional[float] = None
    rating: Optional[int] = None

    @classmethod
    def from_row(cls, ride: dict) -> "RideOut":
        return cls(
            pricing=FareOut(**{k: ride[k] for k in FareOut.model_fields}),
            **{k: ride[k] for k in cls.model_fields if k != "pricing"},
        )


class StatusUpdate(BaseModel):
    status: str


class CancelRequest(BaseModel):
    reason: str = Field("", max_length=500)


class CancelOut(BaseModel):
    ride_id: int
    status: str
    cancellation_fee: float
    refund_amount: float


class RateRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    feedback: str = Field("", max_length=1000)


class TrackRequest(Location):
    speed: float = Field(0.0, ge=0)
    heading: float = Field(0.0, ge=0, lt=360)


class AvailabilityUpdate(BaseModel):
    is_available: bool


class DriverProfileUpdate(BaseModel):
    """Partial update: fields left out of the payload are not touched."""
    vehicle_class: Optional[str] = Field(None, max_length=50)
    vehicle_number: Optional[str] = Field(None, max_length=50)
    vehicle_model: Optional[str] = Field(None, max_length=100)
    vehicle_color: Optional[str] = Field(None, max_length=50)
    license_number: Optional[str] = Field(None, max_length=50)


class DispatchOut(BaseModel):
    ride_id: int
    outcome: str
    candidates: int
    radius_km: float
    attempt: int
    expires_at: Optional[datetime] = None


class OtpRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    name: str = Field(..., min_length=1, max_length=100)
    phone: str = Field(..., min_length=10, max_length=15)
    role: str = Field("requester")
    vehicle_class: Optional[str] = Field(None, max_length=50)
    vehicle_number: Optional[str] = Field(None, max_length=50)
    license_number: Optional[str] = Field(None, max_length=50)

    @field_validator("role")
    @classmethod
    def validate_role(cls, v):
        if v not in ("requester", "driver"):
            raise ValueError("role must be 'requester' or 'driver'")
        return v

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        if "@" not in v:
            raise ValueError("email must contain '@'")
        return v.lower()


class RideRequestOut(RideOut):
    distance_to_pickup_km: float


class LoginOtpRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        if "@" not in v:
            raise ValueError("email must contain '@'")
        return v.lower()


class OtpVerify(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    otp: str = Field(..., min_length=6, max_length=6)


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: int
    role: str


class EarningsOut(BaseModel):
    period: str
    total_earnings: float
    total_rides: int
    average_fare: float
