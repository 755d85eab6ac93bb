from sqlalchemy import (
    Table,
    Column,
    Integer,
    String,
    Float,
    DateTime,
    JSON,
    Boolean,
    MetaData,
    ForeignKey,
    UniqueConstraint,
)


# Ride status constants
RIDE_PENDING = "pending"
RIDE_SEARCHING = "searching"
RIDE_ACCEPTED = "accepted"
RIDE_ARRIVED = "arrived"
RIDE_STARTED = "started"
RIDE_COMPLETED = "completed"
RIDE_CANCELLED = "cancelled"

OPEN_STATUSES = (RIDE_PENDING, RIDE_SEARCHING)
ACTIVE_STATUSES = (RIDE_ACCEPTED, RIDE_ARRIVED, RIDE_STARTED)
TERMINAL_STATUSES = (RIDE_COMPLETED, RIDE_CANCELLED)

ROLE_REQUESTER = "requester"
ROLE_DRIVER = "driver"

VEHICLE_CLASSES = ("Bike", "Auto", "Car", "Truck")
PAYMENT_METHODS = ("cash", "card", "wallet", "upi")


metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String, nullable=True),
    Column("email", String, unique=True, nullable=True),
    Column("phone", String, unique=True, nullable=True),
    Column("role", String, default=ROLE_REQUESTER),
    Column("is_active", Boolean, default=True),
    Column("is_verified", Boolean, default=False),
    Column("vehicle_class", String, nullable=True),
    Column("vehicle_number", String, nullable=True),
    Column("vehicle_model", String, nullable=True),
    Column("vehicle_color", String, nullable=True),
    Column("license_number", String, nullable=True),
    Column("rating", Float, nullable=True),
    Column("created_at", DateTime(timezone=True)),
)

rides = Table(
    "rides",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("rider_id", Integer, ForeignKey("users.id"), index=True),
    Column("driver_id", Integer, ForeignKey("users.id"), nullable=True, index=True),
    Column("vehicle_class", String),
    Column("pickup", JSON),
    Column("destination", JSON),
    Column("distance_km", Float),
    Column("duration_min", Float),
    Column("base_fare", Float),
    Column("distance_fare", Float),
    Column("time_fare", Float),
    Column("total_fare", Float),
    Column("surge_multiplier", Float, default=1.0),
    Column("final_amount", Float),
    Column("passengers", Integer, default=1),
    Column("luggage", Boolean, default=False),
    Column("special_requests", String, default=""),
    Column("scheduled_time", DateTime(timezone=True), nullable=True),
    Column("payment_method", String, default="cash"),
    Column("status", String, default=RIDE_PENDING, index=True),
    Column("created_at", DateTime(timezone=True)),
    Column("searching_at", DateTime(timezone=True), nullable=True),
    Column("accepted_at", DateTime(timezone=True), nullable=True),
    Column("arrived_at", DateTime(timezone=True), nullable=True),
    Column("started_at", DateTime(timezone=True), nullable=True),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    Column("cancelled_at", DateTime(timezone=True), nullable=True),
    Column("cancelled_by", String, nullable=True),
    Column("cancel_reason", String, nullable=True),
    Column("cancellation_fee", Float, nullable=True),
    Column("rating", Integer, nullable=True),
    Column("feedback", String, nullable=True),
    Column("rated_at", DateTime(timezone=True), nullable=True),
)

ride_tracking = Table(
    "ride_tracking",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("ride_id", Integer, ForeignKey("rides.id"), index=True),
    Column("lat", Float),
    Column("lon", Float),
    Column("speed", Float, default=0.0),
    Column("heading", Float, default=0.0),
    Column("recorded_at", DateTime(timezone=True)),
)

idempotency_keys = Table(
    "idempotency_keys",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("key", String),
    Column("rider_id", Integer, ForeignKey("users.id")),
    Column("created_at", DateTime(timezone=True)),
    Column("response", JSON, nullable=True),
    # keys are only unique per caller
    UniqueConstraint("key", "rider_id"),
)
