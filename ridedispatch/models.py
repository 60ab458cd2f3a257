from sqlalchemy import (
    Table,
    Column,
    Integer,
    String,
    Float,
    DateTime,
    JSON,
    MetaData,
    Index,
)


# Ride status constants
RIDE_REQUESTED = "requested"
RIDE_DRIVER_ASSIGNED = "driver_assigned"
RIDE_ENROUTE_PICKUP = "enroute_pickup"
RIDE_PASSENGER_ONBOARD = "passenger_onboard"
RIDE_COMPLETED = "completed"
RIDE_CANCELLED_PASSENGER = "cancelled_passenger"
RIDE_CANCELLED_DRIVER = "cancelled_driver"
RIDE_CANCELLED_SYSTEM = "cancelled_system"

RIDE_STATUSES = (
    RIDE_REQUESTED,
    RIDE_DRIVER_ASSIGNED,
    RIDE_ENROUTE_PICKUP,
    RIDE_PASSENGER_ONBOARD,
    RIDE_COMPLETED,
    RIDE_CANCELLED_PASSENGER,
    RIDE_CANCELLED_DRIVER,
    RIDE_CANCELLED_SYSTEM,
)
RIDE_TERMINAL = frozenset({
    RIDE_COMPLETED,
    RIDE_CANCELLED_PASSENGER,
    RIDE_CANCELLED_DRIVER,
    RIDE_CANCELLED_SYSTEM,
})

# Assignment (offer) status constants
ASSIGN_PENDING = "pending"
ASSIGN_ACCEPTED = "accepted"
ASSIGN_DECLINED = "declined"
ASSIGN_EXPIRED = "expired"
ASSIGN_REASSIGNED = "reassigned"

ASSIGN_STATUSES = (ASSIGN_PENDING, ASSIGN_ACCEPTED, ASSIGN_DECLINED, ASSIGN_EXPIRED, ASSIGN_REASSIGNED)

# Driver availability
DRIVER_AVAILABLE = "available"
DRIVER_UNAVAILABLE = "unavailable"

# Cancellation actors
ACTOR_PASSENGER = "passenger"
ACTOR_DRIVER = "driver"
ACTOR_SYSTEM = "system"

# Reason codes
REASON_NO_DRIVERS = "no_drivers_available"
REASON_DRIVER_CANCEL_LIMIT = "driver_cancellation_limit"
REASON_TIMEOUT = "timeout"
REASON_RIDE_CANCELLED = "ride_cancelled"
REASON_DRIVER_CANCELLED = "driver_cancelled"
REASON_SUPERSEDED = "superseded"
REASON_ORPHANED = "orphaned"


metadata = MetaData()

rides = Table(
    "rides",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("passenger_id", String(64), nullable=False, index=True),
    Column("driver_id", String(64), nullable=True, index=True),
    Column("status", String(32), nullable=False, default=RIDE_REQUESTED, index=True),
    Column("pickup", JSON, nullable=False),
    Column("dropoff", JSON, nullable=False),
    Column("seats", Integer, nullable=False, default=1),
    Column("fare_quote", JSON, nullable=True),
    Column("fare_actual_cents", Integer, nullable=True),
    Column("surge_multiplier", Float, nullable=False, default=1.0),
    Column("requested_at", DateTime(timezone=True), nullable=False),
    Column("accepted_at", DateTime(timezone=True), nullable=True),
    Column("enroute_at", DateTime(timezone=True), nullable=True),
    Column("onboard_at", DateTime(timezone=True), nullable=True),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    Column("cancelled_at", DateTime(timezone=True), nullable=True),
    Column("cancellation_reason", String(255), nullable=True),
    Column("dispatch_attempts", Integer, nullable=False, default=0),
    Column("driver_cancellations", Integer, nullable=False, default=0),
    Column("excluded_driver_ids", JSON, nullable=False, default=list),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

assignments = Table(
    "assignments",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("ride_id", String(32), nullable=False, index=True),
    Column("driver_id", String(64), nullable=False, index=True),
    Column("status", String(16), nullable=False, default=ASSIGN_PENDING),
    Column("score", Float, nullable=False, default=0.0),
    Column("reason_code", String(64), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("deadline_at", DateTime(timezone=True), nullable=False),
    Column("responded_at", DateTime(timezone=True), nullable=True),
    Column("eta_minutes", Integer, nullable=True),
    Index("ix_assignments_status_driver", "status", "driver_id"),
)

driver_stats = Table(
    "driver_stats",
    metadata,
    Column("driver_id", String(64), primary_key=True),
    Column("offers", Integer, nullable=False, default=0),
    Column("accepted", Integer, nullable=False, default=0),
    Column("declined", Integer, nullable=False, default=0),
    Column("expired", Integer, nullable=False, default=0),
    Column("late_responses", Integer, nullable=False, default=0),
    Column("last_completed_at", DateTime(timezone=True), nullable=True),
    Column("last_active_at", DateTime(timezone=True), nullable=True),
)

idempotency_keys = Table(
    "idempotency_keys",
    metadata,
    Column("key", String(128), primary_key=True),
    Column("ride_id", String(32), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
