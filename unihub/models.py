import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Table,
    Column,
    String,
    Float,
    Integer,
    DateTime,
    JSON,
    Boolean,
    MetaData,
    UniqueConstraint,
)


# Backend order statuses
ORDER_PENDING = "pending"
ORDER_ACCEPTED = "accepted"
ORDER_IN_PROGRESS = "in_progress"
ORDER_COMPLETED = "completed"
ORDER_CANCELLED = "cancelled"

TERMINAL_STATUSES = frozenset({ORDER_COMPLETED, ORDER_CANCELLED})

PAY_PENDING = "pending"
PAY_COMPLETED = "completed"


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


metadata = MetaData()

# Unified work items. Coordinates hold point text "(lat,lng)".
orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True, default=_new_id),
    Column("customer_id", String(64), nullable=False),
    Column("driver_id", String(64), nullable=True),
    Column("pickup_address", String, nullable=True),
    Column("delivery_address", String, nullable=True),
    Column("pickup_coordinates", String, nullable=True),
    Column("delivery_coordinates", String, nullable=True),
    Column("status", String(32), nullable=False, default=ORDER_PENDING),
    Column("service_type", String(32), nullable=False),
    Column("package_size", String(32), nullable=True),
    Column("total_amount", Float, nullable=False, default=0.0),
    Column("created_at", DateTime(timezone=True), default=_utcnow),
    Column("updated_at", DateTime(timezone=True), default=_utcnow),
)

# Legacy ride rows created before orders were unified
ride_requests = Table(
    "ride_requests",
    metadata,
    Column("id", String(36), primary_key=True, default=_new_id),
    Column("customer_id", String(64), nullable=False),
    Column("driver_id", String(64), nullable=True),
    Column("pickup_location", String, nullable=True),
    Column("dropoff_location", String, nullable=True),
    Column("price", Float, nullable=True),
    Column("status", String(32), nullable=False, default=ORDER_PENDING),
    Column("service_type", String(32), nullable=True),
    Column("created_at", DateTime(timezone=True), default=_utcnow),
    Column("updated_at", DateTime(timezone=True), default=_utcnow),
)

driver_declined_orders = Table(
    "driver_declined_orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("driver_id", String(64), nullable=False),
    Column("order_id", String(36), nullable=False),
    Column("order_type", String(32), nullable=False),
    Column("declined_at", DateTime(timezone=True), default=_utcnow),
    UniqueConstraint("driver_id", "order_id", name="uq_driver_declined_order"),
)

notifications = Table(
    "notifications",
    metadata,
    Column("id", String(36), primary_key=True, default=_new_id),
    Column("user_id", String(64), nullable=False),
    Column("title", String, nullable=False),
    Column("message", String, nullable=False),
    Column("type", String(16), nullable=False, default="info"),
    Column("data", JSON, nullable=True),
    Column("is_read", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), default=_utcnow),
)

driver_stats = Table(
    "driver_stats",
    metadata,
    Column("driver_id", String(64), primary_key=True),
    Column("total_rides", Integer, nullable=False, default=0),
    Column("total_earnings", Float, nullable=False, default=0.0),
    Column("updated_at", DateTime(timezone=True), default=_utcnow),
)

ride_transactions = Table(
    "ride_transactions",
    metadata,
    Column("id", String(36), primary_key=True, default=_new_id),
    Column("order_id", String(36), nullable=False),
    Column("customer_id", String(64), nullable=False),
    Column("driver_id", String(64), nullable=False),
    Column("amount", Float, nullable=False),
    Column("payment_method", String(32), nullable=False),
    Column("payment_status", String(16), nullable=False, default=PAY_PENDING),
    Column("provider_response", JSON, nullable=True),
    Column("created_at", DateTime(timezone=True), default=_utcnow),
    Column("updated_at", DateTime(timezone=True), default=_utcnow),
)

TABLES = {t.name: t for t in (orders, ride_requests, driver_declined_orders, notifications, driver_stats, ride_transactions)}
