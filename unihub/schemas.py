from pydantic import BaseModel, Field, field_validator
from typing import Literal, Optional, Tuple
from enum import Enum
from datetime import datetime


class ServiceType(str, Enum):
    UNIMOVE = "unimove"
    UNISEND = "unisend"


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RideStatus(str, Enum):
    """Client-side lifecycle shared by the driver and customer controllers."""
    SEARCHING = "searching"
    ACCEPTING = "accepting"
    ONGOING = "ongoing"
    COMPLETED = "completed"


class OrderSource(str, Enum):
    """Table an order row was read from; writes go back to the same table."""
    ORDERS = "orders"
    RIDE_REQUESTS = "ride_requests"


Coordinates = Tuple[float, float]


class Order(BaseModel):
    id: str
    customer_id: str
    driver_id: Optional[str] = None
    pickup_address: Optional[str] = None
    delivery_address: Optional[str] = None
    pickup_coordinates: Optional[Coordinates] = None
    delivery_coordinates: Optional[Coordinates] = None
    service_type: ServiceType = ServiceType.UNIMOVE
    package_size: Optional[str] = None
    total_amount: float = Field(0.0, ge=0)
    status: OrderStatus = OrderStatus.PENDING
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    source: OrderSource = OrderSource.ORDERS

    @property
    def is_unclaimed(self) -> bool:
        return self.status == OrderStatus.PENDING and not self.driver_id


class Toast(BaseModel):
    """User-visible, non-blocking message raised by a controller."""
    title: str
    description: str
    variant: Literal["default", "destructive"] = "default"


class RideCreate(BaseModel):
    pickup_address: str = Field(..., min_length=1, max_length=500)
    delivery_address: str = Field(..., min_length=1, max_length=500)
    pickup_coordinates: Optional[Coordinates] = None
    delivery_coordinates: Optional[Coordinates] = None
    total_amount: Optional[float] = Field(None, ge=0)
    service_type: ServiceType = ServiceType.UNIMOVE
    package_size: Optional[str] = Field(None, max_length=32)

    @field_validator('package_size')
    @classmethod
    def validate_package_size(cls, v, info):
        if v is not None and info.data.get('service_type') != ServiceType.UNISEND:
            raise ValueError('package_size only applies to unisend orders')
        return v


class PaymentRequest(BaseModel):
    payment_method: str = Field("card", max_length=50)


class DriverSessionOut(BaseModel):
    driver_id: str
    service_type: ServiceType
    status: RideStatus
    current_order: Optional[Order] = None
    pending_orders: list[Order] = []
    toasts: list[Toast] = []


class CustomerSessionOut(BaseModel):
    customer_id: str
    status: RideStatus
    order: Optional[Order] = None
    toasts: list[Toast] = []


class TransactionOut(BaseModel):
    id: str
    order_id: str
    amount: float
    payment_method: str
    payment_status: str
