"""Conversion between stored rows and the in-memory `Order` model.

Every source table registers one row adapter in `ROW_ADAPTERS`. Adapters are
total: malformed or missing fields map to defaults (`None` coordinates, `0`
amounts) and never raise.
"""
from datetime import datetime
from typing import Any, Callable, Mapping, Optional
import logging
import math

from .schemas import Coordinates, Order, OrderSource, OrderStatus, ServiceType

logger = logging.getLogger(__name__)

RowAdapter = Callable[[Mapping[str, Any]], Order]


def to_wire_coordinates(coords: Optional[Coordinates]) -> Optional[str]:
    """Encode a (lat, lng) pair as point text, e.g. "(12.97,77.59)"."""
    if coords is None:
        return None
    lat, lng = coords
    # repr() round-trips floats exactly
    return f"({float(lat)!r},{float(lng)!r})"


def parse_point(value: Any) -> Optional[Coordinates]:
    """Decode point text, {"x", "y"} objects or 2-element sequences.

    A pair with either half missing or non-finite decodes to None.
    """
    if value is None:
        return None
    try:
        if isinstance(value, str):
            text = value.strip().strip("()")
            if not text:
                return None
            parts = text.split(",")
            if len(parts) != 2:
                return None
            x, y = parts
        elif isinstance(value, Mapping):
            x, y = value.get("x"), value.get("y")
        elif isinstance(value, (list, tuple)):
            if len(value) != 2:
                return None
            x, y = value
        else:
            return None
        if x is None or y is None:
            return None
        lat, lng = float(x), float(y)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return None
    return (lat, lng)


def _parse_amount(value: Any) -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(amount) or amount < 0:
        return 0.0
    return amount


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def _parse_status(value: Any) -> OrderStatus:
    try:
        return OrderStatus(value)
    except (TypeError, ValueError):
        return OrderStatus.PENDING


def _parse_service_type(value: Any, default: ServiceType) -> ServiceType:
    try:
        return ServiceType(value)
    except (TypeError, ValueError):
        return default


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def to_order(raw: Mapping[str, Any]) -> Order:
    """Map an `orders` row (or push payload) to an Order."""
    return Order(
        id=str(raw.get("id") or ""),
        customer_id=str(raw.get("customer_id") or ""),
        driver_id=_optional_str(raw.get("driver_id")),
        pickup_address=_optional_str(raw.get("pickup_address")),
        delivery_address=_optional_str(raw.get("delivery_address")),
        pickup_coordinates=parse_point(raw.get("pickup_coordinates")),
        delivery_coordinates=parse_point(raw.get("delivery_coordinates")),
        service_type=_parse_service_type(raw.get("service_type"), ServiceType.UNIMOVE),
        package_size=_optional_str(raw.get("package_size")),
        total_amount=_parse_amount(raw.get("total_amount")),
        status=_parse_status(raw.get("status")),
        created_at=_parse_timestamp(raw.get("created_at")),
        updated_at=_parse_timestamp(raw.get("updated_at")),
        source=OrderSource.ORDERS,
    )


def ride_request_to_order(raw: Mapping[str, Any]) -> Order:
    """Map a legacy `ride_requests` row to an Order.

    Legacy rows carry no coordinates and may lack a service type; they are rides.
    """
    return Order(
        id=str(raw.get("id") or ""),
        customer_id=str(raw.get("customer_id") or ""),
        driver_id=_optional_str(raw.get("driver_id")),
        pickup_address=_optional_str(raw.get("pickup_location")),
        delivery_address=_optional_str(raw.get("dropoff_location")),
        service_type=_parse_service_type(raw.get("service_type"), ServiceType.UNIMOVE),
        total_amount=_parse_amount(raw.get("price")),
        status=_parse_status(raw.get("status")),
        created_at=_parse_timestamp(raw.get("created_at")),
        updated_at=_parse_timestamp(raw.get("updated_at")),
        source=OrderSource.RIDE_REQUESTS,
    )


ROW_ADAPTERS: dict[OrderSource, RowAdapter] = {
    OrderSource.ORDERS: to_order,
    OrderSource.RIDE_REQUESTS: ride_request_to_order,
}


def adapt_row(source: OrderSource, raw: Mapping[str, Any]) -> Order:
    return ROW_ADAPTERS[source](raw)


def order_to_row(order: Order) -> dict:
    """Wire representation of an Order for inserts into the `orders` table."""
    return {
        "customer_id": order.customer_id,
        "driver_id": order.driver_id,
        "pickup_address": order.pickup_address,
        "delivery_address": order.delivery_address,
        "pickup_coordinates": to_wire_coordinates(order.pickup_coordinates),
        "delivery_coordinates": to_wire_coordinates(order.delivery_coordinates),
        "status": order.status.value,
        "service_type": order.service_type.value,
        "package_size": order.package_size,
        "total_amount": order.total_amount,
    }
