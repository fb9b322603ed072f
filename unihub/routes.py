from fastapi import APIRouter, Depends, HTTPException, Request
from typing import Optional
import asyncio
import logging

from . import schemas
from .aggregator import vertical_for
from .backend import Backend
from .customer_ride import CustomerRideController
from .driver_orders import DriverOrderController, ToastLog

logger = logging.getLogger(__name__)

router = APIRouter()


class SessionRegistry:
    """One live controller per (driver, vertical) and per (customer, vertical)."""

    def __init__(self, backend: Backend, poll: bool = True):
        self.backend = backend
        self.poll = poll
        self.drivers: dict[tuple[str, str], DriverOrderController] = {}
        self.customers: dict[tuple[str, str], CustomerRideController] = {}
        self._lock = asyncio.Lock()

    async def driver(self, driver_id: str, service_type: schemas.ServiceType) -> DriverOrderController:
        key = (driver_id, service_type.value)
        async with self._lock:
            controller = self.drivers.get(key)
            if controller is None:
                controller = DriverOrderController(self.backend, driver_id, vertical_for(service_type), toast=ToastLog())
                await controller.start(poll=self.poll)
                self.drivers[key] = controller
                logger.info("driver_session_started: driver=%s service=%s", driver_id, service_type.value)
        return controller

    async def customer(self, customer_id: str, service_type: schemas.ServiceType) -> CustomerRideController:
        key = (customer_id, service_type.value)
        async with self._lock:
            controller = self.customers.get(key)
            if controller is None:
                controller = CustomerRideController(self.backend, customer_id, vertical_for(service_type), toast=ToastLog())
                self.customers[key] = controller
        return controller

    async def end_driver(self, driver_id: str, service_type: schemas.ServiceType) -> bool:
        """Stop and forget a driver session; False when none was open."""
        async with self._lock:
            controller = self.drivers.pop((driver_id, service_type.value), None)
        if controller is None:
            return False
        await controller.stop()
        logger.info("driver_session_ended: driver=%s service=%s", driver_id, service_type.value)
        return True

    async def end_customer(self, customer_id: str, service_type: schemas.ServiceType) -> bool:
        async with self._lock:
            controller = self.customers.pop((customer_id, service_type.value), None)
        if controller is None:
            return False
        await controller.stop()
        logger.info("customer_session_ended: customer=%s service=%s", customer_id, service_type.value)
        return True

    async def close(self):
        for controller in list(self.drivers.values()):
            await controller.stop()
        for controller in list(self.customers.values()):
            await controller.stop()
        self.drivers.clear()
        self.customers.clear()


def get_registry(request: Request) -> SessionRegistry:
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(status_code=503, detail="backend not ready")
    return registry


def _driver_out(c: DriverOrderController) -> schemas.DriverSessionOut:
    return schemas.DriverSessionOut(
        driver_id=c.driver_id,
        service_type=c.vertical.service_type,
        status=c.status,
        current_order=c.current_order,
        pending_orders=c.pending_orders,
        toasts=c.toast.drain(),
    )


def _customer_out(c: CustomerRideController) -> schemas.CustomerSessionOut:
    return schemas.CustomerSessionOut(
        customer_id=c.customer_id,
        status=c.status,
        order=c.order,
        toasts=c.toast.drain(),
    )


def _pending_order(c: DriverOrderController, order_id: str) -> schemas.Order:
    order = c.pending.get(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="order not in pending list")
    return order


@router.get("/drivers/{driver_id}/{service_type}", response_model=schemas.DriverSessionOut)
async def driver_session(driver_id: str, service_type: schemas.ServiceType, registry=Depends(get_registry)):
    return _driver_out(await registry.driver(driver_id, service_type))


@router.delete("/drivers/{driver_id}/{service_type}")
async def driver_end(driver_id: str, service_type: schemas.ServiceType, registry=Depends(get_registry)):
    if not await registry.end_driver(driver_id, service_type):
        raise HTTPException(status_code=404, detail="no driver session")
    return {"status": "closed"}


@router.post("/drivers/{driver_id}/{service_type}/refresh", response_model=schemas.DriverSessionOut)
async def driver_refresh(driver_id: str, service_type: schemas.ServiceType, registry=Depends(get_registry)):
    c = await registry.driver(driver_id, service_type)
    await c.refresh_pending()
    return _driver_out(c)


@router.post("/drivers/{driver_id}/{service_type}/orders/{order_id}/accept", response_model=schemas.DriverSessionOut)
async def driver_accept(driver_id: str, service_type: schemas.ServiceType, order_id: str, registry=Depends(get_registry)):
    c = await registry.driver(driver_id, service_type)
    logger.info("driver_accept: driver=%s order=%s", driver_id, order_id)
    await c.accept_order(_pending_order(c, order_id))
    return _driver_out(c)


@router.post("/drivers/{driver_id}/{service_type}/orders/{order_id}/decline", response_model=schemas.DriverSessionOut)
async def driver_decline(driver_id: str, service_type: schemas.ServiceType, order_id: str, registry=Depends(get_registry)):
    c = await registry.driver(driver_id, service_type)
    await c.decline_order(_pending_order(c, order_id))
    return _driver_out(c)


@router.post("/drivers/{driver_id}/{service_type}/pickup", response_model=schemas.DriverSessionOut)
async def driver_pickup(driver_id: str, service_type: schemas.ServiceType, registry=Depends(get_registry)):
    c = await registry.driver(driver_id, service_type)
    await c.complete_pickup()
    return _driver_out(c)


@router.post("/drivers/{driver_id}/{service_type}/complete", response_model=schemas.DriverSessionOut)
async def driver_complete(driver_id: str, service_type: schemas.ServiceType, registry=Depends(get_registry)):
    c = await registry.driver(driver_id, service_type)
    await c.complete_order()
    return _driver_out(c)


@router.post("/drivers/{driver_id}/{service_type}/reset", response_model=schemas.DriverSessionOut)
async def driver_reset(driver_id: str, service_type: schemas.ServiceType, registry=Depends(get_registry)):
    c = await registry.driver(driver_id, service_type)
    await c.find_new_order()
    return _driver_out(c)


@router.get("/drivers/{driver_id}/{service_type}/history", response_model=list[schemas.Order])
async def driver_history(driver_id: str, service_type: schemas.ServiceType, registry=Depends(get_registry)):
    c = await registry.driver(driver_id, service_type)
    return await c.history()


@router.post("/customers/{customer_id}/orders", response_model=schemas.CustomerSessionOut)
async def customer_request(customer_id: str, req: schemas.RideCreate, registry=Depends(get_registry)):
    c = await registry.customer(customer_id, req.service_type)
    logger.info("customer_request: customer=%s service=%s", customer_id, req.service_type.value)
    await c.request_ride(
        req.pickup_address,
        req.delivery_address,
        price=req.total_amount,
        pickup_coordinates=req.pickup_coordinates,
        delivery_coordinates=req.delivery_coordinates,
        package_size=req.package_size,
    )
    return _customer_out(c)


@router.get("/customers/{customer_id}/{service_type}", response_model=schemas.CustomerSessionOut)
async def customer_session(customer_id: str, service_type: schemas.ServiceType, registry=Depends(get_registry)):
    return _customer_out(await registry.customer(customer_id, service_type))


@router.delete("/customers/{customer_id}/{service_type}")
async def customer_end(customer_id: str, service_type: schemas.ServiceType, registry=Depends(get_registry)):
    if not await registry.end_customer(customer_id, service_type):
        raise HTTPException(status_code=404, detail="no customer session")
    return {"status": "closed"}


@router.post("/customers/{customer_id}/{service_type}/cancel", response_model=schemas.CustomerSessionOut)
async def customer_cancel(customer_id: str, service_type: schemas.ServiceType, registry=Depends(get_registry)):
    c = await registry.customer(customer_id, service_type)
    if c.order is None:
        raise HTTPException(status_code=404, detail="no active order")
    await c.cancel()
    return _customer_out(c)


@router.post("/customers/{customer_id}/{service_type}/pay")
async def customer_pay(customer_id: str, service_type: schemas.ServiceType, req: schemas.PaymentRequest,
                       registry=Depends(get_registry)):
    c = await registry.customer(customer_id, service_type)
    if c.order is None:
        raise HTTPException(status_code=404, detail="no active order")
    tx = await c.pay(req.payment_method)
    transaction: Optional[schemas.TransactionOut] = None
    if tx:
        transaction = schemas.TransactionOut(
            id=tx["id"], order_id=tx["order_id"], amount=tx["amount"],
            payment_method=tx["payment_method"], payment_status=tx["payment_status"],
        )
    return {"transaction": transaction, "session": _customer_out(c)}


@router.get("/customers/{customer_id}/{service_type}/history", response_model=list[schemas.Order])
async def customer_history(customer_id: str, service_type: schemas.ServiceType, registry=Depends(get_registry)):
    c = await registry.customer(customer_id, service_type)
    return await c.history()
