"""
Delivery batches and driver assignment.

Batch creation is all-or-nothing: every order is checked first and a single
IneligibleOrder names every offending id, so a partial batch can never be
produced. Functions here return new batch objects; persisting them is the
caller's job (see SqlBatchRepository.save).
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from .errors import (
    BatchAlreadyAssigned, DriverUnavailable, IneligibleOrder, InvalidBatchTransition, OrderNotFound, RoutingUnavailable,
)
from .repositories import BatchRepository, DriverRepository, OrderRepository
from .routing import RoutingService, manual_route, optimize_route
from .schemas import Coordinates, DeliveryBatch, Driver, OptimizedRoute, Order, RouteStop
from .statuses import OrderStatus
from .utils import utcnow

logger = logging.getLogger(__name__)

BATCH_TRANSITIONS = {
    "assigned": ("in_transit",),
    "in_transit": ("completed",),
}


@dataclass(frozen=True)
class DispatchPlan:
    batch: DeliveryBatch
    route: OptimizedRoute
    driver_id: Optional[str]
    assignment_pending: bool


def generate_batch_id(origin_branch_id: str, now: Optional[datetime] = None) -> str:
    """DEL-[ORIGIN]-[YYYYMMDD]-[XXXX]"""
    now = now or utcnow()
    return f"DEL-{origin_branch_id}-{now:%Y%m%d}-{uuid.uuid4().hex[:4]}".upper()


def eligibility_problem(order: Order) -> Optional[str]:
    """Why `order` cannot go on a delivery batch, or None if it can."""
    if order.status != OrderStatus.READY:
        return f"status is '{order.status.value}', expected 'ready'"
    if order.return_method != "delivery_required":
        return "customer collects"
    if not order.delivery_address or not order.delivery_address.address.strip():
        return "no delivery address"
    if order.delivery_batch_id:
        return f"already on batch {order.delivery_batch_id}"
    return None


def create_batch(
    origin_branch_id: str,
    destination_branch_id: str,
    order_ids: Iterable[str],
    created_by: str,
    orders: OrderRepository,
    now: Optional[datetime] = None,
) -> DeliveryBatch:
    ids = list(dict.fromkeys(order_ids))
    if not ids:
        raise IneligibleOrder([], message="Cannot create an empty delivery batch")

    reasons = {}
    for order_id in ids:
        try:
            problem = eligibility_problem(orders.get(order_id))
        except OrderNotFound:
            problem = "order not found"
        if problem:
            reasons[order_id] = problem

    if reasons:
        logger.warning("Batch from %s rejected, ineligible orders: %s", origin_branch_id, reasons)
        raise IneligibleOrder(list(reasons), reasons)

    now = now or utcnow()
    batch = DeliveryBatch(
        batch_id=generate_batch_id(origin_branch_id, now),
        origin_branch_id=origin_branch_id,
        destination_branch_id=destination_branch_id,
        order_ids=ids,
        created_by=created_by,
        created_at=now,
    )
    logger.info("Created batch %s with %d orders", batch.batch_id, batch.total_orders)
    return batch


def _has_capacity(driver: Driver) -> bool:
    if not driver.active:
        return False
    return driver.max_active_batches is None or driver.active_batches < driver.max_active_batches


def auto_assign_driver(origin_branch_id: str, destination_branch_id: str, drivers: DriverRepository) -> Optional[str]:
    """Least loaded available driver at the origin, or None if nobody is free."""
    candidates = [d for d in drivers.list_available(origin_branch_id) if _has_capacity(d)]
    if not candidates:
        logger.info("No driver free at %s for %s; assignment pending", origin_branch_id, destination_branch_id)
        return None
    # min() keeps the first of equally loaded drivers
    return min(candidates, key=lambda d: d.active_batches).driver_id


def assign_driver(
    batch_id: str,
    driver_id: str,
    batches: BatchRepository,
    drivers: DriverRepository,
) -> DeliveryBatch:
    batch = batches.get(batch_id)
    if batch.driver_id == driver_id:
        return batch
    if batch.driver_id:
        raise BatchAlreadyAssigned(batch_id, batch.driver_id)

    available = {d.driver_id: d for d in drivers.list_available(batch.origin_branch_id)}
    driver = available.get(driver_id)
    if driver is None or not _has_capacity(driver):
        raise DriverUnavailable(driver_id, batch.origin_branch_id)

    logger.info("Driver %s assigned to batch %s", driver_id, batch_id)
    return batch.model_copy(update={"driver_id": driver_id, "status": "assigned"})


def advance_batch(batch_id: str, new_status: str, batches: BatchRepository) -> DeliveryBatch:
    """Move a batch one step along assigned -> in_transit -> completed.

    Repeating the current status is a no-op. Completed batches stop counting
    towards their driver's load.
    """
    batch = batches.get(batch_id)
    if batch.status == new_status:
        return batch
    if new_status not in BATCH_TRANSITIONS.get(batch.status, ()):
        raise InvalidBatchTransition(batch_id, batch.status, new_status)

    if not batches.update_status(batch_id, batch.status, new_status):
        current = batches.get(batch_id)
        if current.status == new_status:
            return current
        raise InvalidBatchTransition(batch_id, current.status, new_status)

    logger.info("Batch %s: %s -> %s", batch_id, batch.status, new_status)
    return batch.model_copy(update={"status": new_status})


def start_batch(batch_id: str, batches: BatchRepository) -> DeliveryBatch:
    return advance_batch(batch_id, "in_transit", batches)


def complete_batch(batch_id: str, batches: BatchRepository) -> DeliveryBatch:
    return advance_batch(batch_id, "completed", batches)


def route_stops(orders: Sequence[Order]) -> List[RouteStop]:
    return [
        RouteStop(
            order_id=order.order_id,
            coordinates=order.delivery_address.coordinates if order.delivery_address else None,
            address=order.delivery_address.address if order.delivery_address else "",
            customer_name=order.customer_name,
            customer_phone=order.customer_phone,
        )
        for order in orders
    ]


def plan_dispatch(
    batch: DeliveryBatch,
    start: Coordinates,
    orders: Sequence[Order],
    drivers: DriverRepository,
    router: Optional[RoutingService] = None,
    return_to_start: bool = True,
    skip_optimization: bool = False,
    fallback_to_manual: bool = True,
    deadline: Optional[datetime] = None,
) -> DispatchPlan:
    """Sequence the stops, then pick a driver.

    The driver is only chosen once routing has succeeded, been skipped, or
    fallen back to manual order, so a failed or cancelled routing call leaves
    the batch untouched.
    """
    stops = route_stops(orders)
    if skip_optimization:
        route = manual_route(stops)
    else:
        try:
            route = optimize_route(start, stops, return_to_start, router, deadline)
        except RoutingUnavailable:
            if not fallback_to_manual:
                raise
            logger.warning("Batch %s falls back to manual stop order", batch.batch_id)
            route = manual_route(stops)

    driver_id = batch.driver_id or auto_assign_driver(batch.origin_branch_id, batch.destination_branch_id, drivers)
    if driver_id and not batch.driver_id:
        batch = batch.model_copy(update={"driver_id": driver_id, "status": "assigned"})

    return DispatchPlan(batch=batch, route=route, driver_id=driver_id, assignment_pending=driver_id is None)
