import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from pydantic import BaseModel

from . import config
from .schemas import Branch, Order
from .utils import as_utc, minutes_between, round_half_up, utcnow

PENDING_SORT_STATUSES = ("received", "assigned", "processing")


class WindowValidation(BaseModel):
    valid: bool
    earliest_time: datetime
    error: Optional[str] = None


class SortingMetrics(BaseModel):
    pending_sorting: int
    expiring_soon: int
    ready_for_scheduling: int
    avg_sorting_minutes: int
    sorting_window_hours: float


@dataclass(frozen=True)
class RoutingDecision:
    processing_branch_id: str
    needs_transfer: bool
    routing_status: str


def sorting_window_hours(branch: Branch, default: float = config.DEFAULT_SORTING_WINDOW_HOURS) -> float:
    # An unset or zero window falls back to the system default
    return branch.sorting_window_hours or default


def validate_sorting_window_hours(hours: float) -> float:
    if hours < 1 or hours > 48:
        raise ValueError("Sorting window must be between 1 and 48 hours")
    return hours


def route_to_processing_branch(order: Order, source_branch: Branch) -> RoutingDecision:
    """Satellite stores only take orders in; their main store processes them."""
    processing_branch_id = order.branch_id
    if source_branch.branch_type == "satellite" and source_branch.main_store_id:
        processing_branch_id = source_branch.main_store_id

    needs_transfer = processing_branch_id != order.branch_id
    return RoutingDecision(
        processing_branch_id=processing_branch_id,
        needs_transfer=needs_transfer,
        routing_status="pending" if needs_transfer else "assigned",
    )


def earliest_return_time(order: Order, branch: Branch, now: Optional[datetime] = None) -> datetime:
    window = timedelta(hours=sorting_window_hours(branch))
    if order.arrived_at_branch_at:
        return as_utc(order.arrived_at_branch_at) + window
    return as_utc(now or utcnow()) + window


def record_arrival(order: Order, branch: Branch, now: Optional[datetime] = None) -> Order:
    """Start the sorting window. Returns the updated order for the caller to persist."""
    now = as_utc(now or utcnow())
    return order.model_copy(update={
        "arrived_at_branch_at": now,
        "earliest_delivery_time": now + timedelta(hours=sorting_window_hours(branch)),
        "routing_status": "received",
    })


def complete_sorting(order: Order, now: Optional[datetime] = None) -> Order:
    return order.model_copy(update={
        "sorting_completed_at": as_utc(now or utcnow()),
        "routing_status": "ready_for_return",
    })


def validate_proposed_time(
    order: Order,
    branch: Branch,
    proposed_time: datetime,
    now: Optional[datetime] = None,
) -> WindowValidation:
    earliest = earliest_return_time(order, branch, now)
    if as_utc(proposed_time) >= earliest:
        return WindowValidation(valid=True, earliest_time=earliest)

    return WindowValidation(
        valid=False,
        earliest_time=earliest,
        error=(
            f"Cannot schedule delivery before {earliest.isoformat()}. "
            f"Sorting window ({sorting_window_hours(branch):g} hours) must complete first."
        ),
    )


def remaining_window_minutes(order: Order, branch: Branch, now: Optional[datetime] = None) -> int:
    if order.sorting_completed_at:
        return 0
    now = as_utc(now or utcnow())
    earliest = earliest_return_time(order, branch, now)
    return max(0, math.ceil((earliest - now).total_seconds() / 60))


def _pending_sort(order):
    return (
        order.arrived_at_branch_at is not None
        and order.sorting_completed_at is None
        and order.routing_status in PENDING_SORT_STATUSES
    )


def sorting_metrics(
    orders: Iterable[Order],
    branch: Branch,
    now: Optional[datetime] = None,
    expiring_within_hours: float = 2,
) -> SortingMetrics:
    """Sorting-window counters for the orders processed at `branch`."""
    now = as_utc(now or utcnow())
    threshold = now + timedelta(hours=expiring_within_hours)
    branch_orders = [o for o in orders if o.effective_branch_id == branch.branch_id]

    pending = [o for o in branch_orders if _pending_sort(o)]
    expiring = [o for o in pending if earliest_return_time(o, branch, now) <= threshold]
    ready = [o for o in branch_orders if o.routing_status == "ready_for_return"]

    durations = [
        minutes_between(o.arrived_at_branch_at, o.sorting_completed_at)
        for o in ready
        if o.arrived_at_branch_at and o.sorting_completed_at
    ]

    return SortingMetrics(
        pending_sorting=len(pending),
        expiring_soon=len(expiring),
        ready_for_scheduling=len(ready),
        avg_sorting_minutes=round_half_up(sum(durations) / len(durations)) if durations else 0,
        sorting_window_hours=sorting_window_hours(branch),
    )
