import math
from collections import Counter, defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel

from .schemas import Order
from .statuses import OrderStatus, all_statuses, is_terminal
from .utils import as_utc, minutes_between, round_half_up, utcnow


class Bottleneck(BaseModel):
    status: OrderStatus
    avg_minutes: float
    samples: int


class PipelineStatistics(BaseModel):
    total_orders: int
    today_orders: int
    completed_orders: int
    today_completed: int
    avg_processing_minutes: int
    today_revenue: float
    status_counts: Dict[str, int]
    bottlenecks: List[Bottleneck]
    overdue_count: int


def dwell_time(order: Order, now: Optional[datetime] = None) -> int:
    """Whole minutes since the last status change."""
    if not order.status_history:
        return 0
    last = order.status_history[-1]
    return math.floor(minutes_between(last.timestamp, now or utcnow()))


def total_processing_time(order: Order) -> int:
    if not order.actual_completion:
        return 0
    return math.floor(minutes_between(order.created_at, order.actual_completion))


def _stage_samples(orders: Iterable[Order]) -> Dict[OrderStatus, List[float]]:
    samples: Dict[OrderStatus, List[float]] = defaultdict(list)
    for order in orders:
        history = order.status_history
        for current, following in zip(history, history[1:]):
            samples[current.status].append(minutes_between(current.timestamp, following.timestamp))
    return samples


def average_time_per_stage(orders: Iterable[Order]) -> Dict[OrderStatus, float]:
    """Mean minutes spent in each status; 0 for statuses no order passed through."""
    samples = _stage_samples(orders)
    return {
        status: (sum(samples[status]) / len(samples[status])) if samples.get(status) else 0.0
        for status in all_statuses()
    }


def bottlenecks(orders: Iterable[Order], top_n: int = 3) -> List[Bottleneck]:
    samples = _stage_samples(orders)
    ranked = [
        Bottleneck(status=status, avg_minutes=sum(values) / len(values), samples=len(values))
        for status, values in samples.items()
        if values
    ]
    ranked.sort(key=lambda b: b.avg_minutes, reverse=True)
    return ranked[:top_n]


def is_overdue(order: Order, now: Optional[datetime] = None) -> bool:
    now = as_utc(now or utcnow())
    return now > as_utc(order.estimated_completion) and order.actual_completion is None


def overdue_orders(orders: Iterable[Order], now: Optional[datetime] = None) -> List[Order]:
    now = now or utcnow()
    return [o for o in orders if is_overdue(o, now)]


def urgency_score(order: Order, now: Optional[datetime] = None) -> int:
    """0-100, higher is more urgent. Used for sorting and highlighting only."""
    hours_until_due = minutes_between(now or utcnow(), order.estimated_completion) / 60

    if hours_until_due <= 0:
        return 100
    if hours_until_due <= 6:
        return round_half_up(80 + (6 - hours_until_due) * 3)
    if hours_until_due <= 24:
        return round_half_up(50 + (24 - hours_until_due) * 1.25)
    return max(0, round_half_up(50 - hours_until_due))


def sort_by_urgency(orders: Sequence[Order], now: Optional[datetime] = None) -> List[Order]:
    now = now or utcnow()
    # sorted() is stable, so equal scores keep their input order
    return sorted(orders, key=lambda o: urgency_score(o, now), reverse=True)


def pipeline_statistics(orders: Sequence[Order], now: Optional[datetime] = None) -> PipelineStatistics:
    """Dashboard snapshot of a set of orders."""
    now = as_utc(now or utcnow())
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)

    today_orders = [o for o in orders if as_utc(o.created_at) >= start_of_day]
    completed = [o for o in orders if is_terminal(o.status)]
    today_completed = [
        o for o in completed
        if o.actual_completion and as_utc(o.actual_completion) >= start_of_day
    ]

    processing_times = [total_processing_time(o) for o in completed if o.actual_completion]
    avg_processing = round_half_up(sum(processing_times) / len(processing_times)) if processing_times else 0

    status_counts = Counter(o.status.value for o in orders)

    return PipelineStatistics(
        total_orders=len(orders),
        today_orders=len(today_orders),
        completed_orders=len(completed),
        today_completed=len(today_completed),
        avg_processing_minutes=avg_processing,
        today_revenue=sum(o.total_amount for o in today_orders),
        status_counts=dict(status_counts),
        bottlenecks=bottlenecks(completed, 3),
        overdue_count=len(overdue_orders(orders, now)),
    )
