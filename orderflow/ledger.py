"""
Status history ledger.

The ledger is append-only: entries are frozen models, a transition builds a
new list with one more entry and never edits or reorders existing ones. The
last entry always carries the order's current status.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from .errors import InvalidTransition
from .schemas import Order, StatusEntry
from .statuses import DEFAULT_POLICY, INITIAL_STATUS, OrderStatus, TransitionPolicy, can_transition, is_terminal
from .utils import utcnow

if TYPE_CHECKING:
    from .repositories import OrderRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionResult:
    success: bool
    previous_status: OrderStatus
    new_status: OrderStatus
    order: Order
    error: Optional[str] = None


def start_history(actor_id: str, timestamp: Optional[datetime] = None) -> List[StatusEntry]:
    """History for a freshly taken-in order."""
    return [StatusEntry(status=INITIAL_STATUS, timestamp=timestamp or utcnow(), actor_id=actor_id)]


def append_transition(
    order: Order,
    new_status,
    actor_id: str,
    timestamp: Optional[datetime] = None,
    policy: TransitionPolicy = DEFAULT_POLICY,
) -> List[StatusEntry]:
    try:
        requested = OrderStatus(new_status)
    except ValueError:
        raise InvalidTransition(order.status, new_status)
    if not can_transition(order.status, requested, policy):
        raise InvalidTransition(order.status, requested)

    entry = StatusEntry(status=requested, timestamp=timestamp or utcnow(), actor_id=actor_id)
    return [*order.status_history, entry]


def apply_transition(
    order: Order,
    new_status,
    actor_id: str,
    timestamp: Optional[datetime] = None,
    policy: TransitionPolicy = DEFAULT_POLICY,
) -> Order:
    """Return a copy of `order` moved to `new_status`; the input is untouched."""
    history = append_transition(order, new_status, actor_id, timestamp, policy)
    entry = history[-1]
    update = {"status": entry.status, "status_history": history}
    if is_terminal(entry.status):
        update["actual_completion"] = entry.timestamp
    return order.model_copy(update=update)


def attempt_transition(
    orders: "OrderRepository",
    order_id: str,
    new_status,
    actor_id: str,
    timestamp: Optional[datetime] = None,
    policy: TransitionPolicy = DEFAULT_POLICY,
) -> TransitionResult:
    """Validate and write one transition as a single compare-and-swap.

    The write only lands if the stored status and history length still match
    what the decision was made against; a lost race is reported as a failed result.
    """
    order = orders.get(order_id)

    try:
        updated = apply_transition(order, new_status, actor_id, timestamp, policy)
    except InvalidTransition as e:
        logger.warning("Rejected transition for %s: %s", order_id, e)
        return TransitionResult(False, order.status, order.status, order, str(e))

    entry = updated.status_history[-1]
    if not orders.update_status(order_id, order.status, updated.status, entry, len(order.status_history)):
        logger.warning("Order %s changed while moving %s -> %s", order_id, order.status.value, updated.status.value)
        return TransitionResult(
            False, order.status, order.status, order,
            f"Order '{order_id}' is no longer '{order.status.value}'; reload and retry",
        )

    logger.info("Order %s: %s -> %s by %s", order_id, order.status.value, updated.status.value, actor_id)
    return TransitionResult(True, order.status, updated.status, updated)
