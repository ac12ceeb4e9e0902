"""
Order lifecycle states and the legal moves between them.

The adjacency list lives in a TransitionPolicy so that business rules such as
sending a failed quality check back to washing can be switched on without
touching the engine. DEFAULT_POLICY is the strict forward path.
"""
from enum import Enum
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple


class OrderStatus(str, Enum):
    RECEIVED = "received"
    QUEUED = "queued"
    WASHING = "washing"
    DRYING = "drying"
    IRONING = "ironing"
    QUALITY_CHECK = "quality_check"
    PACKAGING = "packaging"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    COLLECTED = "collected"


# Forward processing path; after READY the order leaves by delivery or pickup
FORWARD_PATH: Tuple[OrderStatus, ...] = (
    OrderStatus.RECEIVED,
    OrderStatus.QUEUED,
    OrderStatus.WASHING,
    OrderStatus.DRYING,
    OrderStatus.IRONING,
    OrderStatus.QUALITY_CHECK,
    OrderStatus.PACKAGING,
    OrderStatus.READY,
)

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.COLLECTED})

INITIAL_STATUS = OrderStatus.RECEIVED


class StatusConfig(NamedTuple):
    label: str
    group: str  # Pending, Processing, Ready, Completed
    requires_notification: bool
    notification_template: Optional[str]


STATUS_CONFIG: Dict[OrderStatus, StatusConfig] = {
    OrderStatus.RECEIVED: StatusConfig("Received", "Pending", False, None),
    OrderStatus.QUEUED: StatusConfig("Queued", "Pending", False, None),
    OrderStatus.WASHING: StatusConfig("Washing", "Processing", False, None),
    OrderStatus.DRYING: StatusConfig("Drying", "Processing", False, None),
    OrderStatus.IRONING: StatusConfig("Ironing", "Processing", False, None),
    OrderStatus.QUALITY_CHECK: StatusConfig("Quality Check", "Processing", False, None),
    OrderStatus.PACKAGING: StatusConfig("Packaging", "Processing", False, None),
    OrderStatus.READY: StatusConfig("Ready", "Ready", True, "order_ready"),
    OrderStatus.OUT_FOR_DELIVERY: StatusConfig("Out for Delivery", "Ready", True, "order_out_for_delivery"),
    OrderStatus.DELIVERED: StatusConfig("Delivered", "Completed", True, "order_delivered"),
    OrderStatus.COLLECTED: StatusConfig("Collected", "Completed", False, None),
}

_unconfigured = set(OrderStatus) - set(STATUS_CONFIG)
if _unconfigured:
    raise RuntimeError(f"Missing status configuration for: {sorted(s.value for s in _unconfigured)}")


class TransitionPolicy:
    """Adjacency list of allowed status changes.

    Every status must have an entry and terminal statuses must have no
    outgoing edges.
    """

    def __init__(self, transitions: Dict[OrderStatus, Iterable[OrderStatus]]):
        missing = set(OrderStatus) - set(transitions)
        if missing:
            raise ValueError(f"Transition policy has no entry for: {sorted(s.value for s in missing)}")
        self._transitions: Dict[OrderStatus, Tuple[OrderStatus, ...]] = {
            OrderStatus(current): tuple(OrderStatus(n) for n in nexts)
            for current, nexts in transitions.items()
        }
        for terminal in TERMINAL_STATUSES:
            if self._transitions[terminal]:
                raise ValueError(f"Terminal status '{terminal.value}' cannot have outgoing transitions")

    def allows(self, current: OrderStatus, requested: OrderStatus) -> bool:
        return requested in self._transitions.get(current, ())

    def next_statuses(self, current: OrderStatus) -> List[OrderStatus]:
        return list(self._transitions.get(current, ()))

    def with_edges(self, *edges: Tuple[OrderStatus, OrderStatus]) -> "TransitionPolicy":
        """Return a copy of this policy with extra (current, next) edges."""
        merged = {k: list(v) for k, v in self._transitions.items()}
        for current, requested in edges:
            if requested not in merged[current]:
                merged[current].append(requested)
        return TransitionPolicy(merged)


def _forward_transitions() -> Dict[OrderStatus, List[OrderStatus]]:
    transitions: Dict[OrderStatus, List[OrderStatus]] = {s: [] for s in OrderStatus}
    for current, following in zip(FORWARD_PATH, FORWARD_PATH[1:]):
        transitions[current].append(following)
    transitions[OrderStatus.READY] = [OrderStatus.OUT_FOR_DELIVERY, OrderStatus.COLLECTED]
    transitions[OrderStatus.OUT_FOR_DELIVERY] = [OrderStatus.DELIVERED]
    return transitions


DEFAULT_POLICY = TransitionPolicy(_forward_transitions())

# Quality check failures go back to washing
REWASH_POLICY = DEFAULT_POLICY.with_edges((OrderStatus.QUALITY_CHECK, OrderStatus.WASHING))


def all_statuses() -> List[OrderStatus]:
    """All lifecycle states in forward order, terminal states last."""
    return list(OrderStatus)


def can_transition(current, requested, policy: TransitionPolicy = DEFAULT_POLICY) -> bool:
    try:
        current, requested = OrderStatus(current), OrderStatus(requested)
    except ValueError:
        return False
    return policy.allows(current, requested)


def valid_next_statuses(current, policy: TransitionPolicy = DEFAULT_POLICY) -> List[OrderStatus]:
    return policy.next_statuses(OrderStatus(current))


def is_terminal(status) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


def status_config(status) -> StatusConfig:
    return STATUS_CONFIG[OrderStatus(status)]


def status_group(status) -> str:
    return status_config(status).group


def requires_notification(status) -> bool:
    return status_config(status).requires_notification


def notification_template(status) -> Optional[str]:
    return status_config(status).notification_template
