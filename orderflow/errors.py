"""Error taxonomy for the order lifecycle engine.

Every error here is recoverable by the caller: fix the input and retry, or
fall back to the manual flow (manual driver pick, manual stop ordering).
"""
from typing import Dict, List, Optional


class OrderFlowError(Exception):
    """Base class for all engine errors."""


class OrderNotFound(OrderFlowError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order '{order_id}' not found")


class BranchNotFound(OrderFlowError):
    def __init__(self, branch_id: str):
        self.branch_id = branch_id
        super().__init__(f"Branch '{branch_id}' not found")


class InvalidTransition(OrderFlowError):
    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot move order from '{_value(current)}' to '{_value(requested)}'"
        )


class IneligibleOrder(OrderFlowError):
    """One or more orders cannot be put on a delivery batch.

    `reasons` maps each offending order id to a short explanation.
    """

    def __init__(self, order_ids: List[str], reasons: Optional[Dict[str, str]] = None, message: Optional[str] = None):
        self.order_ids = list(order_ids)
        self.reasons = dict(reasons or {})
        if message is None:
            message = "Orders not eligible for delivery batch: " + ", ".join(
                f"{oid} ({self.reasons.get(oid, 'ineligible')})" for oid in self.order_ids
            )
        super().__init__(message)


class BatchNotFound(OrderFlowError):
    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Delivery batch '{batch_id}' not found")


class BatchAlreadyAssigned(OrderFlowError):
    def __init__(self, batch_id: str, driver_id: str):
        self.batch_id = batch_id
        self.driver_id = driver_id
        super().__init__(f"Delivery batch '{batch_id}' is already assigned to driver '{driver_id}'")


class InvalidBatchTransition(OrderFlowError):
    def __init__(self, batch_id: str, current: str, requested: str):
        self.batch_id = batch_id
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move delivery batch '{batch_id}' from '{current}' to '{requested}'")


class DriverUnavailable(OrderFlowError):
    def __init__(self, driver_id: str, branch_id: str):
        self.driver_id = driver_id
        self.branch_id = branch_id
        super().__init__(f"Driver '{driver_id}' is not available at branch '{branch_id}'")


class TooManyStops(OrderFlowError):
    def __init__(self, count: int, limit: int):
        self.count = count
        self.limit = limit
        super().__init__(f"Maximum {limit} stops allowed per route, got {count}")


class InvalidStop(OrderFlowError):
    def __init__(self, index: Optional[int], reason: str):
        self.index = index
        self.reason = reason
        where = f"Stop #{index + 1}" if index is not None else "Route"
        super().__init__(f"{where}: {reason}")


class RoutingUnavailable(OrderFlowError):
    """The routing service failed, timed out or is not configured."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Routing service unavailable: {reason}")


def _value(status):
    return getattr(status, "value", status)
