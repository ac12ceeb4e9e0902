import logging
import uuid
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from . import config
from .analytics import Bottleneck, PipelineStatistics, bottlenecks, pipeline_statistics, sort_by_urgency, urgency_score
from .batches import advance_batch, assign_driver, create_batch, plan_dispatch, route_stops
from .database import get_db
from .errors import (
    BatchAlreadyAssigned, BatchNotFound, BranchNotFound, DriverUnavailable, IneligibleOrder, InvalidBatchTransition,
    InvalidStop, InvalidTransition, OrderFlowError, OrderNotFound, RoutingUnavailable, TooManyStops,
)
from .fees import compute_fee, preview_fees
from .insights import generate_bottleneck_insight
from .ledger import attempt_transition, start_history
from .repositories import (
    SqlBatchRepository, SqlBranchRepository, SqlDriverRepository, SqlOrderRepository, SqlRuleRepository,
)
from .routing import GoogleDirectionsRouter, RoutingService, manual_route, optimize_route
from .scheduling import (
    SortingMetrics, WindowValidation, complete_sorting, record_arrival, remaining_window_minutes,
    route_to_processing_branch, sorting_metrics, validate_proposed_time, validate_sorting_window_hours,
)
from .schemas import (
    Address, Coordinates, DeliveryBatch, FeeContext, FeeQuote, OptimizedRoute, Order, ReturnMethod, CollectionMethod,
)
from .statuses import REWASH_POLICY, DEFAULT_POLICY, OrderStatus, is_terminal, notification_template, valid_next_statuses
from .utils import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["orders"])

_STATUS_CODES = {
    OrderNotFound: 404,
    BranchNotFound: 404,
    BatchNotFound: 404,
    InvalidTransition: 409,
    BatchAlreadyAssigned: 409,
    InvalidBatchTransition: 409,
    DriverUnavailable: 409,
    IneligibleOrder: 422,
    TooManyStops: 422,
    InvalidStop: 422,
    RoutingUnavailable: 503,
}


def _http_error(e: OrderFlowError) -> HTTPException:
    status_code = next((code for kind, code in _STATUS_CODES.items() if isinstance(e, kind)), 400)
    detail = str(e)
    if isinstance(e, IneligibleOrder):
        detail = {"message": str(e), "order_ids": e.order_ids, "reasons": e.reasons}
    return HTTPException(status_code=status_code, detail=detail)


# --- Dependencies ---

def get_orders(db: Session = Depends(get_db)) -> SqlOrderRepository:
    return SqlOrderRepository(db)


def get_branches(db: Session = Depends(get_db)) -> SqlBranchRepository:
    return SqlBranchRepository(db)


def get_drivers(db: Session = Depends(get_db)) -> SqlDriverRepository:
    return SqlDriverRepository(db)


def get_rules(db: Session = Depends(get_db)) -> SqlRuleRepository:
    return SqlRuleRepository(db)


def get_batches(db: Session = Depends(get_db)) -> SqlBatchRepository:
    return SqlBatchRepository(db)


def get_router() -> Optional[RoutingService]:
    if not config.GOOGLE_MAPS_API_KEY:
        return None
    return GoogleDirectionsRouter()


# --- Request / response models ---

class OrderIn(BaseModel):
    branch_id: str
    actor_id: str
    estimated_completion: datetime
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    collection_method: CollectionMethod = "dropped_off"
    return_method: ReturnMethod = "customer_collects"
    delivery_address: Optional[Address] = None
    total_amount: float = Field(default=0.0, ge=0)
    paid_amount: float = Field(default=0.0, ge=0)


class TransitionIn(BaseModel):
    status: str
    actor_id: str
    allow_rewash: bool = False


class TransitionOut(BaseModel):
    success: bool
    previous_status: OrderStatus
    new_status: OrderStatus
    notification_template: Optional[str] = None


class ProposedTimeIn(BaseModel):
    proposed_time: datetime


class SortingWindowIn(BaseModel):
    hours: float


class UrgentOrderOut(BaseModel):
    order_id: str
    status: OrderStatus
    branch_id: str
    estimated_completion: datetime
    urgency_score: int


class FeeScenario(BaseModel):
    order_amount: float = Field(ge=0)
    customer_segment: Optional[str] = None
    distance_km: Optional[float] = Field(default=None, ge=0)


class FeePreviewIn(BaseModel):
    branch_id: str
    scenarios: List[FeeScenario]


class BatchIn(BaseModel):
    origin_branch_id: str
    destination_branch_id: str
    order_ids: List[str]
    created_by: str


class BatchOut(BaseModel):
    batch_id: str
    origin_branch_id: str
    destination_branch_id: str
    order_ids: List[str]
    driver_id: Optional[str] = None
    status: str
    created_by: str
    created_at: datetime
    total_orders: int
    assignment_pending: bool


class DispatchIn(BaseModel):
    start: Optional[Coordinates] = None
    return_to_start: bool = True
    skip_optimization: bool = False


class DispatchOut(BaseModel):
    batch: BatchOut
    route: OptimizedRoute


class BatchStatusIn(BaseModel):
    status: Literal["in_transit", "completed"]


class DriverIn(BaseModel):
    driver_id: str


class RouteIn(BaseModel):
    start: Coordinates
    order_ids: List[str]
    return_to_start: bool = True
    skip_optimization: bool = False


def _batch_out(batch: DeliveryBatch) -> BatchOut:
    return BatchOut(**batch.model_dump(), total_orders=batch.total_orders, assignment_pending=batch.driver_id is None)


# --- Orders ---

@router.post("/orders", response_model=Order, status_code=201)
def take_in_order(req: OrderIn, orders: SqlOrderRepository = Depends(get_orders),
                  branches: SqlBranchRepository = Depends(get_branches)):
    """Intake at a branch. Satellite orders are routed to their main store."""
    try:
        source = branches.get(req.branch_id)
    except OrderFlowError as e:
        raise _http_error(e)

    now = utcnow()
    draft = Order(
        order_id=f"ORD-{uuid.uuid4().hex[:8]}".upper(),
        status=OrderStatus.RECEIVED,
        status_history=start_history(req.actor_id, now),
        created_at=now,
        **req.model_dump(exclude={"actor_id"}),
    )
    decision = route_to_processing_branch(draft, source)
    order = draft.model_copy(update={
        "processing_branch_id": decision.processing_branch_id,
        "routing_status": decision.routing_status,
    })
    orders.save(order)
    logger.info("Order %s taken in at %s, processed at %s", order.order_id, req.branch_id, decision.processing_branch_id)
    return order


@router.get("/orders/{order_id}", response_model=Order)
def get_order(order_id: str, orders: SqlOrderRepository = Depends(get_orders)):
    try:
        return orders.get(order_id)
    except OrderFlowError as e:
        raise _http_error(e)


@router.post("/orders/{order_id}/transition", response_model=TransitionOut)
def transition_order(order_id: str, req: TransitionIn, orders: SqlOrderRepository = Depends(get_orders)):
    policy = REWASH_POLICY if req.allow_rewash else DEFAULT_POLICY
    try:
        result = attempt_transition(orders, order_id, req.status, req.actor_id, policy=policy)
    except OrderFlowError as e:
        raise _http_error(e)

    if not result.success:
        raise HTTPException(status_code=409, detail=result.error)

    return TransitionOut(
        success=True,
        previous_status=result.previous_status,
        new_status=result.new_status,
        notification_template=notification_template(result.new_status),
    )


@router.get("/orders/{order_id}/next-statuses", response_model=List[OrderStatus])
def next_statuses(order_id: str, allow_rewash: bool = False, orders: SqlOrderRepository = Depends(get_orders)):
    policy = REWASH_POLICY if allow_rewash else DEFAULT_POLICY
    try:
        order = orders.get(order_id)
    except OrderFlowError as e:
        raise _http_error(e)
    return valid_next_statuses(order.status, policy)


@router.post("/orders/{order_id}/arrival", response_model=Order)
def order_arrived(order_id: str, orders: SqlOrderRepository = Depends(get_orders),
                  branches: SqlBranchRepository = Depends(get_branches)):
    try:
        order = orders.get(order_id)
        branch = branches.get(order.effective_branch_id)
    except OrderFlowError as e:
        raise _http_error(e)

    updated = record_arrival(order, branch)
    orders.save(updated)
    return updated


@router.post("/orders/{order_id}/sorting-complete", response_model=Order)
def sorting_complete(order_id: str, orders: SqlOrderRepository = Depends(get_orders)):
    try:
        order = orders.get(order_id)
    except OrderFlowError as e:
        raise _http_error(e)

    updated = complete_sorting(order)
    orders.save(updated)
    return updated


@router.post("/orders/{order_id}/validate-delivery-time", response_model=WindowValidation)
def validate_delivery_time(order_id: str, req: ProposedTimeIn, orders: SqlOrderRepository = Depends(get_orders),
                           branches: SqlBranchRepository = Depends(get_branches)):
    try:
        order = orders.get(order_id)
        branch = branches.get(order.effective_branch_id)
    except OrderFlowError as e:
        raise _http_error(e)
    return validate_proposed_time(order, branch, req.proposed_time)


@router.get("/orders/{order_id}/sorting-window")
def sorting_window(order_id: str, orders: SqlOrderRepository = Depends(get_orders),
                   branches: SqlBranchRepository = Depends(get_branches)):
    try:
        order = orders.get(order_id)
        branch = branches.get(order.effective_branch_id)
    except OrderFlowError as e:
        raise _http_error(e)
    return {"order_id": order_id, "remaining_minutes": remaining_window_minutes(order, branch)}


# --- Pipeline ---

def _pipeline_orders(orders: SqlOrderRepository, branch_id: Optional[str]) -> List[Order]:
    if branch_id:
        return orders.list_by_branch_and_status(branch_id)
    return orders.list_all()


@router.get("/pipeline/stats", response_model=PipelineStatistics)
def get_pipeline_stats(branch_id: Optional[str] = None, orders: SqlOrderRepository = Depends(get_orders)):
    return pipeline_statistics(_pipeline_orders(orders, branch_id))


@router.get("/pipeline/urgent", response_model=List[UrgentOrderOut])
def get_urgent_orders(branch_id: Optional[str] = None, limit: int = 20,
                      orders: SqlOrderRepository = Depends(get_orders)):
    now = utcnow()
    open_orders = [o for o in _pipeline_orders(orders, branch_id) if not is_terminal(o.status)]
    return [
        UrgentOrderOut(
            order_id=o.order_id,
            status=o.status,
            branch_id=o.effective_branch_id,
            estimated_completion=o.estimated_completion,
            urgency_score=urgency_score(o, now),
        )
        for o in sort_by_urgency(open_orders, now)[:limit]
    ]


@router.get("/pipeline/bottlenecks", response_model=List[Bottleneck])
def get_bottlenecks(branch_id: Optional[str] = None, top_n: int = 3,
                    orders: SqlOrderRepository = Depends(get_orders)):
    return bottlenecks(_pipeline_orders(orders, branch_id), top_n)


@router.post("/pipeline/insight")
def generate_insight(branch_id: Optional[str] = None, orders: SqlOrderRepository = Depends(get_orders)):
    return generate_bottleneck_insight(bottlenecks(_pipeline_orders(orders, branch_id)))


# --- Branches ---

@router.get("/branches/{branch_id}/sorting-metrics", response_model=SortingMetrics)
def get_sorting_metrics(branch_id: str, expiring_within_hours: float = 2,
                        orders: SqlOrderRepository = Depends(get_orders),
                        branches: SqlBranchRepository = Depends(get_branches)):
    try:
        branch = branches.get(branch_id)
    except OrderFlowError as e:
        raise _http_error(e)
    return sorting_metrics(
        orders.list_by_branch_and_status(branch_id), branch, expiring_within_hours=expiring_within_hours
    )


@router.put("/branches/{branch_id}/sorting-window")
def set_sorting_window(branch_id: str, req: SortingWindowIn, branches: SqlBranchRepository = Depends(get_branches)):
    try:
        hours = validate_sorting_window_hours(req.hours)
        branch = branches.get(branch_id)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except OrderFlowError as e:
        raise _http_error(e)

    branches.save(branch.model_copy(update={"sorting_window_hours": hours}))
    return {"branch_id": branch_id, "sorting_window_hours": hours}


# --- Delivery fees ---

@router.post("/delivery-fee", response_model=FeeQuote)
def calculate_delivery_fee(req: FeeContext, rules: SqlRuleRepository = Depends(get_rules)):
    return compute_fee(req, rules.list_for_branch(req.branch_id))


@router.post("/delivery-fee/preview", response_model=List[FeeQuote])
def preview_delivery_fees(req: FeePreviewIn, rules: SqlRuleRepository = Depends(get_rules)):
    return preview_fees(
        req.branch_id,
        [s.model_dump() for s in req.scenarios],
        rules.list_for_branch(req.branch_id),
    )


# --- Batches & routes ---

@router.post("/batches", response_model=BatchOut, status_code=201)
def create_delivery_batch(req: BatchIn, orders: SqlOrderRepository = Depends(get_orders),
                          batches: SqlBatchRepository = Depends(get_batches)):
    try:
        batch = create_batch(req.origin_branch_id, req.destination_branch_id, req.order_ids, req.created_by, orders)
        batches.save(batch)
    except OrderFlowError as e:
        raise _http_error(e)

    return _batch_out(batch)


@router.post("/batches/{batch_id}/dispatch", response_model=DispatchOut)
def dispatch_batch(batch_id: str, req: DispatchIn,
                   orders: SqlOrderRepository = Depends(get_orders),
                   branches: SqlBranchRepository = Depends(get_branches),
                   drivers: SqlDriverRepository = Depends(get_drivers),
                   batches: SqlBatchRepository = Depends(get_batches),
                   routing: Optional[RoutingService] = Depends(get_router)):
    """Sequence the batch's stops, then auto-assign a driver if it has none."""
    try:
        batch = batches.get(batch_id)
        start = req.start
        if start is None:
            origin = branches.get(batch.origin_branch_id)
            start = origin.location.coordinates if origin.location else None
        if start is None:
            raise InvalidStop(None, "origin branch has no coordinates; pass a start location")

        plan = plan_dispatch(
            batch,
            start,
            [orders.get(order_id) for order_id in batch.order_ids],
            drivers,
            router=routing,
            return_to_start=req.return_to_start,
            skip_optimization=req.skip_optimization,
        )
        if plan.batch != batch:
            batches.save(plan.batch)
    except OrderFlowError as e:
        raise _http_error(e)

    return DispatchOut(batch=_batch_out(plan.batch), route=plan.route)


@router.put("/batches/{batch_id}/driver", response_model=BatchOut)
def set_batch_driver(batch_id: str, req: DriverIn,
                     batches: SqlBatchRepository = Depends(get_batches),
                     drivers: SqlDriverRepository = Depends(get_drivers)):
    try:
        batch = assign_driver(batch_id, req.driver_id, batches, drivers)
        batches.save(batch)
    except OrderFlowError as e:
        raise _http_error(e)

    return _batch_out(batch)


@router.put("/batches/{batch_id}/status", response_model=BatchOut)
def set_batch_status(batch_id: str, req: BatchStatusIn, batches: SqlBatchRepository = Depends(get_batches)):
    """Mark a batch as picked up or delivered; completed batches free up the driver."""
    try:
        batch = advance_batch(batch_id, req.status, batches)
    except OrderFlowError as e:
        raise _http_error(e)

    return _batch_out(batch)


@router.post("/routes/optimize", response_model=OptimizedRoute)
def optimize_delivery_route(req: RouteIn, orders: SqlOrderRepository = Depends(get_orders),
                            routing: Optional[RoutingService] = Depends(get_router)):
    try:
        stops = route_stops([orders.get(order_id) for order_id in req.order_ids])
        if req.skip_optimization:
            return manual_route(stops)
        return optimize_route(req.start, stops, req.return_to_start, routing)
    except OrderFlowError as e:
        raise _http_error(e)
