from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .statuses import OrderStatus

CollectionMethod = Literal["dropped_off", "pickup_required"]
ReturnMethod = Literal["customer_collects", "delivery_required"]
RoutingStatus = Literal["pending", "assigned", "received", "processing", "ready_for_return"]
BatchStatus = Literal["pending", "assigned", "in_transit", "completed"]
FeeType = Literal["free", "fixed", "per_km", "percentage"]


class Coordinates(BaseModel):
    lat: float
    lng: float


class Address(BaseModel):
    address: str
    coordinates: Optional[Coordinates] = None
    label: Optional[str] = None


# --- Orders ---

class StatusEntry(BaseModel):
    status: OrderStatus
    timestamp: datetime
    actor_id: str

    class Config:
        frozen = True


class Order(BaseModel):
    order_id: str
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    status: OrderStatus
    status_history: List[StatusEntry]
    created_at: datetime
    estimated_completion: datetime
    actual_completion: Optional[datetime] = None
    branch_id: str
    processing_branch_id: Optional[str] = None
    collection_method: CollectionMethod = "dropped_off"
    return_method: ReturnMethod = "customer_collects"
    delivery_address: Optional[Address] = None
    total_amount: float = 0.0
    paid_amount: float = 0.0
    # Branch handling
    routing_status: Optional[RoutingStatus] = None
    arrived_at_branch_at: Optional[datetime] = None
    earliest_delivery_time: Optional[datetime] = None
    sorting_completed_at: Optional[datetime] = None
    delivery_batch_id: Optional[str] = None

    class Config:
        from_attributes = True

    @property
    def effective_branch_id(self) -> str:
        return self.processing_branch_id or self.branch_id


# --- Branches & drivers ---

class Branch(BaseModel):
    branch_id: str
    name: str = ""
    branch_type: Literal["main", "satellite"] = "main"
    main_store_id: Optional[str] = None
    sorting_window_hours: Optional[float] = None
    location: Optional[Address] = None

    class Config:
        from_attributes = True


class Driver(BaseModel):
    driver_id: str
    name: str = ""
    branch_id: str
    active: bool = True
    active_batches: int = 0
    max_active_batches: Optional[int] = None


# --- Delivery fee rules ---

class FeeConditions(BaseModel):
    min_order_amount: Optional[float] = None
    customer_segments: List[str] = []
    max_distance_km: Optional[float] = None
    days_of_week: List[int] = []  # 0 = Sunday ... 6 = Saturday
    start_time: Optional[str] = None  # HH:MM, local time
    end_time: Optional[str] = None


class FeeCalculation(BaseModel):
    type: FeeType
    value: float = 0.0
    min_fee: Optional[float] = None
    max_fee: Optional[float] = None


class DeliveryFeeRule(BaseModel):
    rule_id: str
    name: str
    branch_id: str = "ALL"
    priority: int = 0
    active: bool = True
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    conditions: FeeConditions = FeeConditions()
    fee_calculation: FeeCalculation

    class Config:
        frozen = True


class FeeContext(BaseModel):
    branch_id: str
    order_amount: float = Field(ge=0)
    customer_segment: Optional[str] = None
    distance_km: Optional[float] = Field(default=None, ge=0)


class FeeQuote(BaseModel):
    fee: int
    is_free: bool
    rule_applied: Optional[str] = None
    rule_name: Optional[str] = None
    fee_type: Optional[FeeType] = None
    reason: str


# --- Batches & routes ---

class DeliveryBatch(BaseModel):
    batch_id: str
    origin_branch_id: str
    destination_branch_id: str
    order_ids: List[str]
    driver_id: Optional[str] = None
    status: BatchStatus = "pending"
    created_by: str
    created_at: datetime

    @property
    def total_orders(self) -> int:
        return len(self.order_ids)


class RouteStop(BaseModel):
    order_id: str
    coordinates: Optional[Coordinates] = None
    address: str = ""
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    sequence: Optional[int] = None


class OptimizedRoute(BaseModel):
    ordered_stops: List[RouteStop]
    total_distance: float = 0.0  # meters
    total_duration: float = 0.0  # seconds
    optimized: bool = True
    polyline: Optional[str] = None
