from sqlalchemy import Column, Integer, String, Float, DateTime, Boolean, JSON
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class BranchRecord(Base):
    __tablename__ = 'branches'
    branch_id = Column(String, primary_key=True)
    name = Column(String, nullable=False, default="")
    branch_type = Column(String, nullable=False, default="main")  # 'main', 'satellite'
    main_store_id = Column(String, nullable=True)
    sorting_window_hours = Column(Float, nullable=True)
    location = Column(JSON, nullable=True)  # {address, coordinates: {lat, lng}}


class DriverRecord(Base):
    __tablename__ = 'drivers'
    driver_id = Column(String, primary_key=True)
    name = Column(String, default="")
    branch_id = Column(String, index=True, nullable=False)
    active = Column(Boolean, default=True)
    max_active_batches = Column(Integer, nullable=True)


class OrderRecord(Base):
    __tablename__ = 'orders'
    order_id = Column(String, primary_key=True)
    customer_id = Column(String, index=True, nullable=True)
    customer_name = Column(String, nullable=True)
    customer_phone = Column(String, nullable=True)
    status = Column(String, index=True, nullable=False)
    status_history = Column(JSON, nullable=False)  # append-only list of {status, timestamp, actor_id}
    created_at = Column(DateTime(timezone=True), nullable=False)
    estimated_completion = Column(DateTime(timezone=True), nullable=False)
    actual_completion = Column(DateTime(timezone=True), nullable=True)
    branch_id = Column(String, index=True, nullable=False)
    processing_branch_id = Column(String, index=True, nullable=True)
    collection_method = Column(String, default="dropped_off")
    return_method = Column(String, default="customer_collects")
    delivery_address = Column(JSON, nullable=True)
    total_amount = Column(Float, default=0.0)
    paid_amount = Column(Float, default=0.0)
    routing_status = Column(String, nullable=True)
    arrived_at_branch_at = Column(DateTime(timezone=True), nullable=True)
    earliest_delivery_time = Column(DateTime(timezone=True), nullable=True)
    sorting_completed_at = Column(DateTime(timezone=True), nullable=True)
    delivery_batch_id = Column(String, index=True, nullable=True)
    # Bumped on every status write; guards the compare-and-swap in SqlOrderRepository
    version = Column(Integer, nullable=False, default=0)


class DeliveryBatchRecord(Base):
    __tablename__ = 'delivery_batches'
    batch_id = Column(String, primary_key=True)
    origin_branch_id = Column(String, index=True, nullable=False)
    destination_branch_id = Column(String, index=True, nullable=False)
    order_ids = Column(JSON, nullable=False)
    driver_id = Column(String, index=True, nullable=True)
    status = Column(String, default="pending")  # pending, assigned, in_transit, completed
    created_by = Column(String)
    created_at = Column(DateTime(timezone=True))


class DeliveryFeeRuleRecord(Base):
    __tablename__ = 'delivery_fee_rules'
    rule_id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    branch_id = Column(String, index=True, default="ALL")
    priority = Column(Integer, default=0)
    active = Column(Boolean, default=True)
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    conditions = Column(JSON, nullable=False)
    fee_calculation = Column(JSON, nullable=False)
