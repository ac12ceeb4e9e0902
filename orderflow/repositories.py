from datetime import timezone
from typing import Iterable, List, Optional, Protocol

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from .errors import (
    BatchAlreadyAssigned, BatchNotFound, BranchNotFound, IneligibleOrder, InvalidBatchTransition, OrderNotFound,
)
from .models import BranchRecord, DeliveryBatchRecord, DeliveryFeeRuleRecord, DriverRecord, OrderRecord
from .schemas import Branch, DeliveryBatch, DeliveryFeeRule, Driver, Order, StatusEntry
from .statuses import OrderStatus, is_terminal
from .utils import as_utc

ACTIVE_BATCH_STATUSES = ("assigned", "in_transit")
ASSIGNABLE_BATCH_STATUSES = ("pending", "assigned")

_ORDER_DATETIMES = (
    "created_at", "estimated_completion", "actual_completion",
    "arrived_at_branch_at", "earliest_delivery_time", "sorting_completed_at",
)


# --- Interfaces ---

class OrderRepository(Protocol):
    def get(self, order_id: str) -> Order: ...

    def update_status(self, order_id: str, expected_current: OrderStatus, new_status: OrderStatus, entry: StatusEntry,
                      expected_length: Optional[int] = None) -> bool: ...

    def list_by_branch_and_status(self, branch_id: str, statuses: Optional[Iterable[OrderStatus]] = None) -> List[Order]: ...


class BranchRepository(Protocol):
    def get(self, branch_id: str) -> Branch: ...


class DriverRepository(Protocol):
    def list_available(self, branch_id: str) -> List[Driver]: ...


class RuleRepository(Protocol):
    def list_for_branch(self, branch_id: str) -> List[DeliveryFeeRule]: ...


class BatchRepository(Protocol):
    def get(self, batch_id: str) -> DeliveryBatch: ...

    def save(self, batch: DeliveryBatch) -> None: ...

    def update_status(self, batch_id: str, expected_status: str, new_status: str) -> bool: ...


# --- SQLAlchemy adapters ---

def _to_utc(value):
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc)


def _order_from_row(row: OrderRecord) -> Order:
    data = {c.name: getattr(row, c.name) for c in OrderRecord.__table__.columns if c.name != "version"}
    for key in _ORDER_DATETIMES:
        data[key] = as_utc(data[key])
    return Order.model_validate(data)


def _order_values(order):
    values = order.model_dump(exclude={"status_history", "delivery_address"})
    values["status"] = order.status.value
    values["status_history"] = [entry.model_dump(mode="json") for entry in order.status_history]
    values["delivery_address"] = order.delivery_address.model_dump(mode="json") if order.delivery_address else None
    for key in _ORDER_DATETIMES:
        values[key] = _to_utc(values[key])
    return values


class SqlOrderRepository:
    def __init__(self, db: Session):
        self.db = db

    def _row(self, order_id: str) -> OrderRecord:
        row = self.db.query(OrderRecord).filter(OrderRecord.order_id == order_id).first()
        if not row:
            raise OrderNotFound(order_id)
        return row

    def get(self, order_id):
        return _order_from_row(self._row(order_id))

    def update_status(self, order_id, expected_current, new_status, entry, expected_length=None):
        """Append `entry` only if the stored order is still in `expected_current`.

        `expected_length` is the history length the caller read. A mismatch
        means another writer moved the order away and back since then.
        """
        row = self._row(order_id)
        expected = OrderStatus(expected_current)
        new_status = OrderStatus(new_status)
        if expected_length is not None and len(row.status_history or []) != expected_length:
            return False

        values = {
            "status": new_status.value,
            "status_history": list(row.status_history or []) + [entry.model_dump(mode="json")],
            "version": row.version + 1,
        }
        if is_terminal(new_status):
            values["actual_completion"] = _to_utc(entry.timestamp)

        updated = self.db.query(OrderRecord).filter(
            OrderRecord.order_id == order_id,
            OrderRecord.status == expected.value,
            OrderRecord.version == row.version,
        ).update(values, synchronize_session=False)
        self.db.commit()
        return updated == 1

    def list_by_branch_and_status(self, branch_id, statuses=None):
        query = self.db.query(OrderRecord).filter(
            func.coalesce(OrderRecord.processing_branch_id, OrderRecord.branch_id) == branch_id
        )
        if statuses is not None:
            query = query.filter(OrderRecord.status.in_([OrderStatus(s).value for s in statuses]))
        return [_order_from_row(row) for row in query.order_by(OrderRecord.created_at).all()]

    def list_all(self) -> List[Order]:
        return [_order_from_row(row) for row in self.db.query(OrderRecord).order_by(OrderRecord.created_at).all()]

    def save(self, order: Order) -> None:
        values = _order_values(order)
        row = self.db.query(OrderRecord).filter(OrderRecord.order_id == order.order_id).first()
        if row is None:
            self.db.add(OrderRecord(**values))
        else:
            for key, value in values.items():
                setattr(row, key, value)
        self.db.commit()


class SqlBranchRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, branch_id):
        row = self.db.query(BranchRecord).filter(BranchRecord.branch_id == branch_id).first()
        if not row:
            raise BranchNotFound(branch_id)
        return Branch.model_validate(row)

    def save(self, branch: Branch) -> None:
        values = branch.model_dump(mode="json")
        row = self.db.query(BranchRecord).filter(BranchRecord.branch_id == branch.branch_id).first()
        if row is None:
            self.db.add(BranchRecord(**values))
        else:
            for key, value in values.items():
                setattr(row, key, value)
        self.db.commit()


class SqlDriverRepository:
    def __init__(self, db: Session):
        self.db = db

    def list_available(self, branch_id):
        load = func.count(DeliveryBatchRecord.batch_id).label('active_batches')
        results = self.db.query(DriverRecord, load)\
            .outerjoin(DeliveryBatchRecord, and_(
                DeliveryBatchRecord.driver_id == DriverRecord.driver_id,
                DeliveryBatchRecord.status.in_(ACTIVE_BATCH_STATUSES),
            ))\
            .filter(DriverRecord.branch_id == branch_id, DriverRecord.active.is_(True))\
            .group_by(DriverRecord.driver_id)\
            .order_by(DriverRecord.driver_id)\
            .all()

        return [
            Driver(
                driver_id=driver.driver_id,
                name=driver.name or "",
                branch_id=driver.branch_id,
                active=driver.active,
                active_batches=active_batches or 0,
                max_active_batches=driver.max_active_batches,
            )
            for driver, active_batches in results
        ]


def _rule_from_row(row: DeliveryFeeRuleRecord) -> DeliveryFeeRule:
    return DeliveryFeeRule(
        rule_id=row.rule_id,
        name=row.name,
        branch_id=row.branch_id,
        priority=row.priority,
        active=row.active,
        valid_from=as_utc(row.valid_from),
        valid_until=as_utc(row.valid_until),
        conditions=row.conditions or {},
        fee_calculation=row.fee_calculation,
    )


class SqlRuleRepository:
    def __init__(self, db: Session):
        self.db = db

    def list_for_branch(self, branch_id):
        rows = self.db.query(DeliveryFeeRuleRecord)\
            .filter(DeliveryFeeRuleRecord.active.is_(True))\
            .filter(DeliveryFeeRuleRecord.branch_id.in_([branch_id, "ALL"]))\
            .order_by(DeliveryFeeRuleRecord.priority.desc())\
            .all()
        return [_rule_from_row(row) for row in rows]

    def save(self, rule: DeliveryFeeRule) -> None:
        self.db.merge(DeliveryFeeRuleRecord(
            rule_id=rule.rule_id,
            name=rule.name,
            branch_id=rule.branch_id,
            priority=rule.priority,
            active=rule.active,
            valid_from=_to_utc(rule.valid_from),
            valid_until=_to_utc(rule.valid_until),
            conditions=rule.conditions.model_dump(mode="json"),
            fee_calculation=rule.fee_calculation.model_dump(mode="json"),
        ))
        self.db.commit()


class SqlBatchRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, batch_id):
        row = self.db.query(DeliveryBatchRecord).filter(DeliveryBatchRecord.batch_id == batch_id).first()
        if not row:
            raise BatchNotFound(batch_id)
        return DeliveryBatch(
            batch_id=row.batch_id,
            origin_branch_id=row.origin_branch_id,
            destination_branch_id=row.destination_branch_id,
            order_ids=list(row.order_ids),
            driver_id=row.driver_id,
            status=row.status,
            created_by=row.created_by,
            created_at=as_utc(row.created_at),
        )

    def save(self, batch):
        """Insert a new batch and claim its orders, or record the driver of an existing one.

        Both writes are conditional. Orders already claimed by another batch,
        or a batch that meanwhile got a different driver or left the
        pending/assigned states, roll the whole write back.
        """
        exists = self.db.query(DeliveryBatchRecord.batch_id)\
            .filter(DeliveryBatchRecord.batch_id == batch.batch_id).first()
        if exists:
            self._attach_driver(batch)
        else:
            self._insert(batch)

    def _insert(self, batch):
        order_ids = list(dict.fromkeys(batch.order_ids))
        self.db.add(DeliveryBatchRecord(
            batch_id=batch.batch_id,
            origin_branch_id=batch.origin_branch_id,
            destination_branch_id=batch.destination_branch_id,
            order_ids=order_ids,
            driver_id=batch.driver_id,
            status=batch.status,
            created_by=batch.created_by,
            created_at=_to_utc(batch.created_at),
        ))
        claimed = self.db.query(OrderRecord)\
            .filter(OrderRecord.order_id.in_(order_ids), OrderRecord.delivery_batch_id.is_(None))\
            .update({"delivery_batch_id": batch.batch_id}, synchronize_session=False)
        if claimed == len(order_ids):
            self.db.commit()
            return

        self.db.rollback()
        owners = dict(
            self.db.query(OrderRecord.order_id, OrderRecord.delivery_batch_id)
            .filter(OrderRecord.order_id.in_(order_ids)).all()
        )
        reasons = {}
        for order_id in order_ids:
            if order_id not in owners:
                reasons[order_id] = "order not found"
            elif owners[order_id]:
                reasons[order_id] = f"already on batch {owners[order_id]}"
        raise IneligibleOrder(list(reasons), reasons)

    def _attach_driver(self, batch):
        updated = self.db.query(DeliveryBatchRecord).filter(
            DeliveryBatchRecord.batch_id == batch.batch_id,
            or_(DeliveryBatchRecord.driver_id.is_(None), DeliveryBatchRecord.driver_id == batch.driver_id),
            DeliveryBatchRecord.status.in_(ASSIGNABLE_BATCH_STATUSES),
        ).update({"driver_id": batch.driver_id, "status": batch.status}, synchronize_session=False)
        if updated == 1:
            self.db.commit()
            return

        self.db.rollback()
        current = self.get(batch.batch_id)
        if current == batch:
            return
        if current.driver_id and current.driver_id != batch.driver_id:
            raise BatchAlreadyAssigned(batch.batch_id, current.driver_id)
        raise InvalidBatchTransition(batch.batch_id, current.status, batch.status)

    def update_status(self, batch_id, expected_status, new_status):
        """Move the batch only if it is still in `expected_status`."""
        updated = self.db.query(DeliveryBatchRecord).filter(
            DeliveryBatchRecord.batch_id == batch_id,
            DeliveryBatchRecord.status == expected_status,
        ).update({"status": new_status}, synchronize_session=False)
        self.db.commit()
        return updated == 1
