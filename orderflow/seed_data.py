import logging
import random
import uuid
from datetime import timedelta

import faker
from sqlalchemy.orm import Session

from .fees import default_rules
from .ledger import apply_transition, start_history
from .models import Base, DriverRecord, OrderRecord
from .repositories import SqlBranchRepository, SqlOrderRepository, SqlRuleRepository
from .scheduling import record_arrival, route_to_processing_branch
from .schemas import Address, Branch, Coordinates, Order
from .statuses import FORWARD_PATH, OrderStatus
from .utils import utcnow

logger = logging.getLogger(__name__)

BRANCHES = [
    Branch(branch_id="NBO-MAIN", name="Nairobi Main Store", branch_type="main", sorting_window_hours=6,
           location=Address(address="Moi Avenue, Nairobi", coordinates=Coordinates(lat=-1.2833, lng=36.8167))),
    Branch(branch_id="MSA-MAIN", name="Mombasa Main Store", branch_type="main", sorting_window_hours=4,
           location=Address(address="Nkrumah Road, Mombasa", coordinates=Coordinates(lat=-4.0435, lng=39.6682))),
    Branch(branch_id="NBO-WEST", name="Westlands Drop-off", branch_type="satellite", main_store_id="NBO-MAIN",
           location=Address(address="Waiyaki Way, Westlands", coordinates=Coordinates(lat=-1.2676, lng=36.8108))),
]

SEGMENTS = ["regular", "regular", "regular", "vip", "corporate"]


def _lifecycle(return_method: str):
    """Full status path an order takes for the given return method."""
    tail = [OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED] if return_method == "delivery_required" \
        else [OrderStatus.COLLECTED]
    return list(FORWARD_PATH[1:]) + tail


def _demo_order(fake: faker.Faker, source: Branch, staff_ids, now) -> Order:
    created_at = now - timedelta(hours=random.uniform(1, 96))
    return_method = random.choice(["customer_collects", "delivery_required"])
    address = None
    if return_method == "delivery_required":
        anchor = source.location.coordinates
        address = Address(
            address=fake.street_address(),
            coordinates=Coordinates(
                lat=round(anchor.lat + random.uniform(-0.08, 0.08), 6),
                lng=round(anchor.lng + random.uniform(-0.08, 0.08), 6),
            ),
            label=random.choice(["Home", "Office"]),
        )

    order = Order(
        order_id=f"ORD-{uuid.uuid4().hex[:8]}".upper(),
        customer_id=f"CUST-{random.randint(1000, 9999)}",
        customer_name=fake.name(),
        customer_phone=fake.phone_number(),
        status=OrderStatus.RECEIVED,
        status_history=start_history(random.choice(staff_ids), created_at),
        created_at=created_at,
        estimated_completion=created_at + timedelta(hours=random.choice([24, 48, 72])),
        branch_id=source.branch_id,
        collection_method=random.choice(["dropped_off", "pickup_required"]),
        return_method=return_method,
        delivery_address=address,
        total_amount=float(random.randrange(300, 8000, 50)),
    )
    order = order.model_copy(update={"paid_amount": random.choice([0.0, order.total_amount])})

    decision = route_to_processing_branch(order, source)
    order = order.model_copy(update={
        "processing_branch_id": decision.processing_branch_id,
        "routing_status": decision.routing_status,
    })

    # Walk the lifecycle until the clock catches up with now
    moment = created_at
    target = random.randint(0, len(_lifecycle(return_method)))
    for status in _lifecycle(return_method)[:target]:
        # Washing is the slow stage in the demo data
        moment += timedelta(minutes=random.uniform(90, 300) if status == OrderStatus.DRYING else random.uniform(15, 120))
        if moment > now:
            break
        order = apply_transition(order, status, random.choice(staff_ids), moment)
    return order


def seed_demo_data(session: Session, order_count: int = 60, seed=None) -> dict:
    """Populate branches, drivers, fee rules and orders. Skips if orders exist."""
    if session.query(OrderRecord).first():
        logger.info("Data already exists. Skipping seed.")
        return {"branches": 0, "drivers": 0, "rules": 0, "orders": 0}

    if seed is not None:
        random.seed(seed)
        faker.Faker.seed(seed)
    fake = faker.Faker()
    now = utcnow()

    branches = SqlBranchRepository(session)
    for branch in BRANCHES:
        branches.save(branch)

    drivers = []
    for branch in BRANCHES:
        if branch.branch_type != "main":
            continue
        for _ in range(2):
            drivers.append(DriverRecord(
                driver_id=f"DRV-{uuid.uuid4().hex[:6]}".upper(),
                name=fake.name(),
                branch_id=branch.branch_id,
                active=True,
                max_active_batches=3,
            ))
    session.add_all(drivers)
    session.commit()

    rules = SqlRuleRepository(session)
    fee_rules = default_rules(valid_from=now - timedelta(days=30))
    for rule in fee_rules:
        rules.save(rule)

    staff_ids = [f"STAFF-{i:02d}" for i in range(1, 6)]
    orders = SqlOrderRepository(session)
    by_id = {b.branch_id: b for b in BRANCHES}
    for _ in range(order_count):
        order = _demo_order(fake, random.choice(BRANCHES), staff_ids, now)
        if order.status != OrderStatus.RECEIVED:
            arrived = order.status_history[1].timestamp
            order = record_arrival(order, by_id[order.effective_branch_id], arrived)
        orders.save(order)

    logger.info("Seeded %d branches, %d drivers, %d fee rules, %d orders",
                len(BRANCHES), len(drivers), len(fee_rules), order_count)
    return {"branches": len(BRANCHES), "drivers": len(drivers), "rules": len(fee_rules), "orders": order_count}


if __name__ == "__main__":
    from .database import SessionLocal, engine

    logging.basicConfig(level=logging.INFO)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_demo_data(db)
    finally:
        db.close()
