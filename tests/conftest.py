import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from orderflow.models import Base
from orderflow.schemas import Address, Branch, Coordinates, Order, StatusEntry
from orderflow.statuses import OrderStatus

T0 = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)  # a Monday


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session(engine):
    db = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield db
    finally:
        db.close()


def make_order(
    order_id="ORD-1",
    path=(OrderStatus.RECEIVED,),
    gaps_minutes=None,
    created_at=T0,
    due_in_hours=48,
    branch_id="NBO-MAIN",
    **overrides,
) -> Order:
    """Order whose history walks `path`, one entry per status.

    `gaps_minutes[i]` is the time spent between path[i] and path[i + 1].
    """
    gaps = list(gaps_minutes or [30] * (len(path) - 1))
    history = []
    moment = created_at
    for index, status in enumerate(path):
        if index:
            moment += timedelta(minutes=gaps[index - 1])
        history.append(StatusEntry(status=status, timestamp=moment, actor_id="staff-1"))

    data = dict(
        order_id=order_id,
        customer_name="Jane Wanjiru",
        customer_phone="+254700000000",
        status=path[-1],
        status_history=history,
        created_at=created_at,
        estimated_completion=created_at + timedelta(hours=due_in_hours),
        branch_id=branch_id,
    )
    data.update(overrides)
    return Order(**data)


def ready_for_delivery(order_id, lat=-1.28, lng=36.82, **overrides) -> Order:
    path = (
        OrderStatus.RECEIVED, OrderStatus.QUEUED, OrderStatus.WASHING, OrderStatus.DRYING,
        OrderStatus.IRONING, OrderStatus.QUALITY_CHECK, OrderStatus.PACKAGING, OrderStatus.READY,
    )
    return make_order(
        order_id,
        path=path,
        return_method="delivery_required",
        delivery_address=Address(address=f"{order_id} Street", coordinates=Coordinates(lat=lat, lng=lng)),
        **overrides,
    )


def make_branch(branch_id="NBO-MAIN", sorting_window_hours=6, **overrides) -> Branch:
    data = dict(
        branch_id=branch_id,
        name="Nairobi Main Store",
        sorting_window_hours=sorting_window_hours,
        location=Address(address="Moi Avenue", coordinates=Coordinates(lat=-1.2833, lng=36.8167)),
    )
    data.update(overrides)
    return Branch(**data)
