import re

import pytest

from conftest import T0, make_order, ready_for_delivery
from orderflow.batches import (
    advance_batch, assign_driver, auto_assign_driver, complete_batch, create_batch, eligibility_problem,
    generate_batch_id, plan_dispatch, start_batch,
)
from orderflow.errors import (
    BatchAlreadyAssigned, BatchNotFound, DriverUnavailable, IneligibleOrder, InvalidBatchTransition, OrderNotFound,
    RoutingUnavailable,
)
from orderflow.schemas import Coordinates, Driver, OptimizedRoute
from orderflow.statuses import OrderStatus

START = Coordinates(lat=-1.2833, lng=36.8167)


class Orders:
    def __init__(self, *orders):
        self.orders = {o.order_id: o for o in orders}

    def get(self, order_id):
        if order_id not in self.orders:
            raise OrderNotFound(order_id)
        return self.orders[order_id]


class Drivers:
    def __init__(self, *drivers):
        self.drivers = list(drivers)
        self.calls = 0

    def list_available(self, branch_id):
        self.calls += 1
        return [d for d in self.drivers if d.branch_id == branch_id and d.active]


class Batches:
    def __init__(self, *batches):
        self.batches = {b.batch_id: b for b in batches}

    def get(self, batch_id):
        if batch_id not in self.batches:
            raise BatchNotFound(batch_id)
        return self.batches[batch_id]

    def save(self, batch):
        self.batches[batch.batch_id] = batch

    def update_status(self, batch_id, expected_status, new_status):
        batch = self.batches[batch_id]
        if batch.status != expected_status:
            return False
        self.batches[batch_id] = batch.model_copy(update={"status": new_status})
        return True


class RacingBatches(Batches):
    """Another writer moves the batch right before our compare-and-swap."""

    def __init__(self, batch, racing_status):
        super().__init__(batch)
        self.racing_status = racing_status

    def update_status(self, batch_id, expected_status, new_status):
        self.save(self.batches[batch_id].model_copy(update={"status": self.racing_status}))
        return super().update_status(batch_id, expected_status, new_status)


def driver(driver_id, load=0, branch_id="NBO-MAIN", **kwargs):
    return Driver(driver_id=driver_id, branch_id=branch_id, active_batches=load, **kwargs)


def new_batch(*order_ids):
    orders = Orders(*[ready_for_delivery(oid) for oid in order_ids])
    return create_batch("NBO-MAIN", "NBO-WEST", list(order_ids), "staff-1", orders, now=T0)


def test_batch_id_format():
    batch_id = generate_batch_id("nbo", T0)
    assert re.fullmatch(r"DEL-NBO-20240304-[0-9A-F]{4}", batch_id)


def test_eligibility_rules():
    assert eligibility_problem(ready_for_delivery("A")) is None
    assert "washing" in eligibility_problem(make_order(path=(OrderStatus.RECEIVED, OrderStatus.QUEUED,
                                                              OrderStatus.WASHING)))
    collects = ready_for_delivery("B").model_copy(update={"return_method": "customer_collects"})
    assert eligibility_problem(collects) == "customer collects"
    no_address = ready_for_delivery("C").model_copy(update={"delivery_address": None})
    assert eligibility_problem(no_address) == "no delivery address"
    batched = ready_for_delivery("D").model_copy(update={"delivery_batch_id": "DEL-NBO-20240304-AAAA"})
    assert eligibility_problem(batched) == "already on batch DEL-NBO-20240304-AAAA"


def test_create_batch():
    batch = new_batch("A", "B", "A")
    assert batch.order_ids == ["A", "B"]
    assert batch.total_orders == 2
    assert batch.driver_id is None
    assert batch.status == "pending"
    assert batch.created_at == T0
    assert batch.batch_id.startswith("DEL-NBO-MAIN-20240304-")


def test_create_batch_names_exactly_the_ineligible_order():
    washing = make_order("W", path=(OrderStatus.RECEIVED, OrderStatus.QUEUED, OrderStatus.WASHING))
    orders = Orders(ready_for_delivery("A"), washing, ready_for_delivery("B"))

    with pytest.raises(IneligibleOrder) as exc:
        create_batch("NBO-MAIN", "NBO-WEST", ["A", "W", "B"], "staff-1", orders)
    assert exc.value.order_ids == ["W"]
    assert "washing" in exc.value.reasons["W"]


def test_create_batch_reports_every_problem():
    orders = Orders(ready_for_delivery("A"), make_order("R"))
    with pytest.raises(IneligibleOrder) as exc:
        create_batch("NBO-MAIN", "NBO-WEST", ["A", "R", "GHOST"], "staff-1", orders)
    assert exc.value.order_ids == ["R", "GHOST"]
    assert exc.value.reasons["GHOST"] == "order not found"


def test_create_empty_batch_fails():
    with pytest.raises(IneligibleOrder):
        create_batch("NBO-MAIN", "NBO-WEST", [], "staff-1", Orders())


def test_auto_assign_picks_least_loaded():
    drivers = Drivers(driver("D1", load=2), driver("D2", load=0), driver("D3", load=0), driver("X", branch_id="MSA"))
    assert auto_assign_driver("NBO-MAIN", "NBO-WEST", drivers) == "D2"


def test_auto_assign_respects_capacity():
    drivers = Drivers(driver("D1", load=3, max_active_batches=3), driver("D2", load=4))
    assert auto_assign_driver("NBO-MAIN", "NBO-WEST", drivers) == "D2"


def test_auto_assign_without_drivers_is_pending_not_an_error():
    assert auto_assign_driver("NBO-MAIN", "NBO-WEST", Drivers()) is None
    assert auto_assign_driver("NBO-MAIN", "NBO-WEST", Drivers(driver("D1", active=False))) is None


def test_assign_driver_is_idempotent():
    batches = Batches(new_batch("A"))
    batch_id = next(iter(batches.batches))
    drivers = Drivers(driver("D1"))

    first = assign_driver(batch_id, "D1", batches, drivers)
    batches.save(first)
    second = assign_driver(batch_id, "D1", batches, drivers)

    assert first.driver_id == second.driver_id == "D1"
    assert second.status == "assigned"


def test_assign_driver_errors():
    batch = new_batch("A")
    batches = Batches(batch)

    with pytest.raises(BatchNotFound):
        assign_driver("DEL-NOPE", "D1", batches, Drivers(driver("D1")))
    with pytest.raises(DriverUnavailable):
        assign_driver(batch.batch_id, "D9", batches, Drivers(driver("D1")))

    batches.save(batch.model_copy(update={"driver_id": "D1", "status": "assigned"}))
    with pytest.raises(BatchAlreadyAssigned):
        assign_driver(batch.batch_id, "D2", batches, Drivers(driver("D2")))


def assigned_batch(*order_ids):
    return new_batch(*order_ids).model_copy(update={"driver_id": "D1", "status": "assigned"})


def test_batch_lifecycle_runs_assigned_to_completed():
    batch = assigned_batch("A")
    batches = Batches(batch)

    assert start_batch(batch.batch_id, batches).status == "in_transit"
    assert complete_batch(batch.batch_id, batches).status == "completed"
    assert batches.get(batch.batch_id).status == "completed"
    # repeating the current status changes nothing
    assert complete_batch(batch.batch_id, batches).status == "completed"


def test_batch_lifecycle_rejects_skipped_and_backward_steps():
    pending = new_batch("A")
    batches = Batches(pending)
    with pytest.raises(InvalidBatchTransition):
        start_batch(pending.batch_id, batches)

    batch = assigned_batch("B")
    batches.save(batch)
    with pytest.raises(InvalidBatchTransition) as exc:
        complete_batch(batch.batch_id, batches)
    assert exc.value.current == "assigned"

    start_batch(batch.batch_id, batches)
    with pytest.raises(InvalidBatchTransition):
        advance_batch(batch.batch_id, "assigned", batches)
    with pytest.raises(BatchNotFound):
        start_batch("DEL-NOPE", batches)


def test_batch_lifecycle_reports_lost_race():
    batch = assigned_batch("A")
    with pytest.raises(InvalidBatchTransition) as exc:
        start_batch(batch.batch_id, RacingBatches(batch, "completed"))
    assert exc.value.current == "completed"

    # the other writer made the same move, so the result is already what we wanted
    assert start_batch(batch.batch_id, RacingBatches(batch, "in_transit")).status == "in_transit"


class FailingRouter:
    def optimize(self, start, stops, return_to_start, timeout=None):
        raise RoutingUnavailable("connection refused")


class ReversingRouter:
    def optimize(self, start, stops, return_to_start, timeout=None):
        return OptimizedRoute(ordered_stops=list(reversed(stops)), total_distance=1200, total_duration=600)


def test_plan_dispatch_routes_then_assigns():
    orders = [ready_for_delivery("A"), ready_for_delivery("B", lat=-1.3)]
    batch = new_batch("A", "B")

    plan = plan_dispatch(batch, START, orders, Drivers(driver("D1")), router=ReversingRouter())

    assert plan.route.optimized
    assert [s.order_id for s in plan.route.ordered_stops] == ["B", "A"]
    assert plan.driver_id == "D1"
    assert plan.batch.status == "assigned"
    assert not plan.assignment_pending
    assert batch.driver_id is None


def test_plan_dispatch_falls_back_to_manual_order():
    orders = [ready_for_delivery("A"), ready_for_delivery("B")]
    plan = plan_dispatch(new_batch("A", "B"), START, orders, Drivers(), router=FailingRouter())

    assert not plan.route.optimized
    assert [s.order_id for s in plan.route.ordered_stops] == ["A", "B"]
    assert plan.assignment_pending
    assert plan.batch.driver_id is None


def test_plan_dispatch_without_fallback_leaves_driver_untouched():
    drivers = Drivers(driver("D1"))
    with pytest.raises(RoutingUnavailable):
        plan_dispatch(new_batch("A"), START, [ready_for_delivery("A")], drivers,
                      router=FailingRouter(), fallback_to_manual=False)
    assert drivers.calls == 0


def test_plan_dispatch_can_skip_optimization():
    plan = plan_dispatch(new_batch("A"), START, [ready_for_delivery("A")], Drivers(driver("D1")),
                         skip_optimization=True)
    assert not plan.route.optimized
    assert plan.driver_id == "D1"
