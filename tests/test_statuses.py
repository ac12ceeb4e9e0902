import pytest

from orderflow.statuses import (
    DEFAULT_POLICY, FORWARD_PATH, REWASH_POLICY, STATUS_CONFIG, OrderStatus, TransitionPolicy,
    all_statuses, can_transition, is_terminal, notification_template, requires_notification,
    status_config, status_group, valid_next_statuses,
)

FORWARD_EDGES = set(zip(FORWARD_PATH, FORWARD_PATH[1:])) | {
    (OrderStatus.READY, OrderStatus.OUT_FOR_DELIVERY),
    (OrderStatus.READY, OrderStatus.COLLECTED),
    (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED),
}


def test_forward_path_is_allowed():
    for current, following in FORWARD_EDGES:
        assert can_transition(current, following)


def test_every_other_pair_is_rejected():
    for current in OrderStatus:
        for requested in OrderStatus:
            if (current, requested) not in FORWARD_EDGES:
                assert not can_transition(current, requested), (current, requested)


def test_backward_and_skip_moves_are_rejected():
    assert not can_transition("washing", "queued")
    assert not can_transition("received", "washing")
    assert not can_transition("ready", "ready")


def test_unknown_status_strings_are_rejected():
    assert not can_transition("washing", "teleported")
    assert not can_transition("lost", "washing")


def test_terminal_states_have_no_exits():
    for terminal in (OrderStatus.DELIVERED, OrderStatus.COLLECTED):
        assert is_terminal(terminal)
        assert valid_next_statuses(terminal) == []
    assert not is_terminal("ready")


def test_valid_next_statuses_from_ready():
    assert set(valid_next_statuses("ready")) == {OrderStatus.OUT_FOR_DELIVERY, OrderStatus.COLLECTED}


def test_all_statuses_lists_every_state_once():
    statuses = all_statuses()
    assert len(statuses) == 11
    assert set(statuses) == set(OrderStatus)
    assert statuses[0] == OrderStatus.RECEIVED


def test_rewash_policy_adds_loop_back():
    assert not can_transition("quality_check", "washing")
    assert can_transition("quality_check", "washing", REWASH_POLICY)
    assert can_transition("quality_check", "packaging", REWASH_POLICY)
    # the default policy is untouched
    assert not DEFAULT_POLICY.allows(OrderStatus.QUALITY_CHECK, OrderStatus.WASHING)


def test_policy_requires_entry_for_every_status():
    with pytest.raises(ValueError):
        TransitionPolicy({OrderStatus.RECEIVED: [OrderStatus.QUEUED]})


def test_policy_rejects_edges_out_of_terminal_states():
    with pytest.raises(ValueError):
        DEFAULT_POLICY.with_edges((OrderStatus.DELIVERED, OrderStatus.READY))


def test_status_config_is_complete():
    assert set(STATUS_CONFIG) == set(OrderStatus)
    assert status_config("quality_check").label == "Quality Check"


def test_status_groups():
    assert status_group("received") == "Pending"
    assert status_group("ironing") == "Processing"
    assert status_group("out_for_delivery") == "Ready"
    assert status_group("collected") == "Completed"


def test_notification_templates():
    assert notification_template("ready") == "order_ready"
    assert notification_template("out_for_delivery") == "order_out_for_delivery"
    assert notification_template("delivered") == "order_delivered"
    assert notification_template("washing") is None
    assert requires_notification("ready")
    assert not requires_notification("collected")
